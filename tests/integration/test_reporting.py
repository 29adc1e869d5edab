"""
Integration tests for read-only reporting queries.

The shared clock puts "today" at 2025-06-15.
"""
from datetime import date

import pytest

from models.result import ProjectionFilter
from pipeline.lifecycle import LifecycleManager
from pipeline.reporting import ReportingQueries, days_until_due


@pytest.fixture
def reporting(repository, clock) -> ReportingQueries:
    return ReportingQueries(repository, clock=clock)


@pytest.fixture
def populated(repository, make_projection) -> dict:
    ids = repository.insert_projections([
        make_projection(sku="JUN", month=6),                                   # overdue (-14)
        make_projection(sku="AUG", month=8),                                   # at risk (47)
        make_projection(sku="DEC", month=12),                                  # far out (169)
        make_projection(sku="MATCH-20", month=7),
        make_projection(sku="MATCH-5", month=7, brand="CB2"),
        make_projection(vendor_id=2, sku=None, collection="hoxton", order_type="mto", month=9),
        make_projection(vendor_id=2, sku=None, collection="vera", order_type="mto", month=10),
        make_projection(vendor_id=2, sku="REMOVED", month=11),
    ])
    names = ["jun", "aug", "dec", "m20", "m5", "hoxton", "vera", "removed"]
    by_name = dict(zip(names, ids))
    repository.apply_match(by_name["m20"], "PO-20", 1200, 60000, 200, 10000, 20)
    repository.apply_match(by_name["m5"], "PO-5", 950, 47500, -50, -2500, -5)
    repository.apply_match(by_name["vera"], "PO-V", 2000, 1, 1000, 1, 100)
    repository.remove_projection(by_name["removed"], "dropped", "alice", "2025-06-15")
    return by_name


@pytest.mark.integration
class TestReportingQueries:

    def test_days_until_due_counts_to_first_of_month(self, make_projection):
        p = make_projection(month=7)
        assert days_until_due(p, date(2025, 6, 15)) == 16
        assert days_until_due(p, date(2025, 7, 1)) == 0
        assert days_until_due(p, date(2025, 7, 2)) == -1

    def test_overdue(self, reporting, populated):
        rows = reporting.overdue()

        assert [p.id for p in rows] == [populated["jun"], populated["aug"]]
        assert rows[0].days_until_due == -14
        assert rows[0].is_overdue is True
        assert rows[1].days_until_due == 47
        assert rows[1].is_overdue is False

    def test_overdue_threshold(self, reporting, populated):
        rows = reporting.overdue(threshold_days=365)
        assert populated["dec"] in [p.id for p in rows]
        assert reporting.overdue(threshold_days=0, flt=ProjectionFilter(month=8)) == []

    def test_with_variance(self, reporting, populated):
        rows = reporting.with_variance()
        assert [p.id for p in rows] == [populated["m20"]]

        rows = reporting.with_variance(min_variance_pct=1)
        assert [p.id for p in rows] == [populated["m20"], populated["m5"]]

    def test_with_variance_excludes_mto(self, reporting, populated):
        assert populated["vera"] not in [p.id for p in reporting.with_variance(min_variance_pct=0)]

    def test_spo(self, reporting, populated):
        rows = reporting.spo()

        assert [p.id for p in rows] == [populated["vera"], populated["hoxton"]]
        assert not hasattr(rows[0], "days_until_due")
        assert rows[1].days_until_due == 78
        assert rows[1].is_overdue is False

    def test_validation_summary(self, reporting, populated):
        s = reporting.validation_summary()

        assert s.total_projections == 8
        assert s.unmatched == 4
        assert s.matched == 3
        assert s.removed == 1
        assert s.overdue_count == 1
        assert s.at_risk_count == 1
        assert s.with_variance == 1
        assert s.spo_total == 2
        assert s.spo_matched == 1
        assert s.spo_unmatched == 1

    def test_validation_summary_filtered(self, reporting, populated):
        s = reporting.validation_summary(ProjectionFilter(vendor_id=1, brand="CB2"))
        assert s.total_projections == 1
        assert s.matched == 1
        assert s.with_variance == 0

    def test_filter_options(self, reporting, populated):
        options = reporting.filter_options()
        assert [v["id"] for v in options["vendors"]] == [2, 1]   # Riches Furniture, Vendor One
        assert options["brands"] == ["CB", "CB2"]

    def test_expired_reports(self, reporting, repository, populated, clock):
        LifecycleManager(repository, clock=clock).expire_sweep()

        # June and August regular rows are past their window; plus the manual removal
        expired = reporting.expired()
        assert len(expired) == 3
        assert {e.expiration_reason for e in expired} == {"manual_removal", "past_90_day_window"}
        assert len(reporting.expired(ProjectionFilter(vendor_id=2))) == 1
        assert len(reporting.expired(status="verified")) == 0

        summary = reporting.expired_summary()
        assert summary.total == 3
        assert summary.pending == 3
