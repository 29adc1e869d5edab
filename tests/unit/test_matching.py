"""
Unit tests for variance arithmetic, index building and the matching engine.
"""
import sqlite3
from datetime import date

import pytest

from models.projection import STATUS_MATCHED, STATUS_UNMATCHED
from models.result import MatchResult, UnresolvedVendor
from pipeline.matching import MatchingEngine, build_indices, compute_variance, variance_pct


@pytest.mark.unit
class TestVarianceArithmetic:

    def test_variance_pct_rounds_to_integer(self):
        assert variance_pct(1000, 1200) == 20
        assert variance_pct(3, 4) == 33
        assert variance_pct(3, 2) == -33
        assert variance_pct(1000, 1000) == 0

    def test_variance_pct_halves_round_up(self):
        assert variance_pct(8, 9) == 13       # 12.5
        assert variance_pct(8, 7) == -12      # -12.5
        assert variance_pct(200, 1) == -99    # -99.5

    def test_variance_pct_without_projection(self):
        assert variance_pct(0, 500) == 0

    def test_compute_variance(self):
        assert compute_variance(1000, 50000, 1200, 58000) == (200, 8000, 20)
        assert compute_variance(1000, 50000, 800, 51000) == (-200, 1000, -20)


@pytest.mark.unit
class TestBuildIndices:

    def test_split_by_order_type(self, repository, make_projection):
        repository.insert_projections([
            make_projection(sku="ABC123"),
            make_projection(sku=None, collection="hoxton", order_type="mto"),
            make_projection(sku="MTO-SKU", collection=None, order_type="mto"),
            make_projection(sku=None, collection=None),
        ])
        regular, mto = build_indices(repository.list_open_projections())

        assert set(regular) == {(1, "abc123", 2025, 6), (1, "mto-sku", 2025, 6)}
        assert set(mto) == {(1, "hoxton", 2025, 6)}


@pytest.mark.unit
class TestMatchingEngine:
    """Tests for MatchingEngine class."""

    @pytest.fixture
    def engine(self, repository, resolver, extractor, clock):
        return MatchingEngine(repository, resolver, extractor, clock=clock)

    def test_alias_sku_match_records_variance(self, engine, repository, make_projection, make_po):
        [pid] = repository.insert_projections([make_projection()])

        result = engine.match([make_po()])

        assert result.matched_count == 1
        assert result.variance_count == 1
        assert result.errors == []
        match = result.matches[0]
        assert match.matched_via == "regular"
        assert match.flagged is True

        p = repository.get_projection(pid)
        assert p.match_status == STATUS_MATCHED
        assert p.matched_po_number == "PO-1001"
        assert p.actual_qty == 1200
        assert p.actual_value == 58000
        assert p.quantity_variance == 200
        assert p.value_variance == 8000
        assert p.variance_pct == 20
        assert p.matched_at is not None

    def test_small_variance_is_not_flagged(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection()])
        result = engine.match([make_po(quantity=1050, value=50500)])
        assert result.matched_count == 1
        assert result.variance_count == 0
        assert result.matches[0].variance_pct == 5

    def test_mto_collection_match(self, engine, repository, make_projection, make_po):
        [pid] = repository.insert_projections([
            make_projection(vendor_id=2, sku=None, collection="hoxton", order_type="mto",
                            month=9, projected_qty=300, projected_value=120000),
        ])

        result = engine.match([make_po(
            po_number="PO-2001", vendor_name_raw="V2", sku="HX-SOFA-01",
            program_description="MTO Hoxton Sep 2025", ship_date=date(2025, 9, 10),
            quantity=300, value=120000,
        )])

        assert result.matched_count == 1
        assert result.matches[0].matched_via == "mto"
        assert repository.get_projection(pid).match_status == STATUS_MATCHED

    def test_mto_hit_wins_over_sku(self, engine, repository, make_projection, make_po):
        mto_id, regular_id = repository.insert_projections([
            make_projection(vendor_id=2, sku=None, collection="hoxton", order_type="mto", month=9),
            make_projection(vendor_id=2, sku="HX-SOFA-01", month=9),
        ])

        engine.match([make_po(
            vendor_name_raw="Riches", sku="HX-SOFA-01",
            program_description="MTO Hoxton Sep 2025", ship_date=date(2025, 9, 10),
        )])

        assert repository.get_projection(mto_id).match_status == STATUS_MATCHED
        assert repository.get_projection(regular_id).match_status == STATUS_UNMATCHED

    def test_mto_text_without_mto_projection_falls_back_to_sku(
        self, engine, repository, make_projection, make_po,
    ):
        [pid] = repository.insert_projections([make_projection()])
        result = engine.match([make_po(program_description="MTO Hoxton Jun 2025")])

        assert result.matches[0].matched_via == "regular"
        assert repository.get_projection(pid).match_status == STATUS_MATCHED

    def test_sku_match_is_case_insensitive(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection(sku="abc123")])
        assert engine.match([make_po(sku=" ABC123 ")]).matched_count == 1

    def test_unresolved_vendor_is_skipped_not_failed(
        self, engine, repository, make_projection, make_po,
    ):
        [pid] = repository.insert_projections([make_projection()])

        result = engine.match([make_po(vendor_name_raw="Nobody Ltd")])

        assert result.matched_count == 0
        assert result.errors == []
        assert [(s.po_number, s.reason) for s in result.skipped] == [("PO-1001", "unresolved_vendor")]
        assert result.unresolved_vendors[0].vendor_name_raw == "Nobody Ltd"
        assert result.unresolved_vendors[0].po_count == 1
        assert repository.get_projection(pid).match_status == STATUS_UNMATCHED

    def test_missing_ship_date_is_skipped(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection()])
        result = engine.match([make_po(ship_date=None)])
        assert result.matched_count == 0
        assert result.skipped[0].reason == "missing_ship_date"

    def test_wrong_month_does_not_match(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection()])
        result = engine.match([make_po(ship_date=date(2025, 7, 1))])
        assert result.matched_count == 0
        assert result.skipped[0].reason == "no_match"

    def test_projection_consumed_once_per_run(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection()])

        result = engine.match([make_po(po_number="PO-A"), make_po(po_number="PO-B")])

        assert result.matched_count == 1
        assert result.matches[0].po_number == "PO-A"
        assert [(s.po_number, s.reason) for s in result.skipped] == [("PO-B", "no_match")]

    def test_matched_projection_is_not_rematched(self, engine, repository, make_projection, make_po):
        repository.insert_projections([make_projection()])
        engine.match([make_po(po_number="PO-A")])

        result = engine.match([make_po(po_number="PO-B")])

        assert result.matched_count == 0
        assert result.skipped[0].reason == "no_match"

    def test_concurrent_consumption_is_reported(
        self, engine, repository, make_projection, make_po, monkeypatch,
    ):
        [pid] = repository.insert_projections([make_projection()])
        stale = repository.list_open_projections(1)
        repository.apply_match(pid, "PO-OTHER", 1000, 50000, 0, 0, 0)
        monkeypatch.setattr(repository, "list_open_projections", lambda vendor_id=None: stale)

        result = engine.match([make_po()])

        assert result.matched_count == 0
        assert len(result.errors) == 1
        assert "PO-1001" in result.errors[0]
        assert repository.get_projection(pid).matched_po_number == "PO-OTHER"

    def test_persistence_failure_does_not_abort_batch(
        self, engine, repository, make_projection, make_po, monkeypatch,
    ):
        first, second = repository.insert_projections([
            make_projection(sku="AAA"),
            make_projection(sku="BBB"),
        ])
        real_apply = repository.apply_match

        def flaky_apply(projection_id, *args, **kwargs):
            if projection_id == first:
                raise sqlite3.OperationalError("database is locked")
            return real_apply(projection_id, *args, **kwargs)

        monkeypatch.setattr(repository, "apply_match", flaky_apply)

        result = engine.match([
            make_po(po_number="PO-A", sku="AAA"),
            make_po(po_number="PO-B", sku="BBB"),
        ])

        assert result.matched_count == 1
        assert len(result.errors) == 1
        assert "database is locked" in result.errors[0]
        assert repository.get_projection(second).match_status == STATUS_MATCHED

    def test_match_is_audited(self, engine, repository, make_projection, make_po):
        [pid] = repository.insert_projections([make_projection()])
        engine.match([make_po()])

        entries = repository.get_audit_log(f"projection:{pid}")
        assert [e["action"] for e in entries] == ["matched"]
        assert '"matched_via": "regular"' in entries[0]["detail"]


@pytest.mark.unit
class TestMatchResult:

    def test_merge_adds_counts_and_folds_unresolved(self):
        a = MatchResult(matched_count=1, unresolved_vendors=[UnresolvedVendor(vendor_name_raw="X", po_count=2)])
        b = MatchResult(
            matched_count=2, variance_count=1, errors=["boom"],
            unresolved_vendors=[
                UnresolvedVendor(vendor_name_raw="X", po_count=1),
                UnresolvedVendor(vendor_name_raw="Y", po_count=1),
            ],
        )
        a.merge(b)

        assert a.matched_count == 3
        assert a.variance_count == 1
        assert a.errors == ["boom"]
        assert {u.vendor_name_raw: u.po_count for u in a.unresolved_vendors} == {"X": 3, "Y": 1}
