"""
Integration tests for projection archival and re-import.
"""
import pytest

from pipeline.archival import ArchivalService


@pytest.fixture
def archival(repository, clock) -> ArchivalService:
    return ArchivalService(repository, clock=clock)


@pytest.mark.integration
class TestArchivalService:

    def test_reimport_snapshots_previous_state(self, archival, repository, make_projection):
        first, second = repository.insert_projections([
            make_projection(sku="ABC123"),
            make_projection(sku="XYZ789", month=7),
        ])
        repository.apply_match(first, "PO-1", 1200, 58000, 200, 8000, 20)
        before = repository.get_projection(first)

        archived, new_ids = archival.reimport(1, [make_projection(sku="ABC123", projected_qty=1100)])

        assert archived == 2
        assert len(new_ids) == 1
        live = repository.query_projections()
        assert [p.id for p in live] == new_ids
        assert live[0].match_status == "unmatched"
        assert live[0].projected_qty == 1100

        history = archival.history(1)
        assert {h.id for h in history} == {first, second}
        snap = next(h for h in history if h.id == first)
        assert snap.match_status == "matched"
        assert snap.matched_po_number == before.matched_po_number
        assert snap.actual_qty == before.actual_qty
        assert snap.variance_pct == before.variance_pct
        assert snap.imported_at == before.imported_at
        assert snap.archived_at.year == 2025

    def test_other_vendors_untouched(self, archival, repository, make_projection):
        _, other = repository.insert_projections([
            make_projection(vendor_id=1),
            make_projection(vendor_id=2),
        ])

        archival.reimport(1, [])

        assert [p.id for p in repository.query_projections()] == [other]
        assert archival.history(2) == []

    def test_archive(self, archival, repository, make_projection):
        repository.insert_projections([make_projection(), make_projection(month=7)])

        assert archival.archive(1) == 2
        assert repository.query_projections() == []
        assert len(archival.history(1)) == 2
        assert repository.get_audit_log("vendor:1")[-1]["action"] == "archived"

    def test_history_filters(self, archival, repository, make_projection):
        repository.insert_projections([
            make_projection(sku="ABC123", year=2025),
            make_projection(sku="ABC123", year=2026),
            make_projection(sku="XYZ789", year=2025),
        ])
        archival.archive(1)

        assert len(archival.history(1, sku="abc123")) == 2
        assert len(archival.history(1, sku="ABC123", year=2026)) == 1
        assert len(archival.history(1, year=2025)) == 2

    def test_repeated_reimports_keep_every_snapshot(self, archival, repository, make_projection):
        repository.insert_projections([make_projection()])
        archival.reimport(1, [make_projection(projected_qty=2)])
        archival.reimport(1, [make_projection(projected_qty=3)])

        assert sorted(h.projected_qty for h in archival.history(1)) == [2, 1000]
        assert repository.query_projections()[0].projected_qty == 3

    def test_reimport_rejects_foreign_rows(self, archival, repository, make_projection):
        repository.insert_projections([make_projection()])

        with pytest.raises(ValueError):
            archival.reimport(1, [make_projection(vendor_id=2)])

        assert len(repository.query_projections()) == 1
        assert archival.history(1) == []
