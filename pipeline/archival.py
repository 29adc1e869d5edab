"""
Projection archival.

Before a vendor's projections are replaced by a fresh import, every current
row for that vendor (whatever its status and accrued match data) is copied to
projection_history and deleted from the live table.  Archive and re-insert
happen in one transaction, so readers never see a vendor with no rows
half-way through a re-import.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from models.projection import NewProjection, ProjectionHistory

logger = logging.getLogger(__name__)


class ArchivalService:

    def __init__(self, repository, clock: Optional[Callable[[], datetime]] = None):
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def archive(self, vendor_id: int) -> int:
        """Move all of a vendor's live projections to history. Returns the count."""
        archived = self.repository.archive_vendor(vendor_id, archived_at=self._clock().isoformat())
        logger.info("Archived %d projection(s) for vendor %d", archived, vendor_id)
        return archived

    def reimport(self, vendor_id: int, projections: Iterable[NewProjection]) -> tuple[int, list[int]]:
        """
        Archive the vendor's live rows, then insert *projections* as unmatched.

        Rows for other vendors are rejected with ValueError before anything is
        written.

        Returns:
            (archived_count, new_projection_ids)
        """
        projections = list(projections)
        foreign = {p.vendor_id for p in projections if p.vendor_id != vendor_id}
        if foreign:
            raise ValueError(
                f"Re-import for vendor {vendor_id} contains rows for vendors {sorted(foreign)}"
            )
        archived, ids = self.repository.replace_vendor_projections(
            vendor_id, projections, archived_at=self._clock().isoformat(),
        )
        logger.info(
            "Vendor %d re-imported: %d archived, %d new projection(s)",
            vendor_id, archived, len(ids),
        )
        return archived, ids

    def history(
        self,
        vendor_id: int,
        sku: Optional[str] = None,
        year: Optional[int] = None,
    ) -> list[ProjectionHistory]:
        """Archived snapshots for a vendor, newest archive first."""
        return self.repository.list_history(vendor_id, sku=sku, year=year)
