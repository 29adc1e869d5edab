"""
Projection matching module.

Resolves each incoming PO to at most one open projection and records the
variance between what the vendor projected and what was actually ordered.

For every vendor present in a PO batch, under that vendor's lock:
  1. Load the vendor's unmatched/partial projections.
  2. Index them two ways:
       mto_index     (vendor_id, collection, year, month)  order_type=mto rows
       regular_index (vendor_id, sku, year, month)          every other row with a SKU
  3. For each PO (ship date gives the target year/month):
       a. MTO collection from the program description -> mto_index hit wins,
          and the PO is done.
       b. Otherwise the PO's SKU -> regular_index.
  4. A hit is persisted as one conditional write and removed from its index,
     so a projection is consumed at most once per run.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from models.projection import ORDER_MTO, Projection
from models.purchase_order import IncomingPO
from models.result import MatchResult, ProjectionMatch, SkippedPO, UnresolvedVendor
from .errors import StaleWriteError

logger = logging.getLogger(__name__)

# |variance_pct| strictly above this is flagged
VARIANCE_FLAG_PCT = 10

IndexKey = tuple[int, str, int, int]


def variance_pct(projected: int, actual: int) -> int:
    """
    round((actual - projected) / projected * 100), halves rounded toward
    +infinity; 0 when nothing was projected.

    Computed as floor(x + 1/2) in exact integer arithmetic.
    """
    if not projected or projected <= 0:
        return 0
    return (200 * (actual - projected) + projected) // (2 * projected)


def compute_variance(
    projected_qty: int,
    projected_value: int,
    actual_qty: int,
    actual_value: int,
) -> tuple[int, int, int]:
    """Return (quantity_variance, value_variance, variance_pct)."""
    return (
        actual_qty - projected_qty,
        actual_value - projected_value,
        variance_pct(projected_qty, actual_qty),
    )


def build_indices(projections: Iterable[Projection]) -> tuple[dict[IndexKey, Projection], dict[IndexKey, Projection]]:
    """Split open projections into (regular_index, mto_index)."""
    regular: dict[IndexKey, Projection] = {}
    mto: dict[IndexKey, Projection] = {}
    for p in projections:
        if p.order_type == ORDER_MTO and p.collection:
            mto[(p.vendor_id, p.collection.strip().lower(), p.year, p.month)] = p
        elif p.sku:
            regular[(p.vendor_id, p.sku.strip().lower(), p.year, p.month)] = p
    return regular, mto


class MatchingEngine:
    """
    Matches batches of incoming POs against open projections.

    The repository, resolver and collection extractor are injected; the
    extractor only needs an ``extract(text) -> Optional[str]`` method.
    """

    def __init__(
        self,
        repository,
        resolver,
        extractor,
        variance_flag_pct: int = VARIANCE_FLAG_PCT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.resolver = resolver
        self.extractor = extractor
        self.variance_flag_pct = variance_flag_pct
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def match(self, incoming_pos: Iterable[IncomingPO]) -> MatchResult:
        """
        Match a batch of POs. Never raises for a single PO: persistence
        failures are reported in MatchResult.errors.
        """
        result = MatchResult()
        by_vendor: dict[int, list[IncomingPO]] = {}
        unresolved: dict[str, int] = {}

        for po in incoming_pos:
            vendor_id = self.resolver.resolve(po.vendor_name_raw)
            if vendor_id is None:
                result.skipped.append(SkippedPO(
                    po_number=po.po_number,
                    reason="unresolved_vendor",
                    vendor_name_raw=po.vendor_name_raw,
                ))
                name = (po.vendor_name_raw or "").strip()
                if name:
                    unresolved[name] = unresolved.get(name, 0) + 1
                continue
            if po.ship_date is None:
                result.skipped.append(SkippedPO(
                    po_number=po.po_number,
                    reason="missing_ship_date",
                    vendor_name_raw=po.vendor_name_raw,
                ))
                continue
            by_vendor.setdefault(vendor_id, []).append(po)

        for vendor_id, vendor_pos in by_vendor.items():
            with self.repository.vendor_lock(vendor_id):
                self._match_vendor(vendor_id, vendor_pos, result)

        result.unresolved_vendors = [
            UnresolvedVendor(
                vendor_name_raw=name,
                po_count=count,
                suggestions=self.resolver.suggest(name),
            )
            for name, count in sorted(unresolved.items())
        ]

        logger.info(
            "Matching complete: %d matched, %d flagged, %d skipped, %d errors",
            result.matched_count, result.variance_count,
            len(result.skipped), len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Per-vendor matching
    # ------------------------------------------------------------------

    def _match_vendor(self, vendor_id: int, pos: list[IncomingPO], result: MatchResult) -> None:
        open_projections = self.repository.list_open_projections(vendor_id)
        if not open_projections:
            logger.debug("Vendor %d has no open projections", vendor_id)
            result.skipped.extend(
                SkippedPO(po_number=po.po_number, reason="no_match", vendor_name_raw=po.vendor_name_raw)
                for po in pos
            )
            return

        regular_index, mto_index = build_indices(open_projections)
        logger.debug(
            "Vendor %d: %d regular / %d MTO projections indexed",
            vendor_id, len(regular_index), len(mto_index),
        )

        for po in pos:
            year, month = po.ship_date.year, po.ship_date.month

            collection = self.extractor.extract(po.program_description)
            if collection:
                key = (vendor_id, collection, year, month)
                projection = mto_index.get(key)
                if projection is not None:
                    self._apply(projection, po, key, mto_index, "mto", result)
                    continue

            if po.sku:
                key = (vendor_id, po.sku.strip().lower(), year, month)
                projection = regular_index.get(key)
                if projection is not None:
                    self._apply(projection, po, key, regular_index, "regular", result)
                    continue

            result.skipped.append(SkippedPO(
                po_number=po.po_number,
                reason="no_match",
                vendor_name_raw=po.vendor_name_raw,
            ))

    def _apply(
        self,
        projection: Projection,
        po: IncomingPO,
        key: IndexKey,
        index: dict[IndexKey, Projection],
        matched_via: str,
        result: MatchResult,
    ) -> None:
        qty_var, value_var, pct = compute_variance(
            projection.projected_qty, projection.projected_value, po.quantity, po.value,
        )
        try:
            self.repository.apply_match(
                projection.id,
                po_number=po.po_number,
                actual_qty=po.quantity,
                actual_value=po.value,
                quantity_variance=qty_var,
                value_variance=value_var,
                variance_pct=pct,
                matched_at=self._clock().isoformat(),
                detail={"matched_via": matched_via},
            )
        except StaleWriteError as exc:
            index.pop(key, None)
            result.errors.append(f"Failed to match PO {po.po_number} to projection: {exc}")
            logger.warning("PO %s lost projection %d to a concurrent writer", po.po_number, projection.id)
            return
        except Exception as exc:
            result.errors.append(f"Failed to match PO {po.po_number} to projection: {exc}")
            logger.error("Failed to match PO %s to projection %d: %s", po.po_number, projection.id, exc)
            return

        index.pop(key, None)
        flagged = abs(pct) > self.variance_flag_pct
        result.matched_count += 1
        if flagged:
            result.variance_count += 1
        result.matches.append(ProjectionMatch(
            projection_id=projection.id,
            po_number=po.po_number,
            matched_via=matched_via,
            quantity_variance=qty_var,
            value_variance=value_var,
            variance_pct=pct,
            flagged=flagged,
        ))
        logger.info(
            "PO %s matched projection %d via %s (variance %+d%%)",
            po.po_number, projection.id, matched_via, pct,
        )
