"""
Projection lifecycle management.

State machine for a live projection:

    unmatched/partial --match--------------> matched
    matched ----------unmatch--------------> unmatched
    unmatched/partial --sweep / removal----> expired   (+ ledger entry)
    expired ----------restore--------------> unmatched (ledger: restored)

The expired-projection ledger has its own review states
(pending -> verified | cancelled, any but restored -> restored) which never
touch the live projection, except restore.

Operator actions validate the target first and raise a NotFoundError
subclass when it is missing, or InvalidTransitionError when the current
state does not allow the change.
"""
import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from config import DEFAULT_KNOWN_COLLECTIONS
from models.projection import (
    ExpiredProjection, Projection, OPEN_STATUSES, ORDER_MTO, ORDER_TYPES,
    STATUS_EXPIRED, STATUS_MATCHED, STATUS_UNMATCHED,
    VERIFICATION_CANCELLED, VERIFICATION_RESTORED, VERIFICATION_VERIFIED,
)
from models.purchase_order import IncomingPO
from models.result import ExpirationResult
from .collection_extractor import CollectionExtractor
from .errors import (
    ExpiredProjectionNotFoundError, InvalidTransitionError,
    ProjectionNotFoundError, PurchaseOrderNotFoundError,
)
from .matching import compute_variance

logger = logging.getLogger(__name__)

REGULAR_WINDOW_DAYS = 90
MTO_WINDOW_DAYS = 30

_REVIEW_STATUSES = (VERIFICATION_VERIFIED, VERIFICATION_CANCELLED)


def _po_figures(projection: Projection, lines: list[IncomingPO], extractor) -> tuple[int, int]:
    """
    Pick the (quantity, value) a PO contributes to *projection*.

    Lines are chosen the way MatchingEngine would bind them: for an MTO
    projection the first line whose description extracts to its collection,
    otherwise the first line carrying its SKU; a line shipping in the
    projection's month is preferred.  With no such line, the only line, else
    the PO total across all lines.
    """
    if projection.order_type == ORDER_MTO and projection.collection:
        collection = projection.collection.strip().lower()
        candidates = [l for l in lines if extractor.extract(l.program_description) == collection]
    elif projection.sku:
        sku = projection.sku.strip().lower()
        candidates = [l for l in lines if l.sku and l.sku.strip().lower() == sku]
    else:
        candidates = []

    in_period = [
        l for l in candidates
        if l.ship_date and (l.ship_date.year, l.ship_date.month) == (projection.year, projection.month)
    ]
    for line in in_period or candidates:
        return line.quantity, line.value

    if len(lines) == 1:
        return lines[0].quantity, lines[0].value
    return sum(l.quantity for l in lines), sum(l.value for l in lines)


class LifecycleManager:
    """Time-windowed expiration plus operator-driven state transitions."""

    def __init__(
        self,
        repository,
        regular_window_days: int = REGULAR_WINDOW_DAYS,
        mto_window_days: int = MTO_WINDOW_DAYS,
        extractor=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.extractor = extractor or CollectionExtractor(DEFAULT_KNOWN_COLLECTIONS)
        self.regular_window_days = regular_window_days
        self.mto_window_days = mto_window_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Scheduled sweep
    # ------------------------------------------------------------------

    def expire_sweep(self, today: Optional[date] = None) -> ExpirationResult:
        """
        Expire every open projection whose order window has closed.

        Regular: today > last day of target month - regular_window_days.
        MTO:     today > last day of target month - mto_window_days.

        Safe to re-run: rows already expired are not open, so a second run
        on the same day changes nothing.
        """
        today = today or self._clock().date()
        result = self.repository.expire_due(
            today=today.isoformat(),
            regular_days=self.regular_window_days,
            mto_days=self.mto_window_days,
            now=self._clock().isoformat(),
        )
        logger.info(
            "Expiration sweep (%s): %d expired (%d regular, %d MTO)",
            today, result.expired_count, result.regular_expired, result.spo_expired,
        )
        return result

    # ------------------------------------------------------------------
    # Operator actions on live projections
    # ------------------------------------------------------------------

    def mark_removed(self, projection_id: int, reason: str, actor: str = "operator") -> Projection:
        """Force an open projection to expired regardless of its window."""
        projection = self._require_projection(projection_id)
        if projection.match_status not in OPEN_STATUSES:
            raise InvalidTransitionError(
                f"projection {projection_id}", projection.match_status, STATUS_EXPIRED,
            )
        expired_id = self.repository.remove_projection(
            projection_id,
            reason=reason,
            actor=actor,
            today=self._clock().date().isoformat(),
        )
        if expired_id is None:
            current = self._require_projection(projection_id)
            raise InvalidTransitionError(
                f"projection {projection_id}", current.match_status, STATUS_EXPIRED,
            )
        logger.info("Projection %d removed by %s: %s", projection_id, actor, reason)
        return self._require_projection(projection_id)

    def unmatch(self, projection_id: int, actor: str = "operator") -> Projection:
        """Revert a matched projection, clearing PO binding and variance data."""
        projection = self._require_projection(projection_id)
        if projection.match_status != STATUS_MATCHED or not self.repository.clear_match(projection_id, actor=actor):
            raise InvalidTransitionError(
                f"projection {projection_id}", projection.match_status, STATUS_UNMATCHED,
            )
        logger.info(
            "Projection %d unmatched from PO %s by %s",
            projection_id, projection.matched_po_number, actor,
        )
        return self._require_projection(projection_id)

    def manual_match(self, projection_id: int, po_number: str, actor: str = "operator") -> Projection:
        """
        Bind a recorded PO to a projection chosen by an operator.

        Variance is computed exactly as in automatic matching.
        """
        projection = self._require_projection(projection_id)
        lines = self.repository.get_purchase_order_lines(po_number)
        if not lines:
            raise PurchaseOrderNotFoundError(po_number)
        if projection.match_status not in OPEN_STATUSES:
            raise InvalidTransitionError(
                f"projection {projection_id}", projection.match_status, STATUS_MATCHED,
            )

        actual_qty, actual_value = _po_figures(projection, lines, self.extractor)
        qty_var, value_var, pct = compute_variance(
            projection.projected_qty, projection.projected_value, actual_qty, actual_value,
        )
        self.repository.apply_match(
            projection_id,
            po_number=lines[0].po_number,
            actual_qty=actual_qty,
            actual_value=actual_value,
            quantity_variance=qty_var,
            value_variance=value_var,
            variance_pct=pct,
            matched_at=self._clock().isoformat(),
            actor=actor,
            action="manual_matched",
        )
        logger.info(
            "Projection %d manually matched to PO %s by %s (variance %+d%%)",
            projection_id, po_number, actor, pct,
        )
        return self._require_projection(projection_id)

    def set_order_type(self, projection_id: int, order_type: str, actor: str = "operator") -> Projection:
        """Reclassify a projection as regular or MTO."""
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Invalid order type {order_type!r}. Must be one of {ORDER_TYPES}")
        self._require_projection(projection_id)
        self.repository.set_order_type(projection_id, order_type, actor=actor)
        return self._require_projection(projection_id)

    # ------------------------------------------------------------------
    # Expired-projection review ledger
    # ------------------------------------------------------------------

    def restore(self, expired_id: int, restored_by: str) -> ExpiredProjection:
        """Mark a ledger entry restored and reopen its projection as unmatched."""
        entry = self._require_expired(expired_id)
        if entry.verification_status == VERIFICATION_RESTORED:
            raise InvalidTransitionError(
                f"expired projection {expired_id}", entry.verification_status, VERIFICATION_RESTORED,
            )
        reopened = self.repository.restore_expired(expired_id, restored_by)
        if reopened:
            logger.info(
                "Expired projection %d restored by %s; projection %d reopened",
                expired_id, restored_by, entry.original_projection_id,
            )
        else:
            logger.warning(
                "Expired projection %d restored by %s but projection %d is gone or not expired",
                expired_id, restored_by, entry.original_projection_id,
            )
        return self._require_expired(expired_id)

    def verify(
        self,
        expired_id: int,
        status: str,
        verified_by: str,
        notes: Optional[str] = None,
    ) -> ExpiredProjection:
        """Record an operator review outcome. The live projection is untouched."""
        if status not in _REVIEW_STATUSES:
            raise ValueError(f"Invalid verification status {status!r}. Must be one of {_REVIEW_STATUSES}")
        entry = self._require_expired(expired_id)
        if not self.repository.set_verification(expired_id, status, verified_by, notes):
            raise InvalidTransitionError(
                f"expired projection {expired_id}", entry.verification_status, status,
            )
        logger.info("Expired projection %d marked %s by %s", expired_id, status, verified_by)
        return self._require_expired(expired_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_projection(self, projection_id: int) -> Projection:
        projection = self.repository.get_projection(projection_id)
        if projection is None:
            raise ProjectionNotFoundError(projection_id)
        return projection

    def _require_expired(self, expired_id: int) -> ExpiredProjection:
        entry = self.repository.get_expired(expired_id)
        if entry is None:
            raise ExpiredProjectionNotFoundError(expired_id)
        return entry
