"""
Read-only reporting over live projections and the expired ledger.

Every query takes an explicit ProjectionFilter; nothing here writes.

days_until_due is measured from today to the FIRST day of the target
month, so a projection for the current month is already overdue
(negative) from the 2nd onwards.
"""
import logging
from datetime import date, datetime, timezone
from typing import Callable, Optional

from models.projection import (
    ExpiredProjection, Projection,
    ORDER_MTO, STATUS_EXPIRED, STATUS_MATCHED, STATUS_UNMATCHED,
)
from models.result import DueProjection, ExpiredSummary, ProjectionFilter, ValidationSummary

logger = logging.getLogger(__name__)

OVERDUE_THRESHOLD_DAYS = 90
MIN_VARIANCE_PCT = 10


def days_until_due(projection: Projection, today: date) -> int:
    return (date(projection.year, projection.month, 1) - today).days


def _annotate(projection: Projection, today: date) -> DueProjection:
    days = days_until_due(projection, today)
    return DueProjection(**projection.model_dump(), days_until_due=days, is_overdue=days < 0)


class ReportingQueries:

    def __init__(
        self,
        repository,
        clock: Optional[Callable[[], datetime]] = None,
        overdue_threshold_days: int = OVERDUE_THRESHOLD_DAYS,
        variance_flag_pct: int = MIN_VARIANCE_PCT,
    ):
        self.repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.overdue_threshold_days = overdue_threshold_days
        self.variance_flag_pct = variance_flag_pct

    def _today(self) -> date:
        return self._clock().date()

    # ------------------------------------------------------------------
    # Live projections
    # ------------------------------------------------------------------

    def overdue(
        self,
        threshold_days: Optional[int] = None,
        flt: Optional[ProjectionFilter] = None,
    ) -> list[DueProjection]:
        """
        Unmatched regular projections due within *threshold_days* (or already
        past due), most urgent first.  MTO rows are reported by spo().
        """
        threshold = self.overdue_threshold_days if threshold_days is None else threshold_days
        today = self._today()
        rows = self.repository.query_projections(
            flt, statuses=[STATUS_UNMATCHED], exclude_order_type=ORDER_MTO,
        )
        due = [_annotate(p, today) for p in rows]
        due = [p for p in due if p.days_until_due <= threshold]
        due.sort(key=lambda p: (p.days_until_due, p.id))
        return due

    def with_variance(
        self,
        min_variance_pct: Optional[int] = None,
        flt: Optional[ProjectionFilter] = None,
    ) -> list[Projection]:
        """Matched non-MTO projections with |variance_pct| > min, largest first."""
        min_pct = self.variance_flag_pct if min_variance_pct is None else min_variance_pct
        rows = self.repository.query_projections(
            flt,
            statuses=[STATUS_MATCHED],
            exclude_order_type=ORDER_MTO,
            order_by="ABS(COALESCE(variance_pct, 0)) DESC, id",
        )
        return [p for p in rows if p.variance_pct is not None and abs(p.variance_pct) > min_pct]

    def spo(self, flt: Optional[ProjectionFilter] = None) -> list[Projection]:
        """All MTO projections, newest period first; unmatched ones carry due dates."""
        today = self._today()
        rows = self.repository.query_projections(
            flt, order_type=ORDER_MTO, order_by="year DESC, month DESC, id",
        )
        return [
            _annotate(p, today) if p.match_status == STATUS_UNMATCHED else p
            for p in rows
        ]

    def validation_summary(self, flt: Optional[ProjectionFilter] = None) -> ValidationSummary:
        today = self._today()
        summary = ValidationSummary()
        for p in self.repository.query_projections(flt):
            summary.total_projections += 1
            if p.match_status == STATUS_UNMATCHED:
                summary.unmatched += 1
            elif p.match_status == STATUS_MATCHED:
                summary.matched += 1
            elif p.match_status == STATUS_EXPIRED:
                summary.removed += 1

            if p.order_type == ORDER_MTO:
                summary.spo_total += 1
                if p.match_status == STATUS_MATCHED:
                    summary.spo_matched += 1
                elif p.match_status == STATUS_UNMATCHED:
                    summary.spo_unmatched += 1
                continue

            if p.match_status == STATUS_UNMATCHED:
                days = days_until_due(p, today)
                if days < 0:
                    summary.overdue_count += 1
                elif days <= self.overdue_threshold_days:
                    summary.at_risk_count += 1
            elif (
                p.match_status == STATUS_MATCHED
                and p.variance_pct is not None
                and abs(p.variance_pct) > self.variance_flag_pct
            ):
                summary.with_variance += 1
        return summary

    def filter_options(self) -> dict:
        """Vendors and brands that occur in the live projection set."""
        return self.repository.filter_options()

    # ------------------------------------------------------------------
    # Expired ledger
    # ------------------------------------------------------------------

    def expired(
        self,
        flt: Optional[ProjectionFilter] = None,
        status: Optional[str] = None,
    ) -> list[ExpiredProjection]:
        return self.repository.list_expired(flt, status=status)

    def expired_summary(self) -> ExpiredSummary:
        return self.repository.expired_summary()
