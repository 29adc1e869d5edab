from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from .projection import Projection


SkipReason = Literal[
    "unresolved_vendor",
    "missing_ship_date",
    "no_match",
]

MatchIndex = Literal["mto", "regular"]


class ProjectionFilter(BaseModel):
    """Explicit filter for projection read queries. None means "any"."""
    vendor_id: Optional[int] = None
    brand: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None


class SkippedPO(BaseModel):
    """An incoming PO that did not change any projection. Not an error."""
    po_number: str
    reason: SkipReason
    vendor_name_raw: Optional[str] = None


class ProjectionMatch(BaseModel):
    """One successful PO → projection match made during a run."""
    projection_id: int
    po_number: str
    matched_via: MatchIndex
    quantity_variance: int
    value_variance: int
    variance_pct: int
    flagged: bool = False


class VendorSuggestion(BaseModel):
    vendor_id: int
    vendor_name: str
    score: float                            # 0-100 rapidfuzz score


class UnresolvedVendor(BaseModel):
    """A raw vendor name seen in a PO batch that resolved to no vendor."""
    vendor_name_raw: str
    po_count: int = 0
    suggestions: List[VendorSuggestion] = Field(default_factory=list)


class MatchResult(BaseModel):
    """
    Outcome of one matching run.

    Per-PO persistence failures are collected in errors; they never abort
    the run.
    """
    matched_count: int = 0
    variance_count: int = 0
    errors: List[str] = Field(default_factory=list)
    skipped: List[SkippedPO] = Field(default_factory=list)
    matches: List[ProjectionMatch] = Field(default_factory=list)
    unresolved_vendors: List[UnresolvedVendor] = Field(default_factory=list)
    deferred_count: int = 0   # PO lines left for a later run after a shutdown request

    def merge(self, other: "MatchResult") -> None:
        """Fold the result of a later batch into this one."""
        self.matched_count += other.matched_count
        self.variance_count += other.variance_count
        self.deferred_count += other.deferred_count
        self.errors.extend(other.errors)
        self.skipped.extend(other.skipped)
        self.matches.extend(other.matches)
        by_name = {u.vendor_name_raw: u for u in self.unresolved_vendors}
        for u in other.unresolved_vendors:
            if u.vendor_name_raw in by_name:
                by_name[u.vendor_name_raw].po_count += u.po_count
            else:
                self.unresolved_vendors.append(u)
                by_name[u.vendor_name_raw] = u


class ExpirationResult(BaseModel):
    expired_count: int = 0
    regular_expired: int = 0
    spo_expired: int = 0


class DueProjection(Projection):
    """A projection annotated with its distance to the target month."""
    days_until_due: Optional[int] = None
    is_overdue: Optional[bool] = None


class ValidationSummary(BaseModel):
    total_projections: int = 0
    unmatched: int = 0
    matched: int = 0
    removed: int = 0
    overdue_count: int = 0
    at_risk_count: int = 0
    with_variance: int = 0
    spo_total: int = 0
    spo_matched: int = 0
    spo_unmatched: int = 0


class ExpiredSummary(BaseModel):
    total: int = 0
    pending: int = 0
    verified: int = 0
    cancelled: int = 0
    restored: int = 0


class ImportSummary(BaseModel):
    """Outcome of a projection import (archive-then-replace) for one file."""
    vendors: int = 0
    archived: int = 0
    imported: int = 0
    rejected_rows: int = 0
    unresolved_vendors: List[str] = Field(default_factory=list)
