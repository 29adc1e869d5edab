from datetime import date, datetime
from pydantic import BaseModel, Field
from typing import Optional, Literal


OrderType = Literal["regular", "mto"]
MatchStatus = Literal["unmatched", "partial", "matched", "expired"]
VerificationStatus = Literal["pending", "verified", "cancelled", "restored"]

STATUS_UNMATCHED = "unmatched"
STATUS_PARTIAL   = "partial"
STATUS_MATCHED   = "matched"
STATUS_EXPIRED   = "expired"
OPEN_STATUSES    = (STATUS_UNMATCHED, STATUS_PARTIAL)

ORDER_REGULAR = "regular"
ORDER_MTO     = "mto"
ORDER_TYPES   = (ORDER_REGULAR, ORDER_MTO)

VERIFICATION_PENDING   = "pending"
VERIFICATION_VERIFIED  = "verified"
VERIFICATION_CANCELLED = "cancelled"
VERIFICATION_RESTORED  = "restored"


class NewProjection(BaseModel):
    """A projection row as delivered by a vendor projection import."""
    vendor_id: int
    sku: Optional[str] = None
    sku_description: Optional[str] = None
    collection: Optional[str] = None
    brand: str = ""
    year: int
    month: int = Field(ge=1, le=12)
    projected_qty: int = Field(default=0, ge=0)
    projected_value: int = Field(default=0, ge=0)
    order_type: OrderType = "regular"


class Projection(NewProjection):
    """
    A live projection row, including its accrued match/variance state.
    Exactly one of sku / collection is meaningful depending on order_type.
    """
    id: int
    match_status: MatchStatus = "unmatched"
    matched_po_number: Optional[str] = None
    matched_at: Optional[datetime] = None
    actual_qty: Optional[int] = None
    actual_value: Optional[int] = None
    quantity_variance: Optional[int] = None
    value_variance: Optional[int] = None
    variance_pct: Optional[int] = None
    comment: Optional[str] = None
    commented_at: Optional[datetime] = None
    commented_by: Optional[str] = None
    imported_at: datetime
    updated_at: datetime


class ProjectionHistory(Projection):
    """Append-only snapshot of a Projection taken before a vendor re-import."""
    history_id: int
    archived_at: datetime


class ExpiredProjection(BaseModel):
    """Review-ledger entry created whenever a projection moves to expired."""
    id: int
    original_projection_id: int
    vendor_id: int
    sku: Optional[str] = None
    collection: Optional[str] = None
    brand: str = ""
    year: int
    month: int
    projected_qty: int = 0
    projected_value: int = 0
    order_type: OrderType = "regular"
    expired_at: datetime
    expiration_reason: str                  # past_90_day_window | past_30_day_window | manual_removal
    threshold_days: int
    target_month_end: date
    days_overdue: int
    verification_status: VerificationStatus = VERIFICATION_PENDING
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    verification_notes: Optional[str] = None
    restored_at: Optional[datetime] = None
    restored_by: Optional[str] = None
