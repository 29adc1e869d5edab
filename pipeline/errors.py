"""
Typed exceptions raised by operator-facing engine operations.

Batch operations (matching) never raise these for individual POs; failures
there are collected into MatchResult.errors instead.
"""


class ReconciliationError(Exception):
    """Base exception for all engine errors."""

    code: str = "RECONCILIATION_ERROR"


class NotFoundError(ReconciliationError, LookupError):
    """The target entity of an operator action does not exist."""

    code: str = "NOT_FOUND"


class ProjectionNotFoundError(NotFoundError):
    code: str = "PROJECTION_NOT_FOUND"

    def __init__(self, projection_id: int):
        self.projection_id = projection_id
        super().__init__(f"Projection not found: {projection_id}")


class ExpiredProjectionNotFoundError(NotFoundError):
    code: str = "EXPIRED_PROJECTION_NOT_FOUND"

    def __init__(self, expired_id: int):
        self.expired_id = expired_id
        super().__init__(f"Expired projection not found: {expired_id}")


class PurchaseOrderNotFoundError(NotFoundError):
    code: str = "PURCHASE_ORDER_NOT_FOUND"

    def __init__(self, po_number: str):
        self.po_number = po_number
        super().__init__(f"PO {po_number} not found")


class InvalidTransitionError(ReconciliationError, ValueError):
    """The requested state change is not allowed from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity} from {current!r} to {target!r}")


class StaleWriteError(ReconciliationError):
    """A conditional write found the row no longer in the expected state."""

    code: str = "STALE_WRITE"

    def __init__(self, projection_id: int):
        self.projection_id = projection_id
        super().__init__(
            f"Projection {projection_id} is no longer open for matching"
        )
