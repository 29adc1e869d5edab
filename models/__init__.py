from .vendor import Vendor
from .purchase_order import IncomingPO
from .projection import NewProjection, Projection, ProjectionHistory, ExpiredProjection
from .result import (
    ProjectionFilter, SkippedPO, ProjectionMatch, VendorSuggestion, UnresolvedVendor,
    MatchResult, ExpirationResult, DueProjection, ValidationSummary, ExpiredSummary,
    ImportSummary,
)

__all__ = [
    "Vendor",
    "IncomingPO",
    "NewProjection", "Projection", "ProjectionHistory", "ExpiredProjection",
    "ProjectionFilter", "SkippedPO", "ProjectionMatch", "VendorSuggestion",
    "UnresolvedVendor", "MatchResult", "ExpirationResult", "DueProjection",
    "ValidationSummary", "ExpiredSummary", "ImportSummary",
]
