from .vendor_resolver import VendorResolver
from .collection_extractor import CollectionExtractor
from .database import ProjectionRepository
from .matching import MatchingEngine
from .lifecycle import LifecycleManager
from .archival import ArchivalService
from .reporting import ReportingQueries
from .processor import ReconciliationProcessor

__all__ = [
    "VendorResolver", "CollectionExtractor", "ProjectionRepository",
    "MatchingEngine", "LifecycleManager", "ArchivalService",
    "ReportingQueries", "ReconciliationProcessor",
]
