from .detect import detect_indices_needing_enrichment
from .driver import ContinuationDriver
from .lock import LockManager
from .trigger import EnrichmentTrigger, build_lock_id

__all__ = [
    "ContinuationDriver",
    "EnrichmentTrigger",
    "LockManager",
    "build_lock_id",
    "detect_indices_needing_enrichment",
]
