"""ORM models persisted by the offline sync engine."""
from .cache_entry import CacheEntry
from .evicted_op import EvictedOp
from .pending_op import PendingOp

__all__ = ["CacheEntry", "EvictedOp", "PendingOp"]
