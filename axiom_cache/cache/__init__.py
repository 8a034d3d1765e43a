"""
Three-tier artifact cache with request coalescing and write-behind.
"""
from .core import CacheEntry, TierName, TierStats
from .lru import LRUTier
from .persistent import PersistentTier
from .distributed import DistributedTier, RedisTier
from .coalescer import InFlightLoad, RequestCoalescer
from .writer import BackgroundWriter
from .coordinator import CacheCoordinator

__all__ = [
    # Core types
    "CacheEntry",
    "TierName",
    "TierStats",
    # Tiers
    "LRUTier",
    "PersistentTier",
    "DistributedTier",
    "RedisTier",
    # Coalescing
    "InFlightLoad",
    "RequestCoalescer",
    "BackgroundWriter",
    # Coordinator
    "CacheCoordinator",
]
