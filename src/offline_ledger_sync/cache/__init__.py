"""Cache layer - Read-through TTL cache over the local store."""

from offline_ledger_sync.cache.local import (
    CacheRegistry,
    LocalCacheFacade,
    TimedCache,
)

__all__ = [
    "CacheRegistry",
    "LocalCacheFacade",
    "TimedCache",
]
