"""
Storage Package

In-memory state shared by the services:
- CoalescingCache: TTL cache with one in-flight fetch per key
- PriceHistoryStore: fixed-capacity rolling price windows per symbol

Nothing here is persisted; the windows only hold what indicator math needs.
"""

from storage.cache import CoalescingCache
from storage.price_history import PriceHistoryStore

__all__ = ["CoalescingCache", "PriceHistoryStore"]
