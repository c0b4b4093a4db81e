"""
Caching layers: persistent transport caches with per-rule eviction and an
in-memory query cache with stale-while-revalidate and request coalescing.
"""
from .core import CacheEntry, CacheStrategy, QueryKey, QueryResult, QueryState, QueryStatus
from .rules import (
    API_RULE,
    DEFAULT_CACHE_RULES,
    STATIC_ASSETS_RULE,
    CacheRule,
    find_rule,
    make_cache_key,
)
from .coalescer import RequestCoalescer
from .store import PersistentCacheStore
from .transport import ApiResponseCacheManager, AssetCacheManager, CacheRouter
from .query import QueryCacheCoordinator, QuerySubscription, normalize_key

__all__ = [
    # Core types
    "CacheEntry",
    "CacheStrategy",
    "QueryKey",
    "QueryResult",
    "QueryState",
    "QueryStatus",
    # Rules
    "API_RULE",
    "DEFAULT_CACHE_RULES",
    "STATIC_ASSETS_RULE",
    "CacheRule",
    "find_rule",
    "make_cache_key",
    # Coalescing
    "RequestCoalescer",
    # Transport caches
    "PersistentCacheStore",
    "AssetCacheManager",
    "ApiResponseCacheManager",
    "CacheRouter",
    # Query cache
    "QueryCacheCoordinator",
    "QuerySubscription",
    "normalize_key",
]
