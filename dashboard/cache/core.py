"""
Core cache data structures.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


QueryKey = Tuple[Any, ...]


class CacheStrategy(Enum):
    """How a transport cache rule resolves a request."""
    CACHE_FIRST = "cache_first"       # Serve a valid entry, fetch only on miss
    NETWORK_FIRST = "network_first"   # Fetch live, fall back to entry on timeout


class QueryStatus(Enum):
    """Lifecycle of a logical query in the in-memory coordinator."""
    IDLE = "idle"
    FETCHING = "fetching"
    FRESH = "fresh"
    STALE = "stale"
    ERROR = "error"


@dataclass
class CacheEntry:
    """
    A stored transport response.

    Owned by the cache manager that stored it. `expires_at` is always
    later than `stored_at`.
    """
    key: str
    value: bytes
    stored_at: float
    expires_at: float
    source_status: int
    headers: Dict[str, str] = field(default_factory=dict)
    cache_name: str = ""

    def __post_init__(self):
        if self.expires_at <= self.stored_at:
            raise ValueError(f"Cache entry {self.key} expires before it was stored")

    def age_seconds(self, now: Optional[float] = None) -> float:
        """Seconds since the entry was stored."""
        return (now if now is not None else time.time()) - self.stored_at

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True once the entry has outlived its rule's max age."""
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass
class QueryState:
    """
    In-memory state for one logical query key.

    Mutated only by the QueryCacheCoordinator, under its lock.
    """
    key: QueryKey
    data: Any = None
    has_data: bool = False
    last_fetched_at: Optional[float] = None
    status: QueryStatus = QueryStatus.IDLE
    error: Optional[Exception] = None
    fetcher: Optional[Callable[[], Any]] = None
    in_flight: bool = False
    invalidated: bool = False
    subscribers: int = 0
    created_at: float = field(default_factory=time.time)
    inactive_since: Optional[float] = None
    generation: int = 0

    def is_stale(self, now: float, stale_seconds: float) -> bool:
        """Data is stale once invalidated or older than the freshness window."""
        if not self.has_data or self.last_fetched_at is None:
            return True
        if self.invalidated:
            return True
        return (now - self.last_fetched_at) >= stale_seconds

    def gc_reference(self) -> float:
        """Timestamp the garbage-collection window is measured from."""
        candidates = [self.created_at]
        if self.last_fetched_at is not None:
            candidates.append(self.last_fetched_at)
        if self.inactive_since is not None:
            candidates.append(self.inactive_since)
        return max(candidates)


@dataclass
class QueryResult:
    """
    What a read returns: the current data (possibly stale) plus its status.
    """
    key: QueryKey
    data: Any
    status: QueryStatus
    error: Optional[Exception] = None
    updated_at: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        return self.status == QueryStatus.STALE

    def to_meta(self) -> Dict[str, Any]:
        """Metadata block included in dashboard responses."""
        meta: Dict[str, Any] = {"status": self.status.value}
        if self.updated_at is not None:
            meta["lastUpdated"] = (
                datetime.fromtimestamp(self.updated_at, tz=timezone.utc)
                .isoformat()
                .replace("+00:00", "Z")
            )
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            meta["error"] = to_dict() if to_dict else {"message": str(self.error)}
        return meta
