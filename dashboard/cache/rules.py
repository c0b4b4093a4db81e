"""
Transport cache rule table and cache-key derivation.

Rules are declared once at process start and evaluated in declaration
order against each outgoing request; the first match wins.
"""
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Pattern, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .core import CacheStrategy


@dataclass(frozen=True)
class CacheRule:
    """Static caching policy for one class of resources."""
    name: str
    match_pattern: Pattern[str]
    strategy: CacheStrategy
    cache_name: str
    max_entries: int
    max_age_seconds: int
    acceptable_statuses: FrozenSet[int] = frozenset({0, 200})
    network_timeout_seconds: Optional[float] = None
    methods: FrozenSet[str] = field(default_factory=lambda: frozenset({"GET"}))

    def __post_init__(self):
        if self.max_entries < 1:
            raise ValueError(f"Rule {self.name}: max_entries must be positive")
        if self.max_age_seconds <= 0:
            raise ValueError(f"Rule {self.name}: max_age_seconds must be positive")
        if self.strategy == CacheStrategy.NETWORK_FIRST and not self.network_timeout_seconds:
            raise ValueError(f"Rule {self.name}: network-first rules need a timeout")

    def matches(self, method: str, url: str) -> bool:
        """True if this rule intercepts the request."""
        if method.upper() not in self.methods:
            return False
        return self.match_pattern.search(url) is not None


STATIC_ASSET_PATTERN = re.compile(r"^https?.*\.(png|jpe?g|webp|svg|gif|tiff|js|css)$", re.IGNORECASE)
API_PATTERN = re.compile(r"^https?.*/api/.*")

STATIC_ASSETS_RULE = CacheRule(
    name="static-assets",
    match_pattern=STATIC_ASSET_PATTERN,
    strategy=CacheStrategy.CACHE_FIRST,
    cache_name="static-assets",
    max_entries=64,
    max_age_seconds=24 * 60 * 60,     # 24 hours
)

API_RULE = CacheRule(
    name="api",
    match_pattern=API_PATTERN,
    strategy=CacheStrategy.NETWORK_FIRST,
    cache_name="api-cache",
    max_entries=32,
    max_age_seconds=60,               # 1 minute, live manufacturing data
    acceptable_statuses=frozenset({0, 200}),
    network_timeout_seconds=10,
)

DEFAULT_CACHE_RULES: Tuple[CacheRule, ...] = (STATIC_ASSETS_RULE, API_RULE)


def find_rule(
    method: str,
    url: str,
    rules: Sequence[CacheRule] = DEFAULT_CACHE_RULES,
) -> Optional[CacheRule]:
    """
    Return the first rule matching the request, or None to pass through.

    Asset matching ignores the query string so cache-busting parameters
    don't defeat the extension check.
    """
    path_only = urlunsplit(urlsplit(url)._replace(query="", fragment=""))
    for rule in rules:
        candidate = path_only if rule.strategy == CacheStrategy.CACHE_FIRST else url
        if rule.matches(method, candidate):
            return rule
    return None


def make_cache_key(method: str, url: str) -> str:
    """
    Build the transport cache key from method + URL.

    Query parameters are sorted so equivalent requests share a key and
    distinct ones never collide; the fragment is dropped.
    """
    parts = urlsplit(url)
    params = sorted(parse_qsl(parts.query, keep_blank_values=True))
    normalized = urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path or "/",
        urlencode(params),
        "",
    ))
    return f"{method.upper()} {normalized}"
