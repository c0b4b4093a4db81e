"""
SQLite storage layer for the transport caches.

One table holds every named cache (static assets, API responses); rows are
partitioned by cache_name. The store survives process restarts, which is
what lets a tablet keep serving assets while offline.
"""
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .core import CacheEntry

logger = logging.getLogger("cache.store")


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    cache_name TEXT NOT NULL,
    key TEXT NOT NULL,
    value BLOB NOT NULL,
    headers TEXT NOT NULL,
    source_status INTEGER NOT NULL,
    stored_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    UNIQUE(cache_name, key)
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_order ON cache_entries(cache_name, seq);
CREATE INDEX IF NOT EXISTS idx_cache_entries_expiry ON cache_entries(cache_name, expires_at);
"""


class CacheStoreClosedError(RuntimeError):
    """Raised when the store is used outside init()/shutdown()."""


class PersistentCacheStore:
    """
    SQLite-based storage shared by every transport cache manager.

    Handles:
    - Reading and writing entries per named cache
    - Count-based eviction in storage order
    - Purging expired entries
    """

    def __init__(
        self,
        db_path: Path,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._open = False

    def init(self) -> None:
        """Create the database file and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
            self._open = True
        logger.info(f"Transport cache store ready at {self.db_path}")

    def shutdown(self) -> None:
        """Mark the store closed; connections are per operation."""
        with self._lock:
            self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_open(self) -> None:
        if not self._open:
            raise CacheStoreClosedError(f"Cache store {self.db_path} is not initialised")

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            value=bytes(row["value"]),
            stored_at=row["stored_at"],
            expires_at=row["expires_at"],
            source_status=row["source_status"],
            headers=json.loads(row["headers"]),
            cache_name=row["cache_name"],
        )

    # =========================================================================
    # Entries
    # =========================================================================

    def get(self, cache_name: str, key: str) -> Optional[CacheEntry]:
        """Return the stored entry for key, expired or not."""
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM cache_entries WHERE cache_name = ? AND key = ?",
                    (cache_name, key),
                ).fetchone()
        return self._row_to_entry(row) if row else None

    def put(self, entry: CacheEntry, max_entries: int) -> int:
        """
        Store an entry, replacing any previous one for the same key.

        Returns the number of entries evicted to honour max_entries;
        the least-recently-stored entries go first.
        """
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM cache_entries WHERE cache_name = ? AND key = ?",
                    (entry.cache_name, entry.key),
                )
                conn.execute(
                    """
                    INSERT INTO cache_entries (
                        cache_name, key, value, headers, source_status,
                        stored_at, expires_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.cache_name,
                        entry.key,
                        sqlite3.Binary(entry.value),
                        json.dumps(entry.headers),
                        entry.source_status,
                        entry.stored_at,
                        entry.expires_at,
                    ),
                )
                cursor = conn.execute(
                    """
                    DELETE FROM cache_entries WHERE cache_name = ? AND seq IN (
                        SELECT seq FROM cache_entries WHERE cache_name = ?
                        ORDER BY seq DESC LIMIT -1 OFFSET ?
                    )
                    """,
                    (entry.cache_name, entry.cache_name, max_entries),
                )
                evicted = cursor.rowcount
                conn.commit()

        if evicted:
            logger.debug(f"Evicted {evicted} entries from {entry.cache_name}")
        return evicted

    def delete(self, cache_name: str, key: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM cache_entries WHERE cache_name = ? AND key = ?",
                    (cache_name, key),
                )
                conn.commit()
                return cursor.rowcount > 0

    def purge_expired(self, cache_name: Optional[str] = None) -> int:
        """Delete every entry past its expiry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                if cache_name is None:
                    cursor = conn.execute(
                        "DELETE FROM cache_entries WHERE expires_at <= ?", (now,)
                    )
                else:
                    cursor = conn.execute(
                        "DELETE FROM cache_entries WHERE cache_name = ? AND expires_at <= ?",
                        (cache_name, now),
                    )
                conn.commit()
                purged = cursor.rowcount

        if purged:
            logger.info(f"Purged {purged} expired cache entries")
        return purged

    def clear(self, cache_name: Optional[str] = None) -> int:
        """Remove all entries, or all entries of one cache."""
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                if cache_name is None:
                    cursor = conn.execute("DELETE FROM cache_entries")
                else:
                    cursor = conn.execute(
                        "DELETE FROM cache_entries WHERE cache_name = ?", (cache_name,)
                    )
                conn.commit()
                return cursor.rowcount

    def keys(self, cache_name: str) -> List[str]:
        """Keys of a cache in storage order, oldest first."""
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT key FROM cache_entries WHERE cache_name = ? ORDER BY seq",
                    (cache_name,),
                ).fetchall()
        return [row["key"] for row in rows]

    def count(self, cache_name: str) -> int:
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM cache_entries WHERE cache_name = ?",
                    (cache_name,),
                ).fetchone()
        return row["n"]

    def get_stats(self) -> Dict[str, int]:
        """Entry counts per cache name."""
        with self._lock:
            self._ensure_open()
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT cache_name, COUNT(*) AS n FROM cache_entries GROUP BY cache_name"
                ).fetchall()
        return {row["cache_name"]: row["n"] for row in rows}
