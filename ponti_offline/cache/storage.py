"""Named cache stores backed by SQLite.

A ``CacheStorage`` holds any number of named ``CacheStore`` instances. The
worker only ever uses two of them (``static`` and ``data``), and their names
carry the cache version so that a version bump makes the previous stores
stale as a whole.
"""

import json
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from ponti_offline.storage.manager import DatabaseManager
from ponti_offline.storage.models import CachedResponse
from ponti_offline.utils.logger import get_logger


def normalize_path(url: str) -> str:
    """Reduce a URL to ``path?query``; the scheme, host and fragment are dropped."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        return f"{path}?{parts.query}"
    return path


def request_key(method: str, url: str) -> str:
    """Key for a full request: method plus normalized path and query."""
    return f"{method.upper()} {normalize_path(url)}"


def data_key(url: str) -> str:
    """Key for a data-API entry: path and query only, method and headers ignored."""
    return normalize_path(url)


class CacheStore:
    """A single named key to response mapping.

    Every ``put`` is one ``REPLACE`` statement, so concurrent writers to the
    same key are last-write-wins and never leave a half-written entry.
    """

    def __init__(self, db_manager: DatabaseManager, name: str) -> None:
        self.db_manager = db_manager
        self.name = name

    def __repr__(self) -> str:
        return f"CacheStore({self.name!r})"

    def match(self, key: str) -> Optional[CachedResponse]:
        rows = self.db_manager.execute_query(
            "SELECT response_data, headers, status_code, stored_at FROM cache_entries "
            "WHERE store_name = ? AND cache_key = ?",
            (self.name, key),
        )
        if not rows:
            return None
        data, headers, status_code, stored_at = rows[0]
        return CachedResponse(
            data=bytes(data), headers=json.loads(headers), status_code=status_code, stored_at=stored_at
        )

    def put(self, key: str, response: CachedResponse, url: Optional[str] = None) -> None:
        # Writing into a store that was deleted meanwhile recreates it, like caches.open()
        self.db_manager.execute_transaction(
            [
                ("INSERT OR IGNORE INTO cache_stores (name) VALUES (?)", (self.name,)),
                (
                    "REPLACE INTO cache_entries (store_name, cache_key, url, response_data, headers, "
                    "status_code, stored_at) VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)",
                    (
                        self.name,
                        key,
                        url,
                        response.data,
                        json.dumps(response.headers, separators=(",", ":")),
                        response.status_code,
                    ),
                ),
            ]
        )

    def delete(self, key: str) -> bool:
        return (
            self.db_manager.execute_update(
                "DELETE FROM cache_entries WHERE store_name = ? AND cache_key = ?", (self.name, key)
            )
            > 0
        )

    def keys(self) -> List[str]:
        rows = self.db_manager.execute_query(
            "SELECT cache_key FROM cache_entries WHERE store_name = ? ORDER BY rowid", (self.name,)
        )
        return [row[0] for row in rows]

    def urls(self) -> List[Tuple[str, Optional[str]]]:
        """Return ``(key, url)`` pairs in insertion order."""
        rows = self.db_manager.execute_query(
            "SELECT cache_key, url FROM cache_entries WHERE store_name = ? ORDER BY rowid", (self.name,)
        )
        return [(row[0], row[1]) for row in rows]

    def size(self) -> int:
        """Sum of the stored body sizes in bytes."""
        rows = self.db_manager.execute_query(
            "SELECT SUM(LENGTH(response_data)) FROM cache_entries WHERE store_name = ?", (self.name,)
        )
        return int(rows[0][0] or 0) if rows else 0

    def purge_older_than(self, seconds: int) -> int:
        """Delete entries stored more than ``seconds`` ago; returns the count removed."""
        return self.db_manager.execute_update(
            "DELETE FROM cache_entries WHERE store_name = ? AND stored_at < datetime('now', ?)",
            (self.name, f"-{int(seconds)} seconds"),
        )


class CacheStorage:
    """The set of named cache stores, the analogue of the browser's ``caches``."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager
        self.logger = get_logger("cache.storage")

    def open(self, name: str) -> CacheStore:
        """Return the named store, creating it if it does not exist yet."""
        self.db_manager.execute_update("INSERT OR IGNORE INTO cache_stores (name) VALUES (?)", (name,))
        return CacheStore(self.db_manager, name)

    def has(self, name: str) -> bool:
        return bool(self.db_manager.execute_query("SELECT 1 FROM cache_stores WHERE name = ?", (name,)))

    def keys(self) -> List[str]:
        rows = self.db_manager.execute_query("SELECT name FROM cache_stores ORDER BY rowid")
        return [row[0] for row in rows]

    def delete(self, name: str) -> bool:
        """Drop a store with all of its entries. Returns False if it did not exist."""
        existed = self.has(name)
        self.db_manager.execute_transaction(
            [
                ("DELETE FROM cache_entries WHERE store_name = ?", (name,)),
                ("DELETE FROM cache_stores WHERE name = ?", (name,)),
            ]
        )
        if existed:
            self.logger.info(f"Deleted cache store: {name}")
        return existed

    def total_size(self) -> int:
        """Byte size of every entry across every named store."""
        total = 0
        for name in self.keys():
            total += CacheStore(self.db_manager, name).size()
        return total
