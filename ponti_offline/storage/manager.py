"""Database manager: connection pooling, schema, thread safety."""

import random
import sqlite3
import threading
import time
from typing import Any, List

from ponti_offline.utils.logger import get_logger

SCHEMA = [
    # One row per named cache store
    """CREATE TABLE IF NOT EXISTS cache_stores (
        name TEXT PRIMARY KEY,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );""",
    # Request/response pairs, keyed per store
    """CREATE TABLE IF NOT EXISTS cache_entries (
        store_name TEXT NOT NULL,
        cache_key TEXT NOT NULL,
        url TEXT,
        response_data BLOB NOT NULL,
        headers TEXT NOT NULL,
        status_code INTEGER NOT NULL,
        stored_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (store_name, cache_key)
    );""",
    "CREATE INDEX IF NOT EXISTS idx_entries_store_stored " "ON cache_entries(store_name, stored_at);",
]


class DatabaseManager:
    """Manages SQLite operations with a small connection pool.

    ``":memory:"`` is mapped to a shared-cache in-memory URI so that every
    pooled connection sees the same database.
    """

    def __init__(self, database_path: str, pool_size: int = 5):
        self.logger = get_logger("storage.manager")
        if database_path == ":memory:":
            # Unique name so that two workers in one process do not share stores
            self.database_path = f"file:ponti_offline_{id(self)}?mode=memory&cache=shared"
            self._use_uri = True
        else:
            self.database_path = database_path
            self._use_uri = database_path.startswith("file:")
        self._lock = threading.Lock()
        self._pool: List[sqlite3.Connection] = []
        self._max_pool_size = pool_size
        # Keeps a shared in-memory database alive while connections cycle
        self._anchor = self._connect()
        self._initialize_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database_path, check_same_thread=False, uri=self._use_uri)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA temp_store=memory")
        # 5 second timeout on locks
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _initialize_schema(self):
        conn = self.get_connection()
        try:
            cur = conn.cursor()
            for stmt in SCHEMA:
                cur.execute(stmt)
            conn.commit()
        finally:
            self.return_connection(conn)

    def get_connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._pool:
                return self._pool.pop()
        return self._connect()

    def return_connection(self, conn: sqlite3.Connection):
        with self._lock:
            if len(self._pool) < self._max_pool_size:
                self._pool.append(conn)
                return
        conn.close()

    def execute_query(self, query: str, params: tuple = (), retries: int = 10, delay: float = 0.05) -> List[Any]:
        for attempt in range(retries):
            conn = self.get_connection()
            try:
                cur = conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < retries - 1:
                    # Exponential backoff with jitter
                    time.sleep(min(delay * (2**attempt) + random.uniform(0, 0.1), 1.0))
                    continue
                raise
            finally:
                self.return_connection(conn)
        return []

    def execute_update(self, query: str, params: tuple = (), retries: int = 10, delay: float = 0.05) -> int:
        for attempt in range(retries):
            conn = self.get_connection()
            try:
                cur = conn.cursor()
                cur.execute(query, params)
                conn.commit()
                return cur.rowcount
            except sqlite3.OperationalError as e:
                if "locked" in str(e).lower() and attempt < retries - 1:
                    time.sleep(min(delay * (2**attempt) + random.uniform(0, 0.1), 1.0))
                    continue
                raise
            finally:
                self.return_connection(conn)
        return 0

    def execute_transaction(self, statements: List[tuple], retries: int = 10, delay: float = 0.05) -> None:
        """Run several (query, params) statements in one transaction."""
        for attempt in range(retries):
            conn = self.get_connection()
            try:
                cur = conn.cursor()
                for query, params in statements:
                    cur.execute(query, params)
                conn.commit()
                return
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "locked" in str(e).lower() and attempt < retries - 1:
                    time.sleep(min(delay * (2**attempt) + random.uniform(0, 0.1), 1.0))
                    continue
                raise
            except sqlite3.Error:
                conn.rollback()
                raise
            finally:
                self.return_connection(conn)

    def close(self):
        """Close all pooled database connections."""
        with self._lock:
            while self._pool:
                conn = self._pool.pop()
                try:
                    conn.close()
                except sqlite3.Error as e:
                    self.logger.debug(f"Error closing pooled connection: {e}")
            if self._anchor is not None:
                try:
                    self._anchor.close()
                except sqlite3.Error as e:
                    self.logger.debug(f"Error closing anchor connection: {e}")
                self._anchor = None
