"""Install/activate lifecycle and message handling for the offline worker."""

import sqlite3
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ponti_offline.cache.storage import CacheStorage, data_key, request_key
from ponti_offline.core.fetcher import NetworkError
from ponti_offline.core.messages import CacheData, ClearCache, Command, GetCacheSize, SkipWaiting
from ponti_offline.core.strategies import StrategyExecutor
from ponti_offline.utils.logger import get_logger


class WorkerPhase(str, Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"


class LifecycleController:
    """Drives the worker through ``installing → installed → activating → activated``.

    Install pre-warms the static store from the precache manifest. Activate
    evicts every store whose name is not one of the two current names and
    then claims clients, after which the worker starts applying strategies.
    With ``skip_waiting_on_install`` (the default) there is no waiting phase:
    activation follows install immediately. Otherwise the worker stays
    ``installed`` until a ``SKIP_WAITING`` message arrives.
    """

    def __init__(
        self,
        storage: CacheStorage,
        executor: StrategyExecutor,
        precache: Iterable[str],
        expiry_hours: int = 24,
        skip_waiting_on_install: bool = True,
    ) -> None:
        self.storage = storage
        self.executor = executor
        self.static_name = executor.static_name
        self.data_name = executor.data_name
        self.precache = list(precache)
        self.expiry_hours = expiry_hours
        self.skip_waiting_requested = skip_waiting_on_install
        self.phase = WorkerPhase.PARSED
        self.clients_claimed = False
        self.logger = get_logger("core.lifecycle")
        self._lock = threading.RLock()

    @property
    def is_controlling(self) -> bool:
        return self.phase == WorkerPhase.ACTIVATED and self.clients_claimed

    def install(self) -> List[str]:
        """Pre-populate the static store and make sure the data store exists.

        Each manifest entry is fetched from the origin; entries that fail are
        logged and skipped so the worker can still come up offline.

        Returns:
            Keys that were cached
        """
        with self._lock:
            self.phase = WorkerPhase.INSTALLING
            self.logger.info(f"Installing worker, caching {len(self.precache)} resources into {self.static_name}")
            cached_keys = []
            try:
                static_store = self.storage.open(self.static_name)
                self.storage.open(self.data_name)
            except sqlite3.Error as e:
                self.logger.error(f"Could not open cache stores during install: {e}")
                static_store = None

            for path in self.precache:
                if static_store is None:
                    break
                key = request_key("GET", path)
                try:
                    response = self.executor.fetcher.fetch("GET", self.executor.upstream_url(path))
                except NetworkError as e:
                    self.logger.warning(f"Precache skipped for {path}: {e}")
                    continue
                if response.status_code != 200:
                    self.logger.warning(f"Precache skipped for {path}: status {response.status_code}")
                    continue
                try:
                    static_store.put(key, response, url=path)
                    cached_keys.append(key)
                except sqlite3.Error as e:
                    self.logger.error(f"Precache write failed for {path}: {e}")

            self.phase = WorkerPhase.INSTALLED
            self.logger.info(f"Installed: {len(cached_keys)}/{len(self.precache)} resources precached")
            if self.skip_waiting_requested:
                self.activate()
            return cached_keys

    def activate(self) -> List[str]:
        """Evict stale-named stores, expire old static entries and claim clients.

        Returns:
            Names of the stores that were deleted
        """
        with self._lock:
            self.phase = WorkerPhase.ACTIVATING
            self.logger.info("Activating worker")
            deleted = []
            current = (self.static_name, self.data_name)
            try:
                for name in self.storage.keys():
                    if name not in current:
                        self.logger.info(f"Deleting old cache: {name}")
                        self.storage.delete(name)
                        deleted.append(name)
                if self.expiry_hours > 0 and self.storage.has(self.static_name):
                    expired = self.storage.open(self.static_name).purge_older_than(self.expiry_hours * 3600)
                    if expired:
                        self.logger.info(f"Removed {expired} expired entries from {self.static_name}")
            except sqlite3.Error as e:
                self.logger.error(f"Cache cleanup failed during activation: {e}")

            self.clients_claimed = True
            self.phase = WorkerPhase.ACTIVATED
            self.logger.info("Worker activated and controlling clients")
            return deleted

    def skip_waiting(self) -> None:
        with self._lock:
            self.skip_waiting_requested = True
            if self.phase == WorkerPhase.INSTALLED:
                self.logger.info("Skipping waiting, activating immediately")
                self.activate()

    def clear_all(self) -> None:
        for name in self.storage.keys():
            self.storage.delete(name)
        self.logger.info("Cache cleared successfully")

    @staticmethod
    def normalize_data_key(key: str) -> str:
        """URL-shaped keys are stored under the same ``path?query`` key a data-API request reads."""
        if key.startswith(("/", "http://", "https://")):
            return data_key(key)
        return key

    def handle_message(self, command: Command) -> Optional[Dict[str, Any]]:
        """Run one command and return its reply (``None`` for fire-and-forget commands).

        Storage failures come back as ``{"error": ...}`` rather than raising.
        """
        try:
            if isinstance(command, SkipWaiting):
                self.skip_waiting()
                return None
            if isinstance(command, GetCacheSize):
                return {"size": self.storage.total_size()}
            if isinstance(command, ClearCache):
                self.clear_all()
                return {"success": True}
            if isinstance(command, CacheData):
                key = self.normalize_data_key(command.key)
                self.executor.store_envelope(key, command.data, manual=True)
                self.logger.info(f"Data cached successfully: {key}")
                return {"success": True}
        except sqlite3.Error as e:
            self.logger.error(f"Error handling {command.type}: {e}")
            return {"error": str(e)}
        except TypeError as e:
            self.logger.error(f"Error handling {command.type}: {e}")
            return {"error": f"Data is not JSON-serializable: {e}"}
        raise TypeError(f"Unhandled command: {command!r}")
