"""Client-side bridge to the offline worker.

``OfflineClient`` mirrors connectivity, registers against a running worker
and exposes cache management as one request/reply exchange per command.
``OfflineData`` wraps an arbitrary fetch function with that state for UI
code that only needs to know whether the last fetch failed.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from ponti_offline.core.messages import CacheData, ClearCache, Command, GetCacheSize, SkipWaiting, to_message
from ponti_offline.utils.logger import get_logger


class WorkerError(Exception):
    """Base class for failed worker calls."""

    pass


class WorkerUnavailableError(WorkerError):
    """No active worker controls this client yet."""

    pass


class WorkerTimeoutError(WorkerError):
    """The worker did not reply within ``rpc_timeout`` seconds."""

    pass


class WorkerRPCError(WorkerError):
    """The worker replied with ``{"error": ...}``."""

    pass


@dataclass
class WorkerRegistration:
    """What the client knows about the worker it registered with."""

    scope: str
    version: str
    state: str
    active: bool
    sync_supported: bool = False
    sync_tag: str = "background-sync"
    waiting_version: Optional[str] = None


@dataclass
class ConnectivityState:
    is_online: bool
    is_offline_capable: bool
    cache_size: int
    last_sync: Optional[datetime]
    registration: Optional[WorkerRegistration]


class OfflineClient:
    """Connectivity state plus worker RPC for one client.

    Example:
        >>> client = OfflineClient("http://127.0.0.1:8080")
        >>> client.register()
        >>> client.cache_data("/api/schedule", {"classes": []})
        >>> client.cache_size
        57
    """

    def __init__(
        self,
        worker_url: str,
        is_online: bool = True,
        rpc_timeout: float = 5.0,
        control_prefix: str = "/__sw",
        session: Optional[requests.Session] = None,
    ) -> None:
        self.worker_url = worker_url.rstrip("/")
        self.control_url = self.worker_url + control_prefix
        self.rpc_timeout = rpc_timeout
        self.session = session or requests.Session()
        self.logger = get_logger("client.offline")

        self.is_online = is_online
        self.is_offline_capable = False
        self.cache_size = 0
        self.last_sync: Optional[datetime] = None
        self.registration: Optional[WorkerRegistration] = None

        self._lock = threading.Lock()
        self._listeners: List[Callable[["OfflineClient"], None]] = []
        self._update_listeners: List[Callable[[WorkerRegistration], None]] = []

    # Listeners

    def subscribe(self, listener: Callable[["OfflineClient"], None]) -> Callable[[], None]:
        """Call ``listener(client)`` after every state change; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def on_update_available(self, listener: Callable[[WorkerRegistration], None]) -> None:
        with self._lock:
            self._update_listeners.append(listener)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(self)

    def state(self) -> ConnectivityState:
        return ConnectivityState(
            is_online=self.is_online,
            is_offline_capable=self.is_offline_capable,
            cache_size=self.cache_size,
            last_sync=self.last_sync,
            registration=self.registration,
        )

    # Registration

    def _fetch_status(self) -> Dict[str, Any]:
        response = self.session.get(f"{self.control_url}/status", timeout=self.rpc_timeout)
        response.raise_for_status()
        return response.json()

    def register(self) -> Optional[WorkerRegistration]:
        """Register with the worker and load the initial cache size.

        A failed registration is logged and leaves ``is_offline_capable`` False.
        """
        try:
            status = self._fetch_status()
        except (requests.RequestException, ValueError) as e:
            self.logger.error(f"Service Worker registration failed: {e}")
            self.is_offline_capable = False
            self._notify()
            return None

        if self.registration is None:
            self.registration = WorkerRegistration(
                scope=self.worker_url + "/",
                version=str(status.get("version")),
                state=status.get("phase", ""),
                active=bool(status.get("controlling")),
                sync_supported=bool(status.get("sync_supported")),
                sync_tag=status.get("sync_tag", "background-sync"),
            )
            self.logger.info("Service Worker registered successfully")
        self.is_offline_capable = True
        self._notify()

        if self.registration.active:
            try:
                self.get_cache_size()
            except WorkerError as e:
                self.logger.error(f"Error getting cache size: {e}")
        return self.registration

    def check_for_update(self) -> bool:
        """Look for a newer worker version; fires ``update_available`` listeners when one is found.

        Only a new version seen while an existing worker already controlled
        this client counts as an update; the first install does not.
        """
        if self.registration is None:
            return False
        try:
            status = self._fetch_status()
        except (requests.RequestException, ValueError) as e:
            self.logger.warning(f"Update check failed: {e}")
            return False

        version = str(status.get("version"))
        phase = status.get("phase", "")
        if version == self.registration.version or phase not in ("installed", "activated"):
            return False
        if phase == "installed" and version == self.registration.waiting_version:
            # Already announced
            return False

        if not self.registration.active:
            # First install completing, not an update
            self._adopt(status)
            return False

        self.logger.info(f"New Service Worker {version} {phase}")
        if phase == "installed":
            self.registration.waiting_version = version
        else:
            self._adopt(status)
        with self._lock:
            listeners = list(self._update_listeners)
        for listener in listeners:
            listener(self.registration)
        self._notify()
        return True

    def _adopt(self, status: Dict[str, Any]) -> None:
        self.registration.version = str(status.get("version"))
        self.registration.state = status.get("phase", "")
        self.registration.active = bool(status.get("controlling"))
        self.registration.sync_supported = bool(status.get("sync_supported"))
        self.registration.waiting_version = None

    def update_service_worker(self) -> None:
        """Tell a waiting worker to activate now and adopt it."""
        self._send(SkipWaiting())
        try:
            self._adopt(self._fetch_status())
        except (requests.RequestException, ValueError) as e:
            self.logger.warning(f"Could not refresh registration after update: {e}")
        self._notify()

    # Connectivity

    def handle_online(self) -> None:
        self.logger.info("Connection restored")
        self.is_online = True
        self._notify()
        if self.registration is not None and self.registration.active and self.registration.sync_supported:
            try:
                self.force_sync()
            except WorkerError as e:
                self.logger.warning(f"Background sync registration failed: {e}")

    def handle_offline(self) -> None:
        self.logger.info("Connection lost")
        self.is_online = False
        self._notify()

    # Worker RPC

    def _require_active(self) -> None:
        if self.registration is None or not self.registration.active:
            raise WorkerUnavailableError("Service Worker not available")

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        self._require_active()
        try:
            return self.session.post(f"{self.control_url}/{path}", json=payload, timeout=self.rpc_timeout)
        except requests.Timeout as e:
            raise WorkerTimeoutError(f"No reply from Service Worker within {self.rpc_timeout}s") from e
        except requests.ConnectionError as e:
            raise WorkerUnavailableError("Service Worker not available") from e

    def _reply(self, response: requests.Response) -> Optional[Dict[str, Any]]:
        if response.status_code == 204:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise WorkerRPCError(f"Invalid reply from Service Worker ({response.status_code})") from e
        if not isinstance(data, dict):
            raise WorkerRPCError("Invalid reply from Service Worker")
        if "error" in data:
            raise WorkerRPCError(data["error"])
        return data

    def _send(self, command: Command) -> Optional[Dict[str, Any]]:
        return self._reply(self._post("message", to_message(command)))

    def get_cache_size(self) -> int:
        reply = self._send(GetCacheSize()) or {}
        size = reply.get("size")
        self.cache_size = size if isinstance(size, int) else 0
        self._notify()
        return self.cache_size

    def clear_cache(self) -> None:
        self._send(ClearCache())
        self.cache_size = 0
        self.logger.info("Cache cleared successfully")
        self._notify()

    def cache_data(self, key: str, data: Any) -> None:
        self._send(CacheData(key=key, data=data))
        self.get_cache_size()
        self.logger.info(f"Data cached successfully: {key}")

    def force_sync(self) -> Dict[str, Any]:
        """Ask the worker to run background sync now; returns the per-key report."""
        tag = self.registration.sync_tag if self.registration else "background-sync"
        report = self._reply(self._post("sync", {"tag": tag})) or {}
        self.last_sync = datetime.now()
        self._notify()
        return report


class OfflineData:
    """Fetch helper that flags failures for offline-aware UI.

    A failed fetch sets ``error`` and ``is_from_cache``; it never reads the
    worker's cache itself. With ``refetch_on_reconnect`` a failed fetch is
    retried when the client goes from offline to online.
    """

    def __init__(
        self,
        fetch_fn: Callable[[], Any],
        client: OfflineClient,
        cache_key: Optional[str] = None,
        refetch_on_reconnect: bool = False,
        fetch_on_init: bool = True,
    ) -> None:
        self.fetch_fn = fetch_fn
        self.client = client
        self.cache_key = cache_key
        self.refetch_on_reconnect = refetch_on_reconnect
        self.logger = get_logger("client.offline_data")

        self.data: Any = None
        self.is_loading = False
        self.error: Optional[Exception] = None
        self.is_from_cache = False
        self.cache_date: Optional[datetime] = None

        self._was_online = client.is_online
        self._unsubscribe = client.subscribe(self._on_client_change)
        if fetch_on_init:
            self.fetch()

    def fetch(self) -> Any:
        self.is_loading = True
        self.error = None
        try:
            result = self.fetch_fn()
        except Exception as fetch_error:
            self.logger.error(f"Fetch error: {fetch_error}")
            self.error = fetch_error
            self.is_from_cache = True
        else:
            self.data = result
            self.is_from_cache = False
            self.cache_date = None
            if self.cache_key and self.client.is_offline_capable:
                try:
                    self.client.cache_data(self.cache_key, result)
                except WorkerError as e:
                    self.logger.warning(f"Could not cache {self.cache_key}: {e}")
        finally:
            self.is_loading = False
        return self.data

    refetch = fetch

    def _on_client_change(self, client: OfflineClient) -> None:
        reconnected = client.is_online and not self._was_online
        self._was_online = client.is_online
        if reconnected and self.refetch_on_reconnect and self.is_from_cache:
            self.fetch()

    def close(self) -> None:
        self._unsubscribe()
