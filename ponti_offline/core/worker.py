import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from ponti_offline.cache.storage import CacheStorage
from ponti_offline.core.classifier import InterceptedRequest, RequestClassifier, RequestLabel
from ponti_offline.core.config import ConfigurationManager, cache_names
from ponti_offline.core.fetcher import NetworkFetcher
from ponti_offline.core.lifecycle import LifecycleController, WorkerPhase
from ponti_offline.core.messages import MessageError, parse_message
from ponti_offline.core.strategies import StrategyExecutor
from ponti_offline.core.sync import BackgroundSync
from ponti_offline.storage.manager import DatabaseManager
from ponti_offline.storage.models import CachedResponse, SyncReport
from ponti_offline.utils.logger import configure_logging, get_logger


class OfflineWorker:
    """Main entry point: the offline-first caching gateway for the Ponti portal.

    Sits between the portal's clients and its origin. Requests are classified
    and served with a cache-first, network-first or passthrough strategy; a
    small control API under ``routes.control_prefix`` carries worker
    messages, background sync and status.

    Example:
        Serving in the background:

        >>> worker = OfflineWorker({"origin": {"url": "https://ponti.example.edu"}})
        >>> worker.start(blocking=False)
        >>> worker.status()["phase"]
        'activated'
        >>> worker.stop()

        Using as context manager:

        >>> with OfflineWorker(config) as worker:
        ...     worker.post_message({"type": "GET_CACHE_SIZE"})
        {'size': 0}
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, clock=None) -> None:
        """Build every component from a configuration dictionary.

        Args:
            config: User configuration, merged over ``DEFAULT_CONFIG``
            clock: Optional callable returning epoch milliseconds, for tests

        Raises:
            ValueError: If the merged configuration is invalid
        """
        self.config_manager = ConfigurationManager(config or {})
        self.config = self.config_manager.config
        configure_logging(self.config.get("logging", {}))
        self.logger = get_logger("core.worker")

        self.static_name, self.data_name = cache_names(self.config)
        self.db_manager = DatabaseManager(self.config["caches"]["database_path"])
        self.storage = CacheStorage(self.db_manager)
        self.fetcher = NetworkFetcher(request_timeout=self.config["server"]["request_timeout"])
        self.metrics_collector = MetricsCollector()
        self.classifier = RequestClassifier.from_config(self.config)

        strategy = self.config["strategy"]
        self.executor = StrategyExecutor(
            self.storage,
            self.fetcher,
            self.static_name,
            self.data_name,
            origin_url=self.config["origin"]["url"],
            data_timeout_ms=strategy["data_timeout_ms"],
            stale_threshold_ms=strategy["stale_threshold_ms"],
            fallback_on_error_status=strategy["fallback_on_error_status"],
            max_entry_size=self.config["caches"]["max_entry_size"],
            clock=clock,
            metrics=self.metrics_collector,
        )
        self.lifecycle = LifecycleController(
            self.storage,
            self.executor,
            precache=self.config["routes"]["precache"],
            expiry_hours=self.config["caches"]["expiry_hours"],
            skip_waiting_on_install=self.config["lifecycle"]["skip_waiting_on_install"],
        )
        self.background_sync = BackgroundSync(
            self.executor, tag=self.config["sync"]["tag"], enabled=self.config["sync"]["enabled"]
        )
        self.server: Optional[Any] = None
        self.running = False
        self.start_time: Optional[float] = None

    @property
    def version(self) -> str:
        return str(self.config["caches"]["version"])

    def install(self) -> None:
        """Run install (and activation, unless waiting) if it has not happened yet."""
        if self.lifecycle.phase == WorkerPhase.PARSED:
            self.lifecycle.install()

    def start(self, blocking: bool = False) -> None:
        """Install the worker and start serving.

        Raises:
            RuntimeError: If the server is already running
            OSError: If unable to bind to the configured host/port
        """
        from ponti_offline.core.handler import OfflineRequestHandler
        from ponti_offline.core.server import ThreadedHTTPServer

        if self.running:
            raise RuntimeError("Server is already running")

        self.install()
        host = self.config["server"]["host"]
        port = self.config["server"]["port"]
        if self.server is None:
            self.server = ThreadedHTTPServer((host, port), OfflineRequestHandler, self)
        self.running = True
        self.start_time = time.time()
        self.logger.info(f"Offline worker {self.version} serving {self.config['origin']['url']} on {host}:{port}")
        self.server.start(blocking=blocking)

    def stop(self) -> None:
        """Stop the server and release resources. Safe to call more than once."""
        if self.server:
            self.server.stop()
            self.server = None
        self.running = False
        self.fetcher.close()
        self.db_manager.close()
        self.logger.info("Offline worker stopped.")

    @property
    def server_address(self) -> Tuple[str, int]:
        if self.server is None:
            raise RuntimeError("Server is not running")
        return self.server.server_address[:2]

    def handle_request(self, request: InterceptedRequest) -> Tuple[RequestLabel, CachedResponse]:
        """Classify and serve one request.

        Until the worker controls its clients every request passes through.
        """
        if self.lifecycle.is_controlling:
            label = self.classifier.classify(request)
        else:
            label = RequestLabel.UNHANDLED
        self.logger.debug(f"{request.method} {request.url} classified as {label.value}")
        return label, self.executor.execute(request, label)

    def post_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """Handle a raw ``{"type": ..., "payload": ...}`` message and return its reply."""
        try:
            command = parse_message(message)
        except MessageError as e:
            self.logger.warning(f"Rejected worker message: {e}")
            return {"error": str(e)}
        return self.lifecycle.handle_message(command)

    def sync(self, tag: Optional[str] = None) -> SyncReport:
        return self.background_sync.handle_sync(tag)

    def status(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "phase": self.lifecycle.phase.value,
            "controlling": self.lifecycle.is_controlling,
            "caches": {"static": self.static_name, "data": self.data_name},
            "sync_supported": self.background_sync.enabled,
            "sync_tag": self.background_sync.tag,
            "uptime_seconds": int(time.time() - self.start_time) if self.start_time else 0,
            "metrics": self.metrics_collector.get_metrics(),
        }

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics_collector.get_metrics()

    def __enter__(self) -> "OfflineWorker":
        self.start(blocking=False)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


class MetricsCollector:
    """Counts how requests were served. Thread-safe."""

    def __init__(self, max_events: int = 100) -> None:
        self._lock = threading.Lock()
        self._metrics = {
            "total_events": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "network": 0,
            "offline": 0,
            "start_time": time.time(),
        }
        self._max_events = max_events
        self._events: List[Tuple[str, Dict[str, Any]]] = []

    def record_event(self, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Record one event ("cache_hit", "cache_miss", "network" or "offline")."""
        with self._lock:
            self._metrics["total_events"] += 1
            if event_type == "cache_hit":
                self._metrics["cache_hits"] += 1
            elif event_type == "cache_miss":
                self._metrics["cache_misses"] += 1
            elif event_type == "network":
                self._metrics["network"] += 1
            elif event_type == "offline":
                self._metrics["offline"] += 1
            self._events.append((event_type, details or {}))
            del self._events[: -self._max_events]

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            m = dict(self._metrics)
            m["uptime_seconds"] = time.time() - self._metrics["start_time"]
            m["events"] = [{"event_type": event_type, "details": details} for event_type, details in self._events]
        return m
