"""Caching strategies applied to classified requests."""

import json
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ponti_offline.cache.storage import CacheStorage, data_key, request_key
from ponti_offline.core.classifier import InterceptedRequest, RequestLabel, origin_of
from ponti_offline.core.fetcher import NetworkError, NetworkFetcher
from ponti_offline.core.offline_page import OFFLINE_PAGE_HTML
from ponti_offline.storage.models import STALE_THRESHOLD_MS, CachedEnvelope, CachedResponse, is_stale
from ponti_offline.utils.logger import get_logger


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(timestamp_ms: int) -> str:
    """Format epoch milliseconds like JavaScript's ``toISOString``."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_response(status_code: int, payload: Any, extra_headers: Optional[dict] = None) -> CachedResponse:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json", "Content-Length": str(len(body))}
    headers.update(extra_headers or {})
    return CachedResponse(data=body, headers=headers, status_code=status_code)


def offline_text_response() -> CachedResponse:
    return CachedResponse(
        data=b"Offline", headers={"Content-Type": "text/plain", "Content-Length": "7"}, status_code=503
    )


def offline_page_response() -> CachedResponse:
    body = OFFLINE_PAGE_HTML.encode("utf-8")
    return CachedResponse(
        data=body,
        headers={"Content-Type": "text/html; charset=utf-8", "Content-Length": str(len(body))},
        status_code=503,
    )


class StrategyExecutor:
    """Serves classified requests from the network, the cache stores, or a synthetic response.

    Every failure path ends in a valid response: network errors fall back to
    the cache or to a synthetic offline response, and cache-storage errors
    are logged and treated as a miss or a skipped write.

    Example:
        >>> executor = StrategyExecutor(storage, fetcher, "ponti-static-v1", "ponti-data-v1",
        ...                             origin_url="http://127.0.0.1:3000")
        >>> response = executor.execute(request, RequestLabel.DATA_API)
        >>> response.header("X-Cache-Status")
    """

    def __init__(
        self,
        storage: CacheStorage,
        fetcher: NetworkFetcher,
        static_name: str,
        data_name: str,
        origin_url: str,
        data_timeout_ms: int = 3000,
        stale_threshold_ms: int = STALE_THRESHOLD_MS,
        fallback_on_error_status: bool = False,
        max_entry_size: int = 10485760,
        clock: Optional[Callable[[], int]] = None,
        metrics: Optional[Any] = None,
    ) -> None:
        self.storage = storage
        self.fetcher = fetcher
        self.static_name = static_name
        self.data_name = data_name
        self.origin_url = origin_url.rstrip("/")
        self.data_timeout_ms = data_timeout_ms
        self.stale_threshold_ms = stale_threshold_ms
        self.fallback_on_error_status = fallback_on_error_status
        self.max_entry_size = max_entry_size
        self.clock = clock or now_ms
        self.metrics = metrics
        self.logger = get_logger("core.strategies")
        self._strategies = {
            RequestLabel.STATIC_ASSET: self.cache_first,
            RequestLabel.DATA_API: self.network_first_data,
            RequestLabel.PAGE_NAVIGATION: self.network_first_page,
            RequestLabel.UNHANDLED: self.passthrough,
        }

    def upstream_url(self, path_and_query: str) -> str:
        if path_and_query.startswith(("http://", "https://")):
            return path_and_query
        if not path_and_query.startswith("/"):
            path_and_query = "/" + path_and_query
        return self.origin_url + path_and_query

    def execute(self, request: InterceptedRequest, label: RequestLabel) -> CachedResponse:
        return self._strategies[label](request)

    def _record(self, event_type: str, **details) -> None:
        if self.metrics is not None:
            self.metrics.record_event(event_type, details)

    # Cache store helpers: storage errors never escape a strategy

    def _match(self, store_name: str, key: str) -> Optional[CachedResponse]:
        try:
            return self.storage.open(store_name).match(key)
        except sqlite3.Error as e:
            self.logger.error(f"Cache read failed for {store_name}/{key}: {e}")
            return None

    def _put(self, store_name: str, key: str, response: CachedResponse, url: Optional[str] = None) -> bool:
        if len(response.data) > self.max_entry_size:
            self.logger.info(f"Not caching {key}: {len(response.data)} bytes exceeds max_entry_size")
            return False
        try:
            self.storage.open(store_name).put(key, response, url=url)
            return True
        except sqlite3.Error as e:
            self.logger.error(f"Cache write failed for {store_name}/{key}: {e}")
            return False

    # Envelopes

    def read_envelope(self, key: str) -> Optional[CachedEnvelope]:
        cached = self._match(self.data_name, key)
        if cached is None:
            return None
        try:
            return CachedEnvelope.from_bytes(cached.data)
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning(f"Discarding unreadable envelope for {key}: {e}")
            return None

    def store_envelope(self, key: str, data: Any, url: Optional[str] = None, manual: bool = False) -> CachedEnvelope:
        """Write ``data`` under ``key`` in the data store and return the envelope.

        The timestamp is strictly greater than the one already stored for the
        key, even when the clock has not advanced. Raises ``sqlite3.Error``
        when the write fails and ``TypeError`` when ``data`` is not
        JSON-serializable.
        """
        timestamp = self.clock()
        previous = self.read_envelope(key)
        if previous is not None and previous.timestamp >= timestamp:
            timestamp = previous.timestamp + 1
        envelope = CachedEnvelope(data=data, timestamp=timestamp, url=None if manual else (url or key), manual=manual)
        body = envelope.to_bytes()
        self.storage.open(self.data_name).put(
            key,
            CachedResponse(
                data=body,
                headers={"Content-Type": "application/json", "Content-Length": str(len(body))},
                status_code=200,
            ),
            url=url or key,
        )
        return envelope

    # Strategies

    def cache_first(self, request: InterceptedRequest) -> CachedResponse:
        """Static assets: cache hit wins, otherwise fetch and keep a copy."""
        key = request_key("GET", request.url)
        cached = self._match(self.static_name, key)
        if cached is not None:
            self.logger.debug(f"Cache hit for static asset {key}")
            self._record("cache_hit", label=RequestLabel.STATIC_ASSET.value, key=key)
            return cached

        self._record("cache_miss", label=RequestLabel.STATIC_ASSET.value, key=key)
        try:
            response = self.fetcher.fetch("GET", self.upstream_url(request.path_and_query), request.headers)
        except NetworkError as e:
            self.logger.info(f"Static asset {key} unavailable offline: {e}")
            self._record("offline", label=RequestLabel.STATIC_ASSET.value, key=key)
            return offline_text_response()

        if response.status_code == 200:
            self._put(self.static_name, key, response.clone(), url=request.path_and_query)
        return response

    def network_first_data(self, request: InterceptedRequest) -> CachedResponse:
        """Data API: fresh network data when possible, last-known-good envelope otherwise."""
        key = data_key(request.url)
        url = self.upstream_url(request.path_and_query)
        try:
            response = self.fetcher.fetch_with_timeout("GET", url, self.data_timeout_ms, request.headers)
        except NetworkError as e:
            self.logger.info(f"Network failed for {key}, falling back to cache: {e}")
            return self._data_fallback(key)

        if response.status_code != 200:
            if self.fallback_on_error_status:
                self.logger.info(f"Upstream returned {response.status_code} for {key}, falling back to cache")
                return self._data_fallback(key)
            return response

        try:
            payload = response.json()
        except ValueError as e:
            self.logger.warning(f"Not caching non-JSON data response for {key}: {e}")
            return response

        if len(response.data) <= self.max_entry_size:
            try:
                self.store_envelope(key, payload, url=request.path_and_query)
            except sqlite3.Error as e:
                self.logger.error(f"Cache write failed for {self.data_name}/{key}: {e}")
        self._record("network", label=RequestLabel.DATA_API.value, key=key)
        return response

    def _data_fallback(self, key: str) -> CachedResponse:
        envelope = self.read_envelope(key)
        now = self.clock()
        if envelope is None:
            self._record("offline", label=RequestLabel.DATA_API.value, key=key)
            return _json_response(
                503,
                {"error": "Sin conexión y sin datos en caché", "offline": True, "timestamp": now},
                {"X-Cache-Status": "miss"},
            )

        status = "stale" if is_stale(envelope, now, self.stale_threshold_ms) else "fresh"
        self._record("cache_hit", label=RequestLabel.DATA_API.value, key=key, status=status)
        return _json_response(
            200, envelope.data, {"X-Cache-Status": status, "X-Cache-Date": iso_from_ms(envelope.timestamp)}
        )

    def network_first_page(self, request: InterceptedRequest) -> CachedResponse:
        """Navigations: network, then the cached page, then the cached root, then the offline page."""
        key = request_key("GET", request.url)
        try:
            response = self.fetcher.fetch("GET", self.upstream_url(request.path_and_query), request.headers)
        except NetworkError as e:
            self.logger.info(f"Navigation to {key} failed, serving from cache: {e}")
            cached = self._match(self.static_name, key) or self._match(self.static_name, request_key("GET", "/"))
            if cached is not None:
                self._record("cache_hit", label=RequestLabel.PAGE_NAVIGATION.value, key=key)
                return cached
            self._record("offline", label=RequestLabel.PAGE_NAVIGATION.value, key=key)
            return offline_page_response()

        if response.status_code == 200:
            self._put(self.static_name, key, response.clone(), url=request.path_and_query)
        self._record("network", label=RequestLabel.PAGE_NAVIGATION.value, key=key)
        return response

    def passthrough(self, request: InterceptedRequest) -> CachedResponse:
        """Forward without touching the caches."""
        # Requests addressed to the worker itself go to the origin; only the origin is reachable
        target = origin_of(request.url)
        if request.origin and target == request.origin.lower():
            url = self.upstream_url(request.path_and_query)
        elif target == origin_of(self.origin_url):
            url = request.url
        else:
            self.logger.warning(f"Refusing to forward {request.method} {request.url}: not the configured origin")
            message = f"Refusing to forward to {target}".encode("utf-8")
            return CachedResponse(
                data=message, headers={"Content-Type": "text/plain", "Content-Length": str(len(message))}, status_code=502
            )
        try:
            return self.fetcher.fetch(request.method, url, request.headers, request.body)
        except NetworkError as e:
            self.logger.error(f"Upstream network error for {request.method} {url}: {e}")
            message = f"Upstream network error: {e}".encode("utf-8")
            return CachedResponse(
                data=message, headers={"Content-Type": "text/plain", "Content-Length": str(len(message))}, status_code=502
            )
