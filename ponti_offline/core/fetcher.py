"""Upstream fetching for the offline worker."""

import gzip
import socket
import time
import urllib.error
import urllib.request
import zlib
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, Optional

from ponti_offline.storage.models import CachedResponse
from ponti_offline.utils.logger import get_logger

HOP_BY_HOP_HEADERS = frozenset(
    {"host", "connection", "content-length", "keep-alive", "transfer-encoding", "upgrade", "accept-encoding"}
)


class NetworkError(Exception):
    """The upstream could not be reached (connection refused, DNS failure, reset...).

    An HTTP error status is not a ``NetworkError``; it comes back as a normal
    response with that status.
    """

    pass


class NetworkTimeoutError(NetworkError):
    """The upstream did not answer within the caller's deadline."""

    pass


class NetworkFetcher:
    """Performs upstream requests with ``urllib`` and normalizes the result.

    ``fetch`` blocks for at most ``request_timeout`` seconds per socket
    operation. ``fetch_with_timeout`` races the same call against an explicit
    deadline and raises ``NetworkTimeoutError`` when the deadline wins.
    """

    def __init__(self, request_timeout: int = 30, max_workers: int = 8) -> None:
        self.request_timeout = request_timeout
        self.logger = get_logger("core.fetcher")
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ponti-fetch")

    def fetch(
        self, method: str, url: str, headers: Optional[Dict[str, str]] = None, body: Optional[bytes] = None
    ) -> CachedResponse:
        start_time = time.time()
        req = urllib.request.Request(url, method=method.upper())
        for key, value in (headers or {}).items():
            if key.lower() not in HOP_BY_HOP_HEADERS:
                req.add_header(key, value)
        req.add_header("Accept-Encoding", "gzip, deflate")
        if body and method.upper() not in ("GET", "HEAD"):
            req.data = body

        try:
            with urllib.request.urlopen(req, timeout=self.request_timeout) as response:
                data = response.read()
                status_code = response.getcode()
                response_headers = dict(response.headers)
        except urllib.error.HTTPError as e:
            # Upstream answered; an error status is still a response
            data = e.read() or b""
            status_code = e.code
            response_headers = dict(e.headers or {})
        except urllib.error.URLError as e:
            self.logger.debug(f"Network error fetching {url}: {e.reason}")
            raise NetworkError(f"Network error fetching {url}: {e.reason}") from e
        except (socket.timeout, OSError) as e:
            self.logger.debug(f"Network error fetching {url}: {e}")
            raise NetworkError(f"Network error fetching {url}: {e}") from e

        data, response_headers = self._decode_body(url, data, response_headers)
        elapsed_ms = int((time.time() - start_time) * 1000)
        self.logger.debug(f"Fetched {method} {url}: {status_code} in {elapsed_ms}ms")
        return CachedResponse(data=data, headers=response_headers, status_code=status_code)

    def fetch_with_timeout(
        self,
        method: str,
        url: str,
        timeout_ms: int,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> CachedResponse:
        future = self._executor.submit(self.fetch, method, url, headers, body)
        try:
            return future.result(timeout=timeout_ms / 1000.0)
        except FutureTimeoutError as e:
            future.cancel()
            self.logger.warning(f"Fetch of {url} exceeded {timeout_ms}ms")
            raise NetworkTimeoutError(f"Timed out after {timeout_ms}ms fetching {url}") from e

    def _decode_body(self, url: str, data: bytes, headers: Dict[str, str]):
        encoding = ""
        for key, value in headers.items():
            if key.lower() == "content-encoding":
                encoding = value.lower()

        decoded = None
        try:
            if data[:2] == b"\x1f\x8b" or encoding == "gzip":
                decoded = gzip.decompress(data)
            elif encoding == "deflate":
                decoded = zlib.decompress(data)
        except (gzip.BadGzipFile, zlib.error, OSError) as e:
            self.logger.warning(f"Failed to decompress {encoding or 'gzip'} body from {url}: {e}")

        # The body is always relayed whole, so framing headers are recomputed
        cleaned = {
            k: v
            for k, v in headers.items()
            if k.lower() not in ("transfer-encoding", "content-length", "connection")
            and not (decoded is not None and k.lower() == "content-encoding")
        }
        if decoded is not None:
            data = decoded
        cleaned["Content-Length"] = str(len(data))
        return data, cleaned

    def close(self) -> None:
        self._executor.shutdown(wait=False)
