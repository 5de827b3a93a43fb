"""Request processing pipeline for OfflineRequestHandler."""

import json
import traceback
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional

from ponti_offline.core.classifier import InterceptedRequest
from ponti_offline.storage.models import CachedResponse
from ponti_offline.utils.logger import get_logger

# Framing headers are recomputed for every relayed body; Server and Date come from send_response
SKIPPED_RESPONSE_HEADERS = frozenset(
    {"content-length", "transfer-encoding", "connection", "keep-alive", "server", "date"}
)


class RequestProcessingMixin:
    """Turns HTTP exchanges into worker requests, messages and sync events."""

    @property
    def logger(self):
        if hasattr(self, "worker") and hasattr(self.worker, "logger"):
            return self.worker.logger
        return get_logger("core.handler")

    @property
    def control_prefix(self) -> str:
        return self.worker.config["routes"]["control_prefix"]

    def _request_origin(self) -> str:
        host = self.headers.get("Host")
        if not host:
            host = "%s:%s" % self.server.server_address[:2]
        return f"http://{host}"

    def _build_request(self, method: str) -> InterceptedRequest:
        origin = self._request_origin()
        # Absolute-form request lines (proxy clients) keep their own URL
        if self.path.startswith(("http://", "https://")) or "://" in self.path.split("?", 1)[0]:
            url = self.path
        else:
            url = origin + (self.path if self.path.startswith("/") else "/" + self.path)
        return InterceptedRequest(
            method=method,
            url=url,
            origin=origin,
            headers={k: v for k, v in self.headers.items()},
            destination=(self.headers.get("Sec-Fetch-Dest") or "").lower(),
            mode=(self.headers.get("Sec-Fetch-Mode") or "").lower(),
            body=self._read_body(),
        )

    def _read_body(self) -> Optional[bytes]:
        length = int(self.headers.get("Content-Length", 0) or 0)
        if length <= 0:
            return None
        return self.rfile.read(length)

    def _is_control_path(self, path: str) -> bool:
        path = path.split("?", 1)[0]
        return path == self.control_prefix or path.startswith(self.control_prefix + "/")

    def _handle_request(self, method: str):
        try:
            self.logger.debug(f"Handling {method} request for path: {self.path}")
            if self._is_control_path(self.path):
                self._handle_control_request(method, self.path.split("?", 1)[0])
                return

            request = self._build_request(method)
            label, response = self.worker.handle_request(request)
            self.logger.debug(f"Served {method} {self.path} ({label.value}) with {response.status_code}")
            self._send_cached_response(response)
        except Exception as e:
            self.logger.error(f"Exception while handling request: {e}")
            body = f"Internal Server Error\n{traceback.format_exc()}".encode()
            self.send_response(500)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

    def _send_cached_response(self, response: CachedResponse):
        self.send_response(response.status_code)
        for k, v in response.headers.items():
            if k.lower() not in SKIPPED_RESPONSE_HEADERS:
                self.send_header(k, v)
        self.send_header("Content-Length", str(len(response.data)))
        self.end_headers()
        self.wfile.write(response.data)

    # Control endpoints

    def _handle_control_request(self, method: str, path: str):
        action = path[len(self.control_prefix) :].strip("/")
        if method == "GET" and action == "status":
            self._send_json(200, self.worker.status())
        elif method == "POST" and action == "message":
            self._handle_message()
        elif method == "POST" and action == "sync":
            self._handle_sync()
        else:
            self._send_json(404, {"error": f"Control endpoint not found: {method} {path}"})

    def _read_json_body(self) -> Any:
        body = self._read_body()
        if not body:
            raise ValueError("Request body is required")
        return json.loads(body.decode("utf-8"))

    def _handle_message(self):
        try:
            message = self._read_json_body()
        except ValueError as e:
            self._send_json(400, {"error": f"Invalid message: {e}"})
            return

        reply = self.worker.post_message(message)
        if reply is None:
            # Fire-and-forget command
            self.send_response(204)
            self.end_headers()
        elif "error" in reply:
            self._send_json(400, reply)
        else:
            self._send_json(200, reply)

    def _handle_sync(self):
        if not self.worker.background_sync.enabled:
            self._send_json(503, {"error": "Background sync not supported"})
            return
        try:
            payload = self._read_json_body()
        except ValueError as e:
            self._send_json(400, {"error": f"Invalid sync request: {e}"})
            return
        tag = payload.get("tag") if isinstance(payload, dict) else None
        report = self.worker.sync(tag)
        self._send_json(200, report.to_dict())

    def _send_json(self, status_code: int, data: Dict[str, Any]):
        body = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store")
        self.end_headers()
        self.wfile.write(body)


class OfflineRequestHandler(RequestProcessingMixin, BaseHTTPRequestHandler):
    """HTTP request handler for the offline worker."""

    server_version = "PontiOffline/1.0"
    protocol_version = "HTTP/1.1"

    def __init__(self, *args, worker_instance=None, **kwargs):
        self.worker = worker_instance
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        self.logger.debug("%s - %s" % (self.address_string(), format % args))

    def do_GET(self):
        self._handle_request("GET")

    def do_POST(self):
        self._handle_request("POST")

    def do_PUT(self):
        self._handle_request("PUT")

    def do_PATCH(self):
        self._handle_request("PATCH")

    def do_DELETE(self):
        self._handle_request("DELETE")
