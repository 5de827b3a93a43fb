"""Request classification for the offline worker."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional
from urllib.parse import urlsplit

from ponti_offline.cache.storage import normalize_path

STATIC_DESTINATIONS = frozenset({"script", "style", "image", "font"})


class RequestLabel(str, Enum):
    STATIC_ASSET = "static-asset"
    DATA_API = "data-api"
    PAGE_NAVIGATION = "page-navigation"
    UNHANDLED = "unhandled"


@dataclass
class InterceptedRequest:
    """A request as seen by the worker.

    ``url`` is absolute. ``origin`` is the scheme and authority the request
    was addressed to (the worker's own origin for path-form requests).
    ``destination`` and ``mode`` mirror the browser's ``Sec-Fetch-Dest`` and
    ``Sec-Fetch-Mode`` request headers.
    """

    method: str
    url: str
    origin: str
    headers: Dict[str, str] = field(default_factory=dict)
    destination: str = ""
    mode: str = ""
    body: Optional[bytes] = None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def path_and_query(self) -> str:
        return normalize_path(self.url)


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


class RequestClassifier:
    """Labels each intercepted request with exactly one ``RequestLabel``.

    All path prefixes are injected at construction time so that route changes
    are configuration, not code.
    """

    def __init__(
        self,
        origin_url: str,
        static_prefixes: Iterable[str],
        data_prefixes: Iterable[str],
        api_prefix: str = "/api/",
        control_prefix: str = "/__sw",
    ) -> None:
        self.origin = origin_of(origin_url)
        self.static_prefixes = tuple(static_prefixes)
        self.data_prefixes = tuple(data_prefixes)
        self.api_prefix = api_prefix
        self.control_prefix = control_prefix

    @classmethod
    def from_config(cls, config: dict) -> "RequestClassifier":
        routes = config.get("routes", {})
        return cls(
            origin_url=config["origin"]["url"],
            static_prefixes=routes.get("static_prefixes", []),
            data_prefixes=routes.get("data_prefixes", []),
            api_prefix=routes.get("api_prefix", "/api/"),
            control_prefix=routes.get("control_prefix", "/__sw"),
        )

    def is_same_origin(self, request: InterceptedRequest) -> bool:
        parts = urlsplit(request.url)
        if parts.scheme not in ("http", "https"):
            return False
        return origin_of(request.url) in (request.origin.lower(), self.origin)

    def classify(self, request: InterceptedRequest) -> RequestLabel:
        # Cross-origin and non-HTTP(S) requests are never intercepted
        if not self.is_same_origin(request):
            return RequestLabel.UNHANDLED
        if request.method.upper() != "GET":
            return RequestLabel.UNHANDLED

        path = request.path
        if self.control_prefix and (path == self.control_prefix or path.startswith(self.control_prefix + "/")):
            return RequestLabel.UNHANDLED

        if request.destination in STATIC_DESTINATIONS or path.startswith(self.static_prefixes):
            return RequestLabel.STATIC_ASSET

        if path.startswith(self.data_prefixes) or (self.api_prefix and self.api_prefix in path):
            return RequestLabel.DATA_API

        if request.mode == "navigate" or request.destination == "document":
            return RequestLabel.PAGE_NAVIGATION

        return RequestLabel.UNHANDLED
