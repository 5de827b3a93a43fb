import sys

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

import json

import pytest

from ponti_offline.cache.storage import CacheStorage, data_key, request_key
from ponti_offline.core.classifier import InterceptedRequest, RequestLabel
from ponti_offline.core.fetcher import NetworkError, NetworkTimeoutError
from ponti_offline.core.offline_page import OFFLINE_PAGE_MARKER
from ponti_offline.core.strategies import StrategyExecutor, iso_from_ms
from ponti_offline.storage.manager import DatabaseManager
from ponti_offline.storage.models import CachedResponse

ORIGIN = "http://origin.test"
WORKER = "http://worker.test"


class FakeFetcher:
    """Serves canned responses by URL; ``online = False`` makes every fetch fail."""

    def __init__(self):
        self.responses = {}
        self.online = True
        self.calls = []

    def fetch(self, method, url, headers=None, body=None):
        self.calls.append((method, url))
        if not self.online:
            raise NetworkError(f"Network error fetching {url}: connection refused")
        result = self.responses.get(url)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return CachedResponse(data=b"not found", headers={"Content-Type": "text/plain"}, status_code=404)
        return result.clone()

    def fetch_with_timeout(self, method, url, timeout_ms, headers=None, body=None):
        return self.fetch(method, url, headers, body)

    def close(self):
        pass


class FakeClock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now


def json_response(payload, status_code=200):
    return CachedResponse(
        data=json.dumps(payload).encode("utf-8"), headers={"Content-Type": "application/json"}, status_code=status_code
    )


def make_request(path, destination="", mode="", method="GET"):
    return InterceptedRequest(
        method=method, url=WORKER + path, origin=WORKER, headers={}, destination=destination, mode=mode
    )


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    db = DatabaseManager(":memory:")
    yield CacheStorage(db)
    db.close()


@pytest.fixture
def executor(storage, fetcher, clock):
    return StrategyExecutor(storage, fetcher, "ponti-static-v1", "ponti-data-v1", origin_url=ORIGIN, clock=clock)


# Static assets


def test_cache_first_keeps_first_response(executor, fetcher):
    fetcher.responses[ORIGIN + "/_next/static/app.js"] = CachedResponse(
        data=b"console.log('v1')", headers={"Content-Type": "application/javascript"}, status_code=200
    )
    request = make_request("/_next/static/app.js", destination="script")
    first = executor.execute(request, RequestLabel.STATIC_ASSET)
    assert first.data == b"console.log('v1')"

    fetcher.responses[ORIGIN + "/_next/static/app.js"] = CachedResponse(
        data=b"console.log('v2')", headers={"Content-Type": "application/javascript"}, status_code=200
    )
    second = executor.execute(request, RequestLabel.STATIC_ASSET)
    assert second.data == b"console.log('v1')"
    assert len(fetcher.calls) == 1


def test_cache_first_serves_cached_asset_offline(executor, fetcher):
    fetcher.responses[ORIGIN + "/static/logo.svg"] = CachedResponse(
        data=b"<svg/>", headers={"Content-Type": "image/svg+xml"}, status_code=200
    )
    request = make_request("/static/logo.svg", destination="image")
    executor.execute(request, RequestLabel.STATIC_ASSET)
    fetcher.online = False
    assert executor.execute(request, RequestLabel.STATIC_ASSET).data == b"<svg/>"


def test_cache_first_miss_offline_returns_plain_503(executor, fetcher):
    fetcher.online = False
    response = executor.execute(make_request("/static/missing.css", destination="style"), RequestLabel.STATIC_ASSET)
    assert response.status_code == 503
    assert response.data == b"Offline"
    assert response.header("content-type") == "text/plain"


def test_cache_first_does_not_store_error_status(executor, fetcher, storage):
    response = executor.execute(make_request("/static/missing.css"), RequestLabel.STATIC_ASSET)
    assert response.status_code == 404
    assert storage.open("ponti-static-v1").match(request_key("GET", "/static/missing.css")) is None


# Data API


def test_network_first_data_stores_envelope(executor, fetcher, clock):
    fetcher.responses[ORIGIN + "/api/schedule?week=3"] = json_response({"classes": ["math"]})
    response = executor.execute(make_request("/api/schedule?week=3"), RequestLabel.DATA_API)
    assert response.status_code == 200
    assert response.json() == {"classes": ["math"]}

    envelope = executor.read_envelope(data_key(WORKER + "/api/schedule?week=3"))
    assert envelope.data == {"classes": ["math"]}
    assert envelope.timestamp == clock.now
    assert envelope.url == "/api/schedule?week=3"
    assert envelope.manual is False


def test_network_first_data_falls_back_to_fresh_envelope(executor, fetcher, clock):
    fetcher.responses[ORIGIN + "/api/grades"] = json_response({"gpa": 4.1})
    request = make_request("/api/grades")
    executor.execute(request, RequestLabel.DATA_API)
    stored_at = clock.now

    fetcher.online = False
    clock.now += 60_000
    response = executor.execute(request, RequestLabel.DATA_API)
    assert response.status_code == 200
    assert response.json() == {"gpa": 4.1}
    assert response.header("X-Cache-Status") == "fresh"
    assert response.header("X-Cache-Date") == iso_from_ms(stored_at)


def test_network_first_data_marks_old_envelope_stale(executor, fetcher, clock):
    fetcher.responses[ORIGIN + "/api/grades"] = json_response({"gpa": 4.1})
    request = make_request("/api/grades")
    executor.execute(request, RequestLabel.DATA_API)

    fetcher.online = False
    clock.now += 3_600_001
    response = executor.execute(request, RequestLabel.DATA_API)
    assert response.status_code == 200
    assert response.header("X-Cache-Status") == "stale"


def test_envelope_exactly_one_hour_old_is_fresh(executor, fetcher, clock):
    fetcher.responses[ORIGIN + "/api/campus"] = json_response({"buildings": 12})
    request = make_request("/api/campus")
    executor.execute(request, RequestLabel.DATA_API)

    fetcher.online = False
    clock.now += 3_600_000
    assert executor.execute(request, RequestLabel.DATA_API).header("X-Cache-Status") == "fresh"


def test_network_first_data_miss_offline(executor, fetcher, clock):
    fetcher.online = False
    response = executor.execute(make_request("/api/announcements"), RequestLabel.DATA_API)
    assert response.status_code == 503
    assert response.header("X-Cache-Status") == "miss"
    body = response.json()
    assert body == {"error": "Sin conexión y sin datos en caché", "offline": True, "timestamp": clock.now}


def test_network_first_data_timeout_falls_back(executor, fetcher):
    fetcher.responses[ORIGIN + "/api/services"] = json_response({"services": []})
    request = make_request("/api/services")
    executor.execute(request, RequestLabel.DATA_API)

    fetcher.responses[ORIGIN + "/api/services"] = NetworkTimeoutError("Timed out after 3000ms")
    response = executor.execute(request, RequestLabel.DATA_API)
    assert response.status_code == 200
    assert response.header("X-Cache-Status") == "fresh"


def test_network_first_data_returns_error_status_unchanged(executor, fetcher):
    fetcher.responses[ORIGIN + "/api/student"] = json_response({"ok": True})
    request = make_request("/api/student")
    executor.execute(request, RequestLabel.DATA_API)

    fetcher.responses[ORIGIN + "/api/student"] = json_response({"error": "boom"}, status_code=500)
    response = executor.execute(request, RequestLabel.DATA_API)
    assert response.status_code == 500
    assert executor.read_envelope("/api/student").data == {"ok": True}


def test_network_first_data_can_fall_back_on_error_status(storage, fetcher, clock):
    executor = StrategyExecutor(
        storage,
        fetcher,
        "ponti-static-v1",
        "ponti-data-v1",
        origin_url=ORIGIN,
        fallback_on_error_status=True,
        clock=clock,
    )
    fetcher.responses[ORIGIN + "/api/student"] = json_response({"ok": True})
    request = make_request("/api/student")
    executor.execute(request, RequestLabel.DATA_API)

    fetcher.responses[ORIGIN + "/api/student"] = json_response({"error": "boom"}, status_code=502)
    response = executor.execute(request, RequestLabel.DATA_API)
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_store_envelope_timestamps_are_monotonic(executor, clock):
    first = executor.store_envelope("/api/schedule", {"v": 1})
    second = executor.store_envelope("/api/schedule", {"v": 2})
    assert second.timestamp > first.timestamp
    assert executor.read_envelope("/api/schedule").data == {"v": 2}


def test_store_envelope_rejects_unserializable_data(executor):
    with pytest.raises(TypeError):
        executor.store_envelope("/api/schedule", {"tags": {"a", "b"}})


# Page navigation


def test_network_first_page_caches_page(executor, fetcher, storage):
    fetcher.responses[ORIGIN + "/horario"] = CachedResponse(
        data=b"<html>horario</html>", headers={"Content-Type": "text/html"}, status_code=200
    )
    request = make_request("/horario", mode="navigate")
    assert executor.execute(request, RequestLabel.PAGE_NAVIGATION).data == b"<html>horario</html>"
    assert storage.open("ponti-static-v1").match("GET /horario") is not None

    fetcher.online = False
    assert executor.execute(request, RequestLabel.PAGE_NAVIGATION).data == b"<html>horario</html>"


def test_network_first_page_falls_back_to_cached_root(executor, fetcher):
    fetcher.responses[ORIGIN + "/"] = CachedResponse(
        data=b"<html>home</html>", headers={"Content-Type": "text/html"}, status_code=200
    )
    executor.execute(make_request("/", mode="navigate"), RequestLabel.PAGE_NAVIGATION)

    fetcher.online = False
    response = executor.execute(make_request("/noticias", mode="navigate"), RequestLabel.PAGE_NAVIGATION)
    assert response.data == b"<html>home</html>"


def test_network_first_page_cold_start_offline_page(executor, fetcher):
    fetcher.online = False
    response = executor.execute(make_request("/calificaciones", mode="navigate"), RequestLabel.PAGE_NAVIGATION)
    assert response.status_code == 503
    assert response.header("Content-Type").startswith("text/html")
    assert OFFLINE_PAGE_MARKER in response.data.decode("utf-8")


# Passthrough


def test_passthrough_forwards_worker_requests_to_origin(executor, fetcher, storage):
    fetcher.responses[ORIGIN + "/api/auth/login"] = json_response({"token": "t"})
    request = make_request("/api/auth/login", method="POST")
    response = executor.execute(request, RequestLabel.UNHANDLED)
    assert response.json() == {"token": "t"}
    assert fetcher.calls == [("POST", ORIGIN + "/api/auth/login")]
    assert storage.open("ponti-data-v1").keys() == []


def test_passthrough_network_error_returns_502(executor, fetcher):
    fetcher.online = False
    response = executor.execute(make_request("/robots.txt"), RequestLabel.UNHANDLED)
    assert response.status_code == 502


def test_passthrough_forwards_absolute_origin_requests(executor, fetcher):
    fetcher.responses[ORIGIN + "/robots.txt"] = CachedResponse(
        data=b"User-agent: *", headers={"Content-Type": "text/plain"}, status_code=200
    )
    request = InterceptedRequest(method="GET", url=ORIGIN + "/robots.txt", origin=WORKER)
    response = executor.execute(request, RequestLabel.UNHANDLED)
    assert response.status_code == 200
    assert fetcher.calls == [("GET", ORIGIN + "/robots.txt")]


def test_passthrough_refuses_foreign_hosts(executor, fetcher):
    request = InterceptedRequest(method="GET", url="https://evil.example.com/x", origin=WORKER)
    response = executor.execute(request, RequestLabel.UNHANDLED)
    assert response.status_code == 502
    assert fetcher.calls == []
