"""Unit tests for OfflineWorker without a listening server."""

import json
import sys
import unittest

# Add the project root to the path to import modules
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

from ponti_offline.core.classifier import InterceptedRequest, RequestLabel
from ponti_offline.core.fetcher import NetworkError
from ponti_offline.core.lifecycle import WorkerPhase
from ponti_offline.core.worker import MetricsCollector, OfflineWorker
from ponti_offline.storage.models import CachedResponse

ORIGIN = "http://origin.test"
WORKER = "http://127.0.0.1:8080"


class FakeFetcher:
    def __init__(self):
        self.responses = {}
        self.online = True

    def fetch(self, method, url, headers=None, body=None):
        if not self.online or url not in self.responses:
            raise NetworkError(f"Network error fetching {url}")
        return self.responses[url].clone()

    def fetch_with_timeout(self, method, url, timeout_ms, headers=None, body=None):
        return self.fetch(method, url, headers, body)

    def close(self):
        pass


def make_request(path, method="GET", mode=""):
    return InterceptedRequest(method=method, url=WORKER + path, origin=WORKER, mode=mode)


class TestOfflineWorker(unittest.TestCase):
    def setUp(self):
        self.worker = OfflineWorker(
            {
                "origin": {"url": ORIGIN},
                "caches": {"version": "3"},
                "routes": {"precache": ["/"]},
                "logging": {"level": "WARNING"},
            }
        )
        self.fetcher = FakeFetcher()
        self.worker.executor.fetcher = self.fetcher
        self.fetcher.responses[ORIGIN + "/"] = CachedResponse(
            data=b"<html>home</html>", headers={"Content-Type": "text/html"}, status_code=200
        )

    def tearDown(self):
        self.worker.stop()

    def test_cache_names_follow_version(self):
        self.assertEqual(self.worker.static_name, "ponti-static-v3")
        self.assertEqual(self.worker.data_name, "ponti-data-v3")

    def test_requests_pass_through_until_controlling(self):
        self.fetcher.responses[ORIGIN + "/api/schedule"] = CachedResponse(data=b"{}", headers={}, status_code=200)
        label, response = self.worker.handle_request(make_request("/api/schedule"))
        self.assertEqual(label, RequestLabel.UNHANDLED)
        self.assertEqual(response.status_code, 200)

    def test_install_precaches_and_controls(self):
        self.worker.install()
        self.assertEqual(self.worker.lifecycle.phase, WorkerPhase.ACTIVATED)
        self.fetcher.online = False
        label, response = self.worker.handle_request(make_request("/noticias", mode="navigate"))
        self.assertEqual(label, RequestLabel.PAGE_NAVIGATION)
        self.assertEqual(response.data, b"<html>home</html>")

    def test_install_runs_once(self):
        self.worker.install()
        self.worker.storage.open("ponti-static-v2")
        self.worker.install()
        self.assertTrue(self.worker.storage.has("ponti-static-v2"))

    def test_post_message_errors(self):
        self.worker.install()
        self.assertEqual(self.worker.post_message({"type": "NOPE"}), {"error": "Unknown message type"})
        self.assertEqual(
            self.worker.post_message({"type": "CACHE_DATA", "payload": {"key": "/api/x"}}),
            {"error": "Invalid payload for CACHE_DATA"},
        )

    def test_cache_data_round_trip_through_data_fallback(self):
        self.worker.install()
        reply = self.worker.post_message(
            {"type": "CACHE_DATA", "payload": {"key": "/api/schedule", "data": {"classes": ["fisica"]}}}
        )
        self.assertEqual(reply, {"success": True})

        label, response = self.worker.handle_request(make_request("/api/schedule"))
        self.assertEqual(label, RequestLabel.DATA_API)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.data), {"classes": ["fisica"]})
        self.assertEqual(response.header("X-Cache-Status"), "fresh")

    def test_cache_data_with_absolute_key_is_served_for_path_request(self):
        self.worker.install()
        reply = self.worker.post_message(
            {"type": "CACHE_DATA", "payload": {"key": WORKER + "/api/schedule", "data": {"classes": ["quimica"]}}}
        )
        self.assertEqual(reply, {"success": True})

        label, response = self.worker.handle_request(make_request("/api/schedule"))
        self.assertEqual(label, RequestLabel.DATA_API)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.data), {"classes": ["quimica"]})

    def test_sync_uses_registered_tag(self):
        self.worker.install()
        self.worker.post_message({"type": "CACHE_DATA", "payload": {"key": "/api/grades", "data": [1]}})
        self.fetcher.responses[ORIGIN + "/api/grades"] = CachedResponse(data=b"[1, 2]", headers={}, status_code=200)
        report = self.worker.sync()
        self.assertEqual(report.succeeded, 1)
        self.assertEqual(self.worker.executor.read_envelope("/api/grades").data, [1, 2])

    def test_status(self):
        self.worker.install()
        status = self.worker.status()
        self.assertEqual(status["version"], "3")
        self.assertEqual(status["phase"], "activated")
        self.assertTrue(status["controlling"])
        self.assertEqual(status["caches"], {"static": "ponti-static-v3", "data": "ponti-data-v3"})
        self.assertTrue(status["sync_supported"])
        self.assertIn("total_events", status["metrics"])

    def test_invalid_config_raises(self):
        with self.assertRaises(ValueError):
            OfflineWorker({"origin": {"url": "not-a-url"}})

    def test_stop_is_idempotent(self):
        self.worker.stop()
        self.worker.stop()
        self.assertFalse(self.worker.running)


class TestMetricsCollector(unittest.TestCase):
    def test_counts_by_event_type(self):
        metrics = MetricsCollector(max_events=2)
        metrics.record_event("cache_hit", {"key": "a"})
        metrics.record_event("cache_miss")
        metrics.record_event("offline")
        result = metrics.get_metrics()
        self.assertEqual(result["total_events"], 3)
        self.assertEqual(result["cache_hits"], 1)
        self.assertEqual(result["cache_misses"], 1)
        self.assertEqual(result["offline"], 1)
        self.assertEqual([e["event_type"] for e in result["events"]], ["cache_miss", "offline"])


if __name__ == "__main__":
    unittest.main()
