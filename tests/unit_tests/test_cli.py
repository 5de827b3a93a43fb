"""Unit tests for the ponti-offline command-line interface."""

import json
import os
import sys
import tempfile
import unittest

# Add the project root to the path to import modules
from pathlib import Path
from unittest.mock import MagicMock, patch

PROJECT_ROOT = Path(__file__).parent.parent.parent.absolute()
sys.path.append(str(PROJECT_ROOT))

from ponti_offline import cli


class TestConfigHelpers(unittest.TestCase):
    def test_load_config(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            json.dump({"origin": {"url": "https://ponti.example.edu"}}, f)
        try:
            self.assertEqual(cli.load_config(Path(f.name))["origin"]["url"], "https://ponti.example.edu")
        finally:
            os.unlink(f.name)

    def test_load_missing_config_exits(self):
        with self.assertRaises(SystemExit):
            cli.load_config(Path("/nonexistent/ponti_offline_config.json"))

    def test_load_invalid_json_exits(self):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            f.write("{not json")
        try:
            with self.assertRaises(SystemExit):
                cli.load_config(Path(f.name))
        finally:
            os.unlink(f.name)

    @patch.dict(os.environ, {"PONTI_OFFLINE_DB_PATH": "/tmp/ci.db", "PONTI_OFFLINE_LOG_LEVEL": "DEBUG"})
    def test_default_config_reads_environment(self):
        config = cli.create_default_config()
        self.assertEqual(config["caches"]["database_path"], "/tmp/ci.db")
        self.assertEqual(config["logging"]["level"], "DEBUG")


class TestMain(unittest.TestCase):
    def test_generate_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            cwd = os.getcwd()
            os.chdir(tmp)
            try:
                cli.main(["--generate-config"])
                with open("ponti_offline_config.json") as f:
                    config = json.load(f)
            finally:
                os.chdir(cwd)
        self.assertIn("origin", config)
        self.assertEqual(config["sync"]["tag"], "background-sync")

    @patch("ponti_offline.cli.OfflineWorker")
    def test_cli_overrides_reach_worker(self, worker_cls):
        worker = MagicMock()
        worker.version = "1"
        worker.config = {"origin": {"url": "https://ponti.example.edu"}}
        worker_cls.return_value = worker

        cli.main(["--origin", "https://ponti.example.edu", "--port", "9090", "--log-level", "WARNING"])

        config = worker_cls.call_args[0][0]
        self.assertEqual(config["origin"]["url"], "https://ponti.example.edu")
        self.assertEqual(config["server"]["port"], 9090)
        self.assertEqual(config["logging"]["level"], "WARNING")
        worker.start.assert_called_once_with(blocking=True)

    @patch.dict(os.environ, {"PONTI_OFFLINE_LOG_LEVEL": "DEBUG"})
    @patch("ponti_offline.cli.OfflineWorker")
    def test_environment_log_level_survives_without_flag(self, worker_cls):
        cli.main([])
        config = worker_cls.call_args[0][0]
        self.assertEqual(config["logging"]["level"], "DEBUG")
        self.assertEqual(config["server"], {"host": "127.0.0.1", "port": 8080})

    @patch("ponti_offline.cli.OfflineWorker")
    def test_config_file_values_survive_without_flags(self, worker_cls):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            json.dump({"logging": {"level": "ERROR"}, "server": {"host": "0.0.0.0", "port": 7000}}, f)
        try:
            cli.main(["--config", f.name])
        finally:
            os.unlink(f.name)
        config = worker_cls.call_args[0][0]
        self.assertEqual(config["logging"]["level"], "ERROR")
        self.assertEqual(config["server"], {"host": "0.0.0.0", "port": 7000})

    @patch("ponti_offline.cli.OfflineWorker")
    def test_explicit_flags_override_config_file(self, worker_cls):
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as f:
            json.dump({"logging": {"level": "ERROR"}, "server": {"host": "0.0.0.0", "port": 7000}}, f)
        try:
            cli.main(["--config", f.name, "--host", "127.0.0.1", "--port", "8080", "--log-level", "INFO"])
        finally:
            os.unlink(f.name)
        config = worker_cls.call_args[0][0]
        self.assertEqual(config["logging"]["level"], "INFO")
        self.assertEqual(config["server"], {"host": "127.0.0.1", "port": 8080})

    @patch("ponti_offline.cli.OfflineWorker")
    def test_keyboard_interrupt_stops_worker(self, worker_cls):
        worker = MagicMock()
        worker.start.side_effect = KeyboardInterrupt
        worker_cls.return_value = worker
        cli.main([])
        worker.stop.assert_called_once()

    @patch("ponti_offline.cli.OfflineWorker", side_effect=ValueError("Invalid configuration: ['x']"))
    def test_invalid_config_exits(self, worker_cls):
        with self.assertRaises(SystemExit):
            cli.main([])

    @patch("ponti_offline.cli.OfflineWorker")
    def test_port_in_use_exits(self, worker_cls):
        worker_cls.return_value.start.side_effect = OSError("[Errno 98] Address already in use")
        with self.assertRaises(SystemExit):
            cli.main([])


if __name__ == "__main__":
    unittest.main()
