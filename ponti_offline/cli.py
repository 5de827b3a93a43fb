"""Command-line interface for Ponti Offline."""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

from ponti_offline.core.worker import OfflineWorker


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration from JSON file."""
    try:
        with open(config_path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"Error: Configuration file not found: {config_path}")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in configuration file: {e}")
        sys.exit(1)


def create_default_config() -> Dict[str, Any]:
    """Create a default configuration."""
    # Environment overrides for CI
    db_path = os.environ.get("PONTI_OFFLINE_DB_PATH", "ponti_offline_cache.db")
    log_level = os.environ.get("PONTI_OFFLINE_LOG_LEVEL", "INFO")

    return {
        "server": {"host": "127.0.0.1", "port": 8080},
        "origin": {"url": "http://127.0.0.1:3000"},
        "caches": {"app_name": "ponti", "version": "1", "database_path": db_path, "expiry_hours": 24},
        "strategy": {"data_timeout_ms": 3000},
        "sync": {"enabled": True, "tag": "background-sync"},
        "logging": {"level": log_level},
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ponti-offline",
        description="Ponti Offline - offline-first caching gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ponti-offline --config config.json                       # Start with config file
  ponti-offline --origin https://ponti.example.edu         # Front a different origin
  ponti-offline --port 9090 --host 0.0.0.0                 # Custom host/port
  ponti-offline --generate-config                          # Generate default config

Control endpoints (under /__sw by default):
  GET  /__sw/status     worker version, phase, caches and metrics
  POST /__sw/message    {"type": "GET_CACHE_SIZE" | "CLEAR_CACHE" | "CACHE_DATA" | "SKIP_WAITING"}
  POST /__sw/sync       {"tag": "background-sync"}
        """,
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to configuration JSON file")
    parser.add_argument("--host", help="Host to bind to (default: 127.0.0.1, or the config file value)")
    parser.add_argument("--port", "-p", type=int, help="Port to bind to (default: 8080, or the config file value)")
    parser.add_argument("--origin", help="Origin URL the worker sits in front of")
    parser.add_argument("--generate-config", action="store_true", help="Generate a default configuration file and exit")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set logging level (default: INFO)",
    )
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")
    return parser


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.generate_config:
        config = create_default_config()
        config_file = Path("ponti_offline_config.json")
        with open(config_file, "w") as f:
            json.dump(config, f, indent=2)
        print(f"Generated default configuration: {config_file}")
        return

    if args.config:
        config = load_config(args.config)
    else:
        config = create_default_config()
        print("Using default configuration. Use --generate-config to create a config file.")

    # Override with CLI arguments
    if args.host is not None:
        config.setdefault("server", {})["host"] = args.host
    if args.port is not None:
        config.setdefault("server", {})["port"] = args.port
    if args.origin:
        config.setdefault("origin", {})["url"] = args.origin
    if args.log_level:
        config.setdefault("logging", {})["level"] = args.log_level

    host = config.get("server", {}).get("host", "127.0.0.1")
    port = config.get("server", {}).get("port", 8080)
    worker = None
    try:
        worker = OfflineWorker(config)
        print(f"Starting Ponti Offline {worker.version} on {host}:{port}")
        print(f"Origin: {worker.config['origin']['url']}")
        print(f"Caches: {worker.static_name}, {worker.data_name}")
        print("\nPress Ctrl+C to stop")
        sys.stdout.flush()
        worker.start(blocking=True)
    except KeyboardInterrupt:
        print("\nShutting down...")
        if worker is not None:
            worker.stop()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except OSError as e:
        print(f"Error binding to {host}:{port}: {e}")
        if "Address already in use" in str(e):
            print(f"Port {port} is already in use. Try a different port with --port option.")
        elif "Permission denied" in str(e):
            print(f"Permission denied to bind to {host}:{port}. Try using a port above 1024.")
        sys.exit(1)


if __name__ == "__main__":
    main()
