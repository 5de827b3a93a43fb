"""Configuration management for Ponti Offline."""

import copy
from typing import Any, List, Tuple

from ponti_offline.utils.logger import DEFAULT_LOGGING_CONFIG

# Default configuration schema
DEFAULT_CONFIG = {
    "server": {"host": "127.0.0.1", "port": 8080, "request_timeout": 30},
    "origin": {"url": "http://127.0.0.1:3000"},
    "caches": {
        "app_name": "ponti",
        "version": "1",
        # Explicit names override "<app_name>-static-v<version>" / "<app_name>-data-v<version>"
        "static_name": None,
        "data_name": None,
        "database_path": ":memory:",
        "expiry_hours": 24,
        "max_entry_size": 10485760,  # 10MB
    },
    "routes": {
        "control_prefix": "/__sw",
        "static_prefixes": ["/_next/static/", "/static/"],
        "data_prefixes": [
            "/api/schedule",
            "/api/announcements",
            "/api/grades",
            "/api/services",
            "/api/campus",
            "/api/student",
        ],
        "api_prefix": "/api/",
        "precache": [
            "/",
            "/horario",
            "/calificaciones",
            "/noticias",
            "/manifest.json",
            "/icon-192.png",
            "/icon-512.png",
        ],
    },
    "strategy": {
        "data_timeout_ms": 3000,
        "stale_threshold_ms": 3600000,  # 1 hour
        "fallback_on_error_status": False,
    },
    "lifecycle": {"skip_waiting_on_install": True},
    "sync": {"enabled": True, "tag": "background-sync"},
    "logging": dict(DEFAULT_LOGGING_CONFIG),
}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge two dictionaries."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def cache_names(config: dict) -> Tuple[str, str]:
    """Return the current ``(static, data)`` store names for a merged config."""
    caches = config.get("caches", {})
    app = caches.get("app_name", "ponti")
    version = caches.get("version", "1")
    static_name = caches.get("static_name") or f"{app}-static-v{version}"
    data_name = caches.get("data_name") or f"{app}-data-v{version}"
    return static_name, data_name


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


class ConfigurationValidator:
    """Validates configuration and provides error reporting."""

    @staticmethod
    def validate_config(config: dict) -> Tuple[bool, List[str]]:
        errors = []
        if not isinstance(config, dict):
            errors.append("Config must be a dictionary.")
            return False, errors
        # Validate server
        server = config.get("server", {})
        if not isinstance(server.get("host", None), str):
            errors.append("server.host must be a string.")
        if not _is_int(server.get("port", None)):
            errors.append("server.port must be an integer.")
        if not _is_int(server.get("request_timeout", None)):
            errors.append("server.request_timeout must be an integer.")
        # Validate origin
        origin_url = config.get("origin", {}).get("url", None)
        if not isinstance(origin_url, str) or not origin_url.startswith(("http://", "https://")):
            errors.append("origin.url must be an http(s) URL.")
        # Validate caches
        caches = config.get("caches", {})
        if not isinstance(caches.get("app_name", None), str) or not caches.get("app_name"):
            errors.append("caches.app_name must be a non-empty string.")
        if not isinstance(caches.get("version", None), (str, int)) or isinstance(caches.get("version"), bool):
            errors.append("caches.version must be a string or integer.")
        for name_key in ("static_name", "data_name"):
            if caches.get(name_key) is not None and not isinstance(caches.get(name_key), str):
                errors.append(f"caches.{name_key} must be a string or None.")
        if not isinstance(caches.get("database_path", None), str):
            errors.append("caches.database_path must be a string.")
        if not _is_int(caches.get("expiry_hours", None)):
            errors.append("caches.expiry_hours must be an integer.")
        if not _is_int(caches.get("max_entry_size", None)):
            errors.append("caches.max_entry_size must be an integer.")
        if not errors and len(set(cache_names(config))) != 2:
            errors.append("caches static and data names must differ.")
        # Validate routes
        routes = config.get("routes", {})
        control_prefix = routes.get("control_prefix", None)
        if not isinstance(control_prefix, str) or not control_prefix.startswith("/"):
            errors.append("routes.control_prefix must be a path starting with '/'.")
        for list_key in ("static_prefixes", "data_prefixes", "precache"):
            if not _is_str_list(routes.get(list_key, None)):
                errors.append(f"routes.{list_key} must be a list of strings.")
        if not isinstance(routes.get("api_prefix", None), str):
            errors.append("routes.api_prefix must be a string.")
        # Validate strategy
        strategy = config.get("strategy", {})
        if not _is_int(strategy.get("data_timeout_ms", None)) or strategy.get("data_timeout_ms") <= 0:
            errors.append("strategy.data_timeout_ms must be a positive integer.")
        if not _is_int(strategy.get("stale_threshold_ms", None)):
            errors.append("strategy.stale_threshold_ms must be an integer.")
        if not isinstance(strategy.get("fallback_on_error_status", None), bool):
            errors.append("strategy.fallback_on_error_status must be a boolean.")
        # Validate lifecycle and sync
        if not isinstance(config.get("lifecycle", {}).get("skip_waiting_on_install", None), bool):
            errors.append("lifecycle.skip_waiting_on_install must be a boolean.")
        sync = config.get("sync", {})
        if not isinstance(sync.get("enabled", None), bool):
            errors.append("sync.enabled must be a boolean.")
        if not isinstance(sync.get("tag", None), str) or not sync.get("tag"):
            errors.append("sync.tag must be a non-empty string.")
        # Validate logging
        logging_cfg = config.get("logging", {})
        if not isinstance(logging_cfg.get("level", None), str):
            errors.append("logging.level must be a string.")
        if logging_cfg.get("parent_logger") is not None and not isinstance(logging_cfg.get("parent_logger"), str):
            errors.append("logging.parent_logger must be a string or None.")
        if not isinstance(logging_cfg.get("format", None), str):
            errors.append("logging.format must be a string.")
        if not isinstance(logging_cfg.get("enable_console", None), bool):
            errors.append("logging.enable_console must be a boolean.")
        if not isinstance(logging_cfg.get("enable_file", None), bool):
            errors.append("logging.enable_file must be a boolean.")
        if logging_cfg.get("file_path") is not None and not isinstance(logging_cfg.get("file_path"), str):
            errors.append("logging.file_path must be a string or None.")
        return len(errors) == 0, errors

    @staticmethod
    def merge_with_defaults(user_config: dict) -> dict:
        return deep_merge(DEFAULT_CONFIG, user_config)


class ConfigurationManager:
    """Manages configuration, validation, merging, and runtime updates."""

    def __init__(self, user_config: dict = None):
        if user_config is None:
            user_config = {}
        self._config = self.load_config(user_config)

    def load_config(self, user_config: dict) -> dict:
        if not isinstance(user_config, dict):
            raise ValueError("Invalid configuration: ['Config must be a dictionary.']")
        merged = ConfigurationValidator.merge_with_defaults(user_config)
        valid, errors = ConfigurationValidator.validate_config(merged)
        if not valid:
            raise ValueError(f"Invalid configuration: {errors}")
        return merged

    @property
    def config(self) -> dict:
        return self._config

    def update(self, key_path: str, value: Any) -> None:
        """Update a config value at a dotted key path (e.g., 'strategy.data_timeout_ms')."""
        candidate = copy.deepcopy(self._config)
        keys = key_path.split(".")
        d = candidate
        for k in keys[:-1]:
            if k not in d or not isinstance(d[k], dict):
                d[k] = {}
            d = d[k]
        d[keys[-1]] = value
        valid, errors = ConfigurationValidator.validate_config(candidate)
        if not valid:
            raise ValueError(f"Invalid configuration after update: {errors}")
        self._config = candidate

    def reload(self, new_config: dict) -> None:
        self._config = self.load_config(new_config)
