import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List
from urllib.parse import urlparse


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILEDESK_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILEDESK_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("FILEDESK_LOGS_DIR", STORAGE_ROOT / "logs")
CONFIG_PATH = DATA_DIR / "config.json"

BYTES_PER_MB = 1024 * 1024
SUPPORTED_LOCALES = ("en", "ru")
DEFAULT_PROXY_HOST = "storage.yandexcloud.net"


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("filedesk.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_API_URL = os.environ.get("FILEDESK_API_URL", "http://localhost:8080")
DEFAULT_MAX_UPLOAD_MB = _safe_int_env("FILEDESK_MAX_UPLOAD_SIZE_MB", 500)
DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE = _safe_int_env("FILEDESK_RATE_LIMIT_LOGINS_PER_MINUTE", 10)
DEFAULT_ARCHIVE_MAX_FILES = _safe_int_env("FILEDESK_ARCHIVE_MAX_FILES", 500)
DEFAULT_UPLOAD_RECORD_TTL_MINUTES = _safe_int_env("FILEDESK_UPLOAD_RECORD_TTL_MINUTES", 30)


DEFAULT_CONFIG = {
    "api_base_url": DEFAULT_API_URL,
    "request_timeout_seconds": 30.0,
    "proxy_hosts": [DEFAULT_PROXY_HOST],
    "proxy_prefix": "/s3proxy",
    "success_message_ms": 3000.0,
    "error_message_ms": 5000.0,
    "login_rate_limit_per_minute": float(DEFAULT_LOGIN_RATE_LIMIT_PER_MINUTE),
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "archive_max_files": float(DEFAULT_ARCHIVE_MAX_FILES),
    "upload_record_ttl_minutes": float(DEFAULT_UPLOAD_RECORD_TTL_MINUTES),
    "default_locale": "en",
}

CONFIG_NUMERIC_KEYS = {
    "request_timeout_seconds",
    "success_message_ms",
    "error_message_ms",
    "login_rate_limit_per_minute",
    "max_upload_size_mb",
    "archive_max_files",
    "upload_record_ttl_minutes",
}

# Inclusive bounds applied after coercion.
CONFIG_NUMERIC_RANGES = {
    "request_timeout_seconds": (1.0, 600.0),
    "success_message_ms": (1000.0, 60000.0),
    "error_message_ms": (1000.0, 60000.0),
    "login_rate_limit_per_minute": (1.0, 1000.0),
    "max_upload_size_mb": (1.0, 10240.0),
    "archive_max_files": (1.0, 10000.0),
    "upload_record_ttl_minutes": (1.0, 1440.0),
}

CONFIG_STRING_KEYS = {"api_base_url", "proxy_prefix", "default_locale"}

CONFIG_LIST_KEYS = {"proxy_hosts"}


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    ensure_directories()
    try:
        return CONFIG_PATH.stat().st_mtime
    except OSError:
        return 0.0


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity.

    Args:
        value: Value to coerce to float
        default: Default value to use if coercion fails

    Returns:
        Float value or default
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_api_url(value: str) -> str:
    candidate = value.strip().rstrip("/")
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return ""
    return candidate


def _normalize_proxy_prefix(value: str) -> str:
    candidate = "/" + value.strip().strip("/")
    if candidate == "/":
        return ""
    return candidate


def _normalize_hosts(values: List[Any]) -> List[str]:
    hosts: List[str] = []
    for entry in values:
        if not isinstance(entry, str):
            continue
        host = entry.strip().lower()
        if "://" in host:
            host = urlparse(host).netloc
        host = host.strip("/")
        if host and host not in hosts:
            hosts.append(host)
    return hosts


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    config["proxy_hosts"] = list(DEFAULT_CONFIG["proxy_hosts"])

    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])
        low, high = CONFIG_NUMERIC_RANGES[key]
        if config[key] < low or config[key] > high:
            config[key] = float(DEFAULT_CONFIG[key])

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if not isinstance(value, str):
            continue
        if key == "api_base_url":
            value = _normalize_api_url(value)
        elif key == "proxy_prefix":
            value = _normalize_proxy_prefix(value)
        elif key == "default_locale":
            value = value.strip().lower()
            if value not in SUPPORTED_LOCALES:
                continue
        if value:
            config[key] = value

    for key in CONFIG_LIST_KEYS:
        value = raw_config.get(key)
        if isinstance(value, str):
            value = value.replace(",", "\n").splitlines()
        if isinstance(value, list):
            config[key] = _normalize_hosts(value)

    if not config["api_base_url"]:
        config["api_base_url"] = DEFAULT_CONFIG["api_base_url"].rstrip("/")

    return config


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def load_config() -> Dict[str, Any]:
    ensure_directories()
    data: Dict[str, Any]
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                logging.getLogger("filedesk.config").warning(
                    "config_unreadable path=%s", CONFIG_PATH
                )
                raw = {}
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)

    # Write to temporary file first for atomic update
    temp_path = CONFIG_PATH.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())

        temp_path.replace(CONFIG_PATH)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def api_root(config: Dict[str, Any]) -> str:
    """Return the versioned REST root for the configured backend."""

    return f"{config['api_base_url']}/api/v1"
