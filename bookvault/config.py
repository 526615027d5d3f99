import logging
import math
import os
from pathlib import Path
from typing import Optional, Set


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 0) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger = logging.getLogger("bookvault.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _safe_float_env(key: str, default: float, min_value: float = 0.0) -> float:
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        value = float(raw_value)
    except (TypeError, ValueError):
        logging.getLogger("bookvault.config").warning(
            "Invalid value for %s: %s. Using default: %s",
            key, raw_value, default
        )
        return default
    if math.isnan(value) or math.isinf(value):
        return default
    return max(min_value, value)


def _str_env(key: str, default: str = "") -> str:
    return (os.environ.get(key) or default).strip()


STORAGE_ROOT = _resolve_env_path("BOOKVAULT_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("BOOKVAULT_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("BOOKVAULT_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "metadata.db"

BYTES_PER_GIB = 1024 * 1024 * 1024
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 3

B2_APPLICATION_KEY_ID = _str_env("B2_APPLICATION_KEY_ID")
B2_APPLICATION_KEY = _str_env("B2_APPLICATION_KEY")
B2_BUCKET_ID = _str_env("B2_BUCKET_ID")
B2_BUCKET_NAME = _str_env("B2_BUCKET_NAME")
B2_API_URL = _str_env("B2_API_URL", "https://api.backblazeb2.com").rstrip("/")
B2_TIMEOUT_SECONDS = _safe_int_env("B2_TIMEOUT_SECONDS", 30, min_value=1)

ADMIN_API_KEY = _str_env("ADMIN_API_KEY")

MAX_UPLOAD_BYTES = _safe_int_env("BOOKVAULT_MAX_UPLOAD_BYTES", 2 * BYTES_PER_GIB, min_value=1)
PENDING_THRESHOLD_HOURS = _safe_float_env("BOOKVAULT_PENDING_THRESHOLD_HOURS", 6.0)
DOWNLOAD_TTL_SECONDS = _safe_int_env("BOOKVAULT_DOWNLOAD_TTL_SECONDS", 3600, min_value=1)
CLEANUP_INTERVAL_MINUTES = _safe_int_env("BOOKVAULT_CLEANUP_INTERVAL_MINUTES", 0)

RATE_LIMIT_STORAGE = _str_env("BOOKVAULT_RATE_LIMIT_STORAGE", "memory://")
RATE_LIMIT_INTENTS_PER_HOUR = _safe_int_env("BOOKVAULT_RATE_LIMIT_INTENTS_PER_HOUR", 100, min_value=1)
RATE_LIMIT_DOWNLOADS_PER_MINUTE = _safe_int_env(
    "BOOKVAULT_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120, min_value=1
)

LOG_LEVEL = _str_env("LOG_LEVEL", "INFO").upper()


def _parse_extensions(raw: Optional[str]) -> Set[str]:
    if raw is None:
        raw = "pdf,epub,mobi"
    return {
        item.strip().lower().lstrip(".")
        for item in raw.split(",")
        if item.strip()
    }


ALLOWED_EXTENSIONS = _parse_extensions(os.environ.get("BOOKVAULT_ALLOWED_EXTENSIONS"))


def pending_threshold_seconds() -> float:
    return PENDING_THRESHOLD_HOURS * 3600.0


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
