# config.py
"""
Runtime settings for the store metrics service.

Everything is read from environment variables so the same code runs locally,
in Docker (/app/data.db) and under pytest (tmp_path databases).
"""

import os
from dataclasses import dataclass, field
from typing import List


# ---------------------------------------------------
# Constants//Global Params
# ---------------------------------------------------

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(BASE_DIR)

TABLE_NAME = "store_metrics"

DEFAULT_DB_PATH = os.path.join(PROJECT_ROOT, "data", "store_metrics.db")
DEFAULT_UPLOAD_DIR = os.path.join(PROJECT_ROOT, "uploads")
DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024  # 100MB
DEFAULT_PORT = 3001


def log(msg: str, level: str = "INFO"):
    """Small helper to print progress messages immediately."""
    print(f"[{level}] {msg}", flush=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "t", "yes", "y")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    upload_dir: str = DEFAULT_UPLOAD_DIR
    batch_size: int = DEFAULT_BATCH_SIZE
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    infer_types: bool = False
    count_rows_first: bool = False
    upload_timeout: float = 600.0
    fetch_timeout: float = 30.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit_max: int = 100
    rate_limit_window: float = 15 * 60
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ALLOWED_ORIGINS", "*").split(",")
        return cls(
            db_path=os.getenv("STORE_METRICS_DB_PATH", DEFAULT_DB_PATH),
            upload_dir=os.getenv("STORE_METRICS_UPLOAD_DIR", DEFAULT_UPLOAD_DIR),
            batch_size=_env_int("BATCH_SIZE", DEFAULT_BATCH_SIZE),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
            infer_types=_env_bool("INFER_COLUMN_TYPES", False),
            count_rows_first=_env_bool("COUNT_ROWS_FIRST", False),
            upload_timeout=_env_float("UPLOAD_TIMEOUT_SECONDS", 600.0),
            fetch_timeout=_env_float("URL_FETCH_TIMEOUT_SECONDS", 30.0),
            cors_origins=[o.strip() for o in origins if o.strip()],
            rate_limit_max=_env_int("RATE_LIMIT_MAX_REQUESTS", 100),
            rate_limit_window=_env_float("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", DEFAULT_PORT),
        )
