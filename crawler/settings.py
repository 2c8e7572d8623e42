"""Runtime configuration loaded from the environment and ``.env``."""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[1]
load_dotenv(BASE_DIR / ".env")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", name, raw)
        return default


def get_db_connection_string() -> str:
    """Get database connection string from environment."""
    if conn_str := os.getenv("DATABASE_URL"):
        return conn_str

    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "crawler")
    password = os.getenv("PG_PASS", "crawler")
    database = os.getenv("PG_DB", "crawler")

    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


@dataclass
class Settings:
    """Process-wide settings.

    Every field has a default so tests can build ``Settings()`` directly;
    services use :meth:`from_env`.
    """

    database_url: Optional[str] = None
    cron_trigger_secret: Optional[str] = None
    log_api_endpoint: Optional[str] = None
    storage_dir: Path = BASE_DIR / "storage"
    definitions_file: Optional[Path] = None

    captcha_mode: str = "manual"  # manual, auto, skip
    captcha_api_key: Optional[str] = None
    captcha_manual_timeout: float = 120.0

    fmtc_username: Optional[str] = None
    fmtc_password: Optional[str] = None

    headless: bool = True
    max_concurrent_tasks: int = 1
    allow_concurrent_runs: bool = False
    task_timeout_seconds: float = 3600.0
    shutdown_timeout_seconds: float = 30.0

    session_max_age_seconds: float = 4 * 3600
    max_consecutive_challenges: int = 5
    challenge_cooldown_seconds: float = 30.0

    sse_heartbeat_seconds: float = 30.0
    sse_log_poll_seconds: float = 2.0
    sse_log_batch_size: int = 50
    sse_close_grace_seconds: float = 5.0
    sse_max_connection_seconds: float = 30 * 60

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        definitions = os.getenv("TASK_DEFINITIONS_FILE")
        return cls(
            database_url=os.getenv("DATABASE_URL") or (
                get_db_connection_string() if os.getenv("PG_HOST") else None
            ),
            cron_trigger_secret=os.getenv("CRON_TRIGGER_SECRET") or None,
            log_api_endpoint=os.getenv("LOG_API_ENDPOINT") or None,
            storage_dir=Path(os.getenv("SCRAPER_STORAGE_DIR", str(BASE_DIR / "storage"))),
            definitions_file=Path(definitions) if definitions else None,
            captcha_mode=os.getenv("CAPTCHA_MODE", "manual").lower(),
            captcha_api_key=os.getenv("TWOCAPTCHA_API_KEY") or None,
            captcha_manual_timeout=float(_env_int("CAPTCHA_MANUAL_TIMEOUT", 120)),
            fmtc_username=os.getenv("FMTC_USERNAME") or None,
            fmtc_password=os.getenv("FMTC_PASSWORD") or None,
            headless=_env_bool("SCRAPER_HEADLESS", True),
            max_concurrent_tasks=max(1, _env_int("MAX_CONCURRENT_TASKS", 1)),
            allow_concurrent_runs=_env_bool("ALLOW_CONCURRENT_RUNS", False),
            task_timeout_seconds=float(_env_int("TASK_TIMEOUT_SECONDS", 3600)),
            shutdown_timeout_seconds=float(_env_int("SHUTDOWN_TIMEOUT_SECONDS", 30)),
            session_max_age_seconds=float(_env_int("SESSION_MAX_AGE_SECONDS", 4 * 3600)),
            max_consecutive_challenges=max(1, _env_int("MAX_CONSECUTIVE_CHALLENGES", 5)),
            challenge_cooldown_seconds=float(_env_int("CHALLENGE_COOLDOWN_SECONDS", 30)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging the same way for CLI and API processes."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
