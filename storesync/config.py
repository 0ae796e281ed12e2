"""
CONFIG.PY: single source of truth for runtime settings.

This module is the ONLY place allowed to read environment variables.
DATABASE_URL is required; every other key has a default that matches the
production schedule (slot triggers every few minutes, reclamation sweep on
its own timer).

Config is loaded once and cached. To use a config value, import:

    from storesync.config import get_config

Do not access os.getenv directly from any other module.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parents[1]

# OS env overrides values from .env
load_dotenv(PROJECT_ROOT / ".env")


logger = logging.getLogger(__name__)

REQUIRED_ENV_KEYS = ["DATABASE_URL"]

DEFAULTS: Dict[str, str] = {
    "RUN_ENV": "local",
    "JSON_LOG_FILE": "",
    "ALEMBIC_CONFIG": str(PROJECT_ROOT / "alembic.ini"),
    "SYNC_PAGE_SIZE": "100",
    "SYNC_MIN_PAGE_SIZE": "10",
    "SYNC_MAX_INCREMENTAL_PAGES": "50",
    "SYNC_PRODUCT_VARIATIONS": "true",
    "REMOTE_TIMEOUT_SECONDS": "30",
    "RETRY_MAX_ATTEMPTS": "3",
    "RETRY_BASE_DELAY_SECONDS": "2",
    "RETRY_MAX_DELAY_SECONDS": "300",
    "TASK_LIVENESS_MINUTES": "30",
    "FULL_SYNC_COOLDOWN_MINUTES": "10",
    "TASK_TIMEOUT_SECONDS": "1800",
    "BATCH_EXPIRY_MINUTES": "120",
    "BATCH_IDLE_MINUTES": "10",
    "STEP_TIMEOUT_MINUTES": "5",
    "RECLAIM_TIMEOUT_SECONDS": "120",
    "WEBHOOK_MAX_ATTEMPTS": "3",
    "WEBHOOK_DEDUPE_MINUTES": "5",
    "WEBHOOK_TIMEOUT_SECONDS": "30",
    "WEBHOOK_FORWARD_URL": "",
    "WEBHOOK_FORWARD_SECRET": "",
    "QUEUE_RETENTION_DAYS": "7",
    "WEBHOOK_EVENT_RETENTION_DAYS": "30",
    "WHOLESALE_FACTOR": "10",
    "RETAIL_STORE_NAMES": "",
    "WHOLESALE_STORE_NAMES": "",
}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _require_env(key: str) -> str:
    value = os.getenv(key)
    if value is None:
        message = f"Missing required environment variable: {key}"
        logger.error(message)
        raise ConfigError(message)
    stripped = value.strip()
    if not stripped:
        message = f"Environment variable {key} cannot be blank"
        logger.error(message)
        raise ConfigError(message)
    return stripped


def _load_env_values() -> Dict[str, str]:
    values = {key: _require_env(key) for key in REQUIRED_ENV_KEYS}
    for key, default in DEFAULTS.items():
        raw = os.getenv(key)
        values[key] = raw.strip() if raw is not None else default
    return values


def _parse_bool(value: str, *, key: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    message = f"Config key {key} must be a boolean string; got {value!r}"
    logger.error(message)
    raise ConfigError(message)


def _parse_int(value: str, *, key: str, minimum: int = 0) -> int:
    try:
        parsed = int(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be an integer; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < minimum:
        message = f"Config key {key} must be >= {minimum}; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_float(value: str, *, key: str) -> float:
    try:
        parsed = float(value.strip())
    except (TypeError, ValueError):
        message = f"Config key {key} must be a number; got {value!r}"
        logger.error(message)
        raise ConfigError(message)
    if parsed < 0:
        message = f"Config key {key} cannot be negative; got {parsed}"
        logger.error(message)
        raise ConfigError(message)
    return parsed


def _parse_list(value: str) -> list[str]:
    if not value:
        return []
    tokens = re.split(r"[,\n]", value)
    return [token.strip() for token in tokens if token and token.strip()]


def _clean_url(value: str) -> str:
    return value.strip().rstrip("/")


@dataclass(slots=True, frozen=True)
class Config:
    run_env: str
    database_url: str
    alembic_config: str
    json_log_file: str

    sync_page_size: int
    sync_min_page_size: int
    sync_max_incremental_pages: int
    sync_product_variations: bool
    remote_timeout_seconds: float

    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float

    task_liveness_minutes: int
    full_sync_cooldown_minutes: int
    task_timeout_seconds: float

    batch_expiry_minutes: int
    batch_idle_minutes: int
    step_timeout_minutes: int
    reclaim_timeout_seconds: float

    webhook_max_attempts: int
    webhook_dedupe_minutes: int
    webhook_timeout_seconds: float
    webhook_forward_url: str
    webhook_forward_secret: str
    queue_retention_days: int
    webhook_event_retention_days: int

    wholesale_factor: int
    retail_store_names: list[str]
    wholesale_store_names: list[str]

    @classmethod
    def load_from_env(cls) -> Config:
        values = _load_env_values()

        page_size = _parse_int(values["SYNC_PAGE_SIZE"], key="SYNC_PAGE_SIZE", minimum=1)
        min_page_size = _parse_int(values["SYNC_MIN_PAGE_SIZE"], key="SYNC_MIN_PAGE_SIZE", minimum=1)
        if min_page_size > page_size:
            message = "SYNC_MIN_PAGE_SIZE cannot exceed SYNC_PAGE_SIZE"
            logger.error(message)
            raise ConfigError(message)

        forward_url = _clean_url(values["WEBHOOK_FORWARD_URL"])
        forward_secret = values["WEBHOOK_FORWARD_SECRET"]
        if forward_url and not forward_secret:
            message = "WEBHOOK_FORWARD_SECRET is required when WEBHOOK_FORWARD_URL is set"
            logger.error(message)
            raise ConfigError(message)

        return cls(
            run_env=values["RUN_ENV"],
            database_url=values["DATABASE_URL"],
            alembic_config=values["ALEMBIC_CONFIG"],
            json_log_file=values["JSON_LOG_FILE"],
            sync_page_size=page_size,
            sync_min_page_size=min_page_size,
            sync_max_incremental_pages=_parse_int(
                values["SYNC_MAX_INCREMENTAL_PAGES"], key="SYNC_MAX_INCREMENTAL_PAGES", minimum=2
            ),
            sync_product_variations=_parse_bool(
                values["SYNC_PRODUCT_VARIATIONS"], key="SYNC_PRODUCT_VARIATIONS"
            ),
            remote_timeout_seconds=_parse_float(
                values["REMOTE_TIMEOUT_SECONDS"], key="REMOTE_TIMEOUT_SECONDS"
            ),
            retry_max_attempts=_parse_int(
                values["RETRY_MAX_ATTEMPTS"], key="RETRY_MAX_ATTEMPTS", minimum=1
            ),
            retry_base_delay_seconds=_parse_float(
                values["RETRY_BASE_DELAY_SECONDS"], key="RETRY_BASE_DELAY_SECONDS"
            ),
            retry_max_delay_seconds=_parse_float(
                values["RETRY_MAX_DELAY_SECONDS"], key="RETRY_MAX_DELAY_SECONDS"
            ),
            task_liveness_minutes=_parse_int(
                values["TASK_LIVENESS_MINUTES"], key="TASK_LIVENESS_MINUTES", minimum=1
            ),
            full_sync_cooldown_minutes=_parse_int(
                values["FULL_SYNC_COOLDOWN_MINUTES"], key="FULL_SYNC_COOLDOWN_MINUTES"
            ),
            task_timeout_seconds=_parse_float(
                values["TASK_TIMEOUT_SECONDS"], key="TASK_TIMEOUT_SECONDS"
            ),
            batch_expiry_minutes=_parse_int(
                values["BATCH_EXPIRY_MINUTES"], key="BATCH_EXPIRY_MINUTES", minimum=1
            ),
            batch_idle_minutes=_parse_int(
                values["BATCH_IDLE_MINUTES"], key="BATCH_IDLE_MINUTES", minimum=1
            ),
            step_timeout_minutes=_parse_int(
                values["STEP_TIMEOUT_MINUTES"], key="STEP_TIMEOUT_MINUTES", minimum=1
            ),
            reclaim_timeout_seconds=_parse_float(
                values["RECLAIM_TIMEOUT_SECONDS"], key="RECLAIM_TIMEOUT_SECONDS"
            ),
            webhook_max_attempts=_parse_int(
                values["WEBHOOK_MAX_ATTEMPTS"], key="WEBHOOK_MAX_ATTEMPTS", minimum=1
            ),
            webhook_dedupe_minutes=_parse_int(
                values["WEBHOOK_DEDUPE_MINUTES"], key="WEBHOOK_DEDUPE_MINUTES"
            ),
            webhook_timeout_seconds=_parse_float(
                values["WEBHOOK_TIMEOUT_SECONDS"], key="WEBHOOK_TIMEOUT_SECONDS"
            ),
            webhook_forward_url=forward_url,
            webhook_forward_secret=forward_secret,
            queue_retention_days=_parse_int(
                values["QUEUE_RETENTION_DAYS"], key="QUEUE_RETENTION_DAYS", minimum=1
            ),
            webhook_event_retention_days=_parse_int(
                values["WEBHOOK_EVENT_RETENTION_DAYS"], key="WEBHOOK_EVENT_RETENTION_DAYS", minimum=1
            ),
            wholesale_factor=_parse_int(values["WHOLESALE_FACTOR"], key="WHOLESALE_FACTOR", minimum=1),
            retail_store_names=_parse_list(values["RETAIL_STORE_NAMES"]),
            wholesale_store_names=_parse_list(values["WHOLESALE_STORE_NAMES"]),
        )


_config: Config | None = None


def get_config() -> Config:
    global _config
    if _config is None:
        _config = Config.load_from_env()
    return _config


def reset_config() -> None:
    global _config
    _config = None
