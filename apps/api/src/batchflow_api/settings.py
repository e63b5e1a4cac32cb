from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = _env_or_default(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env_or_default(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    state_file: str | None = None
    webhook_signing_secret: str | None = None
    webhook_timeout_seconds: float = 10.0
    webhook_max_attempts: int = 3
    webhook_retry_backoff_seconds: float = 30.0
    default_max_retries: int = 3
    event_max_attempts: int = 3
    event_retention: int = 10_000
    dispatch_poll_seconds: float = 5.0
    log_level: str = "INFO"
    cors_allow_origins: list[str] = field(default_factory=lambda: ["null"])
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


def load_settings() -> Settings:
    return Settings(
        state_file=os.getenv("BATCHFLOW_STATE_FILE") or None,
        webhook_signing_secret=os.getenv("BATCHFLOW_WEBHOOK_SIGNING_SECRET") or None,
        webhook_timeout_seconds=_env_float("BATCHFLOW_WEBHOOK_TIMEOUT_SECONDS", 10.0),
        webhook_max_attempts=_env_int("BATCHFLOW_WEBHOOK_MAX_ATTEMPTS", 3),
        webhook_retry_backoff_seconds=_env_float("BATCHFLOW_WEBHOOK_RETRY_BACKOFF_SECONDS", 30.0),
        default_max_retries=_env_int("BATCHFLOW_DEFAULT_MAX_RETRIES", 3),
        event_max_attempts=_env_int("BATCHFLOW_EVENT_MAX_ATTEMPTS", 3),
        event_retention=_env_int("BATCHFLOW_EVENT_RETENTION", 10_000),
        dispatch_poll_seconds=_env_float("BATCHFLOW_DISPATCH_POLL_SECONDS", 5.0),
        log_level=_env_or_default("BATCHFLOW_LOG_LEVEL", "INFO").upper(),
        cors_allow_origins=_parse_csv_env("API_CORS_ALLOW_ORIGINS", default="null"),
        cors_allow_origin_regex=_env_or_default(
            "API_CORS_ALLOW_ORIGIN_REGEX",
            r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        ),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=_LOG_FORMAT)
