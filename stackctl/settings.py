from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("STACKCTL_DB_PATH", "stackctl.db")
    stack_file: str = os.getenv("STACKCTL_FILE", "stack.yml")
    docker_network: str = os.getenv("STACKCTL_DOCKER_NETWORK", "stackctl")

    # Health checks (defaults for services that do not set their own)
    poll_interval_s: float = _env_float("STACKCTL_POLL_INTERVAL_S", 5.0)
    probe_timeout_s: float = _env_float("STACKCTL_PROBE_TIMEOUT_S", 2.0)
    fail_threshold: int = _env_int("STACKCTL_FAIL_THRESHOLD", 3)
    start_timeout_s: float = _env_float("STACKCTL_START_TIMEOUT_S", 120.0)
    stop_timeout_s: int = _env_int("STACKCTL_STOP_TIMEOUT_S", 10)

    # Status API
    api_host: str = os.getenv("STACKCTL_API_HOST", "127.0.0.1")
    api_port: int = _env_int("STACKCTL_API_PORT", 8700)

    # Email alerting (optional)
    enable_email: bool = _env_bool("STACKCTL_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("STACKCTL_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("STACKCTL_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("STACKCTL_SMTP_USER")
    smtp_password: str | None = os.getenv("STACKCTL_SMTP_PASSWORD")
    email_from: str | None = os.getenv("STACKCTL_EMAIL_FROM")
    email_to: str | None = os.getenv("STACKCTL_EMAIL_TO")


settings = Settings()
