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
    # Coordinator
    coordinator_host: str = os.getenv("CITUS_HOST", "master")
    coordinator_port: int = _env_int("CITUS_PORT", 5432)
    db_user: str = os.getenv("POSTGRES_USER", "postgres")
    db_password: str = os.getenv("POSTGRES_PASSWORD", "")
    db_name: str | None = os.getenv("POSTGRES_DB") or None

    # Scope discovery
    own_hostname: str | None = os.getenv("HOSTNAME")
    project_label: str = os.getenv("CMM_PROJECT_LABEL", "com.docker.compose.project")
    role_label: str = os.getenv("CMM_ROLE_LABEL", "com.citusdata.role")
    role_value: str = os.getenv("CMM_ROLE_VALUE", "Worker")
    worker_port: int = _env_int("CMM_WORKER_PORT", 5432)

    # Engine
    healthcheck_file: str = os.getenv("CMM_HEALTHCHECK_FILE", "/healthcheck/manager-ready")
    backoff_initial_s: float = _env_float("CMM_BACKOFF_INITIAL_S", 1.0)
    backoff_max_s: float = _env_float("CMM_BACKOFF_MAX_S", 30.0)

    # Journal + status API
    db_path: str = os.getenv("CMM_DB_PATH", "cmm.db")
    api_host: str = os.getenv("CMM_API_HOST", "0.0.0.0")
    api_port: int = _env_int("CMM_API_PORT", 8000)

    # Email alarms (optional)
    enable_email: bool = _env_bool("CMM_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("CMM_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("CMM_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("CMM_SMTP_USER")
    smtp_password: str | None = os.getenv("CMM_SMTP_PASSWORD")
    email_from: str | None = os.getenv("CMM_EMAIL_FROM")
    email_to: str | None = os.getenv("CMM_EMAIL_TO")

    @property
    def database(self) -> str:
        # POSTGRES_DB falls back to the user name, like the postgres image does.
        return self.db_name or self.db_user


settings = Settings()
