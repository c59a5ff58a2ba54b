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
    # Platform
    backend: str = os.getenv("SCR_BACKEND", "sqlite")  # sqlite|kubernetes
    db_path: str = os.getenv("SCR_DB_PATH", "scr.db")
    kubeconfig: str | None = os.getenv("SCR_KUBECONFIG")
    kube_context: str | None = os.getenv("SCR_KUBE_CONTEXT")
    in_cluster: bool = _env_bool("SCR_IN_CLUSTER", False)

    # Controller
    workers: int = _env_int("SCR_WORKERS", 2)
    resync_interval_s: float = _env_float("SCR_RESYNC_INTERVAL_S", 30.0)
    conflict_retries: int = _env_int("SCR_CONFLICT_RETRIES", 3)
    backoff_base_s: float = _env_float("SCR_BACKOFF_BASE_S", 0.5)
    backoff_max_s: float = _env_float("SCR_BACKOFF_MAX_S", 60.0)
    shutdown_timeout_s: float = _env_float("SCR_SHUTDOWN_TIMEOUT_S", 10.0)

    # Workload images
    image_repository: str = os.getenv("SCR_IMAGE_REPOSITORY", "docker.elastic.co/elasticsearch/elasticsearch")
    init_image: str = os.getenv("SCR_INIT_IMAGE", "busybox:1.36")

    # API
    admin_user: str = os.getenv("SCR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("SCR_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("SCR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("SCR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("SCR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("SCR_SMTP_USER")
    smtp_password: str | None = os.getenv("SCR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("SCR_EMAIL_FROM")
    email_to: str | None = os.getenv("SCR_EMAIL_TO")


settings = Settings()
