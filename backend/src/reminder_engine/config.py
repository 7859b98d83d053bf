from __future__ import annotations

import os
import socket
from dataclasses import dataclass

QUEUE_DEFAULT = "default"
QUEUE_NOTIFICATIONS = "notifications"
QUEUE_HEAVY = "heavy"


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if value is None:
        return default
    parsed: list[int] = []
    for item in value.split(","):
        stripped = item.strip()
        if not stripped:
            continue
        try:
            parsed.append(int(stripped))
        except ValueError:
            return default
    return tuple(parsed) or default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class QueueConfig:
    name: str
    concurrency: int
    timeout_seconds: int
    max_attempts: int


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reminder Engine"
    api_prefix: str = "/api/v1"
    store_backend: str = "inmemory"
    database_url: str = ""
    dedup_window_minutes: int = 60
    scheduler_enabled: bool = False
    scheduler_interval_seconds: float = 300.0
    scheduler_lock_ttl_seconds: int = 600
    instance_id: str = "local"
    retry_backoff_seconds: tuple[int, ...] = (60, 300, 900)
    unique_job_ttl_seconds: int = 3600
    workers_enabled: bool = False
    worker_poll_seconds: float = 1.0
    queue_default_concurrency: int = 2
    queue_default_timeout_seconds: int = 90
    queue_default_max_attempts: int = 3
    queue_notifications_concurrency: int = 4
    queue_notifications_timeout_seconds: int = 30
    queue_notifications_max_attempts: int = 3
    queue_heavy_concurrency: int = 1
    queue_heavy_timeout_seconds: int = 300
    queue_heavy_max_attempts: int = 2
    email_transport: str = "stub"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_starttls: bool = True
    smtp_timeout_seconds: int = 15
    stub_channels_enabled: bool = True
    log_level: str = "INFO"

    def queue_config(self, name: str) -> QueueConfig:
        normalized = name.strip().lower()
        if normalized == QUEUE_NOTIFICATIONS:
            return QueueConfig(
                name=QUEUE_NOTIFICATIONS,
                concurrency=self.queue_notifications_concurrency,
                timeout_seconds=self.queue_notifications_timeout_seconds,
                max_attempts=self.queue_notifications_max_attempts,
            )
        if normalized == QUEUE_HEAVY:
            return QueueConfig(
                name=QUEUE_HEAVY,
                concurrency=self.queue_heavy_concurrency,
                timeout_seconds=self.queue_heavy_timeout_seconds,
                max_attempts=self.queue_heavy_max_attempts,
            )
        return QueueConfig(
            name=QUEUE_DEFAULT,
            concurrency=self.queue_default_concurrency,
            timeout_seconds=self.queue_default_timeout_seconds,
            max_attempts=self.queue_default_max_attempts,
        )

    def queue_configs(self) -> tuple[QueueConfig, ...]:
        return tuple(self.queue_config(name) for name in (QUEUE_DEFAULT, QUEUE_NOTIFICATIONS, QUEUE_HEAVY))


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Reminder Engine"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api/v1"),
        store_backend=_normalize_mode(
            os.getenv("NOTIFICATION_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        dedup_window_minutes=_as_int(os.getenv("NOTIFICATION_DEDUP_WINDOW_MINUTES"), 60),
        scheduler_enabled=_as_bool(os.getenv("SCHEDULER_ENABLED"), False),
        scheduler_interval_seconds=_as_float(os.getenv("SCHEDULER_INTERVAL_SECONDS"), 300.0),
        scheduler_lock_ttl_seconds=_as_int(os.getenv("SCHEDULER_LOCK_TTL_SECONDS"), 600),
        instance_id=os.getenv("SCHEDULER_INSTANCE_ID", "").strip() or _default_instance_id(),
        retry_backoff_seconds=_as_int_tuple(os.getenv("NOTIFICATION_RETRY_BACKOFF_SECONDS"), (60, 300, 900)),
        unique_job_ttl_seconds=_as_int(os.getenv("NOTIFICATION_UNIQUE_JOB_TTL_SECONDS"), 3600),
        workers_enabled=_as_bool(os.getenv("WORKERS_ENABLED"), False),
        worker_poll_seconds=_as_float(os.getenv("WORKER_POLL_SECONDS"), 1.0),
        queue_default_concurrency=_as_int(os.getenv("QUEUE_DEFAULT_CONCURRENCY"), 2),
        queue_default_timeout_seconds=_as_int(os.getenv("QUEUE_DEFAULT_TIMEOUT_SECONDS"), 90),
        queue_default_max_attempts=_as_int(os.getenv("QUEUE_DEFAULT_MAX_ATTEMPTS"), 3),
        queue_notifications_concurrency=_as_int(os.getenv("QUEUE_NOTIFICATIONS_CONCURRENCY"), 4),
        queue_notifications_timeout_seconds=_as_int(os.getenv("QUEUE_NOTIFICATIONS_TIMEOUT_SECONDS"), 30),
        queue_notifications_max_attempts=_as_int(os.getenv("QUEUE_NOTIFICATIONS_MAX_ATTEMPTS"), 3),
        queue_heavy_concurrency=_as_int(os.getenv("QUEUE_HEAVY_CONCURRENCY"), 1),
        queue_heavy_timeout_seconds=_as_int(os.getenv("QUEUE_HEAVY_TIMEOUT_SECONDS"), 300),
        queue_heavy_max_attempts=_as_int(os.getenv("QUEUE_HEAVY_MAX_ATTEMPTS"), 2),
        email_transport=_normalize_mode(
            os.getenv("EMAIL_TRANSPORT"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_from=os.getenv("SMTP_FROM", ""),
        smtp_starttls=_as_bool(os.getenv("SMTP_STARTTLS"), True),
        smtp_timeout_seconds=_as_int(os.getenv("SMTP_TIMEOUT_SECONDS"), 15),
        stub_channels_enabled=_as_bool(os.getenv("STUB_CHANNELS_ENABLED"), True),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres")
    if settings.email_transport == "smtp":
        if not settings.smtp_host.strip():
            issues.append("SMTP_HOST is required when EMAIL_TRANSPORT=smtp")
        if not settings.smtp_from.strip():
            issues.append("SMTP_FROM is required when EMAIL_TRANSPORT=smtp")
        if settings.smtp_timeout_seconds >= settings.queue_notifications_timeout_seconds:
            issues.append("SMTP_TIMEOUT_SECONDS must be shorter than QUEUE_NOTIFICATIONS_TIMEOUT_SECONDS")
    if not settings.retry_backoff_seconds:
        issues.append("NOTIFICATION_RETRY_BACKOFF_SECONDS must list at least one delay")
    if settings.dedup_window_minutes <= 0:
        issues.append("NOTIFICATION_DEDUP_WINDOW_MINUTES must be positive")
    if settings.scheduler_lock_ttl_seconds < settings.scheduler_interval_seconds:
        issues.append("SCHEDULER_LOCK_TTL_SECONDS is shorter than SCHEDULER_INTERVAL_SECONDS")
    return tuple(issues)
