from __future__ import annotations

import pytest

from reminder_engine.config import Settings, get_settings, runtime_config_issues

_ENV_NAMES = (
    "NOTIFICATION_STORE_BACKEND",
    "DATABASE_URL",
    "NOTIFICATION_DEDUP_WINDOW_MINUTES",
    "SCHEDULER_ENABLED",
    "SCHEDULER_INTERVAL_SECONDS",
    "SCHEDULER_INSTANCE_ID",
    "NOTIFICATION_RETRY_BACKOFF_SECONDS",
    "QUEUE_NOTIFICATIONS_MAX_ATTEMPTS",
    "QUEUE_HEAVY_CONCURRENCY",
    "EMAIL_TRANSPORT",
    "SMTP_HOST",
    "SMTP_FROM",
    "SMTP_STARTTLS",
    "WORKERS_ENABLED",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_get_settings_defaults() -> None:
    settings = get_settings()

    assert settings.store_backend == "inmemory"
    assert settings.dedup_window_minutes == 60
    assert settings.scheduler_enabled is False
    assert settings.retry_backoff_seconds == (60, 300, 900)
    assert settings.email_transport == "stub"
    assert settings.instance_id
    assert runtime_config_issues(settings) == ()


def test_queue_configs_are_partitioned() -> None:
    settings = Settings()

    notifications = settings.queue_config("notifications")
    heavy = settings.queue_config("HEAVY")
    fallback = settings.queue_config("reports")

    assert (notifications.concurrency, notifications.timeout_seconds, notifications.max_attempts) == (4, 30, 3)
    assert (heavy.name, heavy.concurrency, heavy.timeout_seconds, heavy.max_attempts) == ("heavy", 1, 300, 2)
    assert fallback.name == "default"
    assert [config.name for config in settings.queue_configs()] == ["default", "notifications", "heavy"]


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFICATION_STORE_BACKEND", " Postgres ")
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://app@db/reminders")
    monkeypatch.setenv("SCHEDULER_ENABLED", "yes")
    monkeypatch.setenv("SCHEDULER_INSTANCE_ID", "node-7")
    monkeypatch.setenv("NOTIFICATION_RETRY_BACKOFF_SECONDS", "30, 120")
    monkeypatch.setenv("QUEUE_NOTIFICATIONS_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("SMTP_STARTTLS", "off")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = get_settings()

    assert settings.store_backend == "postgres"
    assert settings.scheduler_enabled is True
    assert settings.instance_id == "node-7"
    assert settings.retry_backoff_seconds == (30, 120)
    assert settings.queue_config("notifications").max_attempts == 5
    assert settings.smtp_starttls is False
    assert settings.log_level == "DEBUG"


def test_malformed_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NOTIFICATION_STORE_BACKEND", "mongo")
    monkeypatch.setenv("NOTIFICATION_DEDUP_WINDOW_MINUTES", "an hour")
    monkeypatch.setenv("SCHEDULER_INTERVAL_SECONDS", "often")
    monkeypatch.setenv("NOTIFICATION_RETRY_BACKOFF_SECONDS", "60,soon")
    monkeypatch.setenv("QUEUE_HEAVY_CONCURRENCY", "")
    monkeypatch.setenv("WORKERS_ENABLED", "maybe")
    monkeypatch.setenv("EMAIL_TRANSPORT", "pigeon")

    settings = get_settings()

    assert settings.store_backend == "inmemory"
    assert settings.dedup_window_minutes == 60
    assert settings.scheduler_interval_seconds == 300.0
    assert settings.retry_backoff_seconds == (60, 300, 900)
    assert settings.queue_heavy_concurrency == 1
    assert settings.workers_enabled is False
    assert settings.email_transport == "stub"


def test_runtime_config_issues_reports_misconfiguration() -> None:
    settings = Settings(
        store_backend="postgres",
        database_url=" ",
        email_transport="smtp",
        smtp_timeout_seconds=45,
        retry_backoff_seconds=(),
        dedup_window_minutes=0,
        scheduler_interval_seconds=900,
        scheduler_lock_ttl_seconds=600,
    )

    issues = runtime_config_issues(settings)

    assert "DATABASE_URL is required when NOTIFICATION_STORE_BACKEND=postgres" in issues
    assert "SMTP_HOST is required when EMAIL_TRANSPORT=smtp" in issues
    assert "SMTP_FROM is required when EMAIL_TRANSPORT=smtp" in issues
    assert "SMTP_TIMEOUT_SECONDS must be shorter than QUEUE_NOTIFICATIONS_TIMEOUT_SECONDS" in issues
    assert "NOTIFICATION_RETRY_BACKOFF_SECONDS must list at least one delay" in issues
    assert "NOTIFICATION_DEDUP_WINDOW_MINUTES must be positive" in issues
    assert "SCHEDULER_LOCK_TTL_SECONDS is shorter than SCHEDULER_INTERVAL_SECONDS" in issues
