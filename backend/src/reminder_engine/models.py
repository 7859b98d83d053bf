from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

Channel = Literal["email", "sms", "push", "in_app"]
OffsetUnit = Literal["minutes", "hours", "days"]
DeliveryStatus = Literal["pending", "sent", "failed"]
JobState = Literal["pending", "processing", "completed", "failed", "retrying"]
TickStatus = Literal["completed", "skipped", "aborted", "dry_run"]

KNOWN_CHANNELS: tuple[str, ...] = ("email", "sms", "push", "in_app")
OFFSET_UNITS: tuple[str, ...] = ("minutes", "hours", "days")


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TriggerRequest(BaseModel):
    dry_run: bool = False
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class TriggerResponse(BaseModel):
    tick_id: str
    status: TickStatus
    run_at: datetime
    dry_run: bool
    due_count: int
    enqueued_count: int
    duplicate_count: int
    rule_ids: list[int] = Field(default_factory=list)
    error_message: str | None = None


class DrainRequest(BaseModel):
    queue: str | None = Field(default=None, min_length=1, max_length=64)
    max_messages: int = Field(default=100, ge=1, le=5000)
    now_override: datetime | None = None

    @field_validator("now_override")
    @classmethod
    def _normalize_override(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class DrainResponse(BaseModel):
    processed_count: int
    completed_count: int
    retrying_count: int
    failed_count: int
    deferred_count: int
    job_ids: list[str]


class DeliveryLogItem(BaseModel):
    id: int
    rule_id: int
    owner_id: int
    subject_id: int
    channel: Channel
    status: DeliveryStatus
    job_id: str | None = None
    sent_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, object] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class DeliveryLogListResponse(BaseModel):
    items: list[DeliveryLogItem]


class JobStatusItem(BaseModel):
    job_id: str
    job_type: str
    queue: str
    unique_key: str | None = None
    status: JobState
    attempts: int
    max_attempts: int
    progress: int
    error_message: str | None = None
    result: dict[str, object] = Field(default_factory=dict)
    next_retry_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobStatusListResponse(BaseModel):
    items: list[JobStatusItem]


class JobStatsItem(BaseModel):
    queue: str
    status: JobState
    count: int


class JobStatsResponse(BaseModel):
    items: list[JobStatsItem]


class HealthResponse(BaseModel):
    status: Literal["ok"]
    store_backend: str
    scheduler_running: bool
    workers_running: bool
