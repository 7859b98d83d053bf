from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Index, Integer, String, Text, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .db import (
    NotificationsBase,
    coerce_utc,
    create_session_factory,
    dump_json,
    load_json,
    now_utc,
    optional_utc,
    store_errors,
)
from .errors import JobNotFoundError

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_RETRYING = "retrying"

TERMINAL_STATES = frozenset({JOB_COMPLETED, JOB_FAILED})


@dataclass(frozen=True)
class JobStatusRecord:
    job_id: str
    job_type: str
    queue: str
    unique_key: str | None
    status: str
    attempts: int
    max_attempts: int
    progress: int
    payload: dict[str, object]
    result: dict[str, object]
    error_message: str | None
    next_retry_at: datetime | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    lease_expires_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class JobStatusRepository(Protocol):
    """Lifecycle records for asynchronous work; only the worker holding a job mutates it."""

    def reset(self) -> None: ...

    def create(
        self,
        *,
        job_id: str,
        job_type: str,
        queue: str,
        max_attempts: int,
        payload: dict[str, object] | None = None,
        unique_key: str | None = None,
        created_at: datetime | None = None,
    ) -> JobStatusRecord: ...

    def get(self, job_id: str) -> JobStatusRecord | None: ...

    def begin_attempt(self, job_id: str, *, now: datetime, lease_expires_at: datetime) -> JobStatusRecord | None: ...

    def mark_retrying(self, job_id: str, *, error_message: str, next_retry_at: datetime) -> JobStatusRecord: ...

    def complete(self, job_id: str, *, result: dict[str, object] | None = None, now: datetime) -> JobStatusRecord: ...

    def fail(self, job_id: str, *, error_message: str, now: datetime) -> JobStatusRecord: ...

    def update_progress(self, job_id: str, progress: int) -> JobStatusRecord: ...

    def list_jobs(self, *, status: str | None = None, queue: str | None = None, limit: int = 100) -> list[JobStatusRecord]: ...

    def list_by_unique_key(self, unique_key: str) -> list[JobStatusRecord]: ...

    def count_by_queue_status(self) -> dict[tuple[str, str], int]: ...


def _attempt_in_flight(status: str, lease_expires_at: datetime | None, now: datetime) -> bool:
    return status == JOB_PROCESSING and lease_expires_at is not None and now < coerce_utc(lease_expires_at)


def _clamp_progress(progress: int) -> int:
    return max(0, min(100, int(progress)))


class InMemoryJobStatusRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: dict[str, JobStatusRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def create(
        self,
        *,
        job_id: str,
        job_type: str,
        queue: str,
        max_attempts: int,
        payload: dict[str, object] | None = None,
        unique_key: str | None = None,
        created_at: datetime | None = None,
    ) -> JobStatusRecord:
        created_at = coerce_utc(created_at) if created_at is not None else now_utc()
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"job already exists: {job_id}")
            record = JobStatusRecord(
                job_id=job_id,
                job_type=job_type,
                queue=queue,
                unique_key=unique_key,
                status=JOB_PENDING,
                attempts=0,
                max_attempts=max(1, max_attempts),
                progress=0,
                payload=dict(payload or {}),
                result={},
                error_message=None,
                next_retry_at=None,
                created_at=created_at,
                updated_at=created_at,
                started_at=None,
                completed_at=None,
            )
            self._jobs[job_id] = record
            return record

    def get(self, job_id: str) -> JobStatusRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def _require(self, job_id: str) -> JobStatusRecord:
        row = self._jobs.get(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def begin_attempt(self, job_id: str, *, now: datetime, lease_expires_at: datetime) -> JobStatusRecord | None:
        """Start the next attempt, or return None when the job cannot run now.

        A job whose previous attempt is still inside its lease is left
        untouched; the caller sees it still `processing`.
        """
        now = coerce_utc(now)
        with self._lock:
            row = self._require(job_id)
            if row.is_terminal or _attempt_in_flight(row.status, row.lease_expires_at, now):
                return None
            if row.attempts >= row.max_attempts:
                updated = JobStatusRecord(
                    **{
                        **row.__dict__,
                        "status": JOB_FAILED,
                        "error_message": row.error_message or "max attempts exhausted",
                        "next_retry_at": None,
                        "updated_at": now,
                        "completed_at": now,
                        "lease_expires_at": None,
                    }
                )
                self._jobs[job_id] = updated
                return None
            updated = JobStatusRecord(
                **{
                    **row.__dict__,
                    "status": JOB_PROCESSING,
                    "attempts": row.attempts + 1,
                    "next_retry_at": None,
                    "updated_at": now,
                    "started_at": row.started_at or now,
                    "lease_expires_at": coerce_utc(lease_expires_at),
                }
            )
            self._jobs[job_id] = updated
            return updated

    def mark_retrying(self, job_id: str, *, error_message: str, next_retry_at: datetime) -> JobStatusRecord:
        with self._lock:
            row = self._require(job_id)
            if row.is_terminal:
                return row
            updated = JobStatusRecord(
                **{
                    **row.__dict__,
                    "status": JOB_RETRYING,
                    "error_message": error_message,
                    "next_retry_at": coerce_utc(next_retry_at),
                    "updated_at": now_utc(),
                    "lease_expires_at": None,
                }
            )
            self._jobs[job_id] = updated
            return updated

    def complete(self, job_id: str, *, result: dict[str, object] | None = None, now: datetime) -> JobStatusRecord:
        now = coerce_utc(now)
        with self._lock:
            row = self._require(job_id)
            if row.is_terminal:
                return row
            updated = JobStatusRecord(
                **{
                    **row.__dict__,
                    "status": JOB_COMPLETED,
                    "progress": 100,
                    "result": dict(result or {}),
                    "next_retry_at": None,
                    "updated_at": now,
                    "completed_at": now,
                    "lease_expires_at": None,
                }
            )
            self._jobs[job_id] = updated
            return updated

    def fail(self, job_id: str, *, error_message: str, now: datetime) -> JobStatusRecord:
        now = coerce_utc(now)
        with self._lock:
            row = self._require(job_id)
            if row.is_terminal:
                return row
            updated = JobStatusRecord(
                **{
                    **row.__dict__,
                    "status": JOB_FAILED,
                    "error_message": error_message,
                    "next_retry_at": None,
                    "updated_at": now,
                    "completed_at": now,
                    "lease_expires_at": None,
                }
            )
            self._jobs[job_id] = updated
            return updated

    def update_progress(self, job_id: str, progress: int) -> JobStatusRecord:
        with self._lock:
            row = self._require(job_id)
            if row.is_terminal:
                return row
            updated = JobStatusRecord(
                **{**row.__dict__, "progress": _clamp_progress(progress), "updated_at": now_utc()}
            )
            self._jobs[job_id] = updated
            return updated

    def list_jobs(self, *, status: str | None = None, queue: str | None = None, limit: int = 100) -> list[JobStatusRecord]:
        with self._lock:
            rows = [
                row
                for row in self._jobs.values()
                if (status is None or row.status == status) and (queue is None or row.queue == queue)
            ]
        rows.sort(key=lambda value: (value.created_at, value.job_id), reverse=True)
        return rows[:limit]

    def list_by_unique_key(self, unique_key: str) -> list[JobStatusRecord]:
        with self._lock:
            rows = [row for row in self._jobs.values() if row.unique_key == unique_key]
        return sorted(rows, key=lambda value: (value.created_at, value.job_id))

    def count_by_queue_status(self) -> dict[tuple[str, str], int]:
        with self._lock:
            return dict(Counter((row.queue, row.status) for row in self._jobs.values()))


class _JobStatusRow(NotificationsBase):
    __tablename__ = "job_statuses"
    __table_args__ = (Index("ix_job_statuses_status_queue", "status", "queue"),)

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(128), nullable=False)
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    unique_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=JOB_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    result_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def _to_record(row: _JobStatusRow) -> JobStatusRecord:
    return JobStatusRecord(
        job_id=row.job_id,
        job_type=row.job_type,
        queue=row.queue,
        unique_key=row.unique_key,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        progress=row.progress,
        payload=load_json(row.payload_json),
        result=load_json(row.result_json),
        error_message=row.error_message,
        next_retry_at=optional_utc(row.next_retry_at),
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        lease_expires_at=optional_utc(row.lease_expires_at),
    )


class SqlAlchemyJobStatusRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with store_errors("reset job statuses"), self._session() as session:
            with session.begin():
                session.execute(delete(_JobStatusRow))

    def create(
        self,
        *,
        job_id: str,
        job_type: str,
        queue: str,
        max_attempts: int,
        payload: dict[str, object] | None = None,
        unique_key: str | None = None,
        created_at: datetime | None = None,
    ) -> JobStatusRecord:
        created_at = coerce_utc(created_at) if created_at is not None else now_utc()
        row = _JobStatusRow(
            job_id=job_id,
            job_type=job_type,
            queue=queue,
            unique_key=unique_key,
            status=JOB_PENDING,
            attempts=0,
            max_attempts=max(1, max_attempts),
            progress=0,
            payload_json=dump_json(payload),
            result_json="{}",
            created_at=created_at,
            updated_at=created_at,
        )
        with store_errors("create job status"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(row)
                        session.flush()
                        return _to_record(row)
            except IntegrityError as exc:
                raise ValueError(f"job already exists: {job_id}") from exc

    def get(self, job_id: str) -> JobStatusRecord | None:
        with store_errors("get job status"), self._session() as session:
            row = session.get(_JobStatusRow, job_id)
            return _to_record(row) if row is not None else None

    def _mutate(self, operation: str, job_id: str, apply) -> JobStatusRecord | None:
        with store_errors(operation), self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_JobStatusRow).where(_JobStatusRow.job_id == job_id).with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    raise JobNotFoundError(job_id)
                keep = apply(row)
                session.flush()
                record = _to_record(row)
                return record if keep else None

    def begin_attempt(self, job_id: str, *, now: datetime, lease_expires_at: datetime) -> JobStatusRecord | None:
        now = coerce_utc(now)

        def apply(row: _JobStatusRow) -> bool:
            if row.status in TERMINAL_STATES or _attempt_in_flight(row.status, row.lease_expires_at, now):
                return False
            if row.attempts >= row.max_attempts:
                row.status = JOB_FAILED
                row.error_message = row.error_message or "max attempts exhausted"
                row.next_retry_at = None
                row.lease_expires_at = None
                row.updated_at = now
                row.completed_at = now
                return False
            row.status = JOB_PROCESSING
            row.attempts += 1
            row.next_retry_at = None
            row.updated_at = now
            row.lease_expires_at = coerce_utc(lease_expires_at)
            if row.started_at is None:
                row.started_at = now
            return True

        return self._mutate("begin job attempt", job_id, apply)

    def mark_retrying(self, job_id: str, *, error_message: str, next_retry_at: datetime) -> JobStatusRecord:
        def apply(row: _JobStatusRow) -> bool:
            if row.status not in TERMINAL_STATES:
                row.status = JOB_RETRYING
                row.error_message = error_message
                row.next_retry_at = coerce_utc(next_retry_at)
                row.updated_at = now_utc()
                row.lease_expires_at = None
            return True

        return self._mutate("mark job retrying", job_id, apply)

    def complete(self, job_id: str, *, result: dict[str, object] | None = None, now: datetime) -> JobStatusRecord:
        now = coerce_utc(now)

        def apply(row: _JobStatusRow) -> bool:
            if row.status not in TERMINAL_STATES:
                row.status = JOB_COMPLETED
                row.progress = 100
                row.result_json = dump_json(result)
                row.next_retry_at = None
                row.lease_expires_at = None
                row.updated_at = now
                row.completed_at = now
            return True

        return self._mutate("complete job", job_id, apply)

    def fail(self, job_id: str, *, error_message: str, now: datetime) -> JobStatusRecord:
        now = coerce_utc(now)

        def apply(row: _JobStatusRow) -> bool:
            if row.status not in TERMINAL_STATES:
                row.status = JOB_FAILED
                row.error_message = error_message
                row.next_retry_at = None
                row.lease_expires_at = None
                row.updated_at = now
                row.completed_at = now
            return True

        return self._mutate("fail job", job_id, apply)

    def update_progress(self, job_id: str, progress: int) -> JobStatusRecord:
        with store_errors("update job progress"), self._session() as session:
            with session.begin():
                session.execute(
                    update(_JobStatusRow)
                    .where(_JobStatusRow.job_id == job_id)
                    .where(_JobStatusRow.status.not_in(sorted(TERMINAL_STATES)))
                    .values(progress=_clamp_progress(progress), updated_at=now_utc())
                )
        record = self.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    def list_jobs(self, *, status: str | None = None, queue: str | None = None, limit: int = 100) -> list[JobStatusRecord]:
        query = select(_JobStatusRow).order_by(_JobStatusRow.created_at.desc(), _JobStatusRow.job_id.desc()).limit(limit)
        if status is not None:
            query = query.where(_JobStatusRow.status == status)
        if queue is not None:
            query = query.where(_JobStatusRow.queue == queue)
        with store_errors("list job statuses"), self._session() as session:
            return [_to_record(row) for row in session.execute(query).scalars()]

    def list_by_unique_key(self, unique_key: str) -> list[JobStatusRecord]:
        query = (
            select(_JobStatusRow)
            .where(_JobStatusRow.unique_key == unique_key)
            .order_by(_JobStatusRow.created_at.asc(), _JobStatusRow.job_id.asc())
        )
        with store_errors("list jobs by key"), self._session() as session:
            return [_to_record(row) for row in session.execute(query).scalars()]

    def count_by_queue_status(self) -> dict[tuple[str, str], int]:
        query = select(_JobStatusRow.queue, _JobStatusRow.status, func.count()).group_by(
            _JobStatusRow.queue, _JobStatusRow.status
        )
        with store_errors("count job statuses"), self._session() as session:
            return {(queue, status): int(total) for queue, status, total in session.execute(query)}


def create_job_status_repository(*, backend: str, database_url: str) -> JobStatusRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyJobStatusRepository(database_url)
    if normalized == "inmemory":
        return InMemoryJobStatusRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
