from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, delete, select, update
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
from .rules import Rule

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class DeliveryLogRecord:
    id: int
    rule_id: int
    owner_id: int
    subject_id: int
    channel: str
    status: str
    job_id: str | None
    sent_at: datetime | None
    error_code: str | None
    error_message: str | None
    metadata: dict[str, object]
    created_at: datetime
    updated_at: datetime


class DeliveryLogRepository(Protocol):
    def reset(self) -> None: ...

    def create_pending(
        self,
        rule: Rule,
        *,
        job_id: str | None,
        created_at: datetime,
        metadata: dict[str, object] | None = None,
    ) -> DeliveryLogRecord: ...

    def get(self, log_id: int) -> DeliveryLogRecord | None: ...

    def find_by_job(self, job_id: str) -> DeliveryLogRecord | None: ...

    def mark_sent(self, log_id: int, *, sent_at: datetime, metadata: dict[str, object] | None = None) -> bool: ...

    def mark_failed(self, log_id: int, *, error_code: str | None, error_message: str) -> bool: ...

    def merge_metadata(self, log_id: int, metadata: dict[str, object]) -> None: ...

    def latest_for_rule(self, rule_id: int, *, statuses: set[str], since: datetime) -> DeliveryLogRecord | None: ...

    def cancel_pending_for_subject(self, subject_id: int, *, error_message: str) -> int: ...

    def list_for_owner(self, owner_id: int, *, limit: int = 50) -> list[DeliveryLogRecord]: ...

    def list_for_rule(self, rule_id: int) -> list[DeliveryLogRecord]: ...


class InMemoryDeliveryLogRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._rows: dict[int, DeliveryLogRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._rows.clear()

    def create_pending(
        self,
        rule: Rule,
        *,
        job_id: str | None,
        created_at: datetime,
        metadata: dict[str, object] | None = None,
    ) -> DeliveryLogRecord:
        created_at = coerce_utc(created_at)
        with self._lock:
            record = DeliveryLogRecord(
                id=next(self._counter),
                rule_id=rule.id,
                owner_id=rule.owner_id,
                subject_id=rule.subject_id,
                channel=rule.channel,
                status=STATUS_PENDING,
                job_id=job_id,
                sent_at=None,
                error_code=None,
                error_message=None,
                metadata=dict(metadata or {}),
                created_at=created_at,
                updated_at=created_at,
            )
            self._rows[record.id] = record
            return record

    def get(self, log_id: int) -> DeliveryLogRecord | None:
        with self._lock:
            return self._rows.get(log_id)

    def find_by_job(self, job_id: str) -> DeliveryLogRecord | None:
        with self._lock:
            matches = [row for row in self._rows.values() if row.job_id == job_id]
        return max(matches, key=lambda value: value.id) if matches else None

    def mark_sent(self, log_id: int, *, sent_at: datetime, metadata: dict[str, object] | None = None) -> bool:
        with self._lock:
            row = self._rows.get(log_id)
            if row is None or row.status != STATUS_PENDING:
                return False
            self._rows[log_id] = DeliveryLogRecord(
                **{
                    **row.__dict__,
                    "status": STATUS_SENT,
                    "sent_at": coerce_utc(sent_at),
                    "metadata": {**row.metadata, **(metadata or {})},
                    "updated_at": now_utc(),
                }
            )
            return True

    def mark_failed(self, log_id: int, *, error_code: str | None, error_message: str) -> bool:
        with self._lock:
            row = self._rows.get(log_id)
            if row is None or row.status != STATUS_PENDING:
                return False
            self._rows[log_id] = DeliveryLogRecord(
                **{
                    **row.__dict__,
                    "status": STATUS_FAILED,
                    "error_code": error_code,
                    "error_message": error_message,
                    "updated_at": now_utc(),
                }
            )
            return True

    def merge_metadata(self, log_id: int, metadata: dict[str, object]) -> None:
        with self._lock:
            row = self._rows.get(log_id)
            if row is None:
                return
            self._rows[log_id] = DeliveryLogRecord(
                **{**row.__dict__, "metadata": {**row.metadata, **metadata}, "updated_at": now_utc()}
            )

    def latest_for_rule(self, rule_id: int, *, statuses: set[str], since: datetime) -> DeliveryLogRecord | None:
        since = coerce_utc(since)
        with self._lock:
            matches = [
                row
                for row in self._rows.values()
                if row.rule_id == rule_id and row.status in statuses and row.created_at > since
            ]
        return max(matches, key=lambda value: (value.created_at, value.id)) if matches else None

    def cancel_pending_for_subject(self, subject_id: int, *, error_message: str) -> int:
        cancelled = 0
        with self._lock:
            for log_id, row in list(self._rows.items()):
                if row.subject_id != subject_id or row.status != STATUS_PENDING:
                    continue
                self._rows[log_id] = DeliveryLogRecord(
                    **{
                        **row.__dict__,
                        "status": STATUS_FAILED,
                        "error_code": "cancelled",
                        "error_message": error_message,
                        "updated_at": now_utc(),
                    }
                )
                cancelled += 1
        return cancelled

    def list_for_owner(self, owner_id: int, *, limit: int = 50) -> list[DeliveryLogRecord]:
        with self._lock:
            rows = [row for row in self._rows.values() if row.owner_id == owner_id]
        rows.sort(key=lambda value: (value.created_at, value.id), reverse=True)
        return rows[:limit]

    def list_for_rule(self, rule_id: int) -> list[DeliveryLogRecord]:
        with self._lock:
            rows = [row for row in self._rows.values() if row.rule_id == rule_id]
        return sorted(rows, key=lambda value: value.id)


class _DeliveryLogRow(NotificationsBase):
    __tablename__ = "notification_delivery_logs"
    __table_args__ = (
        Index("ix_notification_delivery_logs_rule_status_created", "rule_id", "status", "created_at"),
        Index("ix_notification_delivery_logs_owner_created", "owner_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    rule_id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer(), "sqlite"), nullable=False)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _DeliveryLogRow) -> DeliveryLogRecord:
    return DeliveryLogRecord(
        id=row.id,
        rule_id=row.rule_id,
        owner_id=row.owner_id,
        subject_id=row.subject_id,
        channel=row.channel,
        status=row.status,
        job_id=row.job_id,
        sent_at=optional_utc(row.sent_at),
        error_code=row.error_code,
        error_message=row.error_message,
        metadata=load_json(row.metadata_json),
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
    )


class SqlAlchemyDeliveryLogRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with store_errors("reset delivery log"), self._session() as session:
            with session.begin():
                session.execute(delete(_DeliveryLogRow))

    def create_pending(
        self,
        rule: Rule,
        *,
        job_id: str | None,
        created_at: datetime,
        metadata: dict[str, object] | None = None,
    ) -> DeliveryLogRecord:
        created_at = coerce_utc(created_at)
        with store_errors("create delivery log"), self._session() as session:
            with session.begin():
                row = _DeliveryLogRow(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    subject_id=rule.subject_id,
                    channel=rule.channel,
                    status=STATUS_PENDING,
                    job_id=job_id,
                    metadata_json=dump_json(metadata),
                    created_at=created_at,
                    updated_at=created_at,
                )
                session.add(row)
                session.flush()
                return _to_record(row)

    def get(self, log_id: int) -> DeliveryLogRecord | None:
        with store_errors("get delivery log"), self._session() as session:
            row = session.get(_DeliveryLogRow, log_id)
            return _to_record(row) if row is not None else None

    def find_by_job(self, job_id: str) -> DeliveryLogRecord | None:
        with store_errors("find delivery log"), self._session() as session:
            row = session.execute(
                select(_DeliveryLogRow)
                .where(_DeliveryLogRow.job_id == job_id)
                .order_by(_DeliveryLogRow.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def mark_sent(self, log_id: int, *, sent_at: datetime, metadata: dict[str, object] | None = None) -> bool:
        with store_errors("mark delivery sent"), self._session() as session:
            with session.begin():
                current = session.get(_DeliveryLogRow, log_id)
                if current is None:
                    return False
                merged = {**load_json(current.metadata_json), **(metadata or {})}
                result = session.execute(
                    update(_DeliveryLogRow)
                    .where(_DeliveryLogRow.id == log_id)
                    .where(_DeliveryLogRow.status == STATUS_PENDING)
                    .values(
                        status=STATUS_SENT,
                        sent_at=coerce_utc(sent_at),
                        metadata_json=dump_json(merged),
                        updated_at=now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    def mark_failed(self, log_id: int, *, error_code: str | None, error_message: str) -> bool:
        with store_errors("mark delivery failed"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_DeliveryLogRow)
                    .where(_DeliveryLogRow.id == log_id)
                    .where(_DeliveryLogRow.status == STATUS_PENDING)
                    .values(
                        status=STATUS_FAILED,
                        error_code=error_code,
                        error_message=error_message,
                        updated_at=now_utc(),
                    )
                )
                return result.rowcount == 1

    def merge_metadata(self, log_id: int, metadata: dict[str, object]) -> None:
        with store_errors("merge delivery metadata"), self._session() as session:
            with session.begin():
                row = session.get(_DeliveryLogRow, log_id)
                if row is None:
                    return
                row.metadata_json = dump_json({**load_json(row.metadata_json), **metadata})
                row.updated_at = now_utc()

    def latest_for_rule(self, rule_id: int, *, statuses: set[str], since: datetime) -> DeliveryLogRecord | None:
        with store_errors("query delivery log"), self._session() as session:
            row = session.execute(
                select(_DeliveryLogRow)
                .where(_DeliveryLogRow.rule_id == rule_id)
                .where(_DeliveryLogRow.status.in_(sorted(statuses)))
                .where(_DeliveryLogRow.created_at > coerce_utc(since))
                .order_by(_DeliveryLogRow.created_at.desc(), _DeliveryLogRow.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def cancel_pending_for_subject(self, subject_id: int, *, error_message: str) -> int:
        with store_errors("cancel subject deliveries"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_DeliveryLogRow)
                    .where(_DeliveryLogRow.subject_id == subject_id)
                    .where(_DeliveryLogRow.status == STATUS_PENDING)
                    .values(
                        status=STATUS_FAILED,
                        error_code="cancelled",
                        error_message=error_message,
                        updated_at=now_utc(),
                    )
                )
                return int(result.rowcount or 0)

    def list_for_owner(self, owner_id: int, *, limit: int = 50) -> list[DeliveryLogRecord]:
        with store_errors("list owner deliveries"), self._session() as session:
            rows = session.execute(
                select(_DeliveryLogRow)
                .where(_DeliveryLogRow.owner_id == owner_id)
                .order_by(_DeliveryLogRow.created_at.desc(), _DeliveryLogRow.id.desc())
                .limit(limit)
            ).scalars()
            return [_to_record(row) for row in rows]

    def list_for_rule(self, rule_id: int) -> list[DeliveryLogRecord]:
        with store_errors("list rule deliveries"), self._session() as session:
            rows = session.execute(
                select(_DeliveryLogRow).where(_DeliveryLogRow.rule_id == rule_id).order_by(_DeliveryLogRow.id.asc())
            ).scalars()
            return [_to_record(row) for row in rows]


def create_delivery_log_repository(*, backend: str, database_url: str) -> DeliveryLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDeliveryLogRepository(database_url)
    if normalized == "inmemory":
        return InMemoryDeliveryLogRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
