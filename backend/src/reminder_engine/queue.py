from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, and_, delete, or_, select, update
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

MESSAGE_PENDING = "pending"
MESSAGE_PROCESSING = "processing"
MESSAGE_DONE = "done"


@dataclass(frozen=True)
class QueueMessage:
    id: int
    queue: str
    job_id: str
    job_type: str
    payload: dict[str, object]
    status: str
    deliveries: int
    available_at: datetime
    lease_expires_at: datetime | None


class TaskQueue(Protocol):
    """Durable job queue with leased delivery.

    A dequeued message is invisible until it is acked, retried, or its lease
    expires; an expired lease makes it deliverable again.
    """

    def reset(self) -> None: ...

    def enqueue(
        self,
        queue: str,
        *,
        job_id: str,
        job_type: str,
        payload: dict[str, object],
        available_at: datetime,
    ) -> QueueMessage: ...

    def dequeue(self, queue: str, *, now: datetime, lease_seconds: float) -> QueueMessage | None: ...

    def ack(self, message: QueueMessage) -> bool: ...

    def retry(self, message: QueueMessage, *, available_at: datetime) -> bool: ...

    def pending_count(self, queue: str | None = None) -> int: ...


class InMemoryTaskQueue:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._messages: dict[int, QueueMessage] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._messages.clear()

    def enqueue(
        self,
        queue: str,
        *,
        job_id: str,
        job_type: str,
        payload: dict[str, object],
        available_at: datetime,
    ) -> QueueMessage:
        with self._lock:
            message = QueueMessage(
                id=next(self._counter),
                queue=queue,
                job_id=job_id,
                job_type=job_type,
                payload=dict(payload),
                status=MESSAGE_PENDING,
                deliveries=0,
                available_at=coerce_utc(available_at),
                lease_expires_at=None,
            )
            self._messages[message.id] = message
            return message

    def dequeue(self, queue: str, *, now: datetime, lease_seconds: float) -> QueueMessage | None:
        now = coerce_utc(now)
        with self._lock:
            candidates = [
                message
                for message in self._messages.values()
                if message.queue == queue and _is_deliverable(message, now)
            ]
            if not candidates:
                return None
            chosen = min(candidates, key=lambda value: (value.available_at, value.id))
            leased = QueueMessage(
                **{
                    **chosen.__dict__,
                    "status": MESSAGE_PROCESSING,
                    "deliveries": chosen.deliveries + 1,
                    "lease_expires_at": now + timedelta(seconds=lease_seconds),
                }
            )
            self._messages[chosen.id] = leased
            return leased

    def ack(self, message: QueueMessage) -> bool:
        with self._lock:
            current = self._messages.get(message.id)
            if current is None or current.deliveries != message.deliveries:
                return False
            self._messages[message.id] = QueueMessage(
                **{**current.__dict__, "status": MESSAGE_DONE, "lease_expires_at": None}
            )
            return True

    def retry(self, message: QueueMessage, *, available_at: datetime) -> bool:
        with self._lock:
            current = self._messages.get(message.id)
            if current is None or current.deliveries != message.deliveries:
                return False
            self._messages[message.id] = QueueMessage(
                **{
                    **current.__dict__,
                    "status": MESSAGE_PENDING,
                    "available_at": coerce_utc(available_at),
                    "lease_expires_at": None,
                }
            )
            return True

    def pending_count(self, queue: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for message in self._messages.values()
                if message.status != MESSAGE_DONE and (queue is None or message.queue == queue)
            )


def _is_deliverable(message: QueueMessage, now: datetime) -> bool:
    if message.status == MESSAGE_PENDING:
        return message.available_at <= now
    if message.status == MESSAGE_PROCESSING:
        return message.lease_expires_at is not None and message.lease_expires_at <= now
    return False


class _QueueMessageRow(NotificationsBase):
    __tablename__ = "queue_messages"
    __table_args__ = (Index("ix_queue_messages_queue_status_available", "queue", "status", "available_at"),)

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MESSAGE_PENDING)
    deliveries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_message(row: _QueueMessageRow) -> QueueMessage:
    return QueueMessage(
        id=row.id,
        queue=row.queue,
        job_id=row.job_id,
        job_type=row.job_type,
        payload=load_json(row.payload_json),
        status=row.status,
        deliveries=row.deliveries,
        available_at=coerce_utc(row.available_at),
        lease_expires_at=optional_utc(row.lease_expires_at),
    )


class SqlAlchemyTaskQueue:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with store_errors("reset queue"), self._session() as session:
            with session.begin():
                session.execute(delete(_QueueMessageRow))

    def enqueue(
        self,
        queue: str,
        *,
        job_id: str,
        job_type: str,
        payload: dict[str, object],
        available_at: datetime,
    ) -> QueueMessage:
        now = now_utc()
        with store_errors("enqueue message"), self._session() as session:
            with session.begin():
                row = _QueueMessageRow(
                    queue=queue,
                    job_id=job_id,
                    job_type=job_type,
                    payload_json=dump_json(payload),
                    status=MESSAGE_PENDING,
                    deliveries=0,
                    available_at=coerce_utc(available_at),
                    lease_expires_at=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return _to_message(row)

    def dequeue(self, queue: str, *, now: datetime, lease_seconds: float) -> QueueMessage | None:
        now = coerce_utc(now)
        lease_expires_at = now + timedelta(seconds=lease_seconds)
        deliverable = or_(
            and_(_QueueMessageRow.status == MESSAGE_PENDING, _QueueMessageRow.available_at <= now),
            and_(_QueueMessageRow.status == MESSAGE_PROCESSING, _QueueMessageRow.lease_expires_at <= now),
        )
        with store_errors("dequeue message"), self._session() as session:
            with session.begin():
                candidates = session.execute(
                    select(_QueueMessageRow.id, _QueueMessageRow.deliveries)
                    .where(_QueueMessageRow.queue == queue)
                    .where(deliverable)
                    .order_by(_QueueMessageRow.available_at.asc(), _QueueMessageRow.id.asc())
                    .limit(10)
                ).all()
                for message_id, deliveries in candidates:
                    claimed = session.execute(
                        update(_QueueMessageRow)
                        .where(_QueueMessageRow.id == message_id)
                        .where(_QueueMessageRow.deliveries == deliveries)
                        .where(deliverable)
                        .values(
                            status=MESSAGE_PROCESSING,
                            deliveries=deliveries + 1,
                            lease_expires_at=lease_expires_at,
                            updated_at=now_utc(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        continue
                    row = session.get(_QueueMessageRow, message_id, populate_existing=True)
                    return _to_message(row) if row is not None else None
        return None

    def ack(self, message: QueueMessage) -> bool:
        with store_errors("ack message"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_QueueMessageRow)
                    .where(_QueueMessageRow.id == message.id)
                    .where(_QueueMessageRow.deliveries == message.deliveries)
                    .values(status=MESSAGE_DONE, lease_expires_at=None, updated_at=now_utc())
                )
                return result.rowcount == 1

    def retry(self, message: QueueMessage, *, available_at: datetime) -> bool:
        with store_errors("retry message"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_QueueMessageRow)
                    .where(_QueueMessageRow.id == message.id)
                    .where(_QueueMessageRow.deliveries == message.deliveries)
                    .values(
                        status=MESSAGE_PENDING,
                        available_at=coerce_utc(available_at),
                        lease_expires_at=None,
                        updated_at=now_utc(),
                    )
                )
                return result.rowcount == 1

    def pending_count(self, queue: str | None = None) -> int:
        query = select(_QueueMessageRow.id).where(_QueueMessageRow.status != MESSAGE_DONE)
        if queue is not None:
            query = query.where(_QueueMessageRow.queue == queue)
        with store_errors("count queue messages"), self._session() as session:
            return len(session.execute(query).all())


def create_task_queue(*, backend: str, database_url: str) -> TaskQueue:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyTaskQueue(database_url)
    if normalized == "inmemory":
        return InMemoryTaskQueue()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
