from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from .db import NotificationsBase, coerce_utc, create_session_factory, store_errors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockRecord:
    lock_key: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > coerce_utc(now)


class LockRepository(Protocol):
    """Expiring named locks acquired by compare-and-set.

    An expired lock is free for the next caller, so a crashed holder never blocks
    the key for longer than its TTL.
    """

    def reset(self) -> None: ...

    def acquire(self, lock_key: str, *, owner: str, ttl_seconds: float, now: datetime) -> bool: ...

    def release(self, lock_key: str, *, owner: str | None = None) -> bool: ...

    def get(self, lock_key: str) -> LockRecord | None: ...


class InMemoryLockRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._locks: dict[str, LockRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._locks.clear()

    def acquire(self, lock_key: str, *, owner: str, ttl_seconds: float, now: datetime) -> bool:
        now = coerce_utc(now)
        with self._lock:
            current = self._locks.get(lock_key)
            if current is not None and current.is_active(now):
                return False
            self._locks[lock_key] = LockRecord(
                lock_key=lock_key,
                owner=owner,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            return True

    def release(self, lock_key: str, *, owner: str | None = None) -> bool:
        with self._lock:
            current = self._locks.get(lock_key)
            if current is None or (owner is not None and current.owner != owner):
                return False
            del self._locks[lock_key]
            return True

    def get(self, lock_key: str) -> LockRecord | None:
        with self._lock:
            return self._locks.get(lock_key)


class _CoordinationLockRow(NotificationsBase):
    __tablename__ = "coordination_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyLockRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with store_errors("reset locks"), self._session() as session:
            with session.begin():
                session.execute(delete(_CoordinationLockRow))

    def acquire(self, lock_key: str, *, owner: str, ttl_seconds: float, now: datetime) -> bool:
        now = coerce_utc(now)
        expires_at = now + timedelta(seconds=ttl_seconds)
        with store_errors("acquire lock"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(
                            _CoordinationLockRow(
                                lock_key=lock_key,
                                owner=owner,
                                acquired_at=now,
                                expires_at=expires_at,
                            )
                        )
                return True
            except IntegrityError:
                pass
            # Row exists: take it over only if it has expired.
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        update(_CoordinationLockRow)
                        .where(_CoordinationLockRow.lock_key == lock_key)
                        .where(_CoordinationLockRow.expires_at <= now)
                        .values(owner=owner, acquired_at=now, expires_at=expires_at)
                    )
                    taken = result.rowcount == 1
        if taken:
            logger.info("expired lock taken over lock_key=%s owner=%s", lock_key, owner)
        return taken

    def release(self, lock_key: str, *, owner: str | None = None) -> bool:
        query = delete(_CoordinationLockRow).where(_CoordinationLockRow.lock_key == lock_key)
        if owner is not None:
            query = query.where(_CoordinationLockRow.owner == owner)
        with store_errors("release lock"), self._session() as session:
            with session.begin():
                return session.execute(query).rowcount == 1

    def get(self, lock_key: str) -> LockRecord | None:
        with store_errors("get lock"), self._session() as session:
            row = session.execute(
                select(_CoordinationLockRow).where(_CoordinationLockRow.lock_key == lock_key)
            ).scalar_one_or_none()
            if row is None:
                return None
            return LockRecord(
                lock_key=row.lock_key,
                owner=row.owner,
                acquired_at=coerce_utc(row.acquired_at),
                expires_at=coerce_utc(row.expires_at),
            )


def create_lock_repository(*, backend: str, database_url: str) -> LockRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyLockRepository(database_url)
    if normalized == "inmemory":
        return InMemoryLockRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
