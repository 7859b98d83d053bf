from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, select
from sqlalchemy.orm import Mapped, mapped_column

from .db import ExternalBase, create_session_factory, optional_utc, store_errors
from .rules import DEFAULT_OFFSET_AMOUNT, DEFAULT_OFFSET_UNIT


@dataclass(frozen=True)
class Subject:
    id: int
    owner_id: int
    title: str
    due_at: datetime | None


@dataclass(frozen=True)
class OwnerProfile:
    owner_id: int
    email: str | None = None
    phone: str | None = None
    push_token: str | None = None
    disabled_channels: frozenset[str] = field(default_factory=frozenset)
    timezone: str = "UTC"
    default_offset_amount: int = DEFAULT_OFFSET_AMOUNT
    default_offset_unit: str = DEFAULT_OFFSET_UNIT

    def channel_enabled(self, channel: str) -> bool:
        return channel not in self.disabled_channels

    def recipient_for(self, channel: str) -> str | None:
        if channel == "email":
            return self.email
        if channel == "sms":
            return self.phone
        if channel == "push":
            return self.push_token
        if channel == "in_app":
            return str(self.owner_id)
        return None


class SubjectDirectory(Protocol):
    """Read-only view of the task/user store."""

    def get_subject(self, subject_id: int) -> Subject | None: ...

    def get_subjects(self, subject_ids: list[int]) -> dict[int, Subject]: ...

    def get_owner(self, owner_id: int) -> OwnerProfile | None: ...

    def get_owners(self, owner_ids: list[int]) -> dict[int, OwnerProfile]: ...


class InMemorySubjectDirectory:
    """Test and local-dev stand-in for the task/user application's records."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._subjects: dict[int, Subject] = {}
        self._owners: dict[int, OwnerProfile] = {}

    def reset(self) -> None:
        with self._lock:
            self._subjects.clear()
            self._owners.clear()

    def put_subject(self, subject: Subject) -> None:
        with self._lock:
            self._subjects[subject.id] = subject

    def remove_subject(self, subject_id: int) -> None:
        with self._lock:
            self._subjects.pop(subject_id, None)

    def put_owner(self, owner: OwnerProfile) -> None:
        with self._lock:
            self._owners[owner.owner_id] = owner

    def get_subject(self, subject_id: int) -> Subject | None:
        with self._lock:
            return self._subjects.get(subject_id)

    def get_subjects(self, subject_ids: list[int]) -> dict[int, Subject]:
        with self._lock:
            return {value: self._subjects[value] for value in subject_ids if value in self._subjects}

    def get_owner(self, owner_id: int) -> OwnerProfile | None:
        with self._lock:
            return self._owners.get(owner_id)

    def get_owners(self, owner_ids: list[int]) -> dict[int, OwnerProfile]:
        with self._lock:
            return {value: self._owners[value] for value in owner_ids if value in self._owners}


class _TaskRow(ExternalBase):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _UserRow(ExternalBase):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    push_token: Mapped[str | None] = mapped_column(String(512), nullable=True)


class _UserNotificationSettingsRow(ExternalBase):
    __tablename__ = "user_notification_settings"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    push_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    in_app_notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    default_reminder_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_OFFSET_AMOUNT)
    default_reminder_unit: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_OFFSET_UNIT)


def _to_subject(row: _TaskRow) -> Subject:
    return Subject(id=row.id, owner_id=row.user_id, title=row.title or "", due_at=optional_utc(row.due_at))


def _to_owner(user: _UserRow, settings: _UserNotificationSettingsRow | None) -> OwnerProfile:
    if settings is None:
        return OwnerProfile(owner_id=user.id, email=user.email, phone=user.phone, push_token=user.push_token)
    disabled = {
        channel
        for channel, enabled in (
            ("email", settings.email_notifications_enabled),
            ("sms", settings.sms_notifications_enabled),
            ("push", settings.push_notifications_enabled),
            ("in_app", settings.in_app_notifications_enabled),
        )
        if not enabled
    }
    return OwnerProfile(
        owner_id=user.id,
        email=user.email,
        phone=user.phone,
        push_token=user.push_token,
        disabled_channels=frozenset(disabled),
        timezone=settings.timezone or "UTC",
        default_offset_amount=settings.default_reminder_offset,
        default_offset_unit=settings.default_reminder_unit,
    )


class SqlAlchemySubjectDirectory:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def get_subject(self, subject_id: int) -> Subject | None:
        with store_errors("get subject"), self._session() as session:
            row = session.get(_TaskRow, subject_id)
            return _to_subject(row) if row is not None else None

    def get_subjects(self, subject_ids: list[int]) -> dict[int, Subject]:
        if not subject_ids:
            return {}
        with store_errors("get subjects"), self._session() as session:
            rows = session.execute(select(_TaskRow).where(_TaskRow.id.in_(subject_ids))).scalars()
            return {row.id: _to_subject(row) for row in rows}

    def get_owner(self, owner_id: int) -> OwnerProfile | None:
        return self.get_owners([owner_id]).get(owner_id)

    def get_owners(self, owner_ids: list[int]) -> dict[int, OwnerProfile]:
        if not owner_ids:
            return {}
        with store_errors("get owners"), self._session() as session:
            users = session.execute(select(_UserRow).where(_UserRow.id.in_(owner_ids))).scalars().all()
            settings_rows = session.execute(
                select(_UserNotificationSettingsRow).where(_UserNotificationSettingsRow.user_id.in_(owner_ids))
            ).scalars()
            settings_by_user = {row.user_id: row for row in settings_rows}
            return {user.id: _to_owner(user, settings_by_user.get(user.id)) for user in users}


def create_subject_directory(*, backend: str, database_url: str) -> SubjectDirectory:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySubjectDirectory(database_url)
    if normalized == "inmemory":
        return InMemorySubjectDirectory()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
