from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import count
from threading import Lock
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, delete, or_, select, update
from sqlalchemy.orm import Mapped, mapped_column

from .db import NotificationsBase, coerce_utc, create_session_factory, now_utc, optional_utc, store_errors
from .errors import RuleNotFoundError, UnknownChannelError, ValidationError
from .models import KNOWN_CHANNELS, OFFSET_UNITS

if TYPE_CHECKING:
    from .delivery_log import DeliveryLogRepository
    from .subjects import OwnerProfile

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "email"
DEFAULT_OFFSET_AMOUNT = 30
DEFAULT_OFFSET_UNIT = "minutes"


def offset_delta(amount: int, unit: str) -> timedelta:
    if unit == "minutes":
        return timedelta(minutes=amount)
    if unit == "hours":
        return timedelta(hours=amount)
    if unit == "days":
        return timedelta(days=amount)
    raise ValidationError(f"unsupported offset unit: {unit}")


@dataclass(frozen=True)
class Rule:
    id: int
    owner_id: int
    subject_id: int
    channel: str
    offset_amount: int
    offset_unit: str
    enabled: bool
    last_sent_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def offset(self) -> timedelta:
        return offset_delta(self.offset_amount, self.offset_unit)

    def trigger_at(self, due_at: datetime) -> datetime:
        return coerce_utc(due_at) - self.offset


def validate_rule_config(*, channel: str, offset_amount: int, offset_unit: str) -> None:
    if channel not in KNOWN_CHANNELS:
        raise UnknownChannelError(channel)
    if isinstance(offset_amount, bool) or not isinstance(offset_amount, int):
        raise ValidationError("offset_amount must be an integer")
    if offset_amount <= 0:
        raise ValidationError("offset_amount must be greater than zero")
    if offset_unit not in OFFSET_UNITS:
        raise ValidationError(f"offset_unit must be one of {', '.join(OFFSET_UNITS)}")


class RuleRepository(Protocol):
    def reset(self) -> None: ...

    def create_rule(
        self,
        *,
        owner_id: int,
        subject_id: int,
        channel: str,
        offset_amount: int,
        offset_unit: str,
        enabled: bool,
    ) -> Rule: ...

    def get_rule(self, rule_id: int) -> Rule | None: ...

    def update_rule(
        self,
        rule_id: int,
        *,
        offset_amount: int | None = None,
        offset_unit: str | None = None,
        enabled: bool | None = None,
    ) -> Rule: ...

    def delete_rule(self, rule_id: int) -> bool: ...

    def delete_rules_for_subject(self, subject_id: int) -> int: ...

    def list_rules(self, *, owner_id: int | None = None, subject_id: int | None = None) -> list[Rule]: ...

    def list_enabled_rules(self) -> list[Rule]: ...

    def record_sent(self, rule_id: int, sent_at: datetime) -> bool: ...


class InMemoryRuleRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = count(1)
        self._rules: dict[int, Rule] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._rules.clear()

    def create_rule(
        self,
        *,
        owner_id: int,
        subject_id: int,
        channel: str,
        offset_amount: int,
        offset_unit: str,
        enabled: bool,
    ) -> Rule:
        with self._lock:
            now = now_utc()
            rule = Rule(
                id=next(self._counter),
                owner_id=owner_id,
                subject_id=subject_id,
                channel=channel,
                offset_amount=offset_amount,
                offset_unit=offset_unit,
                enabled=enabled,
                last_sent_at=None,
                created_at=now,
                updated_at=now,
            )
            self._rules[rule.id] = rule
            return rule

    def get_rule(self, rule_id: int) -> Rule | None:
        with self._lock:
            return self._rules.get(rule_id)

    def update_rule(
        self,
        rule_id: int,
        *,
        offset_amount: int | None = None,
        offset_unit: str | None = None,
        enabled: bool | None = None,
    ) -> Rule:
        with self._lock:
            row = self._rules.get(rule_id)
            if row is None:
                raise RuleNotFoundError(rule_id)
            updated = Rule(
                **{
                    **row.__dict__,
                    "offset_amount": row.offset_amount if offset_amount is None else offset_amount,
                    "offset_unit": row.offset_unit if offset_unit is None else offset_unit,
                    "enabled": row.enabled if enabled is None else enabled,
                    "updated_at": now_utc(),
                }
            )
            self._rules[rule_id] = updated
            return updated

    def delete_rule(self, rule_id: int) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def delete_rules_for_subject(self, subject_id: int) -> int:
        with self._lock:
            doomed = [rule_id for rule_id, rule in self._rules.items() if rule.subject_id == subject_id]
            for rule_id in doomed:
                del self._rules[rule_id]
            return len(doomed)

    def list_rules(self, *, owner_id: int | None = None, subject_id: int | None = None) -> list[Rule]:
        with self._lock:
            rules = [
                rule
                for rule in self._rules.values()
                if (owner_id is None or rule.owner_id == owner_id)
                and (subject_id is None or rule.subject_id == subject_id)
            ]
        return sorted(rules, key=lambda value: value.id)

    def list_enabled_rules(self) -> list[Rule]:
        with self._lock:
            rules = [rule for rule in self._rules.values() if rule.enabled]
        return sorted(rules, key=lambda value: value.id)

    def record_sent(self, rule_id: int, sent_at: datetime) -> bool:
        sent_at = coerce_utc(sent_at)
        with self._lock:
            row = self._rules.get(rule_id)
            if row is None:
                return False
            if row.last_sent_at is not None and row.last_sent_at >= sent_at:
                return False
            self._rules[rule_id] = Rule(**{**row.__dict__, "last_sent_at": sent_at, "updated_at": now_utc()})
            return True


class _RuleRow(NotificationsBase):
    __tablename__ = "notification_rules"
    __table_args__ = (
        Index("ix_notification_rules_enabled_channel", "enabled", "channel"),
        Index("ix_notification_rules_owner_subject", "owner_id", "subject_id"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    subject_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_CHANNEL)
    offset_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_OFFSET_AMOUNT)
    offset_unit: Mapped[str] = mapped_column(String(16), nullable=False, default=DEFAULT_OFFSET_UNIT)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_rule(row: _RuleRow) -> Rule:
    return Rule(
        id=row.id,
        owner_id=row.owner_id,
        subject_id=row.subject_id,
        channel=row.channel,
        offset_amount=row.offset_amount,
        offset_unit=row.offset_unit,
        enabled=row.enabled,
        last_sent_at=optional_utc(row.last_sent_at),
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
    )


class SqlAlchemyRuleRepository:
    def __init__(self, database_url: str) -> None:
        self._session_factory = create_session_factory(database_url)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with store_errors("reset rules"), self._session() as session:
            with session.begin():
                session.execute(delete(_RuleRow))

    def create_rule(
        self,
        *,
        owner_id: int,
        subject_id: int,
        channel: str,
        offset_amount: int,
        offset_unit: str,
        enabled: bool,
    ) -> Rule:
        now = now_utc()
        with store_errors("create rule"), self._session() as session:
            with session.begin():
                row = _RuleRow(
                    owner_id=owner_id,
                    subject_id=subject_id,
                    channel=channel,
                    offset_amount=offset_amount,
                    offset_unit=offset_unit,
                    enabled=enabled,
                    last_sent_at=None,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                session.flush()
                return _to_rule(row)

    def get_rule(self, rule_id: int) -> Rule | None:
        with store_errors("get rule"), self._session() as session:
            row = session.get(_RuleRow, rule_id)
            return _to_rule(row) if row is not None else None

    def update_rule(
        self,
        rule_id: int,
        *,
        offset_amount: int | None = None,
        offset_unit: str | None = None,
        enabled: bool | None = None,
    ) -> Rule:
        with store_errors("update rule"), self._session() as session:
            with session.begin():
                row = session.get(_RuleRow, rule_id)
                if row is None:
                    raise RuleNotFoundError(rule_id)
                if offset_amount is not None:
                    row.offset_amount = offset_amount
                if offset_unit is not None:
                    row.offset_unit = offset_unit
                if enabled is not None:
                    row.enabled = enabled
                row.updated_at = now_utc()
                session.flush()
                return _to_rule(row)

    def delete_rule(self, rule_id: int) -> bool:
        with store_errors("delete rule"), self._session() as session:
            with session.begin():
                result = session.execute(delete(_RuleRow).where(_RuleRow.id == rule_id))
                return result.rowcount == 1

    def delete_rules_for_subject(self, subject_id: int) -> int:
        with store_errors("delete subject rules"), self._session() as session:
            with session.begin():
                result = session.execute(delete(_RuleRow).where(_RuleRow.subject_id == subject_id))
                return int(result.rowcount or 0)

    def list_rules(self, *, owner_id: int | None = None, subject_id: int | None = None) -> list[Rule]:
        query = select(_RuleRow).order_by(_RuleRow.id.asc())
        if owner_id is not None:
            query = query.where(_RuleRow.owner_id == owner_id)
        if subject_id is not None:
            query = query.where(_RuleRow.subject_id == subject_id)
        with store_errors("list rules"), self._session() as session:
            return [_to_rule(row) for row in session.execute(query).scalars()]

    def list_enabled_rules(self) -> list[Rule]:
        query = select(_RuleRow).where(_RuleRow.enabled.is_(True)).order_by(_RuleRow.id.asc())
        with store_errors("list enabled rules"), self._session() as session:
            return [_to_rule(row) for row in session.execute(query).scalars()]

    def record_sent(self, rule_id: int, sent_at: datetime) -> bool:
        sent_at = coerce_utc(sent_at)
        with store_errors("record rule send"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_RuleRow)
                    .where(_RuleRow.id == rule_id)
                    .where(or_(_RuleRow.last_sent_at.is_(None), _RuleRow.last_sent_at < sent_at))
                    .values(last_sent_at=sent_at, updated_at=now_utc())
                )
                return result.rowcount == 1


def create_rule_repository(*, backend: str, database_url: str) -> RuleRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyRuleRepository(database_url)
    if normalized == "inmemory":
        return InMemoryRuleRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")


class RuleService:
    """Validated rule operations exposed to the task management API."""

    def __init__(self, *, rules: RuleRepository, delivery_log: DeliveryLogRepository | None = None) -> None:
        self._rules = rules
        self._delivery_log = delivery_log

    def create_rule(
        self,
        *,
        owner_id: int,
        subject_id: int,
        channel: str = DEFAULT_CHANNEL,
        offset_amount: int = DEFAULT_OFFSET_AMOUNT,
        offset_unit: str = DEFAULT_OFFSET_UNIT,
        enabled: bool = True,
    ) -> Rule:
        validate_rule_config(channel=channel, offset_amount=offset_amount, offset_unit=offset_unit)
        rule = self._rules.create_rule(
            owner_id=owner_id,
            subject_id=subject_id,
            channel=channel,
            offset_amount=offset_amount,
            offset_unit=offset_unit,
            enabled=enabled,
        )
        logger.info("rule created rule_id=%s subject_id=%s channel=%s", rule.id, subject_id, channel)
        return rule

    def create_default_rule(self, *, owner_id: int, subject_id: int, preferences: OwnerProfile | None = None) -> Rule:
        offset_amount = DEFAULT_OFFSET_AMOUNT
        offset_unit = DEFAULT_OFFSET_UNIT
        if preferences is not None:
            offset_amount = preferences.default_offset_amount
            offset_unit = preferences.default_offset_unit
        return self.create_rule(
            owner_id=owner_id,
            subject_id=subject_id,
            offset_amount=offset_amount,
            offset_unit=offset_unit,
        )

    def update_rule(
        self,
        rule_id: int,
        *,
        offset_amount: int | None = None,
        offset_unit: str | None = None,
        enabled: bool | None = None,
    ) -> Rule:
        current = self.get_rule(rule_id)
        validate_rule_config(
            channel=current.channel,
            offset_amount=current.offset_amount if offset_amount is None else offset_amount,
            offset_unit=current.offset_unit if offset_unit is None else offset_unit,
        )
        return self._rules.update_rule(
            rule_id,
            offset_amount=offset_amount,
            offset_unit=offset_unit,
            enabled=enabled,
        )

    def toggle_rule(self, rule_id: int) -> Rule:
        current = self.get_rule(rule_id)
        return self._rules.update_rule(rule_id, enabled=not current.enabled)

    def get_rule(self, rule_id: int) -> Rule:
        rule = self._rules.get_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def delete_rule(self, rule_id: int) -> bool:
        return self._rules.delete_rule(rule_id)

    def list_subject_rules(self, *, owner_id: int, subject_id: int) -> list[Rule]:
        return self._rules.list_rules(owner_id=owner_id, subject_id=subject_id)

    def cancel_subject_notifications(self, subject_id: int) -> int:
        """Cancel pending deliveries and drop the rules of a removed subject."""
        cancelled = 0
        if self._delivery_log is not None:
            cancelled = self._delivery_log.cancel_pending_for_subject(
                subject_id,
                error_message="Subject deleted or notification cancelled",
            )
        removed = self._rules.delete_rules_for_subject(subject_id)
        logger.info(
            "subject notifications cancelled subject_id=%s pending_cancelled=%s rules_removed=%s",
            subject_id,
            cancelled,
            removed,
        )
        return cancelled
