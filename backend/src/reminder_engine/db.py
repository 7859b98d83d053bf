from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .errors import StoreUnavailable


class NotificationsBase(DeclarativeBase):
    pass


class ExternalBase(DeclarativeBase):
    """Tables owned by the task/user application; read-only here."""


_engines: dict[str, Engine] = {}
_engines_lock = Lock()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_utc(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


def dump_json(value: dict[str, object] | None) -> str:
    return json.dumps(value or {}, sort_keys=True, separators=(",", ":"), default=str)


def load_json(raw: str | None) -> dict[str, object]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def get_engine(database_url: str) -> Engine:
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
    with _engines_lock:
        engine = _engines.get(database_url)
        if engine is None:
            connect_args: dict[str, object] = {}
            if database_url.startswith("sqlite"):
                connect_args = {"timeout": 30, "check_same_thread": False}
            engine = create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)
            _engines[database_url] = engine
        return engine


def create_session_factory(database_url: str) -> sessionmaker[Session]:
    engine = get_engine(database_url)
    if database_url.startswith("sqlite"):
        NotificationsBase.metadata.create_all(engine)
        ExternalBase.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False, future=True)


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"{operation} failed: {exc.__class__.__name__}") from exc
