from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .config import QUEUE_NOTIFICATIONS, Settings
from .db import coerce_utc, now_utc
from .errors import DuplicateInFlight
from .evaluator import DueRule
from .job_status import JobStatusRepository
from .locks import LockRepository
from .queue import TaskQueue
from .rules import Rule

logger = logging.getLogger(__name__)

DELIVERY_JOB_TYPE = "notification.delivery"


def idempotency_key(rule: Rule) -> str:
    return f"notification-delivery:rule:{rule.id}"


def unique_lock_key(key: str) -> str:
    return f"unique-job:{key}"


@dataclass
class DispatchResult:
    due_count: int = 0
    enqueued_count: int = 0
    duplicate_count: int = 0
    job_ids: list[str] = field(default_factory=list)
    rule_ids: list[int] = field(default_factory=list)


class Dispatcher:
    """Enqueues at most one in-flight delivery job per rule.

    The idempotency key is derived from the rule id, and a short-lived lock on
    that key is held from enqueue until the job reaches a terminal state or the
    lock expires. The lock runs on `clock` (wall time), never on the evaluation
    time passed to `dispatch`.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobStatusRepository,
        queue: TaskQueue,
        locks: LockRepository,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._settings = settings
        self._jobs = jobs
        self._queue = queue
        self._locks = locks
        self._clock = clock
        self._queue_config = settings.queue_config(QUEUE_NOTIFICATIONS)

    def dispatch(self, due_rules: list[DueRule], *, now: datetime, dry_run: bool = False) -> DispatchResult:
        now = coerce_utc(now)
        result = DispatchResult(due_count=len(due_rules))
        for item in due_rules:
            key = idempotency_key(item.rule)
            if dry_run:
                if self._in_flight(key):
                    result.duplicate_count += 1
                else:
                    result.enqueued_count += 1
                    result.rule_ids.append(item.rule.id)
                continue
            try:
                job_id = self._enqueue(item, key=key, now=now)
            except DuplicateInFlight as exc:
                logger.debug("dispatch suppressed rule_id=%s key=%s", item.rule.id, exc.idempotency_key)
                result.duplicate_count += 1
                continue
            result.enqueued_count += 1
            result.job_ids.append(job_id)
            result.rule_ids.append(item.rule.id)
        return result

    def _in_flight(self, key: str) -> bool:
        held = self._locks.get(unique_lock_key(key))
        return held is not None and held.is_active(self._clock())

    def _enqueue(self, item: DueRule, *, key: str, now: datetime) -> str:
        job_id = uuid.uuid4().hex
        acquired = self._locks.acquire(
            unique_lock_key(key),
            owner=job_id,
            ttl_seconds=self._settings.unique_job_ttl_seconds,
            now=self._clock(),
        )
        if not acquired:
            raise DuplicateInFlight(key)

        payload = {
            "rule_id": item.rule.id,
            "subject_id": item.subject.id,
            "owner_id": item.rule.owner_id,
            "channel": item.rule.channel,
            "idempotency_key": key,
            "trigger_at": item.trigger_at.isoformat(),
        }
        try:
            self._jobs.create(
                job_id=job_id,
                job_type=DELIVERY_JOB_TYPE,
                queue=self._queue_config.name,
                max_attempts=self._queue_config.max_attempts,
                payload=payload,
                unique_key=key,
                created_at=now,
            )
            self._queue.enqueue(
                self._queue_config.name,
                job_id=job_id,
                job_type=DELIVERY_JOB_TYPE,
                payload=payload,
                available_at=now,
            )
        except Exception:
            self._locks.release(unique_lock_key(key), owner=job_id)
            raise
        logger.info(
            "delivery job enqueued job_id=%s rule_id=%s channel=%s queue=%s",
            job_id,
            item.rule.id,
            item.rule.channel,
            self._queue_config.name,
        )
        return job_id


def release_unique_lock(locks: LockRepository, *, key: str, job_id: str) -> None:
    locks.release(unique_lock_key(key), owner=job_id)
