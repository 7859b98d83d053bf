from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from .db import coerce_utc, now_utc
from .dispatcher import Dispatcher
from .errors import SchedulerOverlap, StoreUnavailable
from .evaluator import RuleEvaluator
from .locks import LockRepository

logger = logging.getLogger(__name__)

TICK_LOCK_KEY = "scheduler:tick"


@dataclass(frozen=True)
class TickResult:
    tick_id: str
    status: str
    run_at: datetime
    dry_run: bool
    due_count: int = 0
    enqueued_count: int = 0
    duplicate_count: int = 0
    rule_ids: list[int] = field(default_factory=list)
    error_message: str | None = None


class SchedulerTrigger:
    """Fixed-interval evaluate-and-dispatch tick guarded by a fleet-wide lock.

    A tick that finds the lock held is skipped, never queued. The lock is a
    persisted row with a TTL so a crashed holder releases it by expiry.
    """

    def __init__(
        self,
        *,
        evaluator: RuleEvaluator,
        dispatcher: Dispatcher,
        locks: LockRepository,
        instance_id: str,
        interval_seconds: float,
        lock_ttl_seconds: float,
    ) -> None:
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._locks = locks
        self._instance_id = instance_id
        self._interval_seconds = interval_seconds
        self._lock_ttl_seconds = lock_ttl_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self, *, now: datetime | None = None, dry_run: bool = False, raise_on_overlap: bool = False) -> TickResult:
        tick_id = uuid.uuid4().hex
        run_at = coerce_utc(now) if now is not None else now_utc()

        if dry_run:
            return self._evaluate_and_dispatch(tick_id, run_at, dry_run=True)

        owner = f"{self._instance_id}:{tick_id}"
        try:
            acquired = self._locks.acquire(
                TICK_LOCK_KEY,
                owner=owner,
                ttl_seconds=self._lock_ttl_seconds,
                now=now_utc(),
            )
        except StoreUnavailable as exc:
            logger.error("scheduler tick aborted tick_id=%s error=%s", tick_id, exc)
            return TickResult(tick_id=tick_id, status="aborted", run_at=run_at, dry_run=False, error_message=str(exc))

        if not acquired:
            holder = self._current_holder()
            overlap = SchedulerOverlap(TICK_LOCK_KEY, holder)
            logger.warning("scheduler tick skipped tick_id=%s reason=%s", tick_id, overlap)
            if raise_on_overlap:
                raise overlap
            return TickResult(
                tick_id=tick_id,
                status="skipped",
                run_at=run_at,
                dry_run=False,
                error_message=str(overlap),
            )

        try:
            return self._evaluate_and_dispatch(tick_id, run_at, dry_run=False)
        finally:
            try:
                self._locks.release(TICK_LOCK_KEY, owner=owner)
            except StoreUnavailable:
                logger.exception("scheduler lock release failed tick_id=%s; lock expires by TTL", tick_id)

    def _current_holder(self) -> str | None:
        try:
            record = self._locks.get(TICK_LOCK_KEY)
        except StoreUnavailable:
            return None
        return record.owner if record is not None else None

    def _evaluate_and_dispatch(self, tick_id: str, run_at: datetime, *, dry_run: bool) -> TickResult:
        try:
            due = self._evaluator.due_rules(run_at)
            dispatched = self._dispatcher.dispatch(due, now=run_at, dry_run=dry_run)
        except StoreUnavailable as exc:
            logger.error("scheduler tick aborted tick_id=%s error=%s", tick_id, exc)
            return TickResult(
                tick_id=tick_id,
                status="aborted",
                run_at=run_at,
                dry_run=dry_run,
                error_message=str(exc),
            )
        logger.info(
            "scheduler tick finished tick_id=%s dry_run=%s due=%s enqueued=%s duplicates=%s",
            tick_id,
            dry_run,
            dispatched.due_count,
            dispatched.enqueued_count,
            dispatched.duplicate_count,
        )
        return TickResult(
            tick_id=tick_id,
            status="dry_run" if dry_run else "completed",
            run_at=run_at,
            dry_run=dry_run,
            due_count=dispatched.due_count,
            enqueued_count=dispatched.enqueued_count,
            duplicate_count=dispatched.duplicate_count,
            rule_ids=list(dispatched.rule_ids),
        )

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="scheduler-trigger", daemon=True)
        self._thread.start()
        logger.info(
            "scheduler started instance_id=%s interval_seconds=%s",
            self._instance_id,
            self._interval_seconds,
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("scheduler stopped instance_id=%s", self._instance_id)

    def _run(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler tick raised")
