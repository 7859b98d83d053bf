from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from reminder_engine.config import Settings
from reminder_engine.dispatcher import DELIVERY_JOB_TYPE, Dispatcher, idempotency_key, unique_lock_key
from reminder_engine.errors import StoreUnavailable
from reminder_engine.evaluator import DueRule
from reminder_engine.job_status import InMemoryJobStatusRepository
from reminder_engine.locks import InMemoryLockRepository
from reminder_engine.queue import InMemoryTaskQueue
from reminder_engine.rules import InMemoryRuleRepository, Rule
from reminder_engine.subjects import Subject

DUE_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW = DUE_AT - timedelta(minutes=20)


class _BrokenQueue(InMemoryTaskQueue):
    def enqueue(self, queue, *, job_id, job_type, payload, available_at):
        raise StoreUnavailable("enqueue message failed: OperationalError")


def _make_rule(subject_id: int = 10) -> tuple[Rule, DueRule]:
    rules = InMemoryRuleRepository()
    rule = rules.create_rule(
        owner_id=1,
        subject_id=subject_id,
        channel="email",
        offset_amount=30,
        offset_unit="minutes",
        enabled=True,
    )
    subject = Subject(id=subject_id, owner_id=1, title="Renew passport", due_at=DUE_AT)
    return rule, DueRule(rule=rule, subject=subject, owner=None, trigger_at=rule.trigger_at(DUE_AT))


def _make_dispatcher(
    settings: Settings | None = None,
    *,
    queue: InMemoryTaskQueue | None = None,
    clock: Callable[[], datetime] = lambda: NOW,
) -> tuple[Dispatcher, InMemoryJobStatusRepository, InMemoryTaskQueue, InMemoryLockRepository]:
    jobs = InMemoryJobStatusRepository()
    queue = queue or InMemoryTaskQueue()
    locks = InMemoryLockRepository()
    dispatcher = Dispatcher(settings=settings or Settings(), jobs=jobs, queue=queue, locks=locks, clock=clock)
    return dispatcher, jobs, queue, locks


def test_dispatch_creates_job_status_and_queue_message() -> None:
    dispatcher, jobs, queue, locks = _make_dispatcher()
    rule, due = _make_rule()

    result = dispatcher.dispatch([due], now=NOW)

    assert result.due_count == 1
    assert result.enqueued_count == 1
    assert result.rule_ids == [rule.id]
    job = jobs.get(result.job_ids[0])
    assert job is not None
    assert job.status == "pending"
    assert job.job_type == DELIVERY_JOB_TYPE
    assert job.queue == "notifications"
    assert job.max_attempts == 3
    assert job.unique_key == idempotency_key(rule)
    assert job.payload["rule_id"] == rule.id
    assert job.payload["trigger_at"] == (DUE_AT - timedelta(minutes=30)).isoformat()
    assert queue.pending_count("notifications") == 1
    held = locks.get(unique_lock_key(idempotency_key(rule)))
    assert held is not None
    assert held.owner == job.job_id
    assert held.expires_at == NOW + timedelta(seconds=3600)


def test_second_dispatch_for_in_flight_rule_is_suppressed() -> None:
    dispatcher, jobs, queue, _ = _make_dispatcher()
    rule, due = _make_rule()

    first = dispatcher.dispatch([due], now=NOW)
    second = dispatcher.dispatch([due], now=NOW + timedelta(minutes=5))

    assert first.enqueued_count == 1
    assert second.enqueued_count == 0
    assert second.duplicate_count == 1
    assert len(jobs.list_by_unique_key(idempotency_key(rule))) == 1
    assert queue.pending_count() == 1


def test_concurrent_dispatchers_enqueue_one_job() -> None:
    jobs = InMemoryJobStatusRepository()
    queue = InMemoryTaskQueue()
    locks = InMemoryLockRepository()
    dispatchers = [
        Dispatcher(settings=Settings(), jobs=jobs, queue=queue, locks=locks) for _ in range(4)
    ]
    rule, due = _make_rule()
    barrier = threading.Barrier(len(dispatchers))
    results = []

    def run(dispatcher: Dispatcher) -> None:
        barrier.wait()
        results.append(dispatcher.dispatch([due], now=NOW))

    threads = [threading.Thread(target=run, args=(dispatcher,)) for dispatcher in dispatchers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert sum(result.enqueued_count for result in results) == 1
    assert sum(result.duplicate_count for result in results) == 3
    assert len(jobs.list_by_unique_key(idempotency_key(rule))) == 1
    assert queue.pending_count() == 1


def test_dry_run_reports_without_side_effects() -> None:
    dispatcher, jobs, queue, locks = _make_dispatcher()
    rule, due = _make_rule()

    preview = dispatcher.dispatch([due], now=NOW, dry_run=True)

    assert preview.enqueued_count == 1
    assert preview.job_ids == []
    assert jobs.list_jobs() == []
    assert queue.pending_count() == 0
    assert locks.get(unique_lock_key(idempotency_key(rule))) is None

    dispatcher.dispatch([due], now=NOW)
    again = dispatcher.dispatch([due], now=NOW, dry_run=True)
    assert again.enqueued_count == 0
    assert again.duplicate_count == 1


def test_expired_unique_lock_allows_new_job() -> None:
    wall = [NOW]
    dispatcher, jobs, _, _ = _make_dispatcher(Settings(unique_job_ttl_seconds=60), clock=lambda: wall[0])
    rule, due = _make_rule()

    dispatcher.dispatch([due], now=NOW)
    wall[0] = NOW + timedelta(seconds=30)
    assert dispatcher.dispatch([due], now=wall[0]).duplicate_count == 1
    wall[0] = NOW + timedelta(seconds=61)
    assert dispatcher.dispatch([due], now=wall[0]).enqueued_count == 1

    assert len(jobs.list_by_unique_key(idempotency_key(rule))) == 2


def test_backdated_dispatch_holds_unique_lock_on_wall_clock() -> None:
    dispatcher, jobs, _, locks = _make_dispatcher()
    rule, due = _make_rule()

    backdated = dispatcher.dispatch([due], now=NOW - timedelta(hours=2))

    held = locks.get(unique_lock_key(idempotency_key(rule)))
    assert held.acquired_at == NOW
    assert held.expires_at == NOW + timedelta(seconds=3600)
    assert jobs.get(backdated.job_ids[0]).created_at == NOW - timedelta(hours=2)
    assert dispatcher.dispatch([due], now=NOW).duplicate_count == 1
    assert dispatcher.dispatch([due], now=NOW, dry_run=True).duplicate_count == 1
    assert len(jobs.list_by_unique_key(idempotency_key(rule))) == 1


def test_enqueue_failure_releases_unique_lock() -> None:
    dispatcher, _, _, locks = _make_dispatcher(queue=_BrokenQueue())
    rule, due = _make_rule()

    with pytest.raises(StoreUnavailable):
        dispatcher.dispatch([due], now=NOW)

    assert locks.get(unique_lock_key(idempotency_key(rule))) is None


def test_each_rule_gets_its_own_key() -> None:
    dispatcher, _, queue, _ = _make_dispatcher()
    _, first = _make_rule(10)
    rules = InMemoryRuleRepository()
    rules.create_rule(owner_id=1, subject_id=10, channel="email", offset_amount=30, offset_unit="minutes", enabled=True)
    other_rule = rules.create_rule(
        owner_id=1, subject_id=11, channel="sms", offset_amount=30, offset_unit="minutes", enabled=True
    )
    assert other_rule.id != first.rule.id
    other = DueRule(
        rule=other_rule,
        subject=Subject(id=11, owner_id=1, title="Call the bank", due_at=DUE_AT),
        owner=None,
        trigger_at=other_rule.trigger_at(DUE_AT),
    )

    result = dispatcher.dispatch([first, other], now=NOW)

    assert idempotency_key(first.rule) != idempotency_key(other_rule)
    assert result.enqueued_count == 2
    assert queue.pending_count() == 2
