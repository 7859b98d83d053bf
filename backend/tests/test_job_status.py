from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reminder_engine.errors import JobNotFoundError
from reminder_engine.job_status import InMemoryJobStatusRepository
from reminder_engine.worker import backoff_delay

NOW = datetime(2026, 3, 1, 11, 40, tzinfo=timezone.utc)
LEASE = timedelta(seconds=60)


def _make_job(jobs: InMemoryJobStatusRepository, job_id: str = "job-1", *, max_attempts: int = 3, queue: str = "notifications"):
    return jobs.create(
        job_id=job_id,
        job_type="notification.delivery",
        queue=queue,
        max_attempts=max_attempts,
        payload={"rule_id": 7},
        unique_key="notification-delivery:rule:7",
        created_at=NOW,
    )


def test_new_job_starts_pending() -> None:
    jobs = InMemoryJobStatusRepository()

    job = _make_job(jobs)

    assert job.status == "pending"
    assert job.attempts == 0
    assert job.progress == 0
    assert job.payload == {"rule_id": 7}
    assert job.created_at == NOW
    assert not job.is_terminal


def test_duplicate_job_id_is_rejected() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs)

    with pytest.raises(ValueError):
        _make_job(jobs)


def test_attempt_lifecycle_through_retry_to_completion() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs)

    first = jobs.begin_attempt("job-1", now=NOW, lease_expires_at=NOW + LEASE)
    assert first is not None
    assert first.status == "processing"
    assert first.attempts == 1
    assert first.started_at == NOW
    assert first.lease_expires_at == NOW + LEASE

    retrying = jobs.mark_retrying("job-1", error_message="smtp down", next_retry_at=NOW + timedelta(seconds=60))
    assert retrying.status == "retrying"
    assert retrying.next_retry_at == NOW + timedelta(seconds=60)

    retry_at = NOW + timedelta(seconds=60)
    second = jobs.begin_attempt("job-1", now=retry_at, lease_expires_at=retry_at + LEASE)
    assert second.attempts == 2
    assert second.next_retry_at is None
    assert second.started_at == NOW

    done = jobs.complete("job-1", result={"outcome": "sent"}, now=NOW + timedelta(seconds=61))
    assert done.status == "completed"
    assert done.progress == 100
    assert done.result == {"outcome": "sent"}
    assert done.completed_at == NOW + timedelta(seconds=61)
    assert done.lease_expires_at is None
    assert done.is_terminal


def test_attempt_inside_its_lease_is_not_started_again() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs)
    jobs.begin_attempt("job-1", now=NOW, lease_expires_at=NOW + LEASE)

    redelivered_at = NOW + timedelta(seconds=31)
    assert jobs.begin_attempt("job-1", now=redelivered_at, lease_expires_at=redelivered_at + LEASE) is None
    running = jobs.get("job-1")
    assert running.status == "processing"
    assert running.attempts == 1
    assert running.lease_expires_at == NOW + LEASE

    takeover = jobs.begin_attempt("job-1", now=NOW + LEASE, lease_expires_at=NOW + 2 * LEASE)
    assert takeover is not None
    assert takeover.attempts == 2
    assert takeover.lease_expires_at == NOW + 2 * LEASE


def test_terminal_jobs_never_change() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs)
    jobs.begin_attempt("job-1", now=NOW, lease_expires_at=NOW + LEASE)
    failed = jobs.fail("job-1", error_message="invalid_recipient", now=NOW)

    later = NOW + timedelta(minutes=1)
    assert jobs.begin_attempt("job-1", now=later, lease_expires_at=later + LEASE) is None
    assert jobs.complete("job-1", result={"outcome": "sent"}, now=NOW) == failed
    assert jobs.mark_retrying("job-1", error_message="late", next_retry_at=NOW) == failed
    assert jobs.update_progress("job-1", 50) == failed
    assert jobs.get("job-1") == failed


def test_attempts_never_exceed_max_attempts() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs, max_attempts=2)

    jobs.begin_attempt("job-1", now=NOW, lease_expires_at=NOW + LEASE)
    jobs.mark_retrying("job-1", error_message="timeout", next_retry_at=NOW)
    jobs.begin_attempt("job-1", now=NOW, lease_expires_at=NOW + LEASE)

    later = NOW + timedelta(minutes=5)
    assert jobs.begin_attempt("job-1", now=later, lease_expires_at=later + LEASE) is None
    job = jobs.get("job-1")
    assert job.status == "failed"
    assert job.attempts == 2
    assert job.error_message == "timeout"


def test_progress_is_clamped() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs)

    assert jobs.update_progress("job-1", 40).progress == 40
    assert jobs.update_progress("job-1", 250).progress == 100
    assert jobs.update_progress("job-1", -5).progress == 0


def test_unknown_job_raises() -> None:
    jobs = InMemoryJobStatusRepository()

    assert jobs.get("missing") is None
    with pytest.raises(JobNotFoundError):
        jobs.begin_attempt("missing", now=NOW, lease_expires_at=NOW + LEASE)
    with pytest.raises(JobNotFoundError):
        jobs.fail("missing", error_message="x", now=NOW)


def test_listing_and_counts() -> None:
    jobs = InMemoryJobStatusRepository()
    _make_job(jobs, "job-1")
    _make_job(jobs, "job-2")
    _make_job(jobs, "job-3", queue="default")
    jobs.begin_attempt("job-2", now=NOW, lease_expires_at=NOW + LEASE)
    jobs.complete("job-2", now=NOW)

    assert [job.job_id for job in jobs.list_jobs(status="pending")] == ["job-3", "job-1"]
    assert [job.job_id for job in jobs.list_jobs(queue="default")] == ["job-3"]
    assert len(jobs.list_jobs(limit=2)) == 2
    assert [job.job_id for job in jobs.list_by_unique_key("notification-delivery:rule:7")] == [
        "job-1",
        "job-2",
        "job-3",
    ]
    assert jobs.count_by_queue_status() == {
        ("notifications", "pending"): 1,
        ("notifications", "completed"): 1,
        ("default", "pending"): 1,
    }


def test_backoff_schedule_repeats_last_delay() -> None:
    schedule = (60, 300, 900)

    assert backoff_delay(schedule, 1) == timedelta(seconds=60)
    assert backoff_delay(schedule, 2) == timedelta(seconds=300)
    assert backoff_delay(schedule, 3) == timedelta(seconds=900)
    assert backoff_delay(schedule, 7) == timedelta(seconds=900)
    assert backoff_delay((), 1) == timedelta(0)
