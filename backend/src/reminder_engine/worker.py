from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal, Protocol

from .config import QueueConfig, Settings
from .db import coerce_utc, now_utc
from .dispatcher import release_unique_lock
from .job_status import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, JobStatusRecord, JobStatusRepository
from .locks import LockRepository
from .queue import QueueMessage, TaskQueue

logger = logging.getLogger(__name__)

OutcomeKind = Literal["completed", "retry", "failed"]

# An attempt owns its job for this many queue timeouts; a live worker that outlasts
# its message lease still blocks a second attempt.
ATTEMPT_LEASE_FACTOR = 2


@dataclass(frozen=True)
class JobOutcome:
    kind: OutcomeKind
    result: dict[str, object] = field(default_factory=dict)
    error_message: str | None = None

    @classmethod
    def completed(cls, **result: object) -> JobOutcome:
        return cls(kind="completed", result=dict(result))

    @classmethod
    def retry(cls, error_message: str) -> JobOutcome:
        return cls(kind="retry", error_message=error_message)

    @classmethod
    def failed(cls, error_message: str) -> JobOutcome:
        return cls(kind="failed", error_message=error_message)


class JobHandler(Protocol):
    def run(self, job: JobStatusRecord, *, now: datetime) -> JobOutcome: ...

    def abandon(self, job: JobStatusRecord, *, reason: str) -> None: ...


def backoff_delay(schedule: tuple[int, ...], attempt: int) -> timedelta:
    """Delay before re-running a job whose `attempt`-th execution failed."""
    if not schedule:
        return timedelta(0)
    index = max(0, min(attempt - 1, len(schedule) - 1))
    return timedelta(seconds=schedule[index])


@dataclass
class DrainResult:
    processed_count: int = 0
    completed_count: int = 0
    retrying_count: int = 0
    failed_count: int = 0
    deferred_count: int = 0
    job_ids: list[str] = field(default_factory=list)

    def record(self, job_id: str, status: str) -> None:
        self.processed_count += 1
        self.job_ids.append(job_id)
        if status == JOB_COMPLETED:
            self.completed_count += 1
        elif status == JOB_FAILED:
            self.failed_count += 1
        elif status == JOB_PROCESSING:
            self.deferred_count += 1
        else:
            self.retrying_count += 1


class JobExecutor:
    """Runs one queued job at a time through its registered handler.

    The executor owns every JobStatus transition and the queue ack/retry calls;
    handler exceptions are contained and recorded against the job.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        jobs: JobStatusRepository,
        queue: TaskQueue,
        locks: LockRepository,
        handlers: dict[str, JobHandler],
    ) -> None:
        self._settings = settings
        self._jobs = jobs
        self._queue = queue
        self._locks = locks
        self._handlers = dict(handlers)

    def process_next(self, queue_config: QueueConfig, *, now: datetime | None = None) -> tuple[str, str] | None:
        """Process one deliverable message; returns (job_id, job status) or None when idle."""
        now = coerce_utc(now) if now is not None else now_utc()
        message = self._queue.dequeue(queue_config.name, now=now, lease_seconds=queue_config.timeout_seconds)
        if message is None:
            return None
        return message.job_id, self._process(message, queue_config, now=now)

    def _process(self, message: QueueMessage, queue_config: QueueConfig, *, now: datetime) -> str:
        job = self._jobs.get(message.job_id)
        if job is None:
            logger.warning("queue message without job status message_id=%s job_id=%s", message.id, message.job_id)
            self._queue.ack(message)
            return JOB_FAILED

        handler = self._handlers.get(job.job_type)
        if handler is None:
            logger.error("no handler registered job_id=%s job_type=%s", job.job_id, job.job_type)
            self._jobs.fail(job.job_id, error_message=f"no handler for job type {job.job_type}", now=now)
            self._finish(message, job)
            return JOB_FAILED

        lease_expires_at = now + timedelta(seconds=queue_config.timeout_seconds * ATTEMPT_LEASE_FACTOR)
        started = self._jobs.begin_attempt(job.job_id, now=now, lease_expires_at=lease_expires_at)
        if started is None:
            # Terminal already, still running elsewhere, or redelivered after its last allowed attempt.
            current = self._jobs.get(job.job_id) or job
            if current.status == JOB_PROCESSING:
                self._queue.retry(message, available_at=current.lease_expires_at or lease_expires_at)
                logger.warning(
                    "job attempt still in flight job_id=%s attempt=%s lease_expires_at=%s",
                    current.job_id,
                    current.attempts,
                    current.lease_expires_at.isoformat() if current.lease_expires_at else None,
                )
                return JOB_PROCESSING
            if current.status == JOB_FAILED and job.status != JOB_FAILED:
                logger.error("job exhausted attempts job_id=%s attempts=%s", job.job_id, current.attempts)
                self._abandon(handler, current, reason=current.error_message or "max attempts exhausted")
            self._finish(message, current)
            return current.status

        try:
            outcome = handler.run(started, now=now)
        except Exception as exc:
            logger.exception("job handler raised job_id=%s job_type=%s", started.job_id, started.job_type)
            outcome = JobOutcome.retry(f"unexpected error: {exc.__class__.__name__}")

        if outcome.kind == "retry" and started.attempts >= started.max_attempts:
            self._abandon(handler, started, reason=outcome.error_message or "max attempts exhausted")
            outcome = JobOutcome.failed(outcome.error_message or "max attempts exhausted")

        if outcome.kind == "completed":
            finished = self._jobs.complete(started.job_id, result=outcome.result, now=now)
            self._finish(message, finished)
            logger.info("job completed job_id=%s attempts=%s", started.job_id, started.attempts)
            return JOB_COMPLETED

        if outcome.kind == "failed":
            finished = self._jobs.fail(started.job_id, error_message=outcome.error_message or "failed", now=now)
            self._finish(message, finished)
            logger.error(
                "job failed job_id=%s attempts=%s error=%s",
                started.job_id,
                started.attempts,
                outcome.error_message,
            )
            return JOB_FAILED

        next_retry_at = now + backoff_delay(self._settings.retry_backoff_seconds, started.attempts)
        retrying = self._jobs.mark_retrying(
            started.job_id,
            error_message=outcome.error_message or "retrying",
            next_retry_at=next_retry_at,
        )
        self._queue.retry(message, available_at=next_retry_at)
        logger.warning(
            "job scheduled for retry job_id=%s attempt=%s next_retry_at=%s error=%s",
            started.job_id,
            started.attempts,
            next_retry_at.isoformat(),
            outcome.error_message,
        )
        return retrying.status

    def _abandon(self, handler: JobHandler, job: JobStatusRecord, *, reason: str) -> None:
        try:
            handler.abandon(job, reason=reason)
        except Exception:
            logger.exception("job abandon hook raised job_id=%s", job.job_id)

    def _finish(self, message: QueueMessage, job: JobStatusRecord) -> None:
        self._queue.ack(message)
        if job.unique_key:
            release_unique_lock(self._locks, key=job.unique_key, job_id=job.job_id)

    def drain(
        self,
        queue_configs: tuple[QueueConfig, ...],
        *,
        max_messages: int = 100,
        now: datetime | None = None,
    ) -> DrainResult:
        """Synchronously process every message deliverable at `now`."""
        result = DrainResult()
        for queue_config in queue_configs:
            while result.processed_count < max_messages:
                processed = self.process_next(queue_config, now=now)
                if processed is None:
                    break
                job_id, status = processed
                result.record(job_id, status)
        return result


class WorkerPool:
    """Background threads draining each queue with its own concurrency."""

    def __init__(self, *, executor: JobExecutor, queue_configs: tuple[QueueConfig, ...], poll_seconds: float) -> None:
        self._executor = executor
        self._queue_configs = queue_configs
        self._poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = []
        for queue_config in self._queue_configs:
            for index in range(max(0, queue_config.concurrency)):
                thread = threading.Thread(
                    target=self._run,
                    args=(queue_config,),
                    name=f"worker-{queue_config.name}-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info(
            "worker pool started threads=%s queues=%s",
            len(self._threads),
            ",".join(config.name for config in self._queue_configs),
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("worker pool stopped")

    def _run(self, queue_config: QueueConfig) -> None:
        while not self._stop.is_set():
            try:
                processed = self._executor.process_next(queue_config)
            except Exception:
                logger.exception("worker loop error queue=%s", queue_config.name)
                processed = None
            if processed is None:
                self._stop.wait(self._poll_seconds)
