from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .channels import ChannelRegistry, build_channel_registry
from .config import QUEUE_DEFAULT, QUEUE_HEAVY, QUEUE_NOTIFICATIONS, Settings
from .delivery import DeliveryJobHandler
from .delivery_log import DeliveryLogRepository, create_delivery_log_repository
from .dispatcher import DELIVERY_JOB_TYPE, Dispatcher
from .evaluator import RuleEvaluator
from .job_status import JobStatusRepository, create_job_status_repository
from .locks import LockRepository, create_lock_repository
from .queue import TaskQueue, create_task_queue
from .rules import RuleRepository, RuleService, create_rule_repository
from .scheduler import SchedulerTrigger, TickResult
from .subjects import SubjectDirectory, create_subject_directory
from .worker import DrainResult, JobExecutor, WorkerPool

logger = logging.getLogger(__name__)


class NotificationPipeline:
    """Wires stores, channels, the worker pool and the scheduler from settings.

    Any store can be passed in explicitly; the rest are built for the
    configured backend.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        rules: RuleRepository | None = None,
        subjects: SubjectDirectory | None = None,
        delivery_log: DeliveryLogRepository | None = None,
        jobs: JobStatusRepository | None = None,
        queue: TaskQueue | None = None,
        locks: LockRepository | None = None,
        channels: ChannelRegistry | None = None,
    ) -> None:
        backend = settings.store_backend
        url = settings.database_url
        self.settings = settings
        self.rules = rules or create_rule_repository(backend=backend, database_url=url)
        self.subjects = subjects or create_subject_directory(backend=backend, database_url=url)
        self.delivery_log = delivery_log or create_delivery_log_repository(backend=backend, database_url=url)
        self.jobs = jobs or create_job_status_repository(backend=backend, database_url=url)
        self.queue = queue or create_task_queue(backend=backend, database_url=url)
        self.locks = locks or create_lock_repository(backend=backend, database_url=url)
        self.channels = channels or build_channel_registry(settings)

        dedup_window = timedelta(minutes=settings.dedup_window_minutes)
        self.rule_service = RuleService(rules=self.rules, delivery_log=self.delivery_log)
        self.evaluator = RuleEvaluator(
            rules=self.rules,
            subjects=self.subjects,
            delivery_log=self.delivery_log,
            dedup_window=dedup_window,
        )
        self.dispatcher = Dispatcher(settings=settings, jobs=self.jobs, queue=self.queue, locks=self.locks)
        self.delivery_handler = DeliveryJobHandler(
            rules=self.rules,
            subjects=self.subjects,
            delivery_log=self.delivery_log,
            channels=self.channels,
            dedup_window=dedup_window,
        )
        self.executor = JobExecutor(
            settings=settings,
            jobs=self.jobs,
            queue=self.queue,
            locks=self.locks,
            handlers={DELIVERY_JOB_TYPE: self.delivery_handler},
        )
        self.workers = WorkerPool(
            executor=self.executor,
            queue_configs=settings.queue_configs(),
            poll_seconds=settings.worker_poll_seconds,
        )
        self.scheduler = SchedulerTrigger(
            evaluator=self.evaluator,
            dispatcher=self.dispatcher,
            locks=self.locks,
            instance_id=settings.instance_id,
            interval_seconds=settings.scheduler_interval_seconds,
            lock_ttl_seconds=settings.scheduler_lock_ttl_seconds,
        )

    def trigger(self, *, dry_run: bool = False, now: datetime | None = None, raise_on_overlap: bool = False) -> TickResult:
        return self.scheduler.tick(now=now, dry_run=dry_run, raise_on_overlap=raise_on_overlap)

    def drain(self, *, queue: str | None = None, max_messages: int = 100, now: datetime | None = None) -> DrainResult:
        if queue is None:
            configs = tuple(
                self.settings.queue_config(name) for name in (QUEUE_NOTIFICATIONS, QUEUE_DEFAULT, QUEUE_HEAVY)
            )
        else:
            configs = (self.settings.queue_config(queue),)
        return self.executor.drain(configs, max_messages=max_messages, now=now)

    def start(self) -> None:
        if self.settings.workers_enabled:
            self.workers.start()
        if self.settings.scheduler_enabled:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.workers.stop()

    def reset(self) -> None:
        for store in (self.rules, self.delivery_log, self.jobs, self.queue, self.locks):
            store.reset()
        reset_subjects = getattr(self.subjects, "reset", None)
        if reset_subjects is not None:
            reset_subjects()
