from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from .config import get_settings
from .delivery_log import DeliveryLogRecord
from .errors import SchedulerOverlap, StoreUnavailable
from .job_status import JobStatusRecord
from .models import (
    DeliveryLogItem,
    DeliveryLogListResponse,
    DrainRequest,
    DrainResponse,
    HealthResponse,
    JobStatsItem,
    JobStatsResponse,
    JobStatusItem,
    JobStatusListResponse,
    JobState,
    TriggerRequest,
    TriggerResponse,
)
from .pipeline import NotificationPipeline

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/notifications", tags=["notifications"])
pipeline = NotificationPipeline(_settings)


def reset_runtime_state_for_tests() -> None:
    pipeline.reset()


def _delivery_item(record: DeliveryLogRecord) -> DeliveryLogItem:
    return DeliveryLogItem(
        id=record.id,
        rule_id=record.rule_id,
        owner_id=record.owner_id,
        subject_id=record.subject_id,
        channel=record.channel,
        status=record.status,
        job_id=record.job_id,
        sent_at=record.sent_at,
        error_code=record.error_code,
        error_message=record.error_message,
        metadata=record.metadata,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _job_item(record: JobStatusRecord) -> JobStatusItem:
    return JobStatusItem(
        job_id=record.job_id,
        job_type=record.job_type,
        queue=record.queue,
        unique_key=record.unique_key,
        status=record.status,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        progress=record.progress,
        error_message=record.error_message,
        result=record.result,
        next_retry_at=record.next_retry_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


@router.post("/trigger", response_model=TriggerResponse)
def trigger_tick(payload: TriggerRequest) -> TriggerResponse:
    try:
        result = pipeline.trigger(dry_run=payload.dry_run, now=payload.now_override, raise_on_overlap=True)
    except SchedulerOverlap as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if result.status == "aborted":
        raise HTTPException(status_code=503, detail=result.error_message or "store unavailable")
    return TriggerResponse(
        tick_id=result.tick_id,
        status=result.status,
        run_at=result.run_at,
        dry_run=result.dry_run,
        due_count=result.due_count,
        enqueued_count=result.enqueued_count,
        duplicate_count=result.duplicate_count,
        rule_ids=result.rule_ids,
        error_message=result.error_message,
    )


@router.post("/workers/drain", response_model=DrainResponse)
def drain_workers(payload: DrainRequest) -> DrainResponse:
    try:
        result = pipeline.drain(queue=payload.queue, max_messages=payload.max_messages, now=payload.now_override)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DrainResponse(
        processed_count=result.processed_count,
        completed_count=result.completed_count,
        retrying_count=result.retrying_count,
        failed_count=result.failed_count,
        deferred_count=result.deferred_count,
        job_ids=result.job_ids,
    )


@router.get("/deliveries", response_model=DeliveryLogListResponse)
def list_owner_deliveries(
    owner_id: int = Query(..., ge=1),
    limit: int = Query(default=50, ge=1, le=500),
) -> DeliveryLogListResponse:
    try:
        records = pipeline.delivery_log.list_for_owner(owner_id, limit=limit)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DeliveryLogListResponse(items=[_delivery_item(record) for record in records])


@router.get("/rules/{rule_id}/deliveries", response_model=DeliveryLogListResponse)
def list_rule_deliveries(rule_id: int) -> DeliveryLogListResponse:
    try:
        if pipeline.rules.get_rule(rule_id) is None:
            raise HTTPException(status_code=404, detail=f"rule not found: {rule_id}")
        records = pipeline.delivery_log.list_for_rule(rule_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DeliveryLogListResponse(items=[_delivery_item(record) for record in records])


@router.get("/jobs/stats", response_model=JobStatsResponse)
def job_stats() -> JobStatsResponse:
    try:
        counts = pipeline.jobs.count_by_queue_status()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    items = [
        JobStatsItem(queue=queue, status=status, count=total)
        for (queue, status), total in sorted(counts.items())
    ]
    return JobStatsResponse(items=items)


@router.get("/jobs", response_model=JobStatusListResponse)
def list_jobs(
    status: JobState | None = None,
    queue: str | None = Query(default=None, min_length=1, max_length=64),
    limit: int = Query(default=100, ge=1, le=1000),
) -> JobStatusListResponse:
    try:
        records = pipeline.jobs.list_jobs(status=status, queue=queue, limit=limit)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return JobStatusListResponse(items=[_job_item(record) for record in records])


@router.get("/jobs/{job_id}", response_model=JobStatusItem)
def get_job(job_id: str) -> JobStatusItem:
    try:
        record = pipeline.jobs.get(job_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=404, detail=f"job not found: {job_id}")
    return _job_item(record)


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        store_backend=_settings.store_backend,
        scheduler_running=pipeline.scheduler.running,
        workers_running=pipeline.workers.running,
    )
