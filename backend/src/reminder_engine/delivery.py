from __future__ import annotations

import logging
from datetime import datetime, timedelta

from .channels import ChannelOutcome, ChannelRegistry, DeliveryContext
from .delivery_log import STATUS_PENDING, STATUS_SENT, DeliveryLogRecord, DeliveryLogRepository
from .errors import UnknownChannelError
from .job_status import JobStatusRecord
from .rules import Rule, RuleRepository
from .subjects import OwnerProfile, SubjectDirectory
from .worker import JobOutcome

logger = logging.getLogger(__name__)

SUBJECT_REMOVED_MESSAGE = "Subject deleted or notification cancelled"


def _recipient(rule: Rule, owner: OwnerProfile | None) -> str | None:
    if owner is not None:
        return owner.recipient_for(rule.channel)
    if rule.channel == "in_app":
        return str(rule.owner_id)
    return None


class DeliveryJobHandler:
    """Executes one attempt of a notification delivery job.

    Everything is re-read from the stores on each attempt. Duplicate and
    eligibility checks short-circuit to a completed no-op before any channel is
    contacted; a DeliveryLog row is written only when a send is attempted and is
    reused across retries and redeliveries of the same job.
    """

    def __init__(
        self,
        *,
        rules: RuleRepository,
        subjects: SubjectDirectory,
        delivery_log: DeliveryLogRepository,
        channels: ChannelRegistry,
        dedup_window: timedelta,
    ) -> None:
        self._rules = rules
        self._subjects = subjects
        self._delivery_log = delivery_log
        self._channels = channels
        self._dedup_window = dedup_window

    def run(self, job: JobStatusRecord, *, now: datetime) -> JobOutcome:
        rule_id = int(job.payload.get("rule_id", 0) or 0)
        rule = self._rules.get_rule(rule_id)
        if rule is None or not rule.enabled:
            reason = "rule_missing" if rule is None else "rule_disabled"
            self._close_own_log(job, error_code="cancelled", message=f"Notification cancelled ({reason})")
            return self._skip(job, rule_id, reason)

        subject = self._subjects.get_subject(rule.subject_id)
        if subject is None:
            self._close_own_log(job, error_code="cancelled", message=SUBJECT_REMOVED_MESSAGE)
            return self._skip(job, rule_id, "subject_missing")

        owner = self._subjects.get_owner(rule.owner_id)
        if owner is not None and not owner.channel_enabled(rule.channel):
            self._close_own_log(job, error_code="channel_disabled", message=f"{rule.channel} disabled by owner")
            return self._skip(job, rule_id, "channel_disabled")

        window_start = now - self._dedup_window
        already_sent = self._delivery_log.latest_for_rule(rule.id, statuses={STATUS_SENT}, since=window_start)
        if already_sent is not None:
            return self._skip(job, rule_id, "already_sent", delivery_log_id=already_sent.id)

        log = self._delivery_log.find_by_job(job.job_id)
        if log is not None and log.status != STATUS_PENDING:
            return self._skip(job, rule_id, "delivery_closed", delivery_log_id=log.id)
        if log is None:
            active = self._delivery_log.latest_for_rule(rule.id, statuses={STATUS_PENDING}, since=window_start)
            if active is not None and active.job_id != job.job_id:
                return self._skip(job, rule_id, "in_flight_elsewhere", delivery_log_id=active.id)
            log = self._delivery_log.create_pending(
                rule,
                job_id=job.job_id,
                created_at=now,
                metadata={"idempotency_key": job.unique_key, "trigger_at": job.payload.get("trigger_at")},
            )

        context = DeliveryContext(
            subject_id=subject.id,
            subject_title=subject.title,
            owner_id=rule.owner_id,
            due_at=subject.due_at,
            attempt=job.attempts,
        )
        outcome = self._send(rule, _recipient(rule, owner), context)

        if outcome.succeeded:
            return self._record_success(job, rule, log, outcome, now=now)
        if outcome.status == "transient_failure" and job.attempts < job.max_attempts:
            self._delivery_log.merge_metadata(
                log.id,
                {
                    "attempts": job.attempts,
                    "last_error_code": outcome.error_code,
                    "last_error": outcome.reason,
                },
            )
            logger.warning(
                "delivery attempt failed rule_id=%s job_id=%s attempt=%s error_code=%s",
                rule.id,
                job.job_id,
                job.attempts,
                outcome.error_code,
            )
            return JobOutcome.retry(f"{outcome.error_code}: {outcome.reason}")

        self._delivery_log.mark_failed(log.id, error_code=outcome.error_code, error_message=outcome.reason or "failed")
        self._delivery_log.merge_metadata(log.id, {"attempts": job.attempts})
        logger.error(
            "delivery failed rule_id=%s job_id=%s attempts=%s status=%s error_code=%s",
            rule.id,
            job.job_id,
            job.attempts,
            outcome.status,
            outcome.error_code,
        )
        return JobOutcome.failed(f"{outcome.error_code}: {outcome.reason}")

    def abandon(self, job: JobStatusRecord, *, reason: str) -> None:
        self._close_own_log(job, error_code="attempts_exhausted", message=reason)

    def _send(self, rule: Rule, recipient: str | None, context: DeliveryContext) -> ChannelOutcome:
        try:
            handler = self._channels.resolve(rule.channel)
        except UnknownChannelError as exc:
            return ChannelOutcome.permanent("unknown_channel", str(exc))
        try:
            return handler.send(recipient, context, rule)
        except Exception as exc:
            logger.exception("channel handler raised rule_id=%s channel=%s", rule.id, rule.channel)
            return ChannelOutcome.transient("handler_error", f"{exc.__class__.__name__}: {exc}")

    def _record_success(
        self,
        job: JobStatusRecord,
        rule: Rule,
        log: DeliveryLogRecord,
        outcome: ChannelOutcome,
        *,
        now: datetime,
    ) -> JobOutcome:
        metadata: dict[str, object] = {"attempts": job.attempts, **outcome.metadata}
        if outcome.provider_message_id:
            metadata["provider_message_id"] = outcome.provider_message_id
        if not self._delivery_log.mark_sent(log.id, sent_at=now, metadata=metadata):
            # Cancelled while the send was in progress; last_sent_at stays as it was.
            logger.warning("delivery log closed before send completed log_id=%s job_id=%s", log.id, job.job_id)
            return JobOutcome.completed(outcome="delivery_closed", delivery_log_id=log.id)
        self._rules.record_sent(rule.id, now)
        logger.info(
            "delivery sent rule_id=%s job_id=%s channel=%s recipient=%s attempt=%s",
            rule.id,
            job.job_id,
            rule.channel,
            outcome.metadata.get("recipient", "***"),
            job.attempts,
        )
        return JobOutcome.completed(outcome="sent", delivery_log_id=log.id)

    def _close_own_log(self, job: JobStatusRecord, *, error_code: str, message: str) -> None:
        log = self._delivery_log.find_by_job(job.job_id)
        if log is not None and log.status == STATUS_PENDING:
            self._delivery_log.mark_failed(log.id, error_code=error_code, error_message=message)

    def _skip(self, job: JobStatusRecord, rule_id: int, reason: str, **extra: object) -> JobOutcome:
        logger.debug("delivery skipped rule_id=%s job_id=%s reason=%s", rule_id, job.job_id, reason)
        return JobOutcome.completed(outcome="noop", reason=reason, **extra)
