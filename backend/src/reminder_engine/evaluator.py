from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from .db import coerce_utc
from .delivery_log import STATUS_FAILED, DeliveryLogRepository
from .rules import Rule, RuleRepository
from .subjects import OwnerProfile, Subject, SubjectDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueRule:
    rule: Rule
    subject: Subject
    owner: OwnerProfile | None
    trigger_at: datetime


class RuleEvaluator:
    """Selects the rules whose reminder is due at a given instant.

    A rule is due when it is enabled, has not sent within the dedup window,
    its trigger time (subject due time minus offset) has been reached, the
    owner has not disabled its channel, and it has not failed within the window.
    Results are ordered by trigger time, then rule id. Reads only.
    """

    def __init__(
        self,
        *,
        rules: RuleRepository,
        subjects: SubjectDirectory,
        delivery_log: DeliveryLogRepository,
        dedup_window: timedelta,
    ) -> None:
        self._rules = rules
        self._subjects = subjects
        self._delivery_log = delivery_log
        self._dedup_window = dedup_window

    @property
    def dedup_window(self) -> timedelta:
        return self._dedup_window

    def due_rules(self, now: datetime) -> list[DueRule]:
        now = coerce_utc(now)
        candidates = [rule for rule in self._rules.list_enabled_rules() if self._outside_window(rule, now)]
        if not candidates:
            return []

        subjects = self._subjects.get_subjects(sorted({rule.subject_id for rule in candidates}))
        owners = self._subjects.get_owners(sorted({rule.owner_id for rule in candidates}))

        due: list[DueRule] = []
        for rule in candidates:
            subject = subjects.get(rule.subject_id)
            if subject is None or subject.due_at is None:
                continue
            trigger_at = rule.trigger_at(subject.due_at)
            if now < trigger_at:
                continue
            owner = owners.get(rule.owner_id)
            if owner is not None and not owner.channel_enabled(rule.channel):
                logger.debug("rule skipped rule_id=%s reason=channel_disabled channel=%s", rule.id, rule.channel)
                continue
            if self._failed_recently(rule, now):
                logger.debug("rule skipped rule_id=%s reason=failure_cooldown", rule.id)
                continue
            due.append(DueRule(rule=rule, subject=subject, owner=owner, trigger_at=trigger_at))

        due.sort(key=lambda item: (item.trigger_at, item.rule.id))
        return due

    def _outside_window(self, rule: Rule, now: datetime) -> bool:
        if not rule.enabled:
            return False
        return rule.last_sent_at is None or now - rule.last_sent_at > self._dedup_window

    def _failed_recently(self, rule: Rule, now: datetime) -> bool:
        failed = self._delivery_log.latest_for_rule(
            rule.id,
            statuses={STATUS_FAILED},
            since=now - self._dedup_window,
        )
        return failed is not None
