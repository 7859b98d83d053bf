from __future__ import annotations

from datetime import datetime, timedelta, timezone

from reminder_engine.delivery_log import InMemoryDeliveryLogRepository
from reminder_engine.evaluator import RuleEvaluator
from reminder_engine.rules import InMemoryRuleRepository, Rule
from reminder_engine.subjects import InMemorySubjectDirectory, OwnerProfile, Subject

DUE_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=1)


def _make_evaluator() -> tuple[RuleEvaluator, InMemoryRuleRepository, InMemorySubjectDirectory, InMemoryDeliveryLogRepository]:
    rules = InMemoryRuleRepository()
    subjects = InMemorySubjectDirectory()
    delivery_log = InMemoryDeliveryLogRepository()
    evaluator = RuleEvaluator(rules=rules, subjects=subjects, delivery_log=delivery_log, dedup_window=WINDOW)
    return evaluator, rules, subjects, delivery_log


def _add_rule(
    rules: InMemoryRuleRepository,
    subjects: InMemorySubjectDirectory,
    *,
    subject_id: int = 10,
    owner_id: int = 1,
    due_at: datetime | None = DUE_AT,
    offset_amount: int = 30,
    offset_unit: str = "minutes",
    channel: str = "email",
    enabled: bool = True,
) -> Rule:
    subjects.put_subject(Subject(id=subject_id, owner_id=owner_id, title=f"Task {subject_id}", due_at=due_at))
    return rules.create_rule(
        owner_id=owner_id,
        subject_id=subject_id,
        channel=channel,
        offset_amount=offset_amount,
        offset_unit=offset_unit,
        enabled=enabled,
    )


def _due_ids(evaluator: RuleEvaluator, now: datetime) -> list[int]:
    return [item.rule.id for item in evaluator.due_rules(now)]


def test_rule_becomes_due_exactly_at_offset_before_due_time() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    rule = _add_rule(rules, subjects)

    assert _due_ids(evaluator, DUE_AT - timedelta(minutes=31)) == []
    assert _due_ids(evaluator, DUE_AT - timedelta(minutes=30, seconds=1)) == []
    assert _due_ids(evaluator, DUE_AT - timedelta(minutes=30)) == [rule.id]
    assert _due_ids(evaluator, DUE_AT - timedelta(minutes=29)) == [rule.id]
    assert _due_ids(evaluator, DUE_AT + timedelta(hours=2)) == [rule.id]


def test_offset_units_are_applied() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    hours = _add_rule(rules, subjects, subject_id=10, offset_amount=2, offset_unit="hours")
    days = _add_rule(rules, subjects, subject_id=11, offset_amount=1, offset_unit="days")

    assert _due_ids(evaluator, DUE_AT - timedelta(hours=3)) == [days.id]
    assert _due_ids(evaluator, DUE_AT - timedelta(hours=2)) == [days.id, hours.id]


def test_disabled_rules_are_never_due() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    _add_rule(rules, subjects, enabled=False)

    for minutes in (-60, -30, 0, 30, 600):
        assert _due_ids(evaluator, DUE_AT + timedelta(minutes=minutes)) == []


def test_recent_send_suppresses_rule_until_window_passes() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    rule = _add_rule(rules, subjects)
    now = DUE_AT - timedelta(minutes=10)

    rules.record_sent(rule.id, now - timedelta(minutes=59))
    assert _due_ids(evaluator, now) == []

    rules.record_sent(rule.id, now - timedelta(minutes=60))
    assert _due_ids(evaluator, now) == []

    assert _due_ids(evaluator, now + timedelta(minutes=1, seconds=1)) == [rule.id]


def test_due_rules_are_ordered_by_trigger_time_then_id() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    late = _add_rule(rules, subjects, subject_id=10, offset_amount=5)
    early = _add_rule(rules, subjects, subject_id=11, offset_amount=45)
    tie = _add_rule(rules, subjects, subject_id=12, offset_amount=45)

    due = evaluator.due_rules(DUE_AT)

    assert [item.rule.id for item in due] == [early.id, tie.id, late.id]
    assert due[0].trigger_at == DUE_AT - timedelta(minutes=45)
    assert due[2].trigger_at == DUE_AT - timedelta(minutes=5)


def test_rules_without_subject_or_due_time_are_skipped() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    _add_rule(rules, subjects, subject_id=10, due_at=None)
    orphan = _add_rule(rules, subjects, subject_id=11)
    subjects.remove_subject(orphan.subject_id)

    assert _due_ids(evaluator, DUE_AT) == []


def test_owner_disabled_channel_excludes_rule() -> None:
    evaluator, rules, subjects, _ = _make_evaluator()
    email_rule = _add_rule(rules, subjects, subject_id=10, channel="email")
    sms_rule = _add_rule(rules, subjects, subject_id=11, channel="sms")
    subjects.put_owner(OwnerProfile(owner_id=1, email="owner@example.com", disabled_channels=frozenset({"email"})))

    assert _due_ids(evaluator, DUE_AT) == [sms_rule.id]
    assert email_rule.id not in _due_ids(evaluator, DUE_AT)


def test_recent_failure_puts_rule_in_cooldown() -> None:
    evaluator, rules, subjects, delivery_log = _make_evaluator()
    rule = _add_rule(rules, subjects)
    now = DUE_AT

    failed = delivery_log.create_pending(rule, job_id="job-1", created_at=now - timedelta(minutes=20))
    delivery_log.mark_failed(failed.id, error_code="invalid_recipient", error_message="bad address")

    assert _due_ids(evaluator, now) == []
    assert _due_ids(evaluator, now + timedelta(minutes=41)) == [rule.id]


def test_evaluation_has_no_side_effects() -> None:
    evaluator, rules, subjects, delivery_log = _make_evaluator()
    rule = _add_rule(rules, subjects)

    evaluator.due_rules(DUE_AT)
    evaluator.due_rules(DUE_AT)

    assert rules.get_rule(rule.id) == rule
    assert delivery_log.list_for_rule(rule.id) == []
