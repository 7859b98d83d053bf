from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from reminder_engine import api as api_module
from reminder_engine.errors import StoreUnavailable
from reminder_engine.main import create_app
from reminder_engine.rules import Rule
from reminder_engine.scheduler import TICK_LOCK_KEY
from reminder_engine.subjects import OwnerProfile, Subject

PREFIX = "/api/v1/notifications"
DUE_AT = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW_ISO = "2026-03-01T11:40:00Z"


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _seed_rule(*, email: str = "owner@example.com") -> Rule:
    pipeline = api_module.pipeline
    pipeline.subjects.put_subject(Subject(id=10, owner_id=1, title="Renew insurance", due_at=DUE_AT))
    pipeline.subjects.put_owner(OwnerProfile(owner_id=1, email=email))
    return pipeline.rule_service.create_rule(owner_id=1, subject_id=10, channel="email", offset_amount=30)


def test_trigger_drain_and_history_lifecycle() -> None:
    client = _client()
    rule = _seed_rule()

    trigger_resp = client.post(f"{PREFIX}/trigger", json={"now_override": NOW_ISO})
    assert trigger_resp.status_code == 200
    trigger_data = trigger_resp.json()
    assert trigger_data["status"] == "completed"
    assert trigger_data["dry_run"] is False
    assert trigger_data["due_count"] == 1
    assert trigger_data["enqueued_count"] == 1
    assert trigger_data["duplicate_count"] == 0
    assert trigger_data["rule_ids"] == [rule.id]

    pending_resp = client.get(f"{PREFIX}/jobs", params={"status": "pending"})
    assert pending_resp.status_code == 200
    pending = pending_resp.json()["items"]
    assert len(pending) == 1
    job_id = pending[0]["job_id"]
    assert pending[0]["queue"] == "notifications"
    assert pending[0]["unique_key"] == f"notification-delivery:rule:{rule.id}"

    drain_resp = client.post(f"{PREFIX}/workers/drain", json={"now_override": NOW_ISO})
    assert drain_resp.status_code == 200
    drain_data = drain_resp.json()
    assert drain_data["processed_count"] == 1
    assert drain_data["completed_count"] == 1
    assert drain_data["job_ids"] == [job_id]

    job_resp = client.get(f"{PREFIX}/jobs/{job_id}")
    assert job_resp.status_code == 200
    job_data = job_resp.json()
    assert job_data["status"] == "completed"
    assert job_data["attempts"] == 1
    assert job_data["progress"] == 100
    assert job_data["result"]["outcome"] == "sent"

    owner_resp = client.get(f"{PREFIX}/deliveries", params={"owner_id": 1})
    assert owner_resp.status_code == 200
    owner_items = owner_resp.json()["items"]
    assert len(owner_items) == 1
    assert owner_items[0]["status"] == "sent"
    assert owner_items[0]["channel"] == "email"
    assert owner_items[0]["job_id"] == job_id
    assert owner_items[0]["metadata"]["recipient"] == "o***@example.com"

    rule_resp = client.get(f"{PREFIX}/rules/{rule.id}/deliveries")
    assert rule_resp.status_code == 200
    assert [item["id"] for item in rule_resp.json()["items"]] == [owner_items[0]["id"]]

    stats_resp = client.get(f"{PREFIX}/jobs/stats")
    assert stats_resp.status_code == 200
    assert stats_resp.json()["items"] == [{"queue": "notifications", "status": "completed", "count": 1}]

    repeat_resp = client.post(f"{PREFIX}/trigger", json={"now_override": "2026-03-01T11:45:00Z"})
    assert repeat_resp.status_code == 200
    assert repeat_resp.json()["due_count"] == 0


def test_dry_run_trigger_enqueues_nothing() -> None:
    client = _client()
    _seed_rule()

    resp = client.post(f"{PREFIX}/trigger", json={"dry_run": True, "now_override": NOW_ISO})

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "dry_run"
    assert data["due_count"] == 1
    assert data["enqueued_count"] == 1
    assert client.get(f"{PREFIX}/jobs").json()["items"] == []


def test_trigger_while_tick_lock_held_returns_conflict() -> None:
    client = _client()
    _seed_rule()
    api_module.pipeline.locks.acquire(
        TICK_LOCK_KEY,
        owner="node-b:tick-1",
        ttl_seconds=600,
        now=datetime.now(timezone.utc),
    )

    resp = client.post(f"{PREFIX}/trigger", json={"now_override": NOW_ISO})

    assert resp.status_code == 409
    assert "node-b:tick-1" in resp.json()["detail"]
    assert client.get(f"{PREFIX}/jobs").json()["items"] == []


def test_trigger_returns_503_when_store_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()

    def _unavailable() -> list[Rule]:
        raise StoreUnavailable("list enabled rules failed: OperationalError")

    monkeypatch.setattr(api_module.pipeline.rules, "list_enabled_rules", _unavailable)

    resp = client.post(f"{PREFIX}/trigger", json={"now_override": NOW_ISO})

    assert resp.status_code == 503
    assert "OperationalError" in resp.json()["detail"]
    assert api_module.pipeline.locks.get(TICK_LOCK_KEY) is None


def test_job_lookup_returns_503_when_store_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    client = _client()

    def _unavailable(job_id: str) -> None:
        raise StoreUnavailable("get job status failed: OperationalError")

    monkeypatch.setattr(api_module.pipeline.jobs, "get", _unavailable)

    assert client.get(f"{PREFIX}/jobs/abc").status_code == 503


def test_failed_delivery_is_visible_in_history() -> None:
    client = _client()
    rule = _seed_rule(email="not-an-address")

    client.post(f"{PREFIX}/trigger", json={"now_override": NOW_ISO})
    drain_resp = client.post(f"{PREFIX}/workers/drain", json={"now_override": NOW_ISO, "queue": "notifications"})

    assert drain_resp.json()["failed_count"] == 1
    items = client.get(f"{PREFIX}/rules/{rule.id}/deliveries").json()["items"]
    assert items[0]["status"] == "failed"
    assert items[0]["error_code"] == "invalid_recipient"
    failed_jobs = client.get(f"{PREFIX}/jobs", params={"status": "failed", "queue": "notifications"}).json()["items"]
    assert len(failed_jobs) == 1
    assert "invalid_recipient" in failed_jobs[0]["error_message"]


def test_not_found_and_validation_errors() -> None:
    client = _client()

    assert client.get(f"{PREFIX}/jobs/missing-job").status_code == 404
    assert client.get(f"{PREFIX}/rules/999/deliveries").status_code == 404
    assert client.get(f"{PREFIX}/deliveries").status_code == 422
    assert client.get(f"{PREFIX}/deliveries", params={"owner_id": 1, "limit": 0}).status_code == 422
    assert client.get(f"{PREFIX}/jobs", params={"status": "exploded"}).status_code == 422
    assert client.post(f"{PREFIX}/workers/drain", json={"max_messages": 0}).status_code == 422
    assert client.post(f"{PREFIX}/trigger", json={"now_override": "yesterday-ish"}).status_code == 422


def test_health_reports_runtime_state() -> None:
    client = _client()

    resp = client.get(f"{PREFIX}/health")

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ok",
        "store_backend": "inmemory",
        "scheduler_running": False,
        "workers_running": False,
    }
