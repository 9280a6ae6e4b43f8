from datetime import datetime, timedelta, timezone

import pytest

from broadcast_engine.ledger import crash_summary, summarize_outcomes
from broadcast_engine.gateway import DeliveryOutcome
from broadcast_engine.models import JobStatus, ScheduledJob, to_epoch
from broadcast_engine.state import (
    InvalidTransitionError,
    apply_operator_action,
    stale_claim_threshold,
    transition_after_crash,
    transition_after_execution,
)

NOW = datetime(2025, 3, 5, 9, 0, 5, tzinfo=timezone.utc)
DUE = datetime(2025, 3, 5, 9, 0, tzinfo=timezone.utc)


def make_job(**overrides) -> ScheduledJob:
    data = {
        "id": "job-1",
        "instance_id": "inst",
        "group_jid": "1203630@g.us",
        "content": "hello",
        "scheduled_at": DUE,
        "next_run_at": DUE,
        "status": "processing",
    }
    data.update(overrides)
    return ScheduledJob.model_validate(data)


def success():
    return summarize_outcomes([DeliveryOutcome("g", True)], 1)


def failure():
    return summarize_outcomes([DeliveryOutcome("g", False, "down")], 1)


def test_one_shot_success_completes():
    transition = transition_after_execution(make_job(), success(), NOW)
    assert transition.status is JobStatus.COMPLETED
    assert transition.executions_count == 1
    assert transition.last_error is None
    assert transition.next_run_at is None
    row = transition.to_row()
    assert row["status"] == "completed"
    assert row["last_executed_at"] == to_epoch(NOW)
    assert row["claimed_at"] is None
    assert "next_run_at" not in row


def test_one_shot_total_failure_fails():
    transition = transition_after_execution(make_job(), failure(), NOW)
    assert transition.status is JobStatus.FAILED
    assert transition.last_error == "down"


def test_one_shot_partial_success_completes():
    summary = summarize_outcomes([DeliveryOutcome("a", True), DeliveryOutcome("b", False, "x")], 2)
    transition = transition_after_execution(make_job(), summary, NOW)
    assert transition.status is JobStatus.COMPLETED
    assert transition.last_error == "x"


def test_recurring_returns_to_pending_with_later_due_time():
    job = make_job(is_recurring=True, recurrence_type="daily", executions_count=4)
    transition = transition_after_execution(job, success(), NOW)
    assert transition.status is JobStatus.PENDING
    assert transition.next_run_at == DUE + timedelta(days=1)
    assert transition.executions_count == 5
    assert transition.to_row()["next_run_at"] == to_epoch(DUE + timedelta(days=1))


def test_recurring_failure_keeps_recurring():
    job = make_job(is_recurring=True, recurrence_type="weekly", recurrence_days=[1, 3, 5])
    transition = transition_after_execution(job, failure(), NOW)
    assert transition.status is JobStatus.PENDING
    assert transition.next_run_at == datetime(2025, 3, 7, 9, tzinfo=timezone.utc)
    assert transition.last_error == "down"


def test_recurring_past_end_completes():
    job = make_job(
        is_recurring=True,
        recurrence_type="daily",
        recurrence_end_at=DUE + timedelta(hours=12),
    )
    transition = transition_after_execution(job, success(), NOW)
    assert transition.status is JobStatus.COMPLETED
    assert transition.next_run_at is None
    assert transition.executions_count == 1


def test_recurring_count_exhausted_completes():
    job = make_job(is_recurring=True, recurrence_type="daily", recurrence_count=2, executions_count=1)
    transition = transition_after_execution(job, success(), NOW)
    assert transition.status is JobStatus.COMPLETED
    assert transition.executions_count == 2


def test_crash_transition_leaves_execution_count_alone():
    transition = transition_after_crash("boom", NOW)
    row = transition.to_row()
    assert row == {
        "status": "failed",
        "last_executed_at": to_epoch(NOW),
        "last_error": "boom",
        "claimed_at": None,
    }
    assert crash_summary(2, "boom").recipients_failed == 2


@pytest.mark.parametrize(
    "current, action, expected",
    [
        ("pending", "pause", JobStatus.PAUSED),
        ("paused", "resume", JobStatus.PENDING),
        ("pending", "cancel", JobStatus.CANCELLED),
        ("paused", "cancel", JobStatus.CANCELLED),
    ],
)
def test_operator_actions(current, action, expected):
    assert apply_operator_action(current, action) is expected


@pytest.mark.parametrize(
    "current, action",
    [
        ("processing", "pause"),
        ("completed", "cancel"),
        ("pending", "resume"),
        ("cancelled", "resume"),
        ("pending", "delete"),
    ],
)
def test_invalid_operator_actions(current, action):
    with pytest.raises(InvalidTransitionError) as excinfo:
        apply_operator_action(current, action)
    assert excinfo.value.code == "invalid_transition"


def test_stale_claim_threshold():
    assert stale_claim_threshold(NOW, 900) == to_epoch(NOW) - 900
