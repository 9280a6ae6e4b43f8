import pytest

from broadcast_engine.gateway import DeliveryOutcome
from broadcast_engine.ledger import (
    ExecutionLedger,
    UNKNOWN_ERROR,
    aggregate_status,
    crash_summary,
    summarize_outcomes,
)
from broadcast_engine.models import ExecutionStatus
from broadcast_engine.persistence import Persistence


def test_aggregate_status():
    assert aggregate_status(3, 0) is ExecutionStatus.SUCCESS
    assert aggregate_status(0, 2) is ExecutionStatus.FAILED
    assert aggregate_status(1, 1) is ExecutionStatus.PARTIAL


def test_three_recipients_one_failure_is_partial():
    outcomes = [
        DeliveryOutcome("a", True),
        DeliveryOutcome("b", False, "number not on WhatsApp"),
        DeliveryOutcome("c", True),
    ]
    summary = summarize_outcomes(outcomes, 3)
    assert summary.status is ExecutionStatus.PARTIAL
    assert (summary.recipients_total, summary.recipients_success, summary.recipients_failed) == (3, 2, 1)
    assert summary.error_message == "number not on WhatsApp"
    assert summary.total_failure is False


def test_error_message_is_last_failure_in_order():
    outcomes = [
        DeliveryOutcome("a", False, "first"),
        DeliveryOutcome("b", False, None),
        DeliveryOutcome("c", False, "last"),
    ]
    summary = summarize_outcomes(outcomes, 3)
    assert summary.status is ExecutionStatus.FAILED
    assert summary.error_message == "last"
    assert summary.total_failure is True


def test_failure_without_detail_uses_unknown_error():
    summary = summarize_outcomes([DeliveryOutcome("a", False)], 1)
    assert summary.error_message == UNKNOWN_ERROR


def test_all_success_has_no_error():
    summary = summarize_outcomes([DeliveryOutcome("a", True)], 1)
    assert summary.status is ExecutionStatus.SUCCESS
    assert summary.error_message is None


def test_crash_summary_counts_every_recipient_as_failed():
    summary = crash_summary(4, "boom")
    assert summary.status is ExecutionStatus.FAILED
    assert (summary.recipients_success, summary.recipients_failed) == (0, 4)
    assert summary.error_message == "boom"


@pytest.mark.asyncio
async def test_ledger_records_and_lists_history(tmp_path):
    persistence = Persistence(str(tmp_path / "ledger.db"))
    await persistence.init_db()
    ledger = ExecutionLedger(persistence)

    first = await ledger.record("job-1", summarize_outcomes([DeliveryOutcome("a", True)], 1))
    second = await ledger.record(
        "job-1",
        summarize_outcomes([DeliveryOutcome("a", True), DeliveryOutcome("b", False, "blocked")], 2),
    )
    await ledger.record("job-2", crash_summary(1, "boom"))

    assert first.id is not None and second.id is not None
    history = await ledger.history("job-1")
    assert [entry.id for entry in history] == [second.id, first.id]
    assert history[0].status is ExecutionStatus.PARTIAL
    assert history[0].response_data == [
        {"destination": "a", "success": True},
        {"destination": "b", "success": False, "error": "blocked"},
    ]
    assert history[0].executed_at is not None

    other = await ledger.history("job-2")
    assert len(other) == 1
    assert other[0].response_data is None
    assert other[0].recipients_failed == 1
