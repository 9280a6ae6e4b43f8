# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Aggregation of per-recipient outcomes into execution log entries.

One execution pass over a job produces exactly one immutable log row. The
row is written before the job's own state is updated so that history always
covers every state change.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from .gateway import DeliveryOutcome
from .models import ExecutionLogEntry, ExecutionStatus
from .persistence import Persistence

UNKNOWN_ERROR = "Unknown error"


@dataclass(frozen=True)
class ExecutionSummary:
    """Counts and status of one execution pass."""

    recipients_total: int
    recipients_success: int
    recipients_failed: int
    status: ExecutionStatus
    error_message: str | None
    outcomes: tuple[DeliveryOutcome, ...] = ()

    @property
    def total_failure(self) -> bool:
        return self.recipients_failed == self.recipients_total


def aggregate_status(success: int, failed: int) -> ExecutionStatus:
    if failed == 0:
        return ExecutionStatus.SUCCESS
    if success == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIAL


def summarize_outcomes(outcomes: Sequence[DeliveryOutcome], recipients_total: int) -> ExecutionSummary:
    """Fold send outcomes into an :class:`ExecutionSummary`.

    Args:
        outcomes: Outcomes in send order.
        recipients_total: Number of destinations planned for the execution.

    Returns:
        Summary whose ``error_message`` is the detail of the last failure
        in iteration order, or None when every send succeeded.
    """
    success = sum(1 for outcome in outcomes if outcome.success)
    failed = recipients_total - success
    last_error: str | None = None
    for outcome in outcomes:
        if not outcome.success:
            last_error = outcome.error or UNKNOWN_ERROR
    return ExecutionSummary(
        recipients_total=recipients_total,
        recipients_success=success,
        recipients_failed=failed,
        status=aggregate_status(success, failed),
        error_message=last_error,
        outcomes=tuple(outcomes),
    )


def crash_summary(recipients_total: int, error: str) -> ExecutionSummary:
    """Summary recorded when an exception escaped the send loop."""
    return ExecutionSummary(
        recipients_total=recipients_total,
        recipients_success=0,
        recipients_failed=recipients_total,
        status=ExecutionStatus.FAILED,
        error_message=error,
    )


class ExecutionLedger:
    """Appends execution summaries to the ``scheduled_message_logs`` table."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence

    async def record(
        self, job_id: str, summary: ExecutionSummary, executed_at: datetime | None = None
    ) -> ExecutionLogEntry:
        """Append one log entry for ``job_id`` and return it."""
        entry = ExecutionLogEntry(
            scheduled_message_id=job_id,
            status=summary.status,
            recipients_total=summary.recipients_total,
            recipients_success=summary.recipients_success,
            recipients_failed=summary.recipients_failed,
            error_message=summary.error_message,
            response_data=[o.as_dict() for o in summary.outcomes] or None,
            executed_at=executed_at or datetime.now(timezone.utc),
        )
        entry.id = await self.persistence.insert_execution_log(entry)
        return entry

    async def history(self, job_id: str, limit: int = 100) -> list[ExecutionLogEntry]:
        """Return the log entries of a job, newest first."""
        rows = await self.persistence.list_execution_logs(job_id, limit=limit)
        return [ExecutionLogEntry.model_validate(row) for row in rows]


__all__ = [
    "ExecutionLedger",
    "ExecutionSummary",
    "aggregate_status",
    "crash_summary",
    "summarize_outcomes",
]
