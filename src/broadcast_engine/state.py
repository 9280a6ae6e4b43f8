# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Job lifecycle transitions.

States::

    pending --claim--> processing --+--> completed
       ^                            +--> failed
       +------- recurring ----------+
    pending <--pause/resume--> paused
    pending | paused --cancel--> cancelled

The functions here only compute the fields to persist; the engine writes
them through :class:`~broadcast_engine.persistence.Persistence`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from .ledger import ExecutionSummary
from .models import JobStatus, ScheduledJob, to_epoch
from .recurrence import next_occurrence, should_continue

DEFAULT_STALE_AFTER_SECONDS = 15 * 60

OPERATOR_ACTIONS: dict[str, tuple[frozenset[JobStatus], JobStatus]] = {
    "pause": (frozenset({JobStatus.PENDING}), JobStatus.PAUSED),
    "resume": (frozenset({JobStatus.PAUSED}), JobStatus.PENDING),
    "cancel": (frozenset({JobStatus.PENDING, JobStatus.PAUSED}), JobStatus.CANCELLED),
}


class InvalidTransitionError(ValueError):
    """Raised when an operator action is not allowed from the current status."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "invalid_transition"


@dataclass
class JobTransition:
    """Fields to write back on a job after an execution pass."""

    status: JobStatus
    last_executed_at: datetime
    last_error: str | None
    executions_count: int | None = None
    next_run_at: datetime | None = None

    def to_row(self) -> dict[str, Any]:
        """Column/value pairs for the ``scheduled_messages`` update."""
        row: dict[str, Any] = {
            "status": self.status.value,
            "last_executed_at": to_epoch(self.last_executed_at),
            "last_error": self.last_error,
            "claimed_at": None,
        }
        if self.executions_count is not None:
            row["executions_count"] = self.executions_count
        if self.next_run_at is not None:
            row["next_run_at"] = to_epoch(self.next_run_at)
        return row


def transition_after_execution(
    job: ScheduledJob, summary: ExecutionSummary, now: datetime
) -> JobTransition:
    """Decide the persisted state of a job once its ledger entry is written.

    Recurring jobs go back to ``pending`` at the next occurrence while the
    recurrence continues, and become ``completed`` once it is exhausted,
    regardless of delivery success. One-shot jobs are ``failed`` only when
    every recipient failed.
    """
    executions = job.executions_count + 1
    if job.is_recurring:
        rule = job.rule
        candidate = next_occurrence(rule, job.next_run_at)
        if should_continue(rule, candidate, job.executions_count):
            return JobTransition(
                status=JobStatus.PENDING,
                last_executed_at=now,
                last_error=summary.error_message,
                executions_count=executions,
                next_run_at=candidate,
            )
        status = JobStatus.COMPLETED
    else:
        status = JobStatus.FAILED if summary.total_failure else JobStatus.COMPLETED
    return JobTransition(
        status=status,
        last_executed_at=now,
        last_error=summary.error_message,
        executions_count=executions,
    )


def transition_after_crash(error: str, now: datetime) -> JobTransition:
    """State forced when an exception escaped the execution of a job."""
    return JobTransition(status=JobStatus.FAILED, last_executed_at=now, last_error=error)


def apply_operator_action(current: JobStatus | str, action: str) -> JobStatus:
    """Return the status reached by ``action`` or raise InvalidTransitionError."""
    try:
        allowed, target = OPERATOR_ACTIONS[action]
    except KeyError:
        raise InvalidTransitionError(f"Unknown action '{action}'") from None
    status = JobStatus(current)
    if status not in allowed:
        raise InvalidTransitionError(f"Cannot {action} a job in status '{status.value}'")
    return target


def stale_claim_threshold(now: datetime, stale_after_seconds: int) -> int:
    """Epoch before which a ``processing`` claim is considered abandoned."""
    return to_epoch(now - timedelta(seconds=max(0, int(stale_after_seconds))))


__all__ = [
    "DEFAULT_STALE_AFTER_SECONDS",
    "InvalidTransitionError",
    "JobTransition",
    "OPERATOR_ACTIONS",
    "apply_operator_action",
    "stale_claim_threshold",
    "transition_after_crash",
    "transition_after_execution",
]
