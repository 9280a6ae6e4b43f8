# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration logic for scheduled broadcast delivery.

This module provides the BroadcastEngine class, the central coordinator of
the service. One invocation of :meth:`BroadcastEngine.run_once`:

- returns abandoned ``processing`` jobs to ``pending``
- fetches pending jobs whose ``next_run_at`` has passed (bounded batch)
- claims each job atomically and skips jobs claimed elsewhere
- sends the payload to every destination, one at a time, with pacing delays,
  refreshing the claim after every send
- appends one execution log entry and then updates the job state, provided
  it is still ``processing``

Jobs and the destinations within a job are processed one at a time.

The engine is normally triggered externally (``POST /commands/process-scheduled``)
but can also drive itself with a background poll loop.

Example:
    Running one pass from a script::

        engine = BroadcastEngine(db_path="/data/broadcast_engine.db")
        await engine.init()
        result = await engine.run_once()
        print(result["processed"], result["timestamp"])
"""

from __future__ import annotations

import asyncio
import math
import random
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from .gateway import DEFAULT_GATEWAY_URL, DeliveryOutcome, GatewayClient
from .ledger import ExecutionLedger, ExecutionSummary, crash_summary, summarize_outcomes
from .logger import get_logger
from .models import (
    ExecutionStatus,
    InstanceCreate,
    JobStatus,
    ScheduledJob,
    ScheduledJobCreate,
    format_iso,
    to_epoch,
)
from .pacing import pacing_delay_ms
from .persistence import Persistence
from .prometheus import BroadcastMetrics
from .recipients import RecipientPlan, resolve_recipients
from .state import (
    DEFAULT_STALE_AFTER_SECONDS,
    OPERATOR_ACTIONS,
    InvalidTransitionError,
    JobTransition,
    apply_operator_action,
    stale_claim_threshold,
    transition_after_crash,
    transition_after_execution,
)

DEFAULT_BATCH_SIZE = 50
DEFAULT_POLL_INTERVAL = 60.0


class MissingCredentialError(RuntimeError):
    """Raised when a job's instance has no gateway token."""

    def __init__(self, instance_id: str | None):
        super().__init__(f"No gateway token configured for instance '{instance_id}'")
        self.code = "missing_credential"


class StoreUnavailableError(RuntimeError):
    """Raised when the job store cannot be read at the start of a pass."""

    def __init__(self, message: str = "Job store unavailable"):
        super().__init__(message)
        self.code = "store_unavailable"


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"Scheduled message '{job_id}' not found")
        self.code = "job_not_found"


class BroadcastEngine:
    """Executes due scheduled broadcasts against the WhatsApp gateway.

    Attributes:
        logger: Logger instance for diagnostic output.
        persistence: Job store.
        gateway: Client performing single send attempts.
        ledger: Writer of execution log entries.
        metrics: Prometheus metrics collector.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/broadcast_engine.db",
        logger=None,
        metrics: BroadcastMetrics | None = None,
        gateway: GatewayClient | None = None,
        gateway_url: str = DEFAULT_GATEWAY_URL,
        gateway_timeout: float = 30.0,
        batch_size: int = DEFAULT_BATCH_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        start_active: bool = False,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ):
        """Initialize the engine.

        Args:
            db_path: SQLite database path.
            logger: Custom logger instance. If None, uses default logger.
            metrics: Prometheus metrics collector. If None, creates new instance.
            gateway: Gateway client. If None, one is built from ``gateway_url``
                and ``gateway_timeout``.
            gateway_url: Base URL of the gateway HTTP API.
            gateway_timeout: Timeout in seconds of one send request.
            batch_size: Maximum number of jobs fetched per pass.
            poll_interval: Seconds between passes of the background loop.
            stale_after_seconds: Age after which a ``processing`` claim is
                considered abandoned.
            start_active: Whether the background loop runs passes immediately.
            test_mode: Disable the periodic wakeup of the background loop.
            log_delivery_activity: Log every send outcome at info level.
            sleep: Awaitable used for pacing waits (``asyncio.sleep`` by default).
            clock: Returns the current aware UTC datetime.
            rng: Random source for pacing delays.
        """
        self.logger = logger or get_logger()
        self.persistence = Persistence(db_path or ":memory:")
        self.gateway = gateway or GatewayClient(gateway_url, timeout=gateway_timeout)
        self.ledger = ExecutionLedger(self.persistence)
        self.metrics = metrics or BroadcastMetrics()
        self._batch_size = max(1, int(batch_size))
        self._stale_after_seconds = max(0, int(stale_after_seconds))
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self._rng = rng

        self._stop = asyncio.Event()
        self._active = start_active
        self._poll_interval = math.inf if self._test_mode else max(0.0, float(poll_interval))
        self._wake_event = asyncio.Event()
        self._task_poll: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        """Whether the background poll loop runs passes."""
        return bool(self._active)

    # --------------------------------------------------------------------- utils
    def _utc_now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def init(self) -> None:
        """Initialize the job store schema and the due-jobs gauge."""
        await self.persistence.init_db()
        await self._refresh_due_gauge()

    async def _refresh_due_gauge(self) -> None:
        try:
            count = await self.persistence.count_due_jobs(to_epoch(self._utc_now()))
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh due jobs gauge")
            return
        self.metrics.set_due(count)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``: Wake the background loop for an immediate pass
        - ``suspend``, ``activate``: Toggle the background loop
        - ``processScheduled``: Run one pass and return its result
        - ``addInstance``, ``listInstances``, ``deleteInstance``: Channel credentials
        - ``addJob``, ``listJobs``, ``getJob``: Scheduled messages
        - ``pauseJob``, ``resumeJob``, ``cancelJob``: Operator actions
        - ``listLogs``: Execution history of one job
        - ``reclaimStale``: Return abandoned claims to ``pending``

        Args:
            cmd: Command name to execute.
            payload: Command-specific parameters.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.

        Raises:
            StoreUnavailableError: ``processScheduled`` could not read the store.
        """
        payload = payload or {}
        match cmd:
            case "run now":
                self._wake_event.set()
                return {"ok": True}
            case "suspend":
                self._active = False
                return {"ok": True, "active": False}
            case "activate":
                self._active = True
                self._wake_event.set()
                return {"ok": True, "active": True}
            case "processScheduled":
                result = await self.run_once()
                return {"ok": True, **result}
            case "addInstance":
                try:
                    instance = InstanceCreate.model_validate(payload)
                except ValidationError as exc:
                    return {"ok": False, "error": str(exc), "code": "validation_error"}
                await self.persistence.add_instance(instance.model_dump())
                return {"ok": True, "id": instance.id}
            case "listInstances":
                instances = await self.persistence.list_instances()
                return {"ok": True, "instances": instances}
            case "deleteInstance":
                instance_id = payload.get("id")
                if await self.persistence.delete_instance(instance_id):
                    return {"ok": True}
                return {"ok": False, "error": "instance not found", "code": "instance_not_found"}
            case "addJob":
                try:
                    job = await self.schedule_job(ScheduledJobCreate.model_validate(payload))
                except ValidationError as exc:
                    return {"ok": False, "error": str(exc), "code": "validation_error"}
                return {"ok": True, "id": job.id, "job": job.model_dump(mode="json")}
            case "listJobs":
                jobs = await self.list_jobs(status=payload.get("status"))
                return {"ok": True, "jobs": [job.model_dump(mode="json") for job in jobs]}
            case "getJob":
                job = await self.get_job(payload.get("id"))
                if job is None:
                    return {"ok": False, "error": "job not found", "code": "job_not_found"}
                return {"ok": True, "job": job.model_dump(mode="json")}
            case "pauseJob" | "resumeJob" | "cancelJob":
                action = cmd.removesuffix("Job")
                try:
                    status = await self.apply_action(payload.get("id"), action)
                except (JobNotFoundError, InvalidTransitionError) as exc:
                    return {"ok": False, "error": str(exc), "code": exc.code}
                return {"ok": True, "id": payload.get("id"), "status": status.value}
            case "listLogs":
                job_id = payload.get("id")
                if await self.persistence.get_job(job_id) is None:
                    return {"ok": False, "error": "job not found", "code": "job_not_found"}
                entries = await self.ledger.history(job_id, limit=int(payload.get("limit") or 100))
                return {"ok": True, "logs": [entry.model_dump(mode="json") for entry in entries]}
            case "reclaimStale":
                released = await self.reclaim_stale()
                return {"ok": True, "released": released}
            case _:
                return {"ok": False, "error": "unknown command"}

    async def schedule_job(self, payload: ScheduledJobCreate) -> ScheduledJob:
        """Store a new ``pending`` job and return it."""
        data = payload.model_dump()
        data["id"] = payload.id or uuid.uuid4().hex
        data["status"] = JobStatus.PENDING.value
        await self.persistence.insert_job(data)
        self.logger.info(
            "Scheduled message %s for %s (instance=%s, recurring=%s)",
            data["id"],
            format_iso(payload.next_run_at),
            payload.instance_id,
            payload.is_recurring,
        )
        return await self.get_job(data["id"])

    async def get_job(self, job_id: str | None) -> ScheduledJob | None:
        if not job_id:
            return None
        row = await self.persistence.get_job(job_id)
        return ScheduledJob.model_validate(row) if row else None

    async def list_jobs(self, status: str | None = None) -> list[ScheduledJob]:
        rows = await self.persistence.list_jobs(status=status)
        return [ScheduledJob.model_validate(row) for row in rows]

    async def apply_action(self, job_id: str | None, action: str) -> JobStatus:
        """Pause, resume or cancel a job.

        Raises:
            JobNotFoundError: The job does not exist.
            InvalidTransitionError: The action is not allowed from the job's
                current status, or the status changed while applying it.
        """
        row = await self.persistence.get_job(job_id) if job_id else None
        if row is None:
            raise JobNotFoundError(str(job_id))
        target = apply_operator_action(row["status"], action)
        allowed, _ = OPERATOR_ACTIONS[action]
        changed = await self.persistence.set_status(
            job_id, target.value, expected=[status.value for status in allowed]
        )
        if not changed:
            raise InvalidTransitionError(f"Job '{job_id}' changed status before '{action}' applied")
        self.logger.info("Scheduled message %s: %s -> %s", job_id, row["status"], target.value)
        return target

    async def reclaim_stale(self) -> int:
        """Return jobs stuck in ``processing`` to ``pending``."""
        threshold = stale_claim_threshold(self._utc_now(), self._stale_after_seconds)
        released = await self.persistence.release_stale_jobs(older_than_ts=threshold)
        if released:
            self.logger.warning("Returned %d stale processing job(s) to pending", released)
        return released

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialize the store and spawn the background poll loop."""
        self.logger.debug("Starting BroadcastEngine...")
        await self.init()
        self._stop.clear()
        self._task_poll = asyncio.create_task(self._poll_loop(), name="scheduled-poll-loop")

    async def stop(self) -> None:
        """Stop the background loop, letting a running pass finish."""
        self._stop.set()
        self._wake_event.set()
        if self._task_poll:
            await asyncio.gather(self._task_poll, return_exceptions=True)

    async def _poll_loop(self) -> None:
        self.logger.debug("Scheduled poll loop started")
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                self.logger.info("First iteration in test mode, waiting for wakeup")
                await self._wait_for_wakeup(self._poll_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            if self._active:
                try:
                    await self.run_once()
                except StoreUnavailableError as exc:
                    self.logger.error("Scheduled pass aborted: %s", exc)
                except Exception as exc:  # pragma: no cover
                    self.logger.exception("Unhandled error in scheduled poll loop: %s", exc)
            await self._wait_for_wakeup(self._poll_interval)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the poll loop until timeout or wake event.

        Args:
            timeout: Maximum seconds to wait. None or infinity waits indefinitely.
        """
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------ execution pass
    async def run_once(self) -> dict[str, Any]:
        """Run one scheduler pass.

        Returns:
            dict: ``processed`` (jobs claimed and executed by this pass) and
            ``timestamp`` (ISO-8601 UTC time of the pass).

        Raises:
            StoreUnavailableError: Stale reclaim or the due-job fetch failed;
                no job has been claimed.
        """
        now = self._utc_now()
        now_ts = to_epoch(now)
        try:
            await self.reclaim_stale()
            rows = await self.persistence.fetch_due_jobs(limit=self._batch_size, now_ts=now_ts)
        except Exception as exc:
            self.logger.exception("Failed to fetch due scheduled messages")
            raise StoreUnavailableError(f"Failed to fetch scheduled messages: {exc}") from exc

        self.logger.info("Found %d due scheduled message(s)", len(rows))
        processed = 0
        for row in rows:
            if await self._process_job(row):
                processed += 1

        await self._refresh_due_gauge()
        return {"processed": processed, "timestamp": format_iso(now)}

    async def _process_job(self, row: dict[str, Any]) -> bool:
        """Claim and execute one job. Returns False when the claim was lost."""
        job_id = row["id"]
        try:
            claimed = await self.persistence.claim_job(job_id, now_ts=to_epoch(self._utc_now()))
        except Exception:
            self.logger.exception("Failed to claim scheduled message %s", job_id)
            return False
        if not claimed:
            self.logger.info("Scheduled message %s already claimed, skipping", job_id)
            return False

        self.metrics.inc_processed()
        plan: RecipientPlan | None = None
        summary: ExecutionSummary | None = None
        transition: JobTransition | None = None
        recorded = False
        try:
            job = ScheduledJob.model_validate(row)
            plan = resolve_recipients(job)
            if plan.fan_out:
                self.logger.debug(
                    "Scheduled message %s fans out to %d recipient(s)", job_id, plan.total
                )
            summary = await self._deliver(job, plan)
            executed_at = self._utc_now()
            await self.ledger.record(job.id, summary, executed_at)
            recorded = True
            transition = transition_after_execution(job, summary, executed_at)
            await self._write_transition(job_id, transition.to_row())
        except Exception as exc:
            self.logger.exception("Error processing scheduled message %s", job_id)
            if not recorded:
                await self._record_crash(job_id, plan.total if plan else 1, exc)
                return True
            await self._finish_logged_execution(job_id, summary, transition, exc)
            return True

        self.metrics.inc_execution(summary.status.value)
        self.logger.info(
            "Scheduled message %s processed: %d/%d successful (status=%s)",
            job_id,
            summary.recipients_success,
            summary.recipients_total,
            transition.status.value,
        )
        return True

    async def _write_transition(self, job_id: str, fields: dict[str, Any]) -> None:
        written = await self.persistence.update_job(
            job_id, fields, expected_status=JobStatus.PROCESSING.value
        )
        if not written:
            self.logger.warning(
                "Scheduled message %s left processing during execution; state not updated", job_id
            )

    async def _finish_logged_execution(
        self,
        job_id: str,
        summary: ExecutionSummary,
        transition: JobTransition | None,
        exc: Exception,
    ) -> None:
        """Settle a job whose execution is already in the ledger.

        The state write is retried once with the computed transition, or with
        the crash transition when none could be computed. No second ledger
        entry is written.
        """
        self.metrics.inc_execution(summary.status.value)
        if transition is None:
            transition = transition_after_crash(str(exc) or exc.__class__.__name__, self._utc_now())
        try:
            await self._write_transition(job_id, transition.to_row())
        except Exception:
            self.logger.exception(
                "Failed to update scheduled message %s after logging its execution; it stays claimed",
                job_id,
            )

    async def _deliver(self, job: ScheduledJob, plan: RecipientPlan) -> ExecutionSummary:
        token = job.instance_token
        if not token:
            raise MissingCredentialError(job.instance_id)
        outcomes: list[DeliveryOutcome] = []
        for index, destination in enumerate(plan.destinations):
            if index:
                await self._sleep(pacing_delay_ms(job.random_delay, self._rng) / 1000)
            outcome = await self.gateway.send(token, destination, job)
            outcomes.append(outcome)
            if outcome.success:
                self.metrics.inc_sent(job.instance_id)
            else:
                self.metrics.inc_send_error(job.instance_id)
            self._log_delivery_event(job, outcome)
            await self._refresh_claim(job.id)
        return summarize_outcomes(outcomes, plan.total)

    async def _refresh_claim(self, job_id: str) -> None:
        """Keep the claim of a running job younger than the stale threshold."""
        if not await self.persistence.touch_claim(job_id, now_ts=to_epoch(self._utc_now())):
            self.logger.warning("Scheduled message %s is no longer processing", job_id)

    async def _record_crash(self, job_id: str, recipients_total: int, exc: Exception) -> None:
        error = str(exc) or exc.__class__.__name__
        now = self._utc_now()
        self.metrics.inc_execution(ExecutionStatus.FAILED.value)
        try:
            await self.ledger.record(job_id, crash_summary(recipients_total, error), now)
            await self._write_transition(job_id, transition_after_crash(error, now).to_row())
        except Exception:
            self.logger.exception(
                "Failed to record failure of scheduled message %s; it stays claimed", job_id
            )

    def _log_delivery_event(self, job: ScheduledJob, outcome: DeliveryOutcome) -> None:
        if not self._log_delivery_activity:
            return
        if outcome.success:
            self.logger.info(
                "Delivery succeeded for message %s to %s (instance=%s)",
                job.id,
                outcome.destination,
                job.instance_id,
            )
        else:
            self.logger.warning(
                "Delivery failed for message %s to %s (instance=%s): %s",
                job.id,
                outcome.destination,
                job.instance_id,
                outcome.error,
            )


__all__ = [
    "BroadcastEngine",
    "JobNotFoundError",
    "MissingCredentialError",
    "StoreUnavailableError",
]
