# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed job store for the broadcast engine.

This module provides the Persistence class that handles all database
operations of the engine, including:

- Instance (channel credential) management
- Scheduled job storage, due-job selection and the atomic claim
- Stale ``processing`` reclaim
- The append-only execution log

Every method opens its own connection through the SQL adapter, making the
class safe to share between the poll loop and the HTTP API.

Timestamps are stored as integer UTC epoch seconds; rows are decoded back
to timezone-aware ``datetime`` values so they can be validated directly by
the pydantic models.

Example:
    Basic usage of the persistence layer::

        persistence = Persistence("/data/broadcast_engine.db")
        await persistence.init_db()

        await persistence.add_instance({"id": "main", "name": "Main", "token": "tok"})
        await persistence.insert_job(job.model_dump())

        for row in await persistence.fetch_due_jobs(limit=50, now_ts=now):
            if await persistence.claim_job(row["id"], now_ts=now):
                ...
"""

from __future__ import annotations

import json
import time
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from .models import ExecutionLogEntry, JobStatus, from_epoch, to_epoch
from .sql import create_adapter

SCHEMA = """
CREATE TABLE IF NOT EXISTS instances (
    id TEXT PRIMARY KEY,
    name TEXT,
    token TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS scheduled_messages (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    instance_id TEXT NOT NULL,
    group_jid TEXT NOT NULL,
    group_name TEXT,
    exclude_admins INTEGER DEFAULT 0,
    recipients TEXT,
    message_type TEXT NOT NULL DEFAULT 'text',
    content TEXT,
    media_url TEXT,
    filename TEXT,
    scheduled_at INTEGER NOT NULL,
    next_run_at INTEGER NOT NULL,
    random_delay TEXT DEFAULT 'none',
    is_recurring INTEGER DEFAULT 0,
    recurrence_type TEXT,
    recurrence_interval INTEGER DEFAULT 1,
    recurrence_days TEXT,
    recurrence_end_at INTEGER,
    recurrence_count INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    executions_count INTEGER DEFAULT 0,
    last_executed_at INTEGER,
    last_error TEXT,
    claimed_at INTEGER,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_scheduled_messages_due
    ON scheduled_messages (status, next_run_at);

CREATE TABLE IF NOT EXISTS scheduled_message_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scheduled_message_id TEXT NOT NULL,
    status TEXT NOT NULL,
    recipients_total INTEGER NOT NULL DEFAULT 0,
    recipients_success INTEGER NOT NULL DEFAULT 0,
    recipients_failed INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    response_data TEXT,
    executed_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scheduled_message_logs_job
    ON scheduled_message_logs (scheduled_message_id, executed_at);
"""

JOB_COLUMNS = (
    "id",
    "user_id",
    "instance_id",
    "group_jid",
    "group_name",
    "exclude_admins",
    "recipients",
    "message_type",
    "content",
    "media_url",
    "filename",
    "scheduled_at",
    "next_run_at",
    "random_delay",
    "is_recurring",
    "recurrence_type",
    "recurrence_interval",
    "recurrence_days",
    "recurrence_end_at",
    "recurrence_count",
    "status",
    "executions_count",
    "last_executed_at",
    "last_error",
    "claimed_at",
)

_JSON_FIELDS = ("recipients", "recurrence_days")
_BOOL_FIELDS = ("exclude_admins", "is_recurring")
_TIMESTAMP_FIELDS = (
    "scheduled_at",
    "next_run_at",
    "recurrence_end_at",
    "last_executed_at",
    "claimed_at",
)


def _encode_value(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _JSON_FIELDS:
        return json.dumps(value)
    if column in _BOOL_FIELDS:
        return 1 if value else 0
    if column in _TIMESTAMP_FIELDS and isinstance(value, datetime):
        return to_epoch(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _decode_job_row(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    for column in _JSON_FIELDS:
        raw = data.get(column)
        if isinstance(raw, str):
            data[column] = json.loads(raw) if raw else None
    for column in _BOOL_FIELDS:
        if column in data:
            data[column] = bool(data[column])
    for column in _TIMESTAMP_FIELDS:
        if data.get(column) is not None:
            data[column] = from_epoch(data[column])
    return data


def _decode_log_row(row: dict[str, Any]) -> dict[str, Any]:
    data = dict(row)
    raw = data.get("response_data")
    data["response_data"] = json.loads(raw) if raw else None
    data["executed_at"] = from_epoch(data.get("executed_at"))
    return data


class Persistence:
    """Async SQLite persistence layer for scheduled broadcasts.

    Attributes:
        db_path: Path to the SQLite database file.
        adapter: SQL adapter executing the queries.
    """

    def __init__(self, db_path: str = "/data/broadcast_engine.db"):
        self.db_path = db_path or ":memory:"
        self.adapter = create_adapter(self.db_path)

    async def init_db(self) -> None:
        """Create tables and indexes. Idempotent."""
        await self.adapter.execute_script(SCHEMA)

    # Instances ----------------------------------------------------------------
    async def add_instance(self, instance: dict[str, Any]) -> None:
        """Insert or overwrite a channel credential."""
        await self.adapter.execute(
            """
            INSERT INTO instances (id, name, token) VALUES (:id, :name, :token)
            ON CONFLICT (id) DO UPDATE SET name = excluded.name, token = excluded.token
            """,
            {"id": instance["id"], "name": instance.get("name"), "token": instance["token"]},
        )

    async def get_instance(self, instance_id: str) -> dict[str, Any] | None:
        return await self.adapter.fetch_one(
            "SELECT id, name, token, created_at FROM instances WHERE id = :id",
            {"id": instance_id},
        )

    async def list_instances(self) -> list[dict[str, Any]]:
        """Return instances without their tokens."""
        return await self.adapter.fetch_all(
            "SELECT id, name, created_at FROM instances ORDER BY id"
        )

    async def delete_instance(self, instance_id: str) -> bool:
        """Remove a credential. Jobs referencing it stay and will fail on execution."""
        count = await self.adapter.execute(
            "DELETE FROM instances WHERE id = :id", {"id": instance_id}
        )
        return count > 0

    # Jobs ---------------------------------------------------------------------
    async def insert_job(self, job: dict[str, Any]) -> str:
        """Persist a new job and return its id.

        Args:
            job: Mapping with at least ``id``, ``instance_id``, ``group_jid``,
                ``scheduled_at`` and ``next_run_at``. Unknown keys are ignored.
        """
        row = {column: _encode_value(column, job.get(column)) for column in JOB_COLUMNS}
        row["status"] = row["status"] or JobStatus.PENDING.value
        row["executions_count"] = row["executions_count"] or 0
        row["recurrence_interval"] = row["recurrence_interval"] or 1
        row["exclude_admins"] = row["exclude_admins"] or 0
        row["is_recurring"] = row["is_recurring"] or 0
        columns = ", ".join(JOB_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in JOB_COLUMNS)
        await self.adapter.execute(
            f"INSERT INTO scheduled_messages ({columns}) VALUES ({placeholders})", row
        )
        return row["id"]

    async def get_job(self, job_id: str) -> dict[str, Any] | None:
        row = await self.adapter.fetch_one(
            "SELECT * FROM scheduled_messages WHERE id = :id", {"id": job_id}
        )
        return _decode_job_row(row) if row else None

    async def list_jobs(self, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        """Return jobs ordered by due time, optionally filtered by status."""
        if status:
            rows = await self.adapter.fetch_all(
                """
                SELECT * FROM scheduled_messages WHERE status = :status
                ORDER BY next_run_at ASC, id ASC LIMIT :limit
                """,
                {"status": status, "limit": limit},
            )
        else:
            rows = await self.adapter.fetch_all(
                "SELECT * FROM scheduled_messages ORDER BY next_run_at ASC, id ASC LIMIT :limit",
                {"limit": limit},
            )
        return [_decode_job_row(row) for row in rows]

    async def fetch_due_jobs(self, *, limit: int, now_ts: int) -> list[dict[str, Any]]:
        """Return pending jobs due at ``now_ts`` joined with their instance token."""
        rows = await self.adapter.fetch_all(
            """
            SELECT m.*, i.token AS instance_token
            FROM scheduled_messages m
            LEFT JOIN instances i ON i.id = m.instance_id
            WHERE m.status = :status AND m.next_run_at <= :now_ts
            ORDER BY m.next_run_at ASC, m.id ASC
            LIMIT :limit
            """,
            {"status": JobStatus.PENDING.value, "now_ts": now_ts, "limit": limit},
        )
        return [_decode_job_row(row) for row in rows]

    async def count_due_jobs(self, now_ts: int) -> int:
        row = await self.adapter.fetch_one(
            """
            SELECT COUNT(*) AS due FROM scheduled_messages
            WHERE status = :status AND next_run_at <= :now_ts
            """,
            {"status": JobStatus.PENDING.value, "now_ts": now_ts},
        )
        return int(row["due"]) if row else 0

    async def count_jobs_by_status(self) -> dict[str, int]:
        rows = await self.adapter.fetch_all(
            "SELECT status, COUNT(*) AS total FROM scheduled_messages GROUP BY status"
        )
        return {row["status"]: int(row["total"]) for row in rows}

    async def claim_job(self, job_id: str, *, now_ts: int) -> bool:
        """Move a job from ``pending`` to ``processing`` if nobody else did.

        Returns:
            True when exactly this call performed the transition.
        """
        count = await self.adapter.execute(
            """
            UPDATE scheduled_messages
            SET status = :processing, claimed_at = :now_ts, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status = :pending
            """,
            {
                "id": job_id,
                "now_ts": now_ts,
                "processing": JobStatus.PROCESSING.value,
                "pending": JobStatus.PENDING.value,
            },
        )
        return count == 1

    async def touch_claim(self, job_id: str, *, now_ts: int) -> bool:
        """Refresh ``claimed_at`` of a job still in ``processing``.

        Returns:
            False when the job is no longer ``processing``.
        """
        count = await self.adapter.execute(
            """
            UPDATE scheduled_messages SET claimed_at = :now_ts
            WHERE id = :id AND status = :processing
            """,
            {"id": job_id, "now_ts": now_ts, "processing": JobStatus.PROCESSING.value},
        )
        return count == 1

    async def update_job(
        self, job_id: str, fields: dict[str, Any], *, expected_status: str | None = None
    ) -> bool:
        """Write the given job columns. Unknown columns are rejected.

        Args:
            job_id: Job to update.
            fields: Column/value pairs.
            expected_status: When set, the row is only written while its
                status still equals this value.

        Returns:
            True when a row was written.
        """
        unknown = set(fields) - set(JOB_COLUMNS) - {"id"}
        if unknown:
            raise ValueError(f"Unknown job columns: {', '.join(sorted(unknown))}")
        updates = {k: v for k, v in fields.items() if k != "id"}
        if not updates:
            return False
        set_parts = [f"{column} = :{column}" for column in updates]
        set_parts.append("updated_at = CURRENT_TIMESTAMP")
        params = {column: _encode_value(column, value) for column, value in updates.items()}
        params["id"] = job_id
        where = "id = :id"
        if expected_status is not None:
            params["expected_status"] = expected_status
            where += " AND status = :expected_status"
        count = await self.adapter.execute(
            f"UPDATE scheduled_messages SET {', '.join(set_parts)} WHERE {where}", params
        )
        return count > 0

    async def set_status(self, job_id: str, status: str, *, expected: Iterable[str]) -> bool:
        """Conditionally change a job's status.

        Returns:
            False when the job does not exist or its status is not one of
            ``expected`` at update time.
        """
        expected = list(expected)
        params: dict[str, Any] = {"id": job_id, "status": status}
        names = []
        for index, value in enumerate(expected):
            params[f"expected_{index}"] = value
            names.append(f":expected_{index}")
        count = await self.adapter.execute(
            f"""
            UPDATE scheduled_messages SET status = :status, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND status IN ({", ".join(names)})
            """,
            params,
        )
        return count == 1

    async def release_stale_jobs(self, *, older_than_ts: int) -> int:
        """Return abandoned ``processing`` jobs to ``pending``.

        Returns:
            Number of reclaimed jobs.
        """
        return await self.adapter.execute(
            """
            UPDATE scheduled_messages
            SET status = :pending, claimed_at = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE status = :processing
              AND (claimed_at IS NULL OR claimed_at <= :older_than_ts)
            """,
            {
                "pending": JobStatus.PENDING.value,
                "processing": JobStatus.PROCESSING.value,
                "older_than_ts": older_than_ts,
            },
        )

    # Execution log ------------------------------------------------------------
    async def insert_execution_log(self, entry: ExecutionLogEntry) -> int:
        """Append one execution log row and return its id."""
        executed_at = to_epoch(entry.executed_at) if entry.executed_at else int(time.time())
        return await self.adapter.insert(
            """
            INSERT INTO scheduled_message_logs (
                scheduled_message_id, status, recipients_total, recipients_success,
                recipients_failed, error_message, response_data, executed_at
            ) VALUES (
                :scheduled_message_id, :status, :recipients_total, :recipients_success,
                :recipients_failed, :error_message, :response_data, :executed_at
            )
            """,
            {
                "scheduled_message_id": entry.scheduled_message_id,
                "status": entry.status.value,
                "recipients_total": entry.recipients_total,
                "recipients_success": entry.recipients_success,
                "recipients_failed": entry.recipients_failed,
                "error_message": entry.error_message,
                "response_data": json.dumps(entry.response_data) if entry.response_data else None,
                "executed_at": executed_at,
            },
        )

    async def list_execution_logs(self, job_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        """Return the log rows of a job, newest first."""
        rows = await self.adapter.fetch_all(
            """
            SELECT * FROM scheduled_message_logs
            WHERE scheduled_message_id = :job_id
            ORDER BY executed_at DESC, id DESC
            LIMIT :limit
            """,
            {"job_id": job_id, "limit": limit},
        )
        return [_decode_log_row(row) for row in rows]
