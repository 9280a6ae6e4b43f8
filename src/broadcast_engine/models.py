# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the scheduled broadcast engine.

This module defines the data models used throughout the application for
validation, serialization, and type safety.

Models:
    - InstanceCreate: Channel credential bound to one WhatsApp account
    - RecurrenceRule: Recurrence settings of a scheduled job
    - ScheduledJobCreate: Payload accepted when scheduling a broadcast
    - ScheduledJob: Stored job including runtime state
    - ExecutionLogEntry: Immutable record of one execution pass
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageType(str, Enum):
    """Payload kinds understood by the gateway.

    Attributes:
        TEXT: Plain text message.
        IMAGE: Image with optional caption.
        VIDEO: Video with optional caption.
        AUDIO: Audio file.
        PTT: Voice note ("push to talk").
        DOCUMENT: Generic document with optional filename.
    """

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    PTT = "ptt"
    DOCUMENT = "document"


class PacingPolicy(str, Enum):
    """Anti-throttling policy applied between consecutive sends."""

    NONE = "none"
    RANGE_5_10 = "5-10"
    RANGE_10_20 = "10-20"


class RecurrenceType(str, Enum):
    """Supported recurrence kinds."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class JobStatus(str, Enum):
    """Lifecycle of a scheduled job.

    ``pending -> processing -> completed | failed``; recurring jobs return to
    ``pending``. ``paused`` and ``cancelled`` are set by operators only.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class ExecutionStatus(str, Enum):
    """Aggregate outcome of one execution pass."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch(value: datetime | None) -> int | None:
    """Convert a datetime to integer UTC epoch seconds (storage format)."""
    if value is None:
        return None
    return int(ensure_utc(value).timestamp())


def from_epoch(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), timezone.utc)


def normalise_weekdays(v: list[int] | None) -> list[int] | None:
    """Validate weekday selectors (0=Sunday ... 6=Saturday), sorted and unique."""
    if v is None:
        return None
    for day in v:
        if not 0 <= int(day) <= 6:
            raise ValueError("weekday selectors must be between 0 (Sunday) and 6 (Saturday)")
    return sorted({int(d) for d in v})


def format_iso(value: datetime) -> str:
    """Return an ISO-8601 UTC timestamp with a ``Z`` suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


class Recipient(BaseModel):
    """One entry of an explicit per-recipient list."""

    model_config = ConfigDict(extra="ignore")

    jid: Annotated[str, Field(min_length=1, description="WhatsApp address of the recipient")]


class InstanceCreate(BaseModel):
    """Channel credential registration payload.

    Attributes:
        id: Instance identifier referenced by jobs.
        name: Human-readable label.
        token: Gateway token bound to one WhatsApp account.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[
        str,
        Field(min_length=1, max_length=64, description="Unique instance identifier"),
    ]
    name: Annotated[str | None, Field(default=None, max_length=255)]
    token: Annotated[str, Field(min_length=1, description="Gateway token")]


class RecurrenceRule(BaseModel):
    """Recurrence settings of a job.

    Attributes:
        recurrence_type: daily, weekly, monthly or custom.
        interval: Multiplier applied to the base period (>= 1).
        days: Weekday selectors for weekly rules (0=Sunday ... 6=Saturday).
        end_at: Last instant at which an occurrence may be scheduled.
        count: Maximum number of executions.
    """

    model_config = ConfigDict(extra="forbid")

    recurrence_type: str | None = None
    interval: Annotated[int, Field(default=1, ge=1)]
    days: list[int] | None = None
    end_at: datetime | None = None
    count: int | None = None

    @field_validator("days")
    @classmethod
    def days_in_week(cls, v: list[int] | None) -> list[int] | None:
        return normalise_weekdays(v)

    @field_validator("end_at")
    @classmethod
    def end_at_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)


class ScheduledJobCreate(BaseModel):
    """Payload for scheduling a broadcast.

    ``next_run_at`` defaults to ``scheduled_at``. When ``exclude_admins`` is
    true and ``recipients`` is non-empty the list is used instead of
    ``group_jid``.
    """

    model_config = ConfigDict(extra="forbid")

    id: Annotated[str | None, Field(default=None, max_length=64)]
    user_id: str | None = None
    instance_id: Annotated[str, Field(min_length=1)]
    group_jid: Annotated[str, Field(min_length=1)]
    group_name: str | None = None
    exclude_admins: bool = False
    recipients: list[Recipient] | None = None
    message_type: MessageType = MessageType.TEXT
    content: str | None = None
    media_url: str | None = None
    filename: str | None = None
    scheduled_at: datetime
    next_run_at: datetime | None = None
    random_delay: PacingPolicy = PacingPolicy.NONE
    is_recurring: bool = False
    recurrence_type: RecurrenceType | None = None
    recurrence_interval: Annotated[int, Field(default=1, ge=1)]
    recurrence_days: list[int] | None = None
    recurrence_end_at: datetime | None = None
    recurrence_count: Annotated[int | None, Field(default=None, ge=1)]

    @field_validator("scheduled_at", "next_run_at", "recurrence_end_at")
    @classmethod
    def timestamps_utc(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @field_validator("recurrence_days")
    @classmethod
    def recurrence_days_in_week(cls, v: list[int] | None) -> list[int] | None:
        return normalise_weekdays(v)

    @model_validator(mode="after")
    def check_payload(self) -> ScheduledJobCreate:
        if self.message_type is MessageType.TEXT and not self.content:
            raise ValueError("content is required for text messages")
        if self.message_type is not MessageType.TEXT and not self.media_url:
            raise ValueError(f"media_url is required for {self.message_type.value} messages")
        if self.is_recurring and self.recurrence_type is None:
            raise ValueError("recurrence_type is required for recurring messages")
        if self.next_run_at is None:
            self.next_run_at = self.scheduled_at
        return self


class ScheduledJob(BaseModel):
    """A stored scheduled job, including runtime state.

    ``instance_token`` is populated from the ``instances`` relation when jobs
    are fetched for execution; it is never stored on the job row.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str | None = None
    instance_id: str
    instance_token: str | None = Field(default=None, exclude=True, repr=False)
    group_jid: str
    group_name: str | None = None
    exclude_admins: bool = False
    recipients: list[Recipient] = Field(default_factory=list)
    message_type: str = MessageType.TEXT.value
    content: str | None = None
    media_url: str | None = None
    filename: str | None = None
    scheduled_at: datetime
    next_run_at: datetime
    random_delay: str | None = PacingPolicy.NONE.value
    is_recurring: bool = False
    recurrence_type: str | None = None
    recurrence_interval: int = 1
    recurrence_days: list[int] | None = None
    recurrence_end_at: datetime | None = None
    recurrence_count: int | None = None
    status: JobStatus = JobStatus.PENDING
    executions_count: int = 0
    last_executed_at: datetime | None = None
    last_error: str | None = None
    claimed_at: datetime | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("recipients", mode="before")
    @classmethod
    def null_recipients(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("recurrence_interval", mode="before")
    @classmethod
    def default_interval(cls, v: Any) -> Any:
        return 1 if v is None else v

    @field_validator("executions_count", mode="before")
    @classmethod
    def default_count(cls, v: Any) -> Any:
        return 0 if v is None else v

    @property
    def rule(self) -> RecurrenceRule:
        """Recurrence settings of this job as a standalone rule."""
        return RecurrenceRule(
            recurrence_type=self.recurrence_type,
            interval=max(1, int(self.recurrence_interval or 1)),
            days=self.recurrence_days,
            end_at=self.recurrence_end_at,
            count=self.recurrence_count,
        )


class ExecutionLogEntry(BaseModel):
    """Immutable record of one execution pass over a job."""

    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    scheduled_message_id: str
    status: ExecutionStatus
    recipients_total: int
    recipients_success: int
    recipients_failed: int
    error_message: str | None = None
    response_data: list[dict[str, Any]] | None = None
    executed_at: datetime | None = None


__all__ = [
    "ExecutionLogEntry",
    "ExecutionStatus",
    "InstanceCreate",
    "JobStatus",
    "MessageType",
    "PacingPolicy",
    "Recipient",
    "RecurrenceRule",
    "RecurrenceType",
    "ScheduledJob",
    "ScheduledJobCreate",
    "ensure_utc",
    "normalise_weekdays",
    "format_iso",
    "from_epoch",
    "to_epoch",
]
