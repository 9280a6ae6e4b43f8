# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Destination resolution for a scheduled job."""

from __future__ import annotations

from dataclasses import dataclass

from .models import ScheduledJob


@dataclass(frozen=True)
class RecipientPlan:
    """Ordered destinations of one execution."""

    destinations: tuple[str, ...]
    fan_out: bool

    @property
    def total(self) -> int:
        return len(self.destinations)


def resolve_recipients(job: ScheduledJob) -> RecipientPlan:
    """Project a job onto the destinations it must be sent to.

    The explicit recipient list is authoritative only when fan-out
    (``exclude_admins``) is active and the list is non-empty; otherwise the
    primary ``group_jid`` is the single destination.
    """
    if job.exclude_admins and job.recipients:
        return RecipientPlan(destinations=tuple(r.jid for r in job.recipients), fan_out=True)
    return RecipientPlan(destinations=(job.group_jid,), fan_out=False)


__all__ = ["RecipientPlan", "resolve_recipients"]
