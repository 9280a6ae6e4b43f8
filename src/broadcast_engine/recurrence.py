# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Next-occurrence arithmetic for recurring broadcasts.

Both functions are pure: the only time input is the timestamp passed in,
so identical arguments always produce identical results.

Weekday selectors use 0=Sunday ... 6=Saturday and are evaluated in UTC.

Example:
    Advancing a Mon/Wed/Fri rule from a Wednesday::

        rule = RecurrenceRule(recurrence_type="weekly", days=[1, 3, 5])
        candidate = next_occurrence(rule, wednesday_9am)   # Friday 9am
        if should_continue(rule, candidate, executions_count=4):
            ...
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from .models import RecurrenceRule, RecurrenceType, ensure_utc

DAYS_PER_WEEK = 7


def sunday_based_weekday(value: datetime) -> int:
    """Return the weekday of ``value`` with 0=Sunday ... 6=Saturday."""
    return (value.weekday() + 1) % DAYS_PER_WEEK


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _next_weekly(current: datetime, days: list[int], interval: int) -> datetime:
    today = sunday_based_weekday(current)
    selectors = sorted(set(days))
    later = [d for d in selectors if d > today]
    if later:
        return current + timedelta(days=later[0] - today)
    until_next_week = DAYS_PER_WEEK - today + selectors[0]
    return current + timedelta(days=until_next_week + DAYS_PER_WEEK * (interval - 1))


def next_occurrence(rule: RecurrenceRule, current: datetime) -> datetime:
    """Compute the candidate due time following ``current``.

    Args:
        rule: Recurrence settings of the job.
        current: The job's present ``next_run_at``.

    Returns:
        The next due time. Time of day is preserved; the result is always
        strictly later than ``current``.
    """
    current = ensure_utc(current)
    interval = max(1, int(rule.interval or 1))
    kind = rule.recurrence_type

    match kind:
        case RecurrenceType.DAILY.value | RecurrenceType.CUSTOM.value:
            return current + timedelta(days=interval)
        case RecurrenceType.WEEKLY.value:
            if rule.days:
                return _next_weekly(current, rule.days, interval)
            return current + timedelta(days=DAYS_PER_WEEK * interval)
        case RecurrenceType.MONTHLY.value:
            return add_months(current, interval)
        case _:
            return current + timedelta(days=1)


def should_continue(rule: RecurrenceRule, candidate: datetime, executions_count: int) -> bool:
    """Decide whether a recurrence should be scheduled at ``candidate``.

    Args:
        rule: Recurrence settings of the job.
        candidate: Value returned by :func:`next_occurrence`.
        executions_count: Executions recorded before the current one.

    Returns:
        False when the candidate falls after the end timestamp or the
        current execution reaches the maximum occurrence count.
    """
    if rule.end_at is not None and ensure_utc(candidate) > ensure_utc(rule.end_at):
        return False
    if rule.count is not None and rule.count > 0:
        if executions_count + 1 >= rule.count:
            return False
    return True


__all__ = ["add_months", "next_occurrence", "should_continue", "sunday_based_weekday"]
