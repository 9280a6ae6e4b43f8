# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Inter-send delays used to avoid burst patterns on the gateway.

A delay is applied between consecutive sends of one execution, never before
the first. Every gap draws a fresh value; nothing is carried between calls.
"""

from __future__ import annotations

import random

from .models import PacingPolicy

DEFAULT_SEND_DELAY_MS = 350

PACING_RANGES_MS: dict[str, tuple[int, int]] = {
    PacingPolicy.RANGE_5_10.value: (5_000, 10_000),
    PacingPolicy.RANGE_10_20.value: (10_000, 20_000),
}


def pacing_delay_ms(policy: str | PacingPolicy | None, rng: random.Random | None = None) -> int:
    """Return the wait in milliseconds before the next send.

    Args:
        policy: ``none``, ``5-10`` or ``10-20``. Missing or unknown values use
            the fixed default delay.
        rng: Optional random source, mainly for tests.

    Returns:
        ``DEFAULT_SEND_DELAY_MS`` for ``none``, otherwise a uniformly
        distributed integer within the policy bounds (inclusive).
    """
    key = policy.value if isinstance(policy, PacingPolicy) else policy
    bounds = PACING_RANGES_MS.get(key or PacingPolicy.NONE.value)
    if bounds is None:
        return DEFAULT_SEND_DELAY_MS
    low, high = bounds
    return (rng or random).randint(low, high)


__all__ = ["DEFAULT_SEND_DELAY_MS", "PACING_RANGES_MS", "pacing_delay_ms"]
