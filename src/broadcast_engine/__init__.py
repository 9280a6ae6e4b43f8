# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Scheduled broadcast delivery engine for a WhatsApp gateway.

This package executes due one-shot and recurring scheduled messages:

- Recurrence arithmetic (daily, weekly with weekday selectors, monthly, custom)
- Per-recipient fan-out with anti-throttling pacing between sends
- Append-only execution log with success/partial/failed outcomes
- Atomic claim of due jobs and reclaim of abandoned claims
- FastAPI trigger and management endpoints, click CLI, Prometheus metrics

Example:
    Basic usage with the FastAPI application::

        from broadcast_engine.core import BroadcastEngine
        from broadcast_engine.api import create_app

        engine = BroadcastEngine(db_path="/data/broadcast_engine.db")
        app = create_app(engine, api_token="secret")

Authors:
    Softwell S.r.l.
"""

__version__ = "0.1.0"
