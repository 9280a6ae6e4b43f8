# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application built from
:func:`broadcast_engine.config_loader.load_settings`.

Usage:
    uvicorn broadcast_engine.server:app --host 0.0.0.0 --port 8000

Environment variables:
    WAB_CONFIG: Path to the INI configuration file (default: config.ini)
    WAB_DB_PATH: Path to SQLite database (default: /data/broadcast_engine.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import EngineSettings, load_settings
from .core import BroadcastEngine


def build_app(settings: EngineSettings, engine: BroadcastEngine | None = None) -> FastAPI:
    """Create the engine and an application whose lifespan starts and stops it."""
    engine = engine or BroadcastEngine(**settings.engine_kwargs())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the engine."""
        await engine.start()
        yield
        await engine.stop()

    return create_app(engine, api_token=settings.api_token, lifespan=lifespan)


app = build_app(load_settings())
