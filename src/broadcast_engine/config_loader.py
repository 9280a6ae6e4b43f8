# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the broadcast engine.

Settings are read from an INI file (default: ``config.ini``) with
environment variables as fallbacks.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/broadcast_engine.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [gateway]
        base_url = https://wsmart.uazapi.com
        timeout_seconds = 30

        [scheduler]
        active = true
        batch_size = 50
        poll_interval_seconds = 60
        stale_after_seconds = 900

        [logging]
        delivery_activity = false

Environment variables (all prefixed with WAB_):
    WAB_CONFIG - Path to config.ini file (default: config.ini)
    WAB_LOG_LEVEL - Logging level (default: INFO)
    WAB_DB_PATH, WAB_HOST, WAB_PORT, WAB_API_TOKEN
    WAB_GATEWAY_URL, WAB_GATEWAY_TIMEOUT
    WAB_SCHEDULER_ACTIVE, WAB_BATCH_SIZE, WAB_POLL_INTERVAL, WAB_STALE_AFTER_SECONDS
    WAB_TEST_MODE, WAB_LOG_DELIVERY_ACTIVITY
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .gateway import DEFAULT_GATEWAY_URL
from .logger import get_logger

logger = get_logger("ConfigLoader")


@dataclass
class EngineSettings:
    """Resolved runtime settings.

    Attributes:
        db_path: SQLite database path.
        http_host: Bind address of the HTTP API.
        http_port: Port of the HTTP API.
        api_token: Optional value required in the ``X-API-Token`` header.
        gateway_url: Base URL of the WhatsApp gateway.
        gateway_timeout: Timeout in seconds of one send request.
        batch_size: Maximum jobs fetched per pass.
        poll_interval: Seconds between passes of the background loop.
        scheduler_active: Whether the background loop runs passes.
        stale_after_seconds: Age after which a claim is abandoned.
        test_mode: Disable the periodic wakeup of the background loop.
        log_delivery_activity: Log every send outcome.
        log_level: Root logging level name.
    """

    db_path: str = "/data/broadcast_engine.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_timeout: float = 30.0
    batch_size: int = 50
    poll_interval: float = 60.0
    scheduler_active: bool = False
    stale_after_seconds: int = 900
    test_mode: bool = False
    log_delivery_activity: bool = False
    log_level: str = "INFO"

    def engine_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :class:`~broadcast_engine.core.BroadcastEngine`."""
        return {
            "db_path": self.db_path,
            "gateway_url": self.gateway_url,
            "gateway_timeout": self.gateway_timeout,
            "batch_size": self.batch_size,
            "poll_interval": self.poll_interval,
            "start_active": self.scheduler_active,
            "stale_after_seconds": self.stale_after_seconds,
            "test_mode": self.test_mode,
            "log_delivery_activity": self.log_delivery_activity,
        }


def load_settings(config_path: str | None = None) -> EngineSettings:
    """Load settings from an INI file with ``WAB_*`` environment fallbacks.

    Args:
        config_path: INI file to read. Defaults to ``WAB_CONFIG`` or
            ``config.ini``. A missing file is not an error.

    Returns:
        The resolved :class:`EngineSettings`.

    Raises:
        ValueError: A numeric setting cannot be parsed.
    """
    path = Path(config_path or os.getenv("WAB_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    read = parser.read(path)
    if read:
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None, default: int) -> int:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None, default: float) -> float:
        value = get(section, option, fallback)
        if value is None or not str(value).strip():
            return default
        return float(value)

    def get_bool(section: str, option: str, fallback: str | None, default: bool) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    token = get("server", "api_token", os.getenv("WAB_API_TOKEN"))
    if isinstance(token, str):
        token = token.strip() or None

    return EngineSettings(
        db_path=os.path.expanduser(
            get("storage", "db_path", os.getenv("WAB_DB_PATH", "/data/broadcast_engine.db"))
        ),
        http_host=get("server", "host", os.getenv("WAB_HOST", "0.0.0.0")),
        http_port=get_int("server", "port", os.getenv("WAB_PORT"), 8000),
        api_token=token,
        gateway_url=get("gateway", "base_url", os.getenv("WAB_GATEWAY_URL", DEFAULT_GATEWAY_URL)),
        gateway_timeout=get_float("gateway", "timeout_seconds", os.getenv("WAB_GATEWAY_TIMEOUT"), 30.0),
        batch_size=get_int("scheduler", "batch_size", os.getenv("WAB_BATCH_SIZE"), 50),
        poll_interval=get_float(
            "scheduler", "poll_interval_seconds", os.getenv("WAB_POLL_INTERVAL"), 60.0
        ),
        scheduler_active=get_bool("scheduler", "active", os.getenv("WAB_SCHEDULER_ACTIVE"), False),
        stale_after_seconds=get_int(
            "scheduler", "stale_after_seconds", os.getenv("WAB_STALE_AFTER_SECONDS"), 900
        ),
        test_mode=get_bool("scheduler", "test_mode", os.getenv("WAB_TEST_MODE"), False),
        log_delivery_activity=get_bool(
            "logging", "delivery_activity", os.getenv("WAB_LOG_DELIVERY_ACTIVITY"), False
        ),
        log_level=(get("logging", "level", os.getenv("WAB_LOG_LEVEL", "INFO")) or "INFO").upper(),
    )
