# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the broadcast engine.

This module provides a centralized logging helper. The actual logging
setup (level, handlers, format) is configured via ``logging.basicConfig()``
in the entry points (``main.py`` and the CLI) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from broadcast_engine.logger import get_logger

        logger = get_logger("Gateway")
        logger.info("Send completed")
"""

import logging

DEFAULT_LOGGER_NAME = "BroadcastEngine"


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Retrieve a named logger instance.

    This function returns a standard library logger with the specified name.
    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "BroadcastEngine".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for an entry point.

    Args:
        level: Level name such as ``"DEBUG"``. Unknown names fall back to INFO.
    """
    level_name = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
