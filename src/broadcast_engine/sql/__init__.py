# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Minimal async SQL layer with adapter pattern.

Usage:
    adapter = create_adapter("/data/broadcast_engine.db")  # SQLite (path)
    adapter = create_adapter("sqlite:/data/broadcast_engine.db")

    rows = await adapter.fetch_all(
        "SELECT * FROM scheduled_messages WHERE status = :status",
        {"status": "pending"}
    )
"""

from .base import DbAdapter
from .sqlite import SqliteAdapter

__all__ = [
    "DbAdapter",
    "SqliteAdapter",
    "create_adapter",
]


def create_adapter(connection_string: str) -> DbAdapter:
    """Create database adapter from connection string.

    Connection string formats:
        - "sqlite:/path/to/db.sqlite" or just "/path/to/db.sqlite"
        - a relative path, resolved by SQLite against the working directory
        - ":memory:" for a throwaway database (fresh per operation)

    Args:
        connection_string: Database connection string.

    Returns:
        Configured DbAdapter instance.

    Raises:
        ValueError: If the connection string names an unsupported backend.
    """
    if not connection_string:
        raise ValueError("Empty connection string")

    if (
        ":" not in connection_string
        or connection_string.startswith("/")
        or connection_string == ":memory:"
    ):
        return SqliteAdapter(connection_string)

    db_type, connection_info = connection_string.split(":", 1)
    if db_type.lower() == "sqlite":
        return SqliteAdapter(connection_info)

    raise ValueError(
        f"Unknown database type: '{db_type}'. "
        "Supported: sqlite"
    )
