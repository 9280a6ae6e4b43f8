# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backend of the job store adapter."""

from __future__ import annotations

from typing import Any

import aiosqlite

from .base import DbAdapter


class SqliteAdapter(DbAdapter):
    """aiosqlite-backed adapter for the job store.

    Each call opens and closes its own connection, so the poll loop and the
    HTTP handlers never share a connection object.
    """

    def __init__(self, db_path: str):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. ":memory:" gives a fresh database
                on every operation, so tests use temporary files instead.
        """
        self.db_path = db_path or ":memory:"

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute an INSERT, return ``lastrowid``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.lastrowid

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(script)
            await db.commit()
