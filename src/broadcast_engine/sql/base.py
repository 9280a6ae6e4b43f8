# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Adapter interface used by the job store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class DbAdapter(ABC):
    """Async query interface implemented by each storage backend.

    All queries use :name placeholders.
    """

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def insert(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute an INSERT, return the generated row id."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        ...
