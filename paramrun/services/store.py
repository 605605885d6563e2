"""Generic row store used to persist parameterized runs.

The engine only needs three operations on named tables: ``insert``,
``update`` by id, and ``select`` with equality filters. Adapters raise
PersistenceError for every store failure.
"""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

from paramrun.errors import PersistenceError

logger = structlog.get_logger()

PARAMETERIZED_TESTS = "parameterized_tests"
PARAMETER_SETS = "parameter_sets"
PARAMETERIZED_RESULTS = "parameterized_results"
ITERATION_RESULTS = "iteration_results"


class RowStore(ABC):
    """Minimal table-oriented store."""

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a row and return it as stored."""

    @abstractmethod
    async def update(self, table: str, row_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Apply ``patch`` to the row with ``row_id`` and return the updated row."""

    @abstractmethod
    async def select(
        self, table: str, filters: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Return rows whose columns equal every value in ``filters``."""

    async def close(self) -> None:
        return None


class InMemoryRowStore(RowStore):
    """Row store kept in process memory.

    Rows are deep-copied on the way in and out so callers can never mutate
    stored state. Used by tests and for local runs without a database.
    """

    def __init__(self, tables: Optional[dict[str, list[dict[str, Any]]]] = None):
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        for table, rows in (tables or {}).items():
            for row in rows:
                row = copy.deepcopy(row)
                row.setdefault("id", str(uuid.uuid4()))
                self._tables.setdefault(table, {})[row["id"]] = row

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            rows = self._tables.setdefault(table, {})
            if stored["id"] in rows:
                raise PersistenceError(f"Duplicate id {stored['id']} in {table}", table=table)
            rows[stored["id"]] = stored
            return copy.deepcopy(stored)

    async def update(self, table: str, row_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            row = self._tables.get(table, {}).get(row_id)
            if row is None:
                raise PersistenceError(f"No row {row_id} in {table}", table=table)
            row.update(copy.deepcopy(patch))
            return copy.deepcopy(row)

    async def select(
        self, table: str, filters: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        async with self._lock:
            rows = self._tables.get(table, {}).values()
            return [
                copy.deepcopy(row)
                for row in rows
                if all(row.get(key) == value for key, value in (filters or {}).items())
            ]

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Snapshot of a table, in insertion order."""
        return [copy.deepcopy(row) for row in self._tables.get(table, {}).values()]
