from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

import aiosqlite

from ..errors import PersistenceError

T = TypeVar("T")
log = logging.getLogger("warden.base_service")


class BaseService(ABC, Generic[T]):
    """Base class for all SQLite-backed services."""

    def __init__(self, sqlite_path: str) -> None:
        self._path = sqlite_path
        self._logger = logging.getLogger(f"warden.{self.__class__.__name__.lower()}")

    async def init(self) -> None:
        """Initialize the database schema."""
        try:
            async with aiosqlite.connect(self._path) as db:
                await self._create_tables(db)
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"{self.__class__.__name__} schema setup failed: {e}") from e

    @abstractmethod
    async def _create_tables(self, db: aiosqlite.Connection) -> None:
        """Create the necessary database tables."""
        pass

    @abstractmethod
    def _from_row(self, row: aiosqlite.Row) -> T:
        """Convert a database row to the service's data type."""
        pass

    @property
    @abstractmethod
    def _get_query(self) -> str:
        """SQL query for getting data by key."""
        pass

    async def get(self, key: int) -> Optional[T]:
        return await self._fetch_one(self._get_query, (key,))

    async def _fetch_one(self, query: str, params: tuple[Any, ...]) -> Optional[T]:
        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(query, params) as cur:
                    row = await cur.fetchone()
        except aiosqlite.Error as e:
            self._logger.error("Query failed: %s", e)
            raise PersistenceError(str(e)) from e
        return self._from_row(row) if row is not None else None

    async def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[T]:
        try:
            async with aiosqlite.connect(self._path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(query, params) as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as e:
            self._logger.error("Query failed: %s", e)
            raise PersistenceError(str(e)) from e
        return [self._from_row(r) for r in rows]
