from __future__ import annotations

import asyncio
import itertools
import logging
import re
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import asyncpg

LOGGER = logging.getLogger(__name__)

_SQLITE_PREFIX = "sqlite:///"
_POSTGRES_PREFIXES = ("postgresql://", "postgres://")
_QMARK = re.compile(r"\?")


@dataclass(slots=True)
class DatabaseDsn:
    driver: str
    value: str


def parse_database_dsn(url: str) -> DatabaseDsn:
    if url.startswith(_SQLITE_PREFIX):
        return DatabaseDsn(driver="sqlite", value=url[len(_SQLITE_PREFIX):])
    if url.startswith(_POSTGRES_PREFIXES):
        return DatabaseDsn(driver="postgresql", value=url)
    raise ValueError("Unsupported database URL. Use sqlite:/// or postgresql://")


def to_dollar_params(query: str) -> str:
    """Rewrite ``?`` placeholders into asyncpg's numbered ``$n`` form."""
    counter = itertools.count(1)
    return _QMARK.sub(lambda _: f"${next(counter)}", query)


def _unicode_lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


class Database:
    """Async access to one shared SQLite connection or a PostgreSQL pool.

    Repositories always write ``?`` placeholders. SQLite statements are
    serialized on a single lock and every write commits on its own, so a
    multi-statement sequence is never atomic; callers that need that use a
    single ``UPDATE ... RETURNING`` through :meth:`execute_returning`.
    """

    def __init__(self, url: str, timeout_seconds: int = 30, pool_min_size: int = 2, pool_max_size: int = 10) -> None:
        self._dsn = parse_database_dsn(url)
        self._timeout_seconds = timeout_seconds
        self._pool_size = (pool_min_size, pool_max_size)
        self._sqlite: aiosqlite.Connection | None = None
        self._pg_pool: asyncpg.Pool | None = None
        self._sqlite_lock = asyncio.Lock()

    @property
    def driver(self) -> str:
        return self._dsn.driver

    async def connect(self) -> None:
        if self.driver == "sqlite":
            path = Path(self._dsn.value)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite = await aiosqlite.connect(path, timeout=self._timeout_seconds)
            self._sqlite.row_factory = aiosqlite.Row
            await self._sqlite.executescript("PRAGMA journal_mode = WAL; PRAGMA foreign_keys = ON;")
            # Built-in LOWER only folds ASCII.
            await self._sqlite.create_function("lower", 1, _unicode_lower, deterministic=True)
            LOGGER.info("Connected to SQLite: %s", path)
            return
        min_size, max_size = self._pool_size
        self._pg_pool = await asyncpg.create_pool(
            dsn=self._dsn.value,
            min_size=min_size,
            max_size=max_size,
            timeout=self._timeout_seconds,
        )
        LOGGER.info("Connected to PostgreSQL. pool=%s-%s", min_size, max_size)

    async def close(self) -> None:
        if self._sqlite:
            await self._sqlite.close()
            self._sqlite = None
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None

    @asynccontextmanager
    async def _sqlite_cursor(
        self, query: str, params: Sequence[Any] | None, *, commit: bool
    ) -> AsyncIterator[aiosqlite.Cursor]:
        if self._sqlite is None:
            raise RuntimeError("Database is not connected")
        async with self._sqlite_lock:
            cursor = await self._sqlite.execute(query, tuple(params or ()))
            try:
                yield cursor
            finally:
                await cursor.close()
            if commit:
                await self._sqlite.commit()

    @asynccontextmanager
    async def _pg_connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self._pg_pool is None:
            raise RuntimeError("Database is not connected")
        async with self._pg_pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        """Run a write statement and return the number of affected rows."""
        if self.driver == "sqlite":
            async with self._sqlite_cursor(query, params, commit=True) as cursor:
                affected = cursor.rowcount
            return max(affected, 0)

        async with self._pg_connection() as conn:
            status = await conn.execute(to_dollar_params(query), *(params or ()))
        # asyncpg returns a command tag such as "UPDATE 3".
        tail = status.rsplit(" ", 1)[-1]
        return int(tail) if tail.isdigit() else 0

    async def execute_returning(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        """Run one write statement with a RETURNING clause and commit it."""
        if self.driver == "sqlite":
            async with self._sqlite_cursor(query, params, commit=True) as cursor:
                row = await cursor.fetchone()
            return dict(row) if row is not None else None
        return await self.fetchone(query, params)

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        if self.driver == "sqlite":
            async with self._sqlite_cursor(query, params, commit=False) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._pg_connection() as conn:
                row = await conn.fetchrow(to_dollar_params(query), *(params or ()))
        return dict(row) if row is not None else None

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        if self.driver == "sqlite":
            async with self._sqlite_cursor(query, params, commit=False) as cursor:
                rows = await cursor.fetchall()
        else:
            async with self._pg_connection() as conn:
                rows = await conn.fetch(to_dollar_params(query), *(params or ()))
        return [dict(row) for row in rows]

    async def fetchval(self, query: str, params: Sequence[Any] | None = None, default: Any = None) -> Any:
        row = await self.fetchone(query, params)
        if not row:
            return default
        return next(iter(row.values()))

    async def executescript(self, sql_script: str) -> None:
        if self.driver == "sqlite":
            if self._sqlite is None:
                raise RuntimeError("Database is not connected")
            async with self._sqlite_lock:
                await self._sqlite.executescript(sql_script)
                await self._sqlite.commit()
            return

        async with self._pg_connection() as conn:
            await conn.execute(sql_script)
