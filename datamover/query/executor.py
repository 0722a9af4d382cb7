# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Query executors.

The engines never talk to a driver directly; they need only
query(sql, params) -> list of row dicts plus the dialect of the engine
behind it. SQLite is reached through aiosqlite, PostgreSQL through an
asyncpg pool.
"""

import asyncio
import json
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence
from uuid import UUID

import aiosqlite
import asyncpg
import structlog

from datamover.exceptions import TransientIOError
from datamover.query.dialect import POSTGRESQL, SQLITE, Dialect

logger = structlog.get_logger()

Row = Dict[str, Any]


class QueryExecutor(Protocol):
    """The query collaborator the readers and restore path depend on."""

    dialect: Dialect

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        ...


def _sqlite_param(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


class SQLiteExecutor:
    """
    Executor backed by a single aiosqlite connection.

    Statements that open a transaction are committed immediately; restore
    batches are therefore durable one INSERT at a time.
    """

    dialect = SQLITE

    def __init__(self, connection: aiosqlite.Connection):
        self._conn = connection
        self._conn.row_factory = aiosqlite.Row

    @classmethod
    async def connect(cls, path: str | Path) -> "SQLiteExecutor":
        connection = await aiosqlite.connect(str(path))
        return cls(connection)

    @property
    def connection(self) -> aiosqlite.Connection:
        return self._conn

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        bound = [_sqlite_param(p) for p in params]
        async with self._conn.execute(sql, bound) as cursor:
            rows = await cursor.fetchall()
        if self._conn.in_transaction:
            await self._conn.commit()
        return [dict(row) for row in rows]

    async def close(self) -> None:
        await self._conn.close()


class PostgresExecutor:
    """Executor backed by an asyncpg connection pool."""

    dialect = POSTGRESQL

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str, **pool_kwargs: Any) -> "PostgresExecutor":
        pool = await asyncpg.create_pool(dsn, **pool_kwargs)
        return cls(pool)

    async def query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        async with self._pool.acquire() as conn:
            records = await conn.fetch(sql, *params)
        return [dict(record) for record in records]

    async def close(self) -> None:
        await self._pool.close()


async def run_query(
    executor: QueryExecutor,
    sql: str,
    params: Sequence[Any],
    *,
    timeout: float | None,
    context: Dict[str, Any] | None = None,
) -> List[Row]:
    """
    Execute one statement under a timeout.

    Raises:
        TransientIOError: If the statement does not finish in time
    """
    try:
        if timeout is None:
            return await executor.query(sql, params)
        return await asyncio.wait_for(executor.query(sql, params), timeout=timeout)
    except asyncio.TimeoutError as e:
        details = {"timeout": timeout, **(context or {})}
        logger.warning("query_timeout", **details)
        raise TransientIOError("Query timed out", details=details) from e
