# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Chunked, tenant-scoped table reads.

A read is a sequence of LIMIT/OFFSET pages over a ScopedQuery. Pages are
produced in increasing offset order and the sequence ends at the first
page that returns fewer rows than requested, so concatenating the chunks
reproduces the filtered result without gaps or overlaps (given a stable
sort key).
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Mapping, Sequence

import structlog

from datamover.exceptions import ConfigurationError, SafetyViolation
from datamover.query.builder import (
    ScopedQuery,
    build_table_query,
    paginate,
    scope_raw_query,
)
from datamover.query.executor import QueryExecutor, Row, run_query

logger = structlog.get_logger()


@dataclass(frozen=True)
class Chunk:
    """One page of rows."""

    index: int
    offset: int
    rows: List[Row]


class ChunkedTableReader:
    """
    Paginates tenant-scoped queries against a QueryExecutor.

    Example:
        reader = ChunkedTableReader(executor)
        scoped = reader.scope_table("events", tenant_id="acme")
        async for chunk in reader.iter_chunks(scoped, chunk_size=1000, order_by=["timestamp"]):
            ...
    """

    def __init__(
        self,
        executor: QueryExecutor,
        *,
        tenant_column: str = "tenant_id",
        timestamp_column: str = "timestamp",
        query_timeout: float | None = None,
    ):
        self.executor = executor
        self.tenant_column = tenant_column
        self.timestamp_column = timestamp_column
        self.query_timeout = query_timeout

    @classmethod
    def from_config(cls, executor: QueryExecutor, config: Any) -> "ChunkedTableReader":
        return cls(
            executor,
            tenant_column=config.tenant_column,
            timestamp_column=config.timestamp_column,
            query_timeout=config.query_timeout,
        )

    @property
    def dialect(self):
        return self.executor.dialect

    def scope_table(
        self,
        table: str,
        tenant_id: str | None,
        *,
        columns: Sequence[str] | None = None,
        start_time: Any = None,
        end_time: Any = None,
        filters: Mapping[str, Any] | None = None,
        allow_all_tenants: bool = False,
    ) -> ScopedQuery:
        return build_table_query(
            table,
            tenant_id=tenant_id,
            dialect=self.dialect,
            tenant_column=self.tenant_column,
            timestamp_column=self.timestamp_column,
            columns=columns,
            start_time=start_time,
            end_time=end_time,
            filters=filters,
            allow_all_tenants=allow_all_tenants,
        )

    def scope_raw(
        self,
        sql: str,
        params: Sequence[Any] | None,
        tenant_id: str,
    ) -> ScopedQuery:
        return scope_raw_query(
            sql,
            params,
            tenant_id=tenant_id,
            dialect=self.dialect,
            tenant_column=self.tenant_column,
        )

    async def read_chunk(
        self,
        query: ScopedQuery,
        *,
        offset: int,
        limit: int,
        order_by: Sequence[str] = (),
        sort_order: str = "ASC",
        context: Mapping[str, Any] | None = None,
    ) -> List[Row]:
        """
        Read one page.

        Raises:
            SafetyViolation: If the query is neither tenant-scoped nor an
                explicit all-tenants read
            TransientIOError: If the query times out
        """
        if not isinstance(query, ScopedQuery):
            raise SafetyViolation("Only scoped queries may be executed")
        if query.tenant_id is None and not query.all_tenants:
            raise SafetyViolation("Refusing to execute a query without a tenant predicate")

        sql, params = paginate(
            query,
            dialect=self.dialect,
            limit=limit,
            offset=offset,
            order_by=order_by,
            sort_order=sort_order,
        )
        return await run_query(
            self.executor,
            sql,
            params,
            timeout=self.query_timeout,
            context={"offset": offset, **(context or {})},
        )

    async def iter_chunks(
        self,
        query: ScopedQuery,
        *,
        chunk_size: int,
        order_by: Sequence[str] = (),
        sort_order: str = "ASC",
        start_offset: int = 0,
        context: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[Chunk]:
        """
        Yield chunks until a page comes back short.

        Restartable: passing start_offset resumes at that row, and the
        chunk index continues from start_offset // chunk_size.
        """
        if chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be >= 1, got {chunk_size}")

        offset = max(int(start_offset), 0)
        index = offset // chunk_size

        while True:
            rows = await self.read_chunk(
                query,
                offset=offset,
                limit=chunk_size,
                order_by=order_by,
                sort_order=sort_order,
                context={"chunk_index": index, **(context or {})},
            )
            if not rows:
                return

            yield Chunk(index=index, offset=offset, rows=rows)

            if len(rows) < chunk_size:
                return
            offset += len(rows)
            index += 1
