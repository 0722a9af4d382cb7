# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Tenant-scoped query building, execution and chunked reads."""

from datamover.query.builder import (
    ScopedQuery,
    build_table_query,
    paginate,
    scope_raw_query,
)
from datamover.query.dialect import POSTGRESQL, SQLITE, Dialect, describe_tables
from datamover.query.executor import (
    PostgresExecutor,
    QueryExecutor,
    SQLiteExecutor,
    run_query,
)
from datamover.query.reader import Chunk, ChunkedTableReader

__all__ = [
    "Chunk",
    "ChunkedTableReader",
    "Dialect",
    "POSTGRESQL",
    "PostgresExecutor",
    "QueryExecutor",
    "SQLITE",
    "SQLiteExecutor",
    "ScopedQuery",
    "build_table_query",
    "describe_tables",
    "paginate",
    "run_query",
    "scope_raw_query",
]
