# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tenant isolation tests for query building and chunked reads.

These tests verify that every statement reaching the database carries the
tenant predicate, whether it was built from a table description or
supplied as raw SQL.
"""

import pytest

from datamover.exceptions import ConfigurationError, SafetyViolation, TransientIOError
from datamover.query import (
    POSTGRESQL,
    SQLITE,
    ChunkedTableReader,
    ScopedQuery,
    build_table_query,
    paginate,
    run_query,
    scope_raw_query,
)

from conftest import RecordingExecutor


# ============================================================================
# Table queries
# ============================================================================

def test_table_query_always_scopes_tenant():
    query = build_table_query("events", tenant_id="acme", dialect=POSTGRESQL)
    assert query.sql == "SELECT * FROM events WHERE tenant_id = $1"
    assert query.params == ("acme",)
    assert query.tenant_id == "acme"
    assert not query.all_tenants


def test_table_query_filters_and_time_range():
    query = build_table_query(
        "events",
        tenant_id="acme",
        dialect=POSTGRESQL,
        columns=["id", "kind"],
        start_time="2024-01-01T00:00:00Z",
        filters={
            "kind": ["click", "view"],
            "amount": {"operator": ">=", "value": 10},
            "note": None,
            "empty": [],
        },
    )
    assert query.sql == (
        "SELECT id, kind FROM events WHERE tenant_id = $1 AND timestamp >= $2 "
        "AND kind IN ($3, $4) AND amount >= $5 AND note IS NULL AND 1 = 0"
    )
    assert query.params[0] == "acme"
    assert query.params[2:] == ("click", "view", 10)


def test_table_query_without_tenant_is_refused():
    with pytest.raises(SafetyViolation):
        build_table_query("events", tenant_id=None, dialect=SQLITE)

    query = build_table_query("events", tenant_id=None, dialect=SQLITE, allow_all_tenants=True)
    assert query.all_tenants
    assert "WHERE" not in query.sql


@pytest.mark.parametrize("tenant_id", ["", "   "])
def test_blank_tenant_never_means_all_tenants(tenant_id):
    with pytest.raises(SafetyViolation):
        build_table_query("events", tenant_id=tenant_id, dialect=SQLITE, allow_all_tenants=True)
    with pytest.raises(SafetyViolation):
        scope_raw_query("SELECT * FROM events", [], tenant_id=tenant_id, dialect=SQLITE)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"table": "events; DROP TABLE users"},
        {"table": "events", "columns": ["id", "name FROM users --"]},
        {"table": "events", "filters": {"1=1 OR tenant_id": "x"}},
        {"table": "events", "filters": {"kind": {"operator": "OR", "value": 1}}},
    ],
)
def test_unsafe_identifiers_and_operators_are_refused(kwargs):
    table = kwargs.pop("table")
    with pytest.raises(SafetyViolation):
        build_table_query(table, tenant_id="acme", dialect=SQLITE, **kwargs)


# ============================================================================
# Raw SQL scoping
# ============================================================================

def test_raw_query_parenthesizes_existing_condition():
    query = scope_raw_query(
        "SELECT * FROM events WHERE kind = ? OR kind = ?",
        ["click", "view"],
        tenant_id="acme",
        dialect=SQLITE,
    )
    assert query.sql == "SELECT * FROM events WHERE tenant_id = ? AND (kind = ? OR kind = ?)"
    assert query.params == ("acme", "click", "view")


def test_raw_query_qmark_tenant_param_follows_earlier_placeholders():
    query = scope_raw_query(
        "SELECT id, ? AS label FROM events WHERE kind = ?",
        ["L", "click"],
        tenant_id="acme",
        dialect=SQLITE,
    )
    assert query.params == ("L", "acme", "click")


def test_raw_query_without_where_inserts_before_order_by():
    query = scope_raw_query(
        "SELECT kind, COUNT(*) AS n FROM events GROUP BY kind ORDER BY n DESC",
        None,
        tenant_id="acme",
        dialect=POSTGRESQL,
    )
    assert query.sql == (
        "SELECT kind, COUNT(*) AS n FROM events WHERE tenant_id = $1 GROUP BY kind ORDER BY n DESC"
    )
    assert query.ordered


def test_raw_query_numeric_placeholder_is_appended():
    query = scope_raw_query(
        "SELECT * FROM events WHERE kind = $1",
        ["click"],
        tenant_id="acme",
        dialect=POSTGRESQL,
    )
    assert query.sql == "SELECT * FROM events WHERE tenant_id = $2 AND (kind = $1)"
    assert query.params == ("click", "acme")


def test_raw_query_ignores_keywords_in_literals_and_subqueries():
    query = scope_raw_query(
        "SELECT * FROM events WHERE note = 'ORDER BY x' AND id IN (SELECT id FROM events WHERE kind = 'a')",
        [],
        tenant_id="acme",
        dialect=SQLITE,
    )
    assert query.sql.startswith("SELECT * FROM events WHERE tenant_id = ? AND (note = 'ORDER BY x'")
    assert not query.ordered


def test_raw_query_trailing_semicolon_is_tolerated():
    query = scope_raw_query("SELECT * FROM events;", [], tenant_id="acme", dialect=SQLITE)
    assert query.sql == "SELECT * FROM events WHERE tenant_id = ?"


@pytest.mark.parametrize(
    "sql",
    [
        "DELETE FROM events",
        "SELECT * FROM events; DROP TABLE events",
        "SELECT * FROM events UNION SELECT * FROM events",
        "UPDATE events SET tenant_id = 'x'",
    ],
)
def test_raw_query_rejects_unsafe_statements(sql):
    with pytest.raises(SafetyViolation):
        scope_raw_query(sql, [], tenant_id="acme", dialect=SQLITE)


def test_raw_query_rejects_own_pagination():
    with pytest.raises(ConfigurationError):
        scope_raw_query("SELECT * FROM events LIMIT 5", [], tenant_id="acme", dialect=SQLITE)


def test_raw_query_requires_tenant():
    with pytest.raises(SafetyViolation):
        scope_raw_query("SELECT * FROM events", [], tenant_id="", dialect=SQLITE)


# ============================================================================
# Pagination
# ============================================================================

def test_paginate_binds_limit_and_offset():
    query = build_table_query("events", tenant_id="acme", dialect=POSTGRESQL)
    sql, params = paginate(query, dialect=POSTGRESQL, limit=10, offset=20, order_by=["id"])
    assert sql == "SELECT * FROM events WHERE tenant_id = $1 ORDER BY id ASC LIMIT $2 OFFSET $3"
    assert params == ("acme", 10, 20)


def test_paginate_keeps_existing_order():
    query = scope_raw_query(
        "SELECT * FROM events ORDER BY id", [], tenant_id="acme", dialect=SQLITE
    )
    sql, _ = paginate(query, dialect=SQLITE, limit=5, order_by=["timestamp"], sort_order="DESC")
    assert sql.count("ORDER BY") == 1


def test_paginate_rejects_bad_sort_order():
    query = build_table_query("events", tenant_id="acme", dialect=SQLITE)
    with pytest.raises(ConfigurationError):
        paginate(query, dialect=SQLITE, limit=5, sort_order="sideways")


# ============================================================================
# Chunked reads
# ============================================================================

@pytest.mark.asyncio
async def test_iter_chunks_reads_only_tenant_rows(seeded_executor):
    reader = ChunkedTableReader(seeded_executor)
    scoped = reader.scope_table("events", "acme")

    chunks = [c async for c in reader.iter_chunks(scoped, chunk_size=12, order_by=["id"])]

    assert [c.index for c in chunks] == [0, 1, 2]
    assert [len(c.rows) for c in chunks] == [12, 12, 6]
    rows = [r for c in chunks for r in c.rows]
    assert {r["tenant_id"] for r in rows} == {"acme"}
    assert [r["id"] for r in rows] == list(range(1, 31))


@pytest.mark.asyncio
async def test_iter_chunks_stops_on_empty_page_at_exact_multiple(seeded_executor):
    recording = RecordingExecutor(seeded_executor)
    reader = ChunkedTableReader(recording)
    scoped = reader.scope_table("events", "globex")

    chunks = [c async for c in reader.iter_chunks(scoped, chunk_size=5, order_by=["id"])]

    assert [len(c.rows) for c in chunks] == [5, 5]
    # The third query returns nothing and ends iteration
    assert len(recording.statements) == 3


@pytest.mark.asyncio
async def test_iter_chunks_resumes_from_offset(seeded_executor):
    reader = ChunkedTableReader(seeded_executor)
    scoped = reader.scope_table("events", "acme")

    chunks = [
        c async for c in reader.iter_chunks(scoped, chunk_size=10, order_by=["id"], start_offset=20)
    ]
    assert [c.index for c in chunks] == [2]
    assert chunks[0].rows[0]["id"] == 21


@pytest.mark.asyncio
async def test_raw_query_cannot_read_other_tenants(seeded_executor):
    reader = ChunkedTableReader(seeded_executor)
    scoped = reader.scope_raw("SELECT * FROM events WHERE 1 = 1 OR tenant_id = 'globex'", [], "acme")

    rows = await reader.read_chunk(scoped, offset=0, limit=100)
    assert len(rows) == 30
    assert {r["tenant_id"] for r in rows} == {"acme"}


@pytest.mark.asyncio
async def test_read_chunk_refuses_unscoped_queries(seeded_executor):
    reader = ChunkedTableReader(seeded_executor)

    with pytest.raises(SafetyViolation):
        await reader.read_chunk("SELECT * FROM events", offset=0, limit=10)

    forged = ScopedQuery(sql="SELECT * FROM events", params=(), tenant_id=None)
    with pytest.raises(SafetyViolation):
        await reader.read_chunk(forged, offset=0, limit=10)


@pytest.mark.asyncio
async def test_query_timeout_is_transient(seeded_executor):
    slow = RecordingExecutor(seeded_executor, delay=0.5)

    with pytest.raises(TransientIOError) as exc_info:
        await run_query(slow, "SELECT 1", [], timeout=0.01, context={"table": "events"})

    assert exc_info.value.details["table"] == "events"
