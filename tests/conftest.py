# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for DataMover tests.

Provides a seeded SQLite database, a recording executor, and test
configuration helpers.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Generator, List, Sequence, Tuple

import pytest
import pytest_asyncio

from datamover.config import MoverConfig
from datamover.query.executor import SQLiteExecutor

# Set test environment variables
os.environ["DATAMOVER_ADMIN_API_KEY"] = "test-api-key-12345"

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)

EVENTS_DDL = """
CREATE TABLE events (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    kind TEXT,
    amount REAL,
    note TEXT
)
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_event(i: int, tenant_id: str) -> dict:
    return {
        "id": i,
        "tenant_id": tenant_id,
        "timestamp": (BASE_TIME + timedelta(seconds=i)).isoformat(),
        "kind": "click" if i % 2 else "view",
        "amount": round(i * 1.5, 2),
        "note": None if i % 5 == 0 else f"note {i}, with comma",
    }


async def seed_events(executor: SQLiteExecutor, counts: Sequence[Tuple[str, int]]) -> List[dict]:
    """Insert events for each (tenant, count); ids and timestamps are unique."""
    await executor.query(EVENTS_DDL)
    rows = []
    next_id = 1
    for tenant_id, count in counts:
        for _ in range(count):
            rows.append(make_event(next_id, tenant_id))
            next_id += 1
    for start in range(0, len(rows), 500):
        batch = rows[start:start + 500]
        await executor.connection.executemany(
            "INSERT INTO events (id, tenant_id, timestamp, kind, amount, note) "
            "VALUES (:id, :tenant_id, :timestamp, :kind, :amount, :note)",
            batch,
        )
    await executor.connection.commit()
    return rows


@pytest_asyncio.fixture
async def sqlite_executor(temp_dir: Path):
    """Executor on an empty SQLite database file."""
    executor = await SQLiteExecutor.connect(temp_dir / "app.db")
    yield executor
    await executor.close()


@pytest_asyncio.fixture
async def seeded_executor(sqlite_executor: SQLiteExecutor):
    """Executor whose events table holds 30 rows for acme and 10 for globex."""
    await seed_events(sqlite_executor, [("acme", 30), ("globex", 10)])
    return sqlite_executor


@pytest.fixture
def test_config(temp_dir: Path) -> MoverConfig:
    """Create a test configuration."""
    return MoverConfig(
        backup_dir=temp_dir / "backups",
        export_dir=temp_dir / "exports",
        chunk_size=10,
        stream_chunk_size=10,
        backup_order_by=("id",),
        query_timeout=5.0,
        backend_timeout=5.0,
    )


class RecordingExecutor:
    """
    Wraps an executor and records every statement.

    An optional delay makes each query yield to the event loop, which lets
    tests observe concurrency.
    """

    def __init__(self, inner: Any, delay: float = 0.0):
        self.inner = inner
        self.dialect = inner.dialect
        self.delay = delay
        self.statements: List[Tuple[str, Tuple[Any, ...]]] = []

    async def query(self, sql: str, params: Sequence[Any] = ()) -> list:
        self.statements.append((sql, tuple(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        return await self.inner.query(sql, params)

    def matching(self, prefix: str) -> List[Tuple[str, Tuple[Any, ...]]]:
        return [s for s in self.statements if s[0].lstrip().upper().startswith(prefix.upper())]
