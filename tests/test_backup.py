# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup and restore tests.

These tests verify the core backup guarantees:
1. Round trip - a restored table matches what was backed up
2. Bounded concurrency - never more than max_concurrent_backups running
3. Verify before write - a damaged backup leaves the database untouched
4. Retention - only expired backups are removed
"""

import asyncio
import json
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List

import pytest
from ulid import ULID

from datamover.backup import BackupEngine, backup_created_at, sweep_expired_backups
from datamover.config import JobStatus
from datamover.events import EventKind
from datamover.exceptions import (
    BackupError,
    ConfigurationError,
    IntegrityError,
    NotFoundError,
    TransientIOError,
)
from datamover.query import POSTGRESQL
from datamover.query.executor import SQLiteExecutor
from datamover.storage import LocalStorage, StorageBackend, StorageRegistry, build_storage_registry

from conftest import EVENTS_DDL, RecordingExecutor, seed_events


class XorCipher:
    """Reversible stand-in for a real chunk cipher."""

    def encrypt(self, data: bytes) -> bytes:
        return bytes(b ^ 0x5A for b in data)

    def decrypt(self, data: bytes) -> bytes:
        return bytes(b ^ 0x5A for b in data)


async def make_engine(config, executor, **kwargs) -> BackupEngine:
    registry = await build_storage_registry(config)
    return BackupEngine(config, executor, registry, **kwargs)


async def fresh_database(path: Path) -> SQLiteExecutor:
    executor = await SQLiteExecutor.connect(path)
    await executor.query(EVENTS_DDL)
    return executor


async def all_rows(executor, tenant_id=None):
    if tenant_id is None:
        return await executor.query("SELECT * FROM events ORDER BY id")
    return await executor.query("SELECT * FROM events WHERE tenant_id = ? ORDER BY id", [tenant_id])


# ============================================================================
# Round trip
# ============================================================================

@pytest.mark.asyncio
async def test_backup_and_restore_round_trip(sqlite_executor, test_config, temp_dir: Path):
    """2500 rows in chunks of 1000 give three chunk files and restore identically."""
    await seed_events(sqlite_executor, [("acme", 2500), ("globex", 40)])
    config = test_config.with_updates(chunk_size=1000)
    engine = await make_engine(config, sqlite_executor)

    kinds = []
    engine.events.subscribe(lambda event: kinds.append(event.kind))

    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme")
    status = await engine.wait_for_backup(backup_id, timeout=30)

    assert status["status"] == "completed"
    assert status["location"].endswith(f"{backup_id}.tar.gz")
    manifest = status["manifest"]
    assert [f["filename"] for f in manifest["files"]] == [
        "events_chunk_0000.json",
        "events_chunk_0001.json",
        "events_chunk_0002.json",
    ]
    assert [f["recordCount"] for f in manifest["files"]] == [1000, 1000, 500]
    assert manifest["stats"]["totalRecords"] == 2500
    assert manifest["tenantId"] == "acme"
    assert manifest["schemaFile"] == "schema.json"
    assert EventKind.STARTED in kinds and EventKind.COMPLETED in kinds
    assert status["metadata"]["version"]

    target = await fresh_database(temp_dir / "restore.db")
    try:
        restorer = await make_engine(config, target)
        result = await restorer.restore_backup(backup_id)

        assert result["events"] == {"table": "events", "recordsRestored": 2500, "filesProcessed": 3}
        assert await all_rows(target) == await all_rows(sqlite_executor, "acme")
    finally:
        await target.close()

    # The extraction workdir is cleaned up
    assert not any((config.backup_dir / ".restore").glob("*"))


@pytest.mark.asyncio
async def test_csv_backup_restores_typed_values(seeded_executor, test_config, temp_dir: Path):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["events"], tenant_id="globex", format="csv")
    status = await engine.wait_for_backup(backup_id, timeout=30)
    assert status["status"] == "completed"

    target = await fresh_database(temp_dir / "restore.db")
    try:
        await (await make_engine(test_config, target)).restore_backup(backup_id)
        assert await all_rows(target) == await all_rows(seeded_executor, "globex")
    finally:
        await target.close()


@pytest.mark.asyncio
async def test_restore_truncates_each_table_once(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme")
    await engine.wait_for_backup(backup_id, timeout=30)

    recording = RecordingExecutor(seeded_executor)
    restorer = await make_engine(test_config, recording)
    result = await restorer.restore_backup(backup_id)

    deletes = recording.matching("DELETE FROM events")
    inserts = recording.matching("INSERT OR IGNORE INTO events")
    assert len(deletes) == 1
    assert len(inserts) == 3
    assert recording.statements.index(deletes[0]) < recording.statements.index(inserts[0])
    assert result["events"]["recordsRestored"] == 30
    assert len(await all_rows(seeded_executor)) == 30


@pytest.mark.asyncio
async def test_restore_without_truncate_skips_existing_rows(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["events"])
    await engine.wait_for_backup(backup_id, timeout=30)

    result = await engine.restore_backup(backup_id, truncate=False)

    assert result["events"]["recordsRestored"] == 40
    assert len(await all_rows(seeded_executor)) == 40


@pytest.mark.asyncio
async def test_encrypted_backup_round_trip(seeded_executor, test_config, temp_dir: Path):
    engine = await make_engine(test_config, seeded_executor, cipher=XorCipher())
    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme", encryption=True)
    status = await engine.wait_for_backup(backup_id, timeout=30)
    assert status["manifest"]["encrypted"] is True

    target = await fresh_database(temp_dir / "restore.db")
    try:
        without_cipher = await make_engine(test_config, target)
        with pytest.raises(ConfigurationError):
            await without_cipher.restore_backup(backup_id)

        with_cipher = await make_engine(test_config, target, cipher=XorCipher())
        await with_cipher.restore_backup(backup_id)
        assert len(await all_rows(target)) == 30
    finally:
        await target.close()


@pytest.mark.asyncio
async def test_encryption_requires_cipher(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    with pytest.raises(ConfigurationError):
        await engine.create_backup(tables=["events"], tenant_id="acme", encryption=True)


# ============================================================================
# Binary columns
# ============================================================================

ATTACHMENTS_DDL = (
    "CREATE TABLE attachments ("
    "id INTEGER PRIMARY KEY, tenant_id TEXT NOT NULL, name TEXT, body BLOB)"
)


@pytest.mark.asyncio
@pytest.mark.parametrize("fmt", ["json", "csv", "sql"])
async def test_binary_columns_round_trip(sqlite_executor, test_config, temp_dir: Path, fmt):
    """BLOB values travel as base64 text and come back as the same bytes."""
    await sqlite_executor.query(ATTACHMENTS_DDL)
    bodies = [b"\x00\x01\xffraw", bytes(range(256)), None]
    for i, body in enumerate(bodies, start=1):
        await sqlite_executor.query(
            "INSERT INTO attachments (id, tenant_id, name, body) VALUES (?, ?, ?, ?)",
            [i, "acme", f"file{i}", body],
        )

    engine = await make_engine(test_config, sqlite_executor)
    backup_id = await engine.create_backup(tables=["attachments"], tenant_id="acme", format=fmt)
    assert (await engine.wait_for_backup(backup_id, timeout=30))["status"] == "completed"

    target = await SQLiteExecutor.connect(temp_dir / f"restored_{fmt}.db")
    try:
        await target.query(ATTACHMENTS_DDL)
        restorer = await make_engine(test_config, target)
        result = await restorer.restore_backup(backup_id)

        assert result["attachments"]["recordsRestored"] == 3
        restored = await target.query("SELECT id, body FROM attachments ORDER BY id")
        assert [row["body"] for row in restored] == bodies
    finally:
        await target.close()


def test_postgres_restore_batch_sends_bytes_as_bytea_hex():
    _, params = POSTGRESQL.insert_ignore_statement("attachments", [{"id": 1, "body": b"\x00\xff"}])
    assert json.loads(params[0]) == [{"id": 1, "body": "\\x00ff"}]


# ============================================================================
# Restore validation
# ============================================================================

@pytest.mark.asyncio
async def test_restore_verifies_chunks_before_writing(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme", compression=False)
    status = await engine.wait_for_backup(backup_id, timeout=30)

    backup_dir = Path(status["location"])
    (backup_dir / "events_chunk_0001.json").unlink()

    recording = RecordingExecutor(seeded_executor)
    restorer = await make_engine(test_config, recording)
    with pytest.raises(IntegrityError):
        await restorer.restore_backup(backup_id)

    assert recording.statements == []
    assert len(await all_rows(seeded_executor)) == 40


@pytest.mark.asyncio
async def test_restore_rejects_tables_not_in_backup(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme")
    await engine.wait_for_backup(backup_id, timeout=30)

    with pytest.raises(IntegrityError):
        await engine.restore_backup(backup_id, tables=["users"])


@pytest.mark.asyncio
async def test_restore_unknown_backup(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    with pytest.raises(NotFoundError):
        await engine.restore_backup("backup_01HZZZZZZZZZZZZZZZZZZZZZZZ")


@pytest.mark.asyncio
async def test_failed_backup_has_no_manifest(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)
    backup_id = await engine.create_backup(tables=["missing_table"], tenant_id="acme")
    status = await engine.wait_for_backup(backup_id, timeout=30)

    assert status["status"] == "failed"
    assert status["error"]
    with pytest.raises(IntegrityError):
        await engine.restore_backup(backup_id)


# ============================================================================
# Scheduling and cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_concurrency_is_bounded(seeded_executor, test_config):
    slow = RecordingExecutor(seeded_executor, delay=0.01)
    engine = await make_engine(test_config, slow)

    def running_jobs() -> int:
        return sum(1 for job in engine._jobs.values() if job.status is JobStatus.RUNNING)

    observed = []
    engine.events.subscribe(lambda event: observed.append((engine.running_count, running_jobs())))

    ids = [await engine.create_backup(tables=["events"], tenant_id="acme") for _ in range(10)]
    assert engine.running_count == 3
    assert running_jobs() == 3
    assert engine.queued_count == 7

    statuses = await asyncio.gather(*(engine.wait_for_backup(i, timeout=60) for i in ids))

    assert [s["status"] for s in statuses] == ["completed"] * 10
    assert observed
    assert max(counter for counter, _ in observed) <= 3
    assert max(in_map for _, in_map in observed) <= 3
    assert engine.running_count == 0
    assert running_jobs() == 0
    assert engine.queued_count == 0


@pytest.mark.asyncio
async def test_cancel_queued_and_running_jobs(seeded_executor, test_config):
    slow = RecordingExecutor(seeded_executor, delay=0.05)
    config = test_config.with_updates(max_concurrent_backups=1)
    engine = await make_engine(config, slow)

    running = await engine.create_backup(tables=["events"], tenant_id="acme")
    queued = await engine.create_backup(tables=["events"], tenant_id="acme")

    assert await engine.cancel_backup(queued) is True
    assert engine.get_backup_status(queued)["status"] == "cancelled"

    assert await engine.cancel_backup(running) is True
    status = await engine.wait_for_backup(running, timeout=30)
    assert status["status"] == "cancelled"
    assert status["manifest"] is None

    assert await engine.cancel_backup(running) is False
    assert await engine.cancel_backup("backup_unknown") is False


@pytest.mark.asyncio
async def test_running_backup_cannot_be_deleted(seeded_executor, test_config):
    slow = RecordingExecutor(seeded_executor, delay=0.05)
    engine = await make_engine(test_config, slow)

    backup_id = await engine.create_backup(tables=["events"], tenant_id="acme")
    with pytest.raises(BackupError):
        await engine.delete_backup(backup_id)

    await engine.wait_for_backup(backup_id, timeout=30)
    listed = await engine.list_backups()
    assert [b["id"] for b in listed] == [backup_id]
    assert listed[0]["status"] == "completed"

    assert await engine.delete_backup(backup_id) is True
    assert await engine.list_backups() == []
    with pytest.raises(NotFoundError):
        await engine.delete_backup(backup_id)


@pytest.mark.asyncio
async def test_create_backup_validates_request(seeded_executor, test_config):
    engine = await make_engine(test_config, seeded_executor)

    with pytest.raises(ConfigurationError):
        await engine.create_backup(tables=[], tenant_id="acme")
    with pytest.raises(ConfigurationError):
        await engine.create_backup(tables=["events"], backend="s3")
    with pytest.raises(ConfigurationError):
        await engine.create_backup(tables=["events"], format="parquet")


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant_id", ["", "   "])
async def test_blank_tenant_is_rejected_not_widened(seeded_executor, test_config, tenant_id):
    """Only tenant_id=None backs up every tenant."""
    engine = await make_engine(test_config, seeded_executor)

    with pytest.raises(ConfigurationError):
        await engine.create_backup(tables=["events"], tenant_id=tenant_id)

    assert engine.running_count == 0
    assert engine.queued_count == 0
    assert await engine.list_backups() == []


# ============================================================================
# Retention
# ============================================================================

def _backup_id_at(moment: datetime) -> str:
    return f"backup_{ULID.from_datetime(moment)}"


def test_backup_created_at_reads_ulid():
    moment = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    assert backup_created_at(_backup_id_at(moment)) == moment
    assert backup_created_at("manual_copy") is None
    assert backup_created_at("backup_not-a-ulid") is None


@pytest.mark.asyncio
async def test_sweep_removes_only_expired_backups(test_config):
    registry = await build_storage_registry(test_config)
    now = datetime.now(UTC)
    backup_dir = test_config.backup_dir

    expired = _backup_id_at(now - timedelta(days=120))
    running = _backup_id_at(now - timedelta(days=100))
    fresh = _backup_id_at(now - timedelta(days=5))

    (backup_dir / expired).mkdir()
    (backup_dir / expired / "manifest.json").write_text(json.dumps({"id": expired}))
    (backup_dir / f"{running}.tar.gz").write_bytes(b"x")
    (backup_dir / f"{fresh}.tar.gz").write_bytes(b"x")
    (backup_dir / "manual_copy").mkdir()

    deleted_events = []

    async def on_delete(backend, backup_id):
        deleted_events.append((backend, backup_id))

    deleted = await sweep_expired_backups(
        registry,
        test_config.retention_days,
        now=now,
        skip={running},
        on_delete=on_delete,
    )

    assert deleted == {"local": [expired]}
    assert deleted_events == [("local", expired)]
    remaining = sorted(p.name for p in backup_dir.iterdir())
    assert remaining == sorted([f"{running}.tar.gz", f"{fresh}.tar.gz", "manual_copy"])


class UnreachableStorage(StorageBackend):
    """Backend whose listing or deletion fails."""

    def __init__(self, name: str, stored=()):
        self.name = name
        self.stored = list(stored)
        self.delete_attempts: List[str] = []

    async def upload(self, local_path, key):
        raise TransientIOError("upload refused")

    async def download(self, key, destination_dir):
        raise TransientIOError("download refused")

    async def list(self):
        if not self.stored:
            raise TransientIOError("listing timed out")
        return [{"id": backup_id, "backend": self.name} for backup_id in self.stored]

    async def delete(self, backup_id):
        self.delete_attempts.append(backup_id)
        raise TransientIOError("delete refused")


@pytest.mark.asyncio
async def test_sweep_continues_past_failing_backends(test_config):
    now = datetime.now(UTC)
    expired = _backup_id_at(now - timedelta(days=200))
    remote_expired = _backup_id_at(now - timedelta(days=300))

    no_listing = UnreachableStorage("s3")
    no_delete = UnreachableStorage("gcs", stored=[remote_expired])
    local = LocalStorage(test_config.backup_dir)
    await local.initialize()
    (test_config.backup_dir / f"{expired}.tar.gz").write_bytes(b"x")

    registry = StorageRegistry({"s3": no_listing, "gcs": no_delete, "local": local})
    deleted = await sweep_expired_backups(registry, test_config.retention_days, now=now)

    assert deleted == {"s3": [], "gcs": [], "local": [expired]}
    assert no_delete.delete_attempts == [remote_expired]
    assert not (test_config.backup_dir / f"{expired}.tar.gz").exists()
