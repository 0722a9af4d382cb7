# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Restore - Load a backup's chunk files back into tables.

Restore works on an already-local backup directory (extracted if it was
bundled). Each selected table is truncated exactly once, before its first
chunk's inserts, and rows are inserted in bounded batches with an
idempotent conflict policy so a repeated restore does not fail on rows
that are already present.
"""

import base64
import binascii
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Set

import structlog

from datamover.backup.archive import ChunkCipher, read_chunk_file
from datamover.backup.manifest import verify_chunk_files
from datamover.exceptions import ConfigurationError, IntegrityError, RestoreError
from datamover.formats import get_codec
from datamover.query.dialect import describe_tables
from datamover.query.executor import QueryExecutor, run_query

logger = structlog.get_logger()

ProgressCallback = Callable[[str, float], Awaitable[None]]

# Declared column types whose values travel as base64 text in chunk files
BINARY_TYPES = ("BLOB", "BYTEA")


@dataclass
class TableRestoreResult:
    """Result of restoring one table."""

    table: str
    records_restored: int = 0
    files_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "recordsRestored": self.records_restored,
            "filesProcessed": self.files_processed,
        }


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    backup_id: str
    tables: Dict[str, TableRestoreResult] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def total_records(self) -> int:
        return sum(t.records_restored for t in self.tables.values())

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: result.to_dict() for name, result in self.tables.items()}


def select_tables(manifest: Dict[str, Any], tables: Sequence[str] | None) -> List[str]:
    """
    Resolve the tables to restore.

    Raises:
        IntegrityError: If a requested table is not in the backup
    """
    available = list(manifest["tables"])
    if not tables:
        return available
    missing = [t for t in tables if t not in available]
    if missing:
        raise IntegrityError(
            f"Tables not present in backup {manifest.get('id')!r}: {', '.join(missing)}",
            details={"missing": missing, "available": available},
        )
    return list(tables)


def _batched(rows: List[Dict[str, Any]], size: int):
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


async def binary_columns(executor: QueryExecutor, table: str, schema_name: str = "public") -> Set[str]:
    """Columns of the target table that hold raw bytes."""
    schema = await describe_tables(executor, [table], schema_name)
    return {
        column["name"]
        for column in schema.get(table, [])
        if str(column["type"] or "").upper() in BINARY_TYPES
    }


def decode_binary_values(rows: List[Dict[str, Any]], columns: Set[str], table: str) -> None:
    """
    Turn base64 text back into bytes for binary columns, in place.

    Raises:
        RestoreError: If a value is not valid base64
    """
    for row in rows:
        for column in columns:
            value = row.get(column)
            if not isinstance(value, str):
                continue
            try:
                row[column] = base64.b64decode(value, validate=True)
            except binascii.Error as e:
                raise RestoreError(
                    f"Value in binary column {table}.{column} is not base64: {e}",
                    details={"table": table, "column": column},
                )


async def restore_tables(
    executor: QueryExecutor,
    backup_root: Path,
    manifest: Dict[str, Any],
    *,
    tables: Sequence[str] | None = None,
    truncate: bool = True,
    batch_size: int = 1000,
    cipher: ChunkCipher | None = None,
    query_timeout: float | None = None,
    schema_name: str = "public",
    on_progress: ProgressCallback | None = None,
) -> RestoreResult:
    """
    Restore tables from a local backup directory.

    Every referenced chunk file is checked before the first write, so a
    damaged backup leaves the database untouched.

    Args:
        executor: Query executor for the target database
        backup_root: Directory holding manifest.json and the chunk files
        manifest: Parsed manifest
        tables: Subset of tables to restore (default: all in the manifest)
        truncate: Empty each selected table before loading it
        batch_size: Rows per INSERT statement (capped by the engine's
            bind-parameter limit)
        cipher: Required when the manifest says the chunks are encrypted
        schema_name: Schema searched for the target tables' column types;
            values bound for BLOB/bytea columns are base64-decoded
        on_progress: Awaited with (table, fraction) after each table

    Returns:
        RestoreResult keyed by table
    """
    backup_id = manifest.get("id", "")
    selected = select_tables(manifest, tables)
    verify_chunk_files(backup_root, manifest)

    if manifest.get("encrypted") and cipher is None:
        raise ConfigurationError(
            "Backup is encrypted but no chunk cipher is configured",
            details={"backup_id": backup_id},
        )

    codec = get_codec(manifest["format"])
    dialect = executor.dialect
    result = RestoreResult(backup_id=backup_id)

    for position, table in enumerate(selected, start=1):
        table_result = TableRestoreResult(table=table)
        binary = await binary_columns(executor, table, schema_name)
        chunks = sorted(
            (f for f in manifest["files"] if f["tableName"] == table),
            key=lambda f: f["chunkIndex"],
        )

        if truncate:
            await run_query(
                executor,
                dialect.truncate_statement(table),
                [],
                timeout=query_timeout,
                context={"backup_id": backup_id, "table": table},
            )
            logger.debug("table_truncated", backup_id=backup_id, table=table)

        for chunk in chunks:
            data = await read_chunk_file(backup_root / chunk["filename"])
            if manifest.get("encrypted"):
                data = cipher.decrypt(data)
            try:
                rows = codec.decode(data)
            except Exception as e:
                raise RestoreError(
                    f"Could not decode {chunk['filename']}: {e}",
                    details={"backup_id": backup_id, "table": table, "chunk_index": chunk["chunkIndex"]},
                )
            if binary:
                decode_binary_values(rows, binary, table)

            if rows:
                per_insert = dialect.rows_per_insert(len(rows[0]), batch_size)
                for batch in _batched(rows, per_insert):
                    sql, params = dialect.insert_ignore_statement(table, batch)
                    await run_query(
                        executor,
                        sql,
                        params,
                        timeout=query_timeout,
                        context={
                            "backup_id": backup_id,
                            "table": table,
                            "chunk_index": chunk["chunkIndex"],
                        },
                    )

            table_result.records_restored += len(rows)
            table_result.files_processed += 1

        result.tables[table] = table_result
        logger.info(
            "table_restored",
            backup_id=backup_id,
            table=table,
            records=table_result.records_restored,
            files=table_result.files_processed,
        )

        if on_progress is not None:
            await on_progress(table, position / len(selected))

    return result
