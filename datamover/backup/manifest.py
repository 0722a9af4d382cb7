# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup manifest - the single source of truth for restore.

manifest.json is written last, after every chunk file exists, so its
presence marks a complete backup.
"""

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List

import aiofiles

from datamover.errors import explain_missing_manifest
from datamover.exceptions import IntegrityError

MANIFEST_FILE = "manifest.json"
SCHEMA_FILE = "schema.json"
MANIFEST_VERSION = "1.0"

_REQUIRED_KEYS = ("id", "tables", "format", "files")


@dataclass(frozen=True)
class ChunkFile:
    """One chunk file of one table."""

    filename: str
    tableName: str
    recordCount: int
    fileSize: int
    chunkIndex: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_manifest(
    *,
    backup_id: str,
    created_at: str,
    created_by: str,
    description: str,
    tenant_id: str | None,
    tables: List[str],
    data_format: str,
    compression: bool,
    encrypted: bool,
    files: List[ChunkFile],
    schema_file: str | None,
    substituted_from: str | None = None,
) -> Dict[str, Any]:
    """Assemble the manifest document with per-table statistics."""
    per_table: Dict[str, Dict[str, Any]] = {
        table: {"recordCount": 0, "fileSize": 0, "files": []} for table in tables
    }
    for chunk in files:
        stats = per_table[chunk.tableName]
        stats["recordCount"] += chunk.recordCount
        stats["fileSize"] += chunk.fileSize
        stats["files"].append(chunk.filename)

    return {
        "id": backup_id,
        "createdAt": created_at,
        "createdBy": created_by,
        "description": description,
        "version": MANIFEST_VERSION,
        "tenantId": tenant_id,
        "tables": list(tables),
        "format": data_format,
        "compression": compression,
        "encrypted": encrypted,
        "substitutedFrom": substituted_from,
        "files": [chunk.to_dict() for chunk in files],
        "schemaFile": schema_file,
        "stats": {
            "totalRecords": sum(c.recordCount for c in files),
            "totalSize": sum(c.fileSize for c in files),
            "tables": per_table,
        },
    }


async def write_json_file(directory: Path, filename: str, document: Any) -> Path:
    """Write a JSON document atomically."""
    path = directory / filename
    temp_path = directory / f".{filename}.tmp"
    async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps(document, indent=2, default=str))
    temp_path.replace(path)
    return path


async def read_manifest(backup_root: Path, backup_id: str) -> Dict[str, Any]:
    """
    Load and sanity-check manifest.json.

    Raises:
        IntegrityError: If the manifest is missing or malformed
    """
    path = backup_root / MANIFEST_FILE
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            manifest = json.loads(await f.read())
    except FileNotFoundError:
        raise IntegrityError(
            explain_missing_manifest(backup_id),
            details={"backup_id": backup_id},
        )
    except ValueError as e:
        raise IntegrityError(
            f"Malformed manifest for backup {backup_id!r}: {e}",
            details={"backup_id": backup_id},
        )

    if not isinstance(manifest, dict) or any(k not in manifest for k in _REQUIRED_KEYS):
        raise IntegrityError(
            f"Manifest for backup {backup_id!r} is missing required fields",
            details={"backup_id": backup_id, "required": list(_REQUIRED_KEYS)},
        )
    if not isinstance(manifest["files"], list) or not isinstance(manifest["tables"], list):
        raise IntegrityError(
            f"Manifest for backup {backup_id!r} has malformed tables/files",
            details={"backup_id": backup_id},
        )
    return manifest


def verify_chunk_files(
    backup_root: Path,
    manifest: Dict[str, Any],
    tables: Iterable[str] | None = None,
) -> None:
    """
    Check that every chunk file the manifest references is present.

    Raises:
        IntegrityError: Listing the missing files
    """
    wanted = set(tables) if tables is not None else None
    missing = []
    for entry in manifest["files"]:
        if wanted is not None and entry.get("tableName") not in wanted:
            continue
        filename = entry.get("filename", "")
        if not filename or "/" in filename or "\\" in filename:
            missing.append(filename)
            continue
        if not (backup_root / filename).is_file():
            missing.append(filename)

    if missing:
        raise IntegrityError(
            f"Backup {manifest.get('id')!r} is missing {len(missing)} chunk file(s)",
            details={"backup_id": manifest.get("id"), "missing": missing},
        )
