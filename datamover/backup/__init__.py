# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - chunked backups, restore and retention.
"""

from datamover.backup.archive import ChunkCipher, chunk_filename
from datamover.backup.engine import BackupEngine, BackupJob
from datamover.backup.manifest import ChunkFile, build_manifest, read_manifest
from datamover.backup.restore import RestoreResult, restore_tables
from datamover.backup.retention import backup_created_at, sweep_expired_backups

__all__ = [
    # Engine
    "BackupEngine",
    "BackupJob",
    # Artifacts
    "ChunkCipher",
    "ChunkFile",
    "build_manifest",
    "chunk_filename",
    "read_manifest",
    # Restore
    "RestoreResult",
    "restore_tables",
    # Retention
    "backup_created_at",
    "sweep_expired_backups",
]
