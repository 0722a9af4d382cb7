# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover - tenant-scoped backup, restore and export for relational data.

Backs up tables in bounded chunks to local disk or object storage, restores
them from a manifest, and exports tenant data in batch or as a stream with
per-tenant admission control. Package name: datamover.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from datamover.builder import create_config
from datamover.env import create_config_from_env

# Engines
from datamover.backup import BackupEngine
from datamover.export import ExportEngine, RateLimiter

# Query collaborators
from datamover.query import PostgresExecutor, SQLiteExecutor

# Storage
from datamover.storage import build_storage_registry

__all__ = [
    # Version
    "__version__",
    # Configuration creation
    "create_config",
    "create_config_from_env",
    # Engines
    "BackupEngine",
    "ExportEngine",
    "RateLimiter",
    # Query collaborators
    "PostgresExecutor",
    "SQLiteExecutor",
    # Storage
    "build_storage_registry",
]
