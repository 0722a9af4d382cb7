# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Pluggable storage backends for backup artifacts."""

from datamover.storage.base import StorageBackend
from datamover.storage.local import LocalStorage
from datamover.storage.registry import StorageRegistry, build_storage_registry

__all__ = [
    "LocalStorage",
    "StorageBackend",
    "StorageRegistry",
    "build_storage_registry",
]
