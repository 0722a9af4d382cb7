# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Local filesystem backend.

Backups are written into backup_dir by the engine itself, so upload is
the identity for anything already there.
"""

import asyncio
import shutil
from pathlib import Path
from typing import Any, Dict, List

import structlog

from datamover.exceptions import NotFoundError, StorageError
from datamover.storage.base import ARCHIVE_SUFFIX, StorageBackend

logger = structlog.get_logger()


def _tree_size(path: Path) -> int:
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


class LocalStorage(StorageBackend):
    """Backups as <backup_dir>/<id>/ directories or <backup_dir>/<id>.tar.gz bundles."""

    name = "local"
    label = "Local filesystem"

    def __init__(self, backup_dir: Path):
        self.backup_dir = Path(backup_dir)

    async def initialize(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def locate(self, backup_id: str) -> Path | None:
        """Path of the stored artifact for backup_id, if any."""
        if "/" in backup_id or "\\" in backup_id or backup_id.startswith("."):
            return None
        archive = self.backup_dir / f"{backup_id}{ARCHIVE_SUFFIX}"
        if archive.is_file():
            return archive
        directory = self.backup_dir / backup_id
        if directory.is_dir():
            return directory
        return None

    async def upload(self, local_path: Path, key: str) -> str:
        local_path = Path(local_path)
        try:
            local_path.resolve().relative_to(self.backup_dir.resolve())
            return str(local_path)
        except ValueError:
            pass

        target = self.backup_dir / local_path.name
        try:
            if local_path.is_dir():
                await asyncio.to_thread(shutil.copytree, local_path, target, dirs_exist_ok=True)
            else:
                await asyncio.to_thread(shutil.copy2, local_path, target)
        except OSError as e:
            raise StorageError(
                f"Failed to copy backup into {self.backup_dir}: {e}",
                details={"key": key, "source": str(local_path)},
            )
        return str(target)

    async def download(self, key: str, destination_dir: Path) -> Path:
        source = self.locate(key)
        if source is None:
            raise NotFoundError(f"Backup not found: {key}", details={"backend": self.name})

        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        target = destination_dir / source.name
        if source.is_dir():
            await asyncio.to_thread(shutil.copytree, source, target, dirs_exist_ok=True)
        else:
            await asyncio.to_thread(shutil.copy2, source, target)
        return target

    async def list(self) -> List[Dict[str, Any]]:
        if not self.backup_dir.exists():
            return []

        entries = []
        for path in sorted(self.backup_dir.iterdir()):
            if path.name.startswith("."):
                continue
            if path.is_dir():
                backup_id = path.name
                size = _tree_size(path)
            elif path.name.endswith(ARCHIVE_SUFFIX):
                backup_id = path.name[: -len(ARCHIVE_SUFFIX)]
                size = path.stat().st_size
            else:
                continue
            entries.append(
                {
                    "id": backup_id,
                    "size": size,
                    "backend": self.name,
                    "key": path.name,
                    "location": str(path),
                }
            )
        return entries

    async def delete(self, backup_id: str) -> None:
        path = self.locate(backup_id)
        if path is None:
            raise NotFoundError(f"Backup not found: {backup_id}", details={"backend": self.name})

        if path.is_dir():
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            path.unlink()
        logger.info("backup_deleted", backup_id=backup_id, backend=self.name)
