# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Azure Blob Storage backend (azure-storage-blob, async client).
"""

from pathlib import Path
from typing import Any, Dict, List, Tuple

import aiofiles
import structlog
from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient

from datamover.config import AzureSettings
from datamover.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    TransientIOError,
)
from datamover.storage.base import (
    ARCHIVE_SUFFIX,
    StorageBackend,
    summarize_objects,
    with_timeout,
)

logger = structlog.get_logger()


class AzureBlobStorage(StorageBackend):
    """Backups as blobs in one container, same key layout as S3."""

    name = "azure"
    label = "Azure Blob Storage"

    def __init__(self, settings: AzureSettings, *, timeout: float | None = None):
        self.connection_string = settings.connection_string
        self.container = settings.container
        self.prefix = settings.prefix
        self.timeout = timeout
        self._service: BlobServiceClient | None = None
        self._container_client: Any = None

    @property
    def location(self) -> str:
        if self._service is not None:
            return f"{self._service.url.rstrip('/')}/{self.container}"
        return f"azure://{self.container}"

    async def initialize(self) -> None:
        try:
            self._service = BlobServiceClient.from_connection_string(self.connection_string)
        except (ValueError, AzureError) as e:
            raise BackendUnavailableError(
                f"Could not create Azure Blob Storage client: {e}",
                details={"backend": self.name, "container": self.container},
            )
        self._container_client = self._service.get_container_client(self.container)

    @property
    def _blobs(self) -> Any:
        if self._container_client is None:
            raise BackendUnavailableError(
                "Azure Blob Storage backend used before initialize()",
                details={"backend": self.name},
            )
        return self._container_client

    def _wrap(self, e: Exception, operation: str, key: str | None) -> TransientIOError:
        return TransientIOError(
            f"{self.label} {operation} failed: {e}",
            details={"backend": self.name, "operation": operation, "key": key},
        )

    async def _list_blobs(self, prefix: str) -> List[Tuple[str, int]]:
        blobs: List[Tuple[str, int]] = []
        try:
            async for blob in self._blobs.list_blobs(name_starts_with=prefix):
                blobs.append((blob.name, blob.size or 0))
        except ResourceNotFoundError:
            # Missing container: nothing stored yet
            return []
        return blobs

    async def _put_file(self, local_path: Path, blob_name: str) -> None:
        async with aiofiles.open(local_path, "rb") as f:
            content = await f.read()
        await with_timeout(
            self._blobs.upload_blob(blob_name, content, overwrite=True),
            self.timeout,
            backend=self.name,
            operation="upload",
            key=blob_name,
        )

    async def upload(self, local_path: Path, key: str) -> str:
        local_path = Path(local_path)
        try:
            if local_path.is_dir():
                for file_path in sorted(p for p in local_path.rglob("*") if p.is_file()):
                    relative = file_path.relative_to(local_path).as_posix()
                    await self._put_file(file_path, f"{self.prefix}{key}/{relative}")
                blob_key = f"{self.prefix}{key}/"
            else:
                blob_key = f"{self.prefix}{key}{ARCHIVE_SUFFIX}"
                await self._put_file(local_path, blob_key)
        except AzureError as e:
            raise self._wrap(e, "upload", key)

        location = f"{self.location}/{blob_key}"
        logger.info("backup_uploaded", backend=self.name, key=key, location=location)
        return location

    async def _get_file(self, blob_name: str, target: Path) -> None:
        downloader = await with_timeout(
            self._blobs.download_blob(blob_name),
            self.timeout,
            backend=self.name,
            operation="download",
            key=blob_name,
        )
        content = await with_timeout(
            downloader.readall(),
            self.timeout,
            backend=self.name,
            operation="download",
            key=blob_name,
        )
        target.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(content)

    async def download(self, key: str, destination_dir: Path) -> Path:
        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        archive_key = f"{self.prefix}{key}{ARCHIVE_SUFFIX}"
        directory_prefix = f"{self.prefix}{key}/"

        try:
            names = {name for name, _ in await self._list_blobs(f"{self.prefix}{key}")}
            if archive_key in names:
                target = destination_dir / f"{key}{ARCHIVE_SUFFIX}"
                await self._get_file(archive_key, target)
                return target

            members = sorted(n for n in names if n.startswith(directory_prefix))
            if not members:
                raise NotFoundError(
                    f"Backup not found: {key}",
                    details={"backend": self.name, "container": self.container},
                )
            target_dir = destination_dir / key
            for name in members:
                relative = name[len(directory_prefix):]
                if not relative or ".." in relative.split("/"):
                    continue
                await self._get_file(name, target_dir / relative)
            return target_dir
        except AzureError as e:
            raise self._wrap(e, "download", key)

    async def list(self) -> List[Dict[str, Any]]:
        try:
            blobs = await with_timeout(
                self._list_blobs(self.prefix),
                self.timeout,
                backend=self.name,
                operation="list",
            )
        except AzureError as e:
            raise self._wrap(e, "list", None)
        return summarize_objects(blobs, self.prefix, self.name, self.location)

    async def delete(self, backup_id: str) -> None:
        archive_key = f"{self.prefix}{backup_id}{ARCHIVE_SUFFIX}"
        directory_prefix = f"{self.prefix}{backup_id}/"
        try:
            blobs = await self._list_blobs(f"{self.prefix}{backup_id}")
            doomed = [
                name for name, _ in blobs
                if name == archive_key or name.startswith(directory_prefix)
            ]
            if not doomed:
                raise NotFoundError(
                    f"Backup not found: {backup_id}",
                    details={"backend": self.name, "container": self.container},
                )
            for name in doomed:
                await with_timeout(
                    self._blobs.delete_blob(name),
                    self.timeout,
                    backend=self.name,
                    operation="delete",
                    key=name,
                )
        except AzureError as e:
            raise self._wrap(e, "delete", backup_id)

        logger.info("backup_deleted", backup_id=backup_id, backend=self.name, objects=len(doomed))

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()
            self._service = None
            self._container_client = None
