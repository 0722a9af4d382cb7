# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 and Google Cloud Storage backends.

Both use aiobotocore. GCS is addressed through its S3-interoperable XML
API at storage.googleapis.com with an HMAC key pair. Objects are deleted
one at a time because GCS does not implement multi-object delete.
"""

from pathlib import Path
from typing import Any, Dict, List, Tuple

import aiofiles
import structlog
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from datamover.config import GCSSettings, S3Settings
from datamover.exceptions import (
    BackendUnavailableError,
    NotFoundError,
    StorageError,
    TransientIOError,
)
from datamover.storage.base import (
    ARCHIVE_SUFFIX,
    StorageBackend,
    summarize_objects,
    with_timeout,
)

logger = structlog.get_logger()


class S3Storage(StorageBackend):
    """
    Backups in an S3 bucket.

    Credentials come from the settings when given, otherwise from the
    standard AWS chain (environment, shared config, instance role).
    """

    name = "s3"
    label = "Amazon S3"

    def __init__(
        self,
        settings: S3Settings,
        *,
        timeout: float | None = None,
        session: Any = None,
    ):
        self.bucket = settings.bucket
        self.prefix = settings.prefix
        self.region = settings.region
        self.endpoint_url = settings.endpoint_url
        self.access_key_id = settings.access_key_id
        self.secret_access_key = settings.secret_access_key
        self.timeout = timeout
        self._session = session or get_session()

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}"

    async def initialize(self) -> None:
        if self.access_key_id and self.secret_access_key:
            return
        credentials = await self._session.get_credentials()
        if credentials is None:
            raise BackendUnavailableError(
                f"No credentials available for {self.label}",
                details={"backend": self.name, "bucket": self.bucket},
            )

    def _client(self):
        kwargs: Dict[str, Any] = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id and self.secret_access_key:
            kwargs["aws_access_key_id"] = self.access_key_id
            kwargs["aws_secret_access_key"] = self.secret_access_key
        return self._session.create_client("s3", **kwargs)

    def _wrap(self, e: Exception, operation: str, key: str | None) -> Exception:
        details = {"backend": self.name, "operation": operation, "key": key}
        if isinstance(e, ClientError):
            return StorageError(f"{self.label} {operation} failed: {e}", details=details)
        return TransientIOError(f"{self.label} {operation} failed: {e}", details=details)

    async def _list_objects(self, s3_client: Any, prefix: str) -> List[Tuple[str, int]]:
        objects: List[Tuple[str, int]] = []
        paginator = s3_client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                objects.append((obj["Key"], obj.get("Size", 0)))
        return objects

    async def _put_file(self, s3_client: Any, local_path: Path, key: str) -> None:
        async with aiofiles.open(local_path, "rb") as f:
            content = await f.read()
        await with_timeout(
            s3_client.put_object(Bucket=self.bucket, Key=key, Body=content),
            self.timeout,
            backend=self.name,
            operation="upload",
            key=key,
        )
        logger.debug("object_uploaded", backend=self.name, key=key, size=len(content))

    async def upload(self, local_path: Path, key: str) -> str:
        local_path = Path(local_path)
        try:
            async with self._client() as s3_client:
                if local_path.is_dir():
                    for file_path in sorted(p for p in local_path.rglob("*") if p.is_file()):
                        relative = file_path.relative_to(local_path).as_posix()
                        await self._put_file(s3_client, file_path, f"{self.prefix}{key}/{relative}")
                    object_key = f"{self.prefix}{key}/"
                else:
                    object_key = f"{self.prefix}{key}{ARCHIVE_SUFFIX}"
                    await self._put_file(s3_client, local_path, object_key)
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "upload", key)

        location = f"{self.location}/{object_key}"
        logger.info("backup_uploaded", backend=self.name, key=key, location=location)
        return location

    async def download(self, key: str, destination_dir: Path) -> Path:
        destination_dir = Path(destination_dir)
        destination_dir.mkdir(parents=True, exist_ok=True)
        archive_key = f"{self.prefix}{key}{ARCHIVE_SUFFIX}"
        directory_prefix = f"{self.prefix}{key}/"

        try:
            async with self._client() as s3_client:
                objects = await with_timeout(
                    self._list_objects(s3_client, f"{self.prefix}{key}"),
                    self.timeout,
                    backend=self.name,
                    operation="list",
                    key=key,
                )
                names = {name for name, _ in objects}

                if archive_key in names:
                    target = destination_dir / f"{key}{ARCHIVE_SUFFIX}"
                    await self._get_file(s3_client, archive_key, target)
                    return target

                members = sorted(n for n in names if n.startswith(directory_prefix))
                if not members:
                    raise NotFoundError(
                        f"Backup not found: {key}",
                        details={"backend": self.name, "bucket": self.bucket},
                    )
                target_dir = destination_dir / key
                for name in members:
                    relative = name[len(directory_prefix):]
                    if not relative or ".." in relative.split("/"):
                        continue
                    await self._get_file(s3_client, name, target_dir / relative)
                return target_dir
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "download", key)

    async def _get_file(self, s3_client: Any, object_key: str, target: Path) -> None:
        response = await with_timeout(
            s3_client.get_object(Bucket=self.bucket, Key=object_key),
            self.timeout,
            backend=self.name,
            operation="download",
            key=object_key,
        )
        async with response["Body"] as stream:
            content = await stream.read()
        target.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(content)

    async def list(self) -> List[Dict[str, Any]]:
        try:
            async with self._client() as s3_client:
                objects = await with_timeout(
                    self._list_objects(s3_client, self.prefix),
                    self.timeout,
                    backend=self.name,
                    operation="list",
                )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "list", None)
        return summarize_objects(objects, self.prefix, self.name, self.location)

    async def delete(self, backup_id: str) -> None:
        archive_key = f"{self.prefix}{backup_id}{ARCHIVE_SUFFIX}"
        directory_prefix = f"{self.prefix}{backup_id}/"
        try:
            async with self._client() as s3_client:
                objects = await with_timeout(
                    self._list_objects(s3_client, f"{self.prefix}{backup_id}"),
                    self.timeout,
                    backend=self.name,
                    operation="list",
                    key=backup_id,
                )
                doomed = [
                    name for name, _ in objects
                    if name == archive_key or name.startswith(directory_prefix)
                ]
                if not doomed:
                    raise NotFoundError(
                        f"Backup not found: {backup_id}",
                        details={"backend": self.name, "bucket": self.bucket},
                    )
                for name in doomed:
                    await with_timeout(
                        s3_client.delete_object(Bucket=self.bucket, Key=name),
                        self.timeout,
                        backend=self.name,
                        operation="delete",
                        key=name,
                    )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "delete", backup_id)

        logger.info("backup_deleted", backup_id=backup_id, backend=self.name, objects=len(doomed))


class GCSStorage(S3Storage):
    """Backups in a Google Cloud Storage bucket via the XML interoperability API."""

    name = "gcs"
    label = "Google Cloud Storage"

    def __init__(
        self,
        settings: GCSSettings,
        *,
        timeout: float | None = None,
        session: Any = None,
    ):
        super().__init__(
            S3Settings(
                bucket=settings.bucket,
                region=settings.region,
                prefix=settings.prefix,
                endpoint_url=settings.endpoint_url,
                access_key_id=settings.hmac_key_id,
                secret_access_key=settings.hmac_secret,
            ),
            timeout=timeout,
            session=session,
        )

    @property
    def location(self) -> str:
        return f"gs://{self.bucket}"

    async def initialize(self) -> None:
        if not (self.access_key_id and self.secret_access_key):
            raise BackendUnavailableError(
                "Google Cloud Storage needs an HMAC key id and secret",
                details={"backend": self.name, "bucket": self.bucket},
            )
