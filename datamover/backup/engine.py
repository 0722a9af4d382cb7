# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Backup Engine - bounded job queue, chunked backup, restore and
retention.

Jobs are queued FIFO and started by _drain(), a synchronous step with no
suspension point: checking the concurrency bound and launching a job
therefore cannot interleave with another job finishing. Each job's
finally-block releases its slot and drains again.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Deque, Dict, List, Sequence, Set

import structlog
from ulid import ULID

from datamover import __version__
from datamover.backup.archive import (
    ChunkCipher,
    chunk_filename,
    create_backup_tarball,
    extract_backup_tarball,
    remove_tree,
    write_chunk_file,
)
from datamover.backup.manifest import (
    MANIFEST_FILE,
    SCHEMA_FILE,
    ChunkFile,
    build_manifest,
    read_manifest,
    write_json_file,
)
from datamover.backup.restore import restore_tables
from datamover.backup.retention import new_backup_id, sweep_expired_backups
from datamover.config import DataFormat, JobStatus, MoverConfig
from datamover.events import EventBus, EventKind, LifecycleEvent
from datamover.exceptions import (
    BackupError,
    ConfigurationError,
    NotFoundError,
)
from datamover.formats import get_codec, resolve_format
from datamover.query.builder import require_identifier
from datamover.query.dialect import describe_tables
from datamover.query.executor import QueryExecutor
from datamover.query.reader import ChunkedTableReader
from datamover.storage.base import ARCHIVE_SUFFIX
from datamover.storage.local import LocalStorage
from datamover.storage.registry import StorageRegistry, build_storage_registry

logger = structlog.get_logger()

# Progress fractions of the post-table stages
SCHEMA_PROGRESS = 0.85
COMPRESS_PROGRESS = 0.9
UPLOAD_PROGRESS = 0.95
TABLES_PROGRESS = 0.8

RESTORE_WORKDIR = ".restore"


class _Cancelled(Exception):
    pass


@dataclass
class BackupJob:
    """A backup job and its mutable status. Owned by the engine."""

    id: str
    tenant_id: str | None
    tables: List[str]
    format: DataFormat
    compression: bool
    encryption: bool
    backend: str
    start_time: Any = None
    end_time: Any = None
    include_schema: bool = True
    created_by: str = "system"
    description: str = ""
    substituted_from: str | None = None
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    path: str | None = None
    location: str | None = None
    manifest: Dict[str, Any] | None = None
    cancel_requested: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        """Read-only snapshot for status queries."""
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": round(self.progress, 4),
            "tenantId": self.tenant_id,
            "tables": list(self.tables),
            "format": self.format.value,
            "substitutedFrom": self.substituted_from,
            "compression": self.compression,
            "encryption": self.encryption,
            "storageBackend": self.backend,
            "error": self.error,
            "path": self.path,
            "location": self.location,
            "metadata": {
                "createdBy": self.created_by,
                "description": self.description,
                "createdAt": self.created_at.isoformat(),
                "version": __version__,
            },
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "manifest": self.manifest,
        }


class BackupEngine:
    """
    Backs up tables to a storage backend and restores them.

    Example:
        registry = await build_storage_registry(config)
        engine = BackupEngine(config, executor, registry)
        backup_id = await engine.create_backup(tenant_id="acme", tables=["events"])
        status = await engine.wait_for_backup(backup_id)
    """

    def __init__(
        self,
        config: MoverConfig,
        executor: QueryExecutor,
        storage: StorageRegistry,
        *,
        events: EventBus | None = None,
        cipher: ChunkCipher | None = None,
    ):
        self.config = config
        self.executor = executor
        self.storage = storage
        self.events = events or EventBus()
        self.cipher = cipher
        self.reader = ChunkedTableReader.from_config(executor, config)

        self._jobs: Dict[str, BackupJob] = {}
        self._queue: Deque[BackupJob] = deque()
        self._running = 0
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    async def create(
        cls,
        config: MoverConfig,
        executor: QueryExecutor,
        **kwargs: Any,
    ) -> "BackupEngine":
        """Build the storage registry from config and return an engine."""
        storage = await build_storage_registry(config)
        return cls(config, executor, storage, **kwargs)

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    async def _emit(self, kind: EventKind, job_id: str, **kwargs: Any) -> None:
        await self.events.emit(LifecycleEvent(kind=kind, job_id=job_id, **kwargs))

    # ------------------------------------------------------------------
    # Job submission and scheduling
    # ------------------------------------------------------------------

    async def create_backup(
        self,
        *,
        tables: Sequence[str],
        tenant_id: str | None = None,
        format: str | DataFormat | None = None,
        compression: bool = True,
        encryption: bool = False,
        backend: str = "local",
        start_time: Any = None,
        end_time: Any = None,
        include_schema: bool = True,
        created_by: str = "system",
        description: str = "",
        allow_format_substitution: bool = False,
    ) -> str:
        """
        Validate and enqueue a backup job.

        tenant_id None backs up every tenant's rows.

        Returns:
            The job id (backup_<ULID>); the job runs in the background

        Raises:
            ConfigurationError: Unknown backend/format, no tables, a blank
                tenant_id, or encryption without a configured cipher
            SafetyViolation: Unsafe table name
        """
        if isinstance(tables, str) or not tables:
            raise ConfigurationError("At least one table is required", details={"tables": tables})
        tables = [require_identifier(t, "table") for t in tables]
        if tenant_id is not None and (not isinstance(tenant_id, str) or not tenant_id.strip()):
            raise ConfigurationError(
                "tenant_id must be a non-empty string, or None to back up every tenant",
                details={"tenant_id": tenant_id},
            )

        data_format, substituted_from = resolve_format(
            format or self.config.default_format,
            self.config.allowed_formats,
            allow_format_substitution,
        )
        self.storage.get(backend)

        if encryption and self.cipher is None:
            raise ConfigurationError(
                "Encryption requested but no chunk cipher is configured",
                details={"backend": backend},
            )

        job = BackupJob(
            id=new_backup_id(),
            tenant_id=tenant_id,
            tables=tables,
            format=data_format,
            compression=compression,
            encryption=encryption,
            backend=backend,
            start_time=start_time,
            end_time=end_time,
            include_schema=include_schema,
            created_by=created_by,
            description=description,
            substituted_from=substituted_from.value if substituted_from else None,
        )
        self._jobs[job.id] = job
        self._queue.append(job)

        logger.info(
            "backup_job_queued",
            job_id=job.id,
            tenant_id=job.tenant_id,
            tables=tables,
            format=data_format.value,
            backend=backend,
        )

        self._drain()
        return job.id

    def _drain(self) -> None:
        while self._queue and self._running < self.config.max_concurrent_backups:
            job = self._queue.popleft()
            if job.status is not JobStatus.PENDING:
                # Cancelled while queued
                continue
            self._running += 1
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now(UTC)
            task = asyncio.get_running_loop().create_task(self._run(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: BackupJob) -> None:
        try:
            await self._emit(EventKind.STARTED, job.id, stage="started", fraction=0.0)
            logger.info("backup_job_started", job_id=job.id, tables=job.tables)
            await self._execute(job)

        except _Cancelled:
            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.now(UTC)
            logger.info("backup_job_cancelled", job_id=job.id)
            await self._emit(EventKind.CANCELLED, job.id, stage="cancelled")

        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            job.completed_at = datetime.now(UTC)
            logger.error(
                "backup_job_failed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await self._emit(EventKind.FAILED, job.id, stage="failed", error=str(e))

        finally:
            self._running -= 1
            job.done.set()
            self._drain()

    def _check_cancelled(self, job: BackupJob) -> None:
        if job.cancel_requested:
            raise _Cancelled()

    async def _progress(self, job: BackupJob, fraction: float, stage: str, table: str | None = None) -> None:
        job.progress = fraction
        await self._emit(EventKind.PROGRESS, job.id, stage=stage, fraction=fraction, table=table)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _execute(self, job: BackupJob) -> None:
        job_dir = self.config.backup_dir / job.id
        job_dir.mkdir(parents=True, exist_ok=True)
        job.path = str(job_dir)

        codec = get_codec(job.format)
        files: List[ChunkFile] = []

        for position, table in enumerate(job.tables, start=1):
            scoped = self.reader.scope_table(
                table,
                job.tenant_id,
                start_time=job.start_time,
                end_time=job.end_time,
                allow_all_tenants=job.tenant_id is None,
            )
            async for chunk in self.reader.iter_chunks(
                scoped,
                chunk_size=self.config.chunk_size,
                order_by=self.config.backup_order_by,
                context={"job_id": job.id, "table": table},
            ):
                self._check_cancelled(job)

                data = codec.encode(
                    chunk.rows,
                    {
                        "table": table,
                        "backupId": job.id,
                        "tenantId": job.tenant_id,
                        "chunkIndex": chunk.index,
                    },
                )
                if job.encryption:
                    data = self.cipher.encrypt(data)

                filename = chunk_filename(table, chunk.index, codec.extension)
                await write_chunk_file(job_dir, filename, data)
                files.append(
                    ChunkFile(
                        filename=filename,
                        tableName=table,
                        recordCount=len(chunk.rows),
                        fileSize=len(data),
                        chunkIndex=chunk.index,
                    )
                )
                logger.debug(
                    "backup_chunk_written",
                    job_id=job.id,
                    table=table,
                    chunk_index=chunk.index,
                    records=len(chunk.rows),
                )

            self._check_cancelled(job)
            await self._progress(job, TABLES_PROGRESS * position / len(job.tables), "table", table)

        schema_file = None
        if job.include_schema:
            schema = await describe_tables(self.executor, job.tables, self.config.schema_name)
            await write_json_file(job_dir, SCHEMA_FILE, schema)
            schema_file = SCHEMA_FILE
            await self._progress(job, SCHEMA_PROGRESS, "schema")

        self._check_cancelled(job)

        manifest = build_manifest(
            backup_id=job.id,
            created_at=job.created_at.isoformat(),
            created_by=job.created_by,
            description=job.description,
            tenant_id=job.tenant_id,
            tables=job.tables,
            data_format=job.format.value,
            compression=job.compression,
            encrypted=job.encryption,
            files=files,
            schema_file=schema_file,
            substituted_from=job.substituted_from,
        )
        await write_json_file(job_dir, MANIFEST_FILE, manifest)

        artifact: Path = job_dir
        if job.compression:
            artifact = await create_backup_tarball(job_dir, self.config.compression_level)
            remove_tree(job_dir)
            job.path = str(artifact)
            await self._progress(job, COMPRESS_PROGRESS, "compress")

        if job.backend == "local":
            job.location = str(artifact)
        else:
            backend = self.storage.get(job.backend)
            job.location = await backend.upload(artifact, job.id)
            # The remote copy is the artifact; the local one was staging
            remove_tree(artifact)
            job.path = None
            await self._progress(job, UPLOAD_PROGRESS, "upload")

        job.manifest = manifest
        job.status = JobStatus.COMPLETED
        job.progress = 1.0
        job.completed_at = datetime.now(UTC)

        logger.info(
            "backup_job_completed",
            job_id=job.id,
            records=manifest["stats"]["totalRecords"],
            files=len(files),
            location=job.location,
        )
        await self._emit(
            EventKind.COMPLETED,
            job.id,
            stage="completed",
            fraction=1.0,
            payload={"location": job.location, "stats": manifest["stats"]},
        )

    # ------------------------------------------------------------------
    # Status and management
    # ------------------------------------------------------------------

    def get_backup_status(self, backup_id: str) -> Dict[str, Any] | None:
        job = self._jobs.get(backup_id)
        return job.to_dict() if job else None

    async def wait_for_backup(self, backup_id: str, timeout: float | None = None) -> Dict[str, Any]:
        """
        Wait for a job to reach a terminal state.

        Raises:
            NotFoundError: Unknown job id
        """
        job = self._jobs.get(backup_id)
        if job is None:
            raise NotFoundError(f"Backup job not found: {backup_id}")
        await asyncio.wait_for(job.done.wait(), timeout=timeout)
        return job.to_dict()

    async def cancel_backup(self, backup_id: str) -> bool:
        """
        Request cancellation.

        A queued job is cancelled at once; a running job stops before its
        next chunk. Returns False for unknown or already finished jobs.
        """
        job = self._jobs.get(backup_id)
        if job is None or job.finished:
            return False

        job.cancel_requested = True
        if job.status is JobStatus.PENDING:
            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.now(UTC)
            job.done.set()
            logger.info("backup_job_cancelled", job_id=job.id, queued=True)
            await self._emit(EventKind.CANCELLED, job.id, stage="cancelled")
        return True

    async def list_backups(self, backend: str = "local") -> List[Dict[str, Any]]:
        entries = await self.storage.get(backend).list()
        for entry in entries:
            job = self._jobs.get(entry["id"])
            entry["status"] = job.status.value if job else None
        return entries

    async def delete_backup(self, backup_id: str, backend: str = "local") -> bool:
        """
        Delete a stored backup.

        Raises:
            BackupError: If the job is still running
            NotFoundError: If the backend has no such backup
        """
        job = self._jobs.get(backup_id)
        if job is not None and not job.finished:
            raise BackupError(
                f"Backup {backup_id} is still {job.status.value}",
                details={"backup_id": backup_id},
            )
        await self.storage.get(backend).delete(backup_id)
        await self._emit(EventKind.DELETED, backup_id, payload={"backend": backend})
        return True

    async def cleanup_old_backups(self) -> Dict[str, List[str]]:
        """Delete backups older than retention_days on every backend."""
        active = {job_id for job_id, job in self._jobs.items() if not job.finished}

        async def on_delete(backend: str, backup_id: str) -> None:
            await self._emit(EventKind.CLEANUP, backup_id, payload={"backend": backend})

        return await sweep_expired_backups(
            self.storage,
            self.config.retention_days,
            skip=active,
            on_delete=on_delete,
        )

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_backup(
        self,
        backup_id: str,
        *,
        backend: str = "local",
        tables: Sequence[str] | None = None,
        truncate: bool = True,
        batch_size: int | None = None,
    ) -> Dict[str, Dict[str, Any]]:
        """
        Restore tables from a backup.

        Returns:
            {table: {table, recordsRestored, filesProcessed}}

        Raises:
            NotFoundError: No such backup on the backend
            IntegrityError: Missing/malformed manifest, missing chunk
                file, or a requested table that is not in the backup
        """
        storage = self.storage.get(backend)
        started = time.monotonic()
        workdir = self.config.backup_dir / RESTORE_WORKDIR / f"{backup_id}_{ULID()}"

        await self._emit(
            EventKind.RESTORE_STARTED,
            backup_id,
            stage="restore",
            payload={"backend": backend, "tables": list(tables or [])},
        )
        logger.info("restore_started", backup_id=backup_id, backend=backend)

        try:
            if isinstance(storage, LocalStorage):
                source = storage.locate(backup_id)
                if source is None:
                    raise NotFoundError(
                        f"Backup not found: {backup_id}",
                        details={"backend": backend},
                    )
            else:
                source = await storage.download(backup_id, workdir / "download")

            if source.name.endswith(ARCHIVE_SUFFIX):
                backup_root = await extract_backup_tarball(source, workdir / "extracted")
            else:
                backup_root = source

            manifest = await read_manifest(backup_root, backup_id)

            async def on_progress(table: str, fraction: float) -> None:
                await self._emit(
                    EventKind.RESTORE_PROGRESS,
                    backup_id,
                    stage="restore",
                    table=table,
                    fraction=fraction,
                )

            result = await restore_tables(
                self.executor,
                backup_root,
                manifest,
                tables=tables,
                truncate=truncate,
                batch_size=batch_size or self.config.restore_batch_size,
                cipher=self.cipher,
                query_timeout=self.config.query_timeout,
                schema_name=self.config.schema_name,
                on_progress=on_progress,
            )

        except Exception as e:
            logger.error("restore_failed", backup_id=backup_id, error=str(e))
            await self._emit(EventKind.RESTORE_FAILED, backup_id, stage="restore", error=str(e))
            raise

        finally:
            remove_tree(workdir)

        result.duration_seconds = time.monotonic() - started
        logger.info(
            "restore_completed",
            backup_id=backup_id,
            records=result.total_records,
            duration_seconds=round(result.duration_seconds, 3),
        )
        await self._emit(
            EventKind.RESTORE_COMPLETED,
            backup_id,
            stage="restore",
            fraction=1.0,
            payload=result.to_dict(),
        )
        return result.to_dict()

    async def shutdown(self, cancel: bool = False) -> None:
        """
        Wait for running jobs to finish.

        With cancel=True queued and running jobs are cancelled first.
        """
        if cancel:
            for job in list(self._jobs.values()):
                if not job.finished:
                    await self.cancel_backup(job.id)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("backup_engine_shutdown", jobs=len(self._jobs))
