# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Export Engine - tenant-scoped batch and streaming exports.

Every export is admitted by the per-tenant rate limiter, validated, and
reduced to a ScopedQuery before anything touches the database. Batch
exports read one bounded page; streaming exports pull one page per
iteration until a page comes back short.
"""

import inspect
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Tuple, Union

import httpx
import structlog
from ulid import ULID

from datamover.config import DataFormat, Destination, JobStatus, MoverConfig
from datamover.errors import (
    explain_missing_tenant,
    explain_missing_webhook_url,
    explain_unsupported_compression,
)
from datamover.events import EventBus, EventKind, LifecycleEvent
from datamover.exceptions import ConfigurationError
from datamover.export.destinations import (
    FileStreamSink,
    export_path,
    post_webhook,
    write_export_file,
)
from datamover.export.ratelimit import RateLimiter
from datamover.formats import StreamFraming, flatten_row, get_codec, resolve_format
from datamover.formats.codecs import Codec, Row
from datamover.query.builder import ScopedQuery, normalize_filters, require_identifier
from datamover.query.executor import QueryExecutor
from datamover.query.reader import ChunkedTableReader

logger = structlog.get_logger()

Translator = Callable[[str, str], Union[Tuple[str, Sequence[Any]], Awaitable[Tuple[str, Sequence[Any]]]]]


@dataclass(frozen=True)
class ExportOptions:
    """Caller options for one export."""

    format: str | None = None
    compression: str | None = None
    limit: int | None = None
    offset: int = 0
    sort_by: str | None = None
    sort_order: str = "DESC"
    fields: Sequence[str] | None = None
    streaming: bool = False
    destination: str = "response"
    webhook_url: str | None = None
    filename: str | None = None
    include_metadata: bool = True
    chunk_size: int | None = None
    allow_format_substitution: bool = False

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None, **overrides: Any) -> "ExportOptions":
        merged = {**dict(options or {}), **overrides}
        known = {f.name for f in dataclass_fields(cls)}
        unknown = sorted(set(merged) - known)
        if unknown:
            raise ConfigurationError(
                "Unknown export options",
                details={"unknown": unknown},
            )
        return cls(**merged)


@dataclass
class ExportJob:
    """Status of one export. Kept in memory only."""

    id: str
    tenant_id: str
    query: Dict[str, Any]
    format: DataFormat
    destination: Destination
    streaming: bool
    compression: str | None
    substituted_from: str | None = None
    status: JobStatus = JobStatus.RUNNING
    records: int = 0
    error: str | None = None
    filepath: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    cancel_requested: bool = False
    delivering: bool = False

    @property
    def finished(self) -> bool:
        return self.status is not JobStatus.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "tenantId": self.tenant_id,
            "format": self.format.value,
            "substitutedFrom": self.substituted_from,
            "destination": self.destination.value,
            "streaming": self.streaming,
            "compression": self.compression,
            "records": self.records,
            "error": self.error,
            "filepath": self.filepath,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class _Plan:
    """A validated export: everything needed to run it."""

    job: ExportJob
    options: ExportOptions
    scoped: ScopedQuery
    order_by: Tuple[str, ...]
    sort_order: str
    codec: Codec


def select_fields(rows: List[Row], fields: Sequence[str] | None) -> List[Row]:
    if not fields:
        return rows
    return [{name: row.get(name) for name in fields} for row in rows]


class ExportStream:
    """
    Async iterator of encoded fragments for one streaming export.

    Each iteration reads one chunk at the current offset. An empty chunk
    closes the framing; a short chunk is encoded and closes the framing
    in the same step. An error yields one terminal error fragment and
    marks the export failed. Closing the stream early marks it cancelled.

    Example:
        stream = await engine.create_export_stream("acme", {"table": "events"})
        async with stream:
            async for fragment in stream:
                ...
    """

    def __init__(self, engine: "ExportEngine", plan: _Plan, chunk_size: int):
        self._engine = engine
        self._plan = plan
        self._chunk_size = chunk_size
        self._offset = max(int(plan.options.offset or 0), 0)
        self._framing = StreamFraming(plan.codec)
        self._done = False

    @property
    def export_id(self) -> str:
        return self._plan.job.id

    @property
    def content_type(self) -> str:
        return self._plan.codec.content_type

    @property
    def job(self) -> ExportJob:
        return self._plan.job

    def __aiter__(self) -> "ExportStream":
        return self

    async def __anext__(self) -> str:
        job = self._plan.job
        if self._done:
            raise StopAsyncIteration
        if job.cancel_requested:
            self._done = True
            await self._engine._finish(job, JobStatus.CANCELLED)
            raise StopAsyncIteration

        try:
            rows = await self._engine.reader.read_chunk(
                self._plan.scoped,
                offset=self._offset,
                limit=self._chunk_size,
                order_by=self._plan.order_by,
                sort_order=self._plan.sort_order,
                context={"export_id": job.id},
            )
            if not rows:
                fragment = self._framing.close()
                self._done = True
                await self._engine._finish(job, JobStatus.COMPLETED)
            else:
                is_last = len(rows) < self._chunk_size
                processed = select_fields([flatten_row(r) for r in rows], self._plan.options.fields)
                fragment = self._framing.fragment(processed, is_last=is_last)
                self._offset += len(rows)
                job.records += len(rows)
                if is_last:
                    self._done = True
                    await self._engine._finish(job, JobStatus.COMPLETED)
        except Exception as e:
            self._done = True
            await self._engine._finish(job, JobStatus.FAILED, error=e)
            fragment = self._framing.fail(str(e))

        if not fragment and self._done:
            raise StopAsyncIteration
        return fragment

    async def aclose(self) -> None:
        if not self._done:
            self._done = True
            await self._engine._finish(self._plan.job, JobStatus.CANCELLED)

    async def __aenter__(self) -> "ExportStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


class ExportEngine:
    """
    Tenant-scoped data export.

    Args:
        config: Mover configuration
        executor: Query collaborator
        events: Lifecycle event bus (a private one is created if omitted)
        rate_limiter: Admission control (built from rate_limit_rpm if omitted)
        translator: Callable turning temporal-query text and a tenant id
            into (sql, params); required for {"timeql": ...} queries
        http_client: httpx client used for webhook delivery
    """

    def __init__(
        self,
        config: MoverConfig,
        executor: QueryExecutor,
        *,
        events: EventBus | None = None,
        rate_limiter: RateLimiter | None = None,
        translator: Translator | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.executor = executor
        self.events = events or EventBus()
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit_rpm)
        self.translator = translator
        self.http_client = http_client
        self.reader = ChunkedTableReader.from_config(executor, config)
        self._exports: Dict[str, ExportJob] = {}

    async def _emit(self, kind: EventKind, job_id: str, **kwargs: Any) -> None:
        await self.events.emit(LifecycleEvent(kind=kind, job_id=job_id, **kwargs))

    # ------------------------------------------------------------------
    # Validation and planning
    # ------------------------------------------------------------------

    async def _scope(self, tenant_id: str, query: Mapping[str, Any]) -> ScopedQuery:
        if "table" in query:
            return self.reader.scope_table(
                query["table"],
                tenant_id,
                start_time=query.get("startTime"),
                end_time=query.get("endTime"),
                filters=normalize_filters(query.get("filters")),
            )

        if "timeql" in query:
            if self.translator is None:
                raise ConfigurationError("No temporal query translator is configured")
            translated = self.translator(query["timeql"], tenant_id)
            if inspect.isawaitable(translated):
                translated = await translated
            sql, params = translated
            return self.reader.scope_raw(sql, params, tenant_id)

        if "sql" in query:
            return self.reader.scope_raw(query["sql"], query.get("params"), tenant_id)

        raise ConfigurationError(
            "Query must contain one of: table, timeql, sql",
            details={"keys": sorted(query)},
        )

    async def _plan(
        self,
        tenant_id: str,
        query: Any,
        options: ExportOptions,
        *,
        streaming: bool,
    ) -> _Plan:
        if not tenant_id or not str(tenant_id).strip():
            raise ConfigurationError(explain_missing_tenant())

        # Admission comes first: a refused request does no other work
        self.rate_limiter.check(tenant_id)

        # Streams default to NDJSON, batch exports to the configured format
        requested_format = options.format or (
            DataFormat.NDJSON.value if streaming else DataFormat(self.config.default_format).value
        )
        data_format, substituted_from = resolve_format(
            requested_format,
            self.config.export_allowed_formats,
            options.allow_format_substitution,
        )

        if options.compression and options.compression not in self.config.compression_formats:
            raise ConfigurationError(
                explain_unsupported_compression(options.compression, self.config.compression_formats)
            )

        try:
            destination = Destination(options.destination)
        except ValueError:
            raise ConfigurationError(
                f"Unsupported destination: {options.destination!r}",
                details={"allowed": [d.value for d in Destination]},
            )
        if destination is Destination.WEBHOOK and not options.webhook_url:
            raise ConfigurationError(explain_missing_webhook_url())
        if streaming and destination is Destination.WEBHOOK:
            raise ConfigurationError("Streaming exports support the response and file destinations")

        if not isinstance(query, Mapping) or not query:
            raise ConfigurationError("Query object is required")

        if options.fields:
            for name in options.fields:
                require_identifier(name, "column")

        sort_order = str(options.sort_order).upper()
        if sort_order not in ("ASC", "DESC"):
            raise ConfigurationError(f"sort_order must be ASC or DESC, got {options.sort_order!r}")

        codec = get_codec(data_format)
        if streaming:
            # Raises for formats without streaming framing
            StreamFraming(codec)

        scoped = await self._scope(tenant_id, query)

        if options.sort_by:
            order_by: Tuple[str, ...] = (require_identifier(options.sort_by, "column"),)
        elif "table" in query:
            order_by = (self.config.timestamp_column,)
        else:
            order_by = ()

        export_id = f"export_{ULID()}"
        job = ExportJob(
            id=export_id,
            tenant_id=tenant_id,
            query=dict(query),
            format=data_format,
            destination=destination,
            streaming=streaming,
            compression=options.compression,
            substituted_from=substituted_from.value if substituted_from else None,
        )
        return _Plan(
            job=job,
            options=options,
            scoped=scoped,
            order_by=order_by,
            sort_order=sort_order,
            codec=codec,
        )

    async def _start(self, plan: _Plan) -> None:
        job = plan.job
        self._exports[job.id] = job
        logger.info(
            "export_started",
            export_id=job.id,
            tenant_id=job.tenant_id,
            format=job.format.value,
            destination=job.destination.value,
            streaming=job.streaming,
        )
        await self._emit(EventKind.STARTED, job.id, stage="export")

    async def _finish(
        self,
        job: ExportJob,
        status: JobStatus,
        error: Exception | None = None,
    ) -> None:
        if job.finished:
            return
        job.status = status
        job.completed_at = datetime.now(UTC)

        if status is JobStatus.COMPLETED:
            logger.info("export_completed", export_id=job.id, records=job.records)
            await self._emit(EventKind.COMPLETED, job.id, stage="export", payload={"records": job.records})
        elif status is JobStatus.FAILED:
            job.error = str(error)
            logger.error("export_failed", export_id=job.id, error=str(error))
            await self._emit(EventKind.FAILED, job.id, stage="export", error=str(error))
        else:
            logger.info("export_cancelled", export_id=job.id, records=job.records)
            await self._emit(EventKind.CANCELLED, job.id, stage="export")

    def _metadata(self, job: ExportJob, options: ExportOptions, record_count: int) -> Dict[str, Any]:
        return {
            "exportId": job.id,
            "tenantId": job.tenant_id,
            "format": job.format.value,
            "substitutedFrom": job.substituted_from,
            "recordCount": record_count,
            "exportedAt": datetime.now(UTC).isoformat(),
            "query": job.query,
            "fields": list(options.fields) if options.fields else None,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def export_data(
        self,
        tenant_id: str,
        query: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> Dict[str, Any]:
        """
        Export tenant data.

        Options (mapping or keyword arguments): format, compression, limit,
        offset, sort_by, sort_order, fields, streaming, destination,
        webhook_url, filename, include_metadata, chunk_size,
        allow_format_substitution.

        Returns:
            response: {exportId, data, metadata}
            file:     {exportId, filepath, metadata}
            webhook:  {exportId, webhookUrl, sent, metadata}
            streaming response: {exportId, stream: ExportStream}
            streaming file:     {exportId, stream: True, filepath, stats}

        Raises:
            AdmissionError: Rate limit exceeded
            ConfigurationError: Invalid options or query
            SafetyViolation: Unsafe query
        """
        opts = ExportOptions.from_mapping(options, **overrides)
        plan = await self._plan(tenant_id, query, opts, streaming=opts.streaming)

        if opts.streaming:
            stream = await self._open_stream(plan)
            if plan.job.destination is Destination.FILE:
                return await self._stream_to_file(plan, stream)
            return {"exportId": plan.job.id, "stream": stream}

        await self._start(plan)
        try:
            return await self._batch_export(plan)
        except Exception as e:
            await self._finish(plan.job, JobStatus.FAILED, error=e)
            raise

    async def create_export_stream(
        self,
        tenant_id: str,
        query: Mapping[str, Any],
        options: Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> ExportStream:
        """
        Open a streaming export.

        The default format for streams is NDJSON.
        """
        merged = {"format": DataFormat.NDJSON.value, **dict(options or {}), **overrides, "streaming": True}
        opts = ExportOptions.from_mapping(merged)
        plan = await self._plan(tenant_id, query, opts, streaming=True)
        return await self._open_stream(plan)

    async def _open_stream(self, plan: _Plan) -> ExportStream:
        await self._start(plan)
        chunk_size = plan.options.chunk_size or self.config.stream_chunk_size
        return ExportStream(self, plan, chunk_size)

    async def _stream_to_file(self, plan: _Plan, stream: ExportStream) -> Dict[str, Any]:
        job = plan.job
        path = export_path(
            self.config.export_dir,
            plan.options.filename or f"export_{job.id}",
            plan.codec.extension,
            plan.options.compression,
        )
        sink = await FileStreamSink(path, plan.options.compression).open()
        try:
            async for fragment in stream:
                await sink.write(fragment)
        except BaseException:
            await sink.abort()
            await stream.aclose()
            raise

        if job.status is not JobStatus.COMPLETED:
            await sink.abort()
            return {"exportId": job.id, "stream": True, "status": job.status.value, "error": job.error}

        job.filepath = str(await sink.commit())
        return {
            "exportId": job.id,
            "stream": True,
            "filepath": job.filepath,
            "stats": {"totalRecords": job.records, "format": job.format.value},
        }

    async def _batch_export(self, plan: _Plan) -> Dict[str, Any]:
        job, opts = plan.job, plan.options
        limit = min(opts.limit or self.config.default_limit, self.config.max_limit)

        rows = await self.reader.read_chunk(
            plan.scoped,
            offset=opts.offset,
            limit=limit,
            order_by=plan.order_by,
            sort_order=plan.sort_order,
            context={"export_id": job.id},
        )
        processed = select_fields([flatten_row(r) for r in rows], opts.fields)
        job.records = len(processed)

        metadata = self._metadata(job, opts, len(processed))
        encoded = plan.codec.encode(processed, metadata if opts.include_metadata else {})
        payload = encoded.decode("utf-8")

        # Last cancellation point: nothing below awaits before the destination
        # I/O starts, and a delivered payload always completes the export.
        if job.cancel_requested:
            return await self._cancelled(job, metadata)
        job.delivering = True

        if job.destination is Destination.RESPONSE:
            result = {"exportId": job.id, "data": payload, "metadata": metadata}

        elif job.destination is Destination.FILE:
            path = export_path(
                self.config.export_dir,
                opts.filename or f"export_{job.id}",
                plan.codec.extension,
                opts.compression,
            )
            job.filepath = str(await write_export_file(path, encoded, opts.compression))
            result = {"exportId": job.id, "filepath": job.filepath, "metadata": metadata}

        else:
            await post_webhook(
                opts.webhook_url,
                export_id=job.id,
                fmt=job.format.value,
                payload=payload,
                client=self.http_client,
                timeout=self.config.backend_timeout,
            )
            result = {
                "exportId": job.id,
                "webhookUrl": opts.webhook_url,
                "sent": True,
                "metadata": metadata,
            }

        await self._finish(job, JobStatus.COMPLETED)
        return result

    async def _cancelled(self, job: ExportJob, metadata: Dict[str, Any]) -> Dict[str, Any]:
        await self._finish(job, JobStatus.CANCELLED)
        return {"exportId": job.id, "cancelled": True, "metadata": metadata}

    def get_export_status(self, export_id: str) -> Dict[str, Any] | None:
        job = self._exports.get(export_id)
        return job.to_dict() if job else None

    async def cancel_export(self, export_id: str) -> bool:
        """
        Cancel a running export.

        Streams stop at their next fragment. A batch export only records the
        request and settles it at its last cancellation point.

        Returns:
            False for unknown or finished exports, and for batch exports
            already delivering their payload
        """
        job = self._exports.get(export_id)
        if job is None or job.finished or job.delivering:
            return False
        job.cancel_requested = True
        if job.streaming:
            await self._finish(job, JobStatus.CANCELLED)
        return True

    def get_active_exports(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self._exports.values() if not job.finished]

    async def shutdown(self) -> None:
        """Cancel running exports."""
        for job in list(self._exports.values()):
            if not job.finished:
                await self.cancel_export(job.id)
        logger.info("export_engine_shutdown", exports=len(self._exports))
