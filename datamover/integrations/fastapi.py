# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover FastAPI Integration - HTTP surface for backups and exports.

This module provides:
- Protected backup endpoints (create, list, status, delete, restore)
- Tenant-scoped export endpoints (batch, streaming, status, cancel)
- Mapping of datamover errors to HTTP status codes
- Lifespan management with the maintenance scheduler
"""

import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from datamover.backup.engine import BackupEngine
from datamover.config import MoverConfig
from datamover.exceptions import (
    AdmissionError,
    ConfigurationError,
    DataMoverError,
    IntegrityError,
    NotFoundError,
    SafetyViolation,
    TransientIOError,
)
from datamover.export.engine import ExportEngine, ExportStream
from datamover.query.executor import QueryExecutor
from datamover.scheduler import start_maintenance_scheduler
from datamover.storage.registry import build_storage_registry

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the DATAMOVER_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("DATAMOVER_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="DATAMOVER_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


async def require_tenant(x_tenant_id: str | None = Header(default=None)) -> str:
    """Tenant id from the X-Tenant-ID header; exports cannot run without one."""
    if not x_tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header required")
    return x_tenant_id


async def optional_tenant(x_tenant_id: str | None = Header(default=None)) -> str | None:
    return x_tenant_id or None


def status_for(error: DataMoverError) -> int:
    """HTTP status for a datamover error."""
    if isinstance(error, AdmissionError):
        return 429
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, IntegrityError):
        return 409
    if isinstance(error, (ConfigurationError, SafetyViolation)):
        return 400
    if isinstance(error, TransientIOError):
        return 502
    return 500


async def _datamover_error_handler(request: Request, exc: DataMoverError) -> JSONResponse:
    status = status_for(exc)
    headers = {}
    if isinstance(exc, AdmissionError):
        headers["Retry-After"] = str(max(int(exc.retry_after + 0.999), 1))
    if status >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "message": exc.message, "details": exc.details},
        headers=headers,
    )


class BackupRequest(BaseModel):
    tables: List[str]
    format: str | None = None
    compression: bool = True
    encryption: bool = False
    storage_backend: str = "local"
    start_time: str | None = None
    end_time: str | None = None
    include_schema: bool = True
    description: str = ""
    all_tenants: bool = False
    allow_format_substitution: bool = False


class RestoreRequest(BaseModel):
    backend: str = "local"
    tables: List[str] | None = None
    truncate: bool = True
    batch_size: int | None = None


class ExportRequest(BaseModel):
    query: Dict[str, Any]
    options: Dict[str, Any] = Field(default_factory=dict)


def _streaming_response(stream: ExportStream) -> StreamingResponse:
    return StreamingResponse(
        stream,
        media_type=stream.content_type,
        headers={"X-Export-ID": stream.export_id},
    )


def register_datamover_routes(
    app: FastAPI,
    backup_engine: BackupEngine,
    export_engine: ExportEngine,
    prefix: str = "",
) -> None:
    """
    Register datamover endpoints on a FastAPI app.

    All endpoints require Bearer token authentication. Export endpoints
    also require the X-Tenant-ID header.

    Args:
        app: FastAPI application
        backup_engine: Backup engine
        export_engine: Export engine
        prefix: URL prefix for endpoints
    """
    app.add_exception_handler(DataMoverError, _datamover_error_handler)

    @app.post(f"{prefix}/backup", status_code=202, dependencies=[Depends(verify_api_key)])
    async def create_backup(
        body: BackupRequest,
        tenant_id: str | None = Depends(optional_tenant),
    ) -> dict:
        """
        Queue a backup job.

        Without X-Tenant-ID the request must set all_tenants explicitly.
        """
        if tenant_id is None and not body.all_tenants:
            raise HTTPException(
                status_code=400,
                detail="X-Tenant-ID header required unless all_tenants is true",
            )
        backup_id = await backup_engine.create_backup(
            tables=body.tables,
            tenant_id=tenant_id,
            format=body.format,
            compression=body.compression,
            encryption=body.encryption,
            backend=body.storage_backend,
            start_time=body.start_time,
            end_time=body.end_time,
            include_schema=body.include_schema,
            created_by="api",
            description=body.description,
            allow_format_substitution=body.allow_format_substitution,
        )
        return {"backupId": backup_id, "status": backup_engine.get_backup_status(backup_id)["status"]}

    @app.get(f"{prefix}/backup", dependencies=[Depends(verify_api_key)])
    async def list_backups(backend: str = "local") -> dict:
        return {
            "backend": backend,
            "backups": await backup_engine.list_backups(backend),
            "backends": backup_engine.storage.describe(),
        }

    @app.get(f"{prefix}/backup/{{backup_id}}/status", dependencies=[Depends(verify_api_key)])
    async def backup_status(backup_id: str) -> dict:
        status = backup_engine.get_backup_status(backup_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Backup job not found: {backup_id}")
        return status

    @app.delete(f"{prefix}/backup/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def delete_backup(backup_id: str, backend: str = "local") -> dict:
        await backup_engine.delete_backup(backup_id, backend)
        return {"backupId": backup_id, "deleted": True}

    @app.post(f"{prefix}/backup/{{backup_id}}/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_backup(backup_id: str) -> dict:
        if backup_engine.get_backup_status(backup_id) is None:
            raise HTTPException(status_code=404, detail=f"Backup job not found: {backup_id}")
        return {"backupId": backup_id, "cancelled": await backup_engine.cancel_backup(backup_id)}

    @app.post(f"{prefix}/backup/{{backup_id}}/restore", dependencies=[Depends(verify_api_key)])
    async def restore_backup(backup_id: str, body: RestoreRequest | None = None) -> dict:
        body = body or RestoreRequest()
        result = await backup_engine.restore_backup(
            backup_id,
            backend=body.backend,
            tables=body.tables,
            truncate=body.truncate,
            batch_size=body.batch_size,
        )
        return {"backupId": backup_id, "tables": result}

    @app.post(f"{prefix}/export", dependencies=[Depends(verify_api_key)])
    async def export(body: ExportRequest, tenant_id: str = Depends(require_tenant)):
        result = await export_engine.export_data(tenant_id, body.query, body.options)
        stream = result.get("stream")
        if isinstance(stream, ExportStream):
            return _streaming_response(stream)
        return result

    @app.get(f"{prefix}/export/stream", dependencies=[Depends(verify_api_key)])
    async def export_stream(
        table: str,
        tenant_id: str = Depends(require_tenant),
        format: str = "ndjson",
        start_time: str | None = None,
        end_time: str | None = None,
        fields: str | None = None,
        sort_by: str | None = None,
        sort_order: str = "DESC",
        chunk_size: int | None = None,
    ) -> StreamingResponse:
        """
        Stream one table for the calling tenant.

        fields is a comma-separated projection.
        """
        query: Dict[str, Any] = {"table": table}
        if start_time:
            query["startTime"] = start_time
        if end_time:
            query["endTime"] = end_time
        stream = await export_engine.create_export_stream(
            tenant_id,
            query,
            format=format,
            fields=[f.strip() for f in fields.split(",") if f.strip()] if fields else None,
            sort_by=sort_by,
            sort_order=sort_order,
            chunk_size=chunk_size,
        )
        return _streaming_response(stream)

    @app.get(f"{prefix}/export/{{export_id}}/status", dependencies=[Depends(verify_api_key)])
    async def export_status(export_id: str) -> dict:
        status = export_engine.get_export_status(export_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Export not found: {export_id}")
        return status

    @app.post(f"{prefix}/export/{{export_id}}/cancel", dependencies=[Depends(verify_api_key)])
    async def cancel_export(export_id: str) -> dict:
        if export_engine.get_export_status(export_id) is None:
            raise HTTPException(status_code=404, detail=f"Export not found: {export_id}")
        return {"exportId": export_id, "cancelled": await export_engine.cancel_export(export_id)}


@asynccontextmanager
async def datamover_lifespan(
    app: FastAPI,
    config: MoverConfig,
    executor: QueryExecutor,
    prefix: str = "",
    **export_kwargs: Any,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: datamover_lifespan(app, config, executor))

    Builds the storage registry and both engines, registers the routes and
    starts the maintenance scheduler.

    Args:
        app: FastAPI application
        config: Mover configuration
        executor: Query collaborator for the application database
        prefix: URL prefix for endpoints
        **export_kwargs: Passed to ExportEngine (translator, http_client, ...)
    """
    logger.info("datamover_lifespan_starting", backup_dir=str(config.backup_dir))

    storage = await build_storage_registry(config)
    backup_engine = BackupEngine(config, executor, storage)
    export_engine = ExportEngine(config, executor, **export_kwargs)

    app.state.datamover_config = config
    app.state.datamover_backup = backup_engine
    app.state.datamover_export = export_engine

    register_datamover_routes(app, backup_engine, export_engine, prefix)

    scheduler = start_maintenance_scheduler(
        backup_engine,
        export_engine.rate_limiter,
        cleanup_interval_hours=config.cleanup_interval_hours,
    )

    logger.info("datamover_lifespan_started", backends=storage.names())

    try:
        yield
    finally:
        logger.info("datamover_lifespan_stopping")
        scheduler.shutdown(wait=False)
        await export_engine.shutdown()
        await backup_engine.shutdown()
        await storage.close()
        logger.info("datamover_lifespan_stopped")


def get_backup_engine(app: FastAPI) -> BackupEngine:
    """
    Get the backup engine from a FastAPI app.

    Raises:
        RuntimeError: If datamover is not initialized
    """
    engine = getattr(app.state, "datamover_backup", None)
    if engine is None:
        raise RuntimeError("DataMover not initialized. Use datamover_lifespan first.")
    return engine


def get_export_engine(app: FastAPI) -> ExportEngine:
    """
    Get the export engine from a FastAPI app.

    Raises:
        RuntimeError: If datamover is not initialized
    """
    engine = getattr(app.state, "datamover_export", None)
    if engine is None:
        raise RuntimeError("DataMover not initialized. Use datamover_lifespan first.")
    return engine
