# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application with DataMover Integration.

Serves tenant-scoped backup, restore and export endpoints for the
application database, plus a scheduled retention sweep.

Run with:
    uvicorn examples.basic_app:app --reload

Environment variables:
    DATABASE_URL: PostgreSQL connection URL (SQLite file app.db when unset)
    DATAMOVER_ADMIN_API_KEY: API key for the datamover endpoints
    DATAMOVER_S3_BUCKET: Optional S3 bucket for remote backups
    DATAMOVER_*: See datamover.env.create_config_from_env
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from datamover.builder import (
    allow_formats,
    build_config,
    create_empty_config,
    keep_backups_for,
    pipe,
    store_backups_in,
    with_rate_limit,
    with_s3,
)
from datamover.env import create_config_from_env
from datamover.integrations import datamover_lifespan, get_export_engine
from datamover.query.executor import PostgresExecutor, SQLiteExecutor


def create_datamover_config():
    """
    Create DataMover configuration.

    DATAMOVER_* variables win when DATAMOVER_FROM_ENV=true; otherwise the
    functional builder assembles a development setup.
    """
    if os.getenv("DATAMOVER_FROM_ENV", "false").lower() == "true":
        return create_config_from_env()

    setup = pipe(
        lambda c: store_backups_in(c, os.getenv("BACKUP_DIR", "./backups")),
        lambda c: keep_backups_for(c, 30),
        lambda c: allow_formats(c, ["json", "ndjson", "csv", "sql"]),
        lambda c: with_rate_limit(c, 30),
    )
    config = setup(create_empty_config())

    bucket = os.getenv("DATAMOVER_S3_BUCKET")
    if bucket:
        config = with_s3(config, bucket, region=os.getenv("AWS_REGION", "us-east-1"))

    return build_config(config)


async def connect_database():
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return await PostgresExecutor.connect(database_url, min_size=1, max_size=5)
    return await SQLiteExecutor.connect(os.getenv("SQLITE_PATH", "app.db"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    executor = await connect_database()
    try:
        async with datamover_lifespan(app, create_datamover_config(), executor, prefix="/admin/data"):
            yield
    finally:
        await executor.close()


# Create FastAPI app
app = FastAPI(
    title="My App with DataMover",
    description="Example application with tenant-scoped backups and exports",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Welcome to My App with DataMover",
        "docs": "/docs",
        "datamover": "/admin/data/backup",
    }


@app.get("/exports/active")
async def active_exports():
    """Exports currently running in this process."""
    return {"exports": get_export_engine(app).get_active_exports()}


# ============================================================================
# DataMover Endpoints (registered by datamover_lifespan)
# ============================================================================
#
# POST   /admin/data/backup                     - Queue a backup job
# GET    /admin/data/backup                     - List stored backups
# GET    /admin/data/backup/{id}/status         - Backup job status
# DELETE /admin/data/backup/{id}                - Delete a stored backup
# POST   /admin/data/backup/{id}/cancel         - Cancel a backup job
# POST   /admin/data/backup/{id}/restore        - Restore tables from a backup
# POST   /admin/data/export                     - Batch or streaming export
# GET    /admin/data/export/stream?table=...    - Streaming export of one table
# GET    /admin/data/export/{id}/status         - Export status
# POST   /admin/data/export/{id}/cancel         - Cancel an export
#
# All endpoints require: Authorization: Bearer <DATAMOVER_ADMIN_API_KEY>
# Export endpoints also require: X-Tenant-ID: <tenant>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
