# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
FastAPI integration tests.
"""

import json

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from datamover.backup import BackupEngine
from datamover.export import ExportEngine, RateLimiter
from datamover.integrations.fastapi import register_datamover_routes
from datamover.storage import build_storage_registry

AUTH = {"Authorization": "Bearer test-api-key-12345"}


@pytest_asyncio.fixture
async def api(seeded_executor, test_config):
    app = FastAPI()
    registry = await build_storage_registry(test_config)
    backup_engine = BackupEngine(test_config, seeded_executor, registry)
    export_engine = ExportEngine(test_config, seeded_executor, rate_limiter=RateLimiter(3))
    register_datamover_routes(app, backup_engine, export_engine)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, backup_engine, export_engine


@pytest.mark.asyncio
async def test_unauthorized_access(api):
    """Test that endpoints require authentication."""
    client, _, _ = api

    # No auth header
    response = await client.get("/backup")
    assert response.status_code == 401

    # Wrong API key
    response = await client.get("/backup", headers={"Authorization": "Bearer wrong-key"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_backup_endpoints(api):
    client, backup_engine, _ = api
    headers = {**AUTH, "X-Tenant-ID": "acme"}

    response = await client.post("/backup", json={"tables": ["events"]}, headers=headers)
    assert response.status_code == 202
    backup_id = response.json()["backupId"]

    await backup_engine.wait_for_backup(backup_id, timeout=30)

    response = await client.get(f"/backup/{backup_id}/status", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["status"] == "completed"

    response = await client.get("/backup", headers=AUTH)
    assert [b["id"] for b in response.json()["backups"]] == [backup_id]

    response = await client.post(f"/backup/{backup_id}/restore", json={"truncate": False}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["tables"]["events"]["recordsRestored"] == 30

    response = await client.delete(f"/backup/{backup_id}", headers=AUTH)
    assert response.json() == {"backupId": backup_id, "deleted": True}

    response = await client.delete(f"/backup/{backup_id}", headers=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_backup_without_tenant_needs_explicit_all_tenants(api):
    client, backup_engine, _ = api

    response = await client.post("/backup", json={"tables": ["events"]}, headers=AUTH)
    assert response.status_code == 400

    response = await client.post(
        "/backup", json={"tables": ["events"], "all_tenants": True}, headers=AUTH
    )
    assert response.status_code == 202
    status = await backup_engine.wait_for_backup(response.json()["backupId"], timeout=30)
    assert status["manifest"]["stats"]["totalRecords"] == 40


@pytest.mark.asyncio
async def test_errors_map_to_status_codes(api):
    client, _, _ = api
    headers = {**AUTH, "X-Tenant-ID": "acme"}

    response = await client.post(
        "/backup", json={"tables": ["events"], "storage_backend": "ftp"}, headers=headers
    )
    assert response.status_code == 400
    assert response.json()["error"] == "ConfigurationError"

    response = await client.post(
        "/export",
        json={"query": {"sql": "DELETE FROM events"}},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "SafetyViolation"

    response = await client.get("/backup/backup_missing/status", headers=AUTH)
    assert response.status_code == 404

    response = await client.post("/backup/backup_missing/restore", headers=AUTH)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_export_requires_tenant_header(api):
    client, _, _ = api
    response = await client.post("/export", json={"query": {"table": "events"}}, headers=AUTH)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_batch_export_and_rate_limit(api):
    client, _, export_engine = api
    headers = {**AUTH, "X-Tenant-ID": "globex"}
    body = {"query": {"table": "events"}, "options": {"format": "ndjson"}}

    for _ in range(3):
        response = await client.post("/export", json=body, headers=headers)
        assert response.status_code == 200
    assert len(response.json()["data"].splitlines()) == 10

    status = await client.get(f"/export/{response.json()['exportId']}/status", headers=AUTH)
    assert status.json()["status"] == "completed"

    response = await client.post("/export", json=body, headers=headers)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_streaming_export_endpoint(api):
    client, _, export_engine = api
    headers = {**AUTH, "X-Tenant-ID": "acme"}

    response = await client.get(
        "/export/stream",
        params={"table": "events", "format": "json", "fields": "id,kind", "chunk_size": 7},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    document = json.loads(response.text)
    assert len(document["data"]) == 30
    assert set(document["data"][0]) == {"id", "kind"}

    export_id = response.headers["X-Export-ID"]
    assert export_engine.get_export_status(export_id)["status"] == "completed"


@pytest.mark.asyncio
async def test_streaming_via_post_export(api):
    client, _, _ = api
    headers = {**AUTH, "X-Tenant-ID": "globex"}

    response = await client.post(
        "/export",
        json={"query": {"table": "events"}, "options": {"format": "csv", "streaming": True}},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.text.splitlines()[0] == "id,tenant_id,timestamp,kind,amount,note"
    assert len(response.text.splitlines()) == 11


@pytest.mark.asyncio
async def test_cancel_unknown_export(api):
    client, _, _ = api
    response = await client.post("/export/export_missing/cancel", headers=AUTH)
    assert response.status_code == 404
