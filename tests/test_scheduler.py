# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Maintenance scheduler tests.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from ulid import ULID

from datamover.backup import BackupEngine
from datamover.export import RateLimiter
from datamover.scheduler import (
    RATE_LIMIT_JOB_ID,
    RETENTION_JOB_ID,
    create_maintenance_scheduler,
    run_retention_sweep,
    start_maintenance_scheduler,
    sweep_rate_limits,
)
from datamover.storage import build_storage_registry


class BrokenEngine:
    async def cleanup_old_backups(self):
        raise RuntimeError("storage offline")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_scheduler_registers_maintenance_jobs():
    limiter = RateLimiter(5)
    scheduler = create_maintenance_scheduler(object(), limiter, cleanup_interval_hours=6)

    assert {job.id for job in scheduler.get_jobs()} == {RETENTION_JOB_ID, RATE_LIMIT_JOB_ID}
    retention = scheduler.get_job(RETENTION_JOB_ID)
    assert retention.trigger.interval == timedelta(hours=6)
    assert retention.max_instances == 1
    assert scheduler.get_job(RATE_LIMIT_JOB_ID).args == (limiter,)


def test_scheduler_skips_missing_components():
    scheduler = create_maintenance_scheduler(rate_limiter=RateLimiter(5))
    assert [job.id for job in scheduler.get_jobs()] == [RATE_LIMIT_JOB_ID]


@pytest.mark.asyncio
async def test_start_maintenance_scheduler():
    scheduler = start_maintenance_scheduler(rate_limiter=RateLimiter(5))
    try:
        assert scheduler.running
        assert scheduler.get_job(RATE_LIMIT_JOB_ID).next_run_time is not None
    finally:
        scheduler.shutdown(wait=False)


@pytest.mark.asyncio
async def test_retention_sweep_failure_is_logged_not_raised():
    # Must not raise
    await run_retention_sweep(BrokenEngine())


@pytest.mark.asyncio
async def test_retention_sweep_deletes_expired_backups(seeded_executor, test_config):
    engine = BackupEngine(test_config, seeded_executor, await build_storage_registry(test_config))

    old_id = f"backup_{ULID.from_datetime(datetime.now(timezone.utc) - timedelta(days=400))}"
    new_id = f"backup_{ULID()}"
    for backup_id in (old_id, new_id):
        directory = Path(test_config.backup_dir) / backup_id
        directory.mkdir(parents=True)
        (directory / "manifest.json").write_text("{}")

    await run_retention_sweep(engine)

    remaining = {entry["id"] for entry in await engine.list_backups()}
    assert remaining == {new_id}


def test_sweep_rate_limits_drops_idle_tenants():
    clock = FakeClock()
    limiter = RateLimiter(2, window=60, clock=clock)
    limiter.check("acme")
    clock.now += 30
    limiter.check("globex")

    clock.now += 31
    sweep_rate_limits(limiter)
    assert limiter.tracked_tenants == 1
    assert limiter.remaining("globex") == 1

    clock.now += 30
    sweep_rate_limits(limiter)
    assert limiter.tracked_tenants == 0
