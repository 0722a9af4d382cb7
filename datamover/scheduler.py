# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Periodic maintenance: the retention sweep and the rate-limit window sweep.

Deciding *what* to back up on a schedule is left to the host application;
this scheduler only keeps storage and memory tidy.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from datamover.backup.engine import BackupEngine
from datamover.export.ratelimit import WINDOW_SECONDS, RateLimiter

logger = structlog.get_logger()

RETENTION_JOB_ID = "datamover_retention"
RATE_LIMIT_JOB_ID = "datamover_rate_limit_sweep"


async def run_retention_sweep(engine: BackupEngine) -> None:
    """Run one retention sweep; failures are logged, never raised."""
    logger.info("scheduled_retention_starting")
    try:
        deleted = await engine.cleanup_old_backups()
        logger.info(
            "scheduled_retention_completed",
            deleted=sum(len(ids) for ids in deleted.values()),
        )
    except Exception as e:
        logger.error("scheduled_retention_failed", error=str(e))


def sweep_rate_limits(rate_limiter: RateLimiter) -> None:
    removed = rate_limiter.sweep()
    logger.debug("rate_limit_sweep_completed", removed=removed, tracked=rate_limiter.tracked_tenants)


def create_maintenance_scheduler(
    backup_engine: BackupEngine | None = None,
    rate_limiter: RateLimiter | None = None,
    *,
    cleanup_interval_hours: int = 24,
) -> AsyncIOScheduler:
    """
    Build (but do not start) a scheduler with the maintenance jobs.

    Args:
        backup_engine: Engine whose backups are swept for retention
        rate_limiter: Limiter whose idle windows are dropped every minute
        cleanup_interval_hours: Interval of the retention sweep

    Returns:
        AsyncIOScheduler; call start() from inside the running event loop
    """
    scheduler = AsyncIOScheduler()

    if backup_engine is not None:
        scheduler.add_job(
            run_retention_sweep,
            trigger=IntervalTrigger(hours=cleanup_interval_hours),
            args=[backup_engine],
            id=RETENTION_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    if rate_limiter is not None:
        scheduler.add_job(
            sweep_rate_limits,
            trigger=IntervalTrigger(seconds=WINDOW_SECONDS),
            args=[rate_limiter],
            id=RATE_LIMIT_JOB_ID,
            replace_existing=True,
        )

    return scheduler


def start_maintenance_scheduler(
    backup_engine: BackupEngine | None = None,
    rate_limiter: RateLimiter | None = None,
    *,
    cleanup_interval_hours: int = 24,
) -> AsyncIOScheduler:
    """Create and start the maintenance scheduler."""
    scheduler = create_maintenance_scheduler(
        backup_engine,
        rate_limiter,
        cleanup_interval_hours=cleanup_interval_hours,
    )
    scheduler.start()

    job = scheduler.get_job(RETENTION_JOB_ID)
    logger.info(
        "scheduler_started",
        retention_interval_hours=cleanup_interval_hours,
        next_retention_run=job.next_run_time.isoformat() if job and job.next_run_time else None,
    )
    return scheduler
