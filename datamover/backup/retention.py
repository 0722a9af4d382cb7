# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Retention sweep across storage backends.

Backup ids are backup_<ULID>, so the creation time is read from the id
itself and no backend metadata is needed.
"""

from datetime import datetime, timedelta, UTC
from typing import Awaitable, Callable, Container, Dict, List

import structlog
from ulid import ULID

from datamover.storage.registry import StorageRegistry

logger = structlog.get_logger()

BACKUP_ID_PREFIX = "backup_"

DeleteCallback = Callable[[str, str], Awaitable[None]]


def new_backup_id() -> str:
    return f"{BACKUP_ID_PREFIX}{ULID()}"


def backup_created_at(backup_id: str) -> datetime | None:
    """Creation time encoded in a backup id, or None if the id is foreign."""
    if not backup_id.startswith(BACKUP_ID_PREFIX):
        return None
    try:
        return ULID.from_str(backup_id[len(BACKUP_ID_PREFIX):]).datetime
    except ValueError:
        return None


async def sweep_expired_backups(
    registry: StorageRegistry,
    retention_days: int,
    *,
    now: datetime | None = None,
    skip: Container[str] = (),
    on_delete: DeleteCallback | None = None,
) -> Dict[str, List[str]]:
    """
    Delete backups older than retention_days on every backend.

    A backend that fails to list or delete is logged and the sweep moves
    on to the next one.

    Args:
        registry: Registered backends
        retention_days: Age limit
        now: Reference time (default: current UTC time)
        skip: Ids never to delete (e.g. jobs still running)
        on_delete: Awaited with (backend name, backup id) per deletion

    Returns:
        Deleted ids per backend name
    """
    cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
    deleted: Dict[str, List[str]] = {}

    for backend in registry:
        removed: List[str] = []
        deleted[backend.name] = removed
        try:
            entries = await backend.list()
        except Exception as e:
            logger.error("retention_list_failed", backend=backend.name, error=str(e))
            continue

        for entry in entries:
            backup_id = entry["id"]
            created_at = backup_created_at(backup_id)
            if created_at is None or backup_id in skip or created_at >= cutoff:
                continue
            try:
                await backend.delete(backup_id)
            except Exception as e:
                logger.error(
                    "retention_delete_failed",
                    backend=backend.name,
                    backup_id=backup_id,
                    error=str(e),
                )
                continue
            removed.append(backup_id)
            logger.info(
                "backup_expired",
                backend=backend.name,
                backup_id=backup_id,
                created_at=created_at.isoformat(),
            )
            if on_delete is not None:
                await on_delete(backend.name, backup_id)

    logger.info(
        "retention_sweep_complete",
        retention_days=retention_days,
        deleted=sum(len(ids) for ids in deleted.values()),
    )
    return deleted
