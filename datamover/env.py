# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

These helpers are small, convenient wrappers around create_config(). They
make it easy to build a configuration from environment variables, which is
how the FastAPI integration and the example app are configured.
"""

from __future__ import annotations

import os
from pathlib import Path

from datamover.builder import create_config
from datamover.config import AzureSettings, GCSSettings, MoverConfig, S3Settings
from datamover.errors import explain_invalid_int_env
from datamover.exceptions import ConfigurationError


def _parse_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if parsed < 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return parsed


def _s3_from_env() -> S3Settings | None:
    bucket = os.getenv("DATAMOVER_S3_BUCKET")
    if not bucket:
        return None
    return S3Settings(
        bucket=bucket,
        region=os.getenv("AWS_REGION", "us-east-1"),
        prefix=os.getenv("DATAMOVER_S3_PREFIX", "backups/"),
        endpoint_url=os.getenv("DATAMOVER_S3_ENDPOINT_URL") or None,
    )


def _gcs_from_env() -> GCSSettings | None:
    bucket = os.getenv("DATAMOVER_GCS_BUCKET")
    if not bucket:
        return None
    return GCSSettings(
        bucket=bucket,
        hmac_key_id=os.getenv("DATAMOVER_GCS_HMAC_KEY_ID"),
        hmac_secret=os.getenv("DATAMOVER_GCS_HMAC_SECRET"),
        prefix=os.getenv("DATAMOVER_GCS_PREFIX", "backups/"),
    )


def _azure_from_env() -> AzureSettings | None:
    connection_string = os.getenv("DATAMOVER_AZURE_CONNECTION_STRING")
    if not connection_string:
        return None
    return AzureSettings(
        connection_string=connection_string,
        container=os.getenv("DATAMOVER_AZURE_CONTAINER", "backups"),
        prefix=os.getenv("DATAMOVER_AZURE_PREFIX", "backups/"),
    )


def create_config_from_env() -> MoverConfig:
    """
    Create a MoverConfig from environment variables.

    Optional environment variables:
        - DATAMOVER_BACKUP_DIR: Local backup directory (default: ./backups)
        - DATAMOVER_EXPORT_DIR: Export file directory (default: ./exports)
        - DATAMOVER_RETENTION_DAYS: Non-negative integer (default: 90)
        - DATAMOVER_CHUNK_SIZE: Records per chunk file (default: 10000)
        - DATAMOVER_MAX_CONCURRENT_BACKUPS: (default: 3)
        - DATAMOVER_RATE_LIMIT_RPM: Export requests per tenant per minute (default: 60)
        - DATAMOVER_MAX_LIMIT: Hard cap on exported rows (default: 100000)
        - DATAMOVER_S3_BUCKET / AWS_REGION / DATAMOVER_S3_ENDPOINT_URL
        - DATAMOVER_GCS_BUCKET / DATAMOVER_GCS_HMAC_KEY_ID / DATAMOVER_GCS_HMAC_SECRET
        - DATAMOVER_AZURE_CONNECTION_STRING / DATAMOVER_AZURE_CONTAINER
    """
    backup_dir = os.getenv("DATAMOVER_BACKUP_DIR")
    export_dir = os.getenv("DATAMOVER_EXPORT_DIR")

    return create_config(
        backup_dir=Path(backup_dir) if backup_dir else None,
        export_dir=Path(export_dir) if export_dir else None,
        retention_days=_parse_int("DATAMOVER_RETENTION_DAYS", 90),
        chunk_size=_parse_int("DATAMOVER_CHUNK_SIZE", 10_000),
        max_concurrent_backups=_parse_int("DATAMOVER_MAX_CONCURRENT_BACKUPS", 3),
        rate_limit_rpm=_parse_int("DATAMOVER_RATE_LIMIT_RPM", 60),
        max_limit=_parse_int("DATAMOVER_MAX_LIMIT", 100_000),
        s3=_s3_from_env(),
        gcs=_gcs_from_env(),
        azure=_azure_from_env(),
    )
