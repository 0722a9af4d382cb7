# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Builder - Functional builder pattern for configuration.

This module provides pure functions for building MoverConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict, Iterable

from datamover.config import (
    AzureSettings,
    DataFormat,
    GCSSettings,
    MoverConfig,
    S3Settings,
)
from datamover.exceptions import ConfigurationError


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "backup_dir": Path("./backups"),
        "export_dir": Path("./exports"),
        "retention_days": 90,
        "compression_level": 6,
        "chunk_size": 10_000,
        "max_concurrent_backups": 3,
        "default_format": DataFormat.JSON,
        "allowed_formats": ("json", "csv", "ndjson", "xml", "sql"),
        "export_formats": ("json", "csv", "ndjson", "xml"),
        "compression_formats": ("gzip", "zstd"),
        "rate_limit_rpm": 60,
        "stream_chunk_size": 1_000,
        "default_limit": 10_000,
        "max_limit": 100_000,
        "restore_batch_size": 1_000,
        "tenant_column": "tenant_id",
        "timestamp_column": "timestamp",
        "backup_order_by": ("timestamp",),
        "schema_name": "public",
        "query_timeout": 60.0,
        "backend_timeout": 300.0,
        "cleanup_interval_hours": 24,
        "s3": None,
        "gcs": None,
        "azure": None,
    }


def store_backups_in(config: ConfigDict, backup_dir: Path | str) -> ConfigDict:
    """
    Set the local backup directory.

    Args:
        config: Current configuration dictionary
        backup_dir: Directory holding chunk files, manifests and bundles

    Returns:
        New configuration dictionary with backup_dir set
    """
    return {**config, "backup_dir": Path(backup_dir)}


def write_exports_to(config: ConfigDict, export_dir: Path | str) -> ConfigDict:
    """Set the directory used by file-destination exports."""
    return {**config, "export_dir": Path(export_dir)}


def keep_backups_for(config: ConfigDict, days: int) -> ConfigDict:
    """
    Set the retention window for the cleanup sweep.

    Args:
        config: Current configuration dictionary
        days: Backups older than this are deleted

    Returns:
        New configuration dictionary with retention_days set
    """
    if days < 0:
        raise ValueError("days must be non-negative")
    return {**config, "retention_days": days}


def with_chunk_size(config: ConfigDict, chunk_size: int) -> ConfigDict:
    """Set the number of records written per backup chunk file."""
    return {**config, "chunk_size": chunk_size}


def with_max_concurrent_backups(config: ConfigDict, max_backups: int) -> ConfigDict:
    """Set how many backup jobs may run at once."""
    return {**config, "max_concurrent_backups": max_backups}


def allow_formats(config: ConfigDict, formats: Iterable[str]) -> ConfigDict:
    """
    Replace the format whitelist.

    Args:
        config: Current configuration dictionary
        formats: Format names, e.g. ["json", "ndjson"]

    Returns:
        New configuration dictionary with allowed_formats set
    """
    return {**config, "allowed_formats": tuple(DataFormat(f).value for f in formats)}


def with_rate_limit(config: ConfigDict, requests_per_minute: int) -> ConfigDict:
    """Set the per-tenant export budget."""
    return {**config, "rate_limit_rpm": requests_per_minute}


def with_s3(
    config: ConfigDict,
    bucket: str,
    region: str = "us-east-1",
    prefix: str = "backups/",
    endpoint_url: str | None = None,
) -> ConfigDict:
    """
    Enable the S3 backup target.

    Credentials come from the standard AWS environment/config chain.
    """
    return {
        **config,
        "s3": S3Settings(
            bucket=bucket, region=region, prefix=prefix, endpoint_url=endpoint_url
        ),
    }


def with_gcs(
    config: ConfigDict,
    bucket: str,
    hmac_key_id: str,
    hmac_secret: str,
    prefix: str = "backups/",
) -> ConfigDict:
    """Enable the Google Cloud Storage backup target (HMAC interop keys)."""
    return {
        **config,
        "gcs": GCSSettings(
            bucket=bucket,
            hmac_key_id=hmac_key_id,
            hmac_secret=hmac_secret,
            prefix=prefix,
        ),
    }


def with_azure(
    config: ConfigDict,
    connection_string: str,
    container: str,
    prefix: str = "backups/",
) -> ConfigDict:
    """Enable the Azure Blob Storage backup target."""
    return {
        **config,
        "azure": AzureSettings(
            connection_string=connection_string, container=container, prefix=prefix
        ),
    }


def build_config(config_dict: ConfigDict) -> MoverConfig:
    """
    Build a validated MoverConfig from a config dictionary.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    return MoverConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose builder functions left to right.

    Example:
        setup = pipe(
            lambda c: store_backups_in(c, "/var/lib/backups"),
            lambda c: keep_backups_for(c, 30),
        )
        config = build_config(setup(create_empty_config()))
    """

    def composed(config: ConfigDict) -> ConfigDict:
        result = config
        for func in funcs:
            result = func(result)
        return result

    return composed


def create_config(
    *,
    backup_dir: str | Path | None = None,
    export_dir: str | Path | None = None,
    retention_days: int | None = None,
    **kwargs: Any,
) -> MoverConfig:
    """
    Create a configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        backup_dir: Local backup directory (default: "./backups")
        export_dir: Export file directory (default: "./exports")
        retention_days: Retention window in days (default: 90)
        **kwargs: Any other MoverConfig field

    Returns:
        Validated, immutable MoverConfig instance

    Example:
        config = create_config(
            backup_dir="/var/lib/datamover/backups",
            chunk_size=5000,
            max_concurrent_backups=2,
        )
    """
    config_dict = create_empty_config()

    if backup_dir:
        config_dict = store_backups_in(config_dict, backup_dir)

    if export_dir:
        config_dict = write_exports_to(config_dict, export_dir)

    if retention_days is not None:
        config_dict = keep_backups_for(config_dict, retention_days)

    unknown = sorted(set(kwargs) - set(config_dict))
    if unknown:
        raise ConfigurationError(
            "Unknown configuration options",
            details={"unknown": unknown},
        )
    config_dict.update(kwargs)

    return build_config(config_dict)
