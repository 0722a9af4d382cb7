# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while jobs are in flight.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Tuple
import re


class DataFormat(str, Enum):
    """Wire formats understood by the codecs."""

    JSON = "json"
    CSV = "csv"
    NDJSON = "ndjson"
    XML = "xml"
    SQL = "sql"
    PARQUET = "parquet"  # Recognised, no codec: explicit substitution only


class Destination(str, Enum):
    """Where a batch export is delivered."""

    RESPONSE = "response"
    FILE = "file"
    WEBHOOK = "webhook"


class JobStatus(str, Enum):
    """Lifecycle states shared by backup and export jobs."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def is_safe_identifier(name: str) -> bool:
    """Check a table/column name before it is interpolated into SQL."""
    return isinstance(name, str) and bool(IDENTIFIER_PATTERN.match(name))


@dataclass(frozen=True)
class S3Settings:
    """Settings for an S3-compatible backup target."""

    bucket: str
    region: str = "us-east-1"
    prefix: str = "backups/"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None


@dataclass(frozen=True)
class GCSSettings:
    """
    Settings for Google Cloud Storage.

    GCS is reached through its S3-interoperable XML API, which needs an
    HMAC key pair rather than a service account file.
    """

    bucket: str
    hmac_key_id: str | None = None
    hmac_secret: str | None = None
    prefix: str = "backups/"
    endpoint_url: str = "https://storage.googleapis.com"
    region: str = "auto"


@dataclass(frozen=True)
class AzureSettings:
    """Settings for an Azure Blob Storage container."""

    connection_string: str
    container: str
    prefix: str = "backups/"


@dataclass(frozen=True)
class MoverConfig:
    """
    Immutable configuration for the backup and export engines.
    """

    # Local working directories
    backup_dir: Path = field(default_factory=lambda: Path("./backups"))
    export_dir: Path = field(default_factory=lambda: Path("./exports"))

    # Backups older than this are removed by the retention sweep
    retention_days: int = 90

    # gzip level for backup bundles (0-9)
    compression_level: int = 6

    # Records per backup chunk file
    chunk_size: int = 10_000

    # Upper bound on simultaneously running backup jobs
    max_concurrent_backups: int = 3

    default_format: DataFormat = DataFormat.JSON

    # Whitelist gating both backup and export
    allowed_formats: Tuple[str, ...] = ("json", "csv", "ndjson", "xml", "sql")

    # Formats meaningful for export (SQL dumps are backup-oriented)
    export_formats: Tuple[str, ...] = ("json", "csv", "ndjson", "xml")

    # Compression whitelist for export file destinations
    compression_formats: Tuple[str, ...] = ("gzip", "zstd")

    # Export admission control: requests per tenant per minute
    rate_limit_rpm: int = 60

    # Rows pulled per streaming export fragment
    stream_chunk_size: int = 1_000

    default_limit: int = 10_000

    # Hard cap on rows in a batch export, whatever the caller asks for
    max_limit: int = 100_000

    # Rows per INSERT during restore
    restore_batch_size: int = 1_000

    # Column names used for scoping and time filtering
    tenant_column: str = "tenant_id"
    timestamp_column: str = "timestamp"

    # Sort keys used to paginate backup reads
    backup_order_by: Tuple[str, ...] = ("timestamp",)

    # Schema inspected by the schema export (PostgreSQL)
    schema_name: str = "public"

    # Timeouts in seconds (None = no timeout)
    query_timeout: float | None = 60.0
    backend_timeout: float | None = 300.0

    # Interval of the periodic retention sweep
    cleanup_interval_hours: int = 24

    # Remote backends (registered only when set)
    s3: S3Settings | None = None
    gcs: GCSSettings | None = None
    azure: AzureSettings | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if not 0 <= self.compression_level <= 9:
            errors.append(
                f"compression_level must be between 0 and 9, got {self.compression_level}"
            )

        for name in (
            "chunk_size",
            "max_concurrent_backups",
            "rate_limit_rpm",
            "stream_chunk_size",
            "default_limit",
            "max_limit",
            "restore_batch_size",
        ):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be >= 1, got {getattr(self, name)}")

        known_formats = {f.value for f in DataFormat}
        for fmt in (*self.allowed_formats, *self.export_formats):
            if fmt not in known_formats:
                errors.append(f"Unknown format in whitelist: {fmt}")

        if DataFormat(self.default_format).value not in self.allowed_formats:
            errors.append(
                f"default_format {DataFormat(self.default_format).value!r} is not in allowed_formats"
            )

        for compression in self.compression_formats:
            if compression not in ("gzip", "zstd"):
                errors.append(f"Unknown compression format: {compression}")

        for column in (self.tenant_column, self.timestamp_column, *self.backup_order_by):
            if not is_safe_identifier(column):
                errors.append(f"Invalid column name: {column!r}")

        if self.s3 is not None and not self.s3.bucket:
            errors.append("s3.bucket must not be empty")
        if self.gcs is not None and not self.gcs.bucket:
            errors.append("gcs.bucket must not be empty")
        if self.azure is not None and not self.azure.container:
            errors.append("azure.container must not be empty")

        # Raise all errors at once
        if errors:
            from datamover.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def export_allowed_formats(self) -> Tuple[str, ...]:
        """Formats an export may request: whitelisted and export-capable."""
        return tuple(f for f in self.export_formats if f in self.allowed_formats)

    def with_updates(self, **kwargs) -> "MoverConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
