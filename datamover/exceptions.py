# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Exceptions - Custom exceptions for the datamover package.
"""


class DataMoverError(Exception):
    """Base exception for all datamover errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DataMoverError):
    """Raised when an unknown backend/format is requested or config is invalid."""

    pass


class BackendUnavailableError(ConfigurationError):
    """Raised when a storage backend client cannot be initialized."""

    pass


class AdmissionError(DataMoverError):
    """Raised when a tenant exceeds its export rate limit."""

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        retry_after: float = 0.0,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class TransientIOError(DataMoverError):
    """Raised on a timeout or network failure of a single chunk or backend call."""

    pass


class IntegrityError(DataMoverError):
    """Raised when a backup manifest or a referenced chunk file is missing or malformed."""

    pass


class SafetyViolation(DataMoverError):
    """Raised when a query would run without a tenant predicate or is otherwise unsafe."""

    pass


class CodecError(DataMoverError):
    """Raised when rows cannot be encoded or decoded."""

    pass


class StorageError(DataMoverError):
    """Raised when storage backend operations fail."""

    pass


class BackupError(DataMoverError):
    """Raised when backup operations fail."""

    pass


class RestoreError(DataMoverError):
    """Raised when restore operations fail."""

    pass


class ExportError(DataMoverError):
    """Raised when export operations fail."""

    pass


class NotFoundError(DataMoverError):
    """Raised when a backup or export id is unknown."""

    pass
