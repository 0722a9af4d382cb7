# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for DataMover.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""

from typing import Iterable


def explain_unknown_backend(name: str, available: Iterable[str]) -> str:
    """
    Explain that a storage backend is not registered.
    """

    return (
        f"Storage backend {name!r} is not available. "
        f"Registered backends: {', '.join(sorted(available)) or 'none'}. "
        "Remote backends are only registered when configured with valid credentials."
    )


def explain_unsupported_format(fmt: str, allowed: Iterable[str]) -> str:
    """
    Explain that a format is not in the whitelist.
    """

    return (
        f"Unsupported format: {fmt!r}. "
        f"Allowed: {', '.join(allowed)}."
    )


def explain_format_without_codec(fmt: str) -> str:
    """
    Explain that a recognised format has no codec and substitution was not requested.
    """

    return (
        f"Format {fmt!r} has no available encoder. "
        "Pass allow_format_substitution=True to accept JSON output instead."
    )


def explain_unsupported_compression(compression: str, allowed: Iterable[str]) -> str:
    """
    Explain that a compression format is not in the whitelist.
    """

    return (
        f"Unsupported compression: {compression!r}. "
        f"Allowed: {', '.join(allowed)}."
    )


def explain_missing_webhook_url() -> str:
    """
    Explain that the webhook destination needs a URL.
    """

    return "Webhook URL required for webhook destination. Pass webhook_url=... in the export options."


def explain_missing_tenant() -> str:
    """
    Explain that exports are always tenant-scoped.
    """

    return (
        "A tenant id is required. Exports are always scoped to a single tenant "
        "and there is no all-tenants export."
    )


def explain_rate_limited(tenant_id: str, limit: int, retry_after: float) -> str:
    """
    Explain that a tenant exceeded its per-minute export budget.
    """

    return (
        f"Rate limit exceeded for tenant {tenant_id!r}: {limit} requests per minute. "
        f"Retry after {retry_after:.1f} seconds."
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer."
    )


def explain_missing_manifest(backup_id: str) -> str:
    """
    Explain that a backup cannot be restored without its manifest.
    """

    return (
        f"Backup {backup_id!r} has no manifest.json. "
        "The backup is incomplete (failed or cancelled) and cannot be restored."
    )
