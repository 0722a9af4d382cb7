# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI routes and lifespan.
"""

from datamover.integrations.fastapi import (
    datamover_lifespan,
    get_backup_engine,
    get_export_engine,
    register_datamover_routes,
    verify_api_key,
)

__all__ = [
    "datamover_lifespan",
    "get_backup_engine",
    "get_export_engine",
    "register_datamover_routes",
    "verify_api_key",
]
