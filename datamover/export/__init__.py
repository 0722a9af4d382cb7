# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Export Engine - tenant-scoped batch and streaming exports.
"""

from datamover.export.engine import ExportEngine, ExportJob, ExportOptions, ExportStream
from datamover.export.ratelimit import RateLimiter

__all__ = [
    "ExportEngine",
    "ExportJob",
    "ExportOptions",
    "ExportStream",
    "RateLimiter",
]
