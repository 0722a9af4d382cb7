# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Wire formats for backup chunks and exports."""

from datamover.formats.codecs import (
    Codec,
    CSVCodec,
    JSONCodec,
    NDJSONCodec,
    SQLDumpCodec,
    XMLCodec,
    flatten_row,
    get_codec,
    resolve_format,
)
from datamover.formats.streaming import FramingState, StreamFraming

__all__ = [
    "CSVCodec",
    "Codec",
    "FramingState",
    "JSONCodec",
    "NDJSONCodec",
    "SQLDumpCodec",
    "StreamFraming",
    "XMLCodec",
    "flatten_row",
    "get_codec",
    "resolve_format",
]
