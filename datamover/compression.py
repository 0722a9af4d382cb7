# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
DataMover Compression - gzip and zstd payload compression.

Used by file-destination exports. Large payloads are compressed in a
thread pool so the event loop keeps serving other jobs.
"""

import asyncio
import gzip
import zlib
from concurrent.futures import ThreadPoolExecutor

import structlog
import zstandard as zstd

from datamover.errors import explain_unsupported_compression
from datamover.exceptions import ConfigurationError, ExportError

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=4)

EXTENSIONS = {
    "gzip": "gz",
    "zstd": "zst",
}

DEFAULT_GZIP_LEVEL = 6
DEFAULT_ZSTD_LEVEL = 3

# Payloads below this are compressed inline
_INLINE_LIMIT = 1024 * 1024


def extension_for(compression: str) -> str:
    """File suffix (without dot) for a compression name."""
    try:
        return EXTENSIONS[compression]
    except KeyError:
        raise ConfigurationError(explain_unsupported_compression(compression, EXTENSIONS))


async def compress(data: bytes, compression: str) -> bytes:
    """
    Compress a payload.

    Args:
        data: Raw bytes
        compression: "gzip" or "zstd"

    Returns:
        Compressed bytes
    """
    extension_for(compression)
    try:
        if len(data) > _INLINE_LIMIT:
            loop = asyncio.get_running_loop()
            compressed = await loop.run_in_executor(
                _executor, _compress_sync, data, compression
            )
        else:
            compressed = _compress_sync(data, compression)
    except Exception as e:
        raise ExportError(
            f"Compression failed: {e}",
            details={"compression": compression, "original_size": len(data)},
        )

    logger.debug(
        "compression_complete",
        compression=compression,
        original_size=len(data),
        compressed_size=len(compressed),
    )
    return compressed


async def decompress(data: bytes, compression: str) -> bytes:
    """Inverse of compress; also reads files written by the stream compressor."""
    extension_for(compression)
    if len(data) > _INLINE_LIMIT:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, _decompress_sync, data, compression)
    return _decompress_sync(data, compression)


def _compress_sync(data: bytes, compression: str) -> bytes:
    if compression == "gzip":
        return gzip.compress(data, compresslevel=DEFAULT_GZIP_LEVEL)
    cctx = zstd.ZstdCompressor(level=DEFAULT_ZSTD_LEVEL)
    return cctx.compress(data)


def _decompress_sync(data: bytes, compression: str) -> bytes:
    if compression == "gzip":
        return gzip.decompress(data)
    # Streamed frames carry no content size
    return zstd.ZstdDecompressor().decompressobj().decompress(data)


def open_stream_compressor(compression: str):
    """
    Incremental compressor for streamed file exports.

    Returns an object with compress(bytes) -> bytes and flush() -> bytes.
    """
    extension_for(compression)
    if compression == "gzip":
        return _GzipStream()
    return zstd.ZstdCompressor(level=DEFAULT_ZSTD_LEVEL).compressobj()


class _GzipStream:
    """gzip framing around zlib's incremental compressor."""

    def __init__(self) -> None:
        self._compressor = zlib.compressobj(DEFAULT_GZIP_LEVEL, zlib.DEFLATED, 31)

    def compress(self, data: bytes) -> bytes:
        return self._compressor.compress(data)

    def flush(self) -> bytes:
        return self._compressor.flush()
