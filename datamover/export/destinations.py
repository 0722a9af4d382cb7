# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Export destinations - files (optionally compressed) and webhooks.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Any

import aiofiles
import httpx
import structlog

from datamover import __version__
from datamover.compression import compress, extension_for, open_stream_compressor
from datamover.exceptions import ConfigurationError, TransientIOError

logger = structlog.get_logger()

USER_AGENT = f"DataMover-Exporter/{__version__}"


def export_path(export_dir: Path, filename: str, extension: str, compression: str | None) -> Path:
    """
    <export_dir>/<filename>.<ext>[.gz|.zst]

    Raises:
        ConfigurationError: If filename would escape export_dir
    """
    if not filename or filename in (".", "..") or "/" in filename or "\\" in filename:
        raise ConfigurationError(
            f"Invalid export filename: {filename!r}",
            details={"filename": filename},
        )
    name = f"{filename}.{extension}"
    if compression:
        name += f".{extension_for(compression)}"
    return Path(export_dir) / name


async def write_export_file(path: Path, payload: bytes, compression: str | None) -> Path:
    """Write an export payload atomically, compressing it first if requested."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if compression:
        payload = await compress(payload, compression)

    temp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(temp_path, "wb") as f:
        await f.write(payload)
    temp_path.replace(path)

    logger.info("export_file_written", path=str(path), size=len(payload), compression=compression)
    return path


class FileStreamSink:
    """
    Incremental file writer for streamed exports.

    Fragments go to a temp file as they arrive and the file is renamed into
    place on commit(); abort() removes the partial file.
    """

    def __init__(self, path: Path, compression: str | None = None):
        self.path = path
        self.temp_path = path.with_name(f".{path.name}.tmp")
        self._compressor = open_stream_compressor(compression) if compression else None
        self._file: Any = None
        self.bytes_written = 0

    async def open(self) -> "FileStreamSink":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = await aiofiles.open(self.temp_path, "wb")
        return self

    async def write(self, fragment: str) -> None:
        data = fragment.encode("utf-8")
        if self._compressor is not None:
            data = self._compressor.compress(data)
        if data:
            await self._file.write(data)
            self.bytes_written += len(data)

    async def commit(self) -> Path:
        if self._compressor is not None:
            tail = self._compressor.flush()
            if tail:
                await self._file.write(tail)
                self.bytes_written += len(tail)
        await self._file.close()
        self.temp_path.replace(self.path)
        logger.info("export_stream_file_written", path=str(self.path), size=self.bytes_written)
        return self.path

    async def abort(self) -> None:
        if self._file is not None:
            await self._file.close()
        self.temp_path.unlink(missing_ok=True)


def webhook_data(payload: str, fmt: str) -> Any:
    """JSON-family payloads are embedded as JSON, everything else as text."""
    if fmt == "json":
        return json.loads(payload)
    if fmt == "ndjson":
        return [json.loads(line) for line in payload.splitlines() if line.strip()]
    return payload


async def post_webhook(
    url: str,
    *,
    export_id: str,
    fmt: str,
    payload: str,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
) -> int:
    """
    POST an export to a webhook.

    Returns:
        The HTTP status code

    Raises:
        TransientIOError: On a network error or a non-2xx response
    """
    body = {
        "exportId": export_id,
        "timestamp": datetime.now(UTC).isoformat(),
        "format": fmt,
        "data": webhook_data(payload, fmt),
    }
    headers = {
        "Content-Type": "application/json",
        "X-Export-ID": export_id,
        "User-Agent": USER_AGENT,
    }

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as own_client:
                response = await own_client.post(url, json=body, headers=headers)
        else:
            extra = {"timeout": timeout} if timeout is not None else {}
            response = await client.post(url, json=body, headers=headers, **extra)
    except httpx.HTTPError as e:
        raise TransientIOError(
            f"Webhook request failed: {e}",
            details={"export_id": export_id, "url": url},
        )

    if not response.is_success:
        raise TransientIOError(
            f"Webhook failed: {response.status_code} {response.reason_phrase}",
            details={"export_id": export_id, "url": url, "status": response.status_code},
        )

    logger.info("webhook_delivered", export_id=export_id, status=response.status_code)
    return response.status_code
