# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup artifact files - chunk writing, tarballs and extraction.

Chunk files are written atomically (write to temp, then rename) so a
crashed or cancelled job never leaves a half-written chunk behind.
"""

import asyncio
import shutil
import tarfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

import aiofiles
import structlog

from datamover.exceptions import BackupError, IntegrityError

logger = structlog.get_logger()

# Thread pool for CPU-bound tar/gzip work
_executor = ThreadPoolExecutor(max_workers=2)


class ChunkCipher(Protocol):
    """
    Hook for encrypting chunk payloads.

    No cipher ships with the package; callers that request encrypted
    backups supply one.
    """

    def encrypt(self, data: bytes) -> bytes:
        ...

    def decrypt(self, data: bytes) -> bytes:
        ...


def chunk_filename(table: str, index: int, extension: str) -> str:
    """<table>_chunk_<NNNN>.<ext>"""
    return f"{table}_chunk_{index:04d}.{extension}"


async def write_chunk_file(job_dir: Path, filename: str, data: bytes) -> Path:
    """
    Write one chunk file atomically.

    Args:
        job_dir: Directory of the backup job
        filename: Chunk file name
        data: Encoded (and possibly encrypted) chunk bytes

    Returns:
        Path to the written file
    """
    try:
        job_dir.mkdir(parents=True, exist_ok=True)
        chunk_path = job_dir / filename

        temp_path = job_dir / f".{filename}.tmp"

        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)

        # Rename to final path (atomic on most filesystems)
        temp_path.replace(chunk_path)

        logger.debug("chunk_written", path=str(chunk_path), size=len(data))

        return chunk_path

    except OSError as e:
        raise BackupError(
            f"Failed to write chunk file: {e}",
            details={"filename": filename, "job_dir": str(job_dir)},
        )


async def read_chunk_file(chunk_path: Path) -> bytes:
    """
    Read a chunk file.

    Raises:
        IntegrityError: If the file is missing
    """
    try:
        async with aiofiles.open(chunk_path, "rb") as f:
            return await f.read()
    except FileNotFoundError:
        raise IntegrityError(
            f"Chunk file not found: {chunk_path.name}",
            details={"path": str(chunk_path)},
        )


async def create_backup_tarball(job_dir: Path, compression_level: int = 6) -> Path:
    """
    Bundle a job directory into <job_dir>.tar.gz next to it.

    The archive holds a single top-level directory named after the job.

    Returns:
        Path to the created tarball
    """
    if not job_dir.is_dir():
        raise BackupError(
            f"Backup directory not found: {job_dir}",
            details={"job_dir": str(job_dir)},
        )

    tarball_path = job_dir.parent / f"{job_dir.name}.tar.gz"
    temp_path = job_dir.parent / f".{job_dir.name}.tar.gz.tmp"

    def _build() -> None:
        with tarfile.open(temp_path, "w:gz", compresslevel=compression_level) as tar:
            tar.add(job_dir, arcname=job_dir.name)
        temp_path.replace(tarball_path)

    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, _build)
    except (OSError, tarfile.TarError) as e:
        temp_path.unlink(missing_ok=True)
        raise BackupError(
            f"Failed to create tarball: {e}",
            details={"job_dir": str(job_dir)},
        )

    logger.info(
        "tarball_created",
        tarball_path=str(tarball_path),
        size=tarball_path.stat().st_size,
    )
    return tarball_path


async def extract_backup_tarball(tarball_path: Path, extract_to: Path) -> Path:
    """
    Extract a backup tarball.

    Members with absolute paths or parent references are rejected before
    anything is written.

    Returns:
        Path to the extracted job directory
    """
    extract_to.mkdir(parents=True, exist_ok=True)

    def _extract() -> None:
        with tarfile.open(tarball_path, "r:*") as tar:
            for member in tar.getmembers():
                if member.name.startswith("/") or ".." in Path(member.name).parts:
                    raise IntegrityError(
                        f"Unsafe path in tarball: {member.name}",
                        details={"tarball_path": str(tarball_path)},
                    )
                if member.issym() or member.islnk():
                    raise IntegrityError(
                        f"Link member in tarball: {member.name}",
                        details={"tarball_path": str(tarball_path)},
                    )
            tar.extractall(extract_to, filter="data")

    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(_executor, _extract)
    except IntegrityError:
        raise
    except (OSError, tarfile.TarError) as e:
        raise IntegrityError(
            f"Failed to extract tarball: {e}",
            details={"tarball_path": str(tarball_path)},
        )

    # The archive holds one top-level directory named after the job
    extracted_dirs = [d for d in extract_to.iterdir() if d.is_dir()]
    if len(extracted_dirs) == 1:
        return extracted_dirs[0]
    return extract_to


def remove_tree(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink()
