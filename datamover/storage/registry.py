# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Storage backend registry.

Built once at startup. The local backend is always present; remote
backends are registered only when configured and successfully
initialised. A backend that fails to initialise is logged and left out,
so selecting it later is a ConfigurationError rather than a runtime
surprise.
"""

from typing import Any, Dict, Iterator, List

import structlog

from datamover.config import MoverConfig
from datamover.errors import explain_unknown_backend
from datamover.exceptions import BackendUnavailableError, ConfigurationError
from datamover.storage.base import StorageBackend
from datamover.storage.local import LocalStorage

logger = structlog.get_logger()


class StorageRegistry:
    """Name -> backend lookup."""

    def __init__(self, backends: Dict[str, StorageBackend] | None = None):
        self._backends: Dict[str, StorageBackend] = dict(backends or {})

    def register(self, backend: StorageBackend) -> None:
        self._backends[backend.name] = backend

    def get(self, name: str) -> StorageBackend:
        """
        Look up a backend by name.

        Raises:
            ConfigurationError: If no backend with that name is registered
        """
        backend = self._backends.get(name)
        if backend is None:
            raise ConfigurationError(
                explain_unknown_backend(name, self._backends),
                details={"backend": name},
            )
        return backend

    def names(self) -> List[str]:
        return list(self._backends)

    def describe(self) -> List[Dict[str, str]]:
        return [backend.describe() for backend in self._backends.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._backends

    def __iter__(self) -> Iterator[StorageBackend]:
        return iter(list(self._backends.values()))

    def __len__(self) -> int:
        return len(self._backends)

    async def close(self) -> None:
        for backend in self._backends.values():
            try:
                await backend.close()
            except Exception as e:
                logger.warning("backend_close_failed", backend=backend.name, error=str(e))


def _remote_candidates(config: MoverConfig, session: Any = None) -> List[StorageBackend]:
    candidates: List[StorageBackend] = []

    if config.s3 is not None:
        from datamover.storage.s3 import S3Storage

        candidates.append(S3Storage(config.s3, timeout=config.backend_timeout, session=session))

    if config.gcs is not None:
        from datamover.storage.s3 import GCSStorage

        candidates.append(GCSStorage(config.gcs, timeout=config.backend_timeout, session=session))

    if config.azure is not None:
        from datamover.storage.azure import AzureBlobStorage

        candidates.append(AzureBlobStorage(config.azure, timeout=config.backend_timeout))

    return candidates


async def build_storage_registry(
    config: MoverConfig,
    *,
    session: Any = None,
    extra: List[StorageBackend] | None = None,
) -> StorageRegistry:
    """
    Create and initialise every configured backend.

    Args:
        config: Mover configuration
        session: Optional aiobotocore session shared by S3/GCS backends
        extra: Additional backends to register (already constructed)

    Returns:
        StorageRegistry containing local plus every backend that initialised
    """
    local = LocalStorage(config.backup_dir)
    await local.initialize()
    registry = StorageRegistry({local.name: local})

    for backend in [*_remote_candidates(config, session), *(extra or [])]:
        try:
            await backend.initialize()
        except BackendUnavailableError as e:
            logger.warning(
                "backend_registration_failed",
                backend=backend.name,
                error=str(e),
            )
            continue
        registry.register(backend)
        logger.info("backend_registered", backend=backend.name, label=backend.label)

    return registry
