from __future__ import annotations

import asyncio
import pathlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import aiofiles
import aiofiles.os

from pluginfed.core.base import PluginfedManager
from pluginfed.utils.exceptions import FileError, ManagerInitializationError, ManagerShutdownError


class _PathLock:
    __slots__ = ('lock', 'holders')

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class BlobStore(PluginfedManager):
    """Filesystem store for mirrored plugin artifacts.

    Blobs are addressed by relative keys such as
    ``federated/alice@pub.example/seo-kit-1.2.0``. Every key is confined to the
    configured base directory; writes go to a temporary file first and are
    renamed into place.

    Attributes:
        _base_directory: Root directory for all blobs
        _file_locks: Per-path lock and holder count, dropped when the last holder leaves
    """

    def __init__(self, config_manager: Any, logger_manager: Any) -> None:
        """Initialize the blob store.

        Args:
            config_manager: The configuration manager
            logger_manager: The logging manager
        """
        super().__init__(name='blob_store')
        self._config_manager = config_manager
        self._logger = logger_manager.get_logger('blob_store')
        self._base_directory: Optional[pathlib.Path] = None
        self._file_locks: Dict[str, _PathLock] = {}
        self._bytes_written = 0
        self._blobs_written = 0

    async def initialize(self) -> None:
        """Create the base directory.

        Raises:
            ManagerInitializationError: If initialization fails
        """
        try:
            storage_config = await self._config_manager.get('storage', {})
            base_dir = storage_config.get('blob_directory', 'data/blobs')
            self._base_directory = pathlib.Path(base_dir).resolve()
            await aiofiles.os.makedirs(self._base_directory, exist_ok=True)

            self._logger.info(f'Blob Store initialized with base directory: {self._base_directory}')
            self._mark_started()
        except Exception as e:
            self._logger.error(f'Failed to initialize Blob Store: {str(e)}')
            raise ManagerInitializationError(
                f'Failed to initialize BlobStore: {str(e)}',
                manager_name=self.name
            ) from e

    def get_blob_path(self, key: str) -> pathlib.Path:
        """Resolve a blob key to an absolute path inside the base directory.

        Args:
            key: Relative blob key

        Returns:
            Absolute path

        Raises:
            FileError: If the store is not initialized or the key escapes the base directory
        """
        if not self._initialized or self._base_directory is None:
            raise FileError('Blob Store not initialized', file_path=key)

        key_path = pathlib.PurePosixPath(key)
        if not key or key_path.is_absolute():
            raise FileError(f'Invalid blob key: {key!r}', file_path=key)

        full_path = (self._base_directory / key).resolve()
        if full_path != self._base_directory and self._base_directory not in full_path.parents:
            raise FileError(f'Blob key is outside of the blob directory: {key}', file_path=key)
        return full_path

    async def put(self, key: str, content: bytes) -> str:
        """Write a blob atomically.

        Args:
            key: Relative blob key
            content: Bytes to store

        Returns:
            The key the blob was stored under

        Raises:
            FileError: If the key is invalid or writing fails
        """
        full_path = self.get_blob_path(key)
        try:
            await aiofiles.os.makedirs(full_path.parent, exist_ok=True)
            async with self._locked(str(full_path)):
                temp_path = str(full_path) + '.tmp'
                async with aiofiles.open(temp_path, 'wb') as f:
                    await f.write(content)
                await aiofiles.os.replace(temp_path, full_path)
        except Exception as e:
            raise FileError(f'Failed to write blob: {str(e)}', file_path=key) from e

        self._bytes_written += len(content)
        self._blobs_written += 1
        self._logger.debug(f'Stored blob {key} ({len(content)} bytes)')
        return key

    async def get(self, key: str) -> bytes:
        """Read a blob.

        Raises:
            FileError: If the key is invalid or reading fails
        """
        full_path = self.get_blob_path(key)
        try:
            async with self._locked(str(full_path)):
                async with aiofiles.open(full_path, 'rb') as f:
                    return await f.read()
        except Exception as e:
            raise FileError(f'Failed to read blob: {str(e)}', file_path=key) from e

    async def exists(self, key: str) -> bool:
        return await aiofiles.os.path.isfile(self.get_blob_path(key))

    @asynccontextmanager
    async def _locked(self, path: str) -> AsyncIterator[None]:
        entry = self._file_locks.get(path)
        if entry is None:
            entry = self._file_locks[path] = _PathLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._file_locks.get(path) is entry:
                del self._file_locks[path]

    async def shutdown(self) -> None:
        """Shut down the blob store.

        Raises:
            ManagerShutdownError: If shutdown fails
        """
        if not self._initialized:
            return

        try:
            self._file_locks.clear()
            self._mark_stopped()
            self._logger.info('Blob Store shut down')
        except Exception as e:
            raise ManagerShutdownError(
                f'Failed to shut down BlobStore: {str(e)}',
                manager_name=self.name
            ) from e

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            'base_directory': str(self._base_directory) if self._base_directory else None,
            'blobs_written': self._blobs_written,
            'bytes_written': self._bytes_written,
            'locked_paths': len(self._file_locks),
        })
        return status
