"""Unit tests for the Blob Store."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from pluginfed.core.blob_store import BlobStore
from pluginfed.utils.exceptions import FileError


@pytest.mark.asyncio
async def test_initialize_creates_base_directory(blob_store: BlobStore, tmp_path: Path) -> None:
    assert blob_store.initialized
    assert (tmp_path / "blobs").is_dir()
    assert blob_store.status()["base_directory"] == str((tmp_path / "blobs").resolve())
    assert blob_store.status()["started_at"] is not None


@pytest.mark.asyncio
async def test_put_and_get(blob_store: BlobStore, tmp_path: Path) -> None:
    """Test that a blob is written below the base directory and read back."""
    key = "federated/alice@pub.example/seo-kit-1.2.0"

    stored = await blob_store.put(key, b"artifact bytes")

    assert stored == key
    assert await blob_store.exists(key)
    assert await blob_store.get(key) == b"artifact bytes"
    assert (tmp_path / "blobs" / key).read_bytes() == b"artifact bytes"
    assert not (tmp_path / "blobs" / f"{key}.tmp").exists()

    status = blob_store.status()
    assert status["blobs_written"] == 1
    assert status["bytes_written"] == len(b"artifact bytes")


@pytest.mark.asyncio
async def test_put_replaces_existing_blob(blob_store: BlobStore) -> None:
    await blob_store.put("a/b", b"first")
    await blob_store.put("a/b", b"second")

    assert await blob_store.get("a/b") == b"second"


@pytest.mark.asyncio
async def test_concurrent_puts(blob_store: BlobStore) -> None:
    await asyncio.gather(*(blob_store.put(f"many/{i}", str(i).encode()) for i in range(10)))

    for i in range(10):
        assert await blob_store.get(f"many/{i}") == str(i).encode()


@pytest.mark.asyncio
async def test_path_locks_are_released(blob_store: BlobStore) -> None:
    """Locks only live while a path is being read or written."""
    await asyncio.gather(*(blob_store.put("shared/blob", str(i).encode()) for i in range(5)))
    await asyncio.gather(*(blob_store.put(f"distinct/{i}", b"x") for i in range(20)))
    await blob_store.get("shared/blob")
    with pytest.raises(FileError):
        await blob_store.get("distinct/missing")

    assert blob_store.status()["locked_paths"] == 0


@pytest.mark.asyncio
async def test_exists_for_missing_blob(blob_store: BlobStore) -> None:
    assert not await blob_store.exists("federated/nobody/nothing-1.0")


@pytest.mark.asyncio
async def test_get_missing_blob(blob_store: BlobStore) -> None:
    with pytest.raises(FileError) as exc_info:
        await blob_store.get("federated/nobody/nothing-1.0")

    assert exc_info.value.details["file_path"] == "federated/nobody/nothing-1.0"


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside", "federated/../../outside"])
async def test_rejects_keys_outside_base_directory(blob_store: BlobStore, key: str) -> None:
    with pytest.raises(FileError):
        await blob_store.put(key, b"nope")


def test_get_blob_path_before_initialize(logger_manager: MagicMock) -> None:
    store = BlobStore(MagicMock(), logger_manager)

    with pytest.raises(FileError):
        store.get_blob_path("federated/x")


@pytest.mark.asyncio
async def test_shutdown(blob_store: BlobStore) -> None:
    await blob_store.put("k", b"v")
    await blob_store.shutdown()

    assert not blob_store.initialized
    assert not blob_store.healthy
    assert blob_store.status()["started_at"] is None
    with pytest.raises(FileError):
        await blob_store.get("k")


@pytest.mark.asyncio
async def test_initialize_uses_default_directory(
        tmp_path: Path, logger_manager: MagicMock, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config_manager = MagicMock()
    config_manager.get = AsyncMock(return_value={})

    store = BlobStore(config_manager, logger_manager)
    await store.initialize()

    assert (tmp_path / "data" / "blobs").is_dir()
    await store.shutdown()
