"""Pytest configuration and fixtures for pluginfed tests."""

from __future__ import annotations

import datetime
from pathlib import Path
from typing import Any, Dict
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from pluginfed.core.blob_store import BlobStore
from pluginfed.core.config_manager import ConfigManager
from pluginfed.core.database_manager import DatabaseManager
from pluginfed.core.remote_client import RemoteClient
from pluginfed.federation.activity import ActivityFeed
from pluginfed.federation.failures import FailureManager
from pluginfed.federation.ledger import TrustLedger
from pluginfed.federation.mirror import MirrorSynchronizer
from pluginfed.federation.prober import HealthProber
from pluginfed.federation.registry import SourceRegistry
from pluginfed.federation.scheduler import FederationScheduler
from pluginfed.federation.service import FederationService
from tests.fakes import INSTANCE_URL, FakeClock, FakeInstance


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture
def logger_manager() -> MagicMock:
    """A logging manager handing out mock loggers."""
    manager = MagicMock()
    manager.get_logger.return_value = MagicMock()
    return manager


@pytest.fixture
def remote_instance() -> FakeInstance:
    return FakeInstance()


@pytest.fixture
def config_overrides(tmp_path: Path) -> Dict[str, Any]:
    return {
        "database": {"url": f"sqlite:///{tmp_path / 'pluginfed.db'}"},
        "logging": {
            "level": "DEBUG",
            "file": {"enabled": False},
            "console": {"enabled": False},
        },
        "federation": {"max_attempts": 1, "retry_delay": 0.0, "request_timeout": 5.0},
        "storage": {"blob_directory": str(tmp_path / "blobs")},
    }


@pytest_asyncio.fixture
async def config_manager(tmp_path: Path, config_overrides: Dict[str, Any]) -> ConfigManager:
    manager = ConfigManager(config_path=tmp_path / "absent.yaml", overrides=config_overrides)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def database_manager(config_manager: ConfigManager, logger_manager: MagicMock) -> DatabaseManager:
    manager = DatabaseManager(config_manager, logger_manager)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture
async def blob_store(config_manager: ConfigManager, logger_manager: MagicMock) -> BlobStore:
    store = BlobStore(config_manager, logger_manager)
    await store.initialize()
    yield store
    await store.shutdown()


@pytest_asyncio.fixture
async def remote_client(
        config_manager: ConfigManager, logger_manager: MagicMock, remote_instance: FakeInstance
) -> RemoteClient:
    client = RemoteClient(config_manager, logger_manager, transport=remote_instance.transport)
    await client.initialize()
    yield client
    await client.shutdown()


@pytest.fixture
def registry(database_manager, logger_manager, clock) -> SourceRegistry:
    return SourceRegistry(database_manager, logger_manager, clock=clock)


@pytest.fixture
def prober(remote_client, logger_manager) -> HealthProber:
    return HealthProber(remote_client, logger_manager)


@pytest.fixture
def ledger(database_manager, registry, prober, logger_manager, clock) -> TrustLedger:
    return TrustLedger(database_manager, registry, prober, logger_manager, clock=clock)


@pytest.fixture
def synchronizer(database_manager, blob_store, remote_client, registry, logger_manager, clock) -> MirrorSynchronizer:
    return MirrorSynchronizer(database_manager, blob_store, remote_client, registry, logger_manager, clock=clock)


@pytest.fixture
def failure_manager(database_manager, synchronizer, registry, logger_manager, clock) -> FailureManager:
    return FailureManager(database_manager, synchronizer, registry, logger_manager, clock=clock)


@pytest.fixture
def scheduler(registry, prober, ledger, synchronizer, failure_manager, logger_manager, clock) -> FederationScheduler:
    return FederationScheduler(
        registry, prober, ledger, synchronizer, failure_manager, logger_manager,
        interval_seconds=0.01, clock=clock,
    )


@pytest.fixture
def activity_feed(database_manager, logger_manager) -> ActivityFeed:
    return ActivityFeed(database_manager, logger_manager)


@pytest.fixture
def service(
        registry, prober, ledger, synchronizer, failure_manager, scheduler, activity_feed, logger_manager
) -> FederationService:
    return FederationService(
        registry, prober, ledger, synchronizer, failure_manager, scheduler, activity_feed, logger_manager
    )


@pytest_asyncio.fixture
async def pending_source(registry: SourceRegistry, remote_instance: FakeInstance) -> str:
    """alice@pub.example registered with the instance's PEM key."""
    return await registry.register(INSTANCE_URL, remote_instance.username, remote_instance.public_key_pem)


@pytest_asyncio.fixture
async def verified_source(pending_source: str, ledger: TrustLedger) -> str:
    """alice@pub.example after a successful verification."""
    assert await ledger.verify_source(pending_source)
    return pending_source
