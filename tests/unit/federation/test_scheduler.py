"""Unit tests for the Federation Scheduler."""

from __future__ import annotations

import asyncio
import datetime

import pytest
from sqlalchemy import select

from pluginfed.federation.failures import FailureManager
from pluginfed.federation.ledger import TrustLedger
from pluginfed.federation.mirror import MirrorSynchronizer
from pluginfed.federation.prober import HealthProber
from pluginfed.federation.registry import SourceRegistry
from pluginfed.federation.scheduler import FederationScheduler, SweepReport
from pluginfed.models import SourceVerification, VersionUpdate
from tests.fakes import INSTANCE_URL, FakeClock, FakeInstance, catalog_entry


async def _verifications(database_manager, source_id: str):
    async with database_manager.session() as session:
        return list(session.execute(
            select(SourceVerification)
            .where(SourceVerification.source_id == source_id)
            .order_by(SourceVerification.id)
        ).scalars())


async def _second_source(registry: SourceRegistry, ledger: TrustLedger, remote_instance: FakeInstance) -> str:
    source_id = await registry.register(INSTANCE_URL, "bob", remote_instance.public_key_b64)
    assert await ledger.verify_source(source_id)
    return source_id


def test_sweep_report_to_dict() -> None:
    report = SweepReport(sources_checked=2, started_at=datetime.datetime(2026, 3, 1, 12, 0))

    data = report.to_dict()

    assert data["sources_checked"] == 2
    assert data["started_at"] == "2026-03-01T12:00:00"
    assert data["finished_at"] is None
    assert data["retries"] == {"attempted": 0, "succeeded": 0, "failed": 0, "abandoned": 0}


@pytest.mark.asyncio
async def test_run_sweep_syncs_subscribers(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        remote_instance: FakeInstance,
        verified_source: str,
        database_manager,
        clock: FakeClock,
) -> None:
    """A healthy source is probed, recorded, synced and its updates surfaced."""
    remote_instance.plugins = [catalog_entry("seo-kit", "1.0", ["seo"]), catalog_entry("forms", "1.0", ["forms"])]
    await registry.subscribe(verified_source, "bob", {"tags": ["seo"]})
    await registry.subscribe(verified_source, "carol", {})
    clock.advance(hours=1)

    report = await scheduler.run_sweep()

    assert report.sources_checked == 1
    assert report.sources_skipped == 0
    assert report.syncs_succeeded == 2
    assert report.plugins_mirrored == 3
    assert report.updates_surfaced == 2
    assert report.finished_at == clock.now
    assert scheduler.last_report is report

    attempts = await _verifications(database_manager, verified_source)
    assert attempts[-1].verification_type == "periodic"
    assert attempts[-1].result == "success"

    async with database_manager.session() as session:
        updates = session.execute(select(VersionUpdate)).scalars().all()
    assert all(update.notified for update in updates)

    source = await registry.get_source(verified_source)
    assert source.last_sync == clock.now


@pytest.mark.asyncio
async def test_run_sweep_skips_unhealthy_source(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        remote_instance: FakeInstance,
        verified_source: str,
        database_manager,
) -> None:
    remote_instance.plugins = [catalog_entry("seo-kit", "1.0")]
    await registry.subscribe(verified_source, "bob", {})
    remote_instance.up = False

    report = await scheduler.run_sweep()

    assert report.sources_checked == 1
    assert report.sources_skipped == 1
    assert report.syncs_succeeded == 0
    assert remote_instance.downloads == []
    attempts = await _verifications(database_manager, verified_source)
    assert attempts[-1].result == "failure"
    source = await registry.get_source(verified_source)
    assert source.status == "verified"
    assert source.last_sync is None


@pytest.mark.asyncio
async def test_run_sweep_records_sync_failures(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        failure_manager: FailureManager,
        remote_instance: FakeInstance,
        verified_source: str,
) -> None:
    await registry.subscribe(verified_source, "bob", {})
    await registry.subscribe(verified_source, "carol", {})
    remote_instance.author_status = 502

    report = await scheduler.run_sweep()

    assert report.syncs_failed == 2
    assert report.sources_failed == 0
    tickets = await failure_manager.open_tickets(verified_source)
    assert len(tickets) == 2
    assert tickets[0].error_message == "Remote answered HTTP 502"


@pytest.mark.asyncio
async def test_run_sweep_isolates_source_errors(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        ledger: TrustLedger,
        prober: HealthProber,
        remote_instance: FakeInstance,
        verified_source: str,
        monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unexpected error in one source does not stop the others."""
    other = await _second_source(registry, ledger, remote_instance)
    original = prober.check_health
    calls = []

    async def flaky_check_health(instance_url: str):
        calls.append(instance_url)
        if len(calls) == 1:
            raise RuntimeError("health check exploded")
        return await original(instance_url)

    monkeypatch.setattr(prober, "check_health", flaky_check_health)

    report = await scheduler.run_sweep()

    assert report.sources_checked == 2
    assert report.sources_failed == 1
    assert len(calls) == 2
    synced = [s for s in (await registry.get_source(verified_source), await registry.get_source(other)) if s.last_sync]
    assert len(synced) == 1


@pytest.mark.asyncio
async def test_run_sweep_visits_least_recently_synced_first(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        ledger: TrustLedger,
        remote_instance: FakeInstance,
        verified_source: str,
        database_manager,
        clock: FakeClock,
) -> None:
    other = await _second_source(registry, ledger, remote_instance)
    await registry.touch_last_sync(verified_source)
    clock.advance(minutes=1)

    await scheduler.run_sweep()

    alice = await _verifications(database_manager, verified_source)
    bob = await _verifications(database_manager, other)
    assert bob[-1].id < alice[-1].id


@pytest.mark.asyncio
async def test_run_sweep_ignores_non_verified_sources(
        scheduler: FederationScheduler, pending_source: str, remote_instance: FakeInstance
) -> None:
    report = await scheduler.run_sweep()

    assert report.sources_checked == 0
    assert remote_instance.requests == []


@pytest.mark.asyncio
async def test_run_sweep_processes_due_retries(
        scheduler: FederationScheduler,
        failure_manager: FailureManager,
        remote_instance: FakeInstance,
        verified_source: str,
        clock: FakeClock,
) -> None:
    await failure_manager.record_failure(verified_source, "down")
    clock.advance(hours=1)

    report = await scheduler.run_sweep()

    assert report.retries.attempted == 1
    assert report.retries.succeeded == 1
    assert await failure_manager.open_tickets(verified_source) == []


@pytest.mark.asyncio
async def test_cleanup(
        scheduler: FederationScheduler,
        synchronizer: MirrorSynchronizer,
        registry: SourceRegistry,
        verified_source: str,
        database_manager,
        clock: FakeClock,
) -> None:
    source = await registry.get_source(verified_source)
    await synchronizer.mirror_plugin({"id": "seo-kit", "name": "SEO Kit", "version": "1.0"}, source)
    clock.advance(days=31)

    assert await scheduler.cleanup() == {"version_updates": 1, "abandoned_tickets": 0}

    async with database_manager.session() as session:
        assert session.execute(select(VersionUpdate)).scalars().all() == []


@pytest.mark.asyncio
async def test_start_and_stop(scheduler: FederationScheduler, verified_source: str) -> None:
    await scheduler.start()
    assert scheduler.running

    for _ in range(200):
        if scheduler.last_report is not None:
            break
        await asyncio.sleep(0.01)

    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.last_report is not None
    assert scheduler.last_report.sources_checked == 1


@pytest.mark.asyncio
async def test_stop_without_start(scheduler: FederationScheduler) -> None:
    await scheduler.stop()
    await scheduler.wait()

    assert not scheduler.running


@pytest.mark.asyncio
async def test_run_sweep_isolates_subscriber_errors(
        scheduler: FederationScheduler,
        registry: SourceRegistry,
        synchronizer: MirrorSynchronizer,
        failure_manager: FailureManager,
        remote_instance: FakeInstance,
        verified_source: str,
        clock: FakeClock,
        monkeypatch: pytest.MonkeyPatch,
) -> None:
    """One subscriber's sync blowing up does not stop the other subscriber of the same source."""
    remote_instance.plugins = [catalog_entry("good-kit", "1.0", ["good"]), catalog_entry("bad-kit", "1.0", ["bad"])]
    await registry.subscribe(verified_source, "carol", {"tags": ["bad"]})
    await registry.subscribe(verified_source, "bob", {"tags": ["good"]})
    original = synchronizer.sync_source_plugins

    async def exploding_sync(source_id, filters=None):
        if filters == {"tags": ["bad"]}:
            raise RuntimeError("catalog parser exploded")
        return await original(source_id, filters)

    monkeypatch.setattr(synchronizer, "sync_source_plugins", exploding_sync)
    clock.advance(hours=1)

    report = await scheduler.run_sweep()

    assert report.sources_failed == 0
    assert report.syncs_failed == 1
    assert report.syncs_succeeded == 1
    assert report.plugins_mirrored == 1
    assert remote_instance.downloads == ["/plugins/alice/good-kit.zip"]
    tickets = await failure_manager.open_tickets(verified_source)
    assert [t.error_message for t in tickets] == ["catalog parser exploded"]
    source = await registry.get_source(verified_source)
    assert source.last_sync == clock.now
