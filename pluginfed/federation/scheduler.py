from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pluginfed.federation.failures import RetryReport
from pluginfed.models import Source, VerificationType
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import PluginfedError


@dataclass
class SweepReport:
    """What one federation sweep did."""

    sources_checked: int = 0
    sources_skipped: int = 0
    sources_failed: int = 0
    syncs_succeeded: int = 0
    syncs_failed: int = 0
    plugins_mirrored: int = 0
    updates_surfaced: int = 0
    retries: RetryReport = field(default_factory=RetryReport)
    cleanup: Dict[str, int] = field(default_factory=dict)
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sources_checked': self.sources_checked,
            'sources_skipped': self.sources_skipped,
            'sources_failed': self.sources_failed,
            'syncs_succeeded': self.syncs_succeeded,
            'syncs_failed': self.syncs_failed,
            'plugins_mirrored': self.plugins_mirrored,
            'updates_surfaced': self.updates_surfaced,
            'retries': self.retries.to_dict(),
            'cleanup': dict(self.cleanup),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


class FederationScheduler:
    """Periodic driver walking verified sources through probe, record and sync.

    Failures are isolated per source and per subscriber; nothing raised by a
    single source aborts the sweep.
    """

    def __init__(
            self,
            registry: Any,
            prober: Any,
            ledger: Any,
            synchronizer: Any,
            failure_manager: Any,
            logger_manager: Any,
            interval_seconds: float = 3600,
            retention_days: int = 30,
            abandoned_retention_days: int = 7,
            clock: Optional[Clock] = None
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._ledger = ledger
        self._synchronizer = synchronizer
        self._failures = failure_manager
        self._logger = logger_manager.get_logger('federation_scheduler')
        self._interval_seconds = interval_seconds
        self._retention = datetime.timedelta(days=retention_days)
        self._abandoned_retention = datetime.timedelta(days=abandoned_retention_days)
        self._clock = clock or utc_now
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self._last_report

    async def run_sweep(self) -> SweepReport:
        """Run one full federation sweep.

        Verified sources are visited least recently synced first. Afterwards due
        retry tickets are processed and expired records are purged.

        Returns:
            Counters describing the sweep
        """
        report = SweepReport(started_at=self._clock())
        sources = await self._registry.verified_sources()
        self._logger.info(f'Starting federation sweep over {len(sources)} sources')

        for source in sources:
            try:
                await self._sweep_source(source, report)
            except Exception as e:
                report.sources_failed += 1
                self._logger.error(
                    f'Sweep of source {source.id} failed: {str(e)}',
                    extra={'source_id': source.id},
                    exc_info=True
                )

        try:
            report.retries = await self._failures.retry_failed_syncs()
        except Exception as e:
            self._logger.error(f'Retrying failed syncs failed: {str(e)}', exc_info=True)

        try:
            report.cleanup = await self.cleanup()
        except Exception as e:
            self._logger.error(f'Cleanup failed: {str(e)}', exc_info=True)

        report.finished_at = self._clock()
        self._last_report = report
        self._logger.info(f'Federation sweep finished: {report.to_dict()}')
        return report

    async def _sweep_source(self, source: Source, report: SweepReport) -> None:
        report.sources_checked += 1
        health = await self._prober.check_health(source.instance_url)
        if health.is_up and health.asset_info:
            await self._registry.update_asset_info(source.id, health.asset_info)
        await self._ledger.record_attempt(source.id, health, True, VerificationType.PERIODIC)

        if not health.is_up:
            report.sources_skipped += 1
            self._logger.warning(
                f'Skipping unhealthy source {source.id}: {health.details}',
                extra={'source_id': source.id}
            )
            return

        for subscription in await self._registry.list_subscriptions(source.id):
            try:
                result = await self._synchronizer.sync_source_plugins(source.id, subscription.filters or {})
            except PluginfedError as e:
                report.syncs_failed += 1
                self._logger.error(
                    f'Sync of {source.id} for {subscription.subscriber} failed: {e.message}',
                    extra={'source_id': source.id, 'subscriber': subscription.subscriber}
                )
                await self._failures.record_failure(source.id, e)
                continue
            except Exception as e:
                report.syncs_failed += 1
                self._logger.error(
                    f'Unexpected error syncing {source.id} for {subscription.subscriber}: {str(e)}',
                    extra={'source_id': source.id, 'subscriber': subscription.subscriber},
                    exc_info=True
                )
                await self._failures.record_failure(source.id, e)
                continue
            report.syncs_succeeded += 1
            report.plugins_mirrored += result.mirrored_count

        updates = await self._synchronizer.unnotified_updates(source.id)
        for version_update in updates:
            self._logger.info(
                f'Plugin {version_update.plugin_id} from {source.id} updated '
                f'{version_update.old_version} -> {version_update.new_version}',
                extra={
                    'source_id': source.id,
                    'plugin_id': version_update.plugin_id,
                    'old_version': version_update.old_version,
                    'new_version': version_update.new_version,
                }
            )
        report.updates_surfaced += await self._synchronizer.mark_notified(u.id for u in updates)

        await self._registry.touch_last_sync(source.id)

    async def cleanup(self) -> Dict[str, int]:
        """Purge old version updates and long-abandoned retry tickets."""
        now = self._clock()
        return {
            'version_updates': await self._synchronizer.purge_version_updates(now - self._retention),
            'abandoned_tickets': await self._failures.purge_abandoned(now - self._abandoned_retention),
        }

    async def start(self) -> None:
        """Run sweeps every ``interval_seconds`` on a background task."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name='federation_scheduler')
        self._logger.info(f'Federation scheduler started (every {self._interval_seconds}s)')

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
        self._logger.info('Federation scheduler stopped')

    async def wait(self) -> None:
        """Block until the scheduler is stopped."""
        if self._task is not None:
            await self._task

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_sweep()
            except Exception as e:
                self._logger.error(f'Federation sweep crashed: {str(e)}', exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                pass
