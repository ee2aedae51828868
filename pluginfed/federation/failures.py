from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, func, select

from pluginfed.models import Source, SourceStatus, SyncFailure
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import PluginfedError


@dataclass
class RetryReport:
    """Outcome of one pass over due retry tickets."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'attempted': self.attempted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'abandoned': self.abandoned,
        }


class FailureManager:
    """Owns sync failure tickets, their backoff schedule and source demotion.

    A failed sync opens a ticket due one base interval later. Each failed
    retry doubles the delay; a ticket reaching ``max_retries`` is abandoned.
    Too many fresh tickets within the failure window demote the source to
    ``error`` and decay its trust score.
    """

    def __init__(
            self,
            database_manager: Any,
            synchronizer: Any,
            registry: Any,
            logger_manager: Any,
            failure_threshold: int = 3,
            failure_window_hours: float = 24,
            decay: float = 0.1,
            max_retries: int = 5,
            retry_base_seconds: int = 3600,
            clock: Optional[Clock] = None
    ) -> None:
        """Initialize the failure manager.

        Args:
            database_manager: The database manager
            synchronizer: The mirror synchronizer used for retries
            registry: The source registry
            logger_manager: The logging manager
            failure_threshold: Tickets within the window that demote a source
            failure_window_hours: Length of the trailing failure window
            decay: Trust lost on demotion
            max_retries: Retry count at which a ticket is abandoned
            retry_base_seconds: Base backoff interval
            clock: Source of the current UTC time
        """
        self._db = database_manager
        self._synchronizer = synchronizer
        self._registry = registry
        self._logger = logger_manager.get_logger('failure_manager')
        self._failure_threshold = failure_threshold
        self._failure_window = datetime.timedelta(hours=failure_window_hours)
        self._decay = decay
        self._max_retries = max_retries
        self._retry_base_seconds = retry_base_seconds
        self._clock = clock or utc_now

    def next_retry_delay(self, retry_count: int) -> datetime.timedelta:
        """Backoff before the next retry of a ticket that has failed ``retry_count`` times."""
        return datetime.timedelta(seconds=self._retry_base_seconds * 2 ** retry_count)

    async def record_failure(self, source_id: str, error: Union[Exception, str]) -> SyncFailure:
        """Open a retry ticket and demote the source if it keeps failing.

        Args:
            source_id: The source whose sync failed
            error: The failure

        Returns:
            The new ticket
        """
        message = error.message if isinstance(error, PluginfedError) else str(error)
        now = self._clock()
        ticket = SyncFailure(
            source_id=source_id,
            error_message=message or type(error).__name__,
            retry_count=1,
            next_retry=now + datetime.timedelta(seconds=self._retry_base_seconds),
            created_at=now,
        )

        demoted = False
        async with self._db.session() as session:
            session.add(ticket)
            session.flush()

            recent = session.execute(
                select(func.count(SyncFailure.id)).where(
                    SyncFailure.source_id == source_id,
                    SyncFailure.created_at >= now - self._failure_window,
                    SyncFailure.abandoned_at.is_(None),
                )
            ).scalar_one()

            if recent >= self._failure_threshold:
                source = session.execute(select(Source).where(Source.id == source_id)).scalar_one_or_none()
                if source is not None and source.status != SourceStatus.ERROR.value:
                    source.status = SourceStatus.ERROR.value
                    source.trust_score = source.trust_score - self._decay
                    demoted = True

        self._logger.warning(
            f'Recorded sync failure for {source_id}: {ticket.error_message}',
            extra={'source_id': source_id, 'recent_failures': recent}
        )
        if demoted:
            self._logger.error(
                f'Source {source_id} demoted to error after {recent} failures',
                extra={'source_id': source_id}
            )
        return ticket

    async def due_tickets(self) -> List[SyncFailure]:
        now = self._clock()
        async with self._db.session() as session:
            return list(session.execute(
                select(SyncFailure)
                .where(
                    SyncFailure.next_retry <= now,
                    SyncFailure.retry_count < self._max_retries,
                    SyncFailure.abandoned_at.is_(None),
                )
                .order_by(SyncFailure.next_retry, SyncFailure.id)
            ).scalars())

    async def open_tickets(self, source_id: Optional[str] = None) -> List[SyncFailure]:
        query = select(SyncFailure).where(SyncFailure.abandoned_at.is_(None))
        if source_id is not None:
            query = query.where(SyncFailure.source_id == source_id)
        async with self._db.session() as session:
            return list(session.execute(query.order_by(SyncFailure.id)).scalars())

    async def retry_failed_syncs(self) -> RetryReport:
        """Re-run the sync behind every due ticket.

        A source is synced at most once per pass; its remaining due tickets
        share that outcome.

        Returns:
            Counts of attempted, succeeded, failed and abandoned tickets
        """
        report = RetryReport()
        outcomes: Dict[str, Optional[str]] = {}

        for ticket in await self.due_tickets():
            source_id = ticket.source_id
            if source_id not in outcomes:
                report.attempted += 1
                outcomes[source_id] = await self._retry_source(source_id)
                if outcomes[source_id] is None:
                    report.succeeded += 1
                    await self._resolve(source_id)
                    continue
            elif outcomes[source_id] is None:
                continue

            report.failed += 1
            if await self._reschedule(ticket.id, outcomes[source_id]):
                report.abandoned += 1

        if report.attempted:
            self._logger.info(f'Retried failed syncs: {report.to_dict()}')
        return report

    async def _retry_source(self, source_id: str) -> Optional[str]:
        """Re-sync a source for all its subscribers. Returns the error message or None."""
        try:
            subscriptions = await self._registry.list_subscriptions(source_id)
            if not subscriptions:
                await self._synchronizer.sync_source_plugins(source_id, {})
            for subscription in subscriptions:
                await self._synchronizer.sync_source_plugins(source_id, subscription.filters or {})
            return None
        except PluginfedError as e:
            self._logger.warning(f'Retry for {source_id} failed: {e.message}', extra={'source_id': source_id})
            return e.message
        except Exception as e:
            self._logger.error(
                f'Unexpected error retrying {source_id}: {str(e)}',
                extra={'source_id': source_id},
                exc_info=True
            )
            return str(e) or type(e).__name__

    async def _resolve(self, source_id: str) -> None:
        async with self._db.session() as session:
            session.execute(
                delete(SyncFailure).where(
                    SyncFailure.source_id == source_id,
                    SyncFailure.abandoned_at.is_(None),
                )
            )
            source = session.execute(select(Source).where(Source.id == source_id)).scalar_one_or_none()
            restored = source is not None and source.status == SourceStatus.ERROR.value
            if restored:
                source.status = SourceStatus.VERIFIED.value

        self._logger.info(f'Retry for {source_id} succeeded, tickets cleared', extra={'source_id': source_id})
        if restored:
            self._logger.info(f'Source {source_id} restored to verified', extra={'source_id': source_id})

    async def _reschedule(self, ticket_id: int, error_message: str) -> bool:
        """Back off a ticket after a failed retry. Returns True if it was abandoned."""
        now = self._clock()
        async with self._db.session() as session:
            ticket = session.get(SyncFailure, ticket_id)
            if ticket is None:
                return False
            ticket.next_retry = now + self.next_retry_delay(ticket.retry_count)
            ticket.retry_count += 1
            ticket.error_message = error_message
            abandoned = ticket.retry_count >= self._max_retries
            if abandoned:
                ticket.abandoned_at = now
            source_id = ticket.source_id

        if abandoned:
            self._logger.error(
                f'Abandoned sync ticket {ticket_id} for {source_id} after {self._max_retries} attempts',
                extra={'source_id': source_id, 'ticket_id': ticket_id}
            )
        return abandoned

    async def purge_abandoned(self, older_than: datetime.datetime) -> int:
        """Delete tickets abandoned before ``older_than``.

        Returns:
            Number of deleted tickets
        """
        async with self._db.session() as session:
            result = session.execute(
                delete(SyncFailure).where(
                    SyncFailure.abandoned_at.isnot(None),
                    SyncFailure.abandoned_at < older_than,
                )
            )
            deleted = result.rowcount
        if deleted:
            self._logger.info(f'Purged {deleted} abandoned sync tickets')
        return deleted
