from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pluginfed.models import (
    MirroredPlugin,
    Source,
    SourceStatus,
    SourceVerification,
    Subscription,
    VerificationResult,
)
from pluginfed.models.federation import make_source_id, normalize_instance_url
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import (
    DuplicateSource,
    SourceNotFound,
    SourceNotVerified,
    ValidationError,
)


class SourceRegistry:
    """Durable catalog of remote sources and the subscribers interested in them.

    The registry is the only writer of ``sources`` and ``subscriptions`` rows.
    Returned ORM objects are detached snapshots; mutate through the registry.
    """

    def __init__(self, database_manager: Any, logger_manager: Any, clock: Optional[Clock] = None) -> None:
        """Initialize the source registry.

        Args:
            database_manager: The database manager
            logger_manager: The logging manager
            clock: Source of the current UTC time
        """
        self._db = database_manager
        self._logger = logger_manager.get_logger('source_registry')
        self._clock = clock or utc_now

    async def register(self, instance_url: str, username: str, public_key: str) -> str:
        """Register a new pending source.

        Args:
            instance_url: Base URL of the remote instance
            username: Identity claimed on that instance
            public_key: PEM or base64 Ed25519 public key, stored as given

        Returns:
            The ``username@host`` source id

        Raises:
            ValidationError: If the URL or username is unusable
            DuplicateSource: If the source already exists
        """
        try:
            source_id = make_source_id(instance_url, username)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not public_key or not public_key.strip():
            raise ValidationError('Public key must not be empty')

        instance_url = normalize_instance_url(instance_url)
        username = username.strip()

        async with self._db.session() as session:
            existing = session.execute(
                select(Source.id).where(
                    (Source.id == source_id)
                    | ((Source.instance_url == instance_url) & (Source.username == username))
                )
            ).first()
            if existing is not None:
                raise DuplicateSource(f'Source already registered: {source_id}', source_id=source_id)

            session.add(Source(
                id=source_id,
                instance_url=instance_url,
                username=username,
                public_key=public_key,
                status=SourceStatus.PENDING.value,
                trust_score=0.0,
                created_at=self._clock(),
            ))
            try:
                session.flush()
            except IntegrityError as e:
                raise DuplicateSource(f'Source already registered: {source_id}', source_id=source_id) from e

        self._logger.info(f'Registered source {source_id}', extra={'source_id': source_id})
        return source_id

    async def get_source(self, source_id: str) -> Optional[Source]:
        async with self._db.session() as session:
            return self._find(session, source_id)

    async def require_source(self, source_id: str) -> Source:
        """Get a source or fail.

        Raises:
            SourceNotFound: If no such source exists
        """
        source = await self.get_source(source_id)
        if source is None:
            raise SourceNotFound(f'Source not found: {source_id}', source_id=source_id)
        return source

    async def get_status(self, source_id: str) -> Dict[str, Any]:
        """Describe a source's trust state.

        Returns:
            ``{'exists': False}`` for unknown ids, otherwise the source fields
            plus its latest verification attempt and subscriber count
        """
        async with self._db.session() as session:
            source = self._find(session, source_id)
            if source is None:
                return {'exists': False}

            latest = session.execute(
                select(SourceVerification)
                .where(SourceVerification.source_id == source_id)
                .order_by(SourceVerification.verified_at.desc(), SourceVerification.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            subscriber_count = session.execute(
                select(func.count()).select_from(Subscription).where(Subscription.source_id == source_id)
            ).scalar_one()

        status = {'exists': True}
        status.update(source.to_dict())
        status['subscriber_count'] = subscriber_count
        status['last_verification'] = latest.to_dict() if latest else None
        return status

    async def subscribe(
            self,
            source_id: str,
            subscriber: str,
            filters: Optional[Dict[str, Any]] = None
    ) -> Subscription:
        """Create or replace a subscription to a verified source.

        Nothing is written unless the source exists and is verified.

        Args:
            source_id: The source to subscribe to
            subscriber: Local subscriber name
            filters: Optional filter, e.g. ``{'tags': ['seo']}``

        Returns:
            The stored subscription

        Raises:
            ValidationError: If the subscriber name is empty
            SourceNotFound: If the source does not exist
            SourceNotVerified: If the source is not verified
        """
        if not subscriber or not subscriber.strip():
            raise ValidationError('Subscriber must not be empty')

        async with self._db.session() as session:
            source = self._find(session, source_id)
            if source is None:
                raise SourceNotFound(f'Source not found: {source_id}', source_id=source_id)
            if source.status != SourceStatus.VERIFIED.value:
                raise SourceNotVerified(
                    f'Source {source_id} is {source.status}, not verified',
                    source_id=source_id,
                    status=source.status
                )

            subscription = session.execute(
                select(Subscription).where(
                    Subscription.source_id == source_id,
                    Subscription.subscriber == subscriber,
                )
            ).scalar_one_or_none()
            if subscription is None:
                subscription = Subscription(source_id=source_id, subscriber=subscriber)
                session.add(subscription)
            subscription.filters = filters or {}
            subscription.created_at = self._clock()

        self._logger.info(
            f'Subscriber {subscriber} subscribed to {source_id}',
            extra={'source_id': source_id, 'subscriber': subscriber}
        )
        return subscription

    async def list_subscriptions(self, source_id: str) -> List[Subscription]:
        async with self._db.session() as session:
            return list(session.execute(
                select(Subscription)
                .where(Subscription.source_id == source_id)
                .order_by(Subscription.created_at.desc(), Subscription.id)
            ).scalars())

    async def list_sources(self) -> List[Dict[str, Any]]:
        """List every source with subscriber, plugin and verification counts.

        Ordered by trust score then creation time, both descending, with
        ties in insertion order.
        """
        subscriber_count = (
            select(func.count(Subscription.id))
            .where(Subscription.source_id == Source.id)
            .correlate(Source)
            .scalar_subquery()
        )
        plugin_count = (
            select(func.count(MirroredPlugin.id))
            .where(MirroredPlugin.source_id == Source.id)
            .correlate(Source)
            .scalar_subquery()
        )
        last_result = (
            select(SourceVerification.result)
            .where(SourceVerification.source_id == Source.id)
            .order_by(SourceVerification.verified_at.desc(), SourceVerification.id.desc())
            .limit(1)
            .correlate(Source)
            .scalar_subquery()
        )
        successful = (
            select(func.count(SourceVerification.id))
            .where(
                SourceVerification.source_id == Source.id,
                SourceVerification.result == VerificationResult.SUCCESS.value,
            )
            .correlate(Source)
            .scalar_subquery()
        )

        async with self._db.session() as session:
            rows = session.execute(
                select(Source, subscriber_count, plugin_count, last_result, successful)
                .order_by(Source.trust_score.desc(), Source.created_at.desc(), Source.row_id)
            ).all()

        sources = []
        for source, subscribers, plugins, result, successes in rows:
            entry = source.to_dict()
            entry.update({
                'subscriber_count': subscribers,
                'plugin_count': plugins,
                'last_verification_result': result,
                'successful_verifications': successes,
            })
            sources.append(entry)
        return sources

    async def verified_sources(self) -> List[Source]:
        """Get verified sources, least recently synced first."""
        async with self._db.session() as session:
            return list(session.execute(
                select(Source)
                .where(Source.status == SourceStatus.VERIFIED.value)
                .order_by(Source.last_sync.isnot(None), Source.last_sync.asc(), Source.row_id)
            ).scalars())

    async def update_asset_info(self, source_id: str, asset_info: Optional[Dict[str, Any]]) -> bool:
        """Store the asset domain and naming scheme a source declared.

        Returns:
            True if both values were present and stored
        """
        asset_info = asset_info or {}
        domain = asset_info.get('domain')
        naming_scheme = asset_info.get('namingScheme')
        if not isinstance(domain, str) or not isinstance(naming_scheme, str) or not domain or not naming_scheme:
            self._logger.warning(
                f'Source {source_id} declared no usable asset info',
                extra={'source_id': source_id}
            )
            return False

        async with self._db.session() as session:
            source = self._find(session, source_id)
            if source is None:
                raise SourceNotFound(f'Source not found: {source_id}', source_id=source_id)
            source.asset_domain = domain
            source.asset_naming_scheme = naming_scheme
        return True

    async def touch_last_sync(self, source_id: str) -> None:
        async with self._db.session() as session:
            source = self._find(session, source_id)
            if source is not None:
                source.last_sync = self._clock()

    @staticmethod
    def _find(session: Session, source_id: str) -> Optional[Source]:
        return session.execute(select(Source).where(Source.id == source_id)).scalar_one_or_none()
