from __future__ import annotations

from typing import Any, Optional, Union

from sqlalchemy import select

from pluginfed.federation.prober import HealthResult
from pluginfed.models import (
    Source,
    SourceStatus,
    SourceVerification,
    VerificationResult,
    VerificationType,
)
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import SourceNotFound


class TrustLedger:
    """Append-only log of verification attempts and the promotions they trigger.

    Trust is a fixed two-level model: a source starts at 0.0 and is promoted to
    the baseline on its first successful verification. Only the failure manager
    lowers it again.
    """

    def __init__(
            self,
            database_manager: Any,
            registry: Any,
            prober: Any,
            logger_manager: Any,
            verifier: str = 'system',
            baseline: float = 0.5,
            clock: Optional[Clock] = None
    ) -> None:
        """Initialize the ledger.

        Args:
            database_manager: The database manager
            registry: The source registry
            prober: The health and ownership prober
            logger_manager: The logging manager
            verifier: Identity recorded on every attempt
            baseline: Trust score granted on promotion
            clock: Source of the current UTC time
        """
        self._db = database_manager
        self._registry = registry
        self._prober = prober
        self._logger = logger_manager.get_logger('trust_ledger')
        self._verifier = verifier
        self._baseline = baseline
        self._clock = clock or utc_now

    async def record_attempt(
            self,
            source_id: str,
            health: HealthResult,
            key_verified: bool,
            verification_type: Union[VerificationType, str] = VerificationType.INITIAL
    ) -> SourceVerification:
        """Append a verification attempt.

        The attempt succeeds only if the instance was up and the key was verified.

        Args:
            source_id: The verified source
            health: Result of the health probe
            key_verified: Whether ownership was proven
            verification_type: initial, periodic or manual

        Returns:
            The stored attempt
        """
        success = health.is_up and key_verified
        attempt = SourceVerification(
            source_id=source_id,
            verifier=self._verifier,
            verification_type=VerificationType(verification_type).value,
            result=(VerificationResult.SUCCESS if success else VerificationResult.FAILURE).value,
            details={'health': health.to_dict(), 'key_verified': key_verified},
            verified_at=self._clock(),
        )
        async with self._db.session() as session:
            session.add(attempt)

        self._logger.info(
            f'Recorded {attempt.verification_type} verification for {source_id}: {attempt.result}',
            extra={'source_id': source_id, 'result': attempt.result}
        )
        return attempt

    async def promote(self, source_id: str) -> bool:
        """Mark a source verified at the baseline trust score.

        Returns:
            True if the source changed, False if it was already verified

        Raises:
            SourceNotFound: If the source does not exist
        """
        async with self._db.session() as session:
            source = session.execute(select(Source).where(Source.id == source_id)).scalar_one_or_none()
            if source is None:
                raise SourceNotFound(f'Source not found: {source_id}', source_id=source_id)
            if source.status == SourceStatus.VERIFIED.value:
                return False
            previous = source.status
            source.status = SourceStatus.VERIFIED.value
            source.trust_score = self._baseline

        self._logger.info(
            f'Promoted source {source_id} from {previous} to verified',
            extra={'source_id': source_id, 'trust_score': self._baseline}
        )
        return True

    async def verify_source(
            self,
            source_id: str,
            verification_type: Union[VerificationType, str] = VerificationType.MANUAL
    ) -> bool:
        """Run a full verification: health, asset info, ownership, record, promote.

        Args:
            source_id: The source to verify
            verification_type: Recorded type of the attempt

        Returns:
            True if the source proved liveness and ownership

        Raises:
            SourceNotFound: If the source does not exist
        """
        source = await self._registry.require_source(source_id)

        health = await self._prober.check_health(source.instance_url)
        key_verified = False
        if health.is_up:
            if health.asset_info:
                await self._registry.update_asset_info(source_id, health.asset_info)
            key_verified = await self._prober.verify_ownership(
                source.instance_url, source.username, source.public_key
            )

        attempt = await self.record_attempt(source_id, health, key_verified, verification_type)
        if attempt.result != VerificationResult.SUCCESS.value:
            return False

        await self.promote(source_id)
        return True
