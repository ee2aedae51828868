from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pluginfed.federation import signing
from pluginfed.utils.exceptions import (
    MalformedKey,
    MalformedSignature,
    RemoteError,
    RemoteIncompatible,
)


@dataclass
class HealthResult:
    """Outcome of a federation-info probe."""

    is_up: bool
    details: str
    info: Optional[Dict[str, Any]] = field(default=None)

    @property
    def asset_info(self) -> Optional[Dict[str, Any]]:
        if not self.info:
            return None
        asset_info = self.info.get('assetInfo')
        return asset_info if isinstance(asset_info, dict) else None

    def to_dict(self) -> Dict[str, Any]:
        return {'is_up': self.is_up, 'details': self.details, 'info': self.info}


class HealthProber:
    """Liveness checks and challenge-response ownership proofs against remote instances.

    Neither probe raises for remote misbehaviour: health reports ``is_up=False``
    and ownership reports ``False``.
    """

    FEDERATION_INFO_PATH = '/federation-info'
    VERIFY_OWNERSHIP_PATH = '/verify-ownership'

    def __init__(self, remote_client: Any, logger_manager: Any) -> None:
        """Initialize the prober.

        Args:
            remote_client: The remote client used for all requests
            logger_manager: The logging manager
        """
        self._remote = remote_client
        self._logger = logger_manager.get_logger('health_prober')

    async def check_health(self, instance_url: str) -> HealthResult:
        """Fetch ``{instance}/federation-info``.

        Args:
            instance_url: Base URL of the remote instance

        Returns:
            The probe result; ``info`` holds the parsed body when the instance is up
        """
        url = f'{instance_url.rstrip("/")}{self.FEDERATION_INFO_PATH}'
        try:
            info = await self._remote.get_json(url)
        except RemoteError as e:
            detail = f'HTTP {e.status_code}' if e.status_code else e.message
            self._logger.warning(
                f'Health check failed for {instance_url}: {detail}',
                extra={'instance_url': instance_url}
            )
            return HealthResult(is_up=False, details=detail)

        if not isinstance(info, dict):
            self._logger.warning(
                f'Health check for {instance_url} returned an unexpected body',
                extra={'instance_url': instance_url}
            )
            return HealthResult(is_up=False, details='Federation info is not a JSON object')

        self._logger.debug(f'Instance {instance_url} is up', extra={'instance_url': instance_url})
        return HealthResult(is_up=True, details='Instance responded successfully', info=info)

    async def check_compatibility(self, instance_url: str) -> Dict[str, Any]:
        """Check that an instance speaks the federation protocol.

        Returns:
            The declared ``version`` and ``features``

        Raises:
            RemoteIncompatible: If the instance is unreachable or not compliant
        """
        health = await self.check_health(instance_url)
        if not health.is_up:
            raise RemoteIncompatible(
                f'Instance is not federation compatible: {health.details}',
                url=instance_url
            )
        return {
            'version': health.info.get('version'),
            'features': health.info.get('features', []),
        }

    async def verify_ownership(self, instance_url: str, username: str, public_key: str) -> bool:
        """Prove that the instance holds the private key for ``public_key``.

        A random challenge is posted with the username; the instance must answer
        with a base64 Ed25519 signature over the challenge's UTF-8 bytes.

        Args:
            instance_url: Base URL of the remote instance
            username: The claimed identity
            public_key: The public key on file

        Returns:
            True only if the returned signature verifies
        """
        challenge = str(uuid.uuid4())
        url = f'{instance_url.rstrip("/")}{self.VERIFY_OWNERSHIP_PATH}'
        log_extra = {'instance_url': instance_url, 'username': username}

        try:
            body = await self._remote.post_json(url, {'username': username, 'challenge': challenge})
        except RemoteError as e:
            self._logger.warning(f'Ownership challenge failed: {e.message}', extra=log_extra)
            return False

        signature = body.get('signature') if isinstance(body, dict) else None
        if not isinstance(signature, str):
            self._logger.warning('Ownership response carried no signature', extra=log_extra)
            return False

        try:
            verified = signing.verify(challenge.encode('utf-8'), signature, public_key)
        except (MalformedKey, MalformedSignature) as e:
            self._logger.warning(f'Ownership proof rejected: {e.message}', extra=log_extra)
            return False

        if not verified:
            self._logger.warning('Ownership signature does not match the key on file', extra=log_extra)
        return verified
