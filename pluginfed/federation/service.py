from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Dict, Optional

from pluginfed.federation import signing
from pluginfed.models import VerificationType
from pluginfed.utils.exceptions import PluginfedError, RemoteIncompatible, RemoteUnavailable

Payload = Dict[str, Any]


def payload_errors(func: Callable[..., Awaitable[Payload]]) -> Callable[..., Awaitable[Payload]]:
    """Turn exceptions raised by a service method into failure payloads.

    Pluginfed errors surface their own message. Anything else is logged and
    reported with a generic message so no internal detail leaks.
    """

    @functools.wraps(func)
    async def wrapper(self: 'FederationService', *args: Any, **kwargs: Any) -> Payload:
        try:
            return await func(self, *args, **kwargs)
        except PluginfedError as e:
            self._logger.warning(
                f'{func.__name__} failed: {e.message}',
                extra={'operation': func.__name__, 'error_type': type(e).__name__}
            )
            return {'success': False, 'error': e.message, 'error_type': type(e).__name__}
        except Exception as e:
            self._logger.error(f'{func.__name__} crashed: {str(e)}', exc_info=True)
            return {'success': False, 'error': 'Internal error', 'error_type': type(e).__name__}

    return wrapper


class FederationService:
    """Local-facing entry points for routers and the command line.

    Every method returns ``{'success': True, ...}`` or
    ``{'success': False, 'error': <message>, 'error_type': <exception class>}``.
    """

    def __init__(
            self,
            registry: Any,
            prober: Any,
            ledger: Any,
            synchronizer: Any,
            failure_manager: Any,
            scheduler: Any,
            activity_feed: Any,
            logger_manager: Any
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._ledger = ledger
        self._synchronizer = synchronizer
        self._failures = failure_manager
        self._scheduler = scheduler
        self._activity = activity_feed
        self._logger = logger_manager.get_logger('federation_service')

    @payload_errors
    async def add_source(self, instance_url: str, username: str, public_key: str) -> Payload:
        """Register a source and run its initial verification.

        The instance must answer its federation-info endpoint before anything
        is written.
        """
        signing.decode_public_key(public_key)
        compatibility = await self._prober.check_compatibility(instance_url)
        source_id = await self._registry.register(instance_url, username, public_key)
        verified = await self._ledger.verify_source(source_id, VerificationType.INITIAL)
        status = await self._registry.get_status(source_id)
        return {
            'success': True,
            'source_id': source_id,
            'verified': verified,
            'status': status['status'],
            'trust_score': status['trust_score'],
            'instance': compatibility,
        }

    @payload_errors
    async def list_sources(self) -> Payload:
        return {'success': True, 'sources': await self._registry.list_sources()}

    @payload_errors
    async def get_source_status(self, source_id: str) -> Payload:
        status = await self._registry.get_status(source_id)
        status['open_tickets'] = (
            len(await self._failures.open_tickets(source_id)) if status['exists'] else 0
        )
        return {'success': True, 'source': status}

    @payload_errors
    async def verify_source(self, source_id: str) -> Payload:
        verified = await self._ledger.verify_source(source_id, VerificationType.MANUAL)
        status = await self._registry.get_status(source_id)
        payload = {
            'success': verified,
            'source_id': source_id,
            'verified': verified,
            'status': status['status'],
            'trust_score': status['trust_score'],
        }
        if not verified:
            payload.update({'error': 'Source failed verification', 'error_type': 'VerificationFailed'})
        return payload

    @payload_errors
    async def refresh_source(self, source_id: str) -> Payload:
        """Re-read a source's asset info from its federation-info endpoint."""
        source = await self._registry.require_source(source_id)
        health = await self._prober.check_health(source.instance_url)
        if not health.is_up:
            raise RemoteUnavailable(f'Instance is down: {health.details}', url=source.instance_url)
        if not await self._registry.update_asset_info(source_id, health.asset_info):
            raise RemoteIncompatible('No asset info in federation response', url=source.instance_url)
        refreshed = await self._registry.require_source(source_id)
        return {'success': True, 'message': 'Source asset info updated', 'source': refreshed.to_dict()}

    @payload_errors
    async def subscribe(self, source_id: str, subscriber: str, filters: Optional[Dict[str, Any]] = None) -> Payload:
        """Subscribe to a verified source and run the initial sync.

        A failing initial sync is reported to the caller; the subscription stays.
        """
        subscription = await self._registry.subscribe(source_id, subscriber, filters)
        result = await self._synchronizer.sync_source_plugins(source_id, subscription.filters)
        return {
            'success': True,
            'message': 'Subscription created and initial sync completed',
            'subscription': subscription.to_dict(),
            'sync_result': result.to_dict(),
        }

    @payload_errors
    async def run_sweep(self) -> Payload:
        report = await self._scheduler.run_sweep()
        return {'success': True, 'report': report.to_dict()}

    @payload_errors
    async def run_cleanup(self) -> Payload:
        return {'success': True, 'purged': await self._scheduler.cleanup()}

    @payload_errors
    async def get_activity(self, limit: int = 20, offset: int = 0) -> Payload:
        activities = await self._activity.get_activity(limit=limit, offset=offset)
        return {'success': True, 'activities': activities, 'limit': limit, 'offset': offset}

    @payload_errors
    async def backfill_versions(self) -> Payload:
        inserted = await self._synchronizer.backfill_version_updates()
        return {
            'success': True,
            'inserted': len(inserted),
            'updates': [update.to_dict() for update in inserted],
        }
