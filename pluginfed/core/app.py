from __future__ import annotations

import asyncio
import logging
import signal
import sys
import traceback
from typing import Any, Dict, List, Optional, Type, TypeVar, cast

import httpx

from pluginfed.core.base import BaseManager
from pluginfed.core.blob_store import BlobStore
from pluginfed.core.config_manager import ConfigManager
from pluginfed.core.database_manager import DatabaseManager
from pluginfed.core.logging_manager import LoggingManager
from pluginfed.core.remote_client import RemoteClient
from pluginfed.federation.activity import ActivityFeed
from pluginfed.federation.failures import FailureManager
from pluginfed.federation.ledger import TrustLedger
from pluginfed.federation.mirror import MirrorSynchronizer
from pluginfed.federation.prober import HealthProber
from pluginfed.federation.registry import SourceRegistry
from pluginfed.federation.scheduler import FederationScheduler
from pluginfed.federation.service import FederationService
from pluginfed.utils.clock import Clock, utc_now
from pluginfed.utils.exceptions import ApplicationError

T = TypeVar('T')


class ApplicationCore:
    """Owns every manager and federation component of one federation instance.

    Managers are initialized in dependency order and shut down in reverse.
    The federation components share the managers by reference.
    """

    def __init__(
            self,
            config_path: Optional[str] = None,
            overrides: Optional[Dict[str, Any]] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            clock: Optional[Clock] = None
    ) -> None:
        """Initialize the application core.

        Args:
            config_path: Optional path to configuration file
            overrides: Configuration values applied over the file
            transport: Optional HTTP transport for the remote client
            clock: Source of the current UTC time
        """
        self._config_path = config_path
        self._overrides = overrides
        self._transport = transport
        self._clock = clock or utc_now
        self._managers: Dict[str, BaseManager] = {}
        self._init_order: List[str] = []
        self._initialized = False
        self._logger: Optional[logging.Logger] = None
        self._shutdown_event = asyncio.Event()

        self.registry: Optional[SourceRegistry] = None
        self.prober: Optional[HealthProber] = None
        self.ledger: Optional[TrustLedger] = None
        self.synchronizer: Optional[MirrorSynchronizer] = None
        self.failure_manager: Optional[FailureManager] = None
        self.scheduler: Optional[FederationScheduler] = None
        self.activity_feed: Optional[ActivityFeed] = None
        self.service: Optional[FederationService] = None

    async def initialize(self) -> None:
        """Initialize managers and wire the federation components.

        Raises:
            ApplicationError: If initialization fails
        """
        try:
            config_manager = ConfigManager(config_path=self._config_path, overrides=self._overrides)
            await self._start('config_manager', config_manager)

            logging_manager = LoggingManager(config_manager)
            await self._start('logging_manager', logging_manager)
            self._logger = logging_manager.get_logger('app_core')

            await self._start('database_manager', DatabaseManager(config_manager, logging_manager))
            await self._start('blob_store', BlobStore(config_manager, logging_manager))
            await self._start(
                'remote_client',
                RemoteClient(config_manager, logging_manager, transport=self._transport)
            )

            await self._build_federation(config_manager, logging_manager)

            self._initialized = True
            self._logger.info(f'pluginfed {self._get_version()} initialization complete')
        except Exception as e:
            if self._logger:
                self._logger.error(f'Failed to initialize pluginfed: {str(e)}', exc_info=True)
            else:
                print(f'Failed to initialize pluginfed: {str(e)}', file=sys.stderr)
                traceback.print_exc()
            await self._shutdown_managers()
            raise ApplicationError(f'Failed to initialize application: {str(e)}') from e

    async def _start(self, name: str, manager: Any) -> None:
        await manager.initialize()
        self._managers[name] = manager
        self._init_order.append(name)

    async def _build_federation(self, config_manager: ConfigManager, logging_manager: LoggingManager) -> None:
        federation_config = await config_manager.get('federation', {})
        trust_config = await config_manager.get('trust', {})
        scheduler_config = await config_manager.get('scheduler', {})

        database_manager = self._managers['database_manager']
        remote_client = self._managers['remote_client']

        self.registry = SourceRegistry(database_manager, logging_manager, clock=self._clock)
        self.prober = HealthProber(remote_client, logging_manager)
        self.ledger = TrustLedger(
            database_manager,
            self.registry,
            self.prober,
            logging_manager,
            verifier=federation_config.get('verifier', 'system'),
            baseline=trust_config.get('baseline', 0.5),
            clock=self._clock,
        )
        self.synchronizer = MirrorSynchronizer(
            database_manager,
            self._managers['blob_store'],
            remote_client,
            self.registry,
            logging_manager,
            clock=self._clock,
        )
        self.failure_manager = FailureManager(
            database_manager,
            self.synchronizer,
            self.registry,
            logging_manager,
            failure_threshold=trust_config.get('failure_threshold', 3),
            failure_window_hours=trust_config.get('failure_window_hours', 24),
            decay=trust_config.get('decay', 0.1),
            max_retries=trust_config.get('max_retries', 5),
            retry_base_seconds=trust_config.get('retry_base_seconds', 3600),
            clock=self._clock,
        )
        self.scheduler = FederationScheduler(
            self.registry,
            self.prober,
            self.ledger,
            self.synchronizer,
            self.failure_manager,
            logging_manager,
            interval_seconds=scheduler_config.get('interval_seconds', 3600),
            retention_days=scheduler_config.get('retention_days', 30),
            abandoned_retention_days=scheduler_config.get('abandoned_retention_days', 7),
            clock=self._clock,
        )
        self.activity_feed = ActivityFeed(database_manager, logging_manager)
        self.service = FederationService(
            self.registry,
            self.prober,
            self.ledger,
            self.synchronizer,
            self.failure_manager,
            self.scheduler,
            self.activity_feed,
            logging_manager,
        )

    def get_manager(self, name: str) -> Optional[BaseManager]:
        """Get a manager by name.

        Args:
            name: Name of the manager

        Returns:
            The manager or None if not found
        """
        return self._managers.get(name)

    def get_manager_typed(self, name: str, manager_type: Type[T]) -> Optional[T]:
        manager = self._managers.get(name)
        if manager and isinstance(manager, manager_type):
            return cast(T, manager)
        return None

    async def set_config(self, key: str, value: Any) -> None:
        """Change a configuration value at runtime; listening managers apply it immediately.

        Raises:
            ApplicationError: If the application is not initialized
            ConfigurationError: If the value is invalid
        """
        config_manager = self.get_manager_typed('config_manager', ConfigManager)
        if not self._initialized or config_manager is None:
            raise ApplicationError(f'Cannot set {key} before initialization')
        await config_manager.set(key, value)
        if self._logger:
            self._logger.info(f'Configuration {key} changed at runtime', extra={'config_key': key})

    async def shutdown(self) -> None:
        """Stop the scheduler and shut managers down in reverse order.

        Raises:
            ApplicationError: If shutdown fails
        """
        if not self._initialized:
            return

        try:
            if self._logger:
                self._logger.info('Shutting down pluginfed')
            if self.scheduler is not None:
                await self.scheduler.stop()
            await self._shutdown_managers()
            self._initialized = False
            self._shutdown_event.set()
        except Exception as e:
            if self._logger:
                self._logger.error(f'Error during shutdown: {str(e)}', exc_info=True)
            raise ApplicationError(f'Failed to shutdown application: {str(e)}') from e

    async def _shutdown_managers(self) -> None:
        for name in reversed(self._init_order):
            await self._managers[name].shutdown()
        self._managers.clear()
        self._init_order.clear()

    def is_initialized(self) -> bool:
        return self._initialized

    def _get_version(self) -> str:
        from pluginfed.__version__ import __version__ as app_version
        return app_version

    async def wait_for_shutdown(self) -> None:
        """Wait for the application to shut down."""
        await self._shutdown_event.wait()

    def setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        signals = [signal.SIGINT]
        if sys.platform != 'win32':
            signals.append(signal.SIGTERM)
        for sig in signals:
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self._signal_handler(s)))

    async def _signal_handler(self, sig: int) -> None:
        if self._logger:
            self._logger.info(f'Received signal {sig}, shutting down')
        await self.shutdown()

    def status(self) -> Dict[str, Any]:
        """Get the application status.

        Returns:
            Status dictionary
        """
        status = {
            'name': 'ApplicationCore',
            'initialized': self._initialized,
            'version': self._get_version(),
            'scheduler_running': bool(self.scheduler and self.scheduler.running),
            'managers': {}
        }

        for name, manager in self._managers.items():
            try:
                status['managers'][name] = manager.status()
            except Exception as e:
                status['managers'][name] = {
                    'error': f'Failed to get status: {str(e)}',
                    'initialized': getattr(manager, 'initialized', False),
                    'healthy': getattr(manager, 'healthy', False)
                }

        return status
