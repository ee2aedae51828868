from __future__ import annotations

import abc
import datetime
import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from pluginfed.utils.clock import utc_now


@runtime_checkable
class BaseManager(Protocol):
    """Anything ApplicationCore can start, stop and report on."""

    async def initialize(self) -> None:
        ...

    async def shutdown(self) -> None:
        ...

    def status(self) -> Dict[str, Any]:
        ...


class PluginfedManager(abc.ABC):
    """Base class for the infrastructure managers owned by ApplicationCore.

    Subclasses do their setup in ``initialize`` and call ``_mark_started`` once
    they are usable; ``shutdown`` releases resources and calls ``_mark_stopped``.
    ``status`` reports the lifecycle flags and subclasses extend it with their
    own counters.
    """

    def __init__(self, name: str) -> None:
        self._name: str = name
        self._initialized: bool = False
        self._healthy: bool = False
        self._started_at: Optional[datetime.datetime] = None
        self._logger: Optional[logging.Logger] = None

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Bring the manager up.

        Raises:
            ManagerInitializationError: If the manager cannot be started
        """

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release everything the manager holds.

        Raises:
            ManagerShutdownError: If resources could not be released
        """

    def _mark_started(self) -> None:
        self._initialized = True
        self._healthy = True
        self._started_at = utc_now()

    def _mark_stopped(self) -> None:
        self._initialized = False
        self._healthy = False
        self._started_at = None

    def status(self) -> Dict[str, Any]:
        return {
            'name': self._name,
            'initialized': self._initialized,
            'healthy': self._healthy,
            'started_at': self._started_at.isoformat() if self._started_at else None,
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def healthy(self) -> bool:
        return self._healthy
