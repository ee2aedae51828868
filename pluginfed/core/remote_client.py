"""
HTTP client for talking to remote federation instances.

Every request carries the configured timeout and user agent. Idempotent GETs
are retried on transport errors; POSTs are sent once.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from pluginfed.core.base import PluginfedManager
from pluginfed.utils.exceptions import (
    ManagerInitializationError,
    ManagerShutdownError,
    RemoteIncompatible,
    RemoteUnavailable,
)


class RemoteClient(PluginfedManager):
    """Shared ``httpx.AsyncClient`` for all remote source traffic."""

    def __init__(
            self,
            config_manager: Any,
            logger_manager: Any,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """Initialize the remote client.

        Args:
            config_manager: The configuration manager
            logger_manager: The logging manager
            transport: Optional transport, used to simulate remote instances
        """
        super().__init__(name='remote_client')
        self._config_manager = config_manager
        self._logger = logger_manager.get_logger('remote_client')
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._timeout = 10.0
        self._max_attempts = 3
        self._retry_delay = 0.5
        self._retry_max_delay = 5.0
        self._request_count = 0
        self._error_count = 0
        self._total_response_time = 0.0

    async def initialize(self) -> None:
        """Create the HTTP client.

        Raises:
            ManagerInitializationError: If initialization fails
        """
        try:
            federation_config = await self._config_manager.get('federation', {})
            self._timeout = float(federation_config.get('request_timeout', 10.0))
            self._max_attempts = max(1, int(federation_config.get('max_attempts', 3)))
            self._retry_delay = float(federation_config.get('retry_delay', 0.5))
            self._retry_max_delay = float(federation_config.get('retry_max_delay', 5.0))
            user_agent = federation_config.get('user_agent', 'pluginfed/0.1')

            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={'User-Agent': user_agent, 'Accept': 'application/json'},
                transport=self._transport,
            )

            self._logger.info(f'Remote Client initialized (timeout {self._timeout}s)')
            self._mark_started()
        except Exception as e:
            raise ManagerInitializationError(
                f'Failed to initialize RemoteClient: {str(e)}',
                manager_name=self.name
            ) from e

    async def request(
            self,
            method: str,
            url: str,
            params: Optional[Dict[str, Any]] = None,
            json_data: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """Send a request, retrying GETs on transport errors.

        Args:
            method: HTTP method
            url: Absolute URL
            params: Query parameters
            json_data: JSON request body

        Returns:
            The HTTP response, whatever its status code

        Raises:
            RemoteUnavailable: If the remote cannot be reached
            RemoteIncompatible: If the URL cannot be parsed
        """
        if self._client is None:
            raise RemoteUnavailable('Remote client is not initialized', url=url)

        attempts = self._max_attempts if method.upper() == 'GET' else 1
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._retry_delay, max=self._retry_max_delay),
            reraise=True,
        )

        start_time = time.time()
        try:
            async for attempt in retrying:
                with attempt:
                    self._request_count += 1
                    response = await self._client.request(method, url, params=params, json=json_data)
        except httpx.InvalidURL as e:
            self._error_count += 1
            self._logger.warning(
                f'Invalid URL {url!r}: {str(e)}',
                extra={'method': method, 'url': url, 'error': type(e).__name__}
            )
            raise RemoteIncompatible(f'Remote produced an invalid URL: {str(e)}', url=url) from e
        except httpx.HTTPError as e:
            self._error_count += 1
            self._logger.warning(
                f'Request error for {url}: {str(e)}',
                extra={'method': method, 'url': url, 'error': type(e).__name__}
            )
            raise RemoteUnavailable(f'Remote instance unreachable: {type(e).__name__}', url=url) from e

        self._total_response_time += time.time() - start_time
        if not response.is_success:
            self._error_count += 1
        return response

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a URL and decode its JSON body.

        Raises:
            RemoteUnavailable: On transport errors or a non-2xx response
            RemoteIncompatible: If the body is not JSON
        """
        response = await self.request('GET', url, params=params)
        return self._decode(response, url)

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Any:
        """POST a JSON payload and decode the JSON answer.

        Raises:
            RemoteUnavailable: On transport errors or a non-2xx response
            RemoteIncompatible: If the body is not JSON
        """
        response = await self.request('POST', url, json_data=payload)
        return self._decode(response, url)

    async def fetch_bytes(self, url: str) -> bytes:
        """Download raw bytes.

        Raises:
            RemoteUnavailable: On transport errors or a non-2xx response
        """
        response = await self.request('GET', url)
        if not response.is_success:
            raise RemoteUnavailable(
                f'Download failed with HTTP {response.status_code}',
                url=url,
                status_code=response.status_code
            )
        return response.content

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        if not response.is_success:
            raise RemoteUnavailable(
                f'Remote answered HTTP {response.status_code}',
                url=url,
                status_code=response.status_code
            )
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise RemoteIncompatible('Remote answered with a non-JSON body', url=url) from e

    async def shutdown(self) -> None:
        """Close the HTTP client.

        Raises:
            ManagerShutdownError: If shutdown fails
        """
        if not self._initialized:
            return
        try:
            if self._client is not None:
                await self._client.aclose()
            self._client = None
            self._mark_stopped()
            self._logger.info('Remote Client shut down')
        except Exception as e:
            raise ManagerShutdownError(
                f'Failed to shut down RemoteClient: {str(e)}',
                manager_name=self.name
            ) from e

    def status(self) -> Dict[str, Any]:
        """Get the status of the remote client.

        Returns:
            Dictionary with status information
        """
        status = super().status()
        successful = self._request_count - self._error_count
        status.update({
            'timeout': self._timeout,
            'max_attempts': self._max_attempts,
            'requests': self._request_count,
            'errors': self._error_count,
            'avg_response_time': (
                self._total_response_time / successful if successful > 0 else None
            ),
        })
        return status
