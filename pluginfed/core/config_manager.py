from __future__ import annotations

import json
import os
import pathlib
from copy import deepcopy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import aiofiles
import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from pluginfed.core.base import PluginfedManager
from pluginfed.utils.exceptions import ConfigurationError, ManagerInitializationError


class ConfigSchema(BaseModel):
    """Schema for validating configuration data.

    This model defines the expected structure and default values for the
    federation service configuration.
    """
    database: Dict[str, Any] = Field(
        default_factory=lambda: {
            'url': 'sqlite:///data/pluginfed.db',
            'echo': False,
        },
        description='Database connection settings',
    )
    logging: Dict[str, Any] = Field(
        default_factory=lambda: {
            'level': 'INFO',
            'format': 'json',
            'file': {
                'enabled': True,
                'path': 'logs/pluginfed.log',
                'rotation': '10 MB',
                'retention': '30 days',
            },
            'console': {
                'enabled': True,
                'level': 'INFO',
            },
        },
        description='Logging settings',
    )
    federation: Dict[str, Any] = Field(
        default_factory=lambda: {
            'request_timeout': 10.0,
            'max_attempts': 3,
            'retry_delay': 0.5,
            'retry_max_delay': 5.0,
            'verifier': 'system',
            'user_agent': 'pluginfed/0.1',
        },
        description='Remote source protocol settings',
    )
    trust: Dict[str, Any] = Field(
        default_factory=lambda: {
            'baseline': 0.5,
            'decay': 0.1,
            'failure_threshold': 3,
            'failure_window_hours': 24,
            'max_retries': 5,
            'retry_base_seconds': 3600,
        },
        description='Trust score and retry policy',
    )
    storage: Dict[str, Any] = Field(
        default_factory=lambda: {
            'blob_directory': 'data/blobs',
        },
        description='Mirrored artifact storage settings',
    )
    scheduler: Dict[str, Any] = Field(
        default_factory=lambda: {
            'interval_seconds': 3600,
            'retention_days': 30,
            'abandoned_retention_days': 7,
        },
        description='Periodic sweep settings',
    )

    @model_validator(mode='after')
    def validate_timeouts(self) -> 'ConfigSchema':
        """Validate that network and scheduling intervals are positive."""
        timeout = self.federation.get('request_timeout')
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError('federation.request_timeout must be a positive number.')
        interval = self.scheduler.get('interval_seconds')
        if not isinstance(interval, (int, float)) or interval <= 0:
            raise ValueError('scheduler.interval_seconds must be a positive number.')
        return self

    @model_validator(mode='after')
    def validate_trust(self) -> 'ConfigSchema':
        """Validate that the trust baseline lies within [0, 1]."""
        baseline = self.trust.get('baseline')
        if not isinstance(baseline, (int, float)) or not 0.0 <= baseline <= 1.0:
            raise ValueError('trust.baseline must be between 0 and 1.')
        return self


class ConfigManager(PluginfedManager):
    """Asynchronous configuration manager.

    This manager handles loading, validating, and providing access to
    configuration settings from files and environment variables.

    Attributes:
        _config_path: Path to the configuration file
        _env_prefix: Prefix for environment variables
        _config: The loaded configuration
        _loaded_from_file: Whether configuration was loaded from a file
        _env_vars_applied: Set of applied environment variables
        _listeners: Dictionary of config change listeners
    """

    ENV_SEPARATOR = '__'

    def __init__(
            self,
            config_path: Optional[Union[str, pathlib.Path]] = None,
            env_prefix: str = 'PLUGINFED_',
            overrides: Optional[Dict[str, Any]] = None
    ) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
            env_prefix: Prefix for environment variables
            overrides: Values merged over the file, before environment variables
        """
        super().__init__(name='config_manager')
        self._config_path = pathlib.Path(config_path) if config_path else pathlib.Path('pluginfed.yaml')
        self._env_prefix = env_prefix
        self._overrides = overrides or {}
        self._config: Dict[str, Any] = {}
        self._loaded_from_file = False
        self._env_vars_applied: Set[str] = set()
        self._listeners: Dict[str, List[Callable[[str, Any], Awaitable[None]]]] = {}

    async def initialize(self) -> None:
        """Initialize the configuration manager asynchronously.

        Loads configuration from default schema, file, overrides and environment variables.

        Raises:
            ManagerInitializationError: If initialization fails
        """
        try:
            self._config = ConfigSchema().model_dump()
            await self._load_from_file()
            if self._overrides:
                self._merge_config(self._overrides)
            self._apply_env_vars()
            await self._validate_config()

            self._mark_started()
        except Exception as e:
            raise ManagerInitializationError(
                f'Failed to initialize ConfigManager: {str(e)}',
                manager_name=self.name
            ) from e

    async def _load_from_file(self) -> None:
        """Load configuration from a file asynchronously.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        if not self._config_path.exists():
            return

        try:
            async with aiofiles.open(self._config_path, 'r', encoding='utf-8') as f:
                content = await f.read()

            if self._config_path.suffix.lower() in ('.yaml', '.yml'):
                file_config = yaml.safe_load(content)
            elif self._config_path.suffix.lower() == '.json':
                file_config = json.loads(content)
            else:
                raise ConfigurationError(
                    f'Unsupported config file format: {self._config_path.suffix}',
                    config_key='config_path'
                )

            if file_config:
                self._merge_config(file_config)
                self._loaded_from_file = True
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f'Error parsing config file {self._config_path}: {str(e)}',
                config_key='config_path'
            ) from e

    def _apply_env_vars(self) -> None:
        """Override configuration values with environment variables.

        ``PLUGINFED_FEDERATION__REQUEST_TIMEOUT=5`` sets ``federation.request_timeout``.
        """
        for env_name, env_value in os.environ.items():
            if not env_name.startswith(self._env_prefix):
                continue

            config_path = env_name[len(self._env_prefix):].lower().split(self.ENV_SEPARATOR)
            self._set_nested_value(self._config, config_path, self._parse_env_value(env_value))
            self._env_vars_applied.add(env_name)

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable values into appropriate types.

        Args:
            value: The string value from the environment

        Returns:
            The parsed value (bool, int, float, or string)
        """
        if value.lower() in ('true', 'yes', 'on'):
            return True
        if value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if value.isdigit() or (value.startswith('-') and value[1:].isdigit()):
                return int(value)
            return float(value)
        except ValueError:
            return value

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any) -> None:
        """Set a nested value in the configuration dictionary.

        Args:
            config: The configuration dictionary
            path: List of keys forming the path to the value
            value: The value to set
        """
        if not path:
            return

        if len(path) == 1:
            config[path[0]] = value
            return

        key = path[0]
        if not isinstance(config.get(key), dict):
            config[key] = {}

        self._set_nested_value(config[key], path[1:], value)

    async def _validate_config(self) -> None:
        """Validate the configuration against the schema.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            self._config = ConfigSchema(**self._config).model_dump()
        except ValidationError as e:
            errors = e.errors()
            error_details = ', '.join((
                f"{'.'.join((str(loc) for loc in error['loc']))}: {error['msg']}"
                for error in errors
            ))
            raise ConfigurationError(
                f'Invalid configuration: {error_details}',
                validation_errors=errors
            ) from e

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            default: Default value if the key doesn't exist

        Returns:
            The configuration value or default

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot access configuration before initialization',
                config_key=key
            )

        result: Any = self._config
        try:
            for part in key.split('.'):
                result = result[part]
            return result
        except (KeyError, TypeError):
            return default

    async def set(self, key: str, value: Any) -> None:
        """Set a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            value: The value to set

        Raises:
            ConfigurationError: If the manager isn't initialized or the value is invalid
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot modify configuration before initialization',
                config_key=key
            )

        new_config = deepcopy(self._config)
        self._set_nested_value(new_config, key.split('.'), value)

        try:
            self._config = ConfigSchema(**new_config).model_dump()
        except ValidationError as e:
            raise ConfigurationError(
                f'Invalid configuration value for {key}: {str(e)}',
                config_key=key,
                validation_errors=e.errors()
            ) from e
        await self._notify_listeners(key, value)

    def _merge_config(
            self,
            from_config: Dict[str, Any],
            to_config: Optional[Dict[str, Any]] = None
    ) -> None:
        """Merge a configuration dictionary into another.

        Args:
            from_config: The source configuration
            to_config: The target configuration (defaults to self._config)
        """
        if to_config is None:
            to_config = self._config

        for key, value in from_config.items():
            if isinstance(to_config.get(key), dict) and isinstance(value, dict):
                self._merge_config(value, to_config[key])
            elif value not in [None, '', {}]:
                to_config[key] = value

    async def register_listener(
            self,
            key: str,
            callback: Callable[[str, Any], Awaitable[None]]
    ) -> None:
        """Register a listener for configuration changes.

        Args:
            key: The configuration key to listen for
            callback: Async callback function to call when the key changes
        """
        if key not in self._listeners:
            self._listeners[key] = []
        if callback not in self._listeners[key]:
            self._listeners[key].append(callback)

    async def unregister_listener(
            self,
            key: str,
            callback: Callable[[str, Any], Awaitable[None]]
    ) -> None:
        """Unregister a listener for configuration changes.

        Args:
            key: The configuration key
            callback: The callback function to unregister
        """
        if key in self._listeners and callback in self._listeners[key]:
            self._listeners[key].remove(callback)
            if not self._listeners[key]:
                del self._listeners[key]

    async def _notify_listeners(self, key: str, value: Any) -> None:
        """Notify listeners about a configuration change.

        Args:
            key: The changed configuration key
            value: The new value
        """
        for listener_key, callbacks in list(self._listeners.items()):
            if listener_key == key or key.startswith(f'{listener_key}.'):
                for callback in callbacks:
                    await callback(key, value)

    async def shutdown(self) -> None:
        """Shut down the configuration manager."""
        self._listeners.clear()
        self._mark_stopped()

    def status(self) -> Dict[str, Any]:
        """Get the status of the configuration manager.

        Returns:
            Dictionary with status information
        """
        status = super().status()
        status.update({
            'config_file': str(self._config_path) if self._loaded_from_file else None,
            'loaded_from_file': self._loaded_from_file,
            'env_vars_applied': len(self._env_vars_applied),
            'registered_listeners': sum(len(callbacks) for callbacks in self._listeners.values())
        })
        return status
