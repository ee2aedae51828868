"""Core package containing the infrastructure managers and the application core."""

from pluginfed.core.app import ApplicationCore
from pluginfed.core.base import BaseManager, PluginfedManager
from pluginfed.core.blob_store import BlobStore
from pluginfed.core.config_manager import ConfigManager
from pluginfed.core.database_manager import DatabaseManager
from pluginfed.core.logging_manager import LoggingManager
from pluginfed.core.remote_client import RemoteClient
