"""Utility functions and classes for pluginfed."""

from pluginfed.utils.exceptions import (
    AssetInfoMissing,
    ConfigurationError,
    DuplicateSource,
    FileError,
    MalformedKey,
    MalformedSignature,
    ManagerError,
    ManagerInitializationError,
    ManagerShutdownError,
    PluginfedError,
    RemoteError,
    RemoteIncompatible,
    RemoteUnavailable,
    SourceNotFound,
    SourceNotVerified,
    StorageFailure,
    ValidationError,
)
