from __future__ import annotations

from typing import Any, Optional


class PluginfedError(Exception):
    """Base exception for all pluginfed errors."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            **kwargs: Additional error information
        """
        self.message = message
        self.details = kwargs
        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return f"{self.message}"


class ManagerError(PluginfedError):
    """Base exception for manager-related errors."""

    def __init__(self, message: str, manager_name: Optional[str] = None, **kwargs: Any) -> None:
        """
        Initialize manager error.

        Args:
            message: Error message
            manager_name: Name of the affected manager
            **kwargs: Additional error information
        """
        super().__init__(message, manager_name=manager_name, **kwargs)
        self.manager_name = manager_name

    def __str__(self) -> str:
        """String representation."""
        if self.manager_name:
            return f"{self.message} (Manager: {self.manager_name})"
        return super().__str__()


class ManagerInitializationError(ManagerError):
    """Exception raised when a manager fails to initialize."""

    pass


class ManagerShutdownError(ManagerError):
    """Exception raised when a manager fails to shut down cleanly."""

    pass


class ApplicationError(PluginfedError):
    """Exception raised for application-related errors."""

    pass


class ConfigurationError(PluginfedError):
    """Exception raised for configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a ConfigurationError.

        Args:
            message: A descriptive error message.
            config_key: The configuration key that caused the error.
            **kwargs: Additional error information.
        """
        if config_key:
            kwargs["config_key"] = config_key
        super().__init__(message, **kwargs)


class ValidationError(PluginfedError):
    """Exception raised for invalid caller input."""

    pass


class MalformedKey(PluginfedError):
    """Exception raised when a public key cannot be decoded."""

    pass


class MalformedSignature(PluginfedError):
    """Exception raised when a signature cannot be decoded or has the wrong length."""

    pass


class SourceError(PluginfedError):
    """Base exception for local precondition failures about a source."""

    def __init__(self, message: str, source_id: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a SourceError.

        Args:
            message: A descriptive error message.
            source_id: The source the failure concerns.
            **kwargs: Additional error information.
        """
        if source_id:
            kwargs["source_id"] = source_id
        super().__init__(message, **kwargs)
        self.source_id = source_id


class SourceNotFound(SourceError):
    """Exception raised when a source id is unknown."""

    pass


class DuplicateSource(SourceError):
    """Exception raised when a source is registered twice."""

    pass


class SourceNotVerified(SourceError):
    """Exception raised when an operation needs a verified source."""

    pass


class AssetInfoMissing(SourceError):
    """Exception raised when a source has no asset domain or naming scheme yet."""

    pass


class RemoteError(PluginfedError):
    """Base exception for failures talking to a remote instance."""

    def __init__(
            self,
            message: str,
            url: Optional[str] = None,
            status_code: Optional[int] = None,
            **kwargs: Any
    ) -> None:
        """Initialize a RemoteError.

        Args:
            message: A descriptive error message.
            url: The remote URL involved.
            status_code: The HTTP status code, if a response was received.
            **kwargs: Additional error information.
        """
        if url:
            kwargs["url"] = url
        if status_code:
            kwargs["status_code"] = status_code
        super().__init__(message, **kwargs)
        self.url = url
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Exception raised when a remote instance cannot be reached or answers non-2xx."""

    pass


class RemoteIncompatible(RemoteError):
    """Exception raised when a remote instance answers with an unexpected payload."""

    pass


class StorageFailure(PluginfedError):
    """Exception raised when a blob or record write fails."""

    pass


class FileError(StorageFailure):
    """Exception raised for blob store file errors."""

    def __init__(self, message: str, file_path: Optional[str] = None, **kwargs: Any) -> None:
        """Initialize a FileError.

        Args:
            message: A descriptive error message.
            file_path: The path of the file that caused the error.
            **kwargs: Additional error information.
        """
        if file_path:
            kwargs["file_path"] = file_path
        super().__init__(message, **kwargs)
