"""Unit tests for the exceptions module."""

from pluginfed.utils.exceptions import (
    AssetInfoMissing,
    ConfigurationError,
    DuplicateSource,
    FileError,
    MalformedKey,
    ManagerError,
    ManagerInitializationError,
    PluginfedError,
    RemoteIncompatible,
    RemoteUnavailable,
    SourceError,
    SourceNotFound,
    SourceNotVerified,
    StorageFailure,
)


def test_pluginfed_error():
    """Test the base PluginfedError class."""
    error = PluginfedError("Test error message")
    assert str(error) == "Test error message"
    assert error.message == "Test error message"
    assert error.details == {}

    error = PluginfedError("Test with details", key="value", number=123)
    assert error.details == {"key": "value", "number": 123}


def test_manager_error():
    """Test the ManagerError class."""
    error = ManagerError("Manager error message")
    assert str(error) == "Manager error message"
    assert error.details["manager_name"] is None

    error = ManagerInitializationError("Init error", manager_name="database_manager")
    assert str(error) == "Init error (Manager: database_manager)"
    assert error.details["manager_name"] == "database_manager"
    assert isinstance(error, ManagerError)


def test_configuration_error():
    """Test the ConfigurationError class."""
    error = ConfigurationError("Config error message")
    assert "config_key" not in error.details

    error = ConfigurationError("Bad value", config_key="federation.request_timeout")
    assert error.details["config_key"] == "federation.request_timeout"


def test_source_errors_carry_source_id():
    """Test that local precondition failures record the source id."""
    for error_class in (SourceNotFound, DuplicateSource, SourceNotVerified, AssetInfoMissing):
        error = error_class("failure", source_id="alice@pub.example")
        assert isinstance(error, SourceError)
        assert error.source_id == "alice@pub.example"
        assert error.details["source_id"] == "alice@pub.example"


def test_remote_errors():
    """Test the remote error classes."""
    error = RemoteUnavailable("down", url="https://pub.example/federation-info", status_code=503)
    assert error.status_code == 503
    assert error.details == {"url": "https://pub.example/federation-info", "status_code": 503}

    error = RemoteIncompatible("bad body")
    assert error.url is None
    assert error.status_code is None
    assert error.details == {}


def test_file_error_is_storage_failure():
    """Test that blob store errors are storage failures."""
    error = FileError("escape", file_path="../etc/passwd")
    assert isinstance(error, StorageFailure)
    assert error.details["file_path"] == "../etc/passwd"


def test_malformed_key_is_pluginfed_error():
    assert isinstance(MalformedKey("bad"), PluginfedError)
