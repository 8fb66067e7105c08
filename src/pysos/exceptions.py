"""Custom exception hierarchy for pysos."""

from __future__ import annotations


class SosError(Exception):
    """Base exception for all pysos errors."""


class SosConfigError(SosError):
    """Invalid or missing configuration."""


class CapabilityUnavailableError(SosError):
    """The device has no location capability.

    Activation attempts made while the capability is missing end in the
    ``unsupported`` status.
    """


class LocationError(SosError):
    """A location fix could not be obtained."""


class LocationTimeoutError(LocationError):
    """The location provider did not answer within the configured timeout."""

    def __init__(self, message: str, *, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(message)


class LocationDeniedError(LocationError):
    """The location provider refused the request (permission, service off)."""


class StorageError(SosError):
    """Durable store failure."""

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)


class StorageWriteError(StorageError):
    """A write was refused (quota exceeded, I/O failure).

    The store contents are left exactly as they were before the write.
    """


class StorageParseError(StorageError):
    """A persisted record is corrupt.

    Never escapes :class:`pysos.state.store.SharedStateStore`: the record is
    discarded and read as absent.
    """


class StaleWriteError(StorageError):
    """SOS state write rejected because another writer committed first.

    Raised when the caller's ``expected_version`` no longer matches the
    persisted write version.
    """

    def __init__(self, message: str, *, key: str = "", expected_version: int, actual_version: int) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message, key=key)
