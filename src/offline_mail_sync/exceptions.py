"""Custom exceptions for Offline Mail Sync."""

from enum import Enum


class RemoteErrorKind(str, Enum):
    """Structured classification of remote mail service failures."""

    NETWORK_UNAVAILABLE = "network_unavailable"
    NOT_FOUND = "not_found"
    CURSOR_EXPIRED = "cursor_expired"
    OTHER = "other"


class MailSyncError(Exception):
    """Base exception for all Offline Mail Sync errors."""


class ConfigurationError(MailSyncError):
    """Exception raised for configuration related errors."""


class AuthenticationError(MailSyncError):
    """Exception raised for authentication failures."""


class CacheStoreError(MailSyncError):
    """Exception raised when the local cache cannot be read or written."""


class RemoteServiceError(MailSyncError):
    """Exception raised by a remote mail service, carrying its error kind."""

    kind: RemoteErrorKind = RemoteErrorKind.OTHER

    def __init__(self, message: str = "", *, kind: RemoteErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class NetworkUnavailableError(RemoteServiceError):
    """The remote service could not be reached (DNS, refused, unreachable, timeout)."""

    kind = RemoteErrorKind.NETWORK_UNAVAILABLE


class NotFoundError(RemoteServiceError):
    """The requested thread or message no longer exists remotely."""

    kind = RemoteErrorKind.NOT_FOUND


class CursorExpiredError(RemoteServiceError):
    """The stored history cursor is too old for the remote to serve a delta."""

    kind = RemoteErrorKind.CURSOR_EXPIRED


def is_network_error(exc: BaseException) -> bool:
    """Return True if the exception means the remote is unreachable."""

    if isinstance(exc, RemoteServiceError):
        return exc.kind is RemoteErrorKind.NETWORK_UNAVAILABLE
    return isinstance(exc, (TimeoutError, ConnectionError))
