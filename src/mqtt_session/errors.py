"""
Error Taxonomy and Operation Results.

Session operations never raise their failures at the caller. Each one
resolves to an `OperationResult` carrying either nothing (success) or one
of the `SessionError` subclasses below, so a failed connect, subscribe or
publish can be inspected, logged and tested without try/except blocks.
"""
from dataclasses import dataclass
from typing import Optional


class SessionError(Exception):
    """Base class for every failure a session operation can report."""


class AuthError(SessionError):
    """The broker refused the credentials (bad username/password or not authorized)."""


class NetworkError(SessionError):
    """The broker could not be reached or the link broke during an operation."""


class OperationTimeoutError(SessionError, TimeoutError):
    """A transport operation did not complete within its timeout."""


class NotConnectedError(SessionError):
    """The operation needs an established connection and there is none."""


class ProtocolError(SessionError):
    """The transport returned a malformed or refused response."""


class InvalidTopicError(SessionError):
    """A topic or topic filter is not valid MQTT syntax."""


class ConnectInProgressError(SessionError):
    """A connection attempt is already in flight for this session."""


class ConfigError(ValueError):
    """The startup configuration is missing values or holds invalid ones."""


@dataclass(frozen=True)
class OperationResult:
    error: Optional[SessionError] = None

    @classmethod
    def success(cls) -> "OperationResult":
        return cls()

    @classmethod
    def failure(cls, error: SessionError) -> "OperationResult":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    def raise_for_error(self) -> None:
        """Re-raise the carried error, for callers that prefer exceptions."""
        if self.error is not None:
            raise self.error
