from __future__ import annotations

from typing import Optional


class PomblockError(Exception):
    """Base class for every error surfaced by pomblock."""


class WorkspaceIOError(PomblockError):
    pass


class SerializationError(PomblockError):
    pass


class StorageError(PomblockError):
    pass


class InvalidConfigError(PomblockError):
    """Invalid configuration or invalid command input. Never guessed around."""


class LocalTimeError(InvalidConfigError):
    """A local time of day does not exist in the zone on that date (DST gap)."""


class InvalidTransitionError(InvalidConfigError):
    pass


class CredentialError(PomblockError):
    pass


class UnauthenticatedError(PomblockError):
    pass


class OAuthError(PomblockError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayError(PomblockError):
    """Non-retryable failure talking to the remote calendar."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientGatewayError(GatewayError):
    """Network trouble, timeouts, rate limits and 5xx answers."""


class SyncTokenExpiredError(GatewayError):
    """The continuation token was rejected; a full window refetch is needed."""
