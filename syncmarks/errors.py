from __future__ import annotations


class SyncmarksError(Exception):
    """Base class for every error raised by syncmarks."""


class ValidationError(SyncmarksError):
    """Bad title or url. Raised before any store mutation or remote call."""


class PersistenceError(SyncmarksError):
    """A fetch/create/delete against the backend failed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SubscriptionError(SyncmarksError):
    """The change feed could not be established or dropped."""


class AuthError(SyncmarksError):
    pass


class NotAuthenticatedError(AuthError):
    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class ConfigError(SyncmarksError):
    pass
