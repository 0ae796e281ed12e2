"""Exception taxonomy shared by the sync engine and webhook handlers."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for sync engine failures."""


class RemoteError(SyncError):
    """A remote store request failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Timeouts, connection resets and 5xx responses; safe to retry."""


class RateLimitedError(TransientRemoteError):
    def __init__(
        self, message: str, *, status_code: int | None = 429, retry_after: float | None = None
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class PermanentRemoteError(RemoteError):
    """Auth and configuration errors (401/403/404 and other 4xx); never retried."""


class RetryExhaustedError(SyncError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class SyncConflictError(SyncError):
    """A live task or claimed step already owns the resource."""

    def __init__(self, message: str, *, existing_id: str | None = None) -> None:
        super().__init__(message)
        self.existing_id = existing_id


class NotFoundError(SyncError):
    pass


class InvalidSlotError(ValueError):
    pass


class WebhookRejected(SyncError):
    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
