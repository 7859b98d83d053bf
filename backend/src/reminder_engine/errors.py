from __future__ import annotations


class NotificationError(Exception):
    """Base class for reminder engine failures."""


class ValidationError(NotificationError, ValueError):
    """Raised when a rule configuration is malformed."""


class UnknownChannelError(ValidationError):
    """Raised when a channel tag has no registered handler."""

    def __init__(self, channel: str) -> None:
        super().__init__(f"unknown notification channel: {channel}")
        self.channel = channel


class RuleNotFoundError(KeyError):
    """Raised when an operation references a rule id that does not exist."""


class JobNotFoundError(KeyError):
    """Raised when an operation references a job id that does not exist."""


class StoreUnavailable(NotificationError):
    """Raised when a backing store cannot be queried or written."""


class ChannelError(NotificationError):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class TransientChannelError(ChannelError):
    """Recoverable channel failure; the delivery is retried with backoff."""


class PermanentChannelError(ChannelError):
    """Unrecoverable channel failure; the delivery fails without retry."""


class DuplicateInFlight(NotificationError):
    """Raised when an idempotency key collides with an active job."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"job already in flight for {idempotency_key}")
        self.idempotency_key = idempotency_key


class SchedulerOverlap(NotificationError):
    """Raised when a tick is skipped because another tick holds the lock."""

    def __init__(self, lock_key: str, holder: str | None = None) -> None:
        message = f"scheduler lock {lock_key} is held"
        if holder:
            message = f"{message} by {holder}"
        super().__init__(message)
        self.lock_key = lock_key
        self.holder = holder
