"""Error taxonomy for the SMS dispatch pipeline."""
from typing import Optional


class SMSDispatchError(Exception):
    """Base exception for dispatch operations."""
    pass


class ValidationError(SMSDispatchError):
    """Bad destination, message, schedule or recipient list. Never retried."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(message)


class RateLimitExceeded(SMSDispatchError):
    """A send window quota is exhausted. The caller must back off."""
    def __init__(self, window: str, limit: int, retry_after: int):
        self.window = window
        self.limit = limit
        self.retry_after = retry_after
        self.message = f"SMS {window} limit of {limit} exceeded. Retry in {retry_after} seconds"
        super().__init__(self.message)


class ProviderError(SMSDispatchError):
    """Network error, timeout, non-2xx or malformed response from the SMS provider."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(SMSDispatchError):
    """Record store or shared cache/queue store unavailable."""
    pass


class InvalidStatusTransition(SMSDispatchError):
    """A record status change outside the transition table."""
    def __init__(self, current: str, new: str):
        self.current = current
        self.new = new
        super().__init__(f"Invalid status transition: {current} -> {new}")


class MalformedJobError(SMSDispatchError):
    """A queue entry that does not match the job schema."""
    pass
