"""Exceptions shared by the clients, the storage layer and the tasks."""


class MarketAlertError(Exception):
    """Base exception for all market alert errors."""


class FetchError(MarketAlertError):
    """Raised when an outbound request cannot produce a usable response."""


class RetryExhaustedError(FetchError):
    """Raised when every attempt of a retried request failed."""

    def __init__(self, url: str, attempts: int, last_error: BaseException | None = None,
                 last_status: int | None = None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        self.last_status = last_status
        if last_status is not None:
            reason = f"HTTP {last_status}"
        else:
            reason = repr(last_error) if last_error else "unknown error"
        super().__init__(f"{url} failed after {attempts} attempts: {reason}")


class UpstreamError(FetchError):
    """Terminal upstream failure: non-retryable status, exchange error code or bad payload."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class StorageError(MarketAlertError):
    """Raised when the key-value store cannot be read or written."""


class NotifyError(MarketAlertError):
    """Raised when a message could not be delivered to the channel."""
