"""Error hierarchy shared by the client, stores and orchestrator."""

from typing import Optional

import aiohttp


class CursorSyncError(Exception):
    """Root of every error raised by cursor-sync."""

    def __init__(self, message: str, response: Optional[aiohttp.ClientResponse] = None):
        super().__init__(message)
        self.message = message
        self.response = response
        self.status_code: Optional[int] = getattr(response, "status", None)


class RemoteFetchError(CursorSyncError):
    """The usage API answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int],
        response: Optional[aiohttp.ClientResponse] = None,
    ):
        super().__init__(message, response)
        self.status_code = status_code


class AuthError(RemoteFetchError):
    """401 or 403: the API key was rejected."""


class RateLimitError(RemoteFetchError):
    """429, with the server's suggested wait in seconds when it sent one."""

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        response: Optional[aiohttp.ClientResponse] = None,
    ):
        super().__init__(message, 429, response)
        self.retry_after = retry_after


class ServerError(RemoteFetchError):
    """5xx from the usage API."""


class RetryExhaustedError(RemoteFetchError):
    """Every attempt failed; ``status_code`` is that of the last failure, if any."""

    def __init__(self, message: str, attempts: int, last_exception: Optional[Exception]):
        super().__init__(message, getattr(last_exception, "status_code", None))
        self.attempts = attempts
        self.last_exception = last_exception


class NetworkError(CursorSyncError):
    """The request never got an HTTP answer."""


class RequestTimeoutError(CursorSyncError):
    """The request exceeded the client timeout."""


class ValidationError(CursorSyncError):
    """Bad input from the caller or configuration."""


class PreconditionError(CursorSyncError):
    """The operation is not allowed in the current state."""


class StorageError(CursorSyncError):
    """A relational or key-value store operation failed."""
