"""
ESI-specific exceptions for error handling.

EsiTemporaryOutageError and its subclasses are the transient family: the
sync jobs release and retry on them. EsiNotFoundError is the permanent
per-resource signal. Everything else is fatal to the job.
"""

from typing import Optional, Dict, Any


class EsiError(Exception):
    """Base exception for ESI API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, status_code={self.status_code})"


class EsiAuthenticationError(EsiError):
    """Raised when the access token is missing, invalid or lacks scopes (401/403)."""

    def __init__(
        self,
        message: str = "Authentication failed - access token may be invalid or expired",
        status_code: int = 401,
        **kwargs,
    ):
        super().__init__(message, status_code=status_code, **kwargs)


class EsiNotFoundError(EsiError):
    """Raised when the requested resource does not exist (404)."""

    def __init__(
        self,
        message: str = "Resource not found",
        endpoint: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=404, **kwargs)
        self.endpoint = endpoint


class EsiTemporaryOutageError(EsiError):
    """Raised when ESI is momentarily unavailable (502/503/504)."""

    def __init__(
        self,
        message: str = "ESI is temporarily unavailable",
        error_limit: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.error_limit = error_limit


class EsiErrorLimitedError(EsiTemporaryOutageError):
    """
    Raised when the ESI error budget is exhausted.

    Either ESI answered 420, or the locally tracked remaining error count
    dropped under the configured floor and the client refused to call.
    """

    def __init__(
        self,
        message: str = "ESI error limit reached - backing off until the window resets",
        error_limit: Optional[int] = None,
        reset_in: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 420)
        super().__init__(message, error_limit=error_limit, **kwargs)
        self.reset_in = reset_in


class EsiConnectionError(EsiTemporaryOutageError):
    """Raised when network/connection errors occur."""

    def __init__(
        self,
        message: str = "Connection error - unable to reach ESI",
        **kwargs,
    ):
        super().__init__(message, **kwargs)
