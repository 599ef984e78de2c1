"""Exception classes for wchtools sync operations."""

from typing import Any, Optional


class WchError(Exception):
    """Base exception for all sync toolkit errors.

    Attributes:
        retry: True when the failed operation may succeed on a later pass
            (set by per-type retry filters, never by the request layer)
    """

    def __init__(self, message: str, retry: bool = False):
        super().__init__(message)
        self.retry = retry


class WchIOError(WchError):
    """Raised when a local file cannot be read or written."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class WchParseError(WchError):
    """Raised when a local file does not contain valid item JSON."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class WchNetworkError(WchError):
    """Raised when the remote service could not be reached."""


class WchRemoteError(WchError):
    """Raised when the remote service answers with a non-success status.

    Attributes:
        status_code: HTTP status code of the final attempt
        body: Decoded response body (dict, str or None)
        error_codes: Numeric error codes extracted from the body
        method: HTTP method of the request
        url: Request URL
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        body: Any = None,
        error_codes: Optional[list[int]] = None,
        method: Optional[str] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.error_codes = error_codes or []
        self.method = method
        self.url = url


class WchSingletonViolationError(WchError):
    """Raised when an accessor or helper is constructed outside its factory."""


class WchUnsupportedOperationError(WchError):
    """Raised when an artifact type does not support the requested operation."""


class WchConfigError(WchError):
    """Raised when configuration is missing or malformed."""


class WchSyncError(WchError):
    """Raised when a bulk operation did not succeed for any item.

    Attributes:
        failures: List of ItemFailure records collected during the run
    """

    def __init__(self, message: str, failures: Optional[list] = None):
        super().__init__(message)
        self.failures = failures or []
