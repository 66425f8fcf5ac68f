"""Error types shared by the auth processor and the HTTP client.

Two kinds of failure are fatal and surface as exceptions:
- ValidationError: the request or configuration cannot be used at all
  (missing AWS credentials, malformed proxy URL). Raised before any network I/O.
- RequestError: building, sending or reading a request failed. Carries the
  operation name, method and URL so callers can report which call broke.

A failed Digest retry is not an error from the caller's point of view; the
client logs it and returns the original 401 response.
"""

from __future__ import annotations


class RestClientError(Exception):
    """Base class for restclient errors."""


class ValidationError(RestClientError):
    """Raised when input is rejected before a request is attempted."""

    def __init__(self, field: str, message: str, value: str = "") -> None:
        self.field = field
        self.message = message
        self.value = value
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.field and self.value:
            return f'invalid {self.field} "{self.value}": {self.message}'
        if self.field:
            return f"invalid {self.field}: {self.message}"
        return self.message


class RequestError(RestClientError):
    """Raised when a request fails to build, send, or read.

    The underlying exception is chained as __cause__.
    """

    def __init__(self, op: str, method: str, url: str, message: str) -> None:
        self.op = op
        self.method = method
        self.url = url
        self.message = message
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.url:
            return f"{self.method} {self.url}: {self.op}: {self.message}"
        return f"{self.op}: {self.message}"


class RequestCancelledError(RequestError):
    """Raised when the caller's CancelToken fires before the call completes."""
