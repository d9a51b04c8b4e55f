from __future__ import annotations

import enum


class ErrorCategory(enum.Enum):
    """Object store failure categories, independent of the client library."""

    NOT_FOUND = "not-found"
    FORBIDDEN = "forbidden"
    NOT_MODIFIED = "not-modified"
    PRECONDITION_FAILED = "precondition-failed"
    INVALID_RANGE = "invalid-range"
    MALFORMED_REQUEST = "malformed-request"
    REQUEST_TIMEOUT = "request-timeout"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class InvalidPath(ValueError):
    """Raised when a path cannot be split into a non-empty bucket and key."""

    def __init__(self, path: str) -> None:
        super().__init__(f"invalid object path {path!r}")
        self.path = path


class FetchError(Exception):
    """A failed object fetch, tagged with its :class:`ErrorCategory`."""

    def __init__(
        self,
        category: ErrorCategory,
        cause: BaseException | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(f"{category.value}: {cause}" if cause else category.value)
        self.category = category
        self.cause = cause
        # validators the store returned alongside the failure (304 only)
        self.headers = headers or {}
