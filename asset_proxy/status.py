from __future__ import annotations

from http import HTTPStatus

from .errors import ErrorCategory

STATUS_BY_CATEGORY: dict[ErrorCategory, int] = {
    ErrorCategory.TIMEOUT: HTTPStatus.GATEWAY_TIMEOUT,
    ErrorCategory.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorCategory.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorCategory.NOT_MODIFIED: HTTPStatus.NOT_MODIFIED,
    ErrorCategory.PRECONDITION_FAILED: HTTPStatus.PRECONDITION_FAILED,
    ErrorCategory.INVALID_RANGE: HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE,
    ErrorCategory.MALFORMED_REQUEST: HTTPStatus.BAD_REQUEST,
    ErrorCategory.REQUEST_TIMEOUT: HTTPStatus.REQUEST_TIMEOUT,
    ErrorCategory.UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,
    ErrorCategory.INTERNAL: HTTPStatus.INTERNAL_SERVER_ERROR,
    ErrorCategory.UNKNOWN: HTTPStatus.BAD_GATEWAY,
}

FALLBACK_STATUSES = frozenset({HTTPStatus.NOT_FOUND, HTTPStatus.FORBIDDEN})


def status_for(category: ErrorCategory) -> int:
    """Map an object store failure category to an HTTP status code."""
    return int(STATUS_BY_CATEGORY.get(category, HTTPStatus.BAD_GATEWAY))


def status_line(status_code: int) -> str:
    """Render ``"<status> <reason phrase>"``, e.g. ``"404 Not Found"``."""
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        return str(status_code)
    return f"{status_code} {phrase}"
