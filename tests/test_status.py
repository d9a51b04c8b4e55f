"""Unit tests for object store failure to HTTP status translation."""

from __future__ import annotations

import pytest
from asset_proxy.errors import ErrorCategory
from asset_proxy.status import STATUS_BY_CATEGORY, status_for, status_line


class TestStatusFor:
    @pytest.mark.parametrize(
        ("category", "status"),
        [
            (ErrorCategory.TIMEOUT, 504),
            (ErrorCategory.NOT_FOUND, 404),
            (ErrorCategory.FORBIDDEN, 403),
            (ErrorCategory.NOT_MODIFIED, 304),
            (ErrorCategory.PRECONDITION_FAILED, 412),
            (ErrorCategory.INVALID_RANGE, 416),
            (ErrorCategory.MALFORMED_REQUEST, 400),
            (ErrorCategory.REQUEST_TIMEOUT, 408),
            (ErrorCategory.UNAVAILABLE, 503),
            (ErrorCategory.INTERNAL, 500),
            (ErrorCategory.UNKNOWN, 502),
        ],
    )
    def test_mapping(self, category, status):
        assert status_for(category) == status

    def test_table_is_total(self):
        """Every category has exactly one status."""
        assert set(STATUS_BY_CATEGORY) == set(ErrorCategory)

    def test_idempotent(self):
        for category in ErrorCategory:
            assert {status_for(category) for _ in range(3)} == {status_for(category)}

    def test_returns_plain_int(self):
        assert type(status_for(ErrorCategory.NOT_FOUND)) is int


class TestStatusLine:
    def test_known_status(self):
        assert status_line(404) == "404 Not Found"
        assert status_line(502) == "502 Bad Gateway"

    def test_unknown_status(self):
        assert status_line(599) == "599"
