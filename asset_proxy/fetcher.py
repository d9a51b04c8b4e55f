from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from functools import partial
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlsplit

import anyio
from anyio import to_thread
from boto3.session import Session
from botocore import UNSIGNED
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, ConnectTimeoutError, ReadTimeoutError

from .errors import ErrorCategory, FetchError, InvalidPath

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from .settings import ProxySettings

LOG = logging.getLogger("asset_proxy.fetcher")

CHUNK_SIZE = 64 * 1024

_ERROR_CODES: dict[ErrorCategory, frozenset[str]] = {
    ErrorCategory.NOT_FOUND: frozenset(
        {"NoSuchBucket", "NoSuchKey", "NotFound", "NoSuchVersion", "404"}
    ),
    ErrorCategory.FORBIDDEN: frozenset(
        {
            "AccessDenied",
            "Forbidden",
            "SignatureDoesNotMatch",
            "InvalidAccessKeyId",
            "ExpiredToken",
            "RequestTimeTooSkewed",
            "InvalidObjectState",
            "403",
        }
    ),
    ErrorCategory.NOT_MODIFIED: frozenset({"NotModified", "304"}),
    ErrorCategory.PRECONDITION_FAILED: frozenset({"PreconditionFailed", "412"}),
    ErrorCategory.INVALID_RANGE: frozenset({"InvalidRange", "416"}),
    ErrorCategory.MALFORMED_REQUEST: frozenset(
        {
            "AuthorizationHeaderMalformed",
            "InvalidRequest",
            "InvalidArgument",
            "MalformedXML",
            "400",
        }
    ),
    ErrorCategory.REQUEST_TIMEOUT: frozenset({"RequestTimeout", "408"}),
    ErrorCategory.UNAVAILABLE: frozenset({"SlowDown", "ServiceUnavailable", "503"}),
    ErrorCategory.INTERNAL: frozenset({"InternalError", "500"}),
}

_CATEGORY_BY_CODE = {
    code: category for category, codes in _ERROR_CODES.items() for code in codes
}

_VALIDATOR_HEADERS = {
    "etag": "ETag",
    "last-modified": "Last-Modified",
    "cache-control": "Cache-Control",
    "expires": "Expires",
}

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


async def run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(func, *args, **kwargs)


def split_object_path(path: str) -> tuple[str, str]:
    """Split ``/<bucket>/<key>`` into its bucket and percent-decoded key.

    Raises:
        InvalidPath: if the bucket or the key segment is missing or empty.
    """
    trimmed = path[1:] if path.startswith("/") else path
    index = trimmed.find("/")
    if index <= 0 or index >= len(trimmed) - 1:
        raise InvalidPath(path)
    return trimmed[:index], decode_key(trimmed[index + 1 :])


def decode_key(key: str) -> str:
    """Percent-decode ``key``, returning it untouched if it is not valid."""
    if _BAD_ESCAPE.search(key):
        return key
    try:
        return unquote(key, errors="strict")
    except UnicodeDecodeError:
        return key


def parse_http_date(value: str | None) -> datetime | None:
    """Parse an HTTP-date header value; malformed values yield ``None``."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        LOG.debug("dropping malformed HTTP date %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class FetchRequest:
    """One object fetch: the full object path plus optional preconditions."""

    object_path: str
    range: str | None = None
    if_none_match: str | None = None
    if_match: str | None = None
    if_modified_since: datetime | None = None
    if_unmodified_since: datetime | None = None

    @classmethod
    def from_headers(cls, object_path: str, headers: Mapping[str, str]) -> FetchRequest:
        return cls(
            object_path=object_path,
            range=headers.get("range") or None,
            if_none_match=headers.get("if-none-match") or None,
            if_match=headers.get("if-match") or None,
            if_modified_since=parse_http_date(headers.get("if-modified-since")),
            if_unmodified_since=parse_http_date(headers.get("if-unmodified-since")),
        )

    def get_object_kwargs(self, bucket: str, key: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Key": key}
        optional = {
            "Range": self.range,
            "IfNoneMatch": self.if_none_match,
            "IfMatch": self.if_match,
            "IfModifiedSince": self.if_modified_since,
            "IfUnmodifiedSince": self.if_unmodified_since,
        }
        kwargs.update({name: value for name, value in optional.items() if value})
        return kwargs


@dataclass
class ObjectDescriptor:
    """Metadata of a fetched object plus its unread body stream.

    Whoever receives the descriptor owns ``body`` and must close it.
    """

    body: Any
    content_type: str | None = None
    content_length: int | None = None
    etag: str | None = None
    cache_control: str | None = None
    content_encoding: str | None = None
    content_disposition: str | None = None
    content_language: str | None = None
    expires: str | None = None
    accept_ranges: str | None = None
    last_modified: datetime | None = None
    content_range: str | None = None
    deadline: float = field(default=float("inf"))

    @classmethod
    def from_get_object(
        cls, result: Mapping[str, Any], deadline: float = float("inf")
    ) -> ObjectDescriptor:
        expires = result.get("ExpiresString") or result.get("Expires")
        if isinstance(expires, datetime):
            expires = format_http_date(expires)
        return cls(
            body=result["Body"],
            content_type=result.get("ContentType"),
            content_length=result.get("ContentLength"),
            etag=result.get("ETag"),
            cache_control=result.get("CacheControl"),
            content_encoding=result.get("ContentEncoding"),
            content_disposition=result.get("ContentDisposition"),
            content_language=result.get("ContentLanguage"),
            expires=expires,
            accept_ranges=result.get("AcceptRanges"),
            last_modified=result.get("LastModified"),
            content_range=result.get("ContentRange"),
            deadline=deadline,
        )


def format_http_date(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return format_datetime(aware.astimezone(UTC), usegmt=True)


def classify_client_error(error: ClientError) -> ErrorCategory:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return _CATEGORY_BY_CODE.get(code, ErrorCategory.UNKNOWN)


def classify_error(error: BaseException) -> ErrorCategory:
    """Map an exception raised while fetching to an :class:`ErrorCategory`."""
    if isinstance(error, (TimeoutError, ConnectTimeoutError, ReadTimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, ClientError):
        return classify_client_error(error)
    return ErrorCategory.UNKNOWN


def _validator_headers(error: BaseException) -> dict[str, str]:
    if not isinstance(error, ClientError):
        return {}
    raw = error.response.get("ResponseMetadata", {}).get("HTTPHeaders") or {}
    return {
        header: raw[name] for name, header in _VALIDATOR_HEADERS.items() if raw.get(name)
    }


def build_s3_client(settings: ProxySettings):
    config_kwargs: dict[str, Any] = {
        "signature_version": "s3v4",
        "retries": {"max_attempts": settings.max_retry_attempts},
        "connect_timeout": settings.s3_get_timeout,
        "read_timeout": settings.s3_get_timeout,
    }
    session_kwargs: dict[str, Any] = {"region_name": settings.region}
    if settings.has_static_credentials:
        session_kwargs["aws_access_key_id"] = settings.access_key_id
        session_kwargs["aws_secret_access_key"] = settings.secret_access_key
    elif settings.upstream_url:
        config_kwargs["signature_version"] = UNSIGNED

    endpoint_url = None
    if settings.upstream_url:
        parts = urlsplit(settings.upstream_url)
        if parts.scheme and parts.netloc:
            endpoint_url = f"{parts.scheme}://{parts.netloc}"
            config_kwargs["s3"] = {"addressing_style": "path"}

    session = Session(**session_kwargs)
    return session.client(
        "s3", endpoint_url=endpoint_url, config=BotoConfig(**config_kwargs)
    )


class _PendingFetch:
    """Hands a ``get_object`` result from the worker thread to the caller.

    A caller that stops waiting abandons the slot. Whichever side holds the
    result once the slot is abandoned closes its body.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._result: Mapping[str, Any] | None = None

    def deliver(self, result: Mapping[str, Any]) -> Mapping[str, Any]:
        with self._lock:
            if not self._abandoned:
                self._result = result
                return result
        result["Body"].close()
        return result

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            result, self._result = self._result, None
        if result is not None:
            result["Body"].close()


class ObjectFetcher:
    """Performs single GetObject attempts against a shared S3 client.

    The boto3 client is thread-safe and never mutated, so one fetcher serves
    every request concurrently.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: ProxySettings) -> ObjectFetcher:
        return cls(build_s3_client(settings))

    def close(self) -> None:
        self._client.close()

    def _get_object(self, pending: _PendingFetch, kwargs: dict[str, Any]) -> Any:
        return pending.deliver(self._client.get_object(**kwargs))

    async def fetch(self, request: FetchRequest, deadline: float) -> ObjectDescriptor:
        """Fetch ``request.object_path``, giving up at ``deadline``.

        ``deadline`` is an absolute time on the :func:`anyio.current_time` clock.

        Raises:
            InvalidPath: before any upstream call, for malformed object paths.
            FetchError: for every upstream failure, including the deadline.
        """
        bucket, key = split_object_path(request.object_path)
        kwargs = request.get_object_kwargs(bucket, key)
        LOG.debug("fetching s3://%s/%s", bucket, key)
        pending = _PendingFetch()
        result = None
        try:
            with anyio.fail_after(max(deadline - anyio.current_time(), 0)):
                result = await run_sync(
                    partial(self._get_object, pending, kwargs),
                    abandon_on_cancel=True,
                )
        except Exception as error:
            category = classify_error(error)
            if category is ErrorCategory.TIMEOUT:
                LOG.debug("fetch of s3://%s/%s timed out", bucket, key)
            elif category is ErrorCategory.UNKNOWN:
                LOG.warning(
                    "unclassified object store failure for s3://%s/%s: %r",
                    bucket,
                    key,
                    error,
                )
            headers = None
            if category is ErrorCategory.NOT_MODIFIED:
                headers = _validator_headers(error)
            raise FetchError(category, error, headers) from error
        finally:
            if result is None:
                pending.abandon()
        return ObjectDescriptor.from_get_object(result, deadline=deadline)
