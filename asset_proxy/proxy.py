from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import anyio
from litestar.enums import MediaType
from litestar.response import Response, Stream

from .errors import FetchError, InvalidPath
from .fetcher import (
    CHUNK_SIZE,
    FetchRequest,
    ObjectDescriptor,
    ObjectFetcher,
    format_http_date,
    run_sync,
    split_object_path,
)
from .routing import RouteTable
from .settings import ProxySettings, load_settings_from_env
from .status import FALLBACK_STATUSES, status_for, status_line

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar import Request

LOG = logging.getLogger("asset_proxy.proxy")

ALLOWED_METHODS = ("GET", "HEAD")

_DESCRIPTOR_HEADERS = (
    ("Content-Type", "content_type"),
    ("ETag", "etag"),
    ("Cache-Control", "cache_control"),
    ("Content-Encoding", "content_encoding"),
    ("Content-Disposition", "content_disposition"),
    ("Content-Language", "content_language"),
    ("Expires", "expires"),
    ("Accept-Ranges", "accept_ranges"),
    ("Content-Range", "content_range"),
)


class FetchState(enum.Enum):
    INITIAL = "initial"
    FETCHED = "fetched"
    FETCH_FAILED = "fetch-failed"
    RETRYING = "retrying"
    FINAL_FAILURE = "final-failure"


@dataclass
class FetchResult:
    """Terminal outcome of :meth:`FallbackController.run`."""

    state: FetchState
    original_path: str
    object_path: str
    attempts: int
    descriptor: ObjectDescriptor | None = None
    error: FetchError | None = None

    @property
    def fell_back(self) -> bool:
        return self.object_path != self.original_path

    @property
    def status_code(self) -> int:
        if self.error is not None:
            return status_for(self.error.category)
        if self.descriptor is not None and self.descriptor.content_range:
            return HTTPStatus.PARTIAL_CONTENT
        return HTTPStatus.OK


class FallbackController:
    """Fetches an object and falls back to the SPA entry object on 403/404.

    ``INITIAL`` leads to ``FETCHED`` or ``FETCH_FAILED``. A failure whose
    status is 403/404 moves to ``RETRYING`` when a SPA entry object is
    configured and differs from the path that just failed; the retry is a
    fresh unconditional fetch and always ends in ``FETCHED`` or
    ``FINAL_FAILURE``. There is no edge out of ``RETRYING`` back into itself.
    """

    def __init__(
        self,
        fetcher: ObjectFetcher,
        spa_object_path: str | None,
        timeout: float,
    ) -> None:
        if spa_object_path is not None:
            split_object_path(spa_object_path)
        self._fetcher = fetcher
        self._spa_object_path = spa_object_path
        self._timeout = timeout

    @property
    def spa_object_path(self) -> str | None:
        return self._spa_object_path

    def should_fall_back(self, error: FetchError, object_path: str) -> bool:
        return (
            self._spa_object_path is not None
            and status_for(error.category) in FALLBACK_STATUSES
            and object_path != self._spa_object_path
        )

    async def run(self, request: FetchRequest) -> FetchResult:
        result = await self._attempt(request, request.object_path, attempts=1)
        if result.state is FetchState.FETCHED:
            return result

        assert result.error is not None
        if not self.should_fall_back(result.error, request.object_path):
            result.state = FetchState.FINAL_FAILURE
            return result

        assert self._spa_object_path is not None
        LOG.debug(
            "falling back to SPA entry %s after %s for %s",
            self._spa_object_path,
            result.status_code,
            request.object_path,
        )
        retry = await self._attempt(
            FetchRequest(object_path=self._spa_object_path),
            request.object_path,
            attempts=2,
        )
        if retry.state is FetchState.FETCH_FAILED:
            retry.state = FetchState.FINAL_FAILURE
        return retry

    async def _attempt(
        self, request: FetchRequest, original_path: str, attempts: int
    ) -> FetchResult:
        deadline = anyio.current_time() + self._timeout
        try:
            descriptor = await self._fetcher.fetch(request, deadline)
        except FetchError as error:
            return FetchResult(
                state=FetchState.FETCH_FAILED,
                original_path=original_path,
                object_path=request.object_path,
                attempts=attempts,
                error=error,
            )
        return FetchResult(
            state=FetchState.FETCHED,
            original_path=original_path,
            object_path=request.object_path,
            attempts=attempts,
            descriptor=descriptor,
        )


def object_headers(descriptor: ObjectDescriptor) -> dict[str, str]:
    headers = {"Vary": "Accept-Encoding"}
    for header, attribute in _DESCRIPTOR_HEADERS:
        value = getattr(descriptor, attribute)
        if value is None or value == "":
            continue
        headers[header] = str(value)
    if descriptor.content_length is not None:
        headers["Content-Length"] = str(descriptor.content_length)
    if descriptor.last_modified is not None:
        headers["Last-Modified"] = format_http_date(descriptor.last_modified)
    return headers


async def _close_body(body: Any) -> None:
    with anyio.CancelScope(shield=True):
        await run_sync(body.close)


async def write_object(
    descriptor: ObjectDescriptor, method: str, status_code: int = HTTPStatus.OK
) -> Response:
    """Build the response for a fetched object.

    The body stream is released on every path: immediately for HEAD, and
    when the iterator finishes, fails or is abandoned by a disconnecting
    client for GET.
    """
    headers = object_headers(descriptor)
    body = descriptor.body

    if method == "HEAD":
        await _close_body(body)
        return Response(content=b"", headers=headers, status_code=status_code)

    async def iterator() -> AsyncIterator[bytes]:
        try:
            while True:
                remaining = max(descriptor.deadline - anyio.current_time(), 0)
                try:
                    with anyio.fail_after(remaining):
                        chunk = await run_sync(
                            body.read, CHUNK_SIZE, abandon_on_cancel=True
                        )
                except TimeoutError:
                    LOG.warning("body copy hit the fetch deadline, truncating response")
                    return
                if not chunk:
                    break
                yield chunk
        finally:
            await _close_body(body)

    return Stream(content=iterator, status_code=status_code, headers=headers)


def write_failure(
    status_code: int, method: str, headers: dict[str, str] | None = None
) -> Response:
    """Plain-text ``"<status> <reason>"`` response; no body for HEAD or 304."""
    if method == "HEAD" or status_code == HTTPStatus.NOT_MODIFIED:
        content: bytes | str = b""
    else:
        content = status_line(status_code)
    return Response(
        content=content,
        status_code=status_code,
        headers=headers,
        media_type=MediaType.TEXT,
    )


def method_not_allowed(method: str) -> Response:
    return write_failure(
        HTTPStatus.METHOD_NOT_ALLOWED,
        method,
        headers={"Allow": ", ".join(ALLOWED_METHODS)},
    )


class AssetProxy:
    """Serves bucket objects for routed request paths with a SPA fallback."""

    def __init__(
        self,
        settings: ProxySettings,
        fetcher: ObjectFetcher,
        routes: RouteTable | None = None,
    ) -> None:
        self._settings = settings
        self._fetcher = fetcher
        self._routes = routes or RouteTable()
        spa_object_path = None
        if settings.fallback_enabled:
            spa_object_path = self._routes.resolve_catch_all(
                settings.spa_entrypoint_path, settings.bucket_path_prefix
            )
        self._fallback = FallbackController(
            fetcher, spa_object_path, settings.s3_get_timeout
        )

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @property
    def fallback(self) -> FallbackController:
        return self._fallback

    async def startup(self) -> None:
        LOG.info(
            "asset proxy ready (upstream=%s, prefix=%s, spa=%s, timeout=%ss)",
            self._settings.upstream_url,
            self._settings.bucket_path_prefix,
            self._fallback.spa_object_path or "disabled",
            self._settings.s3_get_timeout,
        )

    async def shutdown(self) -> None:
        await run_sync(self._fetcher.close)

    def resolve(self, path: str) -> str:
        return self._routes.resolve(path, self._settings.bucket_path_prefix)

    async def handle(self, request: Request, path: str) -> Response:
        method = request.method
        LOG.debug("handle method=%s path=%s", method, path)
        if method not in ALLOWED_METHODS:
            return method_not_allowed(method)

        try:
            object_path = self.resolve(path)
            fetch_request = FetchRequest.from_headers(object_path, request.headers)
            result = await self._fallback.run(fetch_request)
        except InvalidPath as error:
            LOG.debug("rejecting %s: %s", path, error)
            return write_failure(HTTPStatus.BAD_REQUEST, method)

        if result.descriptor is not None:
            LOG.debug(
                "serving %s for %s (fallback=%s)",
                result.object_path,
                path,
                result.fell_back,
            )
            return await write_object(
                result.descriptor, method, int(result.status_code)
            )

        assert result.error is not None
        LOG.debug(
            "failed %s for %s after %d fetch(es): %s",
            result.object_path,
            path,
            result.attempts,
            result.error,
        )
        return write_failure(int(result.status_code), method, result.error.headers)

    @classmethod
    def from_env(cls) -> AssetProxy:
        """Create an AssetProxy instance from environment variables.

        Returns:
            AssetProxy configured from environment variables.
        """
        settings = load_settings_from_env()
        return cls(settings=settings, fetcher=ObjectFetcher.from_settings(settings))
