from __future__ import annotations

import os
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import pytest
from asset_proxy import AssetProxy, ObjectFetcher, ProxySettings
from botocore.exceptions import ClientError
from litestar import Request
from litestar.types import HTTPScope

if TYPE_CHECKING:
    from collections.abc import Generator

    from botocore.client import BaseClient
    from litestar.response import Response
    from pytest_databases._service import DockerService


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def client_error(
    code: str,
    status: int,
    message: str = "",
    headers: dict[str, str] | None = None,
) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {
                "HTTPStatusCode": status,
                "HTTPHeaders": headers or {},
            },
        },
        "GetObject",
    )


class FakeBody:
    """Stand-in for botocore's StreamingBody."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._position = 0
        self.closed = False

    def read(self, amt: int | None = None) -> bytes:
        if amt is None:
            amt = len(self._data) - self._position
        chunk = self._data[self._position : self._position + amt]
        self._position += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    """In-memory ``get_object`` that records every call it receives."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.errors: dict[tuple[str, str], BaseException] = {}
        self.calls: list[dict[str, Any]] = []
        self.bodies: list[FakeBody] = []
        self.delay = 0.0
        self.closed = False

    def put(self, bucket: str, key: str, data: bytes, **metadata: Any) -> None:
        self.objects[(bucket, key)] = {"data": data, **metadata}

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        location = (kwargs["Bucket"], kwargs["Key"])
        if location in self.errors:
            raise self.errors[location]
        if location not in self.objects:
            raise client_error("NoSuchKey", 404, "The specified key does not exist.")
        stored = dict(self.objects[location])
        data = stored.pop("data")
        body = FakeBody(data)
        self.bodies.append(body)
        return {"Body": body, "ContentLength": len(data), **stored}

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(
        bucket_path_prefix="/frontend-assets",
        spa_entrypoint_path="/index.html",
        s3_get_timeout=5,
    )


@pytest.fixture
def asset_proxy(settings: ProxySettings, fake_s3: FakeS3Client) -> AssetProxy:
    return AssetProxy(settings=settings, fetcher=ObjectFetcher(fake_s3))


def make_request(
    method: str = "GET",
    path: str = "/",
    headers: dict[str, str] | None = None,
) -> Request:
    scope = cast(
        HTTPScope,
        {
            "type": "http",
            "method": method,
            "path": path,
            "query_string": b"",
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in (headers or {}).items()
            ],
        },
    )

    async def receive():
        return {"type": "http.request", "body": b""}

    return Request(scope=scope, receive=receive)


async def read_body(response: Response) -> bytes:
    body_chunks = []
    iterator_attr = getattr(response, "iterator", None)
    if callable(iterator_attr):
        iterator_func = cast(Callable[[], AsyncIterator[bytes]], iterator_attr)
        async for chunk in iterator_func():
            body_chunks.append(chunk)
    elif hasattr(response, "content"):
        content = response.content
        body_chunks.append(content.encode() if isinstance(content, str) else content)
    return b"".join(body_chunks)


@dataclass
class MinioService:
    endpoint: str
    access_key: str
    secret_key: str
    secure: bool


@pytest.fixture(scope="session")
def minio_access_key() -> str:
    return os.getenv("MINIO_ACCESS_KEY", "minio")


@pytest.fixture(scope="session")
def minio_secret_key() -> str:
    return os.getenv("MINIO_SECRET_KEY", "minio123")


@pytest.fixture(scope="session")
def minio_service_name() -> str:
    return "asset-proxy-minio"


@pytest.fixture(scope="session")
def docker_available() -> None:
    docker = pytest.importorskip("docker")
    try:
        docker.from_env().ping()
    except Exception as exc:  # noqa: BLE001
        pytest.skip(f"docker daemon unavailable: {exc}")


@pytest.fixture(scope="session")
def minio_service(
    docker_available: None,
    docker_service: DockerService,
    minio_access_key: str,
    minio_secret_key: str,
    minio_service_name: str,
) -> Generator[MinioService]:
    from urllib.error import URLError
    from urllib.request import Request as UrlRequest
    from urllib.request import urlopen

    from pytest_databases.types import ServiceContainer

    def check(_service: ServiceContainer) -> bool:
        url = f"http://{_service.host}:{_service.port}/minio/health/ready"
        try:
            with urlopen(url=UrlRequest(url, method="GET"), timeout=10) as response:
                return response.status == 200
        except (URLError, ConnectionError):
            return False

    with docker_service.run(
        image="quay.io/minio/minio",
        name=minio_service_name,
        command="server /data",
        container_port=9000,
        timeout=20,
        pause=0.5,
        env={
            "MINIO_ROOT_USER": minio_access_key,
            "MINIO_ROOT_PASSWORD": minio_secret_key,
        },
        check=check,
    ) as service:
        yield MinioService(
            endpoint=f"{service.host}:{service.port}",
            access_key=minio_access_key,
            secret_key=minio_secret_key,
            secure=False,
        )


@pytest.fixture
def minio_s3_client(minio_service: MinioService) -> BaseClient:
    import boto3
    from botocore.config import Config

    return boto3.client(
        "s3",
        endpoint_url=f"http://{minio_service.endpoint}",
        aws_access_key_id=minio_service.access_key,
        aws_secret_access_key=minio_service.secret_key,
        region_name="us-east-1",
        config=Config(s3={"addressing_style": "path"}),
    )


@pytest.fixture
def minio_settings(minio_service: MinioService) -> ProxySettings:
    return ProxySettings(
        upstream_url=f"http://{minio_service.endpoint}",
        access_key_id=minio_service.access_key,
        secret_access_key=minio_service.secret_key,
        bucket_path_prefix="/frontend-assets",
        spa_entrypoint_path="/index.html",
        s3_get_timeout=10,
    )


def ensure_bucket(client: BaseClient, bucket: str) -> None:
    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code not in {"404", "NoSuchBucket", "NotFound"}:
            raise
        client.create_bucket(Bucket=bucket)
