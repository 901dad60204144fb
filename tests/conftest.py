from __future__ import annotations

import hashlib
import io
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from botocore.exceptions import ClientError
from s3_file import S3FileSettings, S3FileSystem

if TYPE_CHECKING:
    from botocore.client import BaseClient


def client_error(code: str, operation: str = "GetObject", status: int = 400):
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'  # noqa: S324


class FakeBody:
    def __init__(self, data: bytes):
        self._stream = io.BytesIO(data)
        self.closed = False

    def read(self, amt: int | None = None) -> bytes:
        return self._stream.read(amt)

    def close(self) -> None:
        self.closed = True


@dataclass
class StoredObject:
    data: bytes
    etag: str
    last_modified: datetime


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client.

    Failures can be queued per operation with ``fail``; ``get_delay`` makes
    ``get_object`` block its worker thread to simulate a slow backend.
    """

    def __init__(self, name: str = "primary"):
        self.name = name
        self.objects: dict[tuple[str, str], StoredObject] = {}
        self.uploads: dict[str, dict[int, bytes]] = {}
        self.calls: list[str] = []
        self.failures: dict[str, list[Exception]] = {}
        self.get_delay = 0.0
        self.max_active_gets = 0
        self._active_gets = 0
        self._lock = threading.Lock()

    def put(self, bucket: str, key: str, data: bytes) -> StoredObject:
        stored = StoredObject(data, _etag(data), datetime.now(UTC))
        self.objects[(bucket, key)] = stored
        return stored

    def fail(self, operation: str, *errors: Exception) -> None:
        self.failures.setdefault(operation, []).extend(errors)

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _lookup(self, bucket: str, key: str, code: str) -> StoredObject:
        stored = self.objects.get((bucket, key))
        if stored is None:
            raise client_error(code, status=404)
        return stored

    def head_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("head_object")
        stored = self._lookup(Bucket, Key, "404")
        return {
            "ContentLength": len(stored.data),
            "ETag": stored.etag,
            "LastModified": stored.last_modified,
        }

    def get_object(
        self, *, Bucket: str, Key: str, Range: str | None = None
    ) -> dict[str, Any]:
        with self._lock:
            self._active_gets += 1
            self.max_active_gets = max(self.max_active_gets, self._active_gets)
        try:
            if self.get_delay:
                time.sleep(self.get_delay)
            self._record("get_object")
            stored = self._lookup(Bucket, Key, "NoSuchKey")
            size = len(stored.data)
            start, end = 0, size - 1
            if Range:
                first, last = Range.removeprefix("bytes=").split("-")
                start, end = int(first), int(last)
                if start >= size:
                    raise client_error("InvalidRange", status=416)
                end = min(end, size - 1)
            chunk = stored.data[start : end + 1]
            return {
                "Body": FakeBody(chunk),
                "ContentLength": len(chunk),
                "ContentRange": f"bytes {start}-{end}/{size}",
                "ETag": stored.etag,
                "LastModified": stored.last_modified,
            }
        finally:
            with self._lock:
                self._active_gets -= 1

    def put_object(self, *, Bucket: str, Key: str, Body: bytes) -> dict[str, Any]:
        self._record("put_object")
        stored = self.put(Bucket, Key, Body)
        return {"ETag": stored.etag}

    def create_multipart_upload(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("create_multipart_upload")
        upload_id = uuid.uuid4().hex
        self.uploads[upload_id] = {}
        return {"UploadId": upload_id}

    def upload_part(
        self, *, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict[str, Any]:
        self._record("upload_part")
        if UploadId not in self.uploads:
            raise client_error("NoSuchUpload", "UploadPart", 404)
        self.uploads[UploadId][PartNumber] = Body
        return {"ETag": _etag(Body)}

    def complete_multipart_upload(
        self, *, Bucket: str, Key: str, UploadId: str, MultipartUpload: dict
    ) -> dict[str, Any]:
        self._record("complete_multipart_upload")
        parts = self.uploads.pop(UploadId)
        numbers = [part["PartNumber"] for part in MultipartUpload["Parts"]]
        stored = self.put(Bucket, Key, b"".join(parts[n] for n in numbers))
        return {"ETag": stored.etag}

    def abort_multipart_upload(
        self, *, Bucket: str, Key: str, UploadId: str
    ) -> dict[str, Any]:
        self._record("abort_multipart_upload")
        if self.uploads.pop(UploadId, None) is None:
            raise client_error("NoSuchUpload", "AbortMultipartUpload", 404)
        return {}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("delete_object")
        self.objects.pop((Bucket, Key), None)
        return {}

    def generate_presigned_url(
        self, *, ClientMethod: str, Params: dict[str, str], ExpiresIn: int
    ) -> str:
        self._record("generate_presigned_url")
        return (
            f"https://{Params['Bucket']}.fake-s3/{Params['Key']}"
            f"?op={ClientMethod}&expires={ExpiresIn}"
        )


class FakeClientProvider:
    def __init__(self, *clients: FakeS3Client):
        self.clients = list(clients)
        self.actions: list[str] = []

    async def clients_for_action(
        self, action: str, bucket: str, key: str
    ) -> list[BaseClient]:
        self.actions.append(action)
        return list(self.clients)  # type: ignore[arg-type]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def settings() -> S3FileSettings:
    return S3FileSettings(
        max_retries=3,
        backoff_initial=0,
        backoff_max=0,
        read_chunk_size=4,
    )


@pytest.fixture
def provider(s3_client: FakeS3Client) -> FakeClientProvider:
    return FakeClientProvider(s3_client)


@pytest.fixture
def fs(settings: S3FileSettings, provider: FakeClientProvider) -> S3FileSystem:
    return S3FileSystem(settings, provider)


@pytest.fixture
def digits(s3_client: FakeS3Client) -> str:
    """A 10 byte object holding bytes 0..9."""
    s3_client.put("bucket", "digits", bytes(range(10)))
    return "s3://bucket/digits"


@pytest.fixture
def s3_error():
    """Factory for botocore ClientErrors carrying a given error code."""
    return client_error


@pytest.fixture
def make_client():
    return FakeS3Client
