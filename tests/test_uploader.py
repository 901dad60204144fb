"""Unit tests for the uploader."""

from __future__ import annotations

import pytest
from s3_file import S3FileError
from s3_file.retry import BackoffPolicy
from s3_file.uploader import Uploader


@pytest.fixture
def make_uploader(s3_client):
    def make(part_size=4):
        policy = BackoffPolicy([s3_client], max_retries=1, initial_delay=0)
        return Uploader("s3://bucket/out", "bucket", "out", policy, part_size=part_size)

    return make


class TestUploader:
    """Tests for Uploader."""

    @pytest.mark.anyio
    async def test_small_object_uses_single_put(self, s3_client, make_uploader):
        uploader = make_uploader(part_size=100)
        await uploader.write(b"abc")
        await uploader.write(b"def")
        await uploader.finish()
        assert s3_client.objects[("bucket", "out")].data == b"abcdef"
        assert s3_client.count("put_object") == 1
        assert s3_client.count("create_multipart_upload") == 0

    @pytest.mark.anyio
    async def test_empty_object(self, s3_client, make_uploader):
        uploader = make_uploader()
        await uploader.finish()
        assert s3_client.objects[("bucket", "out")].data == b""

    @pytest.mark.anyio
    async def test_multipart_upload(self, s3_client, make_uploader):
        uploader = make_uploader(part_size=4)
        await uploader.write(b"abcdef")
        assert uploader.upload_id is not None
        await uploader.write(b"ghij")
        await uploader.finish()
        assert s3_client.objects[("bucket", "out")].data == b"abcdefghij"
        assert s3_client.count("upload_part") == 3
        assert s3_client.count("complete_multipart_upload") == 1
        assert not s3_client.uploads

    @pytest.mark.anyio
    async def test_exact_multiple_of_part_size(self, s3_client, make_uploader):
        uploader = make_uploader(part_size=4)
        await uploader.write(b"abcdefgh")
        await uploader.finish()
        assert s3_client.objects[("bucket", "out")].data == b"abcdefgh"
        assert s3_client.count("upload_part") == 2

    @pytest.mark.anyio
    async def test_abort(self, s3_client, make_uploader):
        uploader = make_uploader(part_size=4)
        await uploader.write(b"abcdef")
        await uploader.abort()
        assert s3_client.count("abort_multipart_upload") == 1
        assert not s3_client.uploads
        assert ("bucket", "out") not in s3_client.objects

    @pytest.mark.anyio
    async def test_abort_without_parts_is_local(self, s3_client, make_uploader):
        uploader = make_uploader(part_size=100)
        await uploader.write(b"abc")
        await uploader.abort()
        assert s3_client.calls == []

    @pytest.mark.anyio
    async def test_finish_and_abort_are_exclusive(self, make_uploader):
        uploader = make_uploader()
        await uploader.finish()
        with pytest.raises(S3FileError):
            await uploader.finish()
        with pytest.raises(S3FileError):
            await uploader.abort()
        with pytest.raises(S3FileError):
            await uploader.write(b"x")

    @pytest.mark.anyio
    async def test_failed_part_is_sticky(self, s3_client, make_uploader, s3_error):
        s3_client.fail("upload_part", s3_error("InvalidRequest"))
        uploader = make_uploader(part_size=4)
        with pytest.raises(S3FileError, match="s3file.write"):
            await uploader.write(b"abcd")
        with pytest.raises(S3FileError, match="s3file.write"):
            await uploader.write(b"efgh")
        with pytest.raises(S3FileError, match="s3file.write"):
            await uploader.finish()
        assert s3_client.count("abort_multipart_upload") == 1
        assert ("bucket", "out") not in s3_client.objects

    @pytest.mark.anyio
    async def test_failed_complete_aborts(self, s3_client, make_uploader, s3_error):
        s3_client.fail("complete_multipart_upload", s3_error("InvalidPart"))
        uploader = make_uploader(part_size=4)
        await uploader.write(b"abcdef")
        with pytest.raises(S3FileError, match="s3file.finish"):
            await uploader.finish()
        assert s3_client.count("abort_multipart_upload") == 1
