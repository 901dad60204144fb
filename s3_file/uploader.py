from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from .errors import S3FileError, wrap_error

if TYPE_CHECKING:
    from .retry import BackoffPolicy

LOG = logging.getLogger("s3_file.uploader")


class Uploader:
    """Buffers written bytes and commits them as one object.

    Objects smaller than ``part_size`` are stored with a single PUT. Larger
    ones go through a multipart upload that is opened when the first full
    part is ready.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        key: str,
        policy: BackoffPolicy,
        *,
        part_size: int,
    ) -> None:
        self._name = name
        self._bucket = bucket
        self._key = key
        self._policy = policy
        self._part_size = part_size
        self._buffer = bytearray()
        self._upload_id: str | None = None
        self._parts: list[dict[str, Any]] = []
        self._error: S3FileError | None = None
        self._done = False

    @property
    def upload_id(self) -> str | None:
        return self._upload_id

    async def write(self, data: bytes) -> None:
        self._check_open("s3file.write")
        if self._error is not None:
            raise self._error
        self._buffer += data
        while len(self._buffer) >= self._part_size:
            part = bytes(self._buffer[: self._part_size])
            del self._buffer[: self._part_size]
            await self._upload_part(part)

    async def finish(self) -> None:
        self._check_open("s3file.finish")
        self._done = True
        try:
            if self._error is not None:
                raise self._error
            await self._commit()
        except S3FileError:
            await self._abort_quietly()
            raise
        finally:
            self._buffer.clear()

    async def abort(self) -> None:
        self._check_open("s3file.abort")
        self._done = True
        self._buffer.clear()
        if self._upload_id is None:
            return
        try:
            await self._policy.call(
                "abort_multipart_upload",
                Bucket=self._bucket,
                Key=self._key,
                UploadId=self._upload_id,
            )
        except (ClientError, BotoCoreError) as error:
            raise wrap_error(error, "s3file.abort", self._name) from error
        LOG.debug("aborted upload %s for %s", self._upload_id, self._name)
        self._upload_id = None

    def _check_open(self, op: str) -> None:
        if self._done:
            msg = "upload already finished or aborted"
            raise S3FileError(msg, op=op, name=self._name)

    async def _commit(self) -> None:
        if self._upload_id is None:
            try:
                await self._policy.call(
                    "put_object",
                    Bucket=self._bucket,
                    Key=self._key,
                    Body=bytes(self._buffer),
                )
            except (ClientError, BotoCoreError) as error:
                raise wrap_error(error, "s3file.finish", self._name) from error
            LOG.debug("stored %s (%d bytes)", self._name, len(self._buffer))
            return
        if self._buffer:
            await self._upload_part(bytes(self._buffer))
        try:
            await self._policy.call(
                "complete_multipart_upload",
                Bucket=self._bucket,
                Key=self._key,
                UploadId=self._upload_id,
                MultipartUpload={"Parts": self._parts},
            )
        except (ClientError, BotoCoreError) as error:
            raise wrap_error(error, "s3file.finish", self._name) from error
        LOG.debug("completed upload of %s (%d parts)", self._name, len(self._parts))
        self._upload_id = None

    async def _upload_part(self, part: bytes) -> None:
        try:
            if self._upload_id is None:
                result = await self._policy.call(
                    "create_multipart_upload", Bucket=self._bucket, Key=self._key
                )
                self._upload_id = result["UploadId"]
                LOG.debug("started upload %s for %s", self._upload_id, self._name)
            number = len(self._parts) + 1
            result = await self._policy.call(
                "upload_part",
                Bucket=self._bucket,
                Key=self._key,
                UploadId=self._upload_id,
                PartNumber=number,
                Body=part,
            )
        except (ClientError, BotoCoreError) as error:
            self._error = wrap_error(error, "s3file.write", self._name)
            raise self._error from error
        self._parts.append({"ETag": result["ETag"], "PartNumber": number})

    async def _abort_quietly(self) -> None:
        if self._upload_id is None:
            return
        try:
            await self._policy.call(
                "abort_multipart_upload",
                Bucket=self._bucket,
                Key=self._key,
                UploadId=self._upload_id,
            )
        except (ClientError, BotoCoreError):
            LOG.warning(
                "failed to abort upload %s for %s (non-fatal)",
                self._upload_id,
                self._name,
                exc_info=True,
            )
        else:
            self._upload_id = None
