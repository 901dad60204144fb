from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from .clients import _run_sync
from .errors import error_code, wrap_error
from .metadata import ObjectInfo, stat_object

if TYPE_CHECKING:
    from botocore.client import BaseClient

    from .retry import BackoffPolicy

LOG = logging.getLogger("s3_file.reader")


class ChunkReader:
    """Offset-addressed reader over one object backed by ranged GETs.

    Each GET fetches at least ``chunk_size`` bytes; reads that fall inside the
    last fetched chunk are served from it without another request. Every chunk
    remembers the ObjectInfo (and so the ETag) of the GET that produced it.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        key: str,
        policy: BackoffPolicy,
        *,
        chunk_size: int,
    ) -> None:
        self._name = name
        self._bucket = bucket
        self._key = key
        self._policy = policy
        self._chunk_size = chunk_size
        self._chunk = b""
        self._chunk_offset = 0
        self._chunk_info: ObjectInfo | None = None

    async def read_at(self, offset: int, size: int) -> tuple[bytes, ObjectInfo | None]:
        """Read up to ``size`` bytes at ``offset``.

        Returns the bytes and the ObjectInfo observed by the last GET involved.
        Fewer than ``size`` bytes means the object ended.
        """
        parts: list[bytes] = []
        info = self._chunk_info
        while size > 0:
            start = offset - self._chunk_offset
            if not self._chunk or not 0 <= start < len(self._chunk):
                await self._fetch(offset, max(size, self._chunk_size))
                info = self._chunk_info
                if not self._chunk:
                    break
                start = 0
            else:
                info = self._chunk_info
            piece = self._chunk[start : start + size]
            parts.append(piece)
            offset += len(piece)
            size -= len(piece)
        return b"".join(parts), info

    def close(self) -> None:
        self._chunk = b""
        self._chunk_offset = 0
        self._chunk_info = None

    async def _fetch(self, offset: int, length: int) -> None:
        byte_range = f"bytes={offset}-{offset + length - 1}"

        async def get(client: BaseClient) -> tuple[dict[str, Any], bytes]:
            result = await _run_sync(
                partial(
                    client.get_object,
                    Bucket=self._bucket,
                    Key=self._key,
                    Range=byte_range,
                )
            )
            body = result["Body"]
            try:
                data = await _run_sync(body.read)
            finally:
                await _run_sync(body.close)
            return result, data

        try:
            result, data = await self._policy.run(get)
        except (ClientError, BotoCoreError) as error:
            if error_code(error) != "InvalidRange":
                raise wrap_error(error, "s3file.read", self._name) from error
            # Past the end of the object, but the caller still needs the
            # current ETag to tell EOF from a replaced object.
            LOG.debug("range %s past end of %s", byte_range, self._name)
            info = await stat_object(self._policy, self._name, self._bucket, self._key)
            self._store(offset, b"", info)
            return
        LOG.debug("fetched %s of %s (%d bytes)", byte_range, self._name, len(data))
        self._store(offset, data, ObjectInfo.from_response(self._name, result))

    def _store(self, offset: int, data: bytes, info: ObjectInfo) -> None:
        self._chunk = data
        self._chunk_offset = offset
        self._chunk_info = info
