"""Random-access file handle over one S3 object.

Every open ``S3File`` is served by a single actor task (``S3File.serve``)
that owns all mutable handle state: cursor, cached metadata, the active range
reader and the uploader. Callers never touch that state. Each public call
builds a request, sends it on the handle's zero-buffer request stream (so a
busy actor back-pressures callers) and waits for the reply on a private
one-slot stream. If the caller is cancelled while waiting, the actor still
finishes the request and its reply is dropped.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import anyio
from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    ETagChangedError,
    FileClosedError,
    NotSupportedError,
    S3FileError,
    SeekError,
    wrap_error,
)
from .metadata import stat_object
from .reader import ChunkReader
from .retry import BackoffPolicy

if TYPE_CHECKING:
    from anyio.abc import TaskStatus
    from anyio.streams.memory import MemoryObjectSendStream

    from .clients import ClientProvider
    from .metadata import ObjectInfo
    from .settings import S3FileSettings
    from .uploader import Uploader

LOG = logging.getLogger("s3_file.file")

AccessMode = Literal["r", "w"]

READ_ALL_SIZE = 1024 * 1024


@dataclass
class _Request:
    reply: MemoryObjectSendStream[Response] | None = field(
        default=None, kw_only=True, repr=False
    )


@dataclass
class StatRequest(_Request):
    pass


@dataclass
class SeekRequest(_Request):
    offset: int
    whence: int


@dataclass
class ReadRequest(_Request):
    size: int


@dataclass
class WriteRequest(_Request):
    data: bytes


@dataclass
class CloseRequest(_Request):
    pass


@dataclass
class AbortRequest(_Request):
    pass


@dataclass
class Response:
    n: int = 0  # read or written bytes
    data: bytes = b""  # read
    offset: int = 0  # seek
    info: ObjectInfo | None = None  # stat
    error: S3FileError | None = None


class S3File:
    """An open S3 object, either read-only (``"r"``) or write-only (``"w"``).

    The handle is unusable after ``close`` or ``discard``.
    """

    def __init__(
        self,
        name: str,
        bucket: str,
        key: str,
        mode: AccessMode,
        clients: ClientProvider,
        settings: S3FileSettings,
        *,
        info: ObjectInfo | None = None,
        uploader: Uploader | None = None,
    ) -> None:
        if mode == "w" and uploader is None:
            msg = f"write-mode file {name} needs an uploader"
            raise ValueError(msg)
        self._name = name
        self._bucket = bucket
        self._key = key
        self._mode: AccessMode = mode
        self._clients = clients
        self._settings = settings
        self._closed = False
        self._requests_tx, self._requests_rx = anyio.create_memory_object_stream[
            _Request
        ](0)

        # Owned by the serve() task.
        # INVARIANT: position >= 0 and (position > 0 implies info is not None)
        self._info = info
        self._body: ChunkReader | None = None
        self._position = 0
        self._uploader = uploader
        self._terminated = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def key(self) -> str:
        return self._key

    @property
    def mode(self) -> AccessMode:
        return self._mode

    @property
    def closed(self) -> bool:
        return self._closed

    def __str__(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"S3File({self._name!r}, mode={self._mode!r})"

    async def stat(self) -> ObjectInfo:
        if self._mode != "r":
            msg = "stat for write-only file not supported"
            raise NotSupportedError(msg, op="s3file.stat", name=self._name)
        response = await self._run_request(StatRequest())
        if response.error is not None:
            raise response.error
        if response.info is None:
            msg = f"stat of {self._name} returned no metadata"
            raise RuntimeError(msg)
        return response.info

    def reader(self) -> S3Reader:
        if self._mode != "r":
            msg = "file is not opened in read mode"
            raise NotSupportedError(msg, op="reader", name=self._name)
        return S3Reader(self)

    def writer(self) -> S3Writer:
        if self._mode != "w":
            msg = "file is not opened in write mode"
            raise NotSupportedError(msg, op="writer", name=self._name)
        return S3Writer(self)

    async def close(self) -> None:
        """Commit (write mode) or release (read mode) and stop the actor."""
        try:
            response = await self._run_request(CloseRequest())
        finally:
            self._shutdown()
        if response.error is not None:
            raise response.error

    async def discard(self) -> None:
        """Abort the upload of a write-mode file. A no-op in read mode."""
        if self._mode != "w":
            return
        try:
            response = await self._run_request(AbortRequest())
        finally:
            self._shutdown()
        if response.error is not None:
            raise response.error

    def _shutdown(self) -> None:
        self._closed = True
        self._requests_tx.close()

    async def _run_request(self, request: _Request) -> Response:
        reply_tx, reply_rx = anyio.create_memory_object_stream[Response](1)
        request.reply = reply_tx
        with reply_rx:
            try:
                await self._requests_tx.send(request)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                reply_tx.close()
                msg = "file already closed"
                raise FileClosedError(msg, name=self._name) from None
            except BaseException:
                # Cancelled before the actor took the request, or just after.
                reply_tx.close()
                raise
            try:
                return await reply_rx.receive()
            except anyio.EndOfStream:
                msg = f"{type(request).__name__} got no response"
                raise S3FileError(msg, name=self._name) from None
            except anyio.get_cancelled_exc_class():
                LOG.debug("caller gave up on %s for %s", type(request).__name__, self)
                raise

    async def serve(
        self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        """Process requests one at a time until the handle is closed."""
        with self._requests_rx:
            task_status.started()
            async for request in self._requests_rx:
                await self._dispatch(request)
        LOG.debug("stopped serving %s", self._name)

    async def _dispatch(self, request: _Request) -> None:
        if request.reply is None:
            msg = f"request without a reply stream: {request!r}"
            raise RuntimeError(msg)
        with request.reply:
            if self._terminated:
                response = Response(
                    error=FileClosedError("file already closed", name=self._name)
                )
            elif isinstance(request, StatRequest):
                response = await self._handle_stat()
            elif isinstance(request, SeekRequest):
                response = await self._handle_seek(request)
            elif isinstance(request, ReadRequest):
                response = await self._handle_read(request)
            elif isinstance(request, WriteRequest):
                response = await self._handle_write(request)
            elif isinstance(request, CloseRequest):
                response = await self._handle_close()
            elif isinstance(request, AbortRequest):
                response = await self._handle_abort()
            else:
                msg = f"illegal request: {request!r}"
                raise RuntimeError(msg)
            try:
                request.reply.send_nowait(response)
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                LOG.debug(
                    "dropping response to abandoned %s for %s",
                    type(request).__name__,
                    self._name,
                )

    async def _policy_for(self, op: str) -> BackoffPolicy:
        try:
            clients = await self._clients.clients_for_action(
                "GetObject", self._bucket, self._key
            )
        except (S3FileError, ClientError, BotoCoreError) as error:
            raise wrap_error(error, op, self._name) from error
        return BackoffPolicy.from_settings(clients, self._settings)

    async def _handle_stat(self) -> Response:
        if self._info is not None:
            return Response(info=self._info)
        try:
            policy = await self._policy_for("s3file.stat")
            info = await stat_object(policy, self._name, self._bucket, self._key)
        except S3FileError as error:
            return Response(error=error)
        self._info = info
        return Response(info=info)

    async def _handle_seek(self, request: SeekRequest) -> Response:
        if self._info is None:
            msg = f"seek on {self._name} before its metadata was loaded"
            raise RuntimeError(msg)
        if request.whence == os.SEEK_SET:
            position = request.offset
        elif request.whence == os.SEEK_CUR:
            position = self._position + request.offset
        elif request.whence == os.SEEK_END:
            position = self._info.size + request.offset
        else:
            return Response(
                offset=self._position,
                error=SeekError(
                    f"illegal whence {request.whence}",
                    op=f"s3file.seek({request.offset},{request.whence})",
                    name=self._name,
                ),
            )
        if position < 0:
            return Response(
                offset=self._position,
                error=SeekError(
                    "out-of-bounds seek",
                    op=f"s3file.seek({request.offset},{request.whence})",
                    name=self._name,
                ),
            )
        if position == self._position:
            return Response(offset=position)
        self._position = position
        self._close_body()
        return Response(offset=position)

    async def _handle_read(self, request: ReadRequest) -> Response:
        size = request.size
        # Seeking past the end is allowed; reading there is end-of-data.
        if self._info is not None:
            remaining = self._info.size - self._position
            if remaining <= 0:
                return Response()
            size = min(size, remaining)
        try:
            if self._body is None:
                self._body = ChunkReader(
                    self._name,
                    self._bucket,
                    self._key,
                    await self._policy_for("s3file.read"),
                    chunk_size=self._settings.read_chunk_size,
                )
            data, observed = await self._body.read_at(self._position, size)
        except S3FileError as error:
            self._close_body()
            return Response(error=error)
        if observed is not None and observed.etag:
            if self._info is None:
                self._info = observed
            elif observed.etag != self._info.etag:
                # Takes precedence over end-of-data. Nothing is delivered,
                # so the cursor stays put.
                self._close_body()
                return Response(
                    error=ETagChangedError(self._name, self._info.etag, observed.etag)
                )
        self._position += len(data)
        return Response(n=len(data), data=data)

    async def _handle_write(self, request: WriteRequest) -> Response:
        if not request.data:
            return Response()
        if self._uploader is None:
            msg = "file is not opened in write mode"
            return Response(
                error=NotSupportedError(msg, op="s3file.write", name=self._name)
            )
        try:
            await self._uploader.write(request.data)
        except S3FileError as error:
            return Response(error=error)
        return Response(n=len(request.data))

    async def _handle_close(self) -> Response:
        error: S3FileError | None = None
        self._terminated = True
        if self._uploader is not None:
            try:
                await self._uploader.finish()
            except S3FileError as finish_error:
                error = wrap_error(finish_error, "s3file.close", self._name)
        self._close_body()
        return Response(error=error)

    async def _handle_abort(self) -> Response:
        self._terminated = True
        if self._uploader is None:
            return Response()
        try:
            await self._uploader.abort()
        except S3FileError as abort_error:
            return Response(error=wrap_error(abort_error, "s3file.abort", self._name))
        return Response()

    def _close_body(self) -> None:
        if self._body is not None:
            self._body.close()
            self._body = None


class S3Reader:
    """Seekable byte source over a read-mode ``S3File``."""

    def __init__(self, file: S3File) -> None:
        self._file = file

    async def read(self, size: int | None = -1) -> bytes:
        """Read up to ``size`` bytes; all remaining bytes if negative.

        Returns ``b""`` at end-of-data.
        """
        if size is None or size < 0:
            chunks: list[bytes] = []
            while True:
                chunk = await self.read(READ_ALL_SIZE)
                if not chunk:
                    return b"".join(chunks)
                chunks.append(chunk)
        if size == 0:
            return b""
        response = await self._file._run_request(ReadRequest(size=size))
        if response.error is not None:
            raise response.error
        return response.data

    async def readinto(self, buffer: bytearray | memoryview) -> int:
        view = memoryview(buffer).cast("B")
        data = await self.read(len(view))
        view[: len(data)] = data
        return len(data)

    async def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        response = await self._file._run_request(
            SeekRequest(offset=offset, whence=whence)
        )
        if response.error is not None:
            raise response.error
        return response.offset

    async def tell(self) -> int:
        return await self.seek(0, os.SEEK_CUR)


class S3Writer:
    """Append-only byte sink over a write-mode ``S3File``."""

    def __init__(self, file: S3File) -> None:
        self._file = file

    async def write(self, data: bytes | bytearray | memoryview) -> int:
        if not data:
            return 0
        # Copied: the actor may still consume it after the caller gave up.
        response = await self._file._run_request(WriteRequest(data=bytes(data)))
        if response.error is not None:
            raise response.error
        return response.n
