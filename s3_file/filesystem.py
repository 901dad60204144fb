from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING, Literal

import anyio
from botocore.exceptions import BotoCoreError, ClientError

from .clients import SessionClientProvider, _run_sync
from .errors import S3FileError, wrap_error
from .file import S3File
from .metadata import ObjectInfo, stat_object
from .retry import BackoffPolicy
from .settings import S3FileSettings, load_settings_from_env
from .uploader import Uploader

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from anyio.abc import TaskStatus
    from botocore.client import BaseClient

    from .clients import ClientProvider

LOG = logging.getLogger("s3_file.filesystem")

SCHEME = "s3://"

_PRESIGN_METHODS = {
    "GET": ("GetObject", "get_object"),
    "PUT": ("PutObject", "put_object"),
    "DELETE": ("DeleteObject", "delete_object"),
}


def parse_path(path: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into bucket and key."""
    if not path.startswith(SCHEME):
        msg = f"{path}: not an s3:// path"
        raise ValueError(msg)
    trimmed = path[len(SCHEME) :]
    bucket, _, key = trimmed.partition("/")
    if not bucket or not key:
        msg = f"{path}: path must name both a bucket and a key"
        raise ValueError(msg)
    return bucket, key


async def _serve_shielded(
    handle: S3File, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED
) -> None:
    # Outlives cancellation of the caller; _release always stops it.
    with anyio.CancelScope(shield=True):
        await handle.serve(task_status=task_status)


class S3FileSystem:
    """Opens S3 objects as ``S3File`` handles and runs their actor tasks."""

    def __init__(
        self,
        settings: S3FileSettings | None = None,
        clients: ClientProvider | None = None,
    ) -> None:
        self._settings = settings or S3FileSettings()
        self._clients = clients or SessionClientProvider(self._settings)

    @classmethod
    def from_env(cls) -> S3FileSystem:
        """Create an S3FileSystem configured from environment variables.

        Returns:
            S3FileSystem using settings loaded from the environment.
        """
        return cls(settings=load_settings_from_env())

    @property
    def settings(self) -> S3FileSettings:
        return self._settings

    @asynccontextmanager
    async def open(self, path: str) -> AsyncIterator[S3File]:
        """Open an object for reading.

        The object's metadata is loaded before the handle is handed out, so a
        missing object fails here. The handle is closed on exit.
        """
        bucket, key = parse_path(path)
        handle = S3File(path, bucket, key, "r", self._clients, self._settings)
        async with self._serving(handle, load_info=True) as opened:
            yield opened

    @asynccontextmanager
    async def create(self, path: str) -> AsyncIterator[S3File]:
        """Create (or replace) an object.

        Written bytes are committed when the block exits normally. If it
        raises or is cancelled the upload is discarded instead.
        """
        bucket, key = parse_path(path)
        clients = await self._resolve("PutObject", "s3file.create", path)
        uploader = Uploader(
            path,
            bucket,
            key,
            BackoffPolicy.from_settings(clients, self._settings),
            part_size=self._settings.part_size,
        )
        handle = S3File(
            path, bucket, key, "w", self._clients, self._settings, uploader=uploader
        )
        async with self._serving(handle, load_info=False) as opened:
            yield opened

    @asynccontextmanager
    async def _serving(
        self, handle: S3File, *, load_info: bool
    ) -> AsyncIterator[S3File]:
        # Failures are re-raised outside the task group so callers see the
        # original exception rather than an ExceptionGroup.
        failure: BaseException | None = None
        async with anyio.create_task_group() as tg:
            await tg.start(_serve_shielded, handle)
            try:
                if load_info:
                    await handle.stat()
            except BaseException as error:
                failure = error
            else:
                try:
                    yield handle
                except BaseException as error:
                    failure = error
            with anyio.CancelScope(shield=True):
                try:
                    await self._release(handle, commit=failure is None)
                except S3FileError as error:
                    if failure is None:
                        failure = error
                    else:
                        LOG.warning("failed to release %s", handle, exc_info=True)
        if failure is not None:
            raise failure

    async def _release(self, handle: S3File, *, commit: bool) -> None:
        if handle.closed:
            return
        if handle.mode == "w" and not commit:
            LOG.debug("discarding %s", handle)
            await handle.discard()
            return
        await handle.close()

    async def _resolve(self, action: str, op: str, path: str) -> list[BaseClient]:
        bucket, key = parse_path(path)
        try:
            return await self._clients.clients_for_action(action, bucket, key)
        except (S3FileError, ClientError, BotoCoreError) as error:
            raise wrap_error(error, op, path) from error

    async def stat(self, path: str) -> ObjectInfo:
        bucket, key = parse_path(path)
        clients = await self._resolve("GetObject", "s3file.stat", path)
        policy = BackoffPolicy.from_settings(clients, self._settings)
        return await stat_object(policy, path, bucket, key)

    async def remove(self, path: str) -> None:
        bucket, key = parse_path(path)
        clients = await self._resolve("DeleteObject", "s3file.remove", path)
        policy = BackoffPolicy.from_settings(clients, self._settings)
        try:
            await policy.call("delete_object", Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as error:
            raise wrap_error(error, "s3file.remove", path) from error
        LOG.debug("removed %s", path)

    async def presign(
        self,
        path: str,
        method: Literal["GET", "PUT", "DELETE"] = "GET",
        expires_in: int = 3600,
    ) -> str:
        """Return a presigned URL for ``method`` on the object."""
        methods = _PRESIGN_METHODS.get(method.upper())
        if methods is None:
            msg = f"unsupported presign method {method}"
            raise ValueError(msg)
        action, operation = methods
        bucket, key = parse_path(path)
        clients = await self._resolve(action, "s3file.presign", path)
        try:
            return await _run_sync(
                partial(
                    clients[0].generate_presigned_url,
                    ClientMethod=operation,
                    Params={"Bucket": bucket, "Key": key},
                    ExpiresIn=expires_in,
                )
            )
        except (ClientError, BotoCoreError) as error:
            raise wrap_error(error, "s3file.presign", path) from error
