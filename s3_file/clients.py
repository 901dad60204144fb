from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError

from .errors import S3FileError

if TYPE_CHECKING:
    from collections.abc import Callable

    from botocore.client import BaseClient

    from .settings import S3FileSettings

LOG = logging.getLogger("s3_file.clients")


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(func, *args, **kwargs)


class ClientProvider(Protocol):
    async def clients_for_action(
        self, action: str, bucket: str, key: str
    ) -> list[BaseClient]:
        """Return the clients usable for ``action`` on ``bucket``/``key``, in order."""
        ...


class SessionClientProvider:
    """Builds one boto3 S3 client per configured credential profile."""

    def __init__(self, settings: S3FileSettings) -> None:
        self._settings = settings
        self._clients: list[BaseClient] | None = None

    async def clients_for_action(
        self, action: str, bucket: str, key: str
    ) -> list[BaseClient]:
        if self._clients is None:
            self._clients = await _run_sync(self._build_clients)
        if not self._clients:
            msg = f"no usable S3 client for {action}"
            raise S3FileError(msg)
        LOG.debug(
            "resolved %d client(s) for %s s3://%s/%s",
            len(self._clients),
            action,
            bucket,
            key,
        )
        return list(self._clients)

    def _build_clients(self) -> list[BaseClient]:
        clients: list[BaseClient] = []
        for profile in self._settings.profile_names:
            try:
                clients.append(self._build_client(profile))
            except BotoCoreError:
                LOG.warning(
                    "skipping S3 client for profile %s", profile, exc_info=True
                )
        return clients

    def _build_client(self, profile: str | None) -> BaseClient:
        if profile is None:
            session = Session(
                aws_access_key_id=self._settings.access_key,
                aws_secret_access_key=self._settings.secret_key,
                aws_session_token=self._settings.session_token,
                region_name=self._settings.region,
            )
        else:
            session = Session(profile_name=profile, region_name=self._settings.region)
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                # Retries are driven by BackoffPolicy.
                retries={"max_attempts": 1},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )
