from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

import anyio
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .clients import _run_sync
from .errors import PERMISSION_CODES, error_code

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from botocore.client import BaseClient

    from .settings import S3FileSettings

LOG = logging.getLogger("s3_file.retry")

T = TypeVar("T")

RETRYABLE_CODES = frozenset(
    {
        "500",
        "502",
        "503",
        "504",
        "InternalError",
        "RequestTimeout",
        "RequestTimeTooSkewed",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
    }
)


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return True
    if isinstance(error, ClientError):
        return error_code(error) in RETRYABLE_CODES
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    LOG.debug(
        "retrying in %.2fs (attempt %d): %s",
        delay,
        retry_state.attempt_number,
        error,
    )


class BackoffPolicy:
    """Retry rules for one logical operation over an ordered client set.

    Transient failures are retried on the current client with capped,
    jittered exponential backoff. Permission failures move on to the next
    client with a fresh retry budget, since another credential set may be
    allowed where this one is not.
    """

    def __init__(
        self,
        clients: Iterable[BaseClient],
        *,
        max_retries: int = 5,
        initial_delay: float = 0.25,
        max_delay: float = 10.0,
    ) -> None:
        self._clients = list(clients)
        if not self._clients:
            msg = "backoff policy needs at least one client"
            raise ValueError(msg)
        self._max_retries = max_retries
        self._initial_delay = initial_delay
        self._max_delay = max_delay

    @classmethod
    def from_settings(
        cls, clients: Iterable[BaseClient], settings: S3FileSettings
    ) -> BackoffPolicy:
        return cls(
            clients,
            max_retries=settings.max_retries,
            initial_delay=settings.backoff_initial,
            max_delay=settings.backoff_max,
        )

    @property
    def client(self) -> BaseClient:
        return self._clients[0]

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential_jitter(
                initial=self._initial_delay,
                max=self._max_delay,
                jitter=self._initial_delay,
            ),
            retry=retry_if_exception(is_retryable),
            sleep=anyio.sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

    def _next_client(self, error: BaseException) -> bool:
        if error_code(error) not in PERMISSION_CODES or len(self._clients) < 2:
            return False
        self._clients.pop(0)
        LOG.debug(
            "permission denied (%s), trying next client (%d left)",
            error,
            len(self._clients),
        )
        return True

    async def run(self, func: Callable[[BaseClient], Awaitable[T]]) -> T:
        """Await ``func(client)``, retrying per this policy."""
        while True:
            try:
                return await self._retrying()(func, self.client)
            except (ClientError, BotoCoreError) as error:
                if self._next_client(error):
                    continue
                if is_retryable(error):
                    LOG.warning(
                        "giving up after %d retries: %s", self._max_retries, error
                    )
                raise

    async def call(self, operation: str, /, **kwargs: Any) -> Any:
        """Run one boto3 client operation, retrying per this policy."""

        async def invoke(client: BaseClient) -> Any:
            return await _run_sync(partial(getattr(client, operation), **kwargs))

        return await self.run(invoke)
