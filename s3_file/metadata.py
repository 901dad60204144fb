from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError

from .errors import wrap_error

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .retry import BackoffPolicy

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of one object: size, modification time and content tag."""

    name: str
    size: int
    mod_time: datetime
    etag: str

    @classmethod
    def from_response(cls, name: str, result: Mapping[str, Any]) -> ObjectInfo:
        """Build from a ``head_object`` or (ranged) ``get_object`` response."""
        size = _total_size(result.get("ContentRange"))
        if size is None:
            size = int(result.get("ContentLength") or 0)
        mod_time = result.get("LastModified") or _EPOCH
        if mod_time.tzinfo is None:
            mod_time = mod_time.replace(tzinfo=UTC)
        return cls(
            name=name, size=size, mod_time=mod_time, etag=result.get("ETag") or ""
        )


def _total_size(content_range: str | None) -> int | None:
    # "bytes 0-99/1234"
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return None
    return int(total)


async def stat_object(
    policy: BackoffPolicy, name: str, bucket: str, key: str
) -> ObjectInfo:
    try:
        result = await policy.call("head_object", Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as error:
        raise wrap_error(error, "s3file.stat", name) from error
    return ObjectInfo.from_response(name, result)
