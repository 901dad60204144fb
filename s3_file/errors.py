from __future__ import annotations

NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})
PERMISSION_CODES = frozenset(
    {
        "403",
        "AccessDenied",
        "AllAccessDisabled",
        "ExpiredToken",
        "InvalidAccessKeyId",
        "InvalidToken",
        "SignatureDoesNotMatch",
    }
)


class S3FileError(Exception):
    """Base error for S3 file operations, tagged with operation and file name."""

    def __init__(
        self, message: str, *, op: str | None = None, name: str | None = None
    ) -> None:
        self.op = op
        self.name = name
        prefix = " ".join(part for part in (op, name) if part)
        super().__init__(f"{prefix}: {message}" if prefix else message)


class NotExistError(S3FileError):
    pass


class PermissionDeniedError(S3FileError):
    pass


class NotSupportedError(S3FileError):
    pass


class SeekError(S3FileError, ValueError):
    pass


class FileClosedError(S3FileError, ValueError):
    pass


class ETagChangedError(S3FileError):
    """The object was replaced while it was being read."""

    def __init__(self, name: str, old_etag: str, new_etag: str) -> None:
        self.old_etag = old_etag
        self.new_etag = new_etag
        super().__init__(
            f"etag changed from {old_etag} to {new_etag}", op="s3file.read", name=name
        )


def error_code(error: BaseException) -> str | None:
    response = getattr(error, "response", None)
    if not isinstance(response, dict):
        return None
    return response.get("Error", {}).get("Code")


def wrap_error(error: BaseException, op: str, name: str) -> S3FileError:
    """Wrap a backend error with the operation and file it failed on."""
    code = error_code(error)
    error_class: type[S3FileError] = S3FileError
    if code in NOT_FOUND_CODES:
        error_class = NotExistError
    elif code in PERMISSION_CODES:
        error_class = PermissionDeniedError
    elif isinstance(error, (NotExistError, PermissionDeniedError, NotSupportedError)):
        error_class = type(error)
    wrapped = error_class(str(error), op=op, name=name)
    wrapped.__cause__ = error
    return wrapped
