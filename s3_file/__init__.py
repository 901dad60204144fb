"""Concurrency-safe random-access files over S3 objects."""

from .errors import (
    ETagChangedError,
    FileClosedError,
    NotExistError,
    NotSupportedError,
    PermissionDeniedError,
    S3FileError,
    SeekError,
)
from .file import S3File, S3Reader, S3Writer
from .filesystem import S3FileSystem, parse_path
from .metadata import ObjectInfo
from .settings import S3FileSettings

__all__ = [
    "ETagChangedError",
    "FileClosedError",
    "NotExistError",
    "NotSupportedError",
    "ObjectInfo",
    "PermissionDeniedError",
    "S3File",
    "S3FileError",
    "S3FileSettings",
    "S3FileSystem",
    "S3Reader",
    "S3Writer",
    "SeekError",
    "parse_path",
]
