from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_PART_SIZE = 5 * 1024 * 1024


class S3FileSettings(BaseSettings):
    """Configuration for S3 file access."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="S3_FILE_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_FILE_ACCESS_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_FILE_SECRET_ACCESS_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_FILE_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_FILE_REGION",
            "AWS_REGION",
        ),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="auto",
        validation_alias="S3_FILE_ADDRESSING_STYLE",
    )
    profiles: str | None = Field(
        default=None,
        validation_alias="S3_FILE_PROFILES",
    )
    max_retries: int = Field(
        default=5,
        ge=0,
        validation_alias="S3_FILE_MAX_RETRIES",
    )
    backoff_initial: float = Field(
        default=0.25,
        ge=0,
        validation_alias="S3_FILE_BACKOFF_INITIAL",
    )
    backoff_max: float = Field(
        default=10.0,
        ge=0,
        validation_alias="S3_FILE_BACKOFF_MAX",
    )
    read_chunk_size: int = Field(
        default=16 * 1024 * 1024,
        gt=0,
        validation_alias="S3_FILE_READ_CHUNK_SIZE",
    )
    part_size: int = Field(
        default=16 * 1024 * 1024,
        validation_alias="S3_FILE_PART_SIZE",
    )

    @field_validator("part_size")
    @classmethod
    def _check_part_size(cls, value: int) -> int:
        if value < MIN_PART_SIZE:
            msg = f"part size must be at least {MIN_PART_SIZE} bytes"
            raise ValueError(msg)
        return value

    @property
    def profile_names(self) -> list[str | None]:
        """Credential profiles to try, in order. ``None`` is the default chain."""
        if not self.profiles:
            return [None]
        names = [name.strip() for name in self.profiles.split(",")]
        return [name for name in names if name] or [None]


def load_settings_from_env() -> S3FileSettings:
    """Load S3 file settings from environment variables.

    Returns:
        S3FileSettings instance populated from environment variables.
    """
    return S3FileSettings()
