from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ._validators import _ensure_api_token, _parse_float, _parse_int

DEFAULT_READWISE_API_URL = "https://readwise.io/api/v2"


class ReadwiseConfig(BaseModel):
    """Remote highlight service (Readwise-compatible) configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_url: str = Field(default=DEFAULT_READWISE_API_URL, validation_alias="READWISE_API_URL")
    api_token: str = Field(default="", validation_alias="READWISE_API_TOKEN")
    timeout_seconds: float = Field(default=30.0, validation_alias="READWISE_TIMEOUT_SECONDS")
    book_cache_enabled: bool = Field(default=True, validation_alias="READWISE_BOOK_CACHE_ENABLED")
    book_cache_ttl_minutes: int = Field(
        default=60, validation_alias="READWISE_BOOK_CACHE_TTL_MINUTES"
    )
    book_cache_max_size: int = Field(default=500, validation_alias="READWISE_BOOK_CACHE_MAX_SIZE")

    @field_validator("api_url", mode="before")
    @classmethod
    def _validate_api_url(cls, value: Any) -> str:
        url = str(value or DEFAULT_READWISE_API_URL).strip()
        if not url:
            return DEFAULT_READWISE_API_URL
        if not url.startswith(("http://", "https://")):
            msg = "Readwise API URL must start with http:// or https://"
            raise ValueError(msg)
        return url.rstrip("/")

    @field_validator("api_token", mode="before")
    @classmethod
    def _validate_api_token(cls, value: Any) -> str:
        return _ensure_api_token(value, name="Readwise")

    @field_validator("timeout_seconds", mode="before")
    @classmethod
    def _validate_timeout(cls, value: Any) -> float:
        return _parse_float(
            value, name="Readwise timeout", default=30.0, minimum=1.0, maximum=600.0
        )

    @field_validator("book_cache_ttl_minutes", mode="before")
    @classmethod
    def _validate_cache_ttl(cls, value: Any) -> int:
        return _parse_int(
            value, name="Readwise book cache TTL", default=60, minimum=1, maximum=10080
        )

    @field_validator("book_cache_max_size", mode="before")
    @classmethod
    def _validate_cache_size(cls, value: Any) -> int:
        return _parse_int(
            value, name="Readwise book cache size", default=500, minimum=1, maximum=100000
        )
