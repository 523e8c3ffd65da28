"""Pydantic models for the Readwise v2 API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _id_to_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class ReadwiseBook(BaseModel):
    """Readwise book (the remote parent document)."""

    id: str
    title: str = ""
    author: str | None = None
    category: str | None = None
    source: str | None = None
    source_url: str | None = None
    unique_url: str | None = None
    num_highlights: int | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)


class ReadwiseBookList(BaseModel):
    """Paginated list of books."""

    count: int = 0
    next: str | None = None
    previous: str | None = None
    results: list[ReadwiseBook] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "extra": "ignore"}


class CreateBookRequest(BaseModel):
    title: str
    author: str | None = None
    category: str | None = None
    source: str | None = None
    unique_url: str | None = None


class CreateHighlightItem(BaseModel):
    """One highlight in a ``POST /highlights/`` request."""

    text: str
    title: str | None = None
    author: str | None = None
    source_url: str | None = None
    source_type: str | None = None
    category: str | None = None
    note: str | None = None
    location: int | None = None
    location_type: str | None = None
    highlighted_at: str | None = None
    highlight_url: str | None = None
    tags: list[str] | None = None
    color: str | None = None


class CreateHighlightsRequest(BaseModel):
    highlights: list[CreateHighlightItem]


class ModifiedBook(BaseModel):
    """Response entry of ``POST /highlights/``: a book and the highlight ids it received."""

    id: str
    title: str | None = None
    modified_highlights: list[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _id_to_str(value)

    @field_validator("modified_highlights", mode="before")
    @classmethod
    def _coerce_highlight_ids(cls, value: Any) -> list[str]:
        if not value:
            return []
        return [str(item) for item in value]
