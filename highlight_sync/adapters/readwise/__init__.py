"""Readwise remote: HTTP client, book cache, wire models and field mapper."""

from highlight_sync.adapters.readwise.book_cache import BookCache
from highlight_sync.adapters.readwise.client import ReadwiseClient
from highlight_sync.adapters.readwise.mapper import MapperOptions, ReadwiseHighlightMapper

__all__ = ["BookCache", "MapperOptions", "ReadwiseClient", "ReadwiseHighlightMapper"]
