"""TTL + LRU cache of remote book ids, shared across runs of one client."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class _CachedBook:
    book_id: str
    cached_at: float


class BookCache:
    def __init__(self, max_size: int = 500, ttl_minutes: float = 60.0) -> None:
        if max_size < 1:
            msg = "max_size must be at least 1"
            raise ValueError(msg)
        self.max_size = max_size
        self.ttl_seconds = ttl_minutes * 60.0
        self._entries: OrderedDict[str, _CachedBook] = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(title: str, author: str | None = None, source_url: str | None = None) -> str:
        parts = [title, author or "", source_url or ""]
        return "|".join(part.lower().strip() for part in parts)

    def get(self, title: str, author: str | None = None, source_url: str | None = None) -> str | None:
        key = self.make_key(title, author, source_url)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if time.monotonic() - entry.cached_at > self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            logger.debug("book_cache_expired", extra={"title": title})
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.book_id

    def set(
        self,
        book_id: str,
        title: str,
        author: str | None = None,
        source_url: str | None = None,
    ) -> None:
        if not title:
            logger.warning("book_cache_missing_title", extra={"book_id": book_id})
            return
        key = self.make_key(title, author, source_url)
        self._entries[key] = _CachedBook(book_id=str(book_id), cached_at=time.monotonic())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("book_cache_evicted", extra={"key": evicted})

    def cleanup(self) -> int:
        """Drop expired entries and return how many were removed."""
        now = time.monotonic()
        expired = [key for key, entry in self._entries.items() if now - entry.cached_at > self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
        }
