"""Sequence chunking helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Sequence

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into consecutive chunks of at most ``size`` elements.

    >>> [len(c) for c in chunked(list(range(237)), 50)]
    [50, 50, 50, 50, 37]
    """
    if size <= 0:
        msg = "Chunk size must be greater than 0"
        raise ValueError(msg)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
