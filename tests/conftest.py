"""Pytest configuration and shared fakes for the sync engine tests."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from highlight_sync.adapters.readwise.mapper import MapperOptions, ReadwiseHighlightMapper
from highlight_sync.domain.exceptions import ValidationError
from highlight_sync.sync.models import (
    CreatedHighlight,
    ItemWithAnnotations,
    SourceAnnotation,
    SourceItem,
)
from highlight_sync.sync.orchestrator import SyncOrchestrator
from highlight_sync.sync.state_store import JsonStateStore
from highlight_sync.sync.upload_pipeline import UploadPipeline
from highlight_sync.utils.circuit_breaker import CircuitBreaker
from highlight_sync.utils.rate_limiter import SlidingWindowRateLimiter
from highlight_sync.utils.retry_utils import RetryManager

if TYPE_CHECKING:
    from pathlib import Path

    from highlight_sync.sync.models import HighlightPayload, ParentMetadata, ScanOptions


def make_annotation(key: str, text: str = "Highlighted text", **kwargs: Any) -> SourceAnnotation:
    return SourceAnnotation(key=key, text=text, **kwargs)


def make_item(
    key: str,
    annotations: list[SourceAnnotation] | None = None,
    *,
    title: str | None = None,
    date_modified: datetime | None = None,
    **kwargs: Any,
) -> ItemWithAnnotations:
    if annotations is None:
        annotations = [make_annotation(f"{key}-A1")]
    item = SourceItem(
        key=key,
        title=title if title is not None else f"Paper {key}",
        creators=["Ada Lovelace"],
        date_modified=date_modified,
        **kwargs,
    )
    return ItemWithAnnotations(item=item, annotations=annotations)


class FakeSource:
    """In-memory library honouring ``modified_after`` and collection/tag filters."""

    def __init__(self, items: list[ItemWithAnnotations] | None = None) -> None:
        self.items = list(items or [])
        self.calls: list[ScanOptions] = []

    async def get_items_with_annotations(self, options: ScanOptions) -> list[ItemWithAnnotations]:
        self.calls.append(options)
        return [entry for entry in self.items if self._matches(entry, options)]

    @staticmethod
    def _matches(entry: ItemWithAnnotations, options: ScanOptions) -> bool:
        item = entry.item
        if (
            options.modified_after is not None
            and item.date_modified is not None
            and item.date_modified <= options.modified_after
        ):
            return False
        if options.collections and not set(options.collections) & set(item.collections):
            return False
        return not (options.tags and not set(options.tags) & set(item.tags))


class FakeRemote:
    """Remote highlight service double that records every call."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.parent_ids: dict[str, str] = {}
        self.parent_calls: list[str] = []
        self.upload_calls: list[tuple[str, list[HighlightPayload]]] = []
        self.failing_parents: dict[str, Exception] = {}
        self.parent_errors: dict[str, Exception] = {}
        self.confirm_limit: int | None = None
        self.connection_ok = True

    @property
    def uploaded_keys(self) -> list[str]:
        return [h.annotation_key for _, chunk in self.upload_calls for h in chunk]

    async def test_connection(self) -> bool:
        return self.connection_ok

    async def resolve_or_create_parent(self, metadata: ParentMetadata) -> str:
        self.parent_calls.append(metadata.key)
        if metadata.key in self.parent_errors:
            raise self.parent_errors[metadata.key]
        if metadata.key not in self.parent_ids:
            self.parent_ids[metadata.key] = f"book-{next(self._ids)}"
        return self.parent_ids[metadata.key]

    async def bulk_create_highlights(
        self, highlights: list[HighlightPayload], parent: ParentMetadata
    ) -> list[CreatedHighlight]:
        self.upload_calls.append((parent.key, list(highlights)))
        if parent.key in self.failing_parents:
            raise self.failing_parents[parent.key]
        confirmed = highlights if self.confirm_limit is None else highlights[: self.confirm_limit]
        return [
            CreatedHighlight(id=f"hl-{next(self._ids)}", parent_id=parent.remote_id, text=h.text)
            for h in confirmed
        ]

    def reject(self, parent_key: str, message: str = "Highlight rejected") -> None:
        self.failing_parents[parent_key] = ValidationError(message, status_code=400)


def build_pipeline(
    remote: Any,
    *,
    failure_threshold: int = 5,
    reset_timeout: float = 60.0,
    max_retries: int = 0,
    concurrency: int = 3,
    batch_size: int = 50,
) -> UploadPipeline:
    return UploadPipeline(
        remote,
        SlidingWindowRateLimiter(max_requests=1000, window_seconds=1.0),
        CircuitBreaker(failure_threshold=failure_threshold, reset_timeout=reset_timeout),
        RetryManager(max_retries=max_retries, initial_delay=0.0, jitter=False, attempt_timeout=None),
        concurrency=concurrency,
        batch_size=batch_size,
    )


def build_orchestrator(
    source: FakeSource,
    remote: FakeRemote,
    state_store: JsonStateStore,
    *,
    pipeline: UploadPipeline | None = None,
    **kwargs: Any,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        source,
        remote,
        state_store,
        ReadwiseHighlightMapper(MapperOptions(include_deep_links=False)),
        pipeline or build_pipeline(remote),
        **kwargs,
    )


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "sync-state.json"


@pytest.fixture
def state_store(state_path: Path) -> JsonStateStore:
    return JsonStateStore(state_path, debounce_seconds=60.0)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def fixed_cursor() -> datetime:
    return datetime(2024, 1, 1, tzinfo=UTC)
