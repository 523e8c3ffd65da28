"""Protocol definitions (ports) for the sync engine.

The engine depends only on these narrow contracts, never on a concrete source
library, mapper or HTTP client.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from datetime import datetime

    from highlight_sync.sync.models import (
        CommitRecord,
        CreatedHighlight,
        HighlightPayload,
        ItemWithAnnotations,
        MappedItem,
        ParentMetadata,
        ScanOptions,
        SyncDecision,
        SyncRecord,
    )


class SourceScanProvider(Protocol):
    async def get_items_with_annotations(
        self, options: ScanOptions
    ) -> list[ItemWithAnnotations]: ...


class FieldMapper(Protocol):
    def map_item(self, item: ItemWithAnnotations) -> MappedItem | None: ...


class RemoteHighlightClient(Protocol):
    async def resolve_or_create_parent(self, metadata: ParentMetadata) -> str: ...

    async def bulk_create_highlights(
        self, highlights: list[HighlightPayload], parent: ParentMetadata
    ) -> list[CreatedHighlight]: ...

    async def test_connection(self) -> bool: ...


class SyncStateStore(Protocol):
    def needs_sync(self, fingerprint_input: object) -> SyncDecision: ...

    def get_record(self, annotation_key: str) -> SyncRecord | None: ...

    def synced_keys(self) -> set[str]: ...

    def commit_batch(self, records: list[CommitRecord]) -> int: ...

    def remove_records(self, annotation_keys: list[str]) -> int: ...

    def get_library_cursor(self, library_id: str) -> datetime | None: ...

    def set_library_cursor(self, library_id: str, timestamp: datetime) -> None: ...

    def flush(self) -> bool: ...
