"""Classify scanned items as new, modified or unchanged against the state store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from highlight_sync.sync.fingerprint import fingerprint_input_for
from highlight_sync.sync.models import (
    ChangeDetectionResult,
    ChangeType,
    ItemChange,
    ScanOptions,
    SyncAction,
)

if TYPE_CHECKING:
    from highlight_sync.sync.models import ItemWithAnnotations, SyncDecision
    from highlight_sync.sync.protocols import SourceScanProvider, SyncStateStore

logger = logging.getLogger(__name__)


def classify_item(decisions: dict[str, SyncDecision]) -> ChangeType:
    """Any update makes the item modified; otherwise any create makes it new."""
    actions = {decision.action for decision in decisions.values()}
    if SyncAction.UPDATE in actions:
        return ChangeType.MODIFIED
    if SyncAction.CREATE in actions:
        return ChangeType.NEW
    return ChangeType.UNCHANGED


class ChangeDetector:
    def __init__(self, source: SourceScanProvider, state_store: SyncStateStore) -> None:
        self.source = source
        self.state_store = state_store

    async def detect(
        self,
        scan: ScanOptions,
        *,
        include_items_without_annotations: bool = False,
        detect_deleted: bool = False,
        correlation_id: str | None = None,
    ) -> ChangeDetectionResult:
        """Scan the source and bucket every item.

        Deletion detection compares every previously synced key against the
        keys present in the library, so it needs an unbounded scan: the cursor
        in ``scan`` is dropped when ``detect_deleted`` is set. A scan limited
        to collections or tags does not see the whole library, so the present
        keys then come from a second, unfiltered scan.
        """
        if detect_deleted and scan.modified_after is not None:
            logger.info(
                "change_detection_full_scan_forced",
                extra={
                    "correlation_id": correlation_id,
                    "cursor": scan.modified_after.isoformat(),
                },
            )
            scan = scan.model_copy(update={"modified_after": None})

        items = await self.source.get_items_with_annotations(scan)
        result = ChangeDetectionResult()
        seen_keys: set[str] = set()

        for item in items:
            for annotation in item.annotations:
                seen_keys.add(annotation.key)

            if not item.annotations and not include_items_without_annotations:
                result.excluded_items += 1
                continue

            change = self._detect_item(item)
            result.scanned_annotations += len(item.annotations)
            if change.change_type == ChangeType.NEW:
                result.new_items.append(change)
            elif change.change_type == ChangeType.MODIFIED:
                result.modified_items.append(change)
            else:
                result.unchanged_items.append(change)

        if detect_deleted:
            if scan.is_filtered:
                seen_keys = await self._library_keys(correlation_id)
            result.deleted_keys = sorted(self.state_store.synced_keys() - seen_keys)

        logger.info(
            "change_detection_completed",
            extra={
                "correlation_id": correlation_id,
                "items_scanned": len(items),
                "annotations_scanned": result.scanned_annotations,
                "new": len(result.new_items),
                "modified": len(result.modified_items),
                "unchanged": len(result.unchanged_items),
                "deleted": len(result.deleted_keys),
                "excluded": result.excluded_items,
                "incremental": scan.modified_after is not None,
            },
        )
        return result

    async def _library_keys(self, correlation_id: str | None) -> set[str]:
        items = await self.source.get_items_with_annotations(ScanOptions())
        logger.debug(
            "change_detection_library_scan",
            extra={"correlation_id": correlation_id, "items_scanned": len(items)},
        )
        return {annotation.key for item in items for annotation in item.annotations}

    def _detect_item(self, item: ItemWithAnnotations) -> ItemChange:
        decisions = {
            annotation.key: self.state_store.needs_sync(fingerprint_input_for(annotation, item.key))
            for annotation in item.annotations
        }
        return ItemChange(item=item, change_type=classify_item(decisions), decisions=decisions)
