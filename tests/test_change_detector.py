"""Tests for change detection against the state store."""

from __future__ import annotations

import pytest

from highlight_sync.sync.change_detector import ChangeDetector, classify_item
from highlight_sync.sync.fingerprint import fingerprint_input_for
from highlight_sync.sync.models import ChangeType, ScanOptions, SyncAction, SyncDecision
from tests.conftest import FakeSource, make_annotation, make_item


def _decision(action: SyncAction) -> SyncDecision:
    return SyncDecision(
        needs_sync=action != SyncAction.SKIP, action=action, current_fingerprint="fp"
    )


class TestClassifyItem:
    def test_any_update_means_modified(self):
        decisions = {
            "a": _decision(SyncAction.CREATE),
            "b": _decision(SyncAction.UPDATE),
            "c": _decision(SyncAction.SKIP),
        }
        assert classify_item(decisions) == ChangeType.MODIFIED

    def test_create_without_update_means_new(self):
        decisions = {"a": _decision(SyncAction.CREATE), "b": _decision(SyncAction.SKIP)}
        assert classify_item(decisions) == ChangeType.NEW

    def test_all_skipped_means_unchanged(self):
        assert classify_item({"a": _decision(SyncAction.SKIP)}) == ChangeType.UNCHANGED
        assert classify_item({}) == ChangeType.UNCHANGED


def _commit(store, item):
    for annotation in item.annotations:
        fingerprint = store.compute_fingerprint(fingerprint_input_for(annotation, item.key))
        store.commit(annotation.key, f"hl-{annotation.key}", fingerprint)


class TestChangeDetector:
    @pytest.mark.asyncio
    async def test_buckets_items(self, state_store):
        unchanged = make_item("I1")
        modified = make_item("I2", [make_annotation("I2-A1", "old text")])
        new = make_item("I3")
        _commit(state_store, unchanged)
        _commit(state_store, modified)
        modified = make_item("I2", [make_annotation("I2-A1", "new text")])

        detector = ChangeDetector(FakeSource([unchanged, modified, new]), state_store)
        result = await detector.detect(ScanOptions())

        assert [c.key for c in result.new_items] == ["I3"]
        assert [c.key for c in result.modified_items] == ["I2"]
        assert [c.key for c in result.unchanged_items] == ["I1"]
        assert [c.key for c in result.changed_items] == ["I3", "I2"]
        assert result.scanned_annotations == 3

    @pytest.mark.asyncio
    async def test_pending_contains_only_annotations_needing_sync(self, state_store):
        synced = make_annotation("I1-A1", "kept")
        item = make_item("I1", [synced])
        _commit(state_store, item)
        item = make_item("I1", [synced, make_annotation("I1-A2", "added")])

        result = await ChangeDetector(FakeSource([item]), state_store).detect(ScanOptions())

        (change,) = result.new_items
        assert set(change.pending) == {"I1-A2"}

    @pytest.mark.asyncio
    async def test_items_without_annotations_are_excluded_by_default(self, state_store):
        empty = make_item("I1", [])
        detector = ChangeDetector(FakeSource([empty]), state_store)

        result = await detector.detect(ScanOptions())
        assert result.excluded_items == 1
        assert result.unchanged_items == []

        result = await detector.detect(ScanOptions(), include_items_without_annotations=True)
        assert [c.key for c in result.unchanged_items] == ["I1"]

    @pytest.mark.asyncio
    async def test_scan_options_passed_through(self, state_store, fixed_cursor):
        source = FakeSource([])
        scan = ScanOptions(modified_after=fixed_cursor, collections=("C1",), tags=("t",))

        await ChangeDetector(source, state_store).detect(scan)

        assert source.calls == [scan]

    @pytest.mark.asyncio
    async def test_deletion_detection_forces_full_scan(self, state_store, fixed_cursor):
        kept = make_item("I1")
        _commit(state_store, kept)
        state_store.commit("GONE-A1", "hl-gone", "fp")
        source = FakeSource([kept])

        result = await ChangeDetector(source, state_store).detect(
            ScanOptions(modified_after=fixed_cursor), detect_deleted=True
        )

        assert source.calls[0].modified_after is None
        assert result.deleted_keys == ["GONE-A1"]

    @pytest.mark.asyncio
    async def test_filtered_deletion_scan_checks_the_whole_library(self, state_store):
        inside = make_item("I1", collections=["C1"])
        outside = make_item("I2", collections=["C2"])
        _commit(state_store, inside)
        _commit(state_store, outside)
        state_store.commit("GONE-A1", "hl-gone", "fp")
        source = FakeSource([inside, outside])

        result = await ChangeDetector(source, state_store).detect(
            ScanOptions(collections=("C1",)), detect_deleted=True
        )

        assert result.deleted_keys == ["GONE-A1"]
        assert [c.key for c in result.unchanged_items] == ["I1"]
        assert source.calls[1] == ScanOptions()
