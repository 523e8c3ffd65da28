"""Tests for the JSON sync state store."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import pytest

from highlight_sync.domain.exceptions import StateStoreError
from highlight_sync.sync import state_store as state_store_module
from highlight_sync.sync.models import CommitRecord, FingerprintInput, SyncAction
from highlight_sync.sync.state_store import JsonStateStore


def _input(key: str = "ANN1", text: str = "hello") -> FingerprintInput:
    return FingerprintInput(annotation_key=key, text=text, parent_item_key="ITEM1")


class TestDecisions:
    def test_unknown_key_needs_create(self, state_store):
        decision = state_store.needs_sync(_input())
        assert decision.needs_sync
        assert decision.action == SyncAction.CREATE
        assert decision.previous_fingerprint is None

    def test_committed_unchanged_key_is_skipped(self, state_store):
        fingerprint = state_store.compute_fingerprint(_input())
        state_store.commit("ANN1", "hl-1", fingerprint)

        decision = state_store.needs_sync(_input())
        assert not decision.needs_sync
        assert decision.action == SyncAction.SKIP
        assert decision.remote_id == "hl-1"

    def test_edited_text_needs_update(self, state_store):
        state_store.commit("ANN1", "hl-1", state_store.compute_fingerprint(_input()))

        decision = state_store.needs_sync(_input(text="hello, edited"))
        assert decision.needs_sync
        assert decision.action == SyncAction.UPDATE
        assert decision.previous_fingerprint == state_store.compute_fingerprint(_input())
        assert decision.remote_id == "hl-1"

    def test_commit_is_an_upsert(self, state_store):
        state_store.commit("ANN1", "hl-1", "fp-1")
        state_store.commit("ANN1", 99, "fp-2")

        record = state_store.get_record("ANN1")
        assert record is not None
        assert record.fingerprint == "fp-2"
        assert record.remote_highlight_id == "99"
        assert state_store.synced_keys() == {"ANN1"}


class TestPersistence:
    def test_flush_writes_documented_layout(self, state_store, state_path):
        state_store.commit_batch(
            [
                CommitRecord("ANN1", "hl-1", "fp-1"),
                CommitRecord("ANN2", "hl-2", "fp-2"),
            ]
        )
        state_store.set_library_cursor("1", datetime(2024, 3, 1, 12, 0, tzinfo=UTC))
        assert state_store.is_dirty

        assert state_store.flush() is True
        assert not state_store.is_dirty

        data = json.loads(state_path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["annotations"]["ANN1"]["remoteHighlightId"] == "hl-1"
        assert data["annotations"]["ANN2"]["fingerprint"] == "fp-2"
        assert "lastSyncedAt" in data["annotations"]["ANN1"]
        assert data["lastLibrarySyncAt"] == {"1": "2024-03-01T12:00:00Z"}
        assert "createdAt" in data
        assert "lastModified" in data

    def test_state_survives_reload(self, state_store, state_path):
        state_store.commit("ANN1", "hl-1", "fp-1")
        state_store.set_library_cursor("7", "2024-01-01T00:00:00Z")
        state_store.flush()

        reloaded = JsonStateStore(state_path)
        assert reloaded.get_record("ANN1").remote_highlight_id == "hl-1"
        assert reloaded.get_library_cursor("7") == datetime(2024, 1, 1, tzinfo=UTC)
        assert reloaded.get_library_cursor("1") is None

    def test_no_temp_files_left_behind(self, state_store, state_path):
        state_store.commit("ANN1", "hl-1", "fp-1")
        state_store.flush()

        leftovers = [p.name for p in state_path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_flush_without_changes_is_a_noop(self, state_store, state_path):
        assert state_store.flush() is True
        assert not state_path.exists()

    def test_corrupt_file_is_quarantined(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json", encoding="utf-8")

        store = JsonStateStore(state_path)

        assert store.synced_keys() == set()
        assert not state_path.exists()
        quarantined = state_path.with_name(state_path.name + ".corrupt")
        assert quarantined.read_text(encoding="utf-8") == "{not json"

    def test_failed_flush_keeps_state_dirty(self, state_store, state_path, monkeypatch):
        def _broken_write(path, payload):
            raise OSError("disk full")

        monkeypatch.setattr(state_store_module, "_write_atomically", _broken_write)
        state_store.commit("ANN1", "hl-1", "fp-1")

        assert state_store.flush() is False
        assert state_store.is_dirty
        assert state_store.get_stats()["flush_failures"] == 1
        assert state_store.get_record("ANN1") is not None

        monkeypatch.undo()
        assert state_store.flush() is True
        assert json.loads(state_path.read_text(encoding="utf-8"))["annotations"]["ANN1"]

    def test_directory_path_is_rejected(self, tmp_path):
        with pytest.raises(StateStoreError):
            JsonStateStore(tmp_path)

    def test_clear_resets_and_persists(self, state_store, state_path):
        state_store.commit("ANN1", "hl-1", "fp-1")
        state_store.flush()

        assert state_store.clear() is True
        data = json.loads(state_path.read_text(encoding="utf-8"))
        assert data["annotations"] == {}


class TestRecordsAndCursors:
    def test_remove_records(self, state_store):
        state_store.commit_batch([CommitRecord("A", "1", "f"), CommitRecord("B", "2", "f")])
        assert state_store.remove_records(["A", "missing"]) == 1
        assert state_store.synced_keys() == {"B"}

    def test_invalid_cursor_rejected(self, state_store):
        with pytest.raises(ValueError):
            state_store.set_library_cursor("1", "not-a-date")

    def test_stats(self, state_store):
        state_store.commit("A", "1", "f")
        stats = state_store.get_stats()
        assert stats["records"] == 1
        assert stats["dirty"] is True
        assert stats["newest_sync"] is not None


class TestDebouncedFlush:
    @pytest.mark.asyncio
    async def test_timer_flushes_after_debounce(self, state_path):
        store = JsonStateStore(state_path, debounce_seconds=0.05)
        store.commit("ANN1", "hl-1", "fp-1")
        assert not state_path.exists()

        await asyncio.sleep(0.2)

        assert state_path.exists()
        assert not store.is_dirty
