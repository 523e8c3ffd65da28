"""Tests for the bounded-concurrency upload pipeline."""

from __future__ import annotations

import asyncio

import pytest

from highlight_sync.core.chunking import chunked
from highlight_sync.domain.exceptions import ErrorType, ServerError
from highlight_sync.sync.models import (
    AnnotationMeta,
    BatchStatus,
    HighlightPayload,
    ParentMetadata,
    SyncAction,
    SyncBatch,
)
from tests.conftest import FakeRemote, build_pipeline


def _batch(parent_key: str, size: int) -> SyncBatch:
    batch = SyncBatch(
        parent_key=parent_key,
        parent_metadata=ParentMetadata(key=parent_key, title=f"Book {parent_key}"),
        item_keys=[parent_key],
        remote_parent_id=f"book-{parent_key}",
    )
    for index in range(size):
        key = f"{parent_key}-A{index}"
        batch.highlights.append(HighlightPayload(annotation_key=key, text=f"text {index}"))
        batch.annotation_meta.append(
            AnnotationMeta(annotation_key=key, fingerprint=f"fp-{key}", action=SyncAction.CREATE)
        )
    return batch


def test_chunked_237_by_50():
    assert [len(c) for c in chunked(list(range(237)), 50)] == [50, 50, 50, 50, 37]


def test_chunked_rejects_non_positive_size():
    with pytest.raises(ValueError):
        chunked([1, 2], 0)


class TestUploadPipeline:
    @pytest.mark.asyncio
    async def test_large_batch_is_sent_in_chunks(self):
        remote = FakeRemote()
        pipeline = build_pipeline(remote, batch_size=50)
        batch = _batch("P1", 237)

        result = await pipeline.run([batch])

        assert [len(chunk) for _, chunk in remote.upload_calls] == [50, 50, 50, 50, 37]
        assert batch.status == BatchStatus.SUCCESS
        assert result.highlights_uploaded == 237
        assert len(batch.commit_records()) == 237

    @pytest.mark.asyncio
    async def test_parent_remote_id_is_passed_to_client(self):
        seen = []
        remote = FakeRemote()
        original = remote.bulk_create_highlights

        async def _capture(highlights, parent):
            seen.append(parent.remote_id)
            return await original(highlights, parent)

        remote.bulk_create_highlights = _capture
        await build_pipeline(remote).run([_batch("P1", 1)])

        assert seen == ["book-P1"]

    @pytest.mark.asyncio
    async def test_partial_confirmation_fails_batch_but_keeps_confirmed(self):
        remote = FakeRemote()
        remote.confirm_limit = 2
        batch = _batch("P1", 3)

        result = await build_pipeline(remote).run([batch])

        assert batch.status == BatchStatus.FAILED
        assert batch.error_type == ErrorType.UNKNOWN
        assert [r.annotation_key for r in batch.commit_records()] == ["P1-A0", "P1-A1"]
        assert result.highlights_uploaded == 2

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_others(self):
        remote = FakeRemote()
        remote.reject("P2")
        batches = [_batch("P1", 1), _batch("P2", 1), _batch("P3", 1)]

        result = await build_pipeline(remote).run(batches)

        assert [b.parent_key for b in result.succeeded] == ["P1", "P3"]
        assert [b.parent_key for b in result.failed] == ["P2"]
        assert result.failed[0].error_type == ErrorType.VALIDATION

    @pytest.mark.asyncio
    async def test_stop_on_error_halts_dispatch(self):
        remote = FakeRemote()
        remote.reject("P1")
        batches = [_batch("P1", 1), _batch("P2", 1), _batch("P3", 1)]

        result = await build_pipeline(remote, concurrency=1).run(batches, stop_on_error=True)

        assert result.stopped_on_error
        assert result.dispatched == 1
        assert [b.parent_key for b in result.not_dispatched] == ["P2", "P3"]

    @pytest.mark.asyncio
    async def test_circuit_trip_stops_remaining_batches(self):
        remote = FakeRemote()
        for key in ("P1", "P2", "P3", "P4"):
            remote.failing_parents[key] = ServerError("boom", status_code=503)
        batches = [_batch(key, 1) for key in ("P1", "P2", "P3", "P4")]

        result = await build_pipeline(remote, failure_threshold=2, concurrency=1).run(batches)

        assert result.circuit_open
        assert result.dispatched == 2
        assert len(result.not_dispatched) == 2

    @pytest.mark.asyncio
    async def test_abort_stops_dispatch_but_finishes_in_flight(self):
        remote = FakeRemote()
        aborted = False
        done = []

        def _on_done(batch):
            nonlocal aborted
            done.append(batch.parent_key)
            aborted = True

        result = await build_pipeline(remote, concurrency=1).run(
            [_batch("P1", 1), _batch("P2", 1)],
            should_abort=lambda: aborted,
            on_batch_done=_on_done,
        )

        assert result.aborted
        assert done == ["P1"]
        assert result.batches[0].status == BatchStatus.SUCCESS
        assert result.batches[1].status == BatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = 0
        peak = 0
        remote = FakeRemote()
        original = remote.bulk_create_highlights

        async def _slow(highlights, parent):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return await original(highlights, parent)

        remote.bulk_create_highlights = _slow
        batches = [_batch(f"P{i}", 1) for i in range(8)]

        result = await build_pipeline(remote, concurrency=3).run(batches)

        assert len(result.succeeded) == 8
        assert peak == 3
