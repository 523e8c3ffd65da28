"""Tests for wiring the engine from configuration."""

from __future__ import annotations

import pytest

from highlight_sync.adapters.readwise.mapper import ReadwiseHighlightMapper
from highlight_sync.config import load_config
from highlight_sync.di.container import build_orchestrator, build_readwise_client
from highlight_sync.sync.state_store import JsonStateStore
from tests.conftest import FakeRemote, FakeSource, make_item


@pytest.fixture
def cfg(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return load_config(
        readwise={"api_token": "token-1"},
        sync={"state_path": str(tmp_path / "state.json"), "batch_size": 7, "concurrency": 2},
        circuit_breaker={"failure_threshold": 4},
    )


def test_orchestrator_is_wired_from_config(cfg):
    remote = FakeRemote()
    orchestrator = build_orchestrator(cfg, FakeSource(), remote)

    assert isinstance(orchestrator.state_store, JsonStateStore)
    assert isinstance(orchestrator.mapper, ReadwiseHighlightMapper)
    assert orchestrator.upload_pipeline.batch_size == 7
    assert orchestrator.upload_pipeline.concurrency == 2
    assert orchestrator.upload_pipeline.circuit_breaker.failure_threshold == 4
    assert orchestrator.upload_pipeline.remote is remote


@pytest.mark.asyncio
async def test_wired_orchestrator_runs(cfg, tmp_path):
    remote = FakeRemote()
    orchestrator = build_orchestrator(cfg, FakeSource([make_item("I1")]), remote)

    stats = await orchestrator.sync()

    assert stats.items_success == 1
    assert (tmp_path / "state.json").exists()


def test_readwise_client_uses_book_cache(cfg):
    client = build_readwise_client(cfg)
    assert client.api_token == "token-1"
    assert client.book_cache is not None
    assert client.get_cache_stats()["size"] == 0
