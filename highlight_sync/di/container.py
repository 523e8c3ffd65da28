"""Wire the sync engine from an ``AppConfig``.

Every collaborator can be passed in explicitly; anything omitted is built from
configuration. No module-level singletons are kept.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from highlight_sync.adapters.readwise.book_cache import BookCache
from highlight_sync.adapters.readwise.client import ReadwiseClient
from highlight_sync.adapters.readwise.mapper import ReadwiseHighlightMapper
from highlight_sync.config import AppConfig, load_config
from highlight_sync.core.logging_utils import setup_json_logging
from highlight_sync.sync.orchestrator import SyncOrchestrator
from highlight_sync.sync.state_store import JsonStateStore
from highlight_sync.sync.upload_pipeline import UploadPipeline
from highlight_sync.utils.circuit_breaker import CircuitBreaker
from highlight_sync.utils.rate_limiter import SlidingWindowRateLimiter
from highlight_sync.utils.retry_utils import RetryManager

if TYPE_CHECKING:
    from highlight_sync.sync.protocols import (
        FieldMapper,
        RemoteHighlightClient,
        SourceScanProvider,
        SyncStateStore,
    )

logger = logging.getLogger(__name__)


def configure_logging(cfg: AppConfig) -> None:
    """Apply the runtime logging section of ``cfg``."""
    if not cfg.runtime.log_json:
        logging.basicConfig(
            level=getattr(logging, cfg.runtime.log_level.upper(), logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        return
    setup_json_logging(level=cfg.runtime.log_level, log_file=cfg.runtime.log_file)


def build_readwise_client(cfg: AppConfig | None = None) -> ReadwiseClient:
    """Create a ``ReadwiseClient``; enter it with ``async with`` before use."""
    cfg = cfg or load_config()
    book_cache = None
    if cfg.readwise.book_cache_enabled:
        book_cache = BookCache(
            max_size=cfg.readwise.book_cache_max_size,
            ttl_minutes=cfg.readwise.book_cache_ttl_minutes,
        )
    return ReadwiseClient(
        api_token=cfg.readwise.api_token,
        api_url=cfg.readwise.api_url,
        timeout=cfg.readwise.timeout_seconds,
        book_cache=book_cache,
    )


def build_upload_pipeline(cfg: AppConfig, remote: RemoteHighlightClient) -> UploadPipeline:
    rate_limiter = SlidingWindowRateLimiter(
        max_requests=cfg.rate_limit.max_requests,
        window_seconds=cfg.rate_limit.window_seconds,
    )
    circuit_breaker = CircuitBreaker(
        failure_threshold=cfg.circuit_breaker.failure_threshold,
        reset_timeout=cfg.circuit_breaker.reset_timeout_seconds,
        half_open_max_attempts=cfg.circuit_breaker.half_open_max_attempts,
        success_threshold=cfg.circuit_breaker.success_threshold,
    )
    retry_manager = RetryManager(
        max_retries=cfg.retry.max_retries,
        initial_delay=cfg.retry.initial_delay_seconds,
        max_delay=cfg.retry.max_delay_seconds,
        backoff_multiplier=cfg.retry.backoff_multiplier,
        jitter=cfg.retry.jitter,
        attempt_timeout=cfg.retry.attempt_timeout_seconds,
    )
    return UploadPipeline(
        remote,
        rate_limiter,
        circuit_breaker,
        retry_manager,
        concurrency=cfg.sync.concurrency,
        batch_size=cfg.sync.batch_size,
        delay_between_batches=cfg.sync.delay_between_batches_seconds,
    )


def build_orchestrator(
    cfg: AppConfig | None,
    source: SourceScanProvider,
    remote: RemoteHighlightClient,
    mapper: FieldMapper | None = None,
    *,
    state_store: SyncStateStore | None = None,
    upload_pipeline: UploadPipeline | None = None,
) -> SyncOrchestrator:
    """Construct a ``SyncOrchestrator`` with DI-friendly wiring.

    Args:
        cfg: Application configuration. If None, loads from environment.
        source: Scanner of the local reference library.
        remote: Remote highlight client (e.g. an entered ``ReadwiseClient``).
        mapper: Field mapper. If None, uses ``ReadwiseHighlightMapper``.
        state_store: Sync state store. If None, opens ``JsonStateStore`` at
            ``cfg.sync.state_path``.
        upload_pipeline: Upload pipeline. If None, creates one from the rate
            limit, retry and circuit breaker sections.

    Returns:
        Configured SyncOrchestrator instance.
    """
    cfg = cfg or load_config()

    if state_store is None:
        state_store = JsonStateStore(
            cfg.sync.state_path, debounce_seconds=cfg.sync.state_flush_debounce_seconds
        )
    if upload_pipeline is None:
        upload_pipeline = build_upload_pipeline(cfg, remote)

    orchestrator = SyncOrchestrator(
        source,
        remote,
        state_store,
        mapper or ReadwiseHighlightMapper(),
        upload_pipeline,
        library_id=cfg.sync.library_id,
        stop_on_error=cfg.sync.stop_on_error,
        detect_deleted=cfg.sync.detect_deleted,
        prune_deleted=cfg.sync.prune_deleted,
    )
    logger.debug(
        "sync_orchestrator_built",
        extra={
            "library_id": cfg.sync.library_id,
            "state_path": cfg.sync.state_path,
            "batch_size": cfg.sync.batch_size,
            "concurrency": cfg.sync.concurrency,
        },
    )
    return orchestrator
