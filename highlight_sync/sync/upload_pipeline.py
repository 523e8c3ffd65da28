"""Drive upload batches to the remote service with bounded concurrency.

Every remote request takes the same path:
``rate_limiter.wait_for_slot()`` then ``circuit_breaker.execute(retry)`` where
the retry manager wraps the actual client call. A batch is sent in chunks of
``batch_size`` highlights; ids returned by the remote are matched to the
submitted highlights by position and only matched highlights count as
confirmed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

from highlight_sync.core.chunking import chunked
from highlight_sync.domain.exceptions import ErrorType, UnknownRemoteError
from highlight_sync.sync.models import BatchStatus
from highlight_sync.utils.circuit_breaker import CircuitBreakerOpenError
from highlight_sync.utils.retry_utils import classify_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from highlight_sync.sync.models import SyncBatch
    from highlight_sync.sync.protocols import RemoteHighlightClient
    from highlight_sync.utils.circuit_breaker import CircuitBreaker
    from highlight_sync.utils.rate_limiter import SlidingWindowRateLimiter
    from highlight_sync.utils.retry_utils import RetryManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONCURRENCY = 3
DEFAULT_BATCH_SIZE = 50


@dataclass
class UploadResult:
    batches: list[SyncBatch] = field(default_factory=list)
    dispatched: int = 0
    highlights_uploaded: int = 0
    circuit_open: bool = False
    aborted: bool = False
    stopped_on_error: bool = False

    @property
    def succeeded(self) -> list[SyncBatch]:
        return [b for b in self.batches if b.status == BatchStatus.SUCCESS]

    @property
    def failed(self) -> list[SyncBatch]:
        return [b for b in self.batches if b.status == BatchStatus.FAILED]

    @property
    def not_dispatched(self) -> list[SyncBatch]:
        return [b for b in self.batches if b.status == BatchStatus.PENDING]


class UploadPipeline:
    def __init__(
        self,
        remote: RemoteHighlightClient,
        rate_limiter: SlidingWindowRateLimiter,
        circuit_breaker: CircuitBreaker,
        retry_manager: RetryManager,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_size: int = DEFAULT_BATCH_SIZE,
        delay_between_batches: float = 0.0,
    ) -> None:
        if concurrency < 1:
            msg = "concurrency must be at least 1"
            raise ValueError(msg)
        if batch_size < 1:
            msg = "batch_size must be at least 1"
            raise ValueError(msg)
        self.remote = remote
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.retry_manager = retry_manager
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches

    async def guarded_call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "remote_call",
        correlation_id: str | None = None,
    ) -> T:
        """Run one remote request through rate limiter, breaker and retries."""
        await self.rate_limiter.wait_for_slot()
        return await self.circuit_breaker.execute(
            partial(
                self.retry_manager.execute,
                operation,
                operation_name=operation_name,
                correlation_id=correlation_id,
            )
        )

    async def run(
        self,
        batches: list[SyncBatch],
        *,
        stop_on_error: bool = False,
        should_abort: Callable[[], bool] | None = None,
        on_batch_done: Callable[[SyncBatch], None] | None = None,
        correlation_id: str | None = None,
    ) -> UploadResult:
        """Upload ``batches``; in-flight batches always run to completion."""
        result = UploadResult(batches=list(batches))
        semaphore = asyncio.Semaphore(self.concurrency)
        tasks: list[asyncio.Task[None]] = []
        halt = False
        start = time.perf_counter()
        opened_before = self.circuit_breaker.opened_count

        def _tripped() -> bool:
            return self.circuit_breaker.opened_count > opened_before

        def _halted() -> bool:
            nonlocal halt
            if halt:
                return True
            if should_abort is not None and should_abort():
                result.aborted = True
                halt = True
            elif result.circuit_open or _tripped():
                result.circuit_open = True
                halt = True
            elif stop_on_error and result.failed:
                result.stopped_on_error = True
                halt = True
            return halt

        async def _worker(batch: SyncBatch) -> None:
            try:
                await self._process_batch(batch, result, correlation_id)
            finally:
                semaphore.release()
            if on_batch_done is not None:
                on_batch_done(batch)

        for index, batch in enumerate(result.batches):
            if _halted():
                break
            await semaphore.acquire()
            if _halted():
                semaphore.release()
                break
            if index > 0 and self.delay_between_batches > 0:
                await asyncio.sleep(self.delay_between_batches)
            result.dispatched += 1
            tasks.append(asyncio.create_task(_worker(batch)))

        if tasks:
            await asyncio.gather(*tasks)

        if _tripped():
            result.circuit_open = True

        logger.info(
            "upload_pipeline_completed",
            extra={
                "correlation_id": correlation_id,
                "batches": len(result.batches),
                "dispatched": result.dispatched,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "highlights_uploaded": result.highlights_uploaded,
                "circuit_open": result.circuit_open,
                "aborted": result.aborted,
                "stopped_on_error": result.stopped_on_error,
                "duration_seconds": round(time.perf_counter() - start, 3),
            },
        )
        return result

    async def _process_batch(
        self, batch: SyncBatch, result: UploadResult, correlation_id: str | None
    ) -> None:
        batch.mark_uploading()
        parent = batch.parent_metadata.model_copy(update={"remote_id": batch.remote_parent_id})
        pairs = list(zip(batch.highlights, batch.annotation_meta, strict=True))
        chunks = chunked(pairs, self.batch_size)

        for chunk_index, chunk in enumerate(chunks):
            payloads = [highlight for highlight, _ in chunk]
            try:
                created = await self.guarded_call(
                    partial(self.remote.bulk_create_highlights, payloads, parent),
                    operation_name="bulk_create_highlights",
                    correlation_id=correlation_id,
                )
            except CircuitBreakerOpenError as exc:
                result.circuit_open = True
                self._fail(batch, str(exc), ErrorType.UNKNOWN, chunk_index, correlation_id)
                return
            except Exception as exc:
                self._fail(batch, str(exc), classify_error(exc), chunk_index, correlation_id)
                return

            confirmed = 0
            for (_, meta), created_highlight in zip(chunk, created, strict=False):
                if created_highlight.id:
                    meta.remote_highlight_id = created_highlight.id
                    confirmed += 1
            result.highlights_uploaded += confirmed

            if confirmed < len(chunk):
                error = UnknownRemoteError(
                    f"Remote confirmed {confirmed} of {len(chunk)} highlights",
                    details={"parent_key": batch.parent_key, "chunk": chunk_index},
                )
                self._fail(batch, error.message, error.error_type, chunk_index, correlation_id)
                return

        batch.mark_success()
        logger.debug(
            "upload_batch_succeeded",
            extra={
                "correlation_id": correlation_id,
                "parent_key": batch.parent_key,
                "highlights": len(batch.highlights),
                "chunks": len(chunks),
            },
        )

    @staticmethod
    def _fail(
        batch: SyncBatch,
        error: str,
        error_type: ErrorType,
        chunk_index: int,
        correlation_id: str | None,
    ) -> None:
        batch.mark_failed(error, error_type)
        logger.warning(
            "upload_batch_failed",
            extra={
                "correlation_id": correlation_id,
                "parent_key": batch.parent_key,
                "chunk": chunk_index,
                "confirmed": len(batch.confirmed_meta()),
                "highlights": len(batch.highlights),
                "error_type": error_type.value,
                "error": error,
            },
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "batch_size": self.batch_size,
            "rate_limiter": self.rate_limiter.get_stats(),
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "retry": self.retry_manager.get_stats(),
        }
