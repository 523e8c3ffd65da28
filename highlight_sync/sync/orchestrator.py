"""Sync orchestrator: Detect -> Group -> Upload -> Commit -> Report.

The orchestrator is the only entry point callers use. It runs one sync at a
time, reports progress through ``SyncOptions.on_progress`` at phase
boundaries and after every batch, and commits only highlights the remote
service confirmed. The library cursor moves forward only after a clean run
that scanned the whole library without collection or tag filters.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from highlight_sync.core.logging_utils import generate_correlation_id
from highlight_sync.core.time_utils import to_iso, utc_now
from highlight_sync.domain.exceptions import (
    CircuitOpenSyncError,
    ErrorType,
    RemoteServiceError,
    StateStoreError,
    SyncInProgressError,
)
from highlight_sync.sync.batch_grouper import BatchGrouper, GroupingResult
from highlight_sync.sync.change_detector import ChangeDetector
from highlight_sync.sync.models import (
    BatchStatus,
    ChangeDetectionResult,
    ScanOptions,
    SyncOptions,
    SyncPhase,
    SyncProgress,
    SyncStatistics,
    SyncStatus,
)
from highlight_sync.utils.retry_utils import classify_error

if TYPE_CHECKING:
    from datetime import datetime

    from highlight_sync.sync.models import SyncBatch
    from highlight_sync.sync.protocols import (
        FieldMapper,
        RemoteHighlightClient,
        SourceScanProvider,
        SyncStateStore,
    )
    from highlight_sync.sync.upload_pipeline import UploadPipeline, UploadResult

logger = logging.getLogger(__name__)


class _RunAborted(Exception):
    """Internal signal: the abort flag was seen at a phase boundary."""


class _PreflightFailed(Exception):
    """Internal signal: the remote connection test failed."""


class SyncOrchestrator:
    def __init__(
        self,
        source: SourceScanProvider,
        remote: RemoteHighlightClient,
        state_store: SyncStateStore,
        mapper: FieldMapper,
        upload_pipeline: UploadPipeline,
        *,
        library_id: str = "1",
        stop_on_error: bool = False,
        detect_deleted: bool = False,
        prune_deleted: bool = False,
    ) -> None:
        self.source = source
        self.remote = remote
        self.state_store = state_store
        self.mapper = mapper
        self.upload_pipeline = upload_pipeline
        self.library_id = library_id
        self.stop_on_error = stop_on_error
        self.detect_deleted = detect_deleted
        self.prune_deleted = prune_deleted

        self._lock = threading.Lock()
        self._running = False
        self._abort_requested = False
        self._phase = SyncPhase.IDLE
        self._progress: SyncProgress | None = None
        self._statistics: SyncStatistics | None = None
        self._last_run: SyncStatistics | None = None
        self._correlation_id: str | None = None
        self._options = SyncOptions()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def abort(self) -> bool:
        """Ask the active run to stop before its next phase or batch.

        Returns:
            True if a run was active and will stop, False if nothing was running
        """
        with self._lock:
            if not self._running:
                return False
            self._abort_requested = True
            correlation_id = self._correlation_id
        logger.info("sync_abort_requested", extra={"correlation_id": correlation_id})
        return True

    def get_status(self) -> SyncStatus:
        with self._lock:
            return SyncStatus(
                phase=self._phase,
                is_running=self._running,
                correlation_id=self._correlation_id,
                progress=self._progress,
                statistics=self._statistics.model_copy(deep=True) if self._statistics else None,
                last_run=self._last_run.model_copy(deep=True) if self._last_run else None,
            )

    async def sync(self, options: SyncOptions | None = None) -> SyncStatistics:
        """Run one synchronization pass.

        Raises:
            SyncInProgressError: Another run is active on this orchestrator
            CircuitOpenSyncError: Too many consecutive remote failures; confirmed
                uploads were committed before raising
            StateStoreError: The local state cannot be used at all
        """
        options = options or SyncOptions()
        with self._lock:
            if self._running:
                msg = "A sync run is already in progress"
                raise SyncInProgressError(msg, {"correlation_id": self._correlation_id})
            self._running = True
            self._abort_requested = False
            self._correlation_id = generate_correlation_id()
            self._options = options
            correlation_id = self._correlation_id
            library_id = options.library_id or self.library_id
            run_started = utc_now()
            stats = SyncStatistics(
                correlation_id=correlation_id,
                library_id=library_id,
                started_at=run_started,
                dry_run=options.dry_run,
            )
            self._statistics = stats
            self._progress = None

        logger.info(
            "sync_started",
            extra={
                "correlation_id": correlation_id,
                "library_id": library_id,
                "full_sync": options.full_sync,
                "dry_run": options.dry_run,
            },
        )

        terminal = SyncPhase.FINALIZING
        try:
            await self._run(options, stats, library_id, run_started, correlation_id)
        except _RunAborted:
            terminal = SyncPhase.ABORTED
        except _PreflightFailed:
            terminal = SyncPhase.ERROR
        except (CircuitOpenSyncError, StateStoreError) as exc:
            terminal = SyncPhase.ERROR
            logger.error(
                "sync_failed",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(exc).__name__,
                    "error": exc.message,
                },
            )
            raise
        except Exception as exc:
            terminal = SyncPhase.ERROR
            error_type = classify_error(exc)
            with self._lock:
                stats.record_error("run", str(exc), error_type)
            logger.exception(
                "sync_run_error",
                extra={"correlation_id": correlation_id, "error_type": error_type.value},
            )
        finally:
            with self._lock:
                if self._abort_requested and terminal != SyncPhase.ERROR:
                    terminal = SyncPhase.ABORTED
                if terminal == SyncPhase.ABORTED:
                    stats.aborted = True
                stats.finalize(utc_now())
                self._last_run = stats
            self._set_phase(terminal, self._terminal_message(terminal))
            self._finish_run(stats)

        return stats

    # ------------------------------------------------------------------
    # Run phases
    # ------------------------------------------------------------------

    async def _run(
        self,
        options: SyncOptions,
        stats: SyncStatistics,
        library_id: str,
        run_started: datetime,
        correlation_id: str,
    ) -> None:
        detect_deleted = self.detect_deleted if options.detect_deleted is None else options.detect_deleted
        prune_deleted = self.prune_deleted if options.prune_deleted is None else options.prune_deleted
        stop_on_error = self.stop_on_error if options.stop_on_error is None else options.stop_on_error

        self._enter_phase(SyncPhase.DETECTING, "Looking for changed annotations")
        if options.test_connection:
            await self._check_connection(stats, correlation_id)

        detection = await self._detect(options, stats, library_id, detect_deleted, correlation_id)

        self._enter_phase(SyncPhase.GROUPING, "Preparing upload batches")
        grouper = BatchGrouper(self.mapper, self.remote, invoke=self.upload_pipeline.guarded_call)
        grouping = await grouper.group(
            detection.changed_items,
            correlation_id=correlation_id,
            resolve_parents=not options.dry_run,
        )
        self._record_grouping(stats, grouping)

        if options.dry_run:
            logger.info(
                "sync_dry_run_completed",
                extra={
                    "correlation_id": correlation_id,
                    "batches": len(grouping.batches),
                    "highlights": sum(len(b.highlights) for b in grouping.batches),
                },
            )
            return

        if grouping.circuit_open:
            with self._lock:
                stats.circuit_open = True
            msg = "Sync stopped due to too many consecutive failures"
            raise CircuitOpenSyncError(
                msg, statistics=stats, details={"phase": SyncPhase.GROUPING.value}
            )

        self._enter_phase(SyncPhase.UPLOADING, "Uploading highlights")
        ready = grouping.ready_batches
        with self._lock:
            self._progress = SyncProgress(
                phase=SyncPhase.UPLOADING,
                message="Uploading highlights",
                batches_total=len(ready),
                highlights_total=sum(len(b.highlights) for b in ready),
            )
        upload = await self.upload_pipeline.run(
            ready,
            stop_on_error=stop_on_error,
            should_abort=self._abort_is_requested,
            on_batch_done=self._on_batch_done,
            correlation_id=correlation_id,
        )

        # Commit confirmed work even when the run is being aborted
        self._set_phase(SyncPhase.COMMITTING, "Saving sync state")
        self._commit(
            stats,
            upload,
            detection,
            library_id=library_id,
            run_started=run_started,
            prune_deleted=detect_deleted and prune_deleted,
            whole_library=not (options.collections or options.tags),
            correlation_id=correlation_id,
        )

        if upload.circuit_open:
            with self._lock:
                stats.circuit_open = True
            msg = "Sync stopped due to too many consecutive failures"
            raise CircuitOpenSyncError(
                msg,
                statistics=stats,
                details={
                    "phase": SyncPhase.UPLOADING.value,
                    "not_dispatched": len(upload.not_dispatched),
                },
            )
        if upload.aborted or self._abort_is_requested():
            raise _RunAborted

    async def _check_connection(self, stats: SyncStatistics, correlation_id: str) -> None:
        try:
            ok = await self.remote.test_connection()
        except RemoteServiceError as exc:
            with self._lock:
                stats.record_error("connection", exc.message, exc.error_type)
            logger.error(
                "sync_connection_check_failed",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": exc.error_type.value,
                    "error": exc.message,
                },
            )
            raise _PreflightFailed from exc
        if not ok:
            with self._lock:
                stats.record_error("connection", "Remote connection test failed", ErrorType.AUTH_ERROR)
            logger.error("sync_connection_check_failed", extra={"correlation_id": correlation_id})
            raise _PreflightFailed

    async def _detect(
        self,
        options: SyncOptions,
        stats: SyncStatistics,
        library_id: str,
        detect_deleted: bool,
        correlation_id: str,
    ) -> ChangeDetectionResult:
        cursor = None if options.full_sync else self.state_store.get_library_cursor(library_id)
        scan = ScanOptions(
            modified_after=cursor,
            collections=tuple(options.collections) if options.collections else None,
            tags=tuple(options.tags) if options.tags else None,
        )
        detector = ChangeDetector(self.source, self.state_store)
        detection = await detector.detect(
            scan,
            include_items_without_annotations=options.include_items_without_annotations,
            detect_deleted=detect_deleted,
            correlation_id=correlation_id,
        )
        with self._lock:
            stats.items_new = len(detection.new_items)
            stats.items_modified = len(detection.modified_items)
            stats.items_unchanged = len(detection.unchanged_items)
            stats.items_deleted = len(detection.deleted_keys)
        return detection

    def _record_grouping(self, stats: SyncStatistics, grouping: GroupingResult) -> None:
        with self._lock:
            stats.items_skipped = len(grouping.skipped_items)
            stats.highlights_skipped = grouping.skipped_highlights
            stats.batches_total = len(grouping.batches)
            for batch in grouping.failed_batches:
                self._count_batch(stats, batch)

    def _commit(
        self,
        stats: SyncStatistics,
        upload: UploadResult,
        detection: ChangeDetectionResult,
        *,
        library_id: str,
        run_started: datetime,
        prune_deleted: bool,
        whole_library: bool,
        correlation_id: str,
    ) -> None:
        records = [record for batch in upload.batches for record in batch.commit_records()]
        committed = self.state_store.commit_batch(records)

        clean_run = (
            not upload.circuit_open
            and not upload.aborted
            and not self._abort_is_requested()
            and not upload.not_dispatched
            and stats.items_failed == 0
        )

        pruned = 0
        if prune_deleted and detection.deleted_keys and clean_run:
            pruned = self.state_store.remove_records(detection.deleted_keys)

        # A filtered run never saw the rest of the library
        advance_cursor = clean_run and whole_library
        if advance_cursor:
            self.state_store.set_library_cursor(library_id, run_started)

        flushed = self.state_store.flush()
        with self._lock:
            stats.records_committed = committed
            stats.records_pruned = pruned
            stats.cursor_advanced = advance_cursor
            stats.state_flushed = flushed

        logger.info(
            "sync_state_committed",
            extra={
                "correlation_id": correlation_id,
                "records": committed,
                "pruned": pruned,
                "cursor_advanced": advance_cursor,
                "cursor": to_iso(run_started) if advance_cursor else None,
                "flushed": flushed,
            },
        )

    # ------------------------------------------------------------------
    # Progress and bookkeeping
    # ------------------------------------------------------------------

    def _abort_is_requested(self) -> bool:
        with self._lock:
            return self._abort_requested

    def _enter_phase(self, phase: SyncPhase, message: str) -> None:
        if self._abort_is_requested():
            raise _RunAborted
        self._set_phase(phase, message)

    def _set_phase(self, phase: SyncPhase, message: str = "") -> None:
        with self._lock:
            self._phase = phase
            previous = self._progress
            self._progress = SyncProgress(
                phase=phase,
                message=message,
                batches_total=previous.batches_total if previous else 0,
                batches_done=previous.batches_done if previous else 0,
                highlights_total=previous.highlights_total if previous else 0,
                highlights_uploaded=previous.highlights_uploaded if previous else 0,
            )
            progress = self._progress
        self._emit(progress)

    def _emit(self, progress: SyncProgress) -> None:
        callback = self._options.on_progress
        if callback is None:
            return
        try:
            callback(progress)
        except Exception as exc:
            logger.warning(
                "sync_progress_callback_failed",
                extra={
                    "correlation_id": self._correlation_id,
                    "phase": progress.phase.value,
                    "error": str(exc),
                },
            )

    @staticmethod
    def _count_batch(stats: SyncStatistics, batch: SyncBatch) -> None:
        items = len(batch.item_keys)
        if batch.status == BatchStatus.SUCCESS:
            stats.items_success += items
            stats.batches_succeeded += 1
        elif batch.status == BatchStatus.FAILED:
            stats.items_failed += items
            stats.batches_failed += 1
            stats.record_error(
                batch.parent_key,
                batch.error or "Upload failed",
                batch.error_type or ErrorType.UNKNOWN,
            )

    def _on_batch_done(self, batch: SyncBatch) -> None:
        confirmed = len(batch.confirmed_meta())
        with self._lock:
            stats = self._statistics
            if stats is not None:
                self._count_batch(stats, batch)
                stats.highlights_uploaded += confirmed
            previous = self._progress
            self._progress = SyncProgress(
                phase=SyncPhase.UPLOADING,
                message=f"Uploaded batch {batch.parent_key}",
                batches_total=previous.batches_total if previous else 0,
                batches_done=(previous.batches_done if previous else 0) + 1,
                highlights_total=previous.highlights_total if previous else 0,
                highlights_uploaded=(previous.highlights_uploaded if previous else 0) + confirmed,
            )
            progress = self._progress
        self._emit(progress)

    @staticmethod
    def _terminal_message(phase: SyncPhase) -> str:
        if phase == SyncPhase.ABORTED:
            return "Sync aborted"
        if phase == SyncPhase.ERROR:
            return "Sync failed"
        return "Sync finished"

    def _finish_run(self, stats: SyncStatistics) -> None:
        logger.info(
            "sync_completed",
            extra={
                "correlation_id": stats.correlation_id,
                "library_id": stats.library_id,
                "items_new": stats.items_new,
                "items_modified": stats.items_modified,
                "items_unchanged": stats.items_unchanged,
                "items_deleted": stats.items_deleted,
                "items_success": stats.items_success,
                "items_failed": stats.items_failed,
                "items_skipped": stats.items_skipped,
                "highlights_uploaded": stats.highlights_uploaded,
                "success_rate": stats.success_rate,
                "aborted": stats.aborted,
                "circuit_open": stats.circuit_open,
                "duration_seconds": stats.duration_seconds,
            },
        )
        with self._lock:
            self._running = False
            self._abort_requested = False
            self._phase = SyncPhase.IDLE
