"""Synchronization engine: detection, grouping, upload and state commit."""

from highlight_sync.sync.batch_grouper import BatchGrouper, GroupingResult
from highlight_sync.sync.change_detector import ChangeDetector
from highlight_sync.sync.fingerprint import compute_fingerprint, fingerprint_input_for
from highlight_sync.sync.orchestrator import SyncOrchestrator
from highlight_sync.sync.state_store import JsonStateStore
from highlight_sync.sync.upload_pipeline import UploadPipeline, UploadResult

__all__ = [
    "BatchGrouper",
    "ChangeDetector",
    "GroupingResult",
    "JsonStateStore",
    "SyncOrchestrator",
    "UploadPipeline",
    "UploadResult",
    "compute_fingerprint",
    "fingerprint_input_for",
]
