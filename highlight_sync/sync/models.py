"""Data model of the sync engine.

Pydantic models describe data crossing a boundary (source scan results,
mapped payloads, the persisted state file, run results). Dataclasses hold
run-scoped work items that the engine mutates while a run is in progress.
"""

from __future__ import annotations

from collections.abc import Callable  # noqa: TC003 - dataclass field annotation
from dataclasses import dataclass, field
from datetime import datetime  # noqa: TC003 - Pydantic needs this at runtime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from highlight_sync.domain.exceptions import ErrorType, InvalidBatchTransitionError

STATE_VERSION = 1


# --------------------------------------------------------------------------
# Source side
# --------------------------------------------------------------------------


class SourceAnnotation(BaseModel):
    """One annotation as delivered by the source scan provider."""

    key: str
    annotation_type: str = "highlight"
    text: str = ""
    comment: str = ""
    color: str = ""
    page_index: int | None = None
    page_label: str | None = None
    sort_index: str | None = None
    tags: list[str] = Field(default_factory=list)
    date_added: datetime | None = None
    date_modified: datetime | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("text", "comment", "color", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)


class SourceItem(BaseModel):
    """Parent document (the thing annotations belong to) in the source library."""

    key: str
    library_id: str = "1"
    item_type: str = "journalArticle"
    title: str = ""
    creators: list[str] = Field(default_factory=list)
    publication_title: str | None = None
    url: str | None = None
    doi: str | None = None
    date: str | None = None
    tags: list[str] = Field(default_factory=list)
    collections: list[str] = Field(default_factory=list)
    date_modified: datetime | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}


class ItemWithAnnotations(BaseModel):
    """A source item together with the annotations found on its attachments."""

    item: SourceItem
    annotations: list[SourceAnnotation] = Field(default_factory=list)
    attachment_key: str | None = None

    @property
    def key(self) -> str:
        return self.item.key


class ScanOptions(BaseModel):
    """Filter passed verbatim to the source scan provider."""

    model_config = ConfigDict(frozen=True)

    modified_after: datetime | None = None
    collections: tuple[str, ...] | None = None
    tags: tuple[str, ...] | None = None

    @property
    def is_filtered(self) -> bool:
        """True when the scan covers only part of the library."""
        return bool(self.collections or self.tags)


# --------------------------------------------------------------------------
# Fingerprints and persisted state
# --------------------------------------------------------------------------


class FingerprintInput(BaseModel):
    """The user-visible fields of one annotation that define its content."""

    model_config = ConfigDict(frozen=True)

    annotation_key: str
    text: str = ""
    comment: str = ""
    color: str = ""
    page_index: int | None = None
    parent_item_key: str = ""


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class SyncDecision(BaseModel):
    """Outcome of comparing a fresh fingerprint with the stored record."""

    model_config = ConfigDict(frozen=True)

    needs_sync: bool
    action: SyncAction
    current_fingerprint: str
    previous_fingerprint: str | None = None
    remote_id: str | None = None


class SyncRecord(BaseModel):
    """Durable proof that one annotation was confirmed by the remote service."""

    fingerprint: str
    remote_highlight_id: str = Field(alias="remoteHighlightId")
    last_synced_at: str = Field(alias="lastSyncedAt")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("remote_highlight_id", mode="before")
    @classmethod
    def _coerce_remote_id(cls, value: Any) -> str:
        return "" if value is None else str(value)


class PersistedState(BaseModel):
    """On-disk state document."""

    version: int = STATE_VERSION
    annotations: dict[str, SyncRecord] = Field(default_factory=dict)
    last_library_sync_at: dict[str, str] = Field(
        default_factory=dict, alias="lastLibrarySyncAt"
    )
    created_at: str = Field(alias="createdAt")
    last_modified: str = Field(alias="lastModified")

    model_config = {"populate_by_name": True, "extra": "ignore"}


@dataclass(frozen=True)
class CommitRecord:
    """One confirmed upload ready to be written to the state store."""

    annotation_key: str
    remote_highlight_id: str
    fingerprint: str


# --------------------------------------------------------------------------
# Mapping and remote payloads
# --------------------------------------------------------------------------


class ParentMetadata(BaseModel):
    """Identity of the remote parent document (a "book" on the remote side)."""

    model_config = ConfigDict(frozen=True)

    key: str
    title: str
    author: str | None = None
    category: str = "articles"
    source_url: str | None = None
    source_type: str = "highlight_sync"
    remote_id: str | None = None


class HighlightPayload(BaseModel):
    """A highlight ready to be sent to the remote service.

    ``annotation_key`` ties the payload back to its source annotation and is
    never sent over the wire.
    """

    annotation_key: str = Field(exclude=True)
    text: str
    note: str | None = None
    location: int | None = None
    location_type: str | None = None
    highlighted_at: str | None = None
    highlight_url: str | None = None
    color: str | None = None
    tags: list[str] = Field(default_factory=list)


class MappedItem(BaseModel):
    """Result of mapping one source item for upload."""

    parent_metadata: ParentMetadata
    highlights: list[HighlightPayload] = Field(default_factory=list)
    fingerprint_inputs: list[FingerprintInput] = Field(default_factory=list)


class CreatedHighlight(BaseModel):
    """Remote confirmation for one uploaded highlight."""

    id: str
    parent_id: str | None = None
    text: str | None = None

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("id", "parent_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


# --------------------------------------------------------------------------
# Run-scoped work items
# --------------------------------------------------------------------------


class ChangeType(str, Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass
class ItemChange:
    """Per-item detection outcome with one decision per annotation key."""

    item: ItemWithAnnotations
    change_type: ChangeType
    decisions: dict[str, SyncDecision] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.item.key

    @property
    def pending(self) -> dict[str, SyncDecision]:
        return {key: d for key, d in self.decisions.items() if d.needs_sync}


@dataclass
class ChangeDetectionResult:
    new_items: list[ItemChange] = field(default_factory=list)
    modified_items: list[ItemChange] = field(default_factory=list)
    unchanged_items: list[ItemChange] = field(default_factory=list)
    deleted_keys: list[str] = field(default_factory=list)
    excluded_items: int = 0
    scanned_annotations: int = 0

    @property
    def changed_items(self) -> list[ItemChange]:
        return [*self.new_items, *self.modified_items]


@dataclass
class AnnotationMeta:
    """Book-keeping for one highlight inside a batch."""

    annotation_key: str
    fingerprint: str
    action: SyncAction
    remote_highlight_id: str | None = None

    @property
    def confirmed(self) -> bool:
        return bool(self.remote_highlight_id)


class BatchStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.UPLOADING, BatchStatus.FAILED}),
    BatchStatus.UPLOADING: frozenset({BatchStatus.SUCCESS, BatchStatus.FAILED}),
    BatchStatus.SUCCESS: frozenset(),
    BatchStatus.FAILED: frozenset(),
}


@dataclass
class SyncBatch:
    """One remote parent document's worth of upload work."""

    parent_key: str
    parent_metadata: ParentMetadata
    highlights: list[HighlightPayload] = field(default_factory=list)
    annotation_meta: list[AnnotationMeta] = field(default_factory=list)
    item_keys: list[str] = field(default_factory=list)
    remote_parent_id: str | None = None
    status: BatchStatus = BatchStatus.PENDING
    error: str | None = None
    error_type: ErrorType | None = None

    def transition(self, new_status: BatchStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            msg = f"Batch {self.parent_key}: cannot move from {self.status.value} to {new_status.value}"
            raise InvalidBatchTransitionError(
                msg, {"from": self.status.value, "to": new_status.value}
            )
        self.status = new_status

    def mark_uploading(self) -> None:
        self.transition(BatchStatus.UPLOADING)

    def mark_success(self) -> None:
        self.transition(BatchStatus.SUCCESS)

    def mark_failed(self, error: str, error_type: ErrorType | None = None) -> None:
        self.transition(BatchStatus.FAILED)
        self.error = error
        self.error_type = error_type

    @property
    def is_finished(self) -> bool:
        return self.status in (BatchStatus.SUCCESS, BatchStatus.FAILED)

    def confirmed_meta(self) -> list[AnnotationMeta]:
        return [meta for meta in self.annotation_meta if meta.confirmed]

    def commit_records(self) -> list[CommitRecord]:
        return [
            CommitRecord(
                annotation_key=meta.annotation_key,
                remote_highlight_id=meta.remote_highlight_id or "",
                fingerprint=meta.fingerprint,
            )
            for meta in self.confirmed_meta()
        ]


# --------------------------------------------------------------------------
# Run options, progress and results
# --------------------------------------------------------------------------


class SyncPhase(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    GROUPING = "grouping"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    FINALIZING = "finalizing"
    ERROR = "error"
    ABORTED = "aborted"


class SyncProgress(BaseModel):
    """Snapshot handed to ``SyncOptions.on_progress``."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase
    message: str = ""
    batches_total: int = 0
    batches_done: int = 0
    highlights_total: int = 0
    highlights_uploaded: int = 0

    @property
    def percent(self) -> float:
        if self.batches_total <= 0:
            return 0.0
        return round(self.batches_done / self.batches_total * 100.0, 1)


@dataclass
class SyncOptions:
    """Per-run options. ``None`` means "use the configured default"."""

    library_id: str | None = None
    full_sync: bool = False
    collections: list[str] | None = None
    tags: list[str] | None = None
    include_items_without_annotations: bool = False
    detect_deleted: bool | None = None
    prune_deleted: bool | None = None
    stop_on_error: bool | None = None
    dry_run: bool = False
    test_connection: bool = False
    on_progress: Callable[[SyncProgress], None] | None = None


class SyncErrorDetail(BaseModel):
    key: str
    message: str
    error_type: str = ErrorType.UNKNOWN.value


class SyncStatistics(BaseModel):
    """Run-scoped counters, finalized exactly once per run."""

    correlation_id: str = ""
    library_id: str = ""
    items_new: int = 0
    items_modified: int = 0
    items_unchanged: int = 0
    items_deleted: int = 0
    items_success: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    highlights_uploaded: int = 0
    highlights_skipped: int = 0
    batches_total: int = 0
    batches_succeeded: int = 0
    batches_failed: int = 0
    records_committed: int = 0
    records_pruned: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_seconds: float = 0.0
    errors: list[SyncErrorDetail] = Field(default_factory=list)
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    dry_run: bool = False
    aborted: bool = False
    circuit_open: bool = False
    cursor_advanced: bool = False
    state_flushed: bool = False

    @property
    def success_rate(self) -> float:
        attempted = self.items_success + self.items_failed
        if attempted == 0:
            return 100.0
        return round(self.items_success / attempted * 100.0, 1)

    @property
    def is_finalized(self) -> bool:
        return self.finished_at is not None

    def record_error(self, key: str, message: str, error_type: ErrorType) -> None:
        self.errors.append(SyncErrorDetail(key=key, message=message, error_type=error_type.value))
        self.errors_by_type[error_type.value] = self.errors_by_type.get(error_type.value, 0) + 1

    def finalize(self, finished_at: datetime) -> bool:
        """Stamp the end time once; later calls are no-ops and return False."""
        if self.finished_at is not None:
            return False
        self.finished_at = finished_at
        if self.started_at is not None:
            self.duration_seconds = round((finished_at - self.started_at).total_seconds(), 3)
        return True


class SyncStatus(BaseModel):
    """Point-in-time view of the orchestrator, safe to hand to any caller."""

    model_config = ConfigDict(frozen=True)

    phase: SyncPhase
    is_running: bool
    correlation_id: str | None = None
    progress: SyncProgress | None = None
    statistics: SyncStatistics | None = None
    last_run: SyncStatistics | None = None
