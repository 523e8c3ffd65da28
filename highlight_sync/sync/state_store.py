"""Durable sync state: annotation records and per-library cursors.

The in-memory document is the source of truth while the process runs. Every
mutation marks it dirty and (re)arms a debounced flush on the running event
loop; the orchestrator also calls ``flush()`` explicitly when it commits. A
flush writes a temp file in the same directory, fsyncs it and ``os.replace``s
it over the previous file, so a crash mid-write never corrupts durable state.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from highlight_sync.core.time_utils import ensure_datetime, to_iso, utc_now
from highlight_sync.domain.exceptions import StateStoreError
from highlight_sync.sync.fingerprint import compute_fingerprint
from highlight_sync.sync.models import (
    CommitRecord,
    FingerprintInput,
    PersistedState,
    SyncAction,
    SyncDecision,
    SyncRecord,
)

if TYPE_CHECKING:
    from datetime import datetime

logger = logging.getLogger(__name__)

_suppress_oserror = contextlib.suppress(OSError)


def _empty_state() -> PersistedState:
    now = to_iso(utc_now())
    return PersistedState(created_at=now, last_modified=now)


def _write_atomically(path: Path, payload: str) -> None:
    """Write ``payload`` to ``path`` via temp file, fsync and rename."""
    dir_fd = None
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
        try:
            dir_fd = os.open(str(path.parent), os.O_RDONLY)
            os.fsync(dir_fd)
        except OSError:
            pass
    except BaseException:
        with _suppress_oserror:
            os.unlink(tmp_path)
        raise
    finally:
        if dir_fd is not None:
            with _suppress_oserror:
                os.close(dir_fd)


class JsonStateStore:
    """JSON-file backed state store with debounced, atomic persistence."""

    def __init__(self, path: str | Path, *, debounce_seconds: float = 1.0) -> None:
        self.path = Path(path)
        self.debounce_seconds = debounce_seconds
        self._dirty = False
        self._flush_handle: asyncio.TimerHandle | None = None
        self._flush_failures = 0
        self._last_flush_error: str | None = None

        if self.path.is_dir():
            msg = f"State path {self.path} is a directory"
            raise StateStoreError(msg, {"path": str(self.path)})
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Cannot create state directory {self.path.parent}: {exc}"
            raise StateStoreError(msg, {"path": str(self.path)}) from exc

        self._state = self._load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self) -> PersistedState:
        if not self.path.exists():
            logger.info("sync_state_initialized", extra={"path": str(self.path)})
            return _empty_state()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning(
                "sync_state_read_failed",
                extra={"path": str(self.path), "error": str(exc)},
            )
            return _empty_state()

        try:
            state = PersistedState.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as exc:
            self._quarantine_corrupt_file(exc)
            return _empty_state()

        logger.info(
            "sync_state_loaded",
            extra={
                "path": str(self.path),
                "records": len(state.annotations),
                "libraries": len(state.last_library_sync_at),
                "version": state.version,
            },
        )
        return state

    def _quarantine_corrupt_file(self, error: Exception) -> None:
        corrupt_path = self.path.with_name(self.path.name + ".corrupt")
        try:
            os.replace(self.path, corrupt_path)
        except OSError as exc:
            logger.error(
                "sync_state_quarantine_failed",
                extra={"path": str(self.path), "error": str(exc)},
            )
            return
        logger.error(
            "sync_state_corrupt",
            extra={
                "path": str(self.path),
                "moved_to": str(corrupt_path),
                "error": str(error),
            },
        )

    # ------------------------------------------------------------------
    # Fingerprints and decisions
    # ------------------------------------------------------------------

    @staticmethod
    def compute_fingerprint(value: FingerprintInput | Mapping[str, Any]) -> str:
        return compute_fingerprint(value)

    def needs_sync(self, value: FingerprintInput | Mapping[str, Any]) -> SyncDecision:
        """Compare ``value`` with the stored record of the same annotation key."""
        key = value.annotation_key if isinstance(value, FingerprintInput) else value["annotation_key"]
        current = compute_fingerprint(value)
        record = self._state.annotations.get(key)

        if record is None:
            return SyncDecision(needs_sync=True, action=SyncAction.CREATE, current_fingerprint=current)

        if record.fingerprint != current:
            return SyncDecision(
                needs_sync=True,
                action=SyncAction.UPDATE,
                current_fingerprint=current,
                previous_fingerprint=record.fingerprint,
                remote_id=record.remote_highlight_id or None,
            )

        return SyncDecision(
            needs_sync=False,
            action=SyncAction.SKIP,
            current_fingerprint=current,
            previous_fingerprint=record.fingerprint,
            remote_id=record.remote_highlight_id or None,
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, annotation_key: str) -> SyncRecord | None:
        return self._state.annotations.get(annotation_key)

    def synced_keys(self) -> set[str]:
        return set(self._state.annotations)

    def commit(self, annotation_key: str, remote_id: str, fingerprint: str) -> None:
        """Upsert the record of one confirmed upload."""
        self._state.annotations[annotation_key] = SyncRecord(
            fingerprint=fingerprint,
            remote_highlight_id=str(remote_id),
            last_synced_at=to_iso(utc_now()),
        )
        self._mark_dirty()

    def commit_batch(self, records: Iterable[CommitRecord]) -> int:
        """Upsert many confirmed uploads; returns how many were written."""
        synced_at = to_iso(utc_now())
        count = 0
        for record in records:
            self._state.annotations[record.annotation_key] = SyncRecord(
                fingerprint=record.fingerprint,
                remote_highlight_id=record.remote_highlight_id,
                last_synced_at=synced_at,
            )
            count += 1
        if count:
            self._mark_dirty()
        return count

    def remove_records(self, annotation_keys: Iterable[str]) -> int:
        removed = 0
        for key in annotation_keys:
            if self._state.annotations.pop(key, None) is not None:
                removed += 1
        if removed:
            self._mark_dirty()
        return removed

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def get_library_cursor(self, library_id: str) -> datetime | None:
        return ensure_datetime(self._state.last_library_sync_at.get(str(library_id)))

    def set_library_cursor(self, library_id: str, timestamp: datetime | str) -> None:
        parsed = ensure_datetime(timestamp)
        if parsed is None:
            msg = f"Invalid cursor timestamp: {timestamp!r}"
            raise ValueError(msg)
        self._state.last_library_sync_at[str(library_id)] = to_iso(parsed)
        self._mark_dirty()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def _mark_dirty(self) -> None:
        self._dirty = True
        self._state.last_modified = to_iso(utc_now())
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: callers flush explicitly
            return
        if self._flush_handle is not None:
            self._flush_handle.cancel()
        self._flush_handle = loop.call_later(self.debounce_seconds, self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        self._flush_handle = None
        self.flush()

    def flush(self) -> bool:
        """Write the state to disk now if it changed.

        Returns:
            True when the file is up to date, False if the write failed (the
            state stays dirty and another flush is scheduled)
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._dirty:
            return True

        payload = json.dumps(
            self._state.model_dump(mode="json", by_alias=True),
            indent=2,
            ensure_ascii=False,
        )
        try:
            _write_atomically(self.path, payload)
        except OSError as exc:
            self._flush_failures += 1
            self._last_flush_error = str(exc)
            logger.error(
                "sync_state_flush_failed",
                extra={
                    "path": str(self.path),
                    "error": str(exc),
                    "consecutive_failures": self._flush_failures,
                },
            )
            self._schedule_flush()
            return False

        self._dirty = False
        self._flush_failures = 0
        self._last_flush_error = None
        logger.debug(
            "sync_state_flushed",
            extra={"path": str(self.path), "records": len(self._state.annotations)},
        )
        return True

    def clear(self) -> bool:
        """Reset to an empty state and persist it."""
        previous = len(self._state.annotations)
        self._state = _empty_state()
        self._dirty = True
        logger.info("sync_state_cleared", extra={"path": str(self.path), "records": previous})
        return self.flush()

    def close(self) -> bool:
        """Cancel the pending timer and write any outstanding changes."""
        return self.flush()

    def get_stats(self) -> dict[str, Any]:
        synced_times = [
            parsed
            for parsed in (
                ensure_datetime(record.last_synced_at)
                for record in self._state.annotations.values()
            )
            if parsed is not None
        ]
        try:
            file_size = self.path.stat().st_size
        except OSError:
            file_size = 0
        return {
            "path": str(self.path),
            "records": len(self._state.annotations),
            "libraries": dict(self._state.last_library_sync_at),
            "oldest_sync": to_iso(min(synced_times)) if synced_times else None,
            "newest_sync": to_iso(max(synced_times)) if synced_times else None,
            "file_size_bytes": file_size,
            "dirty": self._dirty,
            "flush_failures": self._flush_failures,
            "last_flush_error": self._last_flush_error,
            "created_at": self._state.created_at,
            "last_modified": self._state.last_modified,
        }
