"""Turn changed items into upload batches, one per remote parent document."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, TypeVar

from highlight_sync.domain.exceptions import ErrorType
from highlight_sync.sync.fingerprint import compute_fingerprint
from highlight_sync.sync.models import AnnotationMeta, SyncBatch
from highlight_sync.utils.circuit_breaker import CircuitBreakerOpenError
from highlight_sync.utils.retry_utils import classify_error

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from highlight_sync.sync.models import (
        HighlightPayload,
        ItemChange,
        MappedItem,
        SyncDecision,
    )
    from highlight_sync.sync.protocols import FieldMapper, RemoteHighlightClient

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _call_directly(operation: Callable[[], Awaitable[T]], **_: Any) -> T:
    return await operation()


@dataclass
class GroupingResult:
    batches: list[SyncBatch] = field(default_factory=list)
    skipped_items: list[str] = field(default_factory=list)
    skipped_highlights: int = 0
    circuit_open: bool = False

    @property
    def ready_batches(self) -> list[SyncBatch]:
        return [batch for batch in self.batches if batch.remote_parent_id and not batch.is_finished]

    @property
    def failed_batches(self) -> list[SyncBatch]:
        return [batch for batch in self.batches if batch.is_finished]


class BatchGrouper:
    """Map changed items and resolve each remote parent once per run.

    Items that map to the same parent share one batch, so a parent is resolved
    once no matter how many items point at it.

    ``invoke`` wraps every remote call (the upload pipeline passes its
    rate-limited, circuit-broken, retrying call path); without it the remote
    client is called directly.
    """

    def __init__(
        self,
        mapper: FieldMapper,
        remote: RemoteHighlightClient,
        invoke: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self.mapper = mapper
        self.remote = remote
        self.invoke = invoke or _call_directly

    def _map(self, change: ItemChange, correlation_id: str | None) -> MappedItem | None:
        try:
            mapped = self.mapper.map_item(change.item)
        except Exception as exc:
            logger.warning(
                "batch_grouping_mapping_failed",
                extra={
                    "correlation_id": correlation_id,
                    "item_key": change.key,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
            return None
        if mapped is None:
            logger.info(
                "batch_grouping_item_skipped",
                extra={"correlation_id": correlation_id, "item_key": change.key},
            )
        return mapped

    @staticmethod
    def _select_highlights(
        mapped: MappedItem,
        pending: dict[str, SyncDecision],
        item_key: str,
        correlation_id: str | None,
    ) -> list[HighlightPayload]:
        """Keep pending highlights whose mapped content is what was fingerprinted.

        A highlight whose fingerprint input disagrees with the detected
        fingerprint is held back: committing it would record content that was
        never uploaded.
        """
        mapped_fingerprints = {
            fingerprint_input.annotation_key: compute_fingerprint(fingerprint_input)
            for fingerprint_input in mapped.fingerprint_inputs
        }
        selected: list[HighlightPayload] = []
        for highlight in mapped.highlights:
            decision = pending.get(highlight.annotation_key)
            if decision is None:
                continue
            fingerprint = mapped_fingerprints.get(highlight.annotation_key)
            if fingerprint is not None and fingerprint != decision.current_fingerprint:
                logger.warning(
                    "batch_grouping_fingerprint_mismatch",
                    extra={
                        "correlation_id": correlation_id,
                        "item_key": item_key,
                        "annotation_key": highlight.annotation_key,
                    },
                )
                continue
            selected.append(highlight)
        return selected

    async def group(
        self,
        changes: list[ItemChange],
        *,
        correlation_id: str | None = None,
        resolve_parents: bool = True,
    ) -> GroupingResult:
        """Build one batch per parent document.

        With ``resolve_parents=False`` (dry runs) no remote call is made and
        batches are returned without a remote parent id.
        """
        result = GroupingResult()
        by_parent: dict[str, SyncBatch] = {}

        for change in changes:
            pending = change.pending
            if not pending:
                continue

            mapped = self._map(change, correlation_id)
            if mapped is None:
                result.skipped_items.append(change.key)
                result.skipped_highlights += len(pending)
                continue

            highlights = self._select_highlights(mapped, pending, change.key, correlation_id)
            dropped = len(pending) - len(highlights)
            if dropped:
                result.skipped_highlights += dropped
                logger.debug(
                    "batch_grouping_highlights_dropped",
                    extra={
                        "correlation_id": correlation_id,
                        "item_key": change.key,
                        "dropped": dropped,
                    },
                )
            if not highlights:
                result.skipped_items.append(change.key)
                continue

            parent_key = mapped.parent_metadata.key
            batch = by_parent.get(parent_key)
            if batch is None:
                batch = SyncBatch(parent_key=parent_key, parent_metadata=mapped.parent_metadata)
                by_parent[parent_key] = batch
                result.batches.append(batch)

            batch.item_keys.append(change.key)
            for highlight in highlights:
                decision = pending[highlight.annotation_key]
                batch.highlights.append(highlight)
                batch.annotation_meta.append(
                    AnnotationMeta(
                        annotation_key=highlight.annotation_key,
                        fingerprint=decision.current_fingerprint,
                        action=decision.action,
                    )
                )

        if resolve_parents:
            await self._resolve_parents(result, correlation_id)

        logger.info(
            "batch_grouping_completed",
            extra={
                "correlation_id": correlation_id,
                "batches": len(result.batches),
                "ready": len(result.ready_batches),
                "failed": len(result.failed_batches),
                "skipped_items": len(result.skipped_items),
                "skipped_highlights": result.skipped_highlights,
            },
        )
        return result

    async def _resolve_parents(self, result: GroupingResult, correlation_id: str | None) -> None:
        for batch in result.batches:
            try:
                parent_id = await self.invoke(
                    partial(self.remote.resolve_or_create_parent, batch.parent_metadata),
                    operation_name="resolve_or_create_parent",
                    correlation_id=correlation_id,
                )
            except CircuitBreakerOpenError as exc:
                batch.mark_failed(str(exc), ErrorType.UNKNOWN)
                result.circuit_open = True
                logger.error(
                    "batch_grouping_circuit_open",
                    extra={"correlation_id": correlation_id, "parent_key": batch.parent_key},
                )
                break
            except Exception as exc:
                error_type = classify_error(exc)
                batch.mark_failed(str(exc), error_type)
                logger.warning(
                    "batch_grouping_parent_resolution_failed",
                    extra={
                        "correlation_id": correlation_id,
                        "parent_key": batch.parent_key,
                        "error_type": error_type.value,
                        "error": str(exc),
                    },
                )
                continue

            batch.remote_parent_id = str(parent_id)
