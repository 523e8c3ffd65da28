from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ._validators import _parse_float, _parse_int


class SyncEngineConfig(BaseModel):
    """Sync engine behaviour: state location, batching and deletion policy."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    state_path: str = Field(default="data/sync-state.json", validation_alias="SYNC_STATE_PATH")
    library_id: str = Field(default="1", validation_alias="SYNC_LIBRARY_ID")
    batch_size: int = Field(default=50, validation_alias="SYNC_BATCH_SIZE")
    concurrency: int = Field(default=3, validation_alias="SYNC_CONCURRENCY")
    delay_between_batches_seconds: float = Field(
        default=0.0, validation_alias="SYNC_DELAY_BETWEEN_BATCHES_SECONDS"
    )
    stop_on_error: bool = Field(default=False, validation_alias="SYNC_STOP_ON_ERROR")
    detect_deleted: bool = Field(default=False, validation_alias="SYNC_DETECT_DELETED")
    prune_deleted: bool = Field(default=False, validation_alias="SYNC_PRUNE_DELETED")
    state_flush_debounce_seconds: float = Field(
        default=1.0, validation_alias="SYNC_STATE_FLUSH_DEBOUNCE_SECONDS"
    )

    @field_validator("state_path", mode="before")
    @classmethod
    def _validate_state_path(cls, value: Any) -> str:
        path = str(value or "data/sync-state.json").strip()
        if not path:
            return "data/sync-state.json"
        if "\x00" in path:
            msg = "Sync state path contains invalid characters"
            raise ValueError(msg)
        return path

    @field_validator("library_id", mode="before")
    @classmethod
    def _validate_library_id(cls, value: Any) -> str:
        library_id = str(value if value not in (None, "") else "1").strip()
        if not library_id:
            msg = "Sync library id cannot be empty"
            raise ValueError(msg)
        return library_id

    @field_validator("batch_size", mode="before")
    @classmethod
    def _validate_batch_size(cls, value: Any) -> int:
        return _parse_int(value, name="Sync batch size", default=50, minimum=1, maximum=1000)

    @field_validator("concurrency", mode="before")
    @classmethod
    def _validate_concurrency(cls, value: Any) -> int:
        return _parse_int(value, name="Sync concurrency", default=3, minimum=1, maximum=32)

    @field_validator("delay_between_batches_seconds", mode="before")
    @classmethod
    def _validate_delay(cls, value: Any) -> float:
        return _parse_float(
            value, name="Delay between batches", default=0.0, minimum=0.0, maximum=600.0
        )

    @field_validator("state_flush_debounce_seconds", mode="before")
    @classmethod
    def _validate_debounce(cls, value: Any) -> float:
        return _parse_float(
            value, name="State flush debounce", default=1.0, minimum=0.0, maximum=600.0
        )
