"""Content fingerprints for annotations.

A fingerprint is the SHA-256 of the canonical JSON form (sorted keys, no
whitespace) of the user-visible annotation fields. Internal ids, timestamps
and any other field are ignored, so only a visible edit changes it.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from highlight_sync.sync.models import FingerprintInput

if TYPE_CHECKING:
    from highlight_sync.sync.models import SourceAnnotation

FINGERPRINT_FIELDS = (
    "annotation_key",
    "text",
    "comment",
    "color",
    "page_index",
    "parent_item_key",
)


def _canonical_payload(data: Mapping[str, Any]) -> str:
    payload = {}
    for name in FINGERPRINT_FIELDS:
        value = data.get(name)
        payload[name] = "" if value is None else value
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def compute_fingerprint(value: FingerprintInput | Mapping[str, Any]) -> str:
    """Return the hex fingerprint of one annotation.

    Accepts a ``FingerprintInput`` or any mapping carrying the same field
    names; field order and extra keys make no difference.
    """
    data = value.model_dump() if isinstance(value, FingerprintInput) else value
    canonical = _canonical_payload(data)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint_input_for(annotation: SourceAnnotation, parent_item_key: str) -> FingerprintInput:
    """Build the fingerprint input of ``annotation`` as found on ``parent_item_key``."""
    return FingerprintInput(
        annotation_key=annotation.key,
        text=annotation.text,
        comment=annotation.comment,
        color=annotation.color,
        page_index=annotation.page_index,
        parent_item_key=parent_item_key,
    )
