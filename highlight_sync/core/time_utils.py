from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_datetime(value: Any) -> datetime | None:
    """Coerce ``value`` to an aware datetime.

    Naive values are assumed to be UTC. ISO strings (including a trailing ``Z``)
    are parsed; anything else yields ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value
    if isinstance(value, str):
        if not value:
            return None
        raw = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("ensure_datetime_parse_failed", extra={"value": repr(value)})
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=UTC)
        return parsed
    logger.warning(
        "ensure_datetime_unexpected_type",
        extra={"type": type(value).__name__, "value": repr(value)},
    )
    return None


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime as an ISO-8601 UTC string with a ``Z`` suffix."""
    aware = ensure_datetime(value) or value
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
