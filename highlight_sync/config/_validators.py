from __future__ import annotations

from typing import Any


def _parse_int(
    value: Any,
    *,
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    try:
        parsed = int(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a valid integer"
        raise ValueError(msg) from exc
    if minimum is not None and parsed < minimum:
        msg = f"{name} must be at least {minimum}"
        raise ValueError(msg)
    if maximum is not None and parsed > maximum:
        msg = f"{name} must be at most {maximum}"
        raise ValueError(msg)
    return parsed


def _parse_float(
    value: Any,
    *,
    name: str,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        parsed = float(str(value if value not in (None, "") else default))
    except ValueError as exc:
        msg = f"{name} must be a valid number"
        raise ValueError(msg) from exc
    if minimum is not None and parsed < minimum:
        msg = f"{name} must be at least {minimum}"
        raise ValueError(msg)
    if maximum is not None and parsed > maximum:
        msg = f"{name} must be at most {maximum}"
        raise ValueError(msg)
    return parsed


def _ensure_api_token(value: Any, *, name: str) -> str:
    if value in (None, ""):
        return ""
    token = str(value).strip()
    if len(token) > 500:
        msg = f"{name} API token appears to be too long"
        raise ValueError(msg)
    if any(char in token for char in [" ", "\n", "\t"]):
        msg = f"{name} API token contains invalid characters"
        raise ValueError(msg)
    return token
