"""Coercion helpers for loosely typed LLM payloads."""

from __future__ import annotations

from typing import Any, Iterable


def clamp_score(value: Any, *, default: float, lower: float = 0, upper: float = 10) -> float:
    """Clamp ``value`` into ``[lower, upper]``.

    Args:
        value: Raw value taken from a model response.
        default: Used when the value is missing or not numeric.
        lower: Inclusive lower bound.
        upper: Inclusive upper bound.

    Returns:
        The clamped number. Integral floats are returned as ``int``.
    """

    if isinstance(value, bool) or value is None:
        number = float(default)
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = float(default)
    if number != number:  # NaN
        number = float(default)
    number = max(lower, min(upper, number))
    return int(number) if float(number).is_integer() else number


def coerce_bool(value: Any) -> bool:
    """Interpret string flags like ``"false"`` the way a reader would."""

    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y", "on"}
    return bool(value)


def string_ids(values: Any) -> list[str]:
    """Keep the string members of ``values`` in order, without duplicates."""

    if not isinstance(values, list):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if isinstance(value, str) and value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def ordered_union(groups: Iterable[Iterable[str]]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for item in group:
            if item not in seen:
                seen.add(item)
                merged.append(item)
    return merged
