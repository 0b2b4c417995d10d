"""JSON serialisation helpers."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict, dataclass, is_dataclass
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class JsonSanitizerLimits:
    """Bounds applied while traversing objects for JSON conversion."""

    max_depth: int | None = None
    max_items: int | None = None
    max_string_length: int | None = None


_TRUNCATION_SENTINEL_KEY = "__truncated__"


def _truncate(text: str, limit: int | None) -> str:
    if limit is None or len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def make_json_safe(
    value: Any,
    *,
    stringify_keys: bool = True,
    sort_sets: bool = True,
    default: Callable[[Any], Any] | None = None,
    limits: JsonSanitizerLimits | None = None,
) -> Any:
    """Return a structure compatible with :func:`json.dumps`.

    Dataclasses, pydantic models and enums are unwrapped; unknown objects are
    passed through *default* (``repr`` when omitted). *limits* bound the depth,
    collection sizes and string lengths of the result, leaving a
    ``__truncated__`` marker wherever data was dropped.
    """

    if default is None:
        default = repr
    limits = limits or JsonSanitizerLimits()

    def _marker(kind: str, reason: str, omitted: int) -> dict[str, Any]:
        return {
            _TRUNCATION_SENTINEL_KEY: {
                "kind": kind,
                "reason": reason,
                "omitted": omitted,
            }
        }

    def _depth_exceeded(depth: int) -> bool:
        return limits.max_depth is not None and depth >= limits.max_depth

    def _convert_items(items: Sequence[Any], depth: int) -> list[Any]:
        converted: list[Any] = []
        omitted = 0
        for index, item in enumerate(items):
            if limits.max_items is not None and index >= limits.max_items:
                omitted += 1
                continue
            converted.append(_convert(item, depth + 1))
        if omitted:
            converted.append(_marker("sequence", "max_items", omitted))
        return converted

    def _convert(item: Any, depth: int) -> Any:
        if item is None or isinstance(item, (bool, int, float)):
            return item
        if isinstance(item, str):
            return _truncate(item, limits.max_string_length)
        if isinstance(item, Enum):
            return _convert(item.value, depth)
        if isinstance(item, Mapping):
            if _depth_exceeded(depth):
                return _marker("mapping", "max_depth", 0)
            result: dict[Any, Any] = {}
            omitted = 0
            for index, (key, val) in enumerate(item.items()):
                if limits.max_items is not None and index >= limits.max_items:
                    omitted += 1
                    continue
                if stringify_keys and not isinstance(key, str):
                    key = str(key.value if isinstance(key, Enum) else key)
                result[key] = _convert(val, depth + 1)
            if omitted:
                result.update(_marker("mapping", "max_items", omitted))
            return result
        if isinstance(item, (list, tuple)):
            if _depth_exceeded(depth):
                return [_marker("sequence", "max_depth", 0)]
            return _convert_items(item, depth)
        if isinstance(item, (set, frozenset)):
            converted = _convert_items(list(item), depth)
            if sort_sets:
                try:
                    converted.sort()
                except TypeError:
                    converted.sort(key=repr)
            return converted
        if isinstance(item, (bytes, bytearray)):
            return _truncate(
                bytes(item).decode("utf-8", errors="replace"),
                limits.max_string_length,
            )
        if is_dataclass(item) and not isinstance(item, type):
            return _convert(asdict(item), depth)
        dump = getattr(item, "model_dump", None)
        if callable(dump):
            try:
                return _convert(dump(), depth)
            except Exception:  # pragma: no cover - defensive
                pass
        try:
            fallback = default(item)
        except Exception:
            fallback = f"<unserialisable {type(item).__name__}>"
        if isinstance(fallback, str):
            return _truncate(fallback, limits.max_string_length)
        if fallback is item:
            return f"<unserialisable {type(item).__name__}>"
        return _convert(fallback, depth + 1)

    return _convert(value, 0)


def dumps_compact(value: Any) -> str:
    """Serialise *value* to compact JSON after :func:`make_json_safe`."""
    return json.dumps(make_json_safe(value), ensure_ascii=False, separators=(",", ":"))


__all__ = ["JsonSanitizerLimits", "dumps_compact", "make_json_safe"]
