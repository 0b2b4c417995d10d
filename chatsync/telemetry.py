"""Structured event logging with credential redaction."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Mapping
from typing import Any

from .log import logger
from .util.json import JsonSanitizerLimits, make_json_safe

# Lower-cased keys whose values never reach the logs.
SENSITIVE_KEYS = frozenset(
    {"api_key", "authorization", "cookie", "password", "secret", "token", "x-api-key"}
)

REDACTED = "[REDACTED]"

_BEARER = re.compile(r"(?i)\bbearer\s+\S+")
_DEBUG_LIMITS = JsonSanitizerLimits(max_depth=8, max_items=200, max_string_length=4000)


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    if isinstance(value, str):
        return _BEARER.sub(f"Bearer {REDACTED}", value)
    return value


def sanitize(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a redacted deep copy of *data*.

    Values under :data:`SENSITIVE_KEYS` are replaced by ``[REDACTED]`` and
    bearer tokens embedded in strings, such as echoed error bodies, are
    masked.
    """
    return _redact(data)


def _payload_size(payload: Mapping[str, Any]) -> int:
    return len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))


def log_event(
    event: str,
    payload: Mapping[str, Any] | None = None,
    *,
    start_time: float | None = None,
    level: int = logging.INFO,
) -> None:
    """Log *event* with its redacted *payload* on the ``chatsync`` logger.

    The JSON record carries ``payload`` and its encoded ``size_bytes``; when
    a monotonic *start_time* is given, ``duration_ms`` is added as well.
    """
    safe = make_json_safe(sanitize(payload)) if payload else {}
    data: dict[str, Any] = {
        "event": event,
        "payload": safe,
        "size_bytes": _payload_size(safe) if safe else 0,
    }
    if start_time is not None:
        data["duration_ms"] = int((time.monotonic() - start_time) * 1000)
    logger.log(level, event, extra={"json": data})


def log_debug_payload(event: str, payload: Mapping[str, Any]) -> None:
    """Log a full request or response body at ``DEBUG`` level."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    safe = make_json_safe(sanitize(payload), limits=_DEBUG_LIMITS)
    logger.debug(
        "%s %s",
        event,
        json.dumps(safe, ensure_ascii=False),
        extra={"json": {"event": event, "level": "DEBUG", "payload": safe}},
    )


__all__ = ["REDACTED", "SENSITIVE_KEYS", "log_debug_payload", "log_event", "sanitize"]
