"""Convert raw service records into canonical messages and stream chunks.

The remote service has shipped several generations of message shapes
(``message`` vs ``content`` vs ``text``, ``function_call`` vs
``tool_call``, role based records, ...).  Everything in this module is
tolerant by construction: malformed input degrades to a ``debug`` message
or is skipped, it never raises.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any

from .messages import (
    CanonicalMessage,
    DebugPayload,
    SYNTHETIC_ID_PREFIX,
    MessageKind,
    StatusPayload,
    TextPayload,
    ToolCallPayload,
    ToolResultPayload,
    UsagePayload,
    cursor_id,
    disambiguate_id,
    parse_arguments,
    sort_key,
)
from .streaming.events import ChunkKind, StreamChunk
from .telemetry import log_event
from .util.json import dumps_compact
from .util.time import to_epoch_seconds

logger = logging.getLogger(__name__)

DiagnosticSink = Callable[[Any, str], None]

_PREVIEW_LIMIT = 500

_ID_KEYS = ("id", "message_id", "messageId")
_DATE_KEYS = ("date", "created_at", "createdAt", "timestamp")
_TYPE_KEYS = ("message_type", "messageType", "type")
_TEXT_KEYS = ("content", "text", "message")
_TOOL_CALL_KEYS = ("tool_call", "toolCall", "function_call", "functionCall")
_TOOL_RETURN_KEYS = ("tool_return", "toolReturn", "function_return", "functionReturn")
_CALL_ID_KEYS = ("tool_call_id", "toolCallId", "call_id", "id")

_TYPE_ALIASES: dict[str, MessageKind] = {
    "user_message": MessageKind.USER_TEXT,
    "user": MessageKind.USER_TEXT,
    "assistant_message": MessageKind.ASSISTANT_TEXT,
    "assistant": MessageKind.ASSISTANT_TEXT,
    "reasoning_message": MessageKind.REASONING,
    "hidden_reasoning_message": MessageKind.REASONING,
    "internal_monologue": MessageKind.REASONING,
    "reasoning": MessageKind.REASONING,
    "tool_call_message": MessageKind.TOOL_CALL,
    "function_call_message": MessageKind.TOOL_CALL,
    "function_call": MessageKind.TOOL_CALL,
    "tool_call": MessageKind.TOOL_CALL,
    "tool_return_message": MessageKind.TOOL_RESULT,
    "function_return_message": MessageKind.TOOL_RESULT,
    "function_return": MessageKind.TOOL_RESULT,
    "tool_return": MessageKind.TOOL_RESULT,
    "tool": MessageKind.TOOL_RESULT,
    "system_message": MessageKind.SYSTEM,
    "system": MessageKind.SYSTEM,
    "usage_statistics": MessageKind.USAGE_STATS,
    "usage": MessageKind.USAGE_STATS,
    "stop_reason": MessageKind.STATUS,
    "status": MessageKind.STATUS,
}

# Records never shown to the user.
_INTERNAL_TYPES = frozenset({"ping", "heartbeat", "login", "system_alert"})
_ERROR_TYPES = frozenset({"error", "error_message"})
_DONE_TYPES = frozenset({"done", "[done]"})

_CHUNK_KINDS: dict[MessageKind, ChunkKind] = {
    MessageKind.REASONING: ChunkKind.REASONING,
    MessageKind.TOOL_CALL: ChunkKind.TOOL_CALL,
    MessageKind.TOOL_RESULT: ChunkKind.TOOL_RETURN,
    MessageKind.ASSISTANT_TEXT: ChunkKind.ASSISTANT,
    MessageKind.USAGE_STATS: ChunkKind.USAGE,
    MessageKind.STATUS: ChunkKind.STATUS,
}

# Kinds that absorb a preceding reasoning record sharing their raw id.
_REASONING_TARGETS = (MessageKind.TOOL_CALL, MessageKind.ASSISTANT_TEXT)


# ----------------------------------------------------------------------
# field helpers
# ----------------------------------------------------------------------
def _first(raw: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def coerce_text(value: Any) -> str | None:
    """Return text from a string, a part list or a ``{"text": ...}`` mapping."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        text = value.get("text")
        return text if isinstance(text, str) else None
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        parts: list[str] = []
        for part in value:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping):
                part_type = part.get("type")
                text = part.get("text")
                if isinstance(text, str) and part_type in (None, "text"):
                    parts.append(text)
        return "".join(parts)
    return None


def _message_type(raw: Mapping[str, Any]) -> str | None:
    value = _first(raw, _TYPE_KEYS)
    if not isinstance(value, str):
        value = raw.get("role")
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def _infer_kind(raw: Mapping[str, Any], type_name: str | None) -> MessageKind | None:
    if type_name is not None and type_name in _TYPE_ALIASES:
        return _TYPE_ALIASES[type_name]
    if _first(raw, _TOOL_CALL_KEYS) is not None or raw.get("tool_calls"):
        return MessageKind.TOOL_CALL
    if _first(raw, _TOOL_RETURN_KEYS) is not None:
        return MessageKind.TOOL_RESULT
    if raw.get("reasoning") is not None:
        return MessageKind.REASONING
    if raw.get("stop_reason") is not None:
        return MessageKind.STATUS
    return None


def _raw_id(raw: Mapping[str, Any]) -> str | None:
    value = _first(raw, _ID_KEYS)
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _synthetic_id(raw: Any) -> str:
    """Return a stable id for records the service did not label."""
    digest = hashlib.sha1(dumps_compact(raw).encode("utf-8")).hexdigest()
    return f"{SYNTHETIC_ID_PREFIX}{digest[:16]}"


def _preview(raw: Any) -> str:
    try:
        text = dumps_compact(raw)
    except Exception:  # pragma: no cover - defensive
        text = repr(raw)
    if len(text) > _PREVIEW_LIMIT:
        return text[:_PREVIEW_LIMIT] + "…"
    return text


def _internal_envelope(text: str | None) -> str | None:
    """Return the envelope type when *text* is a JSON heartbeat/login/alert."""
    if not text:
        return None
    stripped = text.strip()
    if not stripped.startswith("{"):
        return None
    try:
        data = json.loads(stripped)
    except ValueError:
        return None
    if not isinstance(data, Mapping):
        return None
    envelope = data.get("type")
    if isinstance(envelope, str) and envelope.lower() in _INTERNAL_TYPES:
        return envelope.lower()
    return None


def _arguments_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _tool_call_fields(call: Any) -> tuple[str | None, str | None, str]:
    """Return ``(call_id, name, arguments_text)`` for a tool-call mapping."""
    if not isinstance(call, Mapping):
        return None, None, ""
    function = call.get("function")
    func_map = function if isinstance(function, Mapping) else {}
    call_id = _first(call, _CALL_ID_KEYS)
    name = call.get("name") or func_map.get("name")
    arguments = call.get("arguments")
    if arguments is None:
        arguments = func_map.get("arguments")
    return (
        str(call_id) if call_id is not None else None,
        str(name) if name is not None else None,
        _arguments_text(arguments),
    )


def _tool_calls(raw: Mapping[str, Any]) -> list[Any]:
    calls = raw.get("tool_calls")
    if isinstance(calls, Sequence) and not isinstance(calls, (str, bytes)):
        return list(calls)
    call = _first(raw, _TOOL_CALL_KEYS)
    return [call] if call is not None else []


def _usage(raw: Mapping[str, Any]) -> UsagePayload:
    source = raw.get("usage") if isinstance(raw.get("usage"), Mapping) else raw

    def _int(key: str, alt: str | None = None) -> int | None:
        value = source.get(key)
        if value is None and alt is not None:
            value = source.get(alt)
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    return UsagePayload(
        prompt_tokens=_int("prompt_tokens", "promptTokens"),
        completion_tokens=_int("completion_tokens", "completionTokens"),
        total_tokens=_int("total_tokens", "totalTokens"),
        step_count=_int("step_count", "stepCount"),
    )


def _status_text(raw: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    reason = raw.get("stop_reason")
    if isinstance(reason, str) and reason:
        return f"Stopped: {reason}", {"stop_reason": reason}
    text = coerce_text(_first(raw, _TEXT_KEYS)) or ""
    return text, {}


def _reasoning_text(raw: Mapping[str, Any]) -> str:
    for key in ("reasoning", "internal_monologue", "hidden_reasoning"):
        text = coerce_text(raw.get(key))
        if text is not None:
            return text
    return coerce_text(_first(raw, _TEXT_KEYS)) or ""


def _tool_result(raw: Mapping[str, Any]) -> ToolResultPayload:
    value = _first(raw, _TOOL_RETURN_KEYS)
    if value is None:
        value = _first(raw, _TEXT_KEYS)
    call_id = _first(raw, ("tool_call_id", "toolCallId", "call_id"))
    name = raw.get("name") or raw.get("tool_name")
    status = raw.get("status")
    return ToolResultPayload(
        name=str(name) if name is not None else None,
        call_id=str(call_id) if call_id is not None else None,
        status=str(status) if status is not None else None,
        result=value,
    )


def _drop(raw: Any, reason: str, sink: DiagnosticSink | None) -> None:
    log_event(
        "MESSAGE_DROPPED",
        {"reason": reason, "preview": _preview(raw)},
        level=logging.DEBUG,
    )
    if sink is not None:
        try:
            sink(raw, reason)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Diagnostic sink failed")


# ----------------------------------------------------------------------
# history records
# ----------------------------------------------------------------------
def _debug_message(
    raw: Any, reason: str, *, agent_id: str, created_at: float
) -> CanonicalMessage:
    log_event(
        "MESSAGE_MALFORMED",
        {"agent_id": agent_id, "reason": reason, "preview": _preview(raw)},
        level=logging.WARNING,
    )
    raw_id = _raw_id(raw) if isinstance(raw, Mapping) else None
    return CanonicalMessage(
        id=raw_id or _synthetic_id(raw),
        agent_id=agent_id,
        created_at=created_at,
        kind=MessageKind.DEBUG,
        payload=DebugPayload(reason=reason, preview=_preview(raw)),
    )


def _normalize_many(
    raw: Any,
    *,
    agent_id: str | None,
    now: Callable[[], float],
    sink: DiagnosticSink | None,
) -> list[CanonicalMessage]:
    if not isinstance(raw, Mapping):
        return [
            _debug_message(
                raw,
                f"unsupported record type {type(raw).__name__}",
                agent_id=agent_id or "",
                created_at=now(),
            )
        ]

    owner = agent_id or str(raw.get("agent_id") or raw.get("agentId") or "")
    created_at = to_epoch_seconds(_first(raw, _DATE_KEYS))
    if created_at is None:
        created_at = now()
    type_name = _message_type(raw)
    if type_name in _INTERNAL_TYPES:
        _drop(raw, type_name, sink)
        return []
    kind = _infer_kind(raw, type_name)
    if kind is None:
        return [
            _debug_message(
                raw,
                f"unknown message type {type_name!r}",
                agent_id=owner,
                created_at=created_at,
            )
        ]
    message_id = _raw_id(raw) or _synthetic_id(raw)

    def _build(kind_: MessageKind, payload: Any, id_: str = message_id) -> CanonicalMessage:
        return CanonicalMessage(
            id=id_, agent_id=owner, created_at=created_at, kind=kind_, payload=payload
        )

    if kind is MessageKind.TOOL_CALL:
        calls = _tool_calls(raw)
        if not calls:
            return [
                _debug_message(
                    raw, "tool call without payload", agent_id=owner, created_at=created_at
                )
            ]
        reasoning = coerce_text(raw.get("reasoning")) or ""
        messages = []
        for index, call in enumerate(calls):
            call_id, name, arguments_text = _tool_call_fields(call)
            arguments, error = parse_arguments(arguments_text)
            payload = ToolCallPayload(
                name=name or "unknown",
                call_id=call_id,
                arguments_text=arguments_text,
                arguments=arguments,
                parse_error=error,
                reasoning=reasoning if index == 0 else "",
            )
            id_ = message_id if index == 0 else f"{message_id}#tool-call-{index}"
            messages.append(_build(kind, payload, id_))
        return messages

    if kind is MessageKind.TOOL_RESULT:
        return [_build(kind, _tool_result(raw))]
    if kind is MessageKind.USAGE_STATS:
        return [_build(kind, _usage(raw))]
    if kind is MessageKind.STATUS:
        text, detail = _status_text(raw)
        return [_build(kind, StatusPayload(text=text, detail=detail))]
    if kind is MessageKind.REASONING:
        return [_build(kind, TextPayload(text=_reasoning_text(raw)))]

    text = coerce_text(_first(raw, _TEXT_KEYS))
    if text is None and kind is MessageKind.ASSISTANT_TEXT:
        text = coerce_text(raw.get("assistant_message"))
    if text is None:
        return [
            _debug_message(
                raw, f"{kind.value} without text", agent_id=owner, created_at=created_at
            )
        ]
    if kind is MessageKind.USER_TEXT:
        envelope = _internal_envelope(text)
        if envelope is not None:
            _drop(raw, envelope, sink)
            return []
    return [_build(kind, TextPayload(text=text))]


def normalize(
    raw: Any,
    *,
    agent_id: str | None = None,
    now: Callable[[], float] | None = None,
    sink: DiagnosticSink | None = None,
) -> CanonicalMessage | None:
    """Return the canonical form of *raw* or ``None`` for internal records.

    Records describing several tool calls yield their first call only; use
    :func:`normalize_batch` to keep all of them.
    """
    clock = now or time.time
    try:
        messages = _normalize_many(raw, agent_id=agent_id, now=clock, sink=sink)
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected failure normalizing message")
        return _debug_message(
            raw,
            f"normalization failed: {exc}",
            agent_id=agent_id or "",
            created_at=clock(),
        )
    return messages[0] if messages else None


def normalize_batch(
    raws: Iterable[Any],
    *,
    agent_id: str | None = None,
    now: Callable[[], float] | None = None,
    sink: DiagnosticSink | None = None,
) -> list[CanonicalMessage]:
    """Normalize a page of records into a sorted, duplicate-free list."""
    clock = now or time.time
    flat: list[CanonicalMessage] = []
    for raw in raws:
        try:
            flat.extend(_normalize_many(raw, agent_id=agent_id, now=clock, sink=sink))
        except Exception as exc:  # pragma: no cover - defensive
            logger.exception("Unexpected failure normalizing message")
            flat.append(
                _debug_message(
                    raw,
                    f"normalization failed: {exc}",
                    agent_id=agent_id or "",
                    created_at=clock(),
                )
            )

    folded: list[CanonicalMessage] = []
    pending_reasoning: CanonicalMessage | None = None
    for message in flat:
        if pending_reasoning is not None:
            if (
                message.kind in _REASONING_TARGETS
                and cursor_id(message.id) == cursor_id(pending_reasoning.id)
                and not message.payload.reasoning
            ):
                message = replace(
                    message,
                    payload=replace(message.payload, reasoning=pending_reasoning.text),
                )
            else:
                folded.append(pending_reasoning)
            pending_reasoning = None
        if message.kind is MessageKind.REASONING:
            pending_reasoning = message
            continue
        folded.append(message)
    if pending_reasoning is not None:
        folded.append(pending_reasoning)

    by_id: dict[str, CanonicalMessage] = {}
    kinds: dict[str, MessageKind] = {}
    for message in folded:
        existing_kind = kinds.get(message.id)
        if existing_kind is not None and existing_kind is not message.kind:
            message = replace(message, id=disambiguate_id(message.id, message.kind))
        kinds.setdefault(message.id, message.kind)
        by_id[message.id] = message
    return sorted(by_id.values(), key=sort_key)


# ----------------------------------------------------------------------
# stream events
# ----------------------------------------------------------------------
def normalize_chunks(raw: Any, *, sink: DiagnosticSink | None = None) -> list[StreamChunk]:
    """Return the typed chunks carried by one raw stream event."""
    if isinstance(raw, str):
        if raw.strip().lower() in _DONE_TYPES:
            return [StreamChunk(kind=ChunkKind.DONE)]
        _drop(raw, "unexpected text event", sink)
        return []
    if not isinstance(raw, Mapping):
        _drop(raw, f"unsupported event type {type(raw).__name__}", sink)
        return []

    message_id = _raw_id(raw)
    created_at = to_epoch_seconds(_first(raw, _DATE_KEYS))
    type_name = _message_type(raw)
    if type_name in _INTERNAL_TYPES:
        _drop(raw, type_name, sink)
        return []
    if type_name in _DONE_TYPES:
        return [StreamChunk(kind=ChunkKind.DONE, message_id=message_id)]
    error = raw.get("error")
    if type_name in _ERROR_TYPES or (error is not None and type_name is None):
        if isinstance(error, Mapping):
            text = coerce_text(error.get("message")) or _preview(error)
            detail = dict(error)
        else:
            text = coerce_text(error) or coerce_text(_first(raw, _TEXT_KEYS)) or "error"
            detail = {}
        return [StreamChunk(kind=ChunkKind.ERROR, text=text, detail=detail)]

    kind = _infer_kind(raw, type_name)
    chunk_kind = _CHUNK_KINDS.get(kind) if kind is not None else None
    if chunk_kind is None:
        _drop(raw, f"ignored stream event {type_name!r}", sink)
        return []

    common = {"message_id": message_id, "created_at": created_at}
    if chunk_kind is ChunkKind.REASONING:
        return [StreamChunk(kind=chunk_kind, text=_reasoning_text(raw), **common)]
    if chunk_kind is ChunkKind.ASSISTANT:
        text = coerce_text(_first(raw, _TEXT_KEYS))
        if text is None:
            text = coerce_text(raw.get("assistant_message")) or ""
        return [StreamChunk(kind=chunk_kind, text=text, **common)]
    if chunk_kind is ChunkKind.TOOL_CALL:
        chunks = []
        for call in _tool_calls(raw):
            call_id, name, fragment = _tool_call_fields(call)
            chunks.append(
                StreamChunk(kind=chunk_kind, text=fragment, call_id=call_id, name=name, **common)
            )
        return chunks
    if chunk_kind is ChunkKind.TOOL_RETURN:
        payload = _tool_result(raw)
        return [
            StreamChunk(
                kind=chunk_kind,
                call_id=payload.call_id,
                name=payload.name,
                result=payload.result,
                status=payload.status,
                **common,
            )
        ]
    if chunk_kind is ChunkKind.USAGE:
        return [StreamChunk(kind=chunk_kind, usage=_usage(raw), **common)]
    text, detail = _status_text(raw)
    return [StreamChunk(kind=ChunkKind.STATUS, text=text, detail=detail, **common)]


def normalize_chunk(raw: Any, *, sink: DiagnosticSink | None = None) -> StreamChunk | None:
    """Return the first chunk carried by *raw*, or ``None`` for ignored events."""
    chunks = normalize_chunks(raw, sink=sink)
    return chunks[0] if chunks else None


__all__ = [
    "DiagnosticSink",
    "coerce_text",
    "normalize",
    "normalize_batch",
    "normalize_chunk",
    "normalize_chunks",
]
