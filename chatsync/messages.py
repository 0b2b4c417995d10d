"""Canonical conversation message records.

Every message that leaves :mod:`chatsync.normalizer` is a
:class:`CanonicalMessage` whose ``kind`` selects exactly one payload class.
Downstream code (history cache, stream assembler, presentation) only ever
sees these types, never the raw service shapes.
"""

from __future__ import annotations

import json
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar

from .util.json import make_json_safe

__all__ = [
    "CanonicalMessage",
    "DebugPayload",
    "LOCAL_ID_PREFIX",
    "SYNTHETIC_ID_PREFIX",
    "MessageKind",
    "MessagePayload",
    "StatusPayload",
    "TextPayload",
    "ToolCallPayload",
    "ToolResultPayload",
    "UsagePayload",
    "cursor_id",
    "disambiguate_id",
    "is_local_id",
    "new_local_id",
    "parse_arguments",
    "sort_key",
]

LOCAL_ID_PREFIX = "local-"
SYNTHETIC_ID_PREFIX = "anon-"
_KIND_SEPARATOR = "#"


class MessageKind(str, Enum):
    """Discriminant of :class:`CanonicalMessage`."""

    USER_TEXT = "user-text"
    ASSISTANT_TEXT = "assistant-text"
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    TOOL_RESULT = "tool-result"
    SYSTEM = "system"
    USAGE_STATS = "usage-stats"
    STATUS = "status"
    DEBUG = "debug"


@dataclass(frozen=True, slots=True)
class TextPayload:
    """Text content for user, assistant, reasoning and system messages."""

    text: str
    reasoning: str = ""
    interrupted: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolCallPayload:
    """Tool invocation with both raw and parsed arguments."""

    name: str
    call_id: str | None = None
    arguments_text: str = ""
    arguments: Any = None
    parse_error: str | None = None
    reasoning: str = ""

    @property
    def display_arguments(self) -> str:
        """Return arguments for display, flagging unparsable payloads."""
        if self.parse_error:
            return f"(could not parse arguments) {self.arguments_text}"
        return self.arguments_text


@dataclass(frozen=True, slots=True)
class ToolResultPayload:
    """Return value of a tool invocation."""

    name: str | None = None
    call_id: str | None = None
    status: str | None = None
    result: Any = None


@dataclass(frozen=True, slots=True)
class UsagePayload:
    """Token accounting reported by the service."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    step_count: int | None = None


@dataclass(frozen=True, slots=True)
class StatusPayload:
    """Human readable status such as a stop reason."""

    text: str
    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DebugPayload:
    """Best-effort placeholder for records that could not be understood."""

    reason: str
    preview: str = ""


MessagePayload = (
    TextPayload
    | ToolCallPayload
    | ToolResultPayload
    | UsagePayload
    | StatusPayload
    | DebugPayload
)

_PAYLOAD_TYPES: dict[MessageKind, type] = {
    MessageKind.USER_TEXT: TextPayload,
    MessageKind.ASSISTANT_TEXT: TextPayload,
    MessageKind.REASONING: TextPayload,
    MessageKind.SYSTEM: TextPayload,
    MessageKind.TOOL_CALL: ToolCallPayload,
    MessageKind.TOOL_RESULT: ToolResultPayload,
    MessageKind.USAGE_STATS: UsagePayload,
    MessageKind.STATUS: StatusPayload,
    MessageKind.DEBUG: DebugPayload,
}


@dataclass(frozen=True, slots=True)
class CanonicalMessage:
    """One atomic unit of conversation history."""

    id: str
    agent_id: str
    created_at: float
    kind: MessageKind
    payload: MessagePayload

    SCHEMA: ClassVar[int] = 1

    def __post_init__(self) -> None:
        expected = _PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.kind.value} messages require {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    # ------------------------------------------------------------------
    @property
    def text(self) -> str:
        """Return the displayable text of the message, if any."""
        payload = self.payload
        if isinstance(payload, TextPayload):
            return payload.text
        if isinstance(payload, ToolCallPayload):
            return f"{payload.name}({payload.display_arguments})"
        if isinstance(payload, ToolResultPayload):
            return "" if payload.result is None else str(payload.result)
        if isinstance(payload, StatusPayload):
            return payload.text
        if isinstance(payload, DebugPayload):
            return payload.preview
        return ""

    @property
    def cursor(self) -> str:
        """Return the service id usable as a pagination cursor."""
        return cursor_id(self.id)

    @property
    def is_local(self) -> bool:
        return is_local_id(self.id)

    @property
    def is_provisional(self) -> bool:
        """Return ``True`` for copies the service may still replace.

        Local messages and interrupted stream output stay provisional until
        the service copy arrives through a sync.
        """
        if self.is_local:
            return True
        return isinstance(self.payload, TextPayload) and self.payload.interrupted

    @property
    def is_remote(self) -> bool:
        """Return ``True`` when the id can be sent back to the service."""
        return not self.is_local and not self.id.startswith(SYNTHETIC_ID_PREFIX)

    def with_created_at(self, created_at: float) -> CanonicalMessage:
        return replace(self, created_at=created_at)

    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-compatible representation."""
        payload = {
            name: make_json_safe(getattr(self.payload, name))
            for name in self.payload.__dataclass_fields__
        }
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "created_at": self.created_at,
            "kind": self.kind.value,
            "payload": payload,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CanonicalMessage:
        """Rebuild a message serialised with :meth:`to_dict`.

        Raises :class:`ValueError` when *data* does not describe a message.
        """
        try:
            kind = MessageKind(data["kind"])
            message_id = str(data["id"])
            agent_id = str(data["agent_id"])
            created_at = float(data["created_at"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid serialized message: {exc}") from exc
        raw_payload = data.get("payload")
        if not isinstance(raw_payload, Mapping):
            raise ValueError("Serialized message payload must be a mapping")
        payload_cls = _PAYLOAD_TYPES[kind]
        known = payload_cls.__dataclass_fields__
        try:
            payload = payload_cls(
                **{key: value for key, value in raw_payload.items() if key in known}
            )
        except TypeError as exc:
            raise ValueError(f"Invalid {kind.value} payload: {exc}") from exc
        return cls(
            id=message_id,
            agent_id=agent_id,
            created_at=created_at,
            kind=kind,
            payload=payload,
        )


def sort_key(message: CanonicalMessage) -> tuple[float, str]:
    """Ordering key used by every history cache."""
    return (message.created_at, message.id)


def new_local_id() -> str:
    """Return a provisional id for messages produced on this client."""
    return f"{LOCAL_ID_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def is_local_id(message_id: str | None) -> bool:
    return bool(message_id) and message_id.startswith(LOCAL_ID_PREFIX)


def cursor_id(message_id: str) -> str:
    """Strip the ``#kind`` disambiguation suffix from *message_id*."""
    return message_id.split(_KIND_SEPARATOR, 1)[0]


def disambiguate_id(raw_id: str, kind: MessageKind) -> str:
    """Return the canonical id for a raw id shared by several kinds."""
    return f"{raw_id}{_KIND_SEPARATOR}{kind.value}"


def parse_arguments(text: str) -> tuple[Any, str | None]:
    """Parse tool-call arguments returning ``(value, error)``.

    Empty text means a call without arguments.
    """
    if not text.strip():
        return {}, None
    try:
        return json.loads(text), None
    except ValueError as exc:
        return None, str(exc)
