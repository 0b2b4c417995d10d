"""Typed stream chunks and turn updates exchanged during streaming."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..messages import CanonicalMessage, UsagePayload

__all__ = [
    "ChunkKind",
    "Phase",
    "StreamChunk",
    "ToolCallView",
    "TurnUpdate",
    "UpdateKind",
]


class ChunkKind(str, Enum):
    """Kinds of normalized stream chunks."""

    REASONING = "reasoning-delta"
    TOOL_CALL = "tool-call-delta"
    TOOL_RETURN = "tool-return"
    ASSISTANT = "assistant-text-delta"
    USAGE = "usage"
    STATUS = "status"
    DONE = "done"
    ERROR = "error"


class Phase(str, Enum):
    """Presentation phase of the turn currently being streamed."""

    IDLE = "idle"
    REASONING = "reasoning"
    GENERATING = "generating"
    INVOKING_TOOL = "invoking-tool"


class UpdateKind(str, Enum):
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    TOOL_INTERACTION = "tool-interaction"
    ASSISTANT = "assistant"
    METADATA = "metadata"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """One normalized unit of a streamed response.

    ``text`` carries the delta for reasoning, assistant and tool-call
    chunks (the argument fragment in the latter case) and the human
    readable message for status and error chunks.
    """

    kind: ChunkKind
    text: str = ""
    call_id: str | None = None
    name: str | None = None
    result: Any = None
    status: str | None = None
    message_id: str | None = None
    created_at: float | None = None
    usage: UsagePayload | None = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def status_chunk(cls, text: str, **detail: Any) -> StreamChunk:
        return cls(kind=ChunkKind.STATUS, text=text, detail=dict(detail))

    @property
    def is_terminal(self) -> bool:
        return self.kind is ChunkKind.DONE


@dataclass(frozen=True, slots=True)
class ToolCallView:
    """Live view of a tool call whose arguments are still streaming."""

    call_id: str | None
    name: str | None
    arguments_text: str


@dataclass(frozen=True, slots=True)
class TurnUpdate:
    """Snapshot emitted by the assembler after consuming a chunk."""

    kind: UpdateKind
    phase: Phase
    agent_id: str
    text: str = ""
    reasoning: str = ""
    tool_call: ToolCallView | None = None
    messages: tuple[CanonicalMessage, ...] = ()
    final: bool = False
    interrupted: bool = False

    @property
    def is_live(self) -> bool:
        """Return ``True`` for updates that may be coalesced before rendering."""
        return not self.messages and not self.final
