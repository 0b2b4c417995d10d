"""Assemble streamed chunks into turn updates and finalized messages.

The assembler is a small finite-state machine.  :data:`PHASE_TRANSITIONS`
maps every chunk kind to the phase it leads to and :data:`_HANDLERS` to the
method applying its data; ``None`` in the transition table keeps the
current phase.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any

from ..messages import (
    CanonicalMessage,
    MessageKind,
    TextPayload,
    ToolCallPayload,
    ToolResultPayload,
    UsagePayload,
    disambiguate_id,
    parse_arguments,
)
from ..telemetry import log_event
from .events import ChunkKind, Phase, StreamChunk, ToolCallView, TurnUpdate, UpdateKind

if TYPE_CHECKING:
    from ..context import SessionContext

logger = logging.getLogger(__name__)

PHASE_TRANSITIONS: dict[ChunkKind, Phase | None] = {
    ChunkKind.REASONING: Phase.REASONING,
    ChunkKind.TOOL_CALL: Phase.INVOKING_TOOL,
    ChunkKind.TOOL_RETURN: Phase.IDLE,
    ChunkKind.ASSISTANT: Phase.GENERATING,
    ChunkKind.USAGE: None,
    ChunkKind.STATUS: None,
    ChunkKind.ERROR: None,
    ChunkKind.DONE: Phase.IDLE,
}


@dataclass
class ToolCallState:
    """Accumulated fragments of one streamed tool call."""

    call_id: str | None
    name: str | None
    created_at: float
    arguments_text: str = ""
    reasoning: str = ""
    message_id: str | None = None

    def view(self) -> ToolCallView:
        return ToolCallView(
            call_id=self.call_id, name=self.name, arguments_text=self.arguments_text
        )


@dataclass
class StreamTurnState:
    """Ephemeral state of the response currently being streamed."""

    started_at: float
    phase: Phase = Phase.IDLE
    active_tool_call: ToolCallState | None = None
    pending_tool_calls: list[ToolCallState] = field(default_factory=list)
    accumulated_reasoning_text: str = ""
    accumulated_assistant_text: str = ""
    assistant_message_id: str | None = None
    assistant_created_at: float | None = None
    usage: UsagePayload | None = None
    statuses: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    used_ids: set[str] = field(default_factory=set)

    @property
    def active_tool_call_id(self) -> str | None:
        call = self.active_tool_call
        return call.call_id if call is not None else None

    @property
    def accumulated_tool_args(self) -> str:
        call = self.active_tool_call
        return call.arguments_text if call is not None else ""

    @property
    def has_content(self) -> bool:
        return bool(
            self.accumulated_assistant_text
            or self.accumulated_reasoning_text
            or self.active_tool_call is not None
            or self.pending_tool_calls
        )


class StreamAssembler:
    """Turn the chunks of one agent's responses into renderable updates."""

    def __init__(self, context: SessionContext, agent_id: str) -> None:
        self._context = context
        self.agent_id = agent_id
        self._state: StreamTurnState | None = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> StreamTurnState | None:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is not None

    @property
    def phase(self) -> Phase:
        return self._state.phase if self._state is not None else Phase.IDLE

    # ------------------------------------------------------------------
    def begin_turn(self) -> TurnUpdate | None:
        """Open a new turn, force-finalizing a previous one still open.

        Returns the final update of the previous turn when there was one.
        """
        previous = self.finalize() if self._state is not None else None
        self._state = StreamTurnState(started_at=self._context.clock())
        return previous

    def consume(self, chunk: StreamChunk) -> TurnUpdate | None:
        """Apply *chunk* and return the resulting update, if any."""
        if chunk.kind is ChunkKind.DONE:
            return self.finalize()
        if self._state is None:
            self.begin_turn()
        state = self._state
        assert state is not None
        handler = getattr(self, _HANDLERS[chunk.kind])
        update = handler(state, chunk)
        next_phase = PHASE_TRANSITIONS[chunk.kind]
        if next_phase is not None:
            state.phase = next_phase
            if update is not None:
                update = _with_phase(update, next_phase)
        return update

    def finalize(self, interrupted: bool = False) -> TurnUpdate | None:
        """Fold the open turn into canonical messages and reset.

        Returns ``None`` when no turn is open, so calling it twice is safe.
        """
        state = self._state
        if state is None:
            return None
        self._state = None
        messages: list[CanonicalMessage] = []
        for call in [*state.pending_tool_calls, state.active_tool_call]:
            if call is not None:
                messages.append(self._tool_call_message(state, call))
        if state.accumulated_assistant_text or state.accumulated_reasoning_text:
            messages.append(self._assistant_message(state, interrupted))
        return TurnUpdate(
            kind=UpdateKind.FINALIZED,
            phase=Phase.IDLE,
            agent_id=self.agent_id,
            text=state.accumulated_assistant_text,
            reasoning=state.accumulated_reasoning_text,
            messages=tuple(messages),
            final=True,
            interrupted=interrupted,
        )

    # ------------------------------------------------------------------
    def _on_reasoning(self, state: StreamTurnState, chunk: StreamChunk) -> TurnUpdate:
        state.accumulated_reasoning_text += chunk.text
        return self._live(state, UpdateKind.REASONING)

    def _on_assistant(self, state: StreamTurnState, chunk: StreamChunk) -> TurnUpdate:
        state.accumulated_assistant_text += chunk.text
        if state.assistant_message_id is None and chunk.message_id:
            state.assistant_message_id = chunk.message_id
        if state.assistant_created_at is None and chunk.created_at is not None:
            state.assistant_created_at = chunk.created_at
        return self._live(state, UpdateKind.ASSISTANT)

    def _on_tool_call(self, state: StreamTurnState, chunk: StreamChunk) -> TurnUpdate:
        active = state.active_tool_call
        if chunk.call_id is not None and (
            active is None
            or (active.call_id is not None and active.call_id != chunk.call_id)
        ):
            resumed = _pop_call(state.pending_tool_calls, chunk.call_id)
            if active is not None:
                state.pending_tool_calls.append(active)
            active = resumed
        if active is None:
            active = ToolCallState(
                call_id=chunk.call_id,
                name=chunk.name,
                created_at=chunk.created_at or self._context.clock(),
                reasoning=state.accumulated_reasoning_text,
                message_id=chunk.message_id,
            )
            state.accumulated_reasoning_text = ""
        if active.call_id is None and chunk.call_id is not None:
            active.call_id = chunk.call_id
        if not active.name and chunk.name:
            active.name = chunk.name
        if active.message_id is None and chunk.message_id:
            active.message_id = chunk.message_id
        active.arguments_text += chunk.text
        state.active_tool_call = active
        return self._live(state, UpdateKind.TOOL_CALL, tool_call=active.view())

    def _on_tool_return(self, state: StreamTurnState, chunk: StreamChunk) -> TurnUpdate:
        call = self._take_matching_call(state, chunk.call_id)
        messages: list[CanonicalMessage] = []
        if call is not None:
            messages.append(self._tool_call_message(state, call))
        else:
            logger.debug("Tool return %s has no matching call", chunk.call_id)
        name = chunk.name or (call.name if call is not None else None)
        call_id = chunk.call_id or (call.call_id if call is not None else None)
        messages.append(
            CanonicalMessage(
                id=self._claim_id(state, chunk.message_id, MessageKind.TOOL_RESULT),
                agent_id=self.agent_id,
                created_at=chunk.created_at or self._context.clock(),
                kind=MessageKind.TOOL_RESULT,
                payload=ToolResultPayload(
                    name=name, call_id=call_id, status=chunk.status, result=chunk.result
                ),
            )
        )
        return TurnUpdate(
            kind=UpdateKind.TOOL_INTERACTION,
            phase=state.phase,
            agent_id=self.agent_id,
            text=state.accumulated_assistant_text,
            reasoning=state.accumulated_reasoning_text,
            messages=tuple(messages),
        )

    def _on_usage(self, state: StreamTurnState, chunk: StreamChunk) -> None:
        if chunk.usage is not None:
            state.usage = chunk.usage

    def _on_status(self, state: StreamTurnState, chunk: StreamChunk) -> None:
        entry: dict[str, Any] = {"text": chunk.text}
        if chunk.detail:
            entry.update(chunk.detail)
        state.statuses.append(entry)

    def _on_error(self, state: StreamTurnState, chunk: StreamChunk) -> None:
        state.errors.append(chunk.text)

    # ------------------------------------------------------------------
    def _live(
        self,
        state: StreamTurnState,
        kind: UpdateKind,
        *,
        tool_call: ToolCallView | None = None,
    ) -> TurnUpdate:
        if tool_call is None and state.active_tool_call is not None:
            tool_call = state.active_tool_call.view()
        return TurnUpdate(
            kind=kind,
            phase=state.phase,
            agent_id=self.agent_id,
            text=state.accumulated_assistant_text,
            reasoning=state.accumulated_reasoning_text,
            tool_call=tool_call,
        )

    def _take_matching_call(
        self, state: StreamTurnState, call_id: str | None
    ) -> ToolCallState | None:
        active = state.active_tool_call
        if call_id is None:
            if active is not None:
                state.active_tool_call = None
                return active
            return state.pending_tool_calls.pop(0) if state.pending_tool_calls else None
        if active is not None and active.call_id == call_id:
            state.active_tool_call = None
            return active
        pending = _pop_call(state.pending_tool_calls, call_id)
        if pending is not None:
            return pending
        if active is not None and active.call_id is None:
            state.active_tool_call = None
            return active
        return None

    def _claim_id(
        self, state: StreamTurnState, raw_id: str | None, kind: MessageKind
    ) -> str:
        if raw_id:
            if raw_id not in state.used_ids:
                state.used_ids.add(raw_id)
                return raw_id
            candidate = disambiguate_id(raw_id, kind)
            if candidate not in state.used_ids:
                state.used_ids.add(candidate)
                return candidate
        candidate = self._context.id_factory()
        state.used_ids.add(candidate)
        return candidate

    def _tool_call_message(
        self, state: StreamTurnState, call: ToolCallState
    ) -> CanonicalMessage:
        arguments, error = parse_arguments(call.arguments_text)
        if error is not None:
            log_event(
                "TOOL_ARGUMENTS_INVALID",
                {
                    "agent_id": self.agent_id,
                    "call_id": call.call_id,
                    "tool": call.name,
                    "error": error,
                    "arguments": call.arguments_text,
                },
                level=logging.WARNING,
            )
        return CanonicalMessage(
            id=self._claim_id(state, call.message_id, MessageKind.TOOL_CALL),
            agent_id=self.agent_id,
            created_at=call.created_at,
            kind=MessageKind.TOOL_CALL,
            payload=ToolCallPayload(
                name=call.name or "unknown",
                call_id=call.call_id,
                arguments_text=call.arguments_text,
                arguments=arguments,
                parse_error=error,
                reasoning=call.reasoning,
            ),
        )

    def _assistant_message(
        self, state: StreamTurnState, interrupted: bool
    ) -> CanonicalMessage:
        metadata: dict[str, Any] = {}
        if state.usage is not None:
            metadata["usage"] = asdict(state.usage)
        if state.statuses:
            metadata["statuses"] = list(state.statuses)
        if state.errors:
            metadata["errors"] = list(state.errors)
        created_at = state.assistant_created_at
        if created_at is None:
            created_at = self._context.clock()
        return CanonicalMessage(
            id=self._claim_id(state, state.assistant_message_id, MessageKind.ASSISTANT_TEXT),
            agent_id=self.agent_id,
            created_at=created_at,
            kind=MessageKind.ASSISTANT_TEXT,
            payload=TextPayload(
                text=state.accumulated_assistant_text,
                reasoning=state.accumulated_reasoning_text,
                interrupted=interrupted,
                metadata=metadata,
            ),
        )


_HANDLERS: dict[ChunkKind, str] = {
    ChunkKind.REASONING: "_on_reasoning",
    ChunkKind.TOOL_CALL: "_on_tool_call",
    ChunkKind.TOOL_RETURN: "_on_tool_return",
    ChunkKind.ASSISTANT: "_on_assistant",
    ChunkKind.USAGE: "_on_usage",
    ChunkKind.STATUS: "_on_status",
    ChunkKind.ERROR: "_on_error",
}


def _pop_call(calls: list[ToolCallState], call_id: str | None) -> ToolCallState | None:
    if call_id is None:
        return None
    for index, call in enumerate(calls):
        if call.call_id == call_id:
            return calls.pop(index)
    return None


def _with_phase(update: TurnUpdate, phase: Phase) -> TurnUpdate:
    if update.phase is phase:
        return update
    return replace(update, phase=phase)


__all__ = [
    "PHASE_TRANSITIONS",
    "StreamAssembler",
    "StreamTurnState",
    "ToolCallState",
]
