"""Conversation controller wiring history, streaming and presentation."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

from .context import SessionContext
from .history.store import HistoryCacheStore
from .messages import CanonicalMessage, MessageKind, TextPayload
from .normalizer import normalize_chunks
from .presentation import ConversationPresenter, NullPresenter
from .streaming.assembler import StreamAssembler
from .streaming.coordinator import CancellationCoordinator, RequestToken
from .streaming.events import ChunkKind, StreamChunk, TurnUpdate
from .streaming.render import RenderThrottle
from .streaming.retry import RetryConfig, RetryController, StreamOutcome
from .telemetry import log_event
from .transport.errors import AuthenticationError, classify_exception, describe_failure

logger = logging.getLogger(__name__)

__all__ = ["ConversationController"]


class ConversationController:
    """Drive one conversation at a time against the agent service.

    The controller owns the history store, the retry controller and the
    cancellation coordinator, and routes everything the user should see to
    its presenter.  All methods are meant to run on a single event loop.
    """

    def __init__(
        self,
        context: SessionContext,
        presenter: ConversationPresenter | None = None,
    ) -> None:
        self._context = context
        self.presenter: ConversationPresenter = presenter or NullPresenter()
        self.history = HistoryCacheStore(context)
        self.retry = RetryController(RetryConfig.from_settings(context.settings.stream))
        self.coordinator = CancellationCoordinator()
        self.agent_id: str | None = None
        self.connected = False
        self._assembler: StreamAssembler | None = None
        self._throttle: RenderThrottle | None = None

    # ------------------------------------------------------------------
    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def assembler(self) -> StreamAssembler | None:
        return self._assembler

    async def close(self) -> None:
        aclose = getattr(self._context.transport, "aclose", None)
        if aclose is not None:
            await aclose()

    # ------------------------------------------------------------------
    async def list_agents(self) -> list[Mapping[str, Any]]:
        try:
            agents = await self._context.transport.list_agents()
        except Exception as exc:
            self._handle_failure(exc)
            raise
        self.connected = True
        return list(agents)

    async def select_agent(self) -> str:
        """Return the configured agent id, else the first listed agent."""
        configured = self._context.settings.service.agent_id
        if configured:
            return configured
        for agent in await self.list_agents():
            agent_id = agent.get("id") if isinstance(agent, Mapping) else None
            if agent_id:
                return str(agent_id)
        raise LookupError("The agent service has no agents")

    # ------------------------------------------------------------------
    async def open(
        self, agent_id: str | None = None, force_refresh: bool = False
    ) -> list[CanonicalMessage]:
        """Make *agent_id* the active conversation and load its history."""
        if agent_id is None:
            agent_id = await self.select_agent()
        if agent_id != self.agent_id:
            # Late chunks of the previous conversation must not reopen its turn.
            self.coordinator.stop("switched")
            self._finish_open_turn()
            self.agent_id = agent_id
            self._assembler = StreamAssembler(self._context, agent_id)
        try:
            messages = await self.history.smart_load(agent_id, force_refresh=force_refresh)
        except Exception as exc:
            self._handle_failure(exc)
            raise
        self.connected = True
        self.presenter.on_history_loaded(agent_id, messages)
        return messages

    async def load_older(self) -> list[CanonicalMessage]:
        agent_id = self._require_agent()
        try:
            messages = await self.history.load_older(agent_id)
        except Exception as exc:
            self._handle_failure(exc)
            raise
        if messages:
            self.presenter.on_older_history_loaded(agent_id, messages)
        return messages

    # ------------------------------------------------------------------
    async def submit(self, text: str) -> StreamOutcome:
        """Send *text* to the active agent and stream the response.

        Returns how the stream ended.  Transport failures are reported to
        the presenter and re-raised once partial output has been finalized.
        A request superseded by a newer one ends silently.
        """
        agent_id = self._require_agent()
        token = self.coordinator.begin(agent_id)
        self._finish_open_turn()
        assembler = self._assembler
        assert assembler is not None
        assembler.begin_turn()
        self._throttle = RenderThrottle(
            self.presenter.on_turn_update, self._context.settings.stream.render_interval
        )

        user_message = CanonicalMessage(
            id=self._context.id_factory(),
            agent_id=agent_id,
            created_at=self._context.clock(),
            kind=MessageKind.USER_TEXT,
            payload=TextPayload(text=text),
        )
        stored = self.history.append_local(agent_id, user_message)
        self.presenter.on_turn_finalized(agent_id, [stored])

        handler = self.coordinator.guard(token, lambda chunk: self._on_chunk(assembler, chunk))
        try:
            outcome = await self.retry.run_streaming_attempt(
                lambda: self._chunks(agent_id, text), handler, token.cancellation
            )
        except Exception as exc:
            if not self.coordinator.admit(token, "error"):
                return StreamOutcome.CANCELLED
            update = assembler.finalize(interrupted=True)
            if update is not None:
                self._deliver(update)
            self._handle_failure(exc)
            self.coordinator.release(token)
            raise
        if self.coordinator.is_current(token):
            update = assembler.finalize()
            if update is not None:
                self._deliver(update)
            self.connected = True
            self.coordinator.release(token)
        return outcome

    def stop(self) -> TurnUpdate | None:
        """Cancel the in-flight request, keeping what was streamed so far."""
        token = self.coordinator.stop("user")
        if token is None:
            return None
        assembler = self._assembler
        update = assembler.finalize(interrupted=True) if assembler is not None else None
        if update is not None:
            self._deliver(update)
        return update

    # ------------------------------------------------------------------
    async def _chunks(self, agent_id: str, text: str) -> AsyncIterator[StreamChunk]:
        stream = self._context.transport.open_message_stream(agent_id, text)
        try:
            async for raw in stream:
                for chunk in normalize_chunks(raw):
                    yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _on_chunk(self, assembler: StreamAssembler, chunk: StreamChunk) -> None:
        if chunk.kind is ChunkKind.STATUS:
            self.presenter.on_status(assembler.agent_id, chunk.text)
            if chunk.detail.get("source") == "retry":
                return
        elif chunk.kind is ChunkKind.ERROR:
            self.presenter.on_status(assembler.agent_id, f"Agent error: {chunk.text}")
        update = assembler.consume(chunk)
        if update is not None:
            self._deliver(update)

    def _deliver(self, update: TurnUpdate) -> None:
        throttle = self._throttle
        if throttle is not None:
            throttle.push(update)
        else:
            self.presenter.on_turn_update(update)
        if not update.messages:
            return
        stored = [self.history.append_local(update.agent_id, message) for message in update.messages]
        self.presenter.on_turn_finalized(update.agent_id, stored)

    def _finish_open_turn(self) -> None:
        assembler = self._assembler
        if assembler is not None and assembler.is_open:
            update = assembler.finalize(interrupted=True)
            if update is not None:
                self._deliver(update)
        if self._throttle is not None:
            self._throttle.flush()

    def _handle_failure(self, exc: BaseException) -> None:
        error = classify_exception(exc)
        if isinstance(error, AuthenticationError):
            self.connected = False
        log_event(
            "SESSION_FAILURE",
            {"agent_id": self.agent_id, "error": error.to_dict()},
            level=logging.WARNING,
        )
        self.presenter.on_status(self.agent_id, describe_failure(error))

    def _require_agent(self) -> str:
        if self.agent_id is None:
            raise RuntimeError("No conversation is open; call open() first")
        return self.agent_id

    def messages(self) -> Sequence[CanonicalMessage]:
        """Return the cached messages of the active conversation."""
        if self.agent_id is None:
            return []
        return self.history.messages(self.agent_id)
