"""Callbacks through which the session reports to a user interface."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from .messages import CanonicalMessage
from .streaming.events import TurnUpdate

__all__ = ["ConversationPresenter", "NullPresenter"]


@runtime_checkable
class ConversationPresenter(Protocol):
    """Receiver of conversation changes.

    ``on_turn_update`` gets live snapshots of the streamed response and may
    be throttled; ``on_turn_finalized`` gets every message once it is stored
    in the history cache, in order.
    """

    def on_history_loaded(
        self, agent_id: str, messages: Sequence[CanonicalMessage]
    ) -> None: ...

    def on_older_history_loaded(
        self, agent_id: str, messages: Sequence[CanonicalMessage]
    ) -> None: ...

    def on_turn_update(self, update: TurnUpdate) -> None: ...

    def on_turn_finalized(
        self, agent_id: str, messages: Sequence[CanonicalMessage]
    ) -> None: ...

    def on_status(self, agent_id: str | None, text: str) -> None: ...


class NullPresenter:
    """Presenter ignoring every notification."""

    def on_history_loaded(self, agent_id, messages) -> None:
        pass

    def on_older_history_loaded(self, agent_id, messages) -> None:
        pass

    def on_turn_update(self, update) -> None:
        pass

    def on_turn_finalized(self, agent_id, messages) -> None:
        pass

    def on_status(self, agent_id, text) -> None:
        pass
