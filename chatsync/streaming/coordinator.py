"""Request tokens guarding streamed chunks against stale deliveries."""

from __future__ import annotations

import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..telemetry import log_event
from ..util.cancellation import CancellationEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["CancellationCoordinator", "RequestToken"]


@dataclass(frozen=True, slots=True)
class RequestToken:
    """Identity of one outbound request."""

    seq: int
    agent_id: str
    cancellation: CancellationEvent = field(default_factory=CancellationEvent, compare=False)

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_set()


class CancellationCoordinator:
    """Issue request tokens and gate chunk delivery on the current one.

    Starting a request cancels the token of the request it supersedes.
    Anything carrying a stale or cancelled token is dropped by :meth:`admit`
    before it can reach the stream assembler.
    """

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self._current: RequestToken | None = None

    @property
    def current(self) -> RequestToken | None:
        return self._current

    def begin(self, agent_id: str) -> RequestToken:
        previous = self._current
        if previous is not None:
            previous.cancellation.set("superseded")
        token = RequestToken(seq=next(self._seq), agent_id=agent_id)
        self._current = token
        logger.debug("Request %s started for agent %s", token.seq, agent_id)
        return token

    def is_current(self, token: RequestToken) -> bool:
        return self._current is token and not token.cancelled

    def admit(self, token: RequestToken, what: str = "chunk") -> bool:
        """Return ``True`` when data for *token* may still be applied."""
        if self.is_current(token):
            return True
        log_event(
            "STREAM_CHUNK_DROPPED",
            {
                "seq": token.seq,
                "agent_id": token.agent_id,
                "what": what,
                "reason": token.cancellation.reason or "stale",
            },
            level=logging.DEBUG,
        )
        return False

    def guard(
        self,
        token: RequestToken,
        handler: Callable[[T], Awaitable[Any] | Any],
    ) -> Callable[[T], Awaitable[None]]:
        """Wrap *handler* so it only runs while *token* is current."""

        async def guarded(item: T) -> None:
            if not self.admit(token):
                return
            result = handler(item)
            if inspect.isawaitable(result):
                await result

        return guarded

    def stop(self, reason: str = "user") -> RequestToken | None:
        """Cancel the current request and return its token."""
        token = self._current
        if token is None or token.cancelled:
            return None
        token.cancellation.set(reason)
        return token

    def release(self, token: RequestToken) -> None:
        """Forget *token* once its request finished."""
        if self._current is token:
            self._current = None
