"""Contract between the synchronization core and an agent service."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, runtime_checkable

__all__ = ["AgentTransport", "check_page_bounds"]


@runtime_checkable
class AgentTransport(Protocol):
    """Operations the core needs from the remote agent service.

    Every method raises :class:`~chatsync.transport.errors.TransportError`
    subclasses for structured failures.
    """

    async def list_agents(self) -> list[Mapping[str, Any]]:
        """Return raw agent records visible to the configured credentials."""
        ...

    async def fetch_messages_page(
        self,
        agent_id: str,
        *,
        before: str | None = None,
        after: str | None = None,
        limit: int,
    ) -> list[Any]:
        """Return one page of raw messages bounded by *before* or *after*."""
        ...

    def open_message_stream(self, agent_id: str, user_input: str) -> AsyncIterator[Any]:
        """Send *user_input* and iterate over raw stream events."""
        ...


def check_page_bounds(before: str | None, after: str | None, limit: int) -> None:
    """Validate arguments of :meth:`AgentTransport.fetch_messages_page`."""
    if before is not None and after is not None:
        raise ValueError("'before' and 'after' are mutually exclusive")
    if limit <= 0:
        raise ValueError("limit must be positive")
