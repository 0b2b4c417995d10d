"""Per-agent conversation cache and its merge helpers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..messages import CanonicalMessage, sort_key

__all__ = ["AgentConversationCache", "CACHE_SCHEMA_VERSION", "merge_messages"]

CACHE_SCHEMA_VERSION = 1


def merge_messages(
    existing: Iterable[CanonicalMessage],
    incoming: Iterable[CanonicalMessage],
) -> list[CanonicalMessage]:
    """Return the union of both sequences sorted by ``(created_at, id)``.

    Messages from *incoming* replace existing ones sharing their id.
    """
    by_id: dict[str, CanonicalMessage] = {message.id: message for message in existing}
    for message in incoming:
        by_id[message.id] = message
    return sorted(by_id.values(), key=sort_key)


def _is_sorted(messages: list[CanonicalMessage]) -> bool:
    return all(
        sort_key(prev) < sort_key(curr) for prev, curr in zip(messages, messages[1:])
    )


@dataclass
class AgentConversationCache:
    """Messages and sync cursors for one agent."""

    agent_id: str
    messages: list[CanonicalMessage] = field(default_factory=list)
    newest_seen_id: str | None = None
    oldest_loaded_id: str | None = None
    has_more_older: bool = False
    last_synced_at: float | None = None

    # ------------------------------------------------------------------
    def copy(self) -> AgentConversationCache:
        return AgentConversationCache(
            agent_id=self.agent_id,
            messages=list(self.messages),
            newest_seen_id=self.newest_seen_id,
            oldest_loaded_id=self.oldest_loaded_id,
            has_more_older=self.has_more_older,
            last_synced_at=self.last_synced_at,
        )

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def ids(self) -> set[str]:
        return {message.id for message in self.messages}

    @property
    def newest_remote_cursor(self) -> str | None:
        """Return the cursor incremental syncs continue from.

        This is the newest service-issued message preceding the first
        provisional one, so the service copies of local messages and of
        interrupted stream output are fetched again.
        """
        cursor = None
        for message in self.messages:
            if message.is_provisional:
                break
            if message.is_remote:
                cursor = message.cursor
        return cursor

    @property
    def oldest_remote_cursor(self) -> str | None:
        for message in self.messages:
            if message.is_remote:
                return message.cursor
        return None

    # ------------------------------------------------------------------
    def replace_messages(self, messages: Iterable[CanonicalMessage]) -> None:
        self.messages = merge_messages((), messages)
        self.refresh_cursors()

    def append(self, messages: Iterable[CanonicalMessage]) -> None:
        """Append *messages*, merging only when ordering requires it."""
        known = self.ids
        fresh = [message for message in messages if message.id not in known]
        candidate = self.messages + fresh
        if not _is_sorted(candidate):
            candidate = merge_messages(self.messages, fresh)
        self.messages = candidate
        self.refresh_cursors()

    def prepend(self, messages: Iterable[CanonicalMessage]) -> None:
        known = self.ids
        fresh = [message for message in messages if message.id not in known]
        self.messages = merge_messages(self.messages, fresh)
        self.refresh_cursors()

    def refresh_cursors(self) -> None:
        if self.messages:
            self.newest_seen_id = self.messages[-1].id
            self.oldest_loaded_id = self.messages[0].id
        else:
            self.newest_seen_id = None
            self.oldest_loaded_id = None

    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": CACHE_SCHEMA_VERSION,
            "agent_id": self.agent_id,
            "messages": [message.to_dict() for message in self.messages],
            "newest_seen_id": self.newest_seen_id,
            "oldest_loaded_id": self.oldest_loaded_id,
            "has_more_older": self.has_more_older,
            "last_synced_at": self.last_synced_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentConversationCache:
        """Rebuild a cache from :meth:`to_dict` output.

        Individual messages that fail to deserialize are skipped; a
        :class:`ValueError` is raised when the envelope itself is invalid.
        """
        if not isinstance(data, Mapping):
            raise ValueError("Serialized cache must be a mapping")
        version = data.get("schema_version")
        if version != CACHE_SCHEMA_VERSION:
            raise ValueError(f"Unsupported cache schema version: {version!r}")
        agent_id = data.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id:
            raise ValueError("Serialized cache lacks an agent id")
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list):
            raise ValueError("Serialized cache messages must be a list")
        messages: list[CanonicalMessage] = []
        for raw in raw_messages:
            try:
                message = CanonicalMessage.from_dict(raw)
            except (TypeError, ValueError):
                continue
            if message.agent_id == agent_id:
                messages.append(message)
        last_synced = data.get("last_synced_at")
        cache = cls(
            agent_id=agent_id,
            has_more_older=bool(data.get("has_more_older")),
            last_synced_at=float(last_synced) if isinstance(last_synced, (int, float)) else None,
        )
        cache.replace_messages(messages)
        return cache
