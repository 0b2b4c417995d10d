"""Synchronize per-agent conversation caches with the remote service."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from ..messages import CanonicalMessage, sort_key
from ..normalizer import normalize_batch
from ..settings import HistorySettings
from ..telemetry import log_event
from ..transport.errors import TransportError
from .cache import AgentConversationCache

if TYPE_CHECKING:
    from ..context import SessionContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

KEY_PREFIX = "history:"
# Upper bound on pages walked by a single incremental sync.
_MAX_INCREMENTAL_PAGES = 20
# Gap inserted when a local message would otherwise sort before the tail.
_CLAMP_STEP = 0.001


def history_key(agent_id: str) -> str:
    return f"{KEY_PREFIX}{agent_id}"


class HistoryCacheStore:
    """Own the in-memory caches of every agent and their persisted copies.

    Every mutating operation works on a copy of the cache and only commits
    it once the network part succeeded, so a failing fetch leaves both the
    in-memory and the persisted state untouched.
    """

    def __init__(self, context: SessionContext) -> None:
        self._context = context
        self._caches: dict[str, AgentConversationCache] = {}
        self._restored: set[str] = set()

    # ------------------------------------------------------------------
    @property
    def settings(self) -> HistorySettings:
        return self._context.settings.history

    def messages(self, agent_id: str) -> list[CanonicalMessage]:
        """Return a copy of the cached messages for *agent_id*."""
        cache = self._lookup(agent_id)
        return list(cache.messages) if cache is not None else []

    def get_cache(self, agent_id: str) -> AgentConversationCache | None:
        """Return a snapshot of the cache for *agent_id*; never raises."""
        try:
            cache = self._lookup(agent_id)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to read history cache for %s", agent_id)
            return None
        return cache.copy() if cache is not None else None

    # ------------------------------------------------------------------
    async def full_sync(
        self, agent_id: str, page_size: int | None = None
    ) -> list[CanonicalMessage]:
        """Replace the cache with the newest *page_size* messages."""
        size = page_size or self.settings.page_size
        start = time.monotonic()
        raws = await self._fetch(
            agent_id,
            "full",
            lambda: self._context.transport.fetch_messages_page(agent_id, limit=size),
        )
        messages = normalize_batch(raws, agent_id=agent_id, now=self._context.clock)
        cache = AgentConversationCache(agent_id=agent_id)
        cache.replace_messages(messages)
        cache.has_more_older = len(raws) == size
        cache.last_synced_at = self._context.clock()
        self._trim_cache(cache, self.settings.max_messages)
        self._commit(cache)
        log_event(
            "HISTORY_SYNC",
            {
                "agent_id": agent_id,
                "mode": "full",
                "fetched": len(raws),
                "cached": len(cache),
                "has_more_older": cache.has_more_older,
            },
            start_time=start,
        )
        return list(cache.messages)

    # ------------------------------------------------------------------
    async def fetch_incremental(self, agent_id: str) -> list[CanonicalMessage]:
        """Fetch messages newer than the newest cached one.

        Pages are walked oldest first until a short page arrives.  Returns
        only the newly cached messages; an empty list leaves the cache
        untouched.  Provisional messages (local ones and interrupted stream
        output) are dropped once the service reports anything newer, as it
        then holds their authoritative copies.
        """
        cache = self._lookup(agent_id)
        if cache is None or cache.newest_seen_id is None:
            return []
        cursor = cache.newest_remote_cursor
        if cursor is None:
            return []
        size = self.settings.page_size
        start = time.monotonic()
        known = {message.id for message in cache.messages if not message.is_provisional}
        fetched: list[CanonicalMessage] = []
        for _ in range(_MAX_INCREMENTAL_PAGES):
            after = cursor
            raws = await self._fetch(
                agent_id,
                "incremental",
                lambda: self._context.transport.fetch_messages_page(
                    agent_id, after=after, limit=size
                ),
            )
            page = normalize_batch(raws, agent_id=agent_id, now=self._context.clock)
            for message in page:
                if message.id not in known:
                    known.add(message.id)
                    fetched.append(message)
            if len(raws) < size:
                break
            remote = [message.cursor for message in page if message.is_remote]
            if not remote or remote[-1] == cursor:
                break
            cursor = remote[-1]
        else:
            logger.warning(
                "Incremental sync for %s stopped after %d pages",
                agent_id,
                _MAX_INCREMENTAL_PAGES,
            )

        if not fetched:
            log_event(
                "HISTORY_SYNC",
                {"agent_id": agent_id, "mode": "incremental", "fetched": 0},
                start_time=start,
                level=logging.DEBUG,
            )
            return []
        working = cache.copy()
        working.messages = [
            message for message in working.messages if not message.is_provisional
        ]
        working.append(fetched)
        working.last_synced_at = self._context.clock()
        self._trim_cache(working, self.settings.max_messages)
        self._commit(working)
        log_event(
            "HISTORY_SYNC",
            {
                "agent_id": agent_id,
                "mode": "incremental",
                "fetched": len(fetched),
                "cached": len(working),
            },
            start_time=start,
        )
        return sorted(fetched, key=sort_key)

    # ------------------------------------------------------------------
    async def load_older(
        self, agent_id: str, page_size: int | None = None
    ) -> list[CanonicalMessage]:
        """Prepend the page preceding the oldest loaded message."""
        cache = self._lookup(agent_id)
        if cache is None or not cache.has_more_older or cache.oldest_loaded_id is None:
            return []
        cursor = cache.oldest_remote_cursor
        if cursor is None:
            return []
        size = page_size or self.settings.page_size
        start = time.monotonic()
        raws = await self._fetch(
            agent_id,
            "older",
            lambda: self._context.transport.fetch_messages_page(
                agent_id, before=cursor, limit=size
            ),
        )
        page = normalize_batch(raws, agent_id=agent_id, now=self._context.clock)
        known = cache.ids
        fresh = [message for message in page if message.id not in known]
        working = cache.copy()
        working.prepend(fresh)
        working.has_more_older = len(raws) == size
        working.last_synced_at = self._context.clock()
        self._commit(working)
        log_event(
            "HISTORY_SYNC",
            {
                "agent_id": agent_id,
                "mode": "older",
                "fetched": len(raws),
                "cached": len(working),
                "has_more_older": working.has_more_older,
            },
            start_time=start,
        )
        return fresh

    # ------------------------------------------------------------------
    async def smart_load(
        self, agent_id: str, force_refresh: bool = False
    ) -> list[CanonicalMessage]:
        """Return the full history, syncing only what is missing."""
        cache = self._lookup(agent_id)
        if (
            force_refresh
            or not self.settings.enabled
            or cache is None
            or not cache.messages
            or cache.newest_remote_cursor is None
        ):
            return await self.full_sync(agent_id)
        await self.fetch_incremental(agent_id)
        return self.messages(agent_id)

    # ------------------------------------------------------------------
    def append_local(self, agent_id: str, message: CanonicalMessage) -> CanonicalMessage:
        """Append a locally produced *message* and return the stored copy.

        The creation time is moved forward when needed so the message sorts
        after everything already cached.
        """
        if message.agent_id != agent_id:
            raise ValueError(
                f"Message belongs to agent {message.agent_id!r}, not {agent_id!r}"
            )
        cache = self._lookup(agent_id)
        if cache is None:
            cache = AgentConversationCache(agent_id=agent_id)
        working = cache.copy()
        existing = next((item for item in working.messages if item.id == message.id), None)
        if existing is not None:
            if existing.is_remote and not existing.is_provisional:
                return existing
            working.messages.remove(existing)
        if working.messages:
            last = working.messages[-1]
            if sort_key(message) <= sort_key(last):
                message = message.with_created_at(last.created_at + _CLAMP_STEP)
        working.messages.append(message)
        working.refresh_cursors()
        self._trim_cache(working, self.settings.max_messages)
        self._commit(working)
        return message

    # ------------------------------------------------------------------
    def trim(self, agent_id: str, max_messages: int | None = None) -> list[CanonicalMessage]:
        """Evict the oldest messages above *max_messages*; return them."""
        limit = self.settings.max_messages if max_messages is None else max_messages
        if limit < 0:
            raise ValueError("max_messages must not be negative")
        cache = self._lookup(agent_id)
        if cache is None or len(cache) <= limit:
            return []
        working = cache.copy()
        evicted = self._trim_cache(working, limit)
        self._commit(working)
        return evicted

    # ------------------------------------------------------------------
    def clear(self, agent_id: str) -> None:
        """Forget the cache of *agent_id* in memory and on disk."""
        self._caches.pop(agent_id, None)
        self._restored.add(agent_id)
        self._delete_persisted(history_key(agent_id))

    def clear_all(self) -> None:
        self._caches.clear()
        self._restored.clear()
        try:
            keys = self._context.storage.keys(KEY_PREFIX)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to list persisted histories")
            return
        for key in keys:
            self._delete_persisted(key)

    # ------------------------------------------------------------------
    def _lookup(self, agent_id: str) -> AgentConversationCache | None:
        cache = self._caches.get(agent_id)
        if cache is not None:
            return cache
        if agent_id in self._restored or not self.settings.enabled:
            return None
        self._restored.add(agent_id)
        cache = self._restore(agent_id)
        if cache is not None:
            self._caches[agent_id] = cache
        return cache

    def _restore(self, agent_id: str) -> AgentConversationCache | None:
        key = history_key(agent_id)
        try:
            raw = self._context.storage.get(key)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to load persisted history for %s", agent_id)
            return None
        if raw is None:
            return None
        try:
            cache = AgentConversationCache.from_dict(json.loads(raw))
        except ValueError as exc:
            self._handle_corrupted_cache(agent_id, raw, exc)
            return None
        if cache.agent_id != agent_id:
            self._handle_corrupted_cache(
                agent_id, raw, ValueError(f"cache belongs to {cache.agent_id!r}")
            )
            return None
        return cache

    def _handle_corrupted_cache(self, agent_id: str, raw: Any, exc: Exception) -> None:
        preview = raw if isinstance(raw, str) else repr(raw)
        if len(preview) > 200:
            preview = preview[:200] + "…"
        logger.warning(
            "Pruning corrupted history cache for %s: %s (payload preview: %s)",
            agent_id,
            exc,
            preview,
        )
        self._delete_persisted(history_key(agent_id))

    def _delete_persisted(self, key: str) -> None:
        try:
            self._context.storage.delete(key)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("Failed to delete persisted history %s", key)

    def _commit(self, cache: AgentConversationCache) -> None:
        self._caches[cache.agent_id] = cache
        self._restored.add(cache.agent_id)
        if not self.settings.enabled:
            return
        snapshot = cache
        if len(cache) > self.settings.max_messages:
            snapshot = cache.copy()
            self._trim_cache(snapshot, self.settings.max_messages, quiet=True)
        payload = json.dumps(snapshot.to_dict(), ensure_ascii=False)
        try:
            self._context.storage.set(history_key(cache.agent_id), payload)
        except Exception:
            logger.exception("Failed to persist history for %s", cache.agent_id)

    def _trim_cache(
        self, cache: AgentConversationCache, limit: int, *, quiet: bool = False
    ) -> list[CanonicalMessage]:
        overflow = len(cache.messages) - limit
        if overflow <= 0:
            return []
        evicted = cache.messages[:overflow]
        cache.messages = cache.messages[overflow:]
        cache.has_more_older = True
        cache.refresh_cursors()
        if not quiet:
            log_event(
                "HISTORY_TRIM",
                {
                    "agent_id": cache.agent_id,
                    "evicted": len(evicted),
                    "remaining": len(cache.messages),
                },
            )
        return evicted

    async def _fetch(
        self,
        agent_id: str,
        mode: str,
        request: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            return await request()
        except Exception as exc:
            error = exc.to_dict() if isinstance(exc, TransportError) else repr(exc)
            log_event(
                "HISTORY_SYNC_FAILED",
                {"agent_id": agent_id, "mode": mode, "error": error},
                level=logging.WARNING,
            )
            raise


__all__ = ["HistoryCacheStore", "KEY_PREFIX", "history_key"]
