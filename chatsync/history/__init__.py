"""Per-agent conversation history cache with remote synchronization."""

from .cache import AgentConversationCache, merge_messages
from .storage import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .store import HistoryCacheStore, history_key

__all__ = [
    "AgentConversationCache",
    "HistoryCacheStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SQLiteKeyValueStore",
    "history_key",
    "merge_messages",
]
