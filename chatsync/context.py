"""Explicitly owned collaborators shared by the history and streaming layers."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .messages import new_local_id
from .settings import AppSettings

if TYPE_CHECKING:
    from .history.storage import KeyValueStore
    from .transport.base import AgentTransport


@dataclass(slots=True)
class SessionContext:
    """Bundle of dependencies injected into the core components.

    Tests replace ``clock`` and ``id_factory`` to obtain deterministic
    timestamps and local ids.
    """

    transport: AgentTransport
    storage: KeyValueStore
    settings: AppSettings = field(default_factory=AppSettings)
    clock: Callable[[], float] = time.time
    id_factory: Callable[[], str] = new_local_id


__all__ = ["SessionContext"]
