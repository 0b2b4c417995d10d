"""Frame-rate batching of live turn updates."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from .events import TurnUpdate

__all__ = ["RenderThrottle"]


class RenderThrottle:
    """Deliver live updates at most once per ``interval`` seconds.

    Live updates are cumulative, so only the newest pending one is kept.
    Updates carrying finalized messages are delivered at once, after any
    pending live update, and never coalesced.  An interval of zero or less
    delivers everything directly.
    """

    def __init__(self, deliver: Callable[[TurnUpdate], None], interval: float) -> None:
        self._deliver = deliver
        self.interval = interval
        self._pending: TurnUpdate | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._last_delivery: float | None = None
        self.delivered = 0
        self.coalesced = 0

    # ------------------------------------------------------------------
    def push(self, update: TurnUpdate) -> None:
        if self.interval <= 0:
            self._emit(update)
            return
        if not update.is_live:
            self.flush()
            self._emit(update)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._emit(update)
            return
        if self._pending is not None:
            self.coalesced += 1
        self._pending = update
        if self._handle is not None:
            return
        now = loop.time()
        if self._last_delivery is None or now - self._last_delivery >= self.interval:
            self._flush_pending(now)
            return
        delay = self.interval - (now - self._last_delivery)
        self._handle = loop.call_later(delay, self._on_timer)

    def flush(self) -> None:
        """Deliver the pending live update immediately."""
        self._cancel_timer()
        if self._pending is not None:
            self._flush_pending(None)

    # ------------------------------------------------------------------
    def _on_timer(self) -> None:
        self._handle = None
        if self._pending is not None:
            self._flush_pending(None)

    def _flush_pending(self, now: float | None) -> None:
        update = self._pending
        self._pending = None
        if update is None:
            return
        if now is None:
            try:
                now = asyncio.get_running_loop().time()
            except RuntimeError:
                now = None
        self._last_delivery = now
        self._emit(update)

    def _emit(self, update: TurnUpdate) -> None:
        self.delivered += 1
        self._deliver(update)

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
