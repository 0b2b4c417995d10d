"""Thread-safe cancellation primitives built on :class:`threading.Event`."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

__all__ = [
    "CancellationEvent",
    "CancellationRegistration",
    "OperationCancelledError",
    "raise_if_cancelled",
]

logger = logging.getLogger(__name__)


class OperationCancelledError(RuntimeError):
    """Raised when an in-flight operation is aborted via cancellation."""


class CancellationRegistration:
    """Handle returned by :meth:`CancellationEvent.register`."""

    __slots__ = ("_event", "_callback")

    def __init__(self, event: CancellationEvent, callback: Callable[[], None]) -> None:
        self._event = event
        self._callback: Callable[[], None] | None = callback

    def dispose(self) -> None:
        """Detach the callback; a no-op once cancellation already fired."""
        callback = self._callback
        if callback is None:
            return
        self._callback = None
        self._event._unregister(callback)


class CancellationEvent:
    """Lightweight wrapper around :class:`threading.Event` for cancellations."""

    __slots__ = ("_event", "_lock", "_callbacks", "_reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return ``True`` when cancellation has been requested."""

        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the reason passed to :meth:`set`, if any."""

        return self._reason

    def is_set(self) -> bool:
        """Expose :meth:`threading.Event.is_set`."""

        return self._event.is_set()

    def set(self, reason: str | None = None) -> None:
        """Signal cancellation and run registered callbacks once."""

        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - defensive logging
                logger.exception("Cancellation callback failed")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancellation occurs or *timeout* elapses."""

        return self._event.wait(timeout)

    def register(self, callback: Callable[[], None]) -> CancellationRegistration:
        """Invoke *callback* on cancellation, immediately if already cancelled."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return CancellationRegistration(self, callback)
        callback()
        registration = CancellationRegistration(self, callback)
        registration.dispose()
        return registration

    def _unregister(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    async def sleep(self, delay: float) -> bool:
        """Sleep for *delay* seconds; return ``True`` if cancelled meanwhile."""

        if self._event.is_set():
            return True
        if delay <= 0:
            return self._event.is_set()
        loop = asyncio.get_running_loop()
        woken = loop.create_future()

        def _wake() -> None:
            def _resolve() -> None:
                if not woken.done():
                    woken.set_result(None)

            loop.call_soon_threadsafe(_resolve)

        registration = self.register(_wake)
        try:
            await asyncio.wait_for(woken, timeout=delay)
        except TimeoutError:
            pass
        finally:
            registration.dispose()
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise :class:`OperationCancelledError` if cancellation occurred."""

        if self._event.is_set():
            raise OperationCancelledError(self._reason or "cancelled")


def raise_if_cancelled(cancellation: CancellationEvent | None) -> None:
    """Convenience helper raising when *cancellation* has been signalled."""

    if cancellation is not None:
        cancellation.raise_if_cancelled()
