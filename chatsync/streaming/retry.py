"""Bounded retries with exponential backoff around one streaming request."""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..settings import StreamSettings
from ..telemetry import log_event
from ..transport.errors import classify_exception
from ..util.cancellation import (
    CancellationEvent,
    OperationCancelledError,
    raise_if_cancelled,
)
from .events import StreamChunk

logger = logging.getLogger(__name__)

StreamRequest = Callable[[], AsyncIterator[StreamChunk]]
ChunkHandler = Callable[[StreamChunk], Awaitable[Any] | Any]

__all__ = [
    "ChunkHandler",
    "RetryConfig",
    "RetryController",
    "StreamOutcome",
    "StreamRequest",
    "calculate_backoff",
]


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed-out"


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry policy for streaming requests."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: float = 0.0
    watchdog_seconds: float | None = 30.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def from_settings(cls, settings: StreamSettings) -> RetryConfig:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
            watchdog_seconds=settings.watchdog_seconds,
        )


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """Return the delay before retry number *attempt* (1-indexed).

    The exponential delay is capped at ``max_delay``, scaled by a random
    factor within ``1 ± jitter`` and raised to a larger ``retry_after`` hint.
    """
    delay = min(config.max_delay, config.base_delay * (2 ** (attempt - 1)))
    if config.jitter:
        delay *= random.uniform(1 - config.jitter, 1 + config.jitter)
    if retry_after and retry_after > delay:
        delay = retry_after
    return max(delay, 0.0)


class _Attempt:
    __slots__ = ("number", "delivered")

    def __init__(self, number: int) -> None:
        self.number = number
        self.delivered = 0


_CANCELLED = object()
_TIMED_OUT = object()
_EXHAUSTED = object()


class RetryController:
    """Run a streaming request, retrying transient failures.

    Retries only happen while the failing attempt has not delivered any
    chunk, so output is never duplicated.  Cancellation is a normal outcome:
    :meth:`run_streaming_attempt` returns :attr:`StreamOutcome.CANCELLED`
    instead of raising.
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self.config = config or RetryConfig()

    # ------------------------------------------------------------------
    async def run_streaming_attempt(
        self,
        request: StreamRequest,
        on_chunk: ChunkHandler,
        cancellation: CancellationEvent | None = None,
    ) -> StreamOutcome:
        config = self.config
        start = time.monotonic()
        delivered_total = 0
        attempt_no = 0
        while True:
            attempt_no += 1
            if _is_cancelled(cancellation):
                return self._result(StreamOutcome.CANCELLED, attempt_no - 1, delivered_total, start)
            attempt = _Attempt(attempt_no)
            log_event(
                "STREAM_REQUEST",
                {"attempt": attempt_no, "max_attempts": config.max_attempts},
                level=logging.DEBUG,
            )
            try:
                outcome = await self._stream_once(request, on_chunk, cancellation, attempt)
            except OperationCancelledError:
                delivered_total += attempt.delivered
                return self._result(StreamOutcome.CANCELLED, attempt_no, delivered_total, start)
            except Exception as exc:
                delivered_total += attempt.delivered
                error = classify_exception(exc)
                if (
                    not error.retryable
                    or attempt.delivered
                    or attempt_no > config.max_retries
                ):
                    log_event(
                        "STREAM_RESULT",
                        {
                            "outcome": "error",
                            "attempts": attempt_no,
                            "chunks": delivered_total,
                            "error": error.to_dict(),
                        },
                        start_time=start,
                        level=logging.WARNING,
                    )
                    if error is exc:
                        raise
                    raise error from exc
                delay = calculate_backoff(attempt_no, config, error.retry_after)
                log_event(
                    "STREAM_RETRY",
                    {
                        "attempt": attempt_no,
                        "max_attempts": config.max_attempts,
                        "delay": delay,
                        "error": error.to_dict(),
                    },
                )
                if _is_cancelled(cancellation):
                    return self._result(StreamOutcome.CANCELLED, attempt_no, delivered_total, start)
                await _call(
                    on_chunk,
                    StreamChunk.status_chunk(
                        f"Reconnecting (attempt {attempt_no + 1}/{config.max_attempts})",
                        source="retry",
                        attempt=attempt_no + 1,
                        max_attempts=config.max_attempts,
                        delay=delay,
                    ),
                )
                if await self._wait(delay, cancellation):
                    return self._result(StreamOutcome.CANCELLED, attempt_no, delivered_total, start)
                continue
            delivered_total += attempt.delivered
            return self._result(outcome, attempt_no, delivered_total, start)

    # ------------------------------------------------------------------
    async def _stream_once(
        self,
        request: StreamRequest,
        on_chunk: ChunkHandler,
        cancellation: CancellationEvent | None,
        attempt: _Attempt,
    ) -> StreamOutcome:
        iterator = request().__aiter__()
        try:
            while True:
                if _is_cancelled(cancellation):
                    return StreamOutcome.CANCELLED
                item = await _next_chunk(iterator, cancellation, self.config.watchdog_seconds)
                if item is _EXHAUSTED:
                    return StreamOutcome.COMPLETED
                if item is _CANCELLED:
                    return StreamOutcome.CANCELLED
                if item is _TIMED_OUT:
                    log_event(
                        "STREAM_WATCHDOG",
                        {
                            "attempt": attempt.number,
                            "seconds": self.config.watchdog_seconds,
                            "chunks": attempt.delivered,
                        },
                        level=logging.WARNING,
                    )
                    return StreamOutcome.TIMED_OUT
                raise_if_cancelled(cancellation)
                attempt.delivered += 1
                await _call(on_chunk, item)
                if item.is_terminal:
                    return StreamOutcome.COMPLETED
        finally:
            await _close(iterator)

    async def _wait(self, delay: float, cancellation: CancellationEvent | None) -> bool:
        """Sleep for *delay*; return ``True`` if cancelled meanwhile."""
        if cancellation is not None:
            return await cancellation.sleep(delay)
        if delay > 0:
            await asyncio.sleep(delay)
        return False

    def _result(
        self, outcome: StreamOutcome, attempts: int, chunks: int, start: float
    ) -> StreamOutcome:
        log_event(
            "STREAM_RESULT",
            {"outcome": outcome.value, "attempts": attempts, "chunks": chunks},
            start_time=start,
        )
        return outcome


# ----------------------------------------------------------------------
def _is_cancelled(cancellation: CancellationEvent | None) -> bool:
    return cancellation is not None and cancellation.is_set()


async def _call(handler: ChunkHandler, chunk: StreamChunk) -> None:
    result = handler(chunk)
    if inspect.isawaitable(result):
        await result


async def _pull(iterator: AsyncIterator[StreamChunk]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EXHAUSTED


async def _next_chunk(
    iterator: AsyncIterator[StreamChunk],
    cancellation: CancellationEvent | None,
    timeout: float | None,
) -> Any:
    """Return the next chunk or one of the ``_EXHAUSTED``/``_CANCELLED``/
    ``_TIMED_OUT`` markers, whichever happens first."""
    loop = asyncio.get_running_loop()
    next_task = loop.create_task(_pull(iterator))
    waiters: set[asyncio.Future[Any]] = {next_task}
    cancel_future: asyncio.Future[None] | None = None
    registration = None
    if cancellation is not None:
        cancel_future = loop.create_future()
        future = cancel_future

        def _resolve() -> None:
            if not future.done():
                future.set_result(None)

        registration = cancellation.register(lambda: loop.call_soon_threadsafe(_resolve))
        waiters.add(cancel_future)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if registration is not None:
            registration.dispose()
        if cancel_future is not None and not cancel_future.done():
            cancel_future.cancel()
    if next_task in done:
        return next_task.result()
    next_task.cancel()
    try:
        await next_task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except Exception:
        logger.debug("Abandoned stream read failed", exc_info=True)
    if cancel_future is not None and cancel_future in done:
        return _CANCELLED
    return _TIMED_OUT


async def _close(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # pragma: no cover - defensive logging
        logger.debug("Failed to close stream iterator", exc_info=True)
