import asyncio

import httpx
import pytest

from chatsync.settings import StreamSettings
from chatsync.streaming import retry as retry_module
from chatsync.streaming.events import ChunkKind, StreamChunk
from chatsync.streaming.retry import RetryConfig, RetryController, StreamOutcome, calculate_backoff
from chatsync.transport.errors import (
    AuthenticationError,
    FatalTransportError,
    RateLimitedError,
    TransientTransportError,
)
from chatsync.util.cancellation import CancellationEvent
from tests.fakes import Stall

pytestmark = pytest.mark.unit

FAST = RetryConfig(max_retries=3, base_delay=0.0, max_delay=0.0, watchdog_seconds=5.0)


def text(value: str) -> StreamChunk:
    return StreamChunk(kind=ChunkKind.ASSISTANT, text=value)


DONE = StreamChunk(kind=ChunkKind.DONE)


class Scripted:
    """Request factory replaying one script per attempt."""

    def __init__(self, *scripts) -> None:
        self.scripts = list(scripts)
        self.calls = 0
        self.closed = 0

    def __call__(self):
        script = self.scripts[min(self.calls, len(self.scripts) - 1)]
        self.calls += 1
        return self._play(script)

    async def _play(self, script):
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, Stall):
                    await item.event.wait()
                    continue
                yield item
        finally:
            self.closed += 1


def run(controller: RetryController, request, cancellation=None):
    received: list[StreamChunk] = []

    async def go():
        return await controller.run_streaming_attempt(request, received.append, cancellation)

    return asyncio.run(go()), received


# ----------------------------------------------------------------------
def test_backoff_schedule_is_capped() -> None:
    config = RetryConfig(base_delay=1.0, max_delay=8.0)
    assert [calculate_backoff(n, config) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 8.0]


def test_backoff_respects_larger_retry_after() -> None:
    config = RetryConfig(base_delay=1.0, max_delay=8.0)
    assert calculate_backoff(1, config, retry_after=30.0) == 30.0
    assert calculate_backoff(3, config, retry_after=0.5) == 4.0


def test_backoff_jitter_scales_delay(monkeypatch) -> None:
    seen = []

    def fake_uniform(low, high):
        seen.append((low, high))
        return high

    monkeypatch.setattr(retry_module.random, "uniform", fake_uniform)
    config = RetryConfig(base_delay=2.0, max_delay=8.0, jitter=0.25)

    assert calculate_backoff(1, config) == pytest.approx(2.5)
    assert seen == [(0.75, 1.25)]


def test_config_from_settings() -> None:
    config = RetryConfig.from_settings(StreamSettings(max_retries=5, base_delay=0.5, max_delay=4.0))
    assert config.max_attempts == 6
    assert config.base_delay == 0.5
    assert config.watchdog_seconds == 30.0


# ----------------------------------------------------------------------
def test_completed_stream_delivers_every_chunk() -> None:
    request = Scripted([text("a"), text("b"), DONE, text("ignored")])
    outcome, received = run(RetryController(FAST), request)

    assert outcome is StreamOutcome.COMPLETED
    assert [c.text for c in received] == ["a", "b", ""]
    assert request.closed == 1


def test_transient_failures_before_output_are_retried(events) -> None:
    boom = TransientTransportError("HTTP 503", status_code=503)
    request = Scripted([boom], [boom], [text("ok"), DONE])

    outcome, received = run(RetryController(FAST), request)

    assert outcome is StreamOutcome.COMPLETED
    assert request.calls == 3
    statuses = [c for c in received if c.kind is ChunkKind.STATUS]
    assert [c.text for c in statuses] == ["Reconnecting (attempt 2/4)", "Reconnecting (attempt 3/4)"]
    assert all(c.detail["source"] == "retry" for c in statuses)
    assert received[-2].text == "ok"
    assert len(events("STREAM_RETRY")) == 2


def test_network_errors_are_classified_and_retried() -> None:
    request = Scripted([httpx.ConnectError("refused")], [DONE])
    outcome, _ = run(RetryController(FAST), request)
    assert outcome is StreamOutcome.COMPLETED
    assert request.calls == 2


def test_retry_ceiling() -> None:
    request = Scripted([httpx.ReadTimeout("slow")])

    with pytest.raises(TransientTransportError):
        run(RetryController(FAST), request)
    assert request.calls == FAST.max_attempts


@pytest.mark.parametrize(
    "error",
    [
        AuthenticationError("HTTP 401", status_code=401),
        RateLimitedError("HTTP 429", status_code=429, retry_after=12.0),
        FatalTransportError("HTTP 400", status_code=400),
    ],
)
def test_non_retryable_errors_surface_immediately(error) -> None:
    request = Scripted([error])
    with pytest.raises(type(error)):
        run(RetryController(FAST), request)
    assert request.calls == 1


def test_failure_after_output_is_not_retried() -> None:
    request = Scripted([text("partial"), TransientTransportError("reset")])
    received: list[StreamChunk] = []

    async def go():
        await RetryController(FAST).run_streaming_attempt(request, received.append)

    with pytest.raises(TransientTransportError):
        asyncio.run(go())
    assert request.calls == 1
    assert [c.text for c in received] == ["partial"]


def test_unexpected_exceptions_become_fatal() -> None:
    request = Scripted([KeyError("bug")])
    with pytest.raises(FatalTransportError):
        run(RetryController(FAST), request)


# ----------------------------------------------------------------------
def test_cancelled_before_start_makes_no_request() -> None:
    cancellation = CancellationEvent()
    cancellation.set("user")
    request = Scripted([DONE])

    outcome, received = run(RetryController(FAST), request, cancellation)

    assert outcome is StreamOutcome.CANCELLED
    assert request.calls == 0
    assert received == []


def test_cancellation_stops_delivery_mid_stream() -> None:
    cancellation = CancellationEvent()
    request = Scripted([text("Hel"), text("lo"), text(" world"), DONE])
    received: list[StreamChunk] = []

    def on_chunk(chunk):
        received.append(chunk)
        if len(received) == 2:
            cancellation.set("user")

    async def go():
        return await RetryController(FAST).run_streaming_attempt(request, on_chunk, cancellation)

    assert asyncio.run(go()) is StreamOutcome.CANCELLED
    assert [c.text for c in received] == ["Hel", "lo"]
    assert request.closed == 1


def test_cancellation_while_waiting_for_a_chunk() -> None:
    cancellation = CancellationEvent()
    request = Scripted([text("a"), Stall(), text("never")])

    async def go():
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, cancellation.set, "user")
        return await RetryController(FAST).run_streaming_attempt(request, lambda c: None, cancellation)

    assert asyncio.run(go()) is StreamOutcome.CANCELLED
    assert request.closed == 1


def test_cancellation_during_backoff() -> None:
    cancellation = CancellationEvent()
    config = RetryConfig(max_retries=3, base_delay=60.0, max_delay=60.0)
    request = Scripted([TransientTransportError("reset")])

    def on_chunk(chunk):
        if chunk.kind is ChunkKind.STATUS:
            cancellation.set("user")

    async def go():
        return await asyncio.wait_for(
            RetryController(config).run_streaming_attempt(request, on_chunk, cancellation), 5
        )

    assert asyncio.run(go()) is StreamOutcome.CANCELLED
    assert request.calls == 1


def test_watchdog_ends_silent_stream(events) -> None:
    config = RetryConfig(max_retries=0, watchdog_seconds=0.05)
    request = Scripted([text("a"), Stall()])

    outcome, received = run(RetryController(config), request)

    assert outcome is StreamOutcome.TIMED_OUT
    assert [c.text for c in received] == ["a"]
    assert events("STREAM_WATCHDOG")[0]["chunks"] == 1


def test_async_handlers_are_awaited() -> None:
    received = []

    async def on_chunk(chunk):
        await asyncio.sleep(0)
        received.append(chunk.text)

    async def go():
        return await RetryController(FAST).run_streaming_attempt(
            Scripted([text("x"), DONE]), on_chunk
        )

    assert asyncio.run(go()) is StreamOutcome.COMPLETED
    assert received == ["x", ""]
