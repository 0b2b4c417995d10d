"""Streaming assembly, retries and cancellation."""

from .assembler import PHASE_TRANSITIONS, StreamAssembler, StreamTurnState, ToolCallState
from .coordinator import CancellationCoordinator, RequestToken
from .events import ChunkKind, Phase, StreamChunk, ToolCallView, TurnUpdate, UpdateKind
from .render import RenderThrottle
from .retry import RetryConfig, RetryController, StreamOutcome, calculate_backoff

__all__ = [
    "PHASE_TRANSITIONS",
    "CancellationCoordinator",
    "ChunkKind",
    "Phase",
    "RenderThrottle",
    "RequestToken",
    "RetryConfig",
    "RetryController",
    "StreamAssembler",
    "StreamChunk",
    "StreamOutcome",
    "StreamTurnState",
    "ToolCallState",
    "ToolCallView",
    "TurnUpdate",
    "UpdateKind",
    "calculate_backoff",
]
