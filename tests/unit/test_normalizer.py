import json

import pytest

from chatsync.messages import MessageKind
from chatsync.normalizer import coerce_text, normalize, normalize_batch, normalize_chunk, normalize_chunks
from chatsync.streaming.events import ChunkKind

pytestmark = pytest.mark.unit


def fixed_now() -> float:
    return 42.0


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "m1", "date": "2024-01-01T00:00:00Z", "message_type": "assistant_message", "content": "hi"},
        {"message_id": "m1", "created_at": 1704067200000, "messageType": "assistant_message", "text": "hi"},
        {"messageId": "m1", "createdAt": "1704067200", "type": "assistant", "message": "hi"},
        {"id": "m1", "timestamp": 1704067200, "role": "assistant", "content": [{"type": "text", "text": "hi"}]},
    ],
)
def test_field_name_variants_converge(raw) -> None:
    message = normalize(raw, agent_id="agent-1")

    assert message is not None
    assert message.id == "m1"
    assert message.kind is MessageKind.ASSISTANT_TEXT
    assert message.text == "hi"
    assert message.created_at == pytest.approx(1704067200.0)
    assert message.agent_id == "agent-1"


def test_tool_call_variants() -> None:
    legacy = normalize(
        {
            "id": "m2",
            "date": 10,
            "message_type": "function_call_message",
            "function_call": {"name": "search", "arguments": '{"q": "cats"}', "id": "call-1"},
        },
        agent_id="a",
    )
    modern = normalize(
        {
            "id": "m3",
            "date": 11,
            "message_type": "tool_call_message",
            "toolCall": {"tool_call_id": "call-2", "name": "search", "arguments": {"q": "dogs"}},
        },
        agent_id="a",
    )

    assert legacy.kind is MessageKind.TOOL_CALL
    assert legacy.payload.call_id == "call-1"
    assert legacy.payload.arguments == {"q": "cats"}
    assert modern.payload.call_id == "call-2"
    assert modern.payload.arguments == {"q": "dogs"}


def test_unparsable_arguments_are_kept_as_text() -> None:
    message = normalize(
        {"id": "m4", "date": 1, "message_type": "tool_call_message",
         "tool_call": {"id": "c", "name": "run", "arguments": "{broken"}},
        agent_id="a",
    )
    assert message.payload.arguments_text == "{broken"
    assert message.payload.parse_error
    assert "could not parse" in message.text


def test_tool_return_variants() -> None:
    message = normalize(
        {"id": "m5", "date": 1, "message_type": "tool_return_message",
         "tool_return": "42", "tool_call_id": "call-1", "status": "success", "name": "calc"},
        agent_id="a",
    )
    assert message.kind is MessageKind.TOOL_RESULT
    assert message.payload.result == "42"
    assert message.payload.call_id == "call-1"
    assert message.payload.status == "success"

    legacy = normalize({"id": "m6", "date": 2, "function_return": "ok"}, agent_id="a")
    assert legacy.kind is MessageKind.TOOL_RESULT
    assert legacy.payload.result == "ok"


@pytest.mark.parametrize(
    "raw",
    [
        {"id": "p", "message_type": "ping"},
        {"id": "h", "type": "heartbeat"},
        {"id": "l", "message_type": "login"},
        {"id": "s", "message_type": "system_alert", "content": "x"},
        {"id": "u", "message_type": "user_message",
         "content": json.dumps({"type": "heartbeat", "reason": "automated"})},
    ],
)
def test_internal_records_are_dropped(raw, events) -> None:
    seen = []
    assert normalize(raw, agent_id="a", sink=lambda r, reason: seen.append(reason)) is None
    assert len(seen) == 1
    assert events("MESSAGE_DROPPED")


def test_user_json_that_is_not_an_envelope_is_kept() -> None:
    message = normalize(
        {"id": "u", "date": 1, "message_type": "user_message", "content": '{"type": "note"}'},
        agent_id="a",
    )
    assert message.kind is MessageKind.USER_TEXT


def test_malformed_records_become_debug_placeholders(events) -> None:
    unknown = normalize({"id": "x", "date": 1, "message_type": "mystery"}, agent_id="a")
    not_a_mapping = normalize(["junk"], agent_id="a", now=fixed_now)

    assert unknown.kind is MessageKind.DEBUG
    assert unknown.id == "x"
    assert not_a_mapping.kind is MessageKind.DEBUG
    assert not_a_mapping.id.startswith("anon-")
    assert not_a_mapping.created_at == 42.0
    assert len(events("MESSAGE_MALFORMED")) == 2


def test_missing_id_gets_stable_synthetic_id() -> None:
    raw = {"date": 1, "message_type": "assistant_message", "content": "hi"}
    first = normalize(raw, agent_id="a")
    second = normalize(dict(raw), agent_id="a")
    assert first.id == second.id
    assert first.id.startswith("anon-")
    assert not first.is_remote


def test_missing_timestamp_uses_ingestion_time() -> None:
    message = normalize(
        {"id": "m", "message_type": "assistant_message", "content": "x"},
        agent_id="a",
        now=fixed_now,
    )
    assert message.created_at == 42.0


def test_batch_folds_reasoning_into_following_message() -> None:
    raws = [
        {"id": "m1", "date": 5, "message_type": "reasoning_message", "reasoning": "think"},
        {"id": "m1", "date": 5, "message_type": "assistant_message", "content": "answer"},
        {"id": "m0", "date": 1, "message_type": "user_message", "content": "question"},
    ]
    messages = normalize_batch(raws, agent_id="a")

    assert [m.kind for m in messages] == [MessageKind.USER_TEXT, MessageKind.ASSISTANT_TEXT]
    assert messages[1].payload.reasoning == "think"


def test_batch_disambiguates_shared_ids() -> None:
    raws = [
        {"id": "m1", "date": 5, "message_type": "tool_call_message",
         "tool_call": {"id": "c1", "name": "t", "arguments": "{}"}},
        {"id": "m1", "date": 6, "message_type": "tool_return_message", "tool_return": "ok"},
    ]
    messages = normalize_batch(raws, agent_id="a")

    assert [m.id for m in messages] == ["m1", "m1#tool-result"]
    assert {m.cursor for m in messages} == {"m1"}


def test_batch_deduplicates_and_sorts() -> None:
    raws = [
        {"id": "b", "date": 2, "message_type": "assistant_message", "content": "2"},
        {"id": "a", "date": 1, "message_type": "assistant_message", "content": "1"},
        {"id": "b", "date": 2, "message_type": "assistant_message", "content": "2"},
    ]
    messages = normalize_batch(raws, agent_id="a")
    assert [m.id for m in messages] == ["a", "b"]


def test_batch_expands_multiple_tool_calls() -> None:
    raws = [
        {"id": "m1", "date": 1, "message_type": "tool_call_message",
         "tool_calls": [{"id": "c1", "name": "a"}, {"id": "c2", "name": "b"}]},
    ]
    messages = normalize_batch(raws, agent_id="a")
    assert [m.id for m in messages] == ["m1", "m1#tool-call-1"]
    assert [m.payload.call_id for m in messages] == ["c1", "c2"]


def test_coerce_text_handles_parts() -> None:
    assert coerce_text([{"type": "text", "text": "a"}, {"type": "image"}, "b"]) == "ab"
    assert coerce_text({"text": "x"}) == "x"
    assert coerce_text(5) is None


# ----------------------------------------------------------------------
def test_chunk_kinds() -> None:
    assert normalize_chunk(
        {"id": "m1", "message_type": "reasoning_message", "reasoning": "hm"}
    ).kind is ChunkKind.REASONING
    assistant = normalize_chunk({"id": "m2", "message_type": "assistant_message", "content": "Hi"})
    assert assistant.kind is ChunkKind.ASSISTANT
    assert assistant.text == "Hi"
    assert assistant.message_id == "m2"
    call = normalize_chunk(
        {"id": "m3", "message_type": "tool_call_message",
         "tool_call": {"tool_call_id": "c1", "name": "search", "arguments": '{"q"'}}
    )
    assert (call.kind, call.call_id, call.name, call.text) == (
        ChunkKind.TOOL_CALL, "c1", "search", '{"q"'
    )
    ret = normalize_chunk(
        {"id": "m4", "message_type": "tool_return_message", "tool_return": "r",
         "tool_call_id": "c1", "status": "success"}
    )
    assert (ret.kind, ret.call_id, ret.result, ret.status) == (
        ChunkKind.TOOL_RETURN, "c1", "r", "success"
    )
    usage = normalize_chunk(
        {"message_type": "usage_statistics", "completion_tokens": 3, "prompt_tokens": 4,
         "total_tokens": 7, "step_count": 1}
    )
    assert usage.kind is ChunkKind.USAGE
    assert usage.usage.total_tokens == 7
    stop = normalize_chunk({"message_type": "stop_reason", "stop_reason": "end_turn"})
    assert stop.kind is ChunkKind.STATUS
    assert stop.detail == {"stop_reason": "end_turn"}


def test_done_and_error_chunks() -> None:
    assert normalize_chunk("[DONE]").kind is ChunkKind.DONE
    error = normalize_chunk({"message_type": "error", "error": {"message": "boom", "code": 1}})
    assert error.kind is ChunkKind.ERROR
    assert error.text == "boom"
    bare = normalize_chunk({"error": "overloaded"})
    assert bare.kind is ChunkKind.ERROR
    assert bare.text == "overloaded"


def test_internal_stream_events_are_ignored() -> None:
    assert normalize_chunks({"message_type": "ping"}) == []
    assert normalize_chunks({"message_type": "user_message", "content": "echo"}) == []
    assert normalize_chunks(12) == []
