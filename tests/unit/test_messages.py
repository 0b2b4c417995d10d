import pytest

from chatsync.messages import (
    CanonicalMessage,
    MessageKind,
    StatusPayload,
    TextPayload,
    ToolCallPayload,
    ToolResultPayload,
    cursor_id,
    disambiguate_id,
    is_local_id,
    new_local_id,
    parse_arguments,
    sort_key,
)

pytestmark = pytest.mark.unit


def _text(id_: str, created_at: float, text: str = "hi") -> CanonicalMessage:
    return CanonicalMessage(
        id=id_,
        agent_id="agent-1",
        created_at=created_at,
        kind=MessageKind.ASSISTANT_TEXT,
        payload=TextPayload(text=text),
    )


def test_payload_must_match_kind() -> None:
    with pytest.raises(TypeError):
        CanonicalMessage(
            id="m1",
            agent_id="agent-1",
            created_at=1.0,
            kind=MessageKind.TOOL_CALL,
            payload=TextPayload(text="oops"),
        )


def test_sort_key_orders_by_time_then_id() -> None:
    messages = [_text("b", 2.0), _text("c", 1.0), _text("a", 2.0)]
    assert [m.id for m in sorted(messages, key=sort_key)] == ["c", "a", "b"]


def test_round_trip_preserves_tool_payloads() -> None:
    call = CanonicalMessage(
        id="m2",
        agent_id="agent-1",
        created_at=5.5,
        kind=MessageKind.TOOL_CALL,
        payload=ToolCallPayload(
            name="search",
            call_id="call-1",
            arguments_text='{"q": "x"}',
            arguments={"q": "x"},
            reasoning="look it up",
        ),
    )
    result = CanonicalMessage(
        id="m3",
        agent_id="agent-1",
        created_at=6.0,
        kind=MessageKind.TOOL_RESULT,
        payload=ToolResultPayload(name="search", call_id="call-1", status="success", result="ok"),
    )

    assert CanonicalMessage.from_dict(call.to_dict()) == call
    assert CanonicalMessage.from_dict(result.to_dict()) == result


def test_from_dict_rejects_unknown_kind() -> None:
    data = _text("m1", 1.0).to_dict()
    data["kind"] = "nonsense"
    with pytest.raises(ValueError):
        CanonicalMessage.from_dict(data)


def test_local_and_synthetic_ids_are_not_remote() -> None:
    local = _text(new_local_id(), 1.0)
    synthetic = _text("anon-0123456789abcdef", 1.0)
    remote = _text("message-1", 1.0)

    assert local.is_local and not local.is_remote
    assert not synthetic.is_local and not synthetic.is_remote
    assert remote.is_remote
    assert is_local_id(local.id)
    assert not is_local_id(None)


def test_disambiguated_id_keeps_raw_cursor() -> None:
    message_id = disambiguate_id("message-7", MessageKind.TOOL_CALL)

    assert message_id == "message-7#tool-call"
    assert cursor_id(message_id) == "message-7"
    assert _text(message_id, 1.0).cursor == "message-7"


def test_text_property_flags_unparsable_arguments() -> None:
    message = CanonicalMessage(
        id="m1",
        agent_id="agent-1",
        created_at=1.0,
        kind=MessageKind.TOOL_CALL,
        payload=ToolCallPayload(name="run", arguments_text="{bad", parse_error="Expecting"),
    )
    assert message.text == "run((could not parse arguments) {bad)"


def test_status_text() -> None:
    message = CanonicalMessage(
        id="s1",
        agent_id="agent-1",
        created_at=1.0,
        kind=MessageKind.STATUS,
        payload=StatusPayload(text="end_turn"),
    )
    assert message.text == "end_turn"


@pytest.mark.parametrize(
    ("text", "expected", "failed"),
    [
        ("", {}, False),
        ('{"a": 1}', {"a": 1}, False),
        ("{not json", None, True),
    ],
)
def test_parse_arguments(text: str, expected, failed: bool) -> None:
    value, error = parse_arguments(text)
    assert (error is not None) is failed
    if not failed:
        assert value == expected
