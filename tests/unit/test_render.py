import asyncio

import pytest

from chatsync.messages import CanonicalMessage, MessageKind, TextPayload
from chatsync.streaming.events import Phase, TurnUpdate, UpdateKind
from chatsync.streaming.render import RenderThrottle

pytestmark = pytest.mark.unit


def live(text: str) -> TurnUpdate:
    return TurnUpdate(kind=UpdateKind.ASSISTANT, phase=Phase.GENERATING, agent_id="a", text=text)


def final(text: str) -> TurnUpdate:
    message = CanonicalMessage(
        id="m1",
        agent_id="a",
        created_at=1.0,
        kind=MessageKind.ASSISTANT_TEXT,
        payload=TextPayload(text=text),
    )
    return TurnUpdate(
        kind=UpdateKind.FINALIZED,
        phase=Phase.IDLE,
        agent_id="a",
        text=text,
        messages=(message,),
        final=True,
    )


def test_zero_interval_delivers_everything() -> None:
    seen: list[TurnUpdate] = []
    throttle = RenderThrottle(seen.append, 0)

    for text in ("H", "He", "Hel"):
        throttle.push(live(text))

    assert [u.text for u in seen] == ["H", "He", "Hel"]
    assert throttle.coalesced == 0


def test_no_running_loop_delivers_directly() -> None:
    seen: list[TurnUpdate] = []
    throttle = RenderThrottle(seen.append, 1.0)
    throttle.push(live("x"))
    assert [u.text for u in seen] == ["x"]


def test_bursts_are_coalesced_to_latest() -> None:
    seen: list[str] = []

    async def go() -> RenderThrottle:
        throttle = RenderThrottle(lambda u: seen.append(u.text), 0.05)
        for text in ("H", "He", "Hel", "Hell"):
            throttle.push(live(text))
        assert seen == ["H"]
        await asyncio.sleep(0.2)
        return throttle

    throttle = asyncio.run(go())

    assert seen == ["H", "Hell"]
    assert throttle.coalesced == 2
    assert throttle.delivered == 2


def test_final_update_flushes_pending_first() -> None:
    seen: list[tuple[str, bool]] = []

    async def go() -> None:
        throttle = RenderThrottle(lambda u: seen.append((u.text, u.final)), 10.0)
        throttle.push(live("H"))
        throttle.push(live("Hi"))
        throttle.push(final("Hi!"))

    asyncio.run(go())
    assert seen == [("H", False), ("Hi", False), ("Hi!", True)]

