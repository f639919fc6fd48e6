import asyncio
from dataclasses import replace

import cbor2

from conftest import ALICE, BOB, connect, emit
from tenantchat.envelope import make_request
from tenantchat.service import ChatService


def test_bad_frames_are_reported_to_sender(hub) -> None:
    async def scenario():
        a, ta = await connect(hub, ALICE)
        b, tb = await connect(hub, BOB)
        await hub.on_frame(a, "{not json")
        await hub.on_frame(a, '{"v": 1, "event": "sendMessage", "args": "hi"}')
        return ta, tb

    ta, tb = asyncio.run(scenario())
    errors = ta.data("errorMessage")
    assert len(errors) == 2
    assert all(e.startswith("bad message: ") for e in errors)
    assert tb.sent == []
    assert hub.stats_manager.get("events_bad") == 2


def test_unknown_event_is_refused(hub) -> None:
    async def scenario():
        a, ta = await connect(hub, ALICE)
        await emit(hub, a, "launchRockets")
        return ta

    ta = asyncio.run(scenario())
    assert ta.data("errorMessage") == ["unknown event 'launchRockets'"]


def test_binary_frames_get_binary_replies(hub) -> None:
    async def scenario():
        a, ta = await connect(hub, ALICE)
        b, tb = await connect(hub, BOB)
        await hub.on_frame(a, cbor2.dumps(make_request("sendMessage", "over cbor")))
        return a, b, ta, tb

    a, b, ta, tb = asyncio.run(scenario())
    assert a.binary is True
    assert b.binary is False
    assert ta.data("newMessage")[0]["message"] == "over cbor"
    assert tb.data("newMessage")[0]["message"] == "over cbor"


def test_rate_limit_refuses_excess_frames(config, store) -> None:
    hub = ChatService(replace(config, rate_limit_msgs_per_minute=2), store=store)

    async def scenario():
        a, ta = await connect(hub, ALICE)
        for i in range(3):
            await emit(hub, a, "sendMessage", f"m{i}")
        return ta

    ta = asyncio.run(scenario())
    assert [m["message"] for m in ta.data("newMessage")] == ["m0", "m1"]
    assert ta.data("errorMessage") == ["rate limited"]
    assert hub.stats_manager.get("rate_limited") == 1


def test_unexpected_failure_becomes_server_error(hub) -> None:
    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    async def scenario():
        a, ta = await connect(hub, ALICE)
        b, tb = await connect(hub, BOB)
        hub.relay.send_message = explode
        await emit(hub, a, "sendMessage", "hello")
        return ta, tb

    ta, tb = asyncio.run(scenario())
    assert ta.data("errorMessage") == ["Server error"]
    assert tb.sent == []


def test_refusal_reaches_only_the_originating_connection(hub) -> None:
    async def scenario():
        a1, t1 = await connect(hub, ALICE)
        a2, t2 = await connect(hub, ALICE)
        await emit(hub, a1, "joinRoom", "room_doesnotexist")
        return t1, t2

    t1, t2 = asyncio.run(scenario())
    assert t1.data("errorMessage") == ["Room not found"]
    assert t2.sent == []


def test_dropped_transport_does_not_break_delivery(hub) -> None:
    async def scenario():
        a, ta = await connect(hub, ALICE)
        b, tb = await connect(hub, BOB)
        tb.fail = True
        await emit(hub, a, "sendMessage", "still delivered")
        return ta

    ta = asyncio.run(scenario())
    assert [m["message"] for m in ta.data("newMessage")] == ["still delivered"]
