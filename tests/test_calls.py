import pytest

from pivogram.calls import CallCoordinator, CallStatus
from pivogram.presence import PresenceRegistry
from pivogram.sessions import Identity
from pivogram.transport import WebSocketHub

from conftest import FakeWebSocket


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def setup(clock):
    hub = WebSocketHub()
    presence = PresenceRegistry()
    coordinator = CallCoordinator(presence, hub, record_ttl=30.0, clock=clock)
    sockets = {}
    for conn_id, name in (("c-alice", "alice"), ("c-bob", "bob"), ("c-carol", "carol")):
        sockets[name] = FakeWebSocket()
        hub.attach(conn_id, sockets[name])
        presence.register(conn_id, Identity(name))
    return coordinator, hub, presence, sockets


def all_events(sockets, name):
    return {who: ws.events(name) for who, ws in sockets.items() if ws.events(name)}


@pytest.mark.asyncio
async def test_call_to_offline_user_creates_nothing(setup):
    coordinator, hub, presence, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "dave", "video")

    assert call is None
    assert coordinator.calls == {}
    assert all_events(sockets, "incoming-call") == {}
    assert sockets["alice"].events("call-failed") == [{"reason": "target-offline", "targetUserId": "dave"}]


@pytest.mark.asyncio
async def test_cannot_call_yourself(setup):
    coordinator, _, _, sockets = setup
    assert await coordinator.initiate("c-alice", Identity("alice"), "alice", "audio") is None
    assert sockets["alice"].events("call-failed")[0]["reason"] == "self-call"


@pytest.mark.asyncio
async def test_initiate_notifies_target_only(setup):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")

    assert call.status is CallStatus.PENDING
    assert all_events(sockets, "incoming-call") == {"bob": [{
        "callerId": "c-alice", "callerName": "alice", "callType": "video", "callId": call.call_id,
    }]}


@pytest.mark.asyncio
async def test_busy_target_is_refused(setup):
    coordinator, _, _, sockets = setup
    await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    assert await coordinator.initiate("c-carol", Identity("carol"), "bob", "audio") is None
    assert sockets["carol"].events("call-failed")[0]["reason"] == "busy"


@pytest.mark.asyncio
async def test_accept_sends_one_call_started_to_each_participant(setup):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    await coordinator.respond("c-bob", call.call_id, True)

    assert coordinator.get(call.call_id).status is CallStatus.ACTIVE
    started = all_events(sockets, "call-started")
    assert started == {
        "alice": [{"callId": call.call_id, "peerId": "c-bob", "peerName": "bob"}],
        "bob": [{"callId": call.call_id, "peerId": "c-alice", "peerName": "alice"}],
    }


@pytest.mark.asyncio
async def test_only_target_may_respond(setup):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")

    assert await coordinator.respond("c-alice", call.call_id, True) is None
    assert await coordinator.respond("c-carol", call.call_id, True) is None
    assert coordinator.get(call.call_id).status is CallStatus.PENDING
    assert all_events(sockets, "call-started") == {}


@pytest.mark.asyncio
async def test_decline_notifies_caller_and_closes_record(setup, clock):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    await coordinator.respond("c-bob", call.call_id, False)

    assert all_events(sockets, "call-declined") == {"alice": [{"callId": call.call_id}]}
    assert coordinator.get(call.call_id) is None
    assert coordinator.status(call.call_id) is CallStatus.DECLINED
    # a second answer after the decline changes nothing
    assert await coordinator.respond("c-bob", call.call_id, True) is None

    clock.now += 31
    assert coordinator.status(call.call_id) is None
    assert coordinator.calls == {}


@pytest.mark.asyncio
async def test_end_is_idempotent_and_notifies_the_other_side(setup):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    await coordinator.respond("c-bob", call.call_id, True)

    assert await coordinator.end("c-bob", call.call_id) is True
    assert await coordinator.end("c-alice", call.call_id) is False
    assert await coordinator.end("c-alice", "call_missing") is False

    assert all_events(sockets, "call-ended") == {"alice": [{"callId": call.call_id}]}
    assert coordinator.status(call.call_id) is CallStatus.ENDED


@pytest.mark.asyncio
async def test_stranger_cannot_end_a_call(setup):
    coordinator, _, _, _ = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    assert await coordinator.end("c-carol", call.call_id) is False
    assert coordinator.get(call.call_id) is not None


@pytest.mark.asyncio
async def test_target_disconnect_while_pending_ends_call_for_caller(setup):
    coordinator, _, _, sockets = setup
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")

    assert await coordinator.drop_connection("c-bob") == [call.call_id]
    assert sockets["alice"].events("call-ended") == [{"callId": call.call_id}]
    assert coordinator.get(call.call_id) is None
    assert coordinator.live_calls_for("c-alice") == []


@pytest.mark.asyncio
async def test_relay_forwards_payload_untouched_between_call_parties(setup):
    coordinator, _, _, sockets = setup
    offer = {"type": "offer", "sdp": "v=0\r\n...", "anything": [1, 2]}
    call = await coordinator.initiate("c-alice", Identity("alice"), "bob", "video")
    await coordinator.respond("c-bob", call.call_id, True)

    assert await coordinator.relay("c-alice", Identity("alice"), "webrtc-offer", "c-bob", offer)
    assert sockets["bob"].events("webrtc-offer") == [{"offer": offer, "senderId": "c-alice", "senderName": "alice"}]

    assert not await coordinator.relay("c-alice", Identity("alice"), "webrtc-answer", "c-nobody", {})
    assert not await coordinator.relay("c-alice", Identity("alice"), "webrtc-bogus", "c-bob", {})


@pytest.mark.asyncio
async def test_relay_needs_a_live_call_with_the_target(setup):
    coordinator, _, _, sockets = setup
    alice = Identity("alice")

    assert not await coordinator.relay("c-alice", alice, "webrtc-offer", "c-bob", {"sdp": "x"})
    assert sockets["bob"].events("webrtc-offer") == []

    call = await coordinator.initiate("c-alice", alice, "bob", "video")
    await coordinator.respond("c-bob", call.call_id, True)
    assert not await coordinator.relay("c-alice", alice, "webrtc-offer", "c-carol", {"sdp": "x"})
    assert not await coordinator.relay("c-carol", Identity("carol"), "webrtc-offer", "c-bob", {"sdp": "x"})
    assert all_events(sockets, "webrtc-offer") == {}

    await coordinator.end("c-alice", call.call_id)
    assert not await coordinator.relay("c-alice", alice, "webrtc-offer", "c-bob", {"sdp": "x"})
