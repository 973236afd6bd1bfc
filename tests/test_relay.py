"""
Room Relay Tests
================

Meeting rooms and message forwarding on the relay side.
"""

import pytest

from meetfx.transport.relay import RoomRelay


class FakeSocket:
    """Records every JSON message sent to it."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    def events(self):
        return [m["event"] for m in self.sent]


@pytest.fixture
def relay() -> RoomRelay:
    return RoomRelay()


async def connect(relay, code=None, event="join-meeting", fail=False):
    socket = FakeSocket(fail=fail)
    peer_id = relay.register(socket)
    if code is not None:
        await relay.handle(peer_id, {"event": event, "meetingCode": code})
    return peer_id, socket


class TestRooms:
    """Tests for creating, joining and leaving rooms."""

    @pytest.mark.asyncio
    async def test_create_meeting(self, relay):
        peer, socket = await connect(relay, "abc", event="create-meeting")

        assert relay.rooms == {"abc": 1}
        assert relay.room_of(peer) == "abc"
        assert socket.sent == [
            {
                "event": "joined-meeting",
                "meetingCode": "abc",
                "data": {"peerId": peer, "participants": 1},
            }
        ]

    @pytest.mark.asyncio
    async def test_join_announces_newcomer(self, relay):
        host, host_socket = await connect(relay, "abc", event="create-meeting")
        guest, guest_socket = await connect(relay, "abc")

        assert relay.rooms == {"abc": 2}
        assert guest_socket.sent[0]["data"]["participants"] == 2
        assert host_socket.sent[-1] == {
            "event": "new-user-joined",
            "meetingCode": "abc",
            "from": guest,
        }

    @pytest.mark.asyncio
    async def test_join_requires_code(self, relay):
        peer, socket = await connect(relay)
        await relay.handle(peer, {"event": "join-meeting"})

        assert socket.events() == ["error"]
        assert relay.rooms == {}

    @pytest.mark.asyncio
    async def test_rejoin_same_room_is_idempotent(self, relay):
        peer, socket = await connect(relay, "abc")
        await relay.handle(peer, {"event": "join-meeting", "meetingCode": "abc"})

        assert relay.rooms == {"abc": 1}
        assert socket.events() == ["joined-meeting", "joined-meeting"]

    @pytest.mark.asyncio
    async def test_switching_rooms_leaves_previous(self, relay):
        a, a_socket = await connect(relay, "abc")
        b, _ = await connect(relay, "abc")

        await relay.handle(b, {"event": "join-meeting", "meetingCode": "xyz"})

        assert relay.rooms == {"abc": 1, "xyz": 1}
        assert a_socket.sent[-1] == {"event": "user-disconnected", "meetingCode": "abc", "from": b}

    @pytest.mark.asyncio
    async def test_end_call_notifies_others(self, relay):
        a, a_socket = await connect(relay, "abc")
        b, _ = await connect(relay, "abc")

        await relay.handle(b, {"event": "end-call", "meetingCode": "abc"})

        assert a_socket.sent[-1]["event"] == "call-ended"
        assert relay.room_of(b) is None
        assert relay.rooms == {"abc": 1}

    @pytest.mark.asyncio
    async def test_unregister_deletes_empty_room(self, relay):
        a, _ = await connect(relay, "abc")
        await relay.unregister(a)

        assert relay.rooms == {}
        assert relay.metrics.peers_connected == 0


class TestForwarding:
    """Tests for negotiation message forwarding."""

    @pytest.mark.asyncio
    async def test_offer_goes_to_others_only(self, relay):
        a, a_socket = await connect(relay, "abc")
        b, b_socket = await connect(relay, "abc")
        c, c_socket = await connect(relay, "other")
        offer = {"type": "offer", "sdp": "v=0"}

        await relay.handle(a, {"event": "offer", "meetingCode": "abc", "data": offer})

        assert b_socket.sent[-1] == {"event": "offer", "meetingCode": "abc", "from": a, "data": offer}
        assert "offer" not in a_socket.events()
        assert "offer" not in c_socket.events()
        assert relay.metrics.messages_relayed == 1

    @pytest.mark.asyncio
    async def test_forward_outside_room_is_error(self, relay):
        peer, socket = await connect(relay)
        await relay.handle(peer, {"event": "ice-candidate", "data": {}})

        assert socket.events() == ["error"]
        assert relay.metrics.messages_relayed == 0

    @pytest.mark.asyncio
    async def test_unknown_event(self, relay):
        peer, socket = await connect(relay)
        await relay.handle(peer, {"event": "dance"})

        assert socket.sent[-1]["event"] == "error"
        assert "dance" in socket.sent[-1]["data"]["message"]
        assert relay.metrics.invalid_messages == 1

    @pytest.mark.asyncio
    async def test_failing_socket_does_not_block_others(self, relay):
        a, _ = await connect(relay, "abc")
        broken, _ = await connect(relay, "abc", fail=True)
        c, c_socket = await connect(relay, "abc")

        await relay.handle(a, {"event": "answer", "meetingCode": "abc", "data": {"sdp": "x"}})

        assert c_socket.sent[-1]["event"] == "answer"
        assert relay.metrics.send_failures >= 1
        assert relay.metrics.to_dict()["messages_relayed"] == 1
