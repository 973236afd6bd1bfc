"""
Room Relay
==========

Server side of the meeting-room signaling relay.

Peers connect over a WebSocket, create or join a room by meeting code,
and exchange opaque negotiation payloads with the other members. The
relay never looks inside those payloads.

Events handled (client -> relay):
    create-meeting  join a room, creating it if needed
    join-meeting    join a room and announce the newcomer
    offer / answer / ice-candidate / signal
                    forward to the other members of the room
    end-call        tell the others the call ended and leave

Events emitted (relay -> client):
    joined-meeting, new-user-joined, user-disconnected, call-ended,
    the forwarded negotiation events, and error

Design Rules:
    - One room per peer; joining another room leaves the previous one
    - Empty rooms are deleted
    - A failed send to one peer never affects the others
"""

import logging
import uuid
from typing import Dict, Optional, Protocol, Set

from meetfx.transport.signaling import RELAYED_EVENTS


logger = logging.getLogger(__name__)


class PeerConnection(Protocol):
    """Anything that can send a JSON message (a FastAPI WebSocket does)."""

    async def send_json(self, data: dict) -> None:
        ...


class RelayMetrics:
    """Metrics for RoomRelay observability."""

    __slots__ = (
        "peers_connected",
        "messages_relayed",
        "send_failures",
        "invalid_messages",
    )

    def __init__(self) -> None:
        self.peers_connected: int = 0
        self.messages_relayed: int = 0
        self.send_failures: int = 0
        self.invalid_messages: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "peers_connected": self.peers_connected,
            "messages_relayed": self.messages_relayed,
            "send_failures": self.send_failures,
            "invalid_messages": self.invalid_messages,
        }


class RoomRelay:
    """
    In-memory meeting rooms keyed by meeting code.

    Example:
        relay = RoomRelay()
        peer_id = relay.register(websocket)
        await relay.handle(peer_id, {"event": "join-meeting", "meetingCode": "abc"})
        ...
        await relay.unregister(peer_id)
    """

    def __init__(self) -> None:
        self._peers: Dict[str, PeerConnection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._peer_room: Dict[str, str] = {}
        self.metrics = RelayMetrics()

    @property
    def rooms(self) -> Dict[str, int]:
        """Meeting code -> number of members."""
        return {code: len(members) for code, members in self._rooms.items()}

    def room_of(self, peer_id: str) -> Optional[str]:
        return self._peer_room.get(peer_id)

    def register(self, connection: PeerConnection) -> str:
        """Add a connected peer and return its id."""
        peer_id = uuid.uuid4().hex[:8]
        self._peers[peer_id] = connection
        self.metrics.peers_connected = len(self._peers)
        logger.info(f"Peer {peer_id} connected")
        return peer_id

    async def unregister(self, peer_id: str) -> None:
        """Drop a peer, telling its room it disconnected."""
        await self._leave(peer_id, "user-disconnected")
        self._peers.pop(peer_id, None)
        self.metrics.peers_connected = len(self._peers)
        logger.info(f"Peer {peer_id} disconnected")

    async def handle(self, peer_id: str, message: dict) -> None:
        """Process one message from a peer."""
        event = message.get("event")
        code = message.get("meetingCode")

        if event in ("create-meeting", "join-meeting"):
            if not code:
                await self._error(peer_id, f"'{event}' requires a meetingCode")
                return
            await self._join(peer_id, str(code), announce=event == "join-meeting")
            return

        if event in RELAYED_EVENTS:
            room = self._peer_room.get(peer_id)
            if room is None:
                await self._error(peer_id, f"'{event}' sent outside a meeting")
                return
            await self._broadcast(
                room,
                {"event": event, "meetingCode": room, "from": peer_id, "data": message.get("data")},
                exclude=peer_id,
            )
            self.metrics.messages_relayed += 1
            return

        if event == "end-call":
            await self._leave(peer_id, "call-ended")
            return

        self.metrics.invalid_messages += 1
        await self._error(peer_id, f"Unknown event: {event!r}")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _join(self, peer_id: str, code: str, announce: bool) -> None:
        if self._peer_room.get(peer_id) == code:
            members = self._rooms[code]
        else:
            await self._leave(peer_id, "user-disconnected")
            members = self._rooms.setdefault(code, set())
            members.add(peer_id)
            self._peer_room[peer_id] = code
            logger.info(f"Peer {peer_id} joined meeting {code} ({len(members)} members)")

        await self._send(
            peer_id,
            {
                "event": "joined-meeting",
                "meetingCode": code,
                "data": {"peerId": peer_id, "participants": len(members)},
            },
        )
        if announce:
            await self._broadcast(
                code,
                {"event": "new-user-joined", "meetingCode": code, "from": peer_id},
                exclude=peer_id,
            )

    async def _leave(self, peer_id: str, event: str) -> None:
        code = self._peer_room.pop(peer_id, None)
        if code is None:
            return
        members = self._rooms.get(code, set())
        members.discard(peer_id)
        if members:
            await self._broadcast(code, {"event": event, "meetingCode": code, "from": peer_id})
        else:
            self._rooms.pop(code, None)
            logger.info(f"Meeting {code} closed")

    async def _broadcast(self, code: str, payload: dict, exclude: Optional[str] = None) -> None:
        for member in list(self._rooms.get(code, ())):
            if member != exclude:
                await self._send(member, payload)

    async def _error(self, peer_id: str, message: str) -> None:
        logger.warning(f"Peer {peer_id}: {message}")
        await self._send(peer_id, {"event": "error", "data": {"message": message}})

    async def _send(self, peer_id: str, payload: dict) -> None:
        connection = self._peers.get(peer_id)
        if connection is None:
            return
        try:
            await connection.send_json(payload)
        except Exception as e:
            self.metrics.send_failures += 1
            logger.warning(f"Send to peer {peer_id} failed: {e}")
