"""
Signaling Client
================

WebSocket client for the meeting-room signaling relay.

This module provides the WebSocketSignalingClient class which:
    - Connects to the relay's /ws/signal endpoint
    - Creates or joins a meeting room by code
    - Sends opaque negotiation payloads (offer, answer, ice-candidate)
    - Dispatches relay events to registered callbacks and an event queue
    - Reconnects with backoff and rejoins the room it was in

Wire format (JSON text frames, both directions):
    {"event": "join-meeting", "meetingCode": "abc-123"}
    {"event": "offer", "meetingCode": "abc-123", "data": {...}}
    {"event": "new-user-joined", "meetingCode": "abc-123", "from": "peer-id"}

Design Rules:
    - Does NOT inspect negotiation payloads
    - Logs malformed relay messages but keeps the connection
    - Reconnects automatically on disconnect
    - Exposes metrics for health monitoring
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
)

from meetfx.config import SignalingConfig


logger = logging.getLogger(__name__)


# Events the relay forwards between room members unchanged
RELAYED_EVENTS = frozenset({"offer", "answer", "ice-candidate", "signal"})

# Events announcing that a peer left the room
PEER_LEFT_EVENTS = frozenset({"user-disconnected", "call-ended"})


@dataclass(frozen=True, slots=True)
class SignalEvent:
    """
    One event received from the relay.

    Attributes:
        event: Event name ("joined-meeting", "offer", ...)
        meeting_code: Room the event belongs to, if given
        sender: Id of the peer that caused it, if given
        data: Opaque payload
    """

    event: str
    meeting_code: Optional[str] = None
    sender: Optional[str] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "meetingCode": self.meeting_code,
            "from": self.sender,
            "data": self.data,
        }


class SignalingClientMetrics:
    """Metrics for WebSocketSignalingClient observability."""

    __slots__ = (
        "messages_sent",
        "messages_received",
        "messages_dropped",
        "reconnect_count",
        "parse_errors",
    )

    def __init__(self) -> None:
        self.messages_sent: int = 0
        self.messages_received: int = 0
        self.messages_dropped: int = 0
        self.reconnect_count: int = 0
        self.parse_errors: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "messages_dropped": self.messages_dropped,
            "reconnect_count": self.reconnect_count,
            "parse_errors": self.parse_errors,
        }


class WebSocketSignalingClient:
    """
    SignalingRelay implementation over a WebSocket.

    Attributes:
        url: WebSocket URL of the relay
        connected: Whether currently connected
        room: Meeting code currently joined (None when not in a room)
        metrics: Operational metrics

    Example:
        client = WebSocketSignalingClient(url="ws://localhost:8000/ws/signal")
        client.on_peer_joined(lambda event: start_offer())
        task = asyncio.create_task(client.run())

        await client.join_room("abc-123")
        await client.send_to_room("abc-123", {"type": "offer", "sdp": "..."})

        # Later, stop gracefully
        await client.stop()
        await task
    """

    def __init__(
        self,
        url: str,
        reconnect_backoff_ms: int = 500,
        max_reconnect_attempts: int = 0,
        event_queue_size: int = 256,
        room: Optional[str] = None,
    ) -> None:
        """
        Initialize signaling client.

        Args:
            url: WebSocket URL of the relay
            reconnect_backoff_ms: Backoff between reconnect attempts
            max_reconnect_attempts: Max attempts (0 = unlimited)
            event_queue_size: Capacity of the received-event queue
            room: Meeting code to join as soon as the connection is up
        """
        self.url = url
        self.reconnect_backoff_ms = reconnect_backoff_ms
        self.max_reconnect_attempts = max_reconnect_attempts

        # State
        self._websocket = None
        self._connected: bool = False
        self._running: bool = False
        self._stop_event: asyncio.Event = asyncio.Event()
        self._room: Optional[str] = room
        self._events: asyncio.Queue = asyncio.Queue(maxsize=event_queue_size)

        self._callbacks: Dict[str, List[Callable[[dict], None]]] = {
            "peer_joined": [],
            "message": [],
            "peer_left": [],
        }

        # Metrics
        self.metrics = SignalingClientMetrics()

    @classmethod
    def from_settings(cls, config: SignalingConfig) -> "WebSocketSignalingClient":
        return cls(
            url=config.url,
            reconnect_backoff_ms=config.reconnect_backoff_ms,
            max_reconnect_attempts=config.max_reconnect_attempts,
            room=config.room,
        )

    @property
    def connected(self) -> bool:
        """Whether currently connected to the relay."""
        return self._connected

    @property
    def room(self) -> Optional[str]:
        return self._room

    # -------------------------------------------------------------------------
    # Callback registration
    # -------------------------------------------------------------------------

    def on_peer_joined(self, callback: Callable[[dict], None]) -> None:
        self._callbacks["peer_joined"].append(callback)

    def on_message(self, callback: Callable[[dict], None]) -> None:
        self._callbacks["message"].append(callback)

    def on_peer_left(self, callback: Callable[[dict], None]) -> None:
        self._callbacks["peer_left"].append(callback)

    # -------------------------------------------------------------------------
    # Room operations
    # -------------------------------------------------------------------------

    async def create_room(self, code: str) -> None:
        """Create (or take over) a meeting room and join it."""
        self._room = code
        await self._send({"event": "create-meeting", "meetingCode": code})

    async def join_room(self, code: str) -> None:
        """Join an existing meeting room (the relay creates it if missing)."""
        self._room = code
        await self._send({"event": "join-meeting", "meetingCode": code})

    async def send_to_room(self, code: str, message: dict) -> None:
        """
        Forward an opaque payload to every other member of a room.

        The event name is taken from the payload's "type" field when it
        is one the relay forwards (offer, answer, ice-candidate), else
        "signal".
        """
        event = message.get("type", "signal")
        if event not in RELAYED_EVENTS:
            event = "signal"
        await self._send({"event": event, "meetingCode": code, "data": message})

    async def leave_room(self) -> None:
        """End the call for this client; peers receive call-ended."""
        if self._room is None:
            return
        code = self._room
        self._room = None
        await self._send({"event": "end-call", "meetingCode": code})

    async def next_event(self, timeout: Optional[float] = None) -> Optional[SignalEvent]:
        """
        Get the next relay event.

        Args:
            timeout: Max seconds to wait (None = wait forever)

        Returns:
            The event, or None if the timeout expired
        """
        if timeout is None:
            return await self._events.get()
        try:
            return await asyncio.wait_for(self._events.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """
        Stay connected to the relay.

        Runs indefinitely, reconnecting on disconnect.
        Call stop() to terminate gracefully.
        """
        self._running = True
        self._stop_event.clear()

        logger.info(f"Signaling client starting, connecting to {self.url}")

        while self._running:
            try:
                await self._connect_and_listen()
            except Exception as e:
                if not self._running:
                    break

                logger.error(f"Signaling connection error: {e}")
                self._connected = False

                if (
                    self.max_reconnect_attempts > 0
                    and self.metrics.reconnect_count >= self.max_reconnect_attempts
                ):
                    logger.error(
                        f"Max reconnect attempts ({self.max_reconnect_attempts}) exceeded"
                    )
                    break

                self.metrics.reconnect_count += 1
                backoff_sec = self.reconnect_backoff_ms / 1000.0
                logger.info(
                    f"Reconnecting in {backoff_sec:.1f}s "
                    f"(attempt {self.metrics.reconnect_count})"
                )

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=backoff_sec)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                if self._running:
                    # Relay closed the socket cleanly; back off before retrying
                    try:
                        await asyncio.wait_for(
                            self._stop_event.wait(),
                            timeout=self.reconnect_backoff_ms / 1000.0,
                        )
                        break
                    except asyncio.TimeoutError:
                        pass

        logger.info("Signaling client stopped")

    async def stop(self) -> None:
        """
        Stop gracefully.

        Signals the run loop to exit and closes the connection.
        """
        logger.info("Signaling client stopping...")
        self._running = False
        self._stop_event.set()

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except ConnectionClosed:
                pass

        self._connected = False

    async def _connect_and_listen(self) -> None:
        """Connect to the relay and dispatch messages until disconnect."""
        async with websockets.connect(
            self.url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        ) as ws:
            self._websocket = ws
            self._connected = True
            logger.info(f"Connected to signaling relay: {self.url}")

            if self._room is not None:
                logger.info(f"Joining meeting {self._room}")
                await self._send({"event": "join-meeting", "meetingCode": self._room})

            try:
                async for raw in ws:
                    if not self._running:
                        break
                    event = self._parse(raw)
                    if event is not None:
                        self.metrics.messages_received += 1
                        self._dispatch(event)

            except ConnectionClosedOK:
                logger.info("Signaling connection closed normally")
            except ConnectionClosedError as e:
                logger.warning(f"Signaling connection closed with error: {e}")
                raise
            finally:
                self._connected = False
                self._websocket = None

    async def _send(self, payload: dict) -> None:
        if self._websocket is None or not self._connected:
            self.metrics.messages_dropped += 1
            logger.warning(
                f"Signaling not connected, dropping '{payload.get('event')}' message"
            )
            return
        await self._websocket.send(json.dumps(payload))
        self.metrics.messages_sent += 1

    def _parse(self, raw) -> Optional[SignalEvent]:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            self.metrics.parse_errors += 1
            logger.error(f"Failed to parse signaling message: {e}")
            return None

        if not isinstance(data, dict) or "event" not in data:
            self.metrics.parse_errors += 1
            logger.error(f"Signaling message without event: {data!r}")
            return None

        payload = data.get("data")
        return SignalEvent(
            event=str(data["event"]),
            meeting_code=data.get("meetingCode"),
            sender=data.get("from"),
            data=payload if isinstance(payload, dict) else {},
        )

    def _dispatch(self, event: SignalEvent) -> None:
        if event.event == "new-user-joined":
            group = "peer_joined"
        elif event.event in PEER_LEFT_EVENTS:
            group = "peer_left"
        elif event.event in RELAYED_EVENTS:
            group = "message"
        else:
            group = None

        if group is not None:
            for callback in self._callbacks[group]:
                try:
                    callback(event.to_dict())
                except Exception as e:
                    logger.error(f"Signaling callback for '{event.event}' failed: {e}")

        if self._events.full():
            self._events.get_nowait()
        self._events.put_nowait(event)
