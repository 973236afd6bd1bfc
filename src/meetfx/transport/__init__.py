"""
Transport Module
================

Outgoing tracks and the interfaces to the call's external collaborators:
    - VideoTrack / CameraTrack / ProcessedTrack / AudioTrack: media tracks
    - CallTransport: peer media transport protocol
    - LoopbackTransport: in-memory CallTransport
    - SignalingRelay: room-based signaling protocol
    - WebSocketSignalingClient: SignalingRelay over a WebSocket
    - RoomRelay: server side of the signaling relay
"""

from meetfx.transport.base import (
    AudioTrack,
    CallTransport,
    CameraTrack,
    LoopbackTransport,
    ProcessedTrack,
    SignalingRelay,
    VideoSender,
    VideoTrack,
)
from meetfx.transport.relay import RelayMetrics, RoomRelay
from meetfx.transport.signaling import (
    SignalEvent,
    SignalingClientMetrics,
    WebSocketSignalingClient,
)


__all__ = [
    "AudioTrack",
    "CallTransport",
    "CameraTrack",
    "LoopbackTransport",
    "ProcessedTrack",
    "SignalingRelay",
    "VideoSender",
    "VideoTrack",
    "SignalEvent",
    "SignalingClientMetrics",
    "WebSocketSignalingClient",
    "RelayMetrics",
    "RoomRelay",
]
