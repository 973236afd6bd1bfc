"""
Call Transport Interfaces
=========================

Tracks and the two external collaborators of the pipeline: the peer
media transport (which carries tracks) and the signaling relay (which
carries opaque session-negotiation messages).

Design Rules:
    - The pipeline never encodes or sends media itself
    - The outgoing video is swapped with `replace_outgoing_video()` only,
      never by renegotiating the call
    - Only the capture loop and the switch coordinator mutate tracks
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional, Protocol

import numpy as np


logger = logging.getLogger(__name__)


def _new_track_id() -> str:
    return uuid.uuid4().hex[:12]


class VideoTrack:
    """Base class for outgoing video tracks."""

    kind = "video"

    def __init__(self, label: str) -> None:
        self.label = label
        self.track_id = _new_track_id()
        self.ended = False

    def stop(self) -> None:
        self.ended = True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(label={self.label!r}, id={self.track_id})"


class CameraTrack(VideoTrack):
    """The raw camera track, sent while the effect is off."""
    pass


class ProcessedTrack(VideoTrack):
    """
    Track carrying composited frames from one backend session.

    The capture loop pushes every published frame here. The track keeps
    the most recent image for the transport and a bounded history of
    published frame ids.

    Attributes:
        last_image: Most recently published image
        last_frame_id: Id of that image's source frame
        frames_published: Number of pushes accepted
        published_ids: Recent frame ids in publish order
    """

    def __init__(self, label: str, history: int = 256) -> None:
        super().__init__(label)
        self.last_image: Optional[np.ndarray] = None
        self.last_frame_id: int = -1
        self.frames_published: int = 0
        self.published_ids: Deque[int] = deque(maxlen=history)
        self._sinks: List[Callable[[int, np.ndarray], None]] = []

    def add_sink(self, sink: Callable[[int, np.ndarray], None]) -> None:
        """Register a consumer called with (frame_id, image) on every push."""
        self._sinks.append(sink)

    def push(self, frame_id: int, image: np.ndarray) -> None:
        """Publish one composited frame."""
        if self.ended:
            return
        self.last_image = image
        self.last_frame_id = frame_id
        self.frames_published += 1
        self.published_ids.append(frame_id)
        for sink in self._sinks:
            sink(frame_id, image)


@dataclass
class AudioTrack:
    """A local audio track; passed through to the transport untouched."""

    label: str
    track_id: str = field(default_factory=_new_track_id)
    kind: str = "audio"


class VideoSender:
    """The transport's sender slot for outgoing video."""

    def __init__(self, track: Optional[VideoTrack] = None) -> None:
        self.track = track

    def replace_track(self, track: VideoTrack) -> None:
        self.track = track


class CallTransport(Protocol):
    """
    Peer media transport, as far as the pipeline is concerned.

    Implementations wrap whatever WebRTC stack carries the call.
    """

    def replace_outgoing_video(self, track: VideoTrack) -> None:
        ...

    def attach_audio_tracks(self, tracks: List[AudioTrack]) -> None:
        ...

    def get_outgoing_video_sender(self) -> Optional[VideoSender]:
        ...


class SignalingRelay(Protocol):
    """
    Room-based relay for session-negotiation messages.

    Payloads (offer, answer, ice-candidate, ...) are opaque.
    """

    async def create_room(self, code: str) -> None:
        ...

    async def join_room(self, code: str) -> None:
        ...

    async def send_to_room(self, code: str, message: dict) -> None:
        ...

    def on_peer_joined(self, callback: Callable[[dict], None]) -> None:
        ...

    def on_message(self, callback: Callable[[dict], None]) -> None:
        ...

    def on_peer_left(self, callback: Callable[[dict], None]) -> None:
        ...


class LoopbackTransport:
    """
    In-memory CallTransport.

    Used when no peer is connected and in tests. Every replacement is
    recorded so callers can check that a switch replaced the outgoing
    video exactly once.

    Attributes:
        sender: Video sender slot
        audio_tracks: Attached audio tracks (no duplicates)
        replacements: Every track passed to replace_outgoing_video
    """

    def __init__(self, initial_track: Optional[VideoTrack] = None) -> None:
        self.sender = VideoSender(initial_track)
        self.audio_tracks: List[AudioTrack] = []
        self.replacements: List[VideoTrack] = []

    @property
    def outgoing_video(self) -> Optional[VideoTrack]:
        return self.sender.track

    def replace_outgoing_video(self, track: VideoTrack) -> None:
        previous = self.sender.track
        self.sender.replace_track(track)
        self.replacements.append(track)
        logger.info(f"Outgoing video replaced: {previous} -> {track}")

    def attach_audio_tracks(self, tracks: List[AudioTrack]) -> None:
        known = {t.track_id for t in self.audio_tracks}
        for track in tracks:
            if track.track_id not in known:
                self.audio_tracks.append(track)
                known.add(track.track_id)

    def get_outgoing_video_sender(self) -> Optional[VideoSender]:
        return self.sender
