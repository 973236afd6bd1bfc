"""
Frame Sources
=============

Where the capture loop gets its frames from.

A source only ever exposes its LATEST frame. Each presented frame sets
the source's presentation signal; the capture loop ticks on that signal
and reads the latest frame, so a source never queues frames and never
blocks the loop.

Sources:
    - SyntheticSource: frames pushed by hand (tests, demos)
    - CameraSource: OpenCV VideoCapture read on a worker thread
"""

import asyncio
import logging
import time
from typing import List, Optional, Protocol

import cv2
import numpy as np

from meetfx.capture.frame import Frame
from meetfx.errors import MediaAcquisitionError
from meetfx.transport.base import AudioTrack, CameraTrack


logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    """
    Protocol for local media sources.

    Attributes:
        native_fps: Frame rate the source delivers at
        track: Raw camera track (what the call sends with the effect off)
        audio_tracks: Audio tracks captured alongside the video
    """

    native_fps: float
    track: CameraTrack
    audio_tracks: List[AudioTrack]

    def latest(self) -> Optional[Frame]:
        """Most recent frame, or None before the first one arrives."""
        ...

    async def wait_for_frame(self) -> None:
        """Return once a frame has been presented since the previous call."""
        ...


class PresentationSignal:
    """
    Wakes one waiter per batch of presented frames.

    Frames presented while nobody waits collapse into one wake-up; the
    waiter then reads the latest frame.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def notify(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
        self._event.clear()


def synthetic_image(width: int, height: int, seed: int = 0) -> np.ndarray:
    """
    Build a deterministic BGR test image.

    A horizontal gradient in blue, vertical in green and a seed-driven
    red level, so consecutive seeds produce visibly different frames.
    """
    xs = np.linspace(0, 255, width, dtype=np.float32)
    ys = np.linspace(0, 255, height, dtype=np.float32)
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[:, :, 0] = xs[np.newaxis, :].astype(np.uint8)
    image[:, :, 1] = ys[:, np.newaxis].astype(np.uint8)
    image[:, :, 2] = (seed * 37) % 256
    return image


class SyntheticSource:
    """
    In-memory source driven by `push()`.

    Each push produces a new frame with the next frame id and a
    timestamp of `frame_id / fps`, which is what a camera running at
    exactly the native rate would report.

    Example:
        source = SyntheticSource(width=64, height=48, fps=30)
        source.push()           # frame 0
        source.push(my_image)   # frame 1
        frame = source.latest()
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        fps: float = 30.0,
        with_audio: bool = True,
    ) -> None:
        self.width = width
        self.height = height
        self.native_fps = float(fps)
        self.track = CameraTrack(label="synthetic-camera")
        self.audio_tracks: List[AudioTrack] = (
            [AudioTrack(label="synthetic-microphone")] if with_audio else []
        )
        self._latest: Optional[Frame] = None
        self._presented = PresentationSignal()
        self._next_id = 0
        self._running = False

    def push(self, image: Optional[np.ndarray] = None) -> Frame:
        """Publish a new frame (a generated image when none is given)."""
        if image is None:
            image = synthetic_image(self.width, self.height, seed=self._next_id)
        frame = Frame(
            frame_id=self._next_id,
            timestamp=self._next_id / self.native_fps,
            image=image,
            fps=self.native_fps,
        )
        self._next_id += 1
        self._latest = frame
        self._presented.notify()
        return frame

    def latest(self) -> Optional[Frame]:
        return self._latest

    async def wait_for_frame(self) -> None:
        await self._presented.wait()

    async def run(self) -> None:
        """Push a generated frame at the native rate until stopped."""
        self._running = True
        period = 1.0 / self.native_fps
        logger.info(f"SyntheticSource producing {self.width}x{self.height}@{self.native_fps:.0f}fps")
        while self._running:
            self.push()
            await asyncio.sleep(period)
        logger.info("SyntheticSource stopped")

    async def stop(self) -> None:
        self._running = False


class CameraSourceMetrics:
    """Metrics for CameraSource observability."""

    __slots__ = (
        "frames_read",
        "read_errors",
        "last_frame_id",
    )

    def __init__(self) -> None:
        self.frames_read: int = 0
        self.read_errors: int = 0
        self.last_frame_id: int = -1

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_read": self.frames_read,
            "read_errors": self.read_errors,
            "last_frame_id": self.last_frame_id,
        }


class CameraSource:
    """
    Local camera read through OpenCV.

    `open()` acquires the device and fails with MediaAcquisitionError,
    which the caller reports separately from background-effect errors.
    `run()` then reads frames on a worker thread until `stop()`.

    Example:
        camera = CameraSource(device=0, width=640, height=480, fps=30)
        camera.open()
        task = asyncio.create_task(camera.run())
        ...
        await camera.stop()
        await task
    """

    def __init__(
        self,
        device: int = 0,
        width: int = 640,
        height: int = 480,
        fps: float = 30.0,
        max_read_errors: int = 30,
    ) -> None:
        """
        Initialize camera source.

        Args:
            device: OpenCV camera index
            width: Requested frame width
            height: Requested frame height
            fps: Requested frame rate
            max_read_errors: Consecutive failed reads before giving up
        """
        self.device = device
        self.width = width
        self.height = height
        self.native_fps = float(fps)
        self.max_read_errors = max_read_errors

        self.track = CameraTrack(label=f"camera-{device}")
        self.audio_tracks: List[AudioTrack] = [AudioTrack(label="microphone")]

        self._capture: Optional[cv2.VideoCapture] = None
        self._latest: Optional[Frame] = None
        self._presented = PresentationSignal()
        self._running: bool = False
        self._reading: bool = False
        self._started_at: float = 0.0

        self.metrics = CameraSourceMetrics()

    @property
    def opened(self) -> bool:
        return self._capture is not None and self._capture.isOpened()

    def open(self) -> None:
        """
        Acquire the camera.

        Raises:
            MediaAcquisitionError: If the device cannot be opened
        """
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise MediaAcquisitionError(f"Could not open camera device {self.device}")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        capture.set(cv2.CAP_PROP_FPS, self.native_fps)

        reported_fps = capture.get(cv2.CAP_PROP_FPS)
        if reported_fps and reported_fps > 0:
            self.native_fps = float(reported_fps)

        self._capture = capture
        self._started_at = time.monotonic()
        logger.info(
            f"Camera {self.device} opened: requested {self.width}x{self.height}"
            f"@{self.native_fps:.0f}fps"
        )

    def latest(self) -> Optional[Frame]:
        return self._latest

    async def wait_for_frame(self) -> None:
        await self._presented.wait()

    async def run(self) -> None:
        """
        Read frames until stopped.

        Reads block, so each one runs on a worker thread. Consecutive
        read failures beyond `max_read_errors` end the loop.
        """
        if not self.opened:
            self.open()

        self._running = True
        self._reading = True
        logger.info(f"CameraSource {self.device} reading")

        try:
            await self._read_loop()
        finally:
            self._running = False
            self._reading = False
            self._release()
        logger.info(f"CameraSource {self.device} stopped")

    async def _read_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            ok, image = await asyncio.to_thread(self._capture.read)
            if not self._running:
                break

            if not ok or image is None:
                self.metrics.read_errors += 1
                consecutive_errors += 1
                if consecutive_errors >= self.max_read_errors:
                    logger.error(
                        f"Camera {self.device} failed {consecutive_errors} reads in a row, stopping"
                    )
                    break
                await asyncio.sleep(1.0 / self.native_fps)
                continue

            consecutive_errors = 0
            frame_id = self.metrics.last_frame_id + 1
            self._latest = Frame(
                frame_id=frame_id,
                timestamp=time.monotonic() - self._started_at,
                image=image,
                fps=self.native_fps,
            )
            self.metrics.frames_read += 1
            self.metrics.last_frame_id = frame_id
            self._presented.notify()

    def _release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None

    async def stop(self) -> None:
        """
        Stop reading.

        The device is released by `run()` once its current read returns,
        or immediately when no read loop is active.
        """
        self._running = False
        if not self._reading:
            self._release()
