"""
Capture and Transport Tests
===========================

Frame sources, tracks and the loopback transport.
"""

import asyncio

import numpy as np
import pytest

from meetfx.capture import source as source_module
from meetfx.capture.source import CameraSource, SyntheticSource, synthetic_image
from meetfx.errors import MediaAcquisitionError
from meetfx.transport.base import (
    AudioTrack,
    CameraTrack,
    LoopbackTransport,
    ProcessedTrack,
)


class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, opened=True, reads=None):
        self._opened = opened
        self._reads = list(reads or [])
        self.released = False
        self.props = {}

    def isOpened(self):
        return self._opened and not self.released

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return 0.0

    def read(self):
        if self._reads:
            return self._reads.pop(0)
        return False, None

    def release(self):
        self.released = True


class TestSyntheticSource:
    """Tests for SyntheticSource."""

    def test_push_numbers_frames(self, source):
        assert source.latest() is None

        first = source.push()
        second = source.push()

        assert (first.frame_id, second.frame_id) == (0, 1)
        assert second.timestamp == pytest.approx(1 / 30)
        assert source.latest() is second
        assert second.image.shape == (48, 64, 3)

    def test_push_custom_image(self, source):
        image = np.zeros((48, 64, 3), np.uint8)
        assert source.push(image).image is image

    @pytest.mark.asyncio
    async def test_wait_for_frame_follows_pushes(self, source):
        """Each push wakes the waiter once; pushes in between collapse."""
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(source.wait_for_frame(), timeout=0.02)

        source.push()
        await asyncio.wait_for(source.wait_for_frame(), timeout=0.5)

        source.push()
        source.push()
        await asyncio.wait_for(source.wait_for_frame(), timeout=0.5)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(source.wait_for_frame(), timeout=0.02)

    def test_synthetic_images_differ_per_seed(self):
        assert not np.array_equal(synthetic_image(8, 8, 0), synthetic_image(8, 8, 1))

    @pytest.mark.asyncio
    async def test_run_until_stopped(self):
        source = SyntheticSource(width=16, height=16, fps=200)
        task = asyncio.create_task(source.run())
        await asyncio.sleep(0.05)

        await source.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert source.latest() is not None
        assert source.latest().frame_id >= 1

    def test_audio_tracks(self):
        assert len(SyntheticSource().audio_tracks) == 1
        assert SyntheticSource(with_audio=False).audio_tracks == []


class TestCameraSource:
    """Tests for CameraSource with OpenCV replaced."""

    def test_open_failure(self, monkeypatch):
        fake = FakeCapture(opened=False)
        monkeypatch.setattr(source_module.cv2, "VideoCapture", lambda device: fake)

        camera = CameraSource(device=3)
        with pytest.raises(MediaAcquisitionError, match="3"):
            camera.open()
        assert fake.released

    @pytest.mark.asyncio
    async def test_reads_frames_then_gives_up(self, monkeypatch):
        """Consecutive read failures end the loop and release the device."""
        image = np.zeros((48, 64, 3), np.uint8)
        fake = FakeCapture(reads=[(True, image), (True, image)])
        monkeypatch.setattr(source_module.cv2, "VideoCapture", lambda device: fake)

        camera = CameraSource(fps=200, max_read_errors=3)
        camera.open()
        await asyncio.wait_for(camera.run(), timeout=2.0)

        assert camera.metrics.frames_read == 2
        assert camera.metrics.read_errors == 3
        assert camera.latest().frame_id == 1
        await asyncio.wait_for(camera.wait_for_frame(), timeout=0.5)
        assert fake.released
        assert not camera.opened

    @pytest.mark.asyncio
    async def test_stop_without_run_releases(self, monkeypatch):
        fake = FakeCapture()
        monkeypatch.setattr(source_module.cv2, "VideoCapture", lambda device: fake)

        camera = CameraSource()
        camera.open()
        await camera.stop()

        assert fake.released


class TestTracks:
    """Tests for tracks and the loopback transport."""

    def test_processed_track_push_and_sinks(self):
        track = ProcessedTrack("mock[256x144]")
        received = []
        track.add_sink(lambda frame_id, image: received.append(frame_id))
        image = np.zeros((2, 2, 3), np.uint8)

        track.push(4, image)
        track.push(5, image)

        assert track.frames_published == 2
        assert list(track.published_ids) == [4, 5]
        assert track.last_frame_id == 5
        assert received == [4, 5]

    def test_ended_track_ignores_pushes(self):
        track = ProcessedTrack("mock")
        track.stop()
        track.push(1, np.zeros((2, 2, 3), np.uint8))
        assert track.frames_published == 0
        assert track.last_image is None

    def test_loopback_replacement_recorded(self):
        camera = CameraTrack("camera-0")
        processed = ProcessedTrack("mock")
        transport = LoopbackTransport(initial_track=camera)

        transport.replace_outgoing_video(processed)

        assert transport.outgoing_video is processed
        assert transport.get_outgoing_video_sender().track is processed
        assert transport.replacements == [processed]

    def test_audio_attached_once(self):
        transport = LoopbackTransport()
        mic = AudioTrack("microphone")

        transport.attach_audio_tracks([mic])
        transport.attach_audio_tracks([mic])

        assert transport.audio_tracks == [mic]
