"""
Segmentation Backend Tests
==========================

Lifecycle of the backend base class and the concrete backends.
"""

import asyncio
import sys
import threading
import types

import numpy as np
import pytest

from meetfx.backends.luma import LumaKeyBackend, luma_mask
from meetfx.backends.mediapipe_backend import (
    MediaPipeSegmentationBackend,
    mediapipe_installed,
)
from meetfx.backends.mock import MockSegmentationBackend, disc_mask
from meetfx.capture.frame import Frame
from meetfx.errors import BackendInitError, FrameProcessError
from meetfx.models.background import Blur, NoBackground
from meetfx.models.backend import Variant

from conftest import StubBackend


def make_frame(frame_id: int = 3, height: int = 48, width: int = 64) -> Frame:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, width // 2:] = 255
    return Frame(frame_id=frame_id, timestamp=frame_id / 30.0, image=image)


class TestInit:
    """Tests for the shared init() behaviour."""

    @pytest.mark.asyncio
    async def test_concurrent_init_loads_once(self):
        """Callers that overlap share one load."""
        backend = StubBackend(init_delay_ms=20.0)

        await asyncio.gather(backend.init(), backend.init(), backend.init())

        assert backend.loads == 1
        assert backend.ready

    @pytest.mark.asyncio
    async def test_init_after_ready_is_noop(self):
        backend = StubBackend()
        await backend.init()
        await backend.init()
        assert backend.loads == 1

    @pytest.mark.asyncio
    async def test_failed_init_can_retry(self):
        """A failure is reported and a later init() tries again."""
        backend = StubBackend(fail_init=True)

        with pytest.raises(BackendInitError) as exc_info:
            await backend.init()
        assert exc_info.value.reason == "model file missing"
        assert not backend.ready

        backend.fail_init = False
        await backend.init()

        assert backend.ready
        assert backend.loads == 2

    @pytest.mark.asyncio
    async def test_dispose_during_init(self):
        """Disposing while loading fails the pending init cleanly."""
        backend = StubBackend(init_delay_ms=200.0)
        pending = asyncio.create_task(backend.init())
        await asyncio.sleep(0.01)

        backend.dispose()

        with pytest.raises(BackendInitError, match="disposed"):
            await pending
        assert not backend.ready

    @pytest.mark.asyncio
    async def test_init_after_dispose_fails(self):
        backend = StubBackend()
        backend.dispose()
        with pytest.raises(BackendInitError):
            await backend.init()

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_load_running(self):
        """Cancelling one waiter does not abort the shared load."""
        backend = StubBackend(init_delay_ms=50.0)
        waiter = asyncio.create_task(backend.init())
        await asyncio.sleep(0.01)
        waiter.cancel()

        await backend.init()

        assert backend.ready
        assert backend.loads == 1


class TestDispose:
    """Tests for dispose()."""

    def test_dispose_before_init(self):
        backend = StubBackend()
        backend.dispose()
        assert backend.disposed
        assert backend.releases == 1

    @pytest.mark.asyncio
    async def test_dispose_twice_releases_once(self):
        backend = StubBackend()
        await backend.init()

        backend.dispose()
        backend.dispose()

        assert backend.releases == 1
        assert not backend.ready

    @pytest.mark.asyncio
    async def test_run_blocking_after_dispose_raises(self):
        backend = MockSegmentationBackend(latency_ms=0)
        await backend.init()
        backend.dispose()
        with pytest.raises(RuntimeError):
            await backend.run_blocking(lambda: None)


class TestProcessFrame:
    """Tests for process_frame() wrapping."""

    @pytest.mark.asyncio
    async def test_not_ready_raises(self):
        backend = StubBackend()
        with pytest.raises(FrameProcessError) as exc_info:
            await backend.process_frame(make_frame(5), NoBackground())
        assert exc_info.value.frame_id == 5

    @pytest.mark.asyncio
    async def test_failure_wrapped_with_cause(self):
        """Any backend exception becomes a FrameProcessError for that frame."""
        backend = StubBackend(fail=True)
        await backend.init()

        with pytest.raises(FrameProcessError) as exc_info:
            await backend.process_frame(make_frame(9), NoBackground())

        assert exc_info.value.frame_id == 9
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "inference exploded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_result_tagged_with_frame(self):
        backend = StubBackend()
        await backend.init()

        result = await backend.process_frame(make_frame(11), NoBackground())

        assert result.frame_id == 11
        assert result.segmentation_ms == 1.5
        assert result.total_ms > 0


class TestMockBackend:
    """Tests for MockSegmentationBackend."""

    def test_disc_mask(self):
        mask = disc_mask(256, 144)
        assert mask.shape == (144, 256)
        assert mask.dtype == np.float32
        assert mask[72, 128] == 1.0
        assert mask[0, 0] == 0.0

    @pytest.mark.asyncio
    async def test_mask_at_variant_resolution(self):
        backend = MockSegmentationBackend(variant=Variant("640x360", (640, 360)), latency_ms=0)
        await backend.init()

        result = await backend.process_frame(make_frame(), Blur(radius=5))

        assert result.mask.shape == (360, 640)
        assert result.output is None
        assert backend.calls == 1
        backend.dispose()

    @pytest.mark.asyncio
    async def test_same_mask_every_frame(self):
        backend = MockSegmentationBackend(latency_ms=0)
        await backend.init()

        first = await backend.process_frame(make_frame(1), NoBackground())
        second = await backend.process_frame(make_frame(2), NoBackground())

        assert first.mask.shape == (144, 256)
        assert np.array_equal(first.mask, second.mask)
        backend.dispose()

    @pytest.mark.asyncio
    async def test_failure_rate_one_always_fails(self):
        backend = MockSegmentationBackend(latency_ms=0, failure_rate=1.0)
        await backend.init()
        with pytest.raises(FrameProcessError):
            await backend.process_frame(make_frame(), NoBackground())
        backend.dispose()

    @pytest.mark.asyncio
    async def test_simulated_init_failure(self):
        backend = MockSegmentationBackend(fail_init=True)
        with pytest.raises(BackendInitError, match="simulated"):
            await backend.init()


class TestLumaKeyBackend:
    """Tests for LumaKeyBackend."""

    def test_luma_mask_threshold(self):
        image = np.zeros((2, 2, 3), dtype=np.uint8)
        image[0, 0] = 255
        image[1, 1] = (40, 40, 40)
        mask = luma_mask(image, threshold=0.3)
        assert mask.tolist() == [[1.0, 0.0], [0.0, 0.0]]

    @pytest.mark.asyncio
    async def test_self_composites(self):
        """The output keeps bright pixels and replaces dark ones."""
        backend = LumaKeyBackend(variant=Variant("CPU", (640, 480)))
        await backend.init()
        frame = make_frame()

        result = await backend.process_frame(frame, Blur(radius=3))

        assert result.mask.shape == (48, 64)
        assert np.all(result.mask[:, 32:] == 1.0)
        assert np.all(result.mask[:, :32] == 0.0)
        assert result.output.shape == frame.image.shape
        assert np.array_equal(result.output[:, 40:], frame.image[:, 40:])
        backend.dispose()

    @pytest.mark.asyncio
    async def test_no_background_returns_mask_only(self):
        backend = LumaKeyBackend()
        await backend.init()
        result = await backend.process_frame(make_frame(), NoBackground())
        assert result.output is None
        assert result.mask is not None
        backend.dispose()


class TestMediaPipeBackend:
    """Tests for MediaPipeSegmentationBackend without the optional package."""

    def test_model_selection(self):
        assert MediaPipeSegmentationBackend(Variant("Landscape", (256, 144))).model_selection == 1
        assert MediaPipeSegmentationBackend(Variant("General", (256, 256))).model_selection == 0

    @pytest.mark.asyncio
    @pytest.mark.skipif(mediapipe_installed(), reason="mediapipe is installed")
    async def test_init_without_mediapipe_fails(self):
        backend = MediaPipeSegmentationBackend()
        with pytest.raises(BackendInitError, match="mediapipe"):
            await backend.init()


class FakeSelfieSegmentation:
    """Stands in for mediapipe's SelfieSegmentation; process() can be held."""

    def __init__(self, model_selection: int = 0) -> None:
        self.model_selection = model_selection
        self.closed = False
        self.processing = threading.Event()
        self.gate = threading.Event()
        self.gate.set()

    def process(self, image):
        self.processing.set()
        self.gate.wait(timeout=2.0)
        return types.SimpleNamespace(segmentation_mask=np.ones(image.shape[:2], dtype=np.float32))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_mediapipe(monkeypatch):
    """Install a minimal mediapipe module; returns the models it builds."""
    models = []

    def build(model_selection):
        model = FakeSelfieSegmentation(model_selection)
        models.append(model)
        return model

    module = types.ModuleType("mediapipe")
    module.solutions = types.SimpleNamespace(
        selfie_segmentation=types.SimpleNamespace(SelfieSegmentation=build)
    )
    monkeypatch.setitem(sys.modules, "mediapipe", module)
    return models


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        assert asyncio.get_running_loop().time() < deadline
        await asyncio.sleep(0.01)


class TestMediaPipeBackendLifecycle:
    """MediaPipeSegmentationBackend against a stand-in mediapipe module."""

    @pytest.mark.asyncio
    async def test_segments_and_closes(self, fake_mediapipe):
        backend = MediaPipeSegmentationBackend(Variant("Landscape", (256, 144)))
        await backend.init()

        result = await backend.process_frame(make_frame(), NoBackground())

        assert fake_mediapipe[0].model_selection == 1
        assert result.mask.shape == (144, 256)
        assert result.frame_id == 3

        backend.dispose()
        await wait_until(lambda: fake_mediapipe[0].closed)

    @pytest.mark.asyncio
    async def test_dispose_during_warm_up_closes_model(self, fake_mediapipe, monkeypatch):
        """A model built before a mid-init dispose is still closed."""
        original = FakeSelfieSegmentation.__init__

        def held_init(self, model_selection=0):
            original(self, model_selection)
            self.gate.clear()

        monkeypatch.setattr(FakeSelfieSegmentation, "__init__", held_init)
        backend = MediaPipeSegmentationBackend()
        init = asyncio.create_task(backend.init())
        await wait_until(lambda: fake_mediapipe and fake_mediapipe[0].processing.is_set())

        backend.dispose()
        fake_mediapipe[0].gate.set()

        with pytest.raises(BackendInitError):
            await init
        await wait_until(lambda: fake_mediapipe[0].closed)
