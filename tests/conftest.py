"""
Test Configuration
==================

Pytest fixtures and test doubles for MeetFX.
"""

import asyncio
from typing import List, Optional

import numpy as np
import pytest
import pytest_asyncio

from meetfx.backends.base import SegmentationBackend
from meetfx.backends.registry import BackendRegistry
from meetfx.capture.frame import Frame
from meetfx.capture.source import SyntheticSource
from meetfx.compositing.compositor import FrameCompositor
from meetfx.metrics.aggregator import MetricsAggregator
from meetfx.models.alert import Alert
from meetfx.models.background import BackgroundSpec
from meetfx.models.backend import (
    BackendDescriptor,
    BackendStatus,
    ComputeKind,
    Selection,
    Variant,
)
from meetfx.models.capabilities import DeviceCapabilities, PerformanceClass
from meetfx.models.result import SegmentationResult
from meetfx.pipeline.coordinator import BackgroundSwitchCoordinator
from meetfx.pipeline.loop import CaptureLoop, LoopState
from meetfx.pipeline.session import ActiveBackendSession
from meetfx.transport.base import LoopbackTransport


FRAME_WIDTH = 64
FRAME_HEIGHT = 48


# =============================================================================
# Test Doubles
# =============================================================================

class StubBackend(SegmentationBackend):
    """
    Scriptable backend.

    Every knob is a plain attribute so tests can change behaviour
    between ticks (e.g. start hanging after the first frame).
    """

    backend_id = "stub"

    def __init__(
        self,
        variant: Optional[Variant] = None,
        mask: Optional[np.ndarray] = None,
        output: Optional[np.ndarray] = None,
        delay_ms: float = 0.0,
        hang: bool = False,
        fail: bool = False,
        init_delay_ms: float = 0.0,
        fail_init: bool = False,
    ) -> None:
        super().__init__(variant)
        if mask is None and output is None:
            mask = np.ones((18, 32), dtype=np.float32)
        self.mask = mask
        self.output = output
        self.delay_ms = delay_ms
        self.hang = hang
        self.fail = fail
        self.init_delay_ms = init_delay_ms
        self.fail_init = fail_init

        self.loads = 0
        self.releases = 0
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._hold = asyncio.Event()

    def release_hold(self) -> None:
        """Let hung inferences finish."""
        self._hold.set()

    async def _load(self) -> None:
        self.loads += 1
        if self.init_delay_ms > 0:
            await asyncio.sleep(self.init_delay_ms / 1000.0)
        if self.fail_init:
            raise RuntimeError("model file missing")

    async def _process(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.hang:
                await self._hold.wait()
            elif self.delay_ms > 0:
                await asyncio.sleep(self.delay_ms / 1000.0)
            if self.fail:
                raise RuntimeError("inference exploded")
            return SegmentationResult(mask=self.mask, output=self.output, segmentation_ms=1.5)
        finally:
            self.in_flight -= 1

    def _release(self) -> None:
        self.releases += 1


class ManualTicker:
    """Ticker that never fires; tests call loop.tick() themselves."""

    async def wait(self) -> None:
        await asyncio.Event().wait()


class AlertCollector:
    """Alert sink that keeps everything it receives."""

    def __init__(self) -> None:
        self.alerts: List[Alert] = []

    def __call__(self, alert: Alert) -> None:
        self.alerts.append(alert)


def stub_selection(backend_id: str = "stub", variant: str = "A") -> Selection:
    descriptor = BackendDescriptor(
        backend_id=backend_id,
        name=backend_id.title(),
        variants=(Variant("A", (32, 18)), Variant("B", (64, 36))),
    )
    return Selection(descriptor, descriptor.find_variant(variant))


async def install_running(
    loop: CaptureLoop,
    backend: SegmentationBackend,
    generation: int = 1,
) -> ActiveBackendSession:
    """Init a backend and put it into a RUNNING loop, without the run task."""
    await backend.init()
    session = ActiveBackendSession(backend, stub_selection(), generation)
    loop.transition(LoopState.STARTING)
    loop.install_session(session)
    loop.transition(LoopState.RUNNING)
    return session


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def source() -> SyntheticSource:
    """Small synthetic camera at 30 FPS."""
    return SyntheticSource(width=FRAME_WIDTH, height=FRAME_HEIGHT, fps=30)


@pytest.fixture
def alerts() -> AlertCollector:
    return AlertCollector()


@pytest.fixture
def make_loop(source, alerts):
    """Factory for capture loops driven by hand."""

    def _make(**kwargs) -> CaptureLoop:
        options = {
            "tick_budget_ms": 15.0,
            "inflight_timeout_ms": 10_000.0,
            "alert_sink": alerts,
            "ticker": ManualTicker(),
        }
        options.update(kwargs)
        return CaptureLoop(
            source=source,
            compositor=FrameCompositor(),
            metrics=MetricsAggregator(window_size=30, native_fps=source.native_fps),
            **options,
        )

    return _make


@pytest.fixture
def capabilities() -> DeviceCapabilities:
    """A mid-range host: SIMD, no GPU."""
    return DeviceCapabilities(
        parallel_extension_supported=True,
        gpu_acceleration_supported=False,
        gpu_acceleration_tier2_supported=False,
        performance_class=PerformanceClass.MEDIUM,
        cpu_count=4,
        benchmark_ms=40.0,
    )


@pytest.fixture
def created() -> List[StubBackend]:
    """Every backend the test registry instantiated, in order."""
    return []


@pytest.fixture
def stub_registry(capabilities, created) -> BackendRegistry:
    """
    Registry over stub backends.

    alpha / beta: healthy; slow: 200ms init; broken: init fails;
    planned: not implemented; gpu: needs a GPU the host lacks.
    """
    descriptors = (
        BackendDescriptor(
            "alpha", "Alpha",
            variants=(Variant("A1", (32, 18)), Variant("A2", (64, 36))),
        ),
        BackendDescriptor("beta", "Beta", variants=(Variant("B1", (32, 18)),)),
        BackendDescriptor("slow", "Slow", variants=(Variant("S1", (32, 18)),)),
        BackendDescriptor("broken", "Broken", variants=(Variant("X1", (32, 18)),)),
        BackendDescriptor(
            "planned", "Planned",
            status=BackendStatus.PLANNED,
            variants=(Variant("P1", (32, 18)),),
        ),
        BackendDescriptor(
            "gpu", "Gpu",
            variants=(Variant("G1", (32, 18), ComputeKind.GPU),),
        ),
    )

    def factory(**options):
        def _build(variant):
            backend = StubBackend(variant=variant, **options)
            created.append(backend)
            return backend
        return _build

    registry = BackendRegistry(
        descriptors,
        factories={
            "alpha": factory(),
            "beta": factory(),
            "slow": factory(init_delay_ms=200.0),
            "broken": factory(fail_init=True),
            "gpu": factory(),
        },
    )
    registry.set_capabilities(capabilities)
    return registry


@pytest_asyncio.fixture
async def harness(source, stub_registry, make_loop, alerts):
    """Loop, transport and coordinator wired like the service does."""

    class Harness:
        pass

    h = Harness()
    h.source = source
    h.registry = stub_registry
    h.alerts = alerts
    h.loop = make_loop()
    h.metrics = h.loop.metrics
    h.transport = LoopbackTransport(initial_track=source.track)
    h.coordinator = BackgroundSwitchCoordinator(
        loop=h.loop,
        registry=stub_registry,
        transport=h.transport,
        metrics=h.metrics,
        raw_track=source.track,
        audio_tracks=source.audio_tracks,
        init_timeout=0.5,
        drain_timeout=0.05,
        alert_sink=alerts,
    )
    yield h
    await h.coordinator.stop()
