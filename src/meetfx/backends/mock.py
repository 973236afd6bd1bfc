"""
Mock Segmentation Backend
=========================

Deterministic backend for tests and demos.

Produces a fixed "person" mask, a disc centred in the frame with a
radius of 40% of the smaller side, at the variant's model-native
resolution. Latency, failure probability and init behaviour are
configurable so every loop and switch path can be exercised.

Design Rules:
    - Same input -> same mask (the mask never depends on pixels)
    - Failures come from a seeded RNG, so runs are reproducible
"""

import asyncio
import logging
import random
import time
from typing import Optional, Tuple

import cv2
import numpy as np

from meetfx.backends.base import SegmentationBackend
from meetfx.capture.frame import Frame
from meetfx.errors import BackendInitError, FrameProcessError
from meetfx.models.background import BackgroundSpec
from meetfx.models.backend import Variant
from meetfx.models.result import SegmentationResult


logger = logging.getLogger(__name__)


DEFAULT_RESOLUTION: Tuple[int, int] = (256, 144)


def disc_mask(width: int, height: int, radius_ratio: float = 0.4) -> np.ndarray:
    """Float32 mask with a filled disc in the centre (1 = foreground)."""
    mask = np.zeros((height, width), dtype=np.float32)
    radius = int(min(width, height) * radius_ratio)
    cv2.circle(mask, (width // 2, height // 2), radius, 1.0, thickness=-1)
    return mask


class MockSegmentationBackend(SegmentationBackend):
    """
    Configurable fake backend.

    Attributes:
        latency_ms: Simulated inference time per frame
        failure_rate: Probability that a frame fails
        init_delay_ms: Simulated model load time
        fail_init: Make init() fail
        calls: Number of process_frame calls that reached inference
    """

    backend_id = "mock"

    def __init__(
        self,
        variant: Optional[Variant] = None,
        latency_ms: float = 5.0,
        failure_rate: float = 0.0,
        seed: int = 7,
        init_delay_ms: float = 0.0,
        fail_init: bool = False,
    ) -> None:
        super().__init__(variant)
        self.latency_ms = latency_ms
        self.failure_rate = failure_rate
        self.init_delay_ms = init_delay_ms
        self.fail_init = fail_init
        self.calls = 0
        self._rng = random.Random(seed)
        self._mask: Optional[np.ndarray] = None

        logger.info(
            f"MockSegmentationBackend created: latency={latency_ms}ms, "
            f"failure_rate={failure_rate}, seed={seed}"
        )

    async def _load(self) -> None:
        if self.init_delay_ms > 0:
            await asyncio.sleep(self.init_delay_ms / 1000.0)
        if self.fail_init:
            raise BackendInitError(self.backend_id, "simulated initialization failure")

        width, height = self.variant.resolution if self.variant else DEFAULT_RESOLUTION
        self._mask = await self.run_blocking(disc_mask, width, height)

    async def _process(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        started = time.perf_counter()
        self.calls += 1

        if self.failure_rate > 0 and self._rng.random() < self.failure_rate:
            raise FrameProcessError(
                f"simulated failure on frame {frame.frame_id}", frame_id=frame.frame_id
            )
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000.0)

        return SegmentationResult(
            mask=self._mask,
            segmentation_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _release(self) -> None:
        self._mask = None
