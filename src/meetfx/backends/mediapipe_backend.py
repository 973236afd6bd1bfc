"""
MediaPipe Selfie Segmentation Backend
=====================================

Person segmentation with MediaPipe's selfie segmentation solution.

MediaPipe is an optional dependency (`pip install meetfx[mediapipe]`).
It is imported inside init(), so a host without it can still list the
backend; selecting it fails with BackendInitError.

Variants map onto the solution's two models:
    - General (256x256): model_selection=0
    - Landscape (256x144): model_selection=1, faster
"""

import importlib.util
import logging
import time
from typing import Any, Optional

import cv2
import numpy as np

from meetfx.backends.base import SegmentationBackend
from meetfx.capture.frame import Frame
from meetfx.models.background import BackgroundSpec
from meetfx.models.backend import Variant
from meetfx.models.result import SegmentationResult


logger = logging.getLogger(__name__)


LANDSCAPE_VARIANT = "Landscape"


def mediapipe_installed() -> bool:
    """Whether the mediapipe package can be imported on this host."""
    return importlib.util.find_spec("mediapipe") is not None


class MediaPipeSegmentationBackend(SegmentationBackend):
    """MediaPipe selfie segmentation on the backend's worker thread."""

    backend_id = "mediapipe"

    def __init__(self, variant: Optional[Variant] = None) -> None:
        super().__init__(variant)
        self._model: Any = None

    @property
    def model_selection(self) -> int:
        if self.variant is not None and self.variant.name == LANDSCAPE_VARIANT:
            return 1
        return 0

    async def _load(self) -> None:
        try:
            import mediapipe as mp
        except ImportError as e:
            raise RuntimeError(
                "mediapipe is not installed. Install with: pip install meetfx[mediapipe]"
            ) from e

        selection = self.model_selection
        # Assigned on the worker, so a dispose queued behind it closes it
        await self.run_blocking(self._create_model, mp, selection)
        # Warm-up pass so the first real frame does not pay graph setup
        await self.run_blocking(self._warm_up)
        logger.info(f"MediaPipe selfie segmentation loaded (model_selection={selection})")

    def _create_model(self, mp: Any, selection: int) -> None:
        self._model = mp.solutions.selfie_segmentation.SelfieSegmentation(
            model_selection=selection
        )

    def _warm_up(self) -> None:
        if self._model is not None:
            self._model.process(np.zeros((144, 256, 3), dtype=np.uint8))

    async def _process(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        return await self.run_blocking(self._segment, frame.image)

    def _segment(self, image: np.ndarray) -> SegmentationResult:
        started = time.perf_counter()
        model_input = image
        if self.variant is not None:
            width, height = self.variant.resolution
            model_input = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
        rgb = cv2.cvtColor(model_input, cv2.COLOR_BGR2RGB)

        results = self._model.process(rgb)
        mask = results.segmentation_mask
        if mask is None:
            raise RuntimeError("MediaPipe returned no segmentation mask")

        return SegmentationResult(
            mask=np.asarray(mask, dtype=np.float32),
            segmentation_ms=(time.perf_counter() - started) * 1000.0,
        )

    def _release(self) -> None:
        model, self._model = self._model, None
        if model is not None:
            model.close()
