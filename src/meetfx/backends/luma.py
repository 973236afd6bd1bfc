"""
Luminance Key Backend
=====================

Threshold segmentation on pixel luminance, with self-compositing.

A pixel is foreground when its luminance (0.299 R + 0.587 G + 0.114 B,
normalised to [0, 1]) reaches the threshold. The backend composites
the output itself and hands back both the finished image and the mask,
which makes it the reference for the "backend returns output" path.

Variants:
    - CPU: NumPy/OpenCV on the worker thread
    - GPU: same maths through OpenCV's transparent API (UMat/OpenCL)
"""

import logging
import time
from typing import Optional

import cv2
import numpy as np

from meetfx.backends.base import SegmentationBackend
from meetfx.capture.frame import Frame
from meetfx.compositing.compositor import FrameCompositor
from meetfx.models.background import BackgroundSpec, NoBackground
from meetfx.models.backend import ComputeKind, Variant
from meetfx.models.result import SegmentationResult


logger = logging.getLogger(__name__)


# BGR order, to dot with OpenCV images
LUMA_WEIGHTS_BGR = np.array([0.114, 0.587, 0.299], dtype=np.float32)


def luma_mask(image: np.ndarray, threshold: float, use_opencl: bool = False) -> np.ndarray:
    """Foreground mask (float32 0/1) of pixels at or above the luminance threshold."""
    if use_opencl:
        gray = cv2.cvtColor(cv2.UMat(image), cv2.COLOR_BGR2GRAY).get()
        gray = gray.astype(np.float32) / 255.0
    else:
        gray = image.astype(np.float32) @ LUMA_WEIGHTS_BGR / 255.0
    return (gray >= threshold).astype(np.float32)


class LumaKeyBackend(SegmentationBackend):
    """
    Luminance-threshold backend.

    Attributes:
        threshold: Luminance level in [0, 1] separating background from foreground
    """

    backend_id = "luma"

    def __init__(
        self,
        variant: Optional[Variant] = None,
        threshold: float = 0.3,
        compositor: Optional[FrameCompositor] = None,
    ) -> None:
        super().__init__(variant)
        self.threshold = threshold
        self._compositor = compositor or FrameCompositor()
        self._use_opencl = False

    async def _load(self) -> None:
        use_opencl = self.variant is not None and self.variant.compute != ComputeKind.CPU
        if use_opencl:
            available = await self.run_blocking(cv2.ocl.haveOpenCL)
            if not available:
                raise RuntimeError("OpenCL is not available on this host")
            cv2.ocl.setUseOpenCL(True)
        self._use_opencl = use_opencl

    async def _process(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        return await self.run_blocking(self._segment_and_composite, frame, spec)

    def _segment_and_composite(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        started = time.perf_counter()
        mask = luma_mask(frame.image, self.threshold, self._use_opencl)
        segmentation_ms = (time.perf_counter() - started) * 1000.0

        output = None
        if not isinstance(spec, NoBackground):
            output = self._compositor.render(frame.image, SegmentationResult(mask=mask), spec)

        return SegmentationResult(
            mask=mask,
            output=output,
            segmentation_ms=segmentation_ms,
        )

    def _release(self) -> None:
        self._use_opencl = False
