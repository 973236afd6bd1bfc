"""
Frame Compositor
================

Turns a source frame plus a segmentation result into the outgoing image.

Rendering rules per background spec:
    NoBackground      -> source unchanged
    Blur(radius)      -> Gaussian-blurred source behind the matted subject
    StaticImage       -> loaded image (resized to frame) behind the subject
    UploadedImage     -> same as StaticImage

A result that already carries a self-composited `output` is used as-is
while the background is still the one it was composited for; after a
background change it is re-composited from its mask.
An image whose handle is not loaded yet renders the raw frame and logs a
single warning for that handle; rendering never waits on a load.

Design Rules:
    - Pure function of (image, result, spec): no frame history
    - Never mutates the source image
    - Masks at model-native resolution are resampled nearest-neighbour,
      so every output pixel maps to exactly one mask sample
"""

import logging
from collections import OrderedDict
from typing import Optional, Set, Tuple

import cv2
import numpy as np

from meetfx.models.background import (
    BackgroundSpec,
    Blur,
    NoBackground,
    StaticImage,
    UploadedImage,
)
from meetfx.models.result import Mask, SegmentationResult


logger = logging.getLogger(__name__)


def resample_mask(mask: Mask, height: int, width: int) -> Mask:
    """
    Nearest-neighbour resample of a mask to (height, width).

    Output row r samples mask row floor(r * h / H), column c samples
    floor(c * w / W). Integer arithmetic, so the mapping is exact and
    never reads outside the mask.
    """
    h, w = mask.shape[:2]
    if (h, w) == (height, width):
        return mask
    rows = (np.arange(height) * h) // height
    cols = (np.arange(width) * w) // width
    return mask[rows[:, np.newaxis], cols[np.newaxis, :]]


def normalize_mask(mask: np.ndarray) -> Mask:
    """
    Convert any supported mask encoding to float32 alpha in [0, 1].

    Accepts bool, uint8 (0..255) and float masks, with or without a
    trailing channel axis.
    """
    if mask.ndim == 3:
        mask = mask[:, :, 0]
    if mask.dtype == np.bool_:
        return mask.astype(np.float32)
    if mask.dtype == np.uint8:
        return mask.astype(np.float32) / 255.0
    return np.clip(mask.astype(np.float32, copy=False), 0.0, 1.0)


def matte(
    source: np.ndarray,
    background: np.ndarray,
    alpha: Mask,
    feather_px: int = 0,
) -> np.ndarray:
    """
    Blend source over background using alpha (1 = source).

    Args:
        source: BGR frame, (H, W, 3) uint8
        background: BGR background of the same shape
        alpha: Foreground alpha at frame resolution
        feather_px: Edge softening radius (0 = hard edge)

    Returns:
        New (H, W, 3) uint8 image
    """
    if feather_px > 0:
        alpha = cv2.GaussianBlur(alpha, (0, 0), sigmaX=feather_px)

    if np.all(alpha >= 1.0):
        return source.copy()
    if not np.any(alpha > 0.0):
        return background.copy()

    a = alpha[:, :, np.newaxis]
    blended = source.astype(np.float32) * a + background.astype(np.float32) * (1.0 - a)
    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)


class FrameCompositor:
    """
    Background compositor.

    Attributes:
        feather_px: Edge feathering radius applied to every mask
        mirror: Flip the final output horizontally

    Example:
        compositor = FrameCompositor()
        out = compositor.render(frame.image, result, Blur(radius=15))
    """

    def __init__(self, feather_px: int = 0, mirror: bool = False, cache_size: int = 4) -> None:
        self.feather_px = feather_px
        self.mirror = mirror
        self._cache_size = cache_size
        self._background_cache: "OrderedDict[Tuple[int, int, int], Tuple[np.ndarray, np.ndarray]]" = OrderedDict()
        self._warned_handles: Set[str] = set()

    def render(
        self,
        image: np.ndarray,
        result: Optional[SegmentationResult],
        spec: BackgroundSpec,
    ) -> np.ndarray:
        """
        Composite one output frame.

        Args:
            image: Source BGR frame
            result: Segmentation result for this frame, or None
            spec: Active background spec

        Returns:
            Output image (a new array unless the source passes through)
        """
        return self._finish(self._compose(image, result, spec))

    def passthrough(self, image: np.ndarray) -> np.ndarray:
        """Raw frame, with the same mirroring as composited output."""
        return self._finish(image)

    def _compose(
        self,
        image: np.ndarray,
        result: Optional[SegmentationResult],
        spec: BackgroundSpec,
    ) -> np.ndarray:
        if isinstance(spec, NoBackground) or result is None:
            return image

        if result.output is not None and (result.spec is None or result.spec == spec):
            return result.output
        if result.mask is None:
            # composited for an older background and nothing to redo it from
            return image

        if isinstance(spec, Blur):
            background = self.blur_background(image, spec.radius)
        elif isinstance(spec, (StaticImage, UploadedImage)):
            handle = spec.handle
            if not handle.loaded:
                if handle.name not in self._warned_handles:
                    self._warned_handles.add(handle.name)
                    logger.warning(
                        f"Background image '{handle.name}' not available "
                        f"({handle.state.value}), sending raw frame"
                    )
                return image
            self._warned_handles.discard(handle.name)
            background = self.fit_background(handle.image, image.shape)
        else:
            raise TypeError(f"Unsupported background spec: {spec!r}")

        alpha = resample_mask(normalize_mask(result.mask), image.shape[0], image.shape[1])
        return matte(image, background, alpha, self.feather_px)

    def _finish(self, image: np.ndarray) -> np.ndarray:
        if self.mirror:
            return cv2.flip(image, 1)
        return image

    @staticmethod
    def blur_background(image: np.ndarray, radius: int) -> np.ndarray:
        """Gaussian blur of the whole frame."""
        return cv2.GaussianBlur(image, (0, 0), sigmaX=float(radius))

    def fit_background(self, background: np.ndarray, shape: Tuple[int, ...]) -> np.ndarray:
        """
        Resize a background image to the frame shape.

        Results are cached per (image, size) so a static background is
        resized once, not every frame.
        """
        height, width = shape[0], shape[1]
        key = (id(background), height, width)
        cached = self._background_cache.get(key)
        if cached is not None and cached[0] is background:
            self._background_cache.move_to_end(key)
            return cached[1]

        fitted = background
        if fitted.ndim == 2:
            fitted = cv2.cvtColor(fitted, cv2.COLOR_GRAY2BGR)
        elif fitted.shape[2] == 4:
            fitted = cv2.cvtColor(fitted, cv2.COLOR_BGRA2BGR)
        if fitted.shape[:2] != (height, width):
            fitted = cv2.resize(fitted, (width, height), interpolation=cv2.INTER_LINEAR)

        self._background_cache[key] = (background, fitted)
        if len(self._background_cache) > self._cache_size:
            self._background_cache.popitem(last=False)
        return fitted
