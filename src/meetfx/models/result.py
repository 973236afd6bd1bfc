"""
Segmentation Result Model
=========================

What a SegmentationBackend hands back for one frame.

A result carries a mask (the compositor finishes the job), a
self-composited output image, or both. Masks are float32 alpha in
[0, 1] where 1 is foreground, at frame resolution or at the model's
native resolution.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from meetfx.models.background import BackgroundSpec


# Foreground alpha, float32 in [0, 1], shape (H, W).
Mask = np.ndarray


@dataclass(frozen=True, slots=True, eq=False)
class SegmentationResult:
    """
    Output of one `process_frame` call.

    Attributes:
        mask: Foreground alpha (H, W) float32, or None
        output: Self-composited BGR frame, or None
        segmentation_ms: Time spent in inference
        total_ms: Time spent in the whole backend call
        frame_id: Frame this result was computed from
        spec: Background spec the request carried (what `output` shows)
    """

    mask: Optional[Mask] = None
    output: Optional[np.ndarray] = None
    segmentation_ms: float = 0.0
    total_ms: float = 0.0
    frame_id: int = -1
    spec: Optional[BackgroundSpec] = None

    def __post_init__(self) -> None:
        if self.mask is None and self.output is None:
            raise ValueError("SegmentationResult needs a mask or an output")

    @property
    def self_composited(self) -> bool:
        return self.output is not None

    def mask_only(self) -> "SegmentationResult":
        """Drop the composited output, keeping the mask for reuse on a newer frame."""
        if self.mask is None:
            raise ValueError("result has no mask")
        return SegmentationResult(mask=self.mask, frame_id=self.frame_id)

    def __repr__(self) -> str:
        kind = "output" if self.output is not None else "mask"
        return (
            f"SegmentationResult({kind}, frame_id={self.frame_id}, "
            f"seg={self.segmentation_ms:.2f}ms, total={self.total_ms:.2f}ms)"
        )
