"""
Frame Data Model
================

Internal frame representation for the capture loop.

Design Rules:
    - This is the ONLY frame format handed to backends and the compositor
    - Immutable; backends must not write into `image`
    - `timestamp` is the presentation marker used to detect repeated frames
"""

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, slots=True, eq=False)
class Frame:
    """
    A decoded camera frame.

    Attributes:
        frame_id: Monotonically increasing frame counter from the source
        timestamp: Presentation time of the frame in seconds
        image: BGR image, shape (H, W, 3), dtype uint8
        fps: Declared (native) frame rate of the source
    """

    frame_id: int
    timestamp: float
    image: np.ndarray
    fps: float = 30.0

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the full image."""
        return (
            f"Frame(frame_id={self.frame_id}, "
            f"timestamp={self.timestamp:.3f}, "
            f"size={self.width}x{self.height}, "
            f"fps={self.fps})"
        )
