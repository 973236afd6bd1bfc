"""
Capture Module
==============

Local media sources for the capture loop:
    - Frame: Typed frame data model (internal representation)
    - FrameSource: Protocol every source implements
    - SyntheticSource: Frames pushed by hand
    - CameraSource: OpenCV camera reader
"""

from meetfx.capture.frame import Frame
from meetfx.capture.source import (
    CameraSource,
    CameraSourceMetrics,
    FrameSource,
    SyntheticSource,
    synthetic_image,
)


__all__ = [
    "Frame",
    "FrameSource",
    "SyntheticSource",
    "CameraSource",
    "CameraSourceMetrics",
    "synthetic_image",
]
