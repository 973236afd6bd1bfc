"""
Backends Module
===============

Segmentation backends behind one interface, plus selection:
    - SegmentationBackend: abstract base (init / process_frame / dispose)
    - MockSegmentationBackend: deterministic test backend
    - LumaKeyBackend: luminance keying, self-compositing
    - MediaPipeSegmentationBackend: MediaPipe selfie segmentation (optional)
    - CapabilityDetector: host checks and micro-benchmark
    - BackendRegistry: descriptors, selection and instantiation
"""

from meetfx.backends.base import SegmentationBackend
from meetfx.backends.capabilities import CapabilityDetector
from meetfx.backends.luma import LumaKeyBackend
from meetfx.backends.mediapipe_backend import MediaPipeSegmentationBackend
from meetfx.backends.mock import MockSegmentationBackend
from meetfx.backends.registry import AUTO, BackendRegistry, default_descriptors


__all__ = [
    "SegmentationBackend",
    "CapabilityDetector",
    "LumaKeyBackend",
    "MediaPipeSegmentationBackend",
    "MockSegmentationBackend",
    "AUTO",
    "BackendRegistry",
    "default_descriptors",
]
