"""
MeetFX
======

Virtual-background pipeline for peer-to-peer video calls.

A soft-real-time capture loop pulls camera frames, hands them to a
pluggable segmentation backend, composites a background replacement
and publishes the result on the outgoing call track. Backends can be
hot-swapped mid-call without interrupting the stream.

Components:
    - capture: Camera and synthetic frame sources
    - backends: Segmentation backends, registry and capability detection
    - compositing: Mask matting and background image loading
    - pipeline: Capture loop, frame-skip policy, switch coordinator
    - metrics: Rolling performance statistics and model comparison
    - transport: Outgoing tracks, call transport, signaling client
    - service: UI-facing facade

Example:
    from meetfx.config import settings
    from meetfx.service import BackgroundEffectService

    # The service is started via the FastAPI application
    # See main.py for entry point
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
