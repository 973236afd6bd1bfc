"""
Compositing Module
==================

Background replacement for outgoing frames:
    - FrameCompositor: mask matting, blur and image backgrounds
    - BackgroundImageStore: non-blocking background image loading
"""

from meetfx.compositing.compositor import (
    FrameCompositor,
    matte,
    normalize_mask,
    resample_mask,
)
from meetfx.compositing.images import (
    BackgroundImageStore,
    decode_image_b64,
    decode_image_bytes,
)


__all__ = [
    "FrameCompositor",
    "matte",
    "normalize_mask",
    "resample_mask",
    "BackgroundImageStore",
    "decode_image_b64",
    "decode_image_bytes",
]
