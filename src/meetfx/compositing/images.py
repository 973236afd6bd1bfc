"""
Background Images
=================

Decoding and asynchronous loading of background images.

Design Rules:
    - This is the ONLY place in the codebase that decodes background images
    - Loads run as background tasks; callers get a pending ImageHandle
      immediately and never await the load from the capture loop
    - Uploads are validated (content type, size) before decoding
"""

import asyncio
import base64
import binascii
import logging
from pathlib import Path
from typing import Dict, Optional, Set

import cv2
import numpy as np

from meetfx.errors import ImageDecodeError
from meetfx.models.background import ImageHandle


logger = logging.getLogger(__name__)


UPLOAD_NAME = "custom"


def decode_image_bytes(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes (PNG, JPEG, ...) to a BGR array.

    Args:
        data: Encoded image file contents

    Returns:
        BGR image as np.ndarray (H, W, 3), dtype=uint8

    Raises:
        ImageDecodeError: If decoding fails or the image is invalid
    """
    if not data:
        raise ImageDecodeError("Empty image data")

    nparr = np.frombuffer(data, np.uint8)
    bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    if bgr is None:
        raise ImageDecodeError("Failed to decode image: cv2.imdecode returned None")

    if len(bgr.shape) != 3 or bgr.shape[2] != 3:
        raise ImageDecodeError(f"Invalid image shape: {bgr.shape}")

    if bgr.dtype != np.uint8:
        raise ImageDecodeError(f"Invalid image dtype: {bgr.dtype}")

    return bgr


def decode_image_b64(image_b64: str) -> np.ndarray:
    """
    Decode a base64 (optionally data-URL) image to a BGR array.

    Raises:
        ImageDecodeError: If the base64 or the image itself is invalid
    """
    if image_b64.startswith("data:") and "," in image_b64:
        image_b64 = image_b64.split(",", 1)[1]
    try:
        data = base64.b64decode(image_b64, validate=True)
    except binascii.Error as e:
        raise ImageDecodeError(f"Base64 decode failed: {e}")
    return decode_image_bytes(data)


def read_image_file(path: str) -> np.ndarray:
    """Read and decode an image file from disk."""
    file_path = Path(path)
    if not file_path.is_file():
        raise ImageDecodeError(f"Background image not found: {path}")
    return decode_image_bytes(file_path.read_bytes())


class BackgroundImageStore:
    """
    Named background images with non-blocking loads.

    Attributes:
        max_upload_bytes: Largest accepted upload

    Example:
        store = BackgroundImageStore(max_upload_bytes=5 * 1024 * 1024)
        beach = store.load_static("beach", "assets/beach.png")
        beach.loaded          # False until the load task finishes
        custom = store.load_uploaded(data, "image/png")
    """

    def __init__(self, max_upload_bytes: int = 5 * 1024 * 1024) -> None:
        self.max_upload_bytes = max_upload_bytes
        self._handles: Dict[str, ImageHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def get(self, name: str) -> Optional[ImageHandle]:
        return self._handles.get(name)

    def names(self) -> list:
        return sorted(self._handles)

    def load_static(self, name: str, path: str) -> ImageHandle:
        """
        Start loading a bundled image from disk.

        Returns immediately with a pending handle. Must be called from
        inside a running event loop.
        """
        handle = ImageHandle(name=name, source=path)
        self._handles[name] = handle
        self._spawn(self._load_file(handle, path), name)
        return handle

    def load_uploaded(self, data: bytes, content_type: str, name: str = UPLOAD_NAME) -> ImageHandle:
        """
        Validate an upload and start decoding it.

        Args:
            data: Raw file contents
            content_type: MIME type reported by the client
            name: Handle name (defaults to "custom")

        Returns:
            Pending handle

        Raises:
            ImageDecodeError: If the type is not an image or the file is too large
        """
        if not content_type or not content_type.lower().startswith("image/"):
            raise ImageDecodeError(f"Uploaded file is not an image (type {content_type!r})")
        if len(data) > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise ImageDecodeError(
                f"Uploaded image is {len(data)} bytes, limit is {limit_mb:.0f} MB"
            )

        handle = ImageHandle(name=name, source="upload")
        self._handles[name] = handle
        self._spawn(self._decode_upload(handle, data), name)
        return handle

    async def wait_loaded(self, name: str, timeout: Optional[float] = None) -> Optional[ImageHandle]:
        """Wait for the pending loads of a handle (for startup and tests)."""
        pending = [t for t in self._tasks if t.get_name() == f"image_load:{name}"]
        if pending:
            await asyncio.wait(pending, timeout=timeout)
        return self._handles.get(name)

    async def close(self) -> None:
        """Cancel any loads still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=f"image_load:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _load_file(self, handle: ImageHandle, path: str) -> None:
        try:
            image = await asyncio.to_thread(read_image_file, path)
        except ImageDecodeError as e:
            handle.set_failed(str(e))
            logger.warning(f"Background image '{handle.name}' failed to load: {e}")
            return
        handle.set_image(image)
        logger.info(
            f"Background image '{handle.name}' loaded: {image.shape[1]}x{image.shape[0]}"
        )

    async def _decode_upload(self, handle: ImageHandle, data: bytes) -> None:
        try:
            image = await asyncio.to_thread(decode_image_bytes, data)
        except ImageDecodeError as e:
            handle.set_failed(str(e))
            logger.warning(f"Uploaded background could not be decoded: {e}")
            return
        handle.set_image(image)
        logger.info(f"Uploaded background decoded: {image.shape[1]}x{image.shape[0]}")
