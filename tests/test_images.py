"""
Background Image Tests
======================

Decoding helpers and the asynchronous image store.
"""

import base64

import cv2
import numpy as np
import pytest

from meetfx.compositing.images import (
    BackgroundImageStore,
    decode_image_b64,
    decode_image_bytes,
    read_image_file,
)
from meetfx.errors import ImageDecodeError
from meetfx.models.background import ImageState


def encode_png(height=12, width=16, color=(10, 20, 30)) -> bytes:
    image = np.zeros((height, width, 3), np.uint8)
    image[:, :] = color
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


class TestDecoding:
    """Tests for the decode helpers."""

    def test_decode_png(self):
        image = decode_image_bytes(encode_png())
        assert image.shape == (12, 16, 3)
        assert image.dtype == np.uint8
        assert image[0, 0].tolist() == [10, 20, 30]

    def test_empty_data(self):
        with pytest.raises(ImageDecodeError, match="Empty"):
            decode_image_bytes(b"")

    def test_garbage_data(self):
        with pytest.raises(ImageDecodeError):
            decode_image_bytes(b"definitely not an image")

    def test_base64_data_url(self):
        encoded = base64.b64encode(encode_png()).decode("ascii")
        image = decode_image_b64(f"data:image/png;base64,{encoded}")
        assert image.shape == (12, 16, 3)

    def test_invalid_base64(self):
        with pytest.raises(ImageDecodeError, match="Base64"):
            decode_image_b64("***")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageDecodeError, match="not found"):
            read_image_file(str(tmp_path / "nope.png"))


class TestBackgroundImageStore:
    """Tests for BackgroundImageStore."""

    @pytest.mark.asyncio
    async def test_static_load(self, tmp_path):
        path = tmp_path / "beach.png"
        path.write_bytes(encode_png())
        store = BackgroundImageStore()

        handle = store.load_static("beach", str(path))
        assert store.get("beach") is handle

        await store.wait_loaded("beach", timeout=2.0)
        assert handle.loaded
        assert store.names() == ["beach"]

    @pytest.mark.asyncio
    async def test_static_load_failure(self, tmp_path):
        store = BackgroundImageStore()
        handle = store.load_static("office", str(tmp_path / "office.png"))

        await store.wait_loaded("office", timeout=2.0)

        assert handle.state == ImageState.FAILED
        assert not handle.loaded

    @pytest.mark.asyncio
    async def test_upload_validation(self):
        store = BackgroundImageStore(max_upload_bytes=64)

        with pytest.raises(ImageDecodeError, match="not an image"):
            store.load_uploaded(b"abc", "application/pdf")
        with pytest.raises(ImageDecodeError, match="limit"):
            store.load_uploaded(b"x" * 65, "image/png")
        assert store.get("custom") is None

    @pytest.mark.asyncio
    async def test_upload_decoded(self):
        store = BackgroundImageStore()
        handle = store.load_uploaded(encode_png(), "IMAGE/PNG")

        assert handle.state == ImageState.PENDING
        await store.wait_loaded("custom", timeout=2.0)
        assert handle.loaded
        assert handle.source == "upload"

    @pytest.mark.asyncio
    async def test_undecodable_upload_fails(self):
        store = BackgroundImageStore()
        handle = store.load_uploaded(b"not a png", "image/png")

        await store.wait_loaded("custom", timeout=2.0)

        assert handle.state == ImageState.FAILED
        assert handle.error

    @pytest.mark.asyncio
    async def test_new_upload_replaces_previous(self):
        store = BackgroundImageStore()
        first = store.load_uploaded(encode_png(), "image/png")
        second = store.load_uploaded(encode_png(color=(1, 2, 3)), "image/png")
        await store.wait_loaded("custom", timeout=2.0)

        assert store.get("custom") is second
        assert first is not second

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, tmp_path):
        path = tmp_path / "beach.png"
        path.write_bytes(encode_png())
        store = BackgroundImageStore()
        store.load_static("beach", str(path))

        await store.close()

        assert await store.wait_loaded("beach", timeout=0.1) is store.get("beach")
