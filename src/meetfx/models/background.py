"""
Background Specification Models
===============================

The background treatment applied to the outgoing video.

BackgroundSpec is a tagged variant; exactly one is active at a time:

    NoBackground              -> source passes through unchanged
    Blur(radius)              -> blurred source behind the matted subject
    StaticImage(handle)       -> bundled image behind the matted subject
    UploadedImage(handle)     -> user-uploaded image behind the matted subject

Image handles load asynchronously. A spec may reference a handle that
is still pending; the compositor falls back to the raw frame until the
handle reports loaded.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Optional, Union

import numpy as np


class BackgroundKind(str, Enum):
    """Discriminator of the BackgroundSpec variant."""

    NONE = "none"
    BLUR = "blur"
    STATIC_IMAGE = "static_image"
    UPLOADED_IMAGE = "uploaded_image"


class ImageState(str, Enum):
    """Load state of a background image resource."""

    PENDING = "pending"
    LOADED = "loaded"
    FAILED = "failed"


class ImageHandle:
    """
    Handle to a background image that may still be loading.

    The handle is created immediately and filled in by a background
    task. Readers never wait on it; they check `loaded` each tick.

    Attributes:
        name: Identifier ("beach", "office", "custom", ...)
        source: Where the image came from (path or "upload")
        image: Decoded BGR image once loaded, else None
        state: Current load state
        error: Failure description when state is FAILED
    """

    def __init__(self, name: str, source: str = "") -> None:
        self.name = name
        self.source = source
        self.image: Optional[np.ndarray] = None
        self.state = ImageState.PENDING
        self.error: Optional[str] = None

    @property
    def loaded(self) -> bool:
        """Whether the image is decoded and ready to draw."""
        return self.state == ImageState.LOADED and self.image is not None

    def set_image(self, image: np.ndarray) -> None:
        """Mark the handle loaded with a decoded image."""
        self.image = image
        self.error = None
        self.state = ImageState.LOADED

    def set_failed(self, error: str) -> None:
        """Mark the handle as failed."""
        self.image = None
        self.error = error
        self.state = ImageState.FAILED

    def __repr__(self) -> str:
        return f"ImageHandle(name={self.name!r}, state={self.state.value})"


@dataclass(frozen=True, slots=True)
class NoBackground:
    """Pass the source frame through unchanged."""

    kind: ClassVar[BackgroundKind] = BackgroundKind.NONE


@dataclass(frozen=True, slots=True)
class Blur:
    """Blur the background behind the subject."""

    radius: int = 15
    kind: ClassVar[BackgroundKind] = BackgroundKind.BLUR

    def __post_init__(self) -> None:
        if self.radius <= 0:
            raise ValueError("blur radius must be positive")


@dataclass(frozen=True, slots=True)
class StaticImage:
    """Replace the background with a bundled image."""

    handle: ImageHandle
    kind: ClassVar[BackgroundKind] = BackgroundKind.STATIC_IMAGE


@dataclass(frozen=True, slots=True)
class UploadedImage:
    """Replace the background with a user-uploaded image."""

    handle: ImageHandle
    kind: ClassVar[BackgroundKind] = BackgroundKind.UPLOADED_IMAGE


BackgroundSpec = Union[NoBackground, Blur, StaticImage, UploadedImage]


def describe_background(spec: BackgroundSpec) -> dict:
    """Export a spec as a dictionary for logging/serialization."""
    data = {"kind": spec.kind.value}
    if isinstance(spec, Blur):
        data["radius"] = spec.radius
    elif isinstance(spec, (StaticImage, UploadedImage)):
        data["image"] = spec.handle.name
        data["state"] = spec.handle.state.value
    return data


def parse_background_spec(
    data: dict,
    resolve_image: Callable[[str], Optional[ImageHandle]],
    default_blur_radius: int = 15,
) -> BackgroundSpec:
    """
    Build a BackgroundSpec from a request dictionary.

    Accepted shapes:
        {"kind": "none"}
        {"kind": "blur", "radius": 15}
        {"kind": "static_image", "image": "beach"}
        {"kind": "uploaded_image", "image": "custom"}

    Args:
        data: Request payload
        resolve_image: Looks up an image handle by name
        default_blur_radius: Radius used when "blur" has no radius

    Returns:
        The matching BackgroundSpec variant

    Raises:
        ValueError: On an unknown kind, a bad blur radius or an unknown
            image name
    """
    try:
        kind = BackgroundKind(str(data.get("kind", "none")).lower())
    except ValueError:
        raise ValueError(f"Unknown background kind: {data.get('kind')!r}")

    if kind == BackgroundKind.NONE:
        return NoBackground()
    if kind == BackgroundKind.BLUR:
        try:
            radius = int(data.get("radius", default_blur_radius))
        except (TypeError, ValueError):
            raise ValueError(f"blur radius must be an integer, got {data.get('radius')!r}")
        return Blur(radius=radius)

    name = data.get("image")
    if not name:
        raise ValueError(f"Background kind '{kind.value}' needs an 'image' name")
    handle = resolve_image(str(name))
    if handle is None:
        raise ValueError(f"Unknown background image: {name!r}")
    if kind == BackgroundKind.STATIC_IMAGE:
        return StaticImage(handle)
    return UploadedImage(handle)
