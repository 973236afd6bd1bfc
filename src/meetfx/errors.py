"""
Error Taxonomy
==============

Exception hierarchy shared by the MeetFX pipeline.

Two families are kept deliberately apart:
    - MediaAcquisitionError: the camera/microphone could not be opened.
      Fatal for starting a call at all.
    - BackgroundEffectError: anything that goes wrong with the virtual
      background. Never fatal to the call.

Per-frame errors (FrameProcessError) are recovered inside the capture
loop and only reach the UI as an aggregated warning.
"""

from typing import Optional


class MeetFXError(Exception):
    """Base class for all MeetFX errors."""
    pass


class MediaAcquisitionError(MeetFXError):
    """Raised when the local camera or microphone cannot be acquired."""
    pass


class BackgroundEffectError(MeetFXError):
    """Base class for background-effect errors (recoverable)."""
    pass


class BackendInitError(BackgroundEffectError):
    """Raised when a segmentation backend fails to acquire its resource."""

    def __init__(self, backend_id: str, reason: str) -> None:
        super().__init__(f"Could not start backend '{backend_id}': {reason}")
        self.backend_id = backend_id
        self.reason = reason


class FrameProcessError(BackgroundEffectError):
    """Raised when a single frame fails to segment or composite."""

    def __init__(self, message: str, frame_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.frame_id = frame_id


class CapabilityMismatchError(BackgroundEffectError):
    """Raised when a variant needs a feature the host does not support."""
    pass


class UnknownBackendError(BackgroundEffectError):
    """Raised when a backend or variant id is not in the registry."""
    pass


class BackendNotImplementedError(BackgroundEffectError):
    """Raised when a planned (not yet implemented) backend is requested."""
    pass


class LoopStateError(BackgroundEffectError):
    """Raised on an illegal capture loop state transition."""
    pass


class ImageDecodeError(BackgroundEffectError):
    """Raised when a background image cannot be decoded."""
    pass
