"""
Active Backend Session
======================

Everything that belongs to one running backend: the instance, its
outgoing track, the single in-flight inference and the last result.

A session is created by the switch coordinator, installed into the
capture loop, and disposed when it is replaced or the effect is
turned off. Its generation number fences results: a result computed
by an older session is never published.
"""

import asyncio
import logging
from typing import Optional

from meetfx.backends.base import SegmentationBackend
from meetfx.models.backend import Selection
from meetfx.models.result import SegmentationResult
from meetfx.transport.base import ProcessedTrack


logger = logging.getLogger(__name__)


class ActiveBackendSession:
    """
    A live backend and its per-session state.

    Attributes:
        backend: Initialized backend instance
        selection: Descriptor and variant it was created from
        generation: Monotonic session number
        track: Outgoing track of this session
        inflight: The in-flight process_frame task (at most one)
        inflight_frame_id: Frame id the in-flight task works on
        inflight_started: Loop time the in-flight task started
        last_result: Last successful result (cache for reuse ticks)
        errors: Failed inferences in this session
        abandoned: In-flight calls given up on after the timeout
    """

    def __init__(
        self,
        backend: SegmentationBackend,
        selection: Selection,
        generation: int,
        track: Optional[ProcessedTrack] = None,
    ) -> None:
        self.backend = backend
        self.selection = selection
        self.generation = generation
        self.track = track or ProcessedTrack(label=f"{selection}#{generation}")

        self.inflight: Optional[asyncio.Task] = None
        self.inflight_frame_id: int = -1
        self.inflight_started: float = 0.0
        self.last_result: Optional[SegmentationResult] = None
        self.errors: int = 0
        self.abandoned: int = 0
        self._disposed = False

    @property
    def backend_id(self) -> str:
        return self.selection.backend_id

    @property
    def ready(self) -> bool:
        return self.backend.ready and not self._disposed

    @property
    def is_busy(self) -> bool:
        """Whether an inference is in flight."""
        return self.inflight is not None and not self.inflight.done()

    def clear_inflight(self) -> None:
        self.inflight = None
        self.inflight_frame_id = -1
        self.inflight_started = 0.0

    def abandon_inflight(self) -> None:
        """Cancel the in-flight inference and free the slot."""
        if self.inflight is not None and not self.inflight.done():
            self.inflight.cancel()
            self.abandoned += 1
        self.clear_inflight()

    def dispose(self) -> None:
        """Abandon in-flight work, dispose the backend, end the track. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self.abandon_inflight()
        self.backend.dispose()
        self.track.stop()
        self.last_result = None
        logger.info(f"Session {self.selection}#{self.generation} disposed")

    def __repr__(self) -> str:
        return (
            f"ActiveBackendSession({self.selection}, generation={self.generation}, "
            f"busy={self.is_busy})"
        )
