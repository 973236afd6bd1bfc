"""
Segmentation Backend
====================

The capability interface every segmentation technology implements.

A backend owns one inference resource and a single-worker executor.
Blocking inference runs on that executor, so the event loop never
blocks and at most one inference executes inside a backend at a time.

Lifecycle:
    created -> init() -> ready -> dispose()

Design Rules:
    - init() is idempotent: concurrent callers share one load task
    - Cancelling a caller of init() does not corrupt the backend;
      dispose() is always safe afterwards
    - dispose() is safe before init(), during init() and twice
    - process_frame() raises FrameProcessError and nothing else
      (cancellation aside)
"""

import asyncio
import functools
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Optional

from meetfx.capture.frame import Frame
from meetfx.errors import BackendInitError, FrameProcessError
from meetfx.models.background import BackgroundSpec
from meetfx.models.backend import Variant
from meetfx.models.result import SegmentationResult


logger = logging.getLogger(__name__)


def consume_task_result(task: asyncio.Task) -> None:
    """Retrieve a finished task's exception so it is never reported as unhandled."""
    if not task.cancelled():
        task.exception()


class SegmentationBackend(ABC):
    """
    Base class for segmentation backends.

    Subclasses implement `_load`, `_process` and `_release`; the base
    class handles idempotent init, error wrapping, timing and disposal.

    Attributes:
        backend_id: Registry key of the backend
        variant: Variant this instance runs (None for variant-less backends)
    """

    backend_id: str = "base"

    def __init__(self, variant: Optional[Variant] = None) -> None:
        self.variant = variant
        self._ready: bool = False
        self._disposed: bool = False
        self._init_task: Optional[asyncio.Task] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def ready(self) -> bool:
        """Whether init() completed and the backend was not disposed."""
        return self._ready and not self._disposed

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def label(self) -> str:
        if self.variant is not None:
            return f"{self.backend_id}[{self.variant.name}]"
        return self.backend_id

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """
        Acquire the inference resource.

        Raises:
            BackendInitError: If the resource cannot be acquired
        """
        if self._disposed:
            raise BackendInitError(self.backend_id, "backend was disposed")
        if self._ready:
            return

        if self._init_task is None:
            self._init_task = asyncio.create_task(
                self._guarded_load(),
                name=f"backend_init:{self.label}",
            )
            self._init_task.add_done_callback(consume_task_result)

        task = self._init_task
        try:
            await asyncio.shield(task)
        except BackendInitError:
            if self._init_task is task:
                self._init_task = None
            raise
        except asyncio.CancelledError:
            # dispose() cancelled the load; the caller itself was not cancelled
            if task.cancelled() and self._disposed:
                raise BackendInitError(self.backend_id, "disposed during initialization")
            raise

    async def process_frame(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        """
        Segment one frame.

        Args:
            frame: Source frame (never modified)
            spec: Active background spec, for backends that self-composite

        Returns:
            SegmentationResult with a mask and/or composited output

        Raises:
            FrameProcessError: On any failure for this frame
        """
        if not self.ready:
            raise FrameProcessError(
                f"Backend {self.label} is not ready", frame_id=frame.frame_id
            )

        started = time.perf_counter()
        try:
            result = await self._process(frame, spec)
        except FrameProcessError:
            raise
        except Exception as e:
            raise FrameProcessError(
                f"Backend {self.label} failed on frame {frame.frame_id}: {e}",
                frame_id=frame.frame_id,
            ) from e

        total_ms = (time.perf_counter() - started) * 1000.0
        return replace(
            result,
            frame_id=frame.frame_id,
            total_ms=result.total_ms if result.total_ms > 0 else total_ms,
            spec=spec,
        )

    def dispose(self) -> None:
        """
        Release the inference resource.

        The release runs on the backend's executor after any inference
        already executing there, then the executor shuts down.
        """
        if self._disposed:
            return
        self._disposed = True
        self._ready = False

        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._init_task = None

        if self._executor is not None:
            self._executor.submit(self._safe_release)
            self._executor.shutdown(wait=False)
            self._executor = None
        else:
            self._safe_release()

        logger.info(f"Backend {self.label} disposed")

    async def run_blocking(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking callable on the backend's single worker thread."""
        if self._disposed:
            raise RuntimeError(f"Backend {self.label} is disposed")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix=f"meetfx-{self.backend_id}",
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    # -------------------------------------------------------------------------
    # Subclass hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _load(self) -> None:
        """
        Acquire the resource.

        Assign it as soon as it exists; `_release` may run while `_load`
        is still suspended.
        """

    @abstractmethod
    async def _process(self, frame: Frame, spec: BackgroundSpec) -> SegmentationResult:
        """Segment one frame (resource is loaded)."""

    @abstractmethod
    def _release(self) -> None:
        """Free the resource. Must tolerate a never-loaded backend."""

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _guarded_load(self) -> None:
        started = time.perf_counter()
        try:
            await self._load()
        except BackendInitError:
            raise
        except Exception as e:
            raise BackendInitError(self.backend_id, str(e) or type(e).__name__) from e

        if self._disposed:
            self._safe_release()
            raise BackendInitError(self.backend_id, "disposed during initialization")

        self._ready = True
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(f"Backend {self.label} ready in {elapsed_ms:.0f}ms")

    def _safe_release(self) -> None:
        try:
            self._release()
        except Exception as e:
            logger.warning(f"Backend {self.label} release failed: {e}")
