"""
Metrics Aggregator
==================

Rolling performance statistics for the active backend, plus the
cross-backend comparison table.

Windows (capacity N, FIFO eviction):
    - segmentation latency of completed inferences (ms)
    - inter-frame delta between recorded iterations (ms)

Session sums (since the last reset):
    - frames recorded, inferences recorded
    - total segmentation time, total frame processing time

Derived:
    fps            = 1000 / mean(delta), clamped to the source's native rate
    avg_fps        = frames / session duration, same clamp
    seg_time_ms    = mean of the segmentation window
    process_time_ms= session mean frame processing time

Design Rules:
    - record() is O(1); snapshot() is O(N)
    - Windows never exceed N entries
    - A comparison entry is stored only when it holds a non-zero value
"""

import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from meetfx.models.metrics import ComparisonEntry, MetricSample, MetricsSnapshot


logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """Format a duration as MM:SS (minutes keep growing past 59)."""
    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes:02d}:{secs:02d}"


def _mean(values: Deque[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MetricsAggregator:
    """
    Rolling and session metrics for one call.

    Attributes:
        window_size: Capacity of each rolling window
        native_fps: Source frame rate used to clamp FPS (None = no clamp)
        backend_id: Backend the current session measures

    Example:
        metrics = MetricsAggregator(window_size=30, native_fps=30)
        metrics.reset("mock")
        metrics.record(segmentation_ms=4.2, total_ms=6.0)
        metrics.snapshot().fps
    """

    def __init__(
        self,
        window_size: int = 30,
        native_fps: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")

        self.window_size = window_size
        self.native_fps = native_fps
        self._clock = clock

        self._segmentation_ms: Deque[float] = deque(maxlen=window_size)
        self._frame_deltas_ms: Deque[float] = deque(maxlen=window_size)
        self._comparison: Dict[str, ComparisonEntry] = {}

        self.backend_id: str = ""
        self._reset_session()

    def _reset_session(self) -> None:
        self._segmentation_ms.clear()
        self._frame_deltas_ms.clear()
        self._last_record_at: Optional[float] = None
        self._session_started_at: float = self._clock()
        self.frames_recorded: int = 0
        self.inferences_recorded: int = 0
        self.total_segmentation_ms: float = 0.0
        self.total_frame_ms: float = 0.0
        self.last_sample: Optional[MetricSample] = None

    def reset(self, backend_id: Optional[str] = None) -> None:
        """Start a new measurement session (on enable and on switch)."""
        if backend_id is not None:
            self.backend_id = backend_id
        self._reset_session()
        logger.debug(f"Metrics reset for backend '{self.backend_id}'")

    def record(self, segmentation_ms: Optional[float], total_ms: float) -> MetricSample:
        """
        Record one completed iteration.

        Args:
            segmentation_ms: Inference time when an inference completed
                this iteration, else None (cache reuse)
            total_ms: Wall time of the iteration

        Returns:
            The recorded sample
        """
        now = self._clock()

        if segmentation_ms is not None:
            self.record_inference(segmentation_ms)

        if self._last_record_at is not None:
            self._frame_deltas_ms.append((now - self._last_record_at) * 1000.0)
        self._last_record_at = now

        self.frames_recorded += 1
        self.total_frame_ms += total_ms

        self.last_sample = MetricSample(
            segmentation_ms=segmentation_ms,
            total_ms=total_ms,
            timestamp=now,
        )
        return self.last_sample

    def record_inference(self, segmentation_ms: float) -> None:
        """Record a completed inference without counting a frame."""
        self._segmentation_ms.append(segmentation_ms)
        self.inferences_recorded += 1
        self.total_segmentation_ms += segmentation_ms

    @property
    def segmentation_window(self) -> tuple:
        return tuple(self._segmentation_ms)

    @property
    def frame_delta_window(self) -> tuple:
        return tuple(self._frame_deltas_ms)

    def _clamp_fps(self, fps: float) -> float:
        if self.native_fps:
            return min(self.native_fps, fps)
        return fps

    def fps(self) -> float:
        """Rolling frames per second from the inter-frame window."""
        mean_delta = _mean(self._frame_deltas_ms)
        if mean_delta <= 0:
            return 0.0
        return self._clamp_fps(1000.0 / mean_delta)

    def session_duration(self) -> float:
        return max(0.0, self._clock() - self._session_started_at)

    def snapshot(self) -> MetricsSnapshot:
        """Current figures for the active backend."""
        duration = self.session_duration()
        avg_fps = self._clamp_fps(self.frames_recorded / duration) if duration > 0 else 0.0
        avg_seg = (
            self.total_segmentation_ms / self.inferences_recorded
            if self.inferences_recorded
            else 0.0
        )
        avg_process = self.total_frame_ms / self.frames_recorded if self.frames_recorded else 0.0

        return MetricsSnapshot(
            backend_id=self.backend_id,
            fps=round(self.fps(), 2),
            seg_time_ms=round(_mean(self._segmentation_ms), 3),
            process_time_ms=round(avg_process, 3),
            session_duration_s=round(duration, 3),
            session_duration=format_duration(duration),
            frames_processed=self.frames_recorded,
            avg_fps=round(avg_fps, 2),
            avg_seg_time_ms=round(avg_seg, 3),
            avg_process_time_ms=round(avg_process, 3),
        )

    # -------------------------------------------------------------------------
    # Model comparison
    # -------------------------------------------------------------------------

    def commit_comparison(self, backend_id: Optional[str] = None) -> Optional[ComparisonEntry]:
        """
        Store the outgoing backend's figures in the comparison table.

        Called right before a switch. Nothing is stored when every
        figure is zero (the backend never produced a frame).

        Returns:
            The stored entry, or None when nothing was stored
        """
        backend_id = backend_id or self.backend_id
        if not backend_id:
            return None

        snapshot = self.snapshot()
        entry = ComparisonEntry(
            fps=snapshot.fps,
            seg_time_ms=snapshot.seg_time_ms,
            process_time_ms=snapshot.process_time_ms,
        )
        if entry.is_empty():
            logger.debug(f"No measurements for '{backend_id}', comparison not updated")
            return None

        self._comparison[backend_id] = entry
        logger.info(
            f"Comparison snapshot for '{backend_id}': fps={entry.fps}, "
            f"seg={entry.seg_time_ms}ms, process={entry.process_time_ms}ms"
        )
        return entry

    def comparison_table(self) -> Dict[str, ComparisonEntry]:
        """Backend id -> last committed figures (copy)."""
        return dict(self._comparison)
