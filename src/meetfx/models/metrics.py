"""
Performance Metric Models
=========================

Samples and snapshots produced by the MetricsAggregator.
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True, slots=True)
class MetricSample:
    """
    One completed loop iteration.

    Attributes:
        segmentation_ms: Inference time, or None when the cache was reused
        total_ms: Wall time of the whole iteration
        timestamp: Monotonic clock reading when recorded
    """

    segmentation_ms: Optional[float]
    total_ms: float
    timestamp: float


class MetricsSnapshot(BaseModel):
    """
    Current performance figures for the active backend.

    Rolling values come from the last N iterations, averages from the
    whole session (since enable or the last switch).
    """

    backend_id: str = Field(default="", description="Active backend id")
    fps: float = Field(default=0.0, ge=0.0, description="Rolling frames per second")
    seg_time_ms: float = Field(default=0.0, ge=0.0, description="Rolling mean inference time")
    process_time_ms: float = Field(default=0.0, ge=0.0, description="Rolling mean frame time")
    session_duration_s: float = Field(default=0.0, ge=0.0, description="Seconds since reset")
    session_duration: str = Field(default="00:00", description="Session duration as MM:SS")
    frames_processed: int = Field(default=0, ge=0, description="Frames since reset")
    avg_fps: float = Field(default=0.0, ge=0.0, description="Session average FPS")
    avg_seg_time_ms: float = Field(default=0.0, ge=0.0, description="Session mean inference time")
    avg_process_time_ms: float = Field(default=0.0, ge=0.0, description="Session mean frame time")


class ComparisonEntry(BaseModel):
    """Last measured figures of a backend, kept for side-by-side comparison."""

    fps: float = 0.0
    seg_time_ms: float = 0.0
    process_time_ms: float = 0.0

    def is_empty(self) -> bool:
        return self.fps == 0 and self.seg_time_ms == 0 and self.process_time_ms == 0
