"""
Device Capability Models
========================

Output models for capability detection and backend listing.

These are returned by the HTTP surface and therefore use pydantic,
matching the rest of the external contract.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class PerformanceClass(str, Enum):
    """Coarse host performance tier from the micro-benchmark."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class DeviceCapabilities(BaseModel):
    """
    What the host can run.

    Attributes:
        parallel_extension_supported: CPU SIMD extension available
        gpu_acceleration_supported: OpenCL-class GPU path available
        gpu_acceleration_tier2_supported: CUDA-class GPU path available
        performance_class: Benchmark tier
        cpu_count: Logical core count
        benchmark_ms: Micro-benchmark duration, if it ran
        preferred_backend: User override, if any
        recommended_backend: Backend "auto" resolves to
    """

    parallel_extension_supported: bool = Field(
        default=False,
        description="CPU SIMD (parallel extension) support",
    )
    gpu_acceleration_supported: bool = Field(
        default=False,
        description="GPU acceleration (tier 1) support",
    )
    gpu_acceleration_tier2_supported: bool = Field(
        default=False,
        description="GPU acceleration (tier 2) support",
    )
    performance_class: PerformanceClass = Field(
        default=PerformanceClass.UNKNOWN,
        description="Estimated host performance tier",
    )
    cpu_count: int = Field(default=1, ge=1, description="Logical CPU count")
    benchmark_ms: Optional[float] = Field(
        default=None,
        description="Micro-benchmark duration in milliseconds",
    )
    preferred_backend: Optional[str] = Field(
        default=None,
        description="User-preferred backend id (None = auto)",
    )
    recommended_backend: Optional[str] = Field(
        default=None,
        description="Backend recommended for this host",
    )


class VariantReport(BaseModel):
    """A backend variant with its compatibility on this host."""

    name: str
    resolution: str
    compute: str
    requires_parallel_extension: bool = False
    expected_fps: str = ""
    is_compatible: bool = True
    incompatibility_reason: Optional[str] = None


class BackendReport(BaseModel):
    """A backend descriptor as shown to the user."""

    backend_id: str
    name: str
    description: str = ""
    status: str
    is_implemented: bool
    is_available: bool = Field(
        default=True,
        description="Runtime dependencies are installed",
    )
    variants: List[VariantReport] = Field(default_factory=list)
