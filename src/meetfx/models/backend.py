"""
Backend Descriptor Models
=========================

Static metadata describing the segmentation backends known to the
registry. Descriptors are read-only after registry construction.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class BackendStatus(str, Enum):
    """Implementation status of a backend."""

    IMPLEMENTED = "implemented"
    PLANNED = "planned"


class ComputeKind(str, Enum):
    """
    Compute path a variant runs on.

    Attributes:
        CPU: Plain CPU path
        GPU: GPU-accelerated path (OpenCL-class hardware)
        GPU_TIER2: Second-tier GPU path (CUDA-class hardware)
    """

    CPU = "cpu"
    GPU = "gpu"
    GPU_TIER2 = "gpu2"


@dataclass(frozen=True, slots=True)
class Variant:
    """
    A resolution/compute configuration of a backend.

    Attributes:
        name: Human-readable unique name within the backend
        resolution: Model-native input resolution as (width, height)
        compute: Compute path the variant needs
        requires_parallel_extension: Needs CPU SIMD support
        expected_fps: Indicative frame rate, for display only
    """

    name: str
    resolution: Tuple[int, int]
    compute: ComputeKind = ComputeKind.CPU
    requires_parallel_extension: bool = False
    expected_fps: str = ""

    @property
    def resolution_label(self) -> str:
        return f"{self.resolution[0]}x{self.resolution[1]}"


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """
    Static metadata for one segmentation technology.

    Attributes:
        backend_id: Registry key ("mock", "mediapipe", ...)
        name: Display name
        description: One-line description
        status: Implemented or planned
        variants: Available configurations (may be empty)
    """

    backend_id: str
    name: str
    description: str = ""
    status: BackendStatus = BackendStatus.IMPLEMENTED
    variants: Tuple[Variant, ...] = ()

    @property
    def is_implemented(self) -> bool:
        return self.status == BackendStatus.IMPLEMENTED

    @property
    def default_variant(self) -> Optional[Variant]:
        return self.variants[0] if self.variants else None

    def find_variant(self, name: str) -> Optional[Variant]:
        """Look up a variant by name (case-insensitive)."""
        wanted = name.lower()
        for variant in self.variants:
            if variant.name.lower() == wanted:
                return variant
        return None


@dataclass(frozen=True, slots=True)
class Selection:
    """A backend chosen by the selector, with the variant to run."""

    descriptor: BackendDescriptor
    variant: Optional[Variant] = None

    @property
    def backend_id(self) -> str:
        return self.descriptor.backend_id

    @property
    def variant_name(self) -> Optional[str]:
        return self.variant.name if self.variant else None

    def __str__(self) -> str:
        if self.variant:
            return f"{self.backend_id}[{self.variant.name}]"
        return self.backend_id
