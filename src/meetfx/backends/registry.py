"""
Backend Registry
================

The closed set of segmentation backends and the selector over them.

The registry holds static descriptors (read-only after construction),
one factory per implemented backend and the detected host
capabilities. It answers three questions:

    - What exists?             list_backends()
    - What should we run?      select_backend("auto" | id, variant)
    - Give me an instance.     create(selection)

Design Rules:
    - Selection never silently downgrades: an explicit request that
      cannot run raises with a reason
    - "auto" honours the user preference first, then the recommendation
    - Capability detection runs once, off the event loop
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from meetfx.backends.base import SegmentationBackend
from meetfx.backends.capabilities import CapabilityDetector
from meetfx.backends.luma import LumaKeyBackend
from meetfx.backends.mediapipe_backend import (
    LANDSCAPE_VARIANT,
    MediaPipeSegmentationBackend,
    mediapipe_installed,
)
from meetfx.backends.mock import MockSegmentationBackend
from meetfx.compositing.compositor import FrameCompositor
from meetfx.errors import (
    BackendNotImplementedError,
    CapabilityMismatchError,
    UnknownBackendError,
)
from meetfx.models.backend import (
    BackendDescriptor,
    BackendStatus,
    ComputeKind,
    Selection,
    Variant,
)
from meetfx.models.capabilities import (
    BackendReport,
    DeviceCapabilities,
    PerformanceClass,
    VariantReport,
)


logger = logging.getLogger(__name__)


AUTO = "auto"

BackendFactory = Callable[[Optional[Variant]], SegmentationBackend]


def default_descriptors() -> Tuple[BackendDescriptor, ...]:
    """Every backend the service knows about, implemented or planned."""
    return (
        BackendDescriptor(
            backend_id="mediapipe",
            name="MediaPipe",
            description="Google MediaPipe Selfie Segmentation",
            variants=(
                Variant("General", (256, 256), expected_fps="~25 FPS"),
                Variant(LANDSCAPE_VARIANT, (256, 144), expected_fps="~30 FPS"),
            ),
        ),
        BackendDescriptor(
            backend_id="luma",
            name="Luma Key",
            description="Luminance-threshold keying with self-compositing",
            variants=(
                Variant("CPU", (640, 480), ComputeKind.CPU, expected_fps="~30 FPS"),
                Variant("GPU", (640, 480), ComputeKind.GPU, expected_fps="~30 FPS"),
            ),
        ),
        BackendDescriptor(
            backend_id="mock",
            name="Mock",
            description="Deterministic test backend (central disc mask)",
            variants=(
                Variant("256x144", (256, 144), expected_fps="native"),
                Variant("640x360", (640, 360), expected_fps="native"),
            ),
        ),
        BackendDescriptor(
            backend_id="bodypix",
            name="BodyPix",
            description="TensorFlow BodyPix (640x360, ~11 FPS)",
            status=BackendStatus.PLANNED,
            variants=(Variant("BodyPix 640x360", (640, 360), expected_fps="~11 FPS"),),
        ),
        BackendDescriptor(
            backend_id="mlkit",
            name="ML Kit",
            description="ML Kit selfie segmentation",
            status=BackendStatus.PLANNED,
            variants=(
                Variant("ML Kit", (256, 256), expected_fps="~9 FPS"),
                Variant(
                    "ML Kit SIMD",
                    (256, 256),
                    requires_parallel_extension=True,
                    expected_fps="~17-19 FPS",
                ),
            ),
        ),
        BackendDescriptor(
            backend_id="meet",
            name="Google Meet",
            description="Meet segmentation model",
            status=BackendStatus.PLANNED,
            variants=(
                Variant("Meet 256x144", (256, 144), expected_fps="~14-16 FPS"),
                Variant("Meet 256x144 GPU", (256, 144), ComputeKind.GPU_TIER2, expected_fps="~16 FPS"),
                Variant(
                    "Meet 256x144 SIMD",
                    (256, 144),
                    requires_parallel_extension=True,
                    expected_fps="~26 FPS",
                ),
                Variant(
                    "Meet 256x144 SIMD GPU",
                    (256, 144),
                    ComputeKind.GPU_TIER2,
                    requires_parallel_extension=True,
                    expected_fps="~31 FPS",
                ),
                Variant("Meet 160x96", (160, 96), expected_fps="~29-35 FPS"),
                Variant(
                    "Meet 160x96 SIMD",
                    (160, 96),
                    requires_parallel_extension=True,
                    expected_fps="~48-60 FPS",
                ),
            ),
        ),
    )


class BackendRegistry:
    """
    Descriptor registry and backend selector.

    Attributes:
        capabilities: Detected host capabilities (conservative defaults
            until detect_capabilities() has run)

    Example:
        registry = BackendRegistry.from_settings(settings)
        await registry.detect_capabilities()
        selection = registry.select_backend("mediapipe", "Landscape")
        backend = registry.create(selection)
    """

    def __init__(
        self,
        descriptors: Iterable[BackendDescriptor],
        factories: Dict[str, BackendFactory],
        detector: Optional[CapabilityDetector] = None,
        availability: Optional[Dict[str, Callable[[], bool]]] = None,
    ) -> None:
        """
        Initialize registry.

        Args:
            descriptors: Static backend descriptors
            factories: backend_id -> callable building an instance for a variant
            detector: Capability detector (default checks when None)
            availability: backend_id -> check for optional runtime dependencies
        """
        self._descriptors: Dict[str, BackendDescriptor] = {
            d.backend_id: d for d in descriptors
        }
        self._factories = dict(factories)
        self._detector = detector or CapabilityDetector()
        self._availability = dict(availability or {})
        self._capabilities: DeviceCapabilities = DeviceCapabilities()
        self._detected = False
        self._preference: Optional[Tuple[str, Optional[str]]] = None

    @classmethod
    def from_settings(cls, settings) -> "BackendRegistry":
        """Build the registry with factories configured from Settings."""
        mock_config = settings.mock
        feather_px = settings.compositor.feather_px

        factories: Dict[str, BackendFactory] = {
            "mock": lambda variant: MockSegmentationBackend(
                variant=variant,
                latency_ms=mock_config.latency_ms,
                failure_rate=mock_config.failure_rate,
                seed=mock_config.seed,
            ),
            "luma": lambda variant: LumaKeyBackend(
                variant=variant,
                compositor=FrameCompositor(feather_px=feather_px),
            ),
            "mediapipe": lambda variant: MediaPipeSegmentationBackend(variant=variant),
        }
        detector = CapabilityDetector(
            benchmark_iterations=settings.selector.benchmark_iterations,
            high_threshold_ms=settings.selector.high_threshold_ms,
            medium_threshold_ms=settings.selector.medium_threshold_ms,
        )
        return cls(
            default_descriptors(),
            factories,
            detector=detector,
            availability={"mediapipe": mediapipe_installed},
        )

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    @property
    def capabilities(self) -> DeviceCapabilities:
        return self._capabilities

    async def detect_capabilities(self, force: bool = False) -> DeviceCapabilities:
        """Check the host once (on a worker thread) and cache the result."""
        if self._detected and not force:
            return self._capabilities
        self._capabilities = await asyncio.to_thread(self._detector.detect)
        self._detected = True
        return self._capabilities

    def set_capabilities(self, capabilities: DeviceCapabilities) -> None:
        """Install known capabilities without probing."""
        self._capabilities = capabilities
        self._detected = True

    def device_report(self) -> DeviceCapabilities:
        """Capabilities plus the current preference and recommendation."""
        recommended_id, _ = self.recommend()
        return self._capabilities.model_copy(
            update={
                "preferred_backend": self._preference[0] if self._preference else None,
                "recommended_backend": recommended_id,
            }
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, backend_id: str) -> BackendDescriptor:
        descriptor = self._descriptors.get(backend_id.lower())
        if descriptor is None:
            raise UnknownBackendError(f"Backend '{backend_id}' not found")
        return descriptor

    def is_available(self, backend_id: str) -> bool:
        """Whether the backend's optional runtime dependencies are installed."""
        check = self._availability.get(backend_id)
        if check is None:
            return True
        try:
            return bool(check())
        except Exception as e:
            logger.warning(f"Availability check for '{backend_id}' failed: {e}")
            return False

    def incompatibility_reason(self, variant: Variant) -> Optional[str]:
        """Why a variant cannot run on this host, or None if it can."""
        caps = self._capabilities
        if variant.requires_parallel_extension and not caps.parallel_extension_supported:
            return "CPU SIMD (parallel extension) required but not supported on this host"
        if variant.compute == ComputeKind.GPU and not caps.gpu_acceleration_supported:
            return "GPU acceleration required but not available on this host"
        if variant.compute == ComputeKind.GPU_TIER2 and not caps.gpu_acceleration_tier2_supported:
            return "GPU acceleration (tier 2) required but not available on this host"
        return None

    def list_backends(self) -> List[BackendReport]:
        """Every descriptor, with per-variant compatibility."""
        reports = []
        for descriptor in self._descriptors.values():
            variants = []
            for variant in descriptor.variants:
                reason = self.incompatibility_reason(variant)
                variants.append(
                    VariantReport(
                        name=variant.name,
                        resolution=variant.resolution_label,
                        compute=variant.compute.value,
                        requires_parallel_extension=variant.requires_parallel_extension,
                        expected_fps=variant.expected_fps,
                        is_compatible=reason is None,
                        incompatibility_reason=reason,
                    )
                )
            reports.append(
                BackendReport(
                    backend_id=descriptor.backend_id,
                    name=descriptor.name,
                    description=descriptor.description,
                    status=descriptor.status.value,
                    is_implemented=descriptor.is_implemented,
                    is_available=self.is_available(descriptor.backend_id),
                    variants=variants,
                )
            )
        return reports

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def recommend(self) -> Tuple[str, Optional[str]]:
        """
        Backend (and variant) that "auto" resolves to without a preference.

        MediaPipe when installed, else the luminance keyer. Low-class
        hosts get MediaPipe's lighter landscape model.
        """
        if "mediapipe" in self._descriptors and self.is_available("mediapipe"):
            if self._capabilities.performance_class == PerformanceClass.LOW:
                return "mediapipe", LANDSCAPE_VARIANT
            return "mediapipe", None
        return "luma", None

    def select_backend(self, choice: Optional[str] = AUTO, variant_name: Optional[str] = None) -> Selection:
        """
        Resolve a user choice to a runnable selection.

        Args:
            choice: Backend id or "auto"
            variant_name: Variant to run (None = first compatible)

        Returns:
            Selection of descriptor and variant

        Raises:
            UnknownBackendError: Unknown backend or variant
            BackendNotImplementedError: Backend is only planned
            CapabilityMismatchError: Variant needs an unsupported feature
        """
        if choice is None or choice.lower() == AUTO:
            if self._preference is not None:
                backend_id, preferred_variant = self._preference
                variant_name = variant_name or preferred_variant
            else:
                backend_id, recommended_variant = self.recommend()
                variant_name = variant_name or recommended_variant
        else:
            backend_id = choice.lower()

        descriptor = self.get(backend_id)
        if not descriptor.is_implemented:
            raise BackendNotImplementedError(
                f"Backend '{descriptor.name}' is not implemented yet"
            )

        if variant_name is not None:
            variant = descriptor.find_variant(variant_name)
            if variant is None:
                raise UnknownBackendError(
                    f"Backend '{backend_id}' has no variant '{variant_name}'"
                )
            reason = self.incompatibility_reason(variant)
            if reason is not None:
                raise CapabilityMismatchError(f"{descriptor.name} {variant.name}: {reason}")
            return Selection(descriptor, variant)

        if not descriptor.variants:
            return Selection(descriptor, None)

        for variant in descriptor.variants:
            if self.incompatibility_reason(variant) is None:
                return Selection(descriptor, variant)

        raise CapabilityMismatchError(
            f"No variant of {descriptor.name} can run on this host: "
            f"{self.incompatibility_reason(descriptor.variants[0])}"
        )

    @property
    def user_preference(self) -> Optional[Tuple[str, Optional[str]]]:
        return self._preference

    def set_user_preference(self, backend_id: str, variant_name: Optional[str] = None) -> Selection:
        """
        Remember an explicit choice; "auto" resolves to it until reset.

        Validates like select_backend() and raises the same errors.
        """
        selection = self.select_backend(backend_id, variant_name)
        self._preference = (selection.backend_id, selection.variant_name)
        logger.info(f"User preferred backend set to {selection}")
        return selection

    def reset_user_preference(self) -> None:
        self._preference = None
        logger.info("User preferred backend reset to auto")

    def create(self, selection: Selection) -> SegmentationBackend:
        """Instantiate (not initialize) the selected backend."""
        factory = self._factories.get(selection.backend_id)
        if factory is None:
            raise BackendNotImplementedError(
                f"No implementation registered for backend '{selection.backend_id}'"
            )
        return factory(selection.variant)
