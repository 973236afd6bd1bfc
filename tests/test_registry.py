"""
Backend Registry Tests
======================

Descriptor listing, selection rules and capability detection.
"""

import pytest

from meetfx.backends.capabilities import CapabilityDetector
from meetfx.backends.luma import LumaKeyBackend
from meetfx.backends.mock import MockSegmentationBackend
from meetfx.backends.registry import BackendRegistry, default_descriptors
from meetfx.errors import (
    BackendNotImplementedError,
    CapabilityMismatchError,
    UnknownBackendError,
)
from meetfx.models.capabilities import DeviceCapabilities, PerformanceClass


def make_registry(capabilities, mediapipe_available=False, factories=None):
    registry = BackendRegistry(
        default_descriptors(),
        factories if factories is not None else {
            "mock": lambda variant: MockSegmentationBackend(variant=variant, latency_ms=0),
            "luma": lambda variant: LumaKeyBackend(variant=variant),
        },
        availability={"mediapipe": lambda: mediapipe_available},
    )
    registry.set_capabilities(capabilities)
    return registry


@pytest.fixture
def registry(capabilities):
    return make_registry(capabilities)


class TestListing:
    """Tests for list_backends()."""

    def test_lists_every_descriptor(self, registry):
        reports = {r.backend_id: r for r in registry.list_backends()}

        assert set(reports) == {"mediapipe", "luma", "mock", "bodypix", "mlkit", "meet"}
        assert reports["meet"].status == "planned"
        assert not reports["meet"].is_implemented
        assert not reports["mediapipe"].is_available
        assert reports["mock"].is_available

    def test_variant_compatibility(self, registry):
        """Variants needing a missing feature carry the reason."""
        luma = next(r for r in registry.list_backends() if r.backend_id == "luma")
        cpu, gpu = luma.variants

        assert cpu.is_compatible
        assert cpu.compute == "cpu"
        assert cpu.resolution == "640x480"
        assert not gpu.is_compatible
        assert "GPU" in gpu.incompatibility_reason

    def test_simd_variant_without_simd(self, capabilities):
        registry = make_registry(capabilities.model_copy(update={"parallel_extension_supported": False}))
        mlkit = next(r for r in registry.list_backends() if r.backend_id == "mlkit")
        assert [v.is_compatible for v in mlkit.variants] == [True, False]


class TestSelection:
    """Tests for select_backend()."""

    def test_explicit_backend_first_compatible_variant(self, registry):
        selection = registry.select_backend("luma")
        assert selection.backend_id == "luma"
        assert selection.variant_name == "CPU"

    def test_explicit_variant(self, registry):
        selection = registry.select_backend("Mock", "640X360")
        assert str(selection) == "mock[640x360]"

    def test_incompatible_variant_raises(self, registry):
        """An explicit request is never silently downgraded."""
        with pytest.raises(CapabilityMismatchError, match="GPU"):
            registry.select_backend("luma", "GPU")

    def test_planned_backend_raises(self, registry):
        with pytest.raises(BackendNotImplementedError):
            registry.select_backend("meet")

    def test_unknown_backend_raises(self, registry):
        with pytest.raises(UnknownBackendError):
            registry.select_backend("hal9000")

    def test_unknown_variant_raises(self, registry):
        with pytest.raises(UnknownBackendError, match="1080p"):
            registry.select_backend("mock", "1080p")

    def test_auto_without_mediapipe_is_luma(self, registry):
        assert registry.recommend() == ("luma", None)
        assert registry.select_backend("auto").backend_id == "luma"
        assert registry.select_backend(None).backend_id == "luma"

    def test_auto_with_mediapipe(self, capabilities):
        registry = make_registry(capabilities, mediapipe_available=True)
        selection = registry.select_backend("auto")
        assert selection.backend_id == "mediapipe"
        assert selection.variant_name == "General"

    def test_auto_on_low_class_host_uses_landscape(self, capabilities):
        low = capabilities.model_copy(update={"performance_class": PerformanceClass.LOW})
        registry = make_registry(low, mediapipe_available=True)
        assert registry.select_backend("auto").variant_name == "Landscape"

    def test_preference_drives_auto(self, registry):
        registry.set_user_preference("mock", "640x360")

        selection = registry.select_backend("auto")
        assert selection.backend_id == "mock"
        assert selection.variant_name == "640x360"
        assert registry.device_report().preferred_backend == "mock"

        registry.reset_user_preference()
        assert registry.select_backend("auto").backend_id == "luma"
        assert registry.device_report().preferred_backend is None

    def test_invalid_preference_not_stored(self, registry):
        with pytest.raises(BackendNotImplementedError):
            registry.set_user_preference("bodypix")
        assert registry.user_preference is None


class TestCreate:
    """Tests for create()."""

    def test_create_builds_instance_for_variant(self, registry):
        selection = registry.select_backend("mock", "640x360")
        backend = registry.create(selection)

        assert isinstance(backend, MockSegmentationBackend)
        assert backend.variant.name == "640x360"
        assert not backend.ready

    def test_missing_factory_raises(self, capabilities):
        registry = make_registry(capabilities, mediapipe_available=True, factories={})
        selection = registry.select_backend("mediapipe")
        with pytest.raises(BackendNotImplementedError):
            registry.create(selection)

    def test_from_settings_registers_factories(self):
        from meetfx.config import Settings

        registry = BackendRegistry.from_settings(Settings())
        registry.set_capabilities(DeviceCapabilities())
        backend = registry.create(registry.select_backend("mock"))
        assert isinstance(backend, MockSegmentationBackend)
        assert backend.latency_ms == 5.0


class TestCapabilityDetector:
    """Tests for CapabilityDetector."""

    def make_detector(self, benchmark_ms=10.0, cpus=8, **checks):
        return CapabilityDetector(
            parallel_check=checks.get("parallel", lambda: True),
            gpu_check=checks.get("gpu", lambda: False),
            gpu_tier2_check=checks.get("gpu2", lambda: False),
            benchmark=lambda iterations: benchmark_ms,
            cpu_count=lambda: cpus,
        )

    def test_detect_with_injected_checks(self):
        caps = self.make_detector(benchmark_ms=10.0, cpus=8, gpu=lambda: True).detect()

        assert caps.parallel_extension_supported
        assert caps.gpu_acceleration_supported
        assert not caps.gpu_acceleration_tier2_supported
        assert caps.performance_class == PerformanceClass.HIGH
        assert caps.cpu_count == 8
        assert caps.benchmark_ms == 10.0

    def test_failing_check_reports_unsupported(self):
        def broken():
            raise RuntimeError("driver crashed")

        caps = self.make_detector(gpu=broken).detect()
        assert not caps.gpu_acceleration_supported

    def test_failing_benchmark_falls_back_to_core_count(self):
        def broken(iterations):
            raise RuntimeError("interrupted")

        detector = CapabilityDetector(
            parallel_check=lambda: False,
            gpu_check=lambda: False,
            gpu_tier2_check=lambda: False,
            benchmark=broken,
            cpu_count=lambda: 4,
        )
        caps = detector.detect()

        assert caps.benchmark_ms is None
        assert caps.performance_class == PerformanceClass.LOW

    @pytest.mark.parametrize(
        "benchmark_ms, cpus, expected",
        [
            (10.0, 8, PerformanceClass.HIGH),
            (10.0, 1, PerformanceClass.MEDIUM),
            (50.0, 4, PerformanceClass.MEDIUM),
            (150.0, 4, PerformanceClass.LOW),
            (None, 8, PerformanceClass.MEDIUM),
            (None, 2, PerformanceClass.LOW),
            (None, 1, PerformanceClass.UNKNOWN),
        ],
    )
    def test_classify(self, benchmark_ms, cpus, expected):
        assert CapabilityDetector().classify(benchmark_ms, cpus) == expected

    @pytest.mark.asyncio
    async def test_registry_detects_once(self):
        calls = []

        def benchmark(iterations):
            calls.append(iterations)
            return 50.0

        detector = CapabilityDetector(
            benchmark_iterations=5000,
            parallel_check=lambda: True,
            gpu_check=lambda: False,
            gpu_tier2_check=lambda: False,
            benchmark=benchmark,
            cpu_count=lambda: 4,
        )
        registry = BackendRegistry(default_descriptors(), {}, detector=detector)

        first = await registry.detect_capabilities()
        second = await registry.detect_capabilities()

        assert first is second
        assert calls == [5000]
        assert registry.capabilities.performance_class == PerformanceClass.MEDIUM
