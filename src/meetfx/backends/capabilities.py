"""
Capability Detection
====================

Checks what the host can run, for backend selection.

Checks:
    - Parallel extension: CPU SIMD support as reported by OpenCV
      (AVX2 / SSE4.2 on x86, NEON on ARM)
    - GPU tier 1: OpenCL available to OpenCV
    - GPU tier 2: at least one CUDA device visible to OpenCV
    - Performance class: a fixed-size arithmetic micro-benchmark,
      combined with the logical core count

Every check is injectable so tests can describe any host.

Design Rules:
    - Detection never raises; a failed check reports "unsupported"
    - The benchmark has a fixed iteration count (bounded run time)
"""

import logging
import math
import os
import time
from typing import Callable, Optional

import cv2

from meetfx.models.capabilities import DeviceCapabilities, PerformanceClass


logger = logging.getLogger(__name__)


SIMD_FEATURES = ("CPU_AVX2", "CPU_SSE4_2", "CPU_NEON")


def check_parallel_extension() -> bool:
    """Whether OpenCV reports a usable CPU SIMD extension."""
    if not cv2.useOptimized():
        return False
    for name in SIMD_FEATURES:
        feature = getattr(cv2, name, None)
        if feature is not None and cv2.checkHardwareSupport(feature):
            return True
    return False


def check_gpu() -> bool:
    """Whether OpenCV can use OpenCL."""
    return bool(cv2.ocl.haveOpenCL())


def check_gpu_tier2() -> bool:
    """Whether OpenCV sees a CUDA device."""
    cuda = getattr(cv2, "cuda", None)
    if cuda is None:
        return False
    return cuda.getCudaEnabledDeviceCount() > 0


def run_benchmark(iterations: int) -> float:
    """
    Time a fixed arithmetic workload.

    Returns:
        Elapsed milliseconds
    """
    started = time.perf_counter()
    acc = 0.0
    for i in range(iterations):
        acc += math.sqrt(i)
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    logger.debug(f"Benchmark: {iterations} iterations in {elapsed_ms:.1f}ms (acc={acc:.0f})")
    return elapsed_ms


class CapabilityDetector:
    """
    Host capability detector.

    Attributes:
        benchmark_iterations: Workload size of the micro-benchmark
        high_threshold_ms: Benchmark faster than this -> high
        medium_threshold_ms: Benchmark faster than this -> medium

    Example:
        detector = CapabilityDetector()
        caps = detector.detect()
        caps.performance_class    # PerformanceClass.HIGH
    """

    def __init__(
        self,
        benchmark_iterations: int = 200_000,
        high_threshold_ms: float = 25.0,
        medium_threshold_ms: float = 100.0,
        parallel_check: Callable[[], bool] = check_parallel_extension,
        gpu_check: Callable[[], bool] = check_gpu,
        gpu_tier2_check: Callable[[], bool] = check_gpu_tier2,
        benchmark: Callable[[int], float] = run_benchmark,
        cpu_count: Optional[Callable[[], Optional[int]]] = None,
    ) -> None:
        self.benchmark_iterations = benchmark_iterations
        self.high_threshold_ms = high_threshold_ms
        self.medium_threshold_ms = medium_threshold_ms
        self._parallel_check = parallel_check
        self._gpu_check = gpu_check
        self._gpu_tier2_check = gpu_tier2_check
        self._benchmark = benchmark
        self._cpu_count = cpu_count or os.cpu_count

    def detect(self) -> DeviceCapabilities:
        """Run every check. Blocking: call it off the event loop."""
        cpu_count = self._cpu_count() or 1
        benchmark_ms = self._safe_benchmark()

        capabilities = DeviceCapabilities(
            parallel_extension_supported=self._safe_check("parallel extension", self._parallel_check),
            gpu_acceleration_supported=self._safe_check("GPU", self._gpu_check),
            gpu_acceleration_tier2_supported=self._safe_check("GPU tier 2", self._gpu_tier2_check),
            performance_class=self.classify(benchmark_ms, cpu_count),
            cpu_count=cpu_count,
            benchmark_ms=round(benchmark_ms, 2) if benchmark_ms is not None else None,
        )
        logger.info(
            f"Capabilities: simd={capabilities.parallel_extension_supported}, "
            f"gpu={capabilities.gpu_acceleration_supported}, "
            f"gpu2={capabilities.gpu_acceleration_tier2_supported}, "
            f"class={capabilities.performance_class.value}, cpus={cpu_count}"
        )
        return capabilities

    def classify(self, benchmark_ms: Optional[float], cpu_count: int) -> PerformanceClass:
        """
        Map benchmark time and core count to a performance class.

        A single-core host is never classified above medium. Without a
        benchmark the class falls back to the core count alone.
        """
        if benchmark_ms is None:
            if cpu_count >= 8:
                return PerformanceClass.MEDIUM
            if cpu_count >= 2:
                return PerformanceClass.LOW
            return PerformanceClass.UNKNOWN

        if benchmark_ms < self.high_threshold_ms:
            performance = PerformanceClass.HIGH
        elif benchmark_ms < self.medium_threshold_ms:
            performance = PerformanceClass.MEDIUM
        else:
            performance = PerformanceClass.LOW

        if performance == PerformanceClass.HIGH and cpu_count < 2:
            performance = PerformanceClass.MEDIUM
        return performance

    def _safe_benchmark(self) -> Optional[float]:
        try:
            return self._benchmark(self.benchmark_iterations)
        except Exception as e:
            logger.warning(f"Benchmark failed: {e}")
            return None

    @staticmethod
    def _safe_check(name: str, check: Callable[[], bool]) -> bool:
        try:
            return bool(check())
        except Exception as e:
            logger.warning(f"Capability check '{name}' failed: {e}")
            return False
