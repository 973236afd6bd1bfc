"""
Background Effect Service
=========================

UI-facing facade over the whole pipeline.

Everything a UI (or the HTTP surface in main.py) needs goes through
this class: turning the effect on and off, picking the background,
choosing the backend, and reading capabilities, metrics and alerts.

Design Rules:
    - Wires components explicitly; no module-level state
    - Background-effect failures come back as outcomes and alerts,
      never as exceptions that would end the call
    - Backend preference is saved only once the backend actually runs
"""

import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from meetfx.backends.registry import AUTO, BackendRegistry
from meetfx.capture.source import FrameSource
from meetfx.compositing.compositor import FrameCompositor
from meetfx.compositing.images import BackgroundImageStore
from meetfx.config import Settings
from meetfx.errors import BackgroundEffectError
from meetfx.metrics.aggregator import MetricsAggregator
from meetfx.models.alert import Alert, AlertLevel
from meetfx.models.background import (
    BackgroundSpec,
    ImageHandle,
    UploadedImage,
    describe_background,
    parse_background_spec,
)
from meetfx.models.capabilities import BackendReport, DeviceCapabilities
from meetfx.models.metrics import ComparisonEntry, MetricsSnapshot
from meetfx.pipeline.coordinator import BackgroundSwitchCoordinator, SelectionOutcome
from meetfx.pipeline.loop import CaptureLoop, FrameTicker, LoopState
from meetfx.pipeline.policy import build_policy
from meetfx.transport.base import CallTransport, LoopbackTransport


logger = logging.getLogger(__name__)


class BackgroundEffectService:
    """
    Virtual background for one call.

    Attributes:
        source: Local frame source
        transport: Call transport carrying the outgoing video
        registry: Backend registry and selector
        loop: Capture loop
        coordinator: Enable / switch / disable state machine
        images: Background image store
        metrics: Metrics aggregator

    Example:
        service = BackgroundEffectService.from_settings(settings, source)
        await service.start()
        await service.enable_background_effect()
        service.set_background_spec(Blur(radius=15))
        await service.select_backend("mock", "640x360")
    """

    def __init__(
        self,
        source: FrameSource,
        transport: CallTransport,
        registry: BackendRegistry,
        loop: CaptureLoop,
        coordinator: BackgroundSwitchCoordinator,
        images: BackgroundImageStore,
        metrics: MetricsAggregator,
        static_images: Optional[Dict[str, str]] = None,
        default_backend: str = AUTO,
        default_variant: Optional[str] = None,
        default_blur_radius: int = 15,
        max_alerts: int = 50,
    ) -> None:
        self.source = source
        self.transport = transport
        self.registry = registry
        self.loop = loop
        self.coordinator = coordinator
        self.images = images
        self.metrics = metrics
        self.static_images = dict(static_images or {})
        self.default_backend = default_backend
        self.default_variant = default_variant
        self.default_blur_radius = default_blur_radius
        self._alerts: Deque[Alert] = deque(maxlen=max_alerts)

        self.loop.alert_sink = self._push_alert
        self.coordinator.alert_sink = self._push_alert

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: FrameSource,
        transport: Optional[CallTransport] = None,
        registry: Optional[BackendRegistry] = None,
    ) -> "BackgroundEffectService":
        """Wire every component from configuration."""
        transport = transport or LoopbackTransport(initial_track=source.track)
        registry = registry or BackendRegistry.from_settings(settings)

        metrics = MetricsAggregator(
            window_size=settings.metrics.window_size,
            native_fps=source.native_fps,
        )
        loop = CaptureLoop(
            source=source,
            compositor=FrameCompositor(
                feather_px=settings.compositor.feather_px,
                mirror=settings.compositor.mirror,
            ),
            metrics=metrics,
            policy=build_policy(settings.frame_skip),
            tick_budget_ms=settings.pipeline.tick_budget_ms,
            inflight_timeout_ms=settings.pipeline.inflight_timeout_ms,
            error_window=settings.pipeline.error_window,
            error_threshold=settings.pipeline.error_threshold,
            ticker=FrameTicker(source),
        )
        coordinator = BackgroundSwitchCoordinator(
            loop=loop,
            registry=registry,
            transport=transport,
            metrics=metrics,
            raw_track=source.track,
            audio_tracks=source.audio_tracks,
            init_timeout=settings.pipeline.init_timeout_seconds,
            drain_timeout=settings.pipeline.drain_timeout_ms / 1000.0,
        )
        return cls(
            source=source,
            transport=transport,
            registry=registry,
            loop=loop,
            coordinator=coordinator,
            images=BackgroundImageStore(settings.backgrounds.max_upload_bytes),
            metrics=metrics,
            static_images=settings.backgrounds.static_images,
            default_backend=settings.pipeline.default_backend,
            default_variant=settings.pipeline.default_variant,
            default_blur_radius=settings.compositor.default_blur_radius,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Detect capabilities, apply the configured backend, start image loads."""
        await self.registry.detect_capabilities()

        if self.default_backend.lower() != AUTO:
            try:
                self.registry.set_user_preference(self.default_backend, self.default_variant)
            except BackgroundEffectError as e:
                logger.warning(f"Configured backend '{self.default_backend}' unusable: {e}")
                self._push_alert(
                    Alert(level=AlertLevel.WARNING, message=f"Configured backend unusable: {e}")
                )

        for name, path in self.static_images.items():
            self.images.load_static(name, path)

        logger.info(
            f"BackgroundEffectService ready: {len(self.static_images)} static backgrounds, "
            f"recommended backend '{self.registry.recommend()[0]}'"
        )

    async def close(self) -> None:
        """Disable the effect and cancel pending image loads."""
        await self.coordinator.stop()
        await self.images.close()

    # -------------------------------------------------------------------------
    # Effect control
    # -------------------------------------------------------------------------

    @property
    def is_enabled(self) -> bool:
        return self.loop.state in (LoopState.RUNNING, LoopState.SWITCHING)

    async def enable_background_effect(
        self,
        choice: Optional[str] = AUTO,
        variant: Optional[str] = None,
    ) -> SelectionOutcome:
        """Turn the effect on. Failure leaves the raw camera track in place."""
        return await self.coordinator.start(choice, variant)

    async def disable_background_effect(self) -> None:
        """Turn the effect off and restore the raw camera track."""
        await self.coordinator.stop()

    def set_background_spec(self, spec: BackgroundSpec) -> None:
        """Change the background; the next composited frame uses it."""
        self.loop.set_background_spec(spec)
        logger.info(f"Background set: {describe_background(spec)}")

    def background_from_dict(self, data: dict) -> BackgroundSpec:
        """Parse a request payload against the known background images."""
        return parse_background_spec(data, self.images.get, self.default_blur_radius)

    def upload_background(self, data: bytes, content_type: str) -> ImageHandle:
        """
        Use an uploaded image as the background.

        The background switches immediately; frames stay raw until the image
        has decoded.

        Raises:
            ImageDecodeError: If the upload is not an image or is too large
        """
        handle = self.images.load_uploaded(data, content_type)
        self.set_background_spec(UploadedImage(handle))
        return handle

    # -------------------------------------------------------------------------
    # Backend selection
    # -------------------------------------------------------------------------

    async def select_backend(self, choice: Optional[str], variant: Optional[str] = None) -> SelectionOutcome:
        """
        Choose the backend ("auto" clears the preference).

        While the effect runs, or is still being enabled, this goes
        through the coordinator and the selected backend is the one that
        ends up running. Otherwise it only records the preference for
        the next enable.
        """
        is_auto = choice is None or choice.lower() == AUTO
        if is_auto:
            self.registry.reset_user_preference()

        if self.coordinator.effect_requested:
            outcome = await self.coordinator.switch(AUTO if is_auto else choice, variant)
            if outcome.success and not is_auto:
                self.registry.set_user_preference(outcome.backend_id, outcome.variant)
            return outcome

        try:
            if is_auto:
                selection = self.registry.select_backend(AUTO, variant)
            else:
                selection = self.registry.set_user_preference(choice, variant)
        except BackgroundEffectError as e:
            return SelectionOutcome(False, reason=str(e))
        return SelectionOutcome(True, selection.backend_id, selection.variant_name)

    def reset_backend_preference(self) -> None:
        self.registry.reset_user_preference()

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    def get_device_capabilities(self) -> DeviceCapabilities:
        return self.registry.device_report()

    def get_current_metrics(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def get_comparison_table(self) -> Dict[str, ComparisonEntry]:
        return self.metrics.comparison_table()

    def list_backends(self) -> List[BackendReport]:
        return self.registry.list_backends()

    @property
    def alerts(self) -> List[Alert]:
        """Most recent alerts, oldest first."""
        return list(self._alerts)

    def _push_alert(self, alert: Alert) -> None:
        self._alerts.append(alert)
        logger.info(f"Alert [{alert.level.value}]: {alert.message}")
