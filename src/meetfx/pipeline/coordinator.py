"""
Background Switch Coordinator
=============================

Owns the capture loop's lifecycle: enabling the effect, hot-swapping
the backend mid-call, and disabling the effect.

Switch sequence:
    validate request  (fails fast, current backend keeps running)
    pause ticks
    drain in-flight inference  (bounded, abandoned with a warning)
    init new backend           (bounded)
    commit comparison snapshot for the outgoing backend
    dispose old session
    install new session (next generation), reset metrics
    replace outgoing video on the transport, exactly once
    resume ticks

Design Rules:
    - Requests are serialised; the last request wins. A request that
      was overtaken by a newer one gives up at its next checkpoint and
      leaves the running session untouched
    - A switch that overtakes a pending enable performs the enable
      itself, with its own selection
    - On init failure or timeout the half-initialised backend is
      disposed and the previous session resumes
    - Only this class replaces the transport's outgoing video
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from meetfx.backends.base import SegmentationBackend
from meetfx.backends.registry import AUTO, BackendRegistry
from meetfx.errors import BackendInitError, BackgroundEffectError
from meetfx.metrics.aggregator import MetricsAggregator
from meetfx.models.alert import Alert, AlertLevel
from meetfx.models.backend import Selection
from meetfx.pipeline.loop import AlertSink, CaptureLoop, LoopState
from meetfx.pipeline.session import ActiveBackendSession
from meetfx.transport.base import AudioTrack, CallTransport, VideoTrack


logger = logging.getLogger(__name__)


SUPERSEDED = "superseded by a newer request"


@dataclass(frozen=True, slots=True)
class SelectionOutcome:
    """
    Result of an enable or switch request.

    Attributes:
        success: Whether the requested backend is now running
        backend_id: Backend running after the request (None when disabled)
        variant: Variant running after the request
        reason: Why the request failed, if it did
    """

    success: bool
    backend_id: Optional[str] = None
    variant: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "backend_id": self.backend_id,
            "variant": self.variant,
            "reason": self.reason,
        }


class BackgroundSwitchCoordinator:
    """
    Enable / switch / disable state machine around the capture loop.

    Attributes:
        loop: The capture loop being driven
        registry: Backend registry used to validate and create backends
        transport: Call transport whose outgoing video is replaced
        raw_track: Camera track restored when the effect is disabled
        generation: Number of sessions created so far
    """

    def __init__(
        self,
        loop: CaptureLoop,
        registry: BackendRegistry,
        transport: CallTransport,
        metrics: MetricsAggregator,
        raw_track: VideoTrack,
        audio_tracks: Optional[List[AudioTrack]] = None,
        init_timeout: float = 5.0,
        drain_timeout: float = 0.3,
        alert_sink: Optional[AlertSink] = None,
    ) -> None:
        """
        Initialize coordinator.

        Args:
            loop: Capture loop to drive
            registry: Backend registry
            transport: Call transport
            metrics: Metrics aggregator (reset and snapshotted on switch)
            raw_track: Track to send while the effect is off
            audio_tracks: Audio tracks to keep on the outgoing stream
            init_timeout: Seconds allowed for backend initialization
            drain_timeout: Seconds allowed for in-flight inference on switch
            alert_sink: Receives user-visible alerts
        """
        self.loop = loop
        self.registry = registry
        self.transport = transport
        self.metrics = metrics
        self.raw_track = raw_track
        self.audio_tracks = list(audio_tracks or [])
        self.init_timeout = init_timeout
        self.drain_timeout = drain_timeout
        self.alert_sink = alert_sink

        self.generation = 0
        self._lock = asyncio.Lock()
        self._request_seq = 0
        self._effect_requested = False

    @property
    def active_selection(self) -> Optional[Selection]:
        session = self.loop.session
        return session.selection if session is not None else None

    @property
    def effect_requested(self) -> bool:
        """Whether the latest enable or disable request asked for the effect on."""
        return self._effect_requested

    # -------------------------------------------------------------------------
    # Enable
    # -------------------------------------------------------------------------

    async def start(self, choice: Optional[str] = AUTO, variant_name: Optional[str] = None) -> SelectionOutcome:
        """
        Enable the effect with the chosen backend.

        On failure the loop stays DISABLED and the raw camera track keeps
        being sent.
        """
        try:
            selection = self.registry.select_backend(choice, variant_name)
        except BackgroundEffectError as e:
            return SelectionOutcome(False, reason=str(e))

        ticket = self._next_ticket()
        self._effect_requested = True
        async with self._lock:
            if ticket != self._request_seq:
                return SelectionOutcome(False, reason=SUPERSEDED)
            if self.loop.state != LoopState.DISABLED:
                return self._current_outcome(False, "background effect is already enabled")
            return await self._enable(selection, ticket)

    async def _enable(self, selection: Selection, ticket: int) -> SelectionOutcome:
        """DISABLED -> STARTING -> RUNNING (or back to DISABLED). Lock held."""
        self.loop.transition(LoopState.STARTING)
        logger.info(f"Enabling background effect with {selection}")

        backend = self.registry.create(selection)
        failure = await self._init_backend(backend, selection)
        if failure is not None:
            self.loop.transition(LoopState.DISABLED)
            if ticket == self._request_seq:
                self._effect_requested = False
            return SelectionOutcome(False, reason=failure)

        if ticket != self._request_seq:
            backend.dispose()
            self.loop.transition(LoopState.DISABLED)
            return SelectionOutcome(False, reason=SUPERSEDED)

        session = self._new_session(backend, selection)
        self.loop.install_session(session)
        self.metrics.reset(selection.backend_id)
        self.transport.replace_outgoing_video(session.track)
        self.transport.attach_audio_tracks(self.audio_tracks)
        self.loop.transition(LoopState.RUNNING)
        self.loop.start()

        logger.info(f"Background effect enabled: {selection}")
        return SelectionOutcome(True, selection.backend_id, selection.variant_name)

    # -------------------------------------------------------------------------
    # Switch
    # -------------------------------------------------------------------------

    async def switch(self, choice: Optional[str], variant_name: Optional[str] = None) -> SelectionOutcome:
        """
        Hot-swap the running backend.

        The request is validated before anything is torn down; on any
        failure the current backend keeps running. When the request
        overtook an enable that had not finished, the effect is enabled
        with this selection instead.
        """
        try:
            selection = self.registry.select_backend(choice, variant_name)
        except BackgroundEffectError as e:
            logger.warning(f"Backend switch rejected: {e}")
            return self._current_outcome(False, str(e))

        ticket = self._next_ticket()
        async with self._lock:
            if ticket != self._request_seq:
                return self._current_outcome(False, SUPERSEDED)

            current = self.loop.session
            if self.loop.state == LoopState.DISABLED and self._effect_requested:
                logger.info(f"Backend {selection} requested before the effect finished enabling")
                return await self._enable(selection, ticket)
            if self.loop.state != LoopState.RUNNING or current is None:
                return SelectionOutcome(False, reason="background effect is not running")

            if (
                current.selection.backend_id == selection.backend_id
                and current.selection.variant_name == selection.variant_name
            ):
                return self._current_outcome(True)

            logger.info(f"Switching backend {current.selection} -> {selection}")
            self.loop.transition(LoopState.SWITCHING)
            await self.loop.pause()
            await self.loop.drain(self.drain_timeout)

            if ticket != self._request_seq:
                self._resume()
                return self._current_outcome(False, SUPERSEDED)

            backend = self.registry.create(selection)
            failure = await self._init_backend(backend, selection, resume_on_cancel=True)
            if failure is not None:
                self._resume()
                return self._current_outcome(False, failure)

            if ticket != self._request_seq:
                backend.dispose()
                self._resume()
                return self._current_outcome(False, SUPERSEDED)

            old = self.loop.detach_session()
            self.metrics.commit_comparison(old.backend_id)
            old.dispose()

            session = self._new_session(backend, selection)
            self.loop.install_session(session)
            self.metrics.reset(selection.backend_id)
            self.transport.replace_outgoing_video(session.track)
            self._resume()

            logger.info(f"Backend switched to {selection}")
            return SelectionOutcome(True, selection.backend_id, selection.variant_name)

    # -------------------------------------------------------------------------
    # Disable
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """Disable the effect and send the raw camera track again."""
        self._next_ticket()
        self._effect_requested = False
        async with self._lock:
            if self.loop.state == LoopState.DISABLED:
                return

            self.loop.transition(LoopState.STOPPING)
            await self.loop.pause()
            session = self.loop.detach_session()
            if session is not None:
                session.dispose()
            self.transport.replace_outgoing_video(self.raw_track)
            self.loop.transition(LoopState.DISABLED)
            logger.info("Background effect disabled")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_ticket(self) -> int:
        self._request_seq += 1
        return self._request_seq

    def _new_session(self, backend: SegmentationBackend, selection: Selection) -> ActiveBackendSession:
        self.generation += 1
        return ActiveBackendSession(backend, selection, self.generation)

    def _resume(self) -> None:
        self.loop.transition(LoopState.RUNNING)
        self.loop.start()

    def _current_outcome(self, success: bool, reason: Optional[str] = None) -> SelectionOutcome:
        current = self.active_selection
        return SelectionOutcome(
            success,
            backend_id=current.backend_id if current else None,
            variant=current.variant_name if current else None,
            reason=reason,
        )

    async def _init_backend(
        self,
        backend: SegmentationBackend,
        selection: Selection,
        resume_on_cancel: bool = False,
    ) -> Optional[str]:
        """
        Initialize with the bounded timeout.

        Returns:
            None on success, else the failure reason (backend disposed)
        """
        try:
            await asyncio.wait_for(backend.init(), timeout=self.init_timeout)
            return None
        except BackendInitError as e:
            reason = e.reason
        except asyncio.TimeoutError:
            reason = f"initialization timed out after {self.init_timeout:.1f}s"
        except asyncio.CancelledError:
            backend.dispose()
            if resume_on_cancel:
                self._resume()
            else:
                self.loop.transition(LoopState.DISABLED)
            raise

        backend.dispose()
        logger.error(f"Could not start backend {selection}: {reason}")
        self._alert(AlertLevel.ERROR, f"Could not start {selection.descriptor.name}: {reason}")
        return reason

    def _alert(self, level: AlertLevel, message: str) -> None:
        if self.alert_sink is not None:
            self.alert_sink(Alert(level=level, message=message))
