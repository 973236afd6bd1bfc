"""
Capture Loop
============

The per-frame, soft-real-time loop behind the background effect.

One iteration (tick) per frame the source presents:
    1. Read the source's latest frame; a repeated presentation timestamp
       means nothing new to do
    2. Collect an inference that finished since the last tick
    3. Abandon an inference that has been in flight too long
    4. Ask the frame-skip policy whether to infer
    5. Infer (bounded by the tick budget) or reuse the cached result
    6. Composite, publish on the session's track, record metrics

States:
    DISABLED -> STARTING -> RUNNING -> (SWITCHING -> RUNNING)* -> STOPPING -> DISABLED

Design Rules:
    - At most one process_frame call in flight per session
    - Published frame ids never decrease
    - A result is published only by the session (generation) that asked for it
    - A failed frame falls back to the raw frame for that tick only
    - The loop never waits on image loads or on a slow backend beyond
      the tick budget
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, FrozenSet, Optional, Protocol, Tuple

import numpy as np

from meetfx.backends.base import consume_task_result
from meetfx.capture.frame import Frame
from meetfx.capture.source import FrameSource
from meetfx.compositing.compositor import FrameCompositor
from meetfx.errors import FrameProcessError, LoopStateError
from meetfx.metrics.aggregator import MetricsAggregator
from meetfx.models.alert import Alert, AlertLevel
from meetfx.models.background import BackgroundSpec, NoBackground
from meetfx.models.result import SegmentationResult
from meetfx.pipeline.policy import FrameSkipPolicy, InferEveryFrame
from meetfx.pipeline.session import ActiveBackendSession


logger = logging.getLogger(__name__)


AlertSink = Callable[[Alert], None]


class LoopState(str, Enum):
    """Capture loop lifecycle state."""

    DISABLED = "disabled"
    STARTING = "starting"
    RUNNING = "running"
    SWITCHING = "switching"
    STOPPING = "stopping"


ALLOWED_TRANSITIONS: Dict[LoopState, FrozenSet[LoopState]] = {
    LoopState.DISABLED: frozenset({LoopState.STARTING}),
    LoopState.STARTING: frozenset({LoopState.RUNNING, LoopState.DISABLED}),
    LoopState.RUNNING: frozenset({LoopState.SWITCHING, LoopState.STOPPING}),
    LoopState.SWITCHING: frozenset({LoopState.RUNNING, LoopState.STOPPING}),
    LoopState.STOPPING: frozenset({LoopState.DISABLED}),
}


class TickKind(str, Enum):
    """What a tick did."""

    IDLE = "idle"            # no session or no frame yet
    SKIPPED = "skipped"      # same frame as last tick
    INFERRED = "inferred"    # fresh result composited and published
    REUSED = "reused"        # cached result composited and published
    RAW = "raw"              # nothing cached yet, raw frame published
    FAILED = "failed"        # inference or compositing failed, raw frame published


@dataclass(frozen=True, slots=True)
class TickOutcome:
    """Result of one tick, for callers that drive the loop directly."""

    kind: TickKind
    frame_id: int = -1
    published: bool = False


class TickSource(Protocol):
    """Scheduling source for ticks."""

    async def wait(self) -> None:
        """Return at the next tick."""
        ...


class FrameTicker:
    """
    Ticks when the source presents a frame.

    Frames presented while a tick is still running collapse into a
    single next tick.
    """

    def __init__(self, source: FrameSource) -> None:
        self.source = source

    async def wait(self) -> None:
        await self.source.wait_for_frame()


class CaptureLoop:
    """
    Frame pipeline driver.

    The switch coordinator owns the lifecycle: it moves the state,
    installs and detaches sessions, and pauses/resumes the run task.
    Tests drive `tick()` directly.

    Attributes:
        state: Current LoopState
        session: Installed backend session, if any
        spec: Active background spec
        surface: Last image published (None before the first publish)
        frames_published: Frames pushed to session tracks
        frames_dropped: Late results refused by the FIFO check

    Example:
        loop = CaptureLoop(source, FrameCompositor(), MetricsAggregator())
        loop.transition(LoopState.STARTING)
        loop.install_session(session)
        loop.transition(LoopState.RUNNING)
        loop.start()
    """

    def __init__(
        self,
        source: FrameSource,
        compositor: FrameCompositor,
        metrics: MetricsAggregator,
        policy: Optional[FrameSkipPolicy] = None,
        tick_budget_ms: float = 15.0,
        inflight_timeout_ms: float = 1000.0,
        error_window: int = 30,
        error_threshold: float = 0.5,
        alert_sink: Optional[AlertSink] = None,
        ticker: Optional[TickSource] = None,
    ) -> None:
        """
        Initialize capture loop.

        Args:
            source: Frame source polled once per tick
            compositor: Background compositor
            metrics: Metrics aggregator fed by every iteration
            policy: Frame-skip policy (default: infer every frame)
            tick_budget_ms: Max wait for an inference inside one tick
            inflight_timeout_ms: In-flight calls older than this are abandoned
            error_window: Recent inferences considered for the error rate
            error_threshold: Error rate above which one warning is raised
            alert_sink: Receives user-visible alerts
            ticker: Tick scheduler for run() (default: the source's frames)
        """
        self.source = source
        self.compositor = compositor
        self.metrics = metrics
        self.policy = policy or InferEveryFrame()
        self.tick_budget = tick_budget_ms / 1000.0
        self.inflight_timeout = inflight_timeout_ms / 1000.0
        self.error_threshold = error_threshold
        self.alert_sink = alert_sink
        self.ticker = ticker or FrameTicker(source)

        self.state = LoopState.DISABLED
        self._session: Optional[ActiveBackendSession] = None
        self._spec: BackgroundSpec = NoBackground()
        self._run_task: Optional[asyncio.Task] = None

        self._last_marker: Optional[float] = None
        self._last_published_id: int = -1
        self._last_output: Optional[np.ndarray] = None
        self._tick_index: int = 0

        self._outcomes: Deque[bool] = deque(maxlen=error_window)
        self._degraded_alerted: bool = False

        self.frames_published: int = 0
        self.frames_dropped: int = 0
        self.ticks_skipped: int = 0

    # -------------------------------------------------------------------------
    # State and session management
    # -------------------------------------------------------------------------

    def transition(self, new_state: LoopState) -> None:
        """
        Move to a new state.

        Raises:
            LoopStateError: If the transition is not allowed
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise LoopStateError(
                f"Illegal capture loop transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(f"Capture loop: {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def session(self) -> Optional[ActiveBackendSession]:
        return self._session

    @property
    def spec(self) -> BackgroundSpec:
        return self._spec

    @property
    def surface(self) -> Optional[np.ndarray]:
        return self._last_output

    @property
    def last_published_id(self) -> int:
        return self._last_published_id

    @property
    def running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def install_session(self, session: ActiveBackendSession) -> None:
        """Make a session current. The previous one must be detached first."""
        if self._session is not None:
            raise LoopStateError(
                f"Session {self._session.selection} still installed"
            )
        self._session = session
        self._last_marker = None
        self._outcomes.clear()
        self._degraded_alerted = False
        self.policy.reset()
        logger.info(f"Capture loop session installed: {session.selection}#{session.generation}")

    def detach_session(self) -> Optional[ActiveBackendSession]:
        """Remove the current session without disposing it."""
        session, self._session = self._session, None
        return session

    def set_background_spec(self, spec: BackgroundSpec) -> None:
        """Switch background; takes effect on the next composited frame."""
        self._spec = spec

    # -------------------------------------------------------------------------
    # Run control
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start (or resume) ticking on the ticker."""
        if self.running:
            return
        self._run_task = asyncio.create_task(self._run(), name="capture_loop")

    async def pause(self) -> None:
        """Stop ticking. In-flight inference keeps running (see drain())."""
        task, self._run_task = self._run_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def drain(self, timeout: float) -> bool:
        """
        Wait (bounded) for the in-flight inference to finish.

        Returns:
            True if nothing was left in flight, False if it was abandoned
        """
        session = self._session
        if session is None or not session.is_busy:
            return True

        done, _ = await asyncio.wait({session.inflight}, timeout=timeout)
        if not done:
            logger.warning(
                f"In-flight inference on frame {session.inflight_frame_id} did not finish "
                f"within {timeout * 1000:.0f}ms, abandoning"
            )
            session.abandon_inflight()
            return False

        session.clear_inflight()
        return True

    async def _run(self) -> None:
        logger.info("Capture loop running")
        while True:
            await self.ticker.wait()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Capture loop tick failed: {e}")

    # -------------------------------------------------------------------------
    # The iteration
    # -------------------------------------------------------------------------

    async def tick(self) -> TickOutcome:
        """Run one iteration."""
        started = time.perf_counter()
        session = self._session
        if self.state != LoopState.RUNNING or session is None:
            return TickOutcome(TickKind.IDLE)

        frame = self.source.latest()
        if frame is None:
            return TickOutcome(TickKind.IDLE)

        if self._last_marker is not None and frame.timestamp == self._last_marker:
            self.ticks_skipped += 1
            return TickOutcome(TickKind.SKIPPED, frame.frame_id)
        self._last_marker = frame.timestamp

        segmentation_ms = self._collect_completed(session)
        self._expire_inflight(session)

        infer = self.policy.should_infer(self._tick_index)
        self._tick_index += 1

        if session.is_busy or not infer:
            kind, published = self._reuse(session, frame)
        else:
            task = asyncio.create_task(
                session.backend.process_frame(frame, self._spec),
                name=f"process_frame:{frame.frame_id}",
            )
            task.add_done_callback(consume_task_result)
            session.inflight = task
            session.inflight_frame_id = frame.frame_id
            session.inflight_started = asyncio.get_running_loop().time()

            await asyncio.wait({task}, timeout=self.tick_budget)
            if self._session is not session:
                return TickOutcome(TickKind.IDLE, frame.frame_id)

            if task.done():
                session.clear_inflight()
                kind, published, fresh_ms = self._complete(session, frame, task)
                if fresh_ms is not None:
                    if segmentation_ms is not None:
                        # late result collected this tick as well
                        self.metrics.record_inference(segmentation_ms)
                    segmentation_ms = fresh_ms
            else:
                kind, published = self._reuse(session, frame)

        total_ms = (time.perf_counter() - started) * 1000.0
        self.metrics.record(segmentation_ms, total_ms)
        return TickOutcome(kind, frame.frame_id, published)

    def _complete(
        self,
        session: ActiveBackendSession,
        frame: Frame,
        task: asyncio.Task,
    ) -> Tuple[TickKind, bool, Optional[float]]:
        """Handle an inference that finished within this tick's budget."""
        if task.cancelled():
            kind, published = self._reuse(session, frame)
            return kind, published, None

        error = task.exception()
        if error is not None:
            self._record_failure(session, frame.frame_id, error)
            return TickKind.FAILED, self._publish_raw(session, frame), None

        result: SegmentationResult = task.result()
        session.last_result = result
        self._record_outcome(failed=False)
        self.policy.observe(result.total_ms)

        output = self._render(session, frame, result)
        if output is None:
            return TickKind.FAILED, self._publish_raw(session, frame), result.segmentation_ms
        return TickKind.INFERRED, self._publish(session, frame.frame_id, output), result.segmentation_ms

    def _collect_completed(self, session: ActiveBackendSession) -> Optional[float]:
        """
        Take the result of an inference that outlived an earlier tick.

        The result becomes the session's cache. Returns its segmentation
        time so the metrics see the completed inference.
        """
        task = session.inflight
        if task is None or not task.done():
            return None

        frame_id = session.inflight_frame_id
        session.clear_inflight()
        if task.cancelled():
            return None

        error = task.exception()
        if error is not None:
            self._record_failure(session, frame_id, error)
            return None

        if session is not self._session:
            return None

        result: SegmentationResult = task.result()
        session.last_result = result
        self._record_outcome(failed=False)
        self.policy.observe(result.total_ms)
        return result.segmentation_ms

    def _expire_inflight(self, session: ActiveBackendSession) -> None:
        if not session.is_busy:
            return
        age = asyncio.get_running_loop().time() - session.inflight_started
        if age > self.inflight_timeout:
            logger.warning(
                f"Inference on frame {session.inflight_frame_id} in flight for "
                f"{age * 1000:.0f}ms, abandoning"
            )
            session.abandon_inflight()

    def _reuse(self, session: ActiveBackendSession, frame: Frame) -> Tuple[TickKind, bool]:
        """Publish this tick from the cached result (or the raw frame)."""
        cached = session.last_result
        if cached is None:
            return TickKind.RAW, self._publish_raw(session, frame)

        if cached.mask is not None:
            output = self._render(session, frame, cached.mask_only())
            if output is None:
                return TickKind.FAILED, self._publish_raw(session, frame)
            return TickKind.REUSED, self._publish(session, frame.frame_id, output)

        if cached.frame_id >= self._last_published_id:
            output = self._render(session, frame, cached)
            if output is not None:
                return TickKind.REUSED, self._publish(session, cached.frame_id, output)

        return TickKind.RAW, self._publish_raw(session, frame)

    def _render(
        self,
        session: ActiveBackendSession,
        frame: Frame,
        result: SegmentationResult,
    ) -> Optional[np.ndarray]:
        try:
            return self.compositor.render(frame.image, result, self._spec)
        except Exception as e:
            self._record_failure(session, frame.frame_id, e)
            return None

    def _publish_raw(self, session: ActiveBackendSession, frame: Frame) -> bool:
        return self._publish(session, frame.frame_id, self.compositor.passthrough(frame.image))

    def _publish(self, session: ActiveBackendSession, frame_id: int, image: np.ndarray) -> bool:
        if frame_id < self._last_published_id:
            self.frames_dropped += 1
            logger.debug(
                f"Dropping frame {frame_id}: older than published frame {self._last_published_id}"
            )
            return False
        session.track.push(frame_id, image)
        self._last_published_id = frame_id
        self._last_output = image
        self.frames_published += 1
        return True

    # -------------------------------------------------------------------------
    # Error aggregation
    # -------------------------------------------------------------------------

    def _record_failure(self, session: ActiveBackendSession, frame_id: int, error: BaseException) -> None:
        session.errors += 1
        if isinstance(error, FrameProcessError):
            logger.warning(f"Frame {frame_id} failed: {error}")
        else:
            logger.error(f"Frame {frame_id} failed unexpectedly: {error!r}")
        self._record_outcome(failed=True)

    def _record_outcome(self, failed: bool) -> None:
        self._outcomes.append(failed)
        if len(self._outcomes) < self._outcomes.maxlen:
            return

        error_rate = sum(self._outcomes) / len(self._outcomes)
        if error_rate > self.error_threshold and not self._degraded_alerted:
            self._degraded_alerted = True
            logger.warning(f"Background effect degraded: {error_rate:.0%} of recent frames failed")
            self._alert(
                AlertLevel.WARNING,
                f"Background effect is having trouble ({error_rate:.0%} of recent frames failed)",
            )
        elif error_rate <= self.error_threshold and self._degraded_alerted:
            self._degraded_alerted = False
            logger.info("Background effect recovered")

    def _alert(self, level: AlertLevel, message: str) -> None:
        if self.alert_sink is not None:
            self.alert_sink(Alert(level=level, message=message))
