"""
Frame-Skip Policy
=================

Decides, per tick, whether to start a new inference or reuse the last
result. Kept as a separate object so the capture loop does not carry
heuristics.

Policies:
    - InferEveryFrame: always infer (subject to the single in-flight slot)
    - AdaptiveSkipPolicy: infer every (skip + 1)-th frame; skip more when
      iterations are slow, less when they are fast again
"""

import logging
from typing import Protocol

from meetfx.config import FrameSkipConfig


logger = logging.getLogger(__name__)


class FrameSkipPolicy(Protocol):
    """Protocol for frame-skip heuristics."""

    def should_infer(self, tick_index: int) -> bool:
        """Whether the tick should start a new inference."""
        ...

    def observe(self, total_ms: float) -> None:
        """Feed the wall time of a completed iteration."""
        ...

    def reset(self) -> None:
        """Forget history (on enable and on switch)."""
        ...


class InferEveryFrame:
    """Never skip."""

    def should_infer(self, tick_index: int) -> bool:
        return True

    def observe(self, total_ms: float) -> None:
        pass

    def reset(self) -> None:
        pass


class AdaptiveSkipPolicy:
    """
    Skip-N policy with a low-power mode.

    Normal mode skips `base_skip` frames between inferences. When an
    iteration takes longer than `slow_ms` the policy enters low-power
    mode and skips `low_power_skip`; it leaves again once an iteration
    takes less than `fast_ms`. The first frame after a reset is always
    inferred.

    Attributes:
        low_power: Whether low-power mode is active
    """

    def __init__(
        self,
        base_skip: int = 1,
        low_power_skip: int = 2,
        slow_ms: float = 33.0,
        fast_ms: float = 20.0,
    ) -> None:
        if fast_ms > slow_ms:
            raise ValueError("fast_ms must not exceed slow_ms")
        self.base_skip = base_skip
        self.low_power_skip = low_power_skip
        self.slow_ms = slow_ms
        self.fast_ms = fast_ms
        self.low_power = False
        self._skipped = 0
        self._first = True

    @property
    def max_skipped(self) -> int:
        return self.low_power_skip if self.low_power else self.base_skip

    def should_infer(self, tick_index: int) -> bool:
        if self._first:
            self._first = False
            self._skipped = 0
            return True
        if self._skipped < self.max_skipped:
            self._skipped += 1
            return False
        self._skipped = 0
        return True

    def observe(self, total_ms: float) -> None:
        if total_ms > self.slow_ms and not self.low_power:
            self.low_power = True
            logger.info(f"Frame skip: entering low-power mode ({total_ms:.1f}ms > {self.slow_ms}ms)")
        elif total_ms < self.fast_ms and self.low_power:
            self.low_power = False
            logger.info(f"Frame skip: leaving low-power mode ({total_ms:.1f}ms < {self.fast_ms}ms)")

    def reset(self) -> None:
        self.low_power = False
        self._skipped = 0
        self._first = True


def build_policy(config: FrameSkipConfig) -> FrameSkipPolicy:
    """Create the policy named by configuration."""
    mode = config.mode.lower()
    if mode == "none":
        return InferEveryFrame()
    if mode == "adaptive":
        return AdaptiveSkipPolicy(
            base_skip=config.base_skip,
            low_power_skip=config.low_power_skip,
            slow_ms=config.slow_ms,
            fast_ms=config.fast_ms,
        )
    raise ValueError(f"Unknown frame skip mode: {config.mode}")
