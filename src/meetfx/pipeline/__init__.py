"""
Pipeline Module
===============

The frame pipeline and its lifecycle:
    - CaptureLoop: per-frame loop (infer / reuse / composite / publish)
    - FrameSkipPolicy: infer-or-reuse heuristics
    - ActiveBackendSession: one running backend and its cache
    - BackgroundSwitchCoordinator: enable, hot-swap and disable
"""

from meetfx.pipeline.coordinator import BackgroundSwitchCoordinator, SelectionOutcome
from meetfx.pipeline.loop import (
    CaptureLoop,
    FrameTicker,
    LoopState,
    TickKind,
    TickOutcome,
)
from meetfx.pipeline.policy import (
    AdaptiveSkipPolicy,
    FrameSkipPolicy,
    InferEveryFrame,
    build_policy,
)
from meetfx.pipeline.session import ActiveBackendSession


__all__ = [
    "BackgroundSwitchCoordinator",
    "SelectionOutcome",
    "CaptureLoop",
    "FrameTicker",
    "LoopState",
    "TickKind",
    "TickOutcome",
    "AdaptiveSkipPolicy",
    "FrameSkipPolicy",
    "InferEveryFrame",
    "build_policy",
    "ActiveBackendSession",
]
