"""
MeetFX Data Models
==================

Typed models shared across the pipeline.

Internal per-frame types are frozen dataclasses; anything that crosses
the HTTP surface is a pydantic model.
"""

from meetfx.models.alert import Alert, AlertLevel
from meetfx.models.background import (
    BackgroundKind,
    BackgroundSpec,
    Blur,
    ImageHandle,
    ImageState,
    NoBackground,
    StaticImage,
    UploadedImage,
    describe_background,
    parse_background_spec,
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
from meetfx.models.metrics import ComparisonEntry, MetricSample, MetricsSnapshot
from meetfx.models.result import Mask, SegmentationResult


__all__ = [
    "Alert",
    "AlertLevel",
    "BackgroundKind",
    "BackgroundSpec",
    "Blur",
    "ImageHandle",
    "ImageState",
    "NoBackground",
    "StaticImage",
    "UploadedImage",
    "describe_background",
    "parse_background_spec",
    "BackendDescriptor",
    "BackendStatus",
    "ComputeKind",
    "Selection",
    "Variant",
    "BackendReport",
    "DeviceCapabilities",
    "PerformanceClass",
    "VariantReport",
    "ComparisonEntry",
    "MetricSample",
    "MetricsSnapshot",
    "Mask",
    "SegmentationResult",
]
