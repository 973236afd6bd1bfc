"""
Metrics Module
==============

Rolling performance statistics and the model comparison table.
"""

from meetfx.metrics.aggregator import MetricsAggregator, format_duration


__all__ = [
    "MetricsAggregator",
    "format_duration",
]
