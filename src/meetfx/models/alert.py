"""
Alert Model
===========

User-visible notices raised by the pipeline.

Alerts are informational. The call keeps running whatever they say.
"""

import time
from enum import Enum

from pydantic import BaseModel, Field


class AlertLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Alert(BaseModel):
    """A single notice for the alert presentation layer."""

    level: AlertLevel = Field(default=AlertLevel.WARNING, description="Severity")
    message: str = Field(..., description="Human-readable text")
    timestamp: float = Field(default_factory=time.time, description="UNIX time raised")
