"""
MeetFX Configuration
====================

This module handles configuration loading for the background-effect pipeline.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    MEETFX_BACKEND          -> pipeline.default_backend
    MEETFX_TARGET_FPS       -> capture.fps
    MEETFX_CAPTURE_SOURCE   -> capture.source
    MEETFX_CAMERA_DEVICE    -> capture.device
    MEETFX_INIT_TIMEOUT     -> pipeline.init_timeout_seconds
    MEETFX_FRAME_SKIP       -> frame_skip.mode
    MEETFX_SIGNALING_URL    -> signaling.url
    MEETFX_SIGNALING_ROOM   -> signaling.room
    MEETFX_LOG_LEVEL        -> logging.level
    PORT                    -> server.port

Example:
    from meetfx.config import settings

    print(settings.pipeline.default_backend)
    print(settings.metrics.window_size)
"""

import os
import logging
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class ServiceConfig(BaseModel):
    """Service identification configuration."""

    name: str = Field(default="meetfx", description="Service name")
    version: str = Field(default="v0.1.0", description="Service version")


class CaptureConfig(BaseModel):
    """Local camera configuration."""

    source: str = Field(
        default="camera",
        description="Frame source: 'camera' or 'synthetic'",
    )
    device: int = Field(default=0, ge=0, description="OpenCV camera index")
    width: int = Field(default=640, ge=16, description="Requested frame width")
    height: int = Field(default=480, ge=16, description="Requested frame height")
    fps: int = Field(
        default=30,
        ge=1,
        le=120,
        description="Requested (native) source frame rate",
    )


class PipelineConfig(BaseModel):
    """Capture loop and backend switching configuration."""

    default_backend: str = Field(
        default="auto",
        description="Backend id to start with, or 'auto'",
    )
    default_variant: Optional[str] = Field(
        default=None,
        description="Variant name for the default backend",
    )
    tick_budget_ms: float = Field(
        default=15.0,
        gt=0,
        description="Max time a tick waits for inference before reusing cache",
    )
    inflight_timeout_ms: float = Field(
        default=1000.0,
        gt=0,
        description="In-flight inference older than this is abandoned",
    )
    init_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Bounded wait for backend initialization",
    )
    drain_timeout_ms: float = Field(
        default=300.0,
        gt=0,
        description="Bounded wait for in-flight inference during a switch",
    )
    error_window: int = Field(
        default=30,
        ge=1,
        description="Number of recent inferences used for the error rate",
    )
    error_threshold: float = Field(
        default=0.5,
        gt=0,
        le=1.0,
        description="Error rate above which one aggregated warning is raised",
    )


class FrameSkipConfig(BaseModel):
    """Frame-skip policy configuration."""

    mode: str = Field(
        default="none",
        description="Frame-skip policy: 'none' or 'adaptive'",
    )
    base_skip: int = Field(default=1, ge=0, description="Frames skipped between inferences")
    low_power_skip: int = Field(default=2, ge=0, description="Frames skipped in low-power mode")
    slow_ms: float = Field(default=33.0, gt=0, description="Enter low-power above this latency")
    fast_ms: float = Field(default=20.0, gt=0, description="Leave low-power below this latency")


class MetricsConfig(BaseModel):
    """Performance metrics configuration."""

    window_size: int = Field(
        default=30,
        ge=1,
        description="Capacity of the rolling latency windows",
    )


class CompositorConfig(BaseModel):
    """Frame compositor configuration."""

    default_blur_radius: int = Field(default=15, ge=1, description="Blur radius in pixels")
    feather_px: int = Field(
        default=0,
        ge=0,
        description="Mask edge feathering radius (0 = hard edge)",
    )
    mirror: bool = Field(
        default=False,
        description="Mirror the composited output horizontally",
    )


class SelectorConfig(BaseModel):
    """Capability detection and benchmark configuration."""

    benchmark_iterations: int = Field(
        default=200_000,
        ge=1000,
        description="Fixed iteration count of the micro-benchmark",
    )
    high_threshold_ms: float = Field(
        default=25.0,
        gt=0,
        description="Benchmark faster than this classifies the host as high",
    )
    medium_threshold_ms: float = Field(
        default=100.0,
        gt=0,
        description="Benchmark faster than this classifies the host as medium",
    )


class MockBackendConfig(BaseModel):
    """Mock segmentation backend configuration."""

    latency_ms: float = Field(default=5.0, ge=0, description="Simulated inference latency")
    failure_rate: float = Field(default=0.0, ge=0, le=1.0, description="Simulated failure probability")
    seed: int = Field(default=7, description="RNG seed for failures")


class BackgroundsConfig(BaseModel):
    """Background image configuration."""

    static_images: Dict[str, str] = Field(
        default_factory=lambda: {
            "beach": "assets/beach.png",
            "office": "assets/office.png",
        },
        description="Named static background images",
    )
    max_upload_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        description="Maximum uploaded background size",
    )


class SignalingConfig(BaseModel):
    """Signaling relay connection configuration."""

    enabled: bool = Field(
        default=True,
        description="Connect to the signaling relay on startup",
    )
    room: Optional[str] = Field(
        default=None,
        description="Meeting code joined once connected",
    )
    url: str = Field(
        default="ws://localhost:8000/ws/signal",
        description="WebSocket URL of the signaling relay",
    )
    reconnect_backoff_ms: int = Field(
        default=500,
        ge=100,
        description="Backoff in milliseconds between reconnect attempts",
    )
    max_reconnect_attempts: int = Field(
        default=0,
        ge=0,
        description="Maximum reconnection attempts (0 = unlimited)",
    )


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for MeetFX.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    frame_skip: FrameSkipConfig = Field(default_factory=FrameSkipConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    compositor: CompositorConfig = Field(default_factory=CompositorConfig)
    selector: SelectorConfig = Field(default_factory=SelectorConfig)
    mock: MockBackendConfig = Field(default_factory=MockBackendConfig)
    backgrounds: BackgroundsConfig = Field(default_factory=BackgroundsConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Pipeline settings
    if env_backend := os.environ.get("MEETFX_BACKEND"):
        config_data.setdefault("pipeline", {})["default_backend"] = env_backend
    if env_init := os.environ.get("MEETFX_INIT_TIMEOUT"):
        config_data.setdefault("pipeline", {})["init_timeout_seconds"] = float(env_init)
    if env_skip := os.environ.get("MEETFX_FRAME_SKIP"):
        config_data.setdefault("frame_skip", {})["mode"] = env_skip

    # Capture settings
    if env_source := os.environ.get("MEETFX_CAPTURE_SOURCE"):
        config_data.setdefault("capture", {})["source"] = env_source
    if env_fps := os.environ.get("MEETFX_TARGET_FPS"):
        config_data.setdefault("capture", {})["fps"] = int(env_fps)
    if env_device := os.environ.get("MEETFX_CAMERA_DEVICE"):
        config_data.setdefault("capture", {})["device"] = int(env_device)

    # Signaling settings
    if env_url := os.environ.get("MEETFX_SIGNALING_URL"):
        config_data.setdefault("signaling", {})["url"] = env_url
    if env_room := os.environ.get("MEETFX_SIGNALING_ROOM"):
        config_data.setdefault("signaling", {})["room"] = env_room

    # Server settings
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("MEETFX_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
