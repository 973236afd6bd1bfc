"""
MeetFX Main Application
=======================

FastAPI entry point for the virtual-background pipeline.

One process serves one local participant: it owns the camera, runs the
capture loop and background switcher, and relays signaling between the
peers of a meeting room. With `signaling.enabled` the participant's own
signaling client connects to the relay at `signaling.url` and joins
`signaling.room`.

Endpoints:
    GET  /                    - Service information
    GET  /health              - Liveness check
    GET  /capabilities        - Device capabilities and recommendation
    GET  /backends            - Backend catalog with availability
    POST /effect/enable       - Turn the background effect on
    POST /effect/disable      - Turn the background effect off
    POST /background          - Choose none / blur / static image
    POST /background/upload   - Upload a custom background image
    POST /backend             - Choose (or hot-swap) the backend
    POST /backend/reset       - Clear the backend preference
    GET  /metrics             - Current performance metrics
    GET  /comparison          - Per-backend comparison table
    GET  /alerts              - Recent user-visible alerts
    WS   /ws/signal           - Meeting-room signaling relay
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from meetfx.backends.registry import AUTO, BackendRegistry
from meetfx.capture.source import CameraSource, SyntheticSource
from meetfx.config import settings
from meetfx.errors import BackgroundEffectError, ImageDecodeError, MediaAcquisitionError
from meetfx.models.background import describe_background
from meetfx.service import BackgroundEffectService
from meetfx.transport.relay import RoomRelay
from meetfx.transport.signaling import WebSocketSignalingClient


logger = logging.getLogger(__name__)


# =============================================================================
# Global State
# =============================================================================

_source: Optional[Union[CameraSource, SyntheticSource]] = None
_source_task: Optional[asyncio.Task] = None
_camera_error: Optional[str] = None

_registry: Optional[BackendRegistry] = None
_service: Optional[BackgroundEffectService] = None
_relay: RoomRelay = RoomRelay()

_signaling: Optional[WebSocketSignalingClient] = None
_signaling_task: Optional[asyncio.Task] = None

_startup_time: float = 0.0


# =============================================================================
# Getters
# =============================================================================

def get_service() -> Optional[BackgroundEffectService]:
    return _service

def get_registry() -> Optional[BackendRegistry]:
    return _registry

def get_relay() -> RoomRelay:
    return _relay

def get_signaling_client() -> Optional[WebSocketSignalingClient]:
    return _signaling


# =============================================================================
# Request Models
# =============================================================================

class EnableRequest(BaseModel):
    """Body of POST /effect/enable."""

    backend: str = Field(default=AUTO, description="Backend id or 'auto'")
    variant: Optional[str] = Field(default=None, description="Variant name")


class BackendRequest(BaseModel):
    """Body of POST /backend."""

    backend: str = Field(default=AUTO, description="Backend id or 'auto'")
    variant: Optional[str] = Field(default=None, description="Variant name")


# =============================================================================
# Source Factory
# =============================================================================

def create_source() -> Union[CameraSource, SyntheticSource]:
    """
    Create the frame source based on config.

    Raises:
        MediaAcquisitionError: If the camera cannot be opened
        ValueError: On an unknown source kind
    """
    capture = settings.capture

    if capture.source == "synthetic":
        logger.info("Using SyntheticSource")
        return SyntheticSource(width=capture.width, height=capture.height, fps=capture.fps)

    elif capture.source == "camera":
        camera = CameraSource(
            device=capture.device,
            width=capture.width,
            height=capture.height,
            fps=capture.fps,
        )
        camera.open()
        return camera

    else:
        raise ValueError(f"Unknown capture source: {capture.source}")


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager with graceful shutdown."""
    global _source, _source_task, _camera_error
    global _registry, _service, _startup_time
    global _signaling, _signaling_task

    _startup_time = time.time()
    logger.info(f"Starting {settings.service.name} {settings.service.version}")

    _registry = BackendRegistry.from_settings(settings)
    capabilities = await _registry.detect_capabilities()
    logger.info(
        f"Device: {capabilities.performance_class.value} class, "
        f"{capabilities.cpu_count} cores, benchmark {capabilities.benchmark_ms}ms"
    )

    try:
        _source = create_source()
    except MediaAcquisitionError as e:
        # Media failures are reported on their own; the effect stays unavailable
        _camera_error = str(e)
        logger.error(f"Camera unavailable: {e}")

    if _source is not None:
        _source_task = asyncio.create_task(_source.run(), name="frame_source")
        _service = BackgroundEffectService.from_settings(settings, _source, registry=_registry)
        await _service.start()

    if settings.signaling.enabled:
        _signaling = WebSocketSignalingClient.from_settings(settings.signaling)
        _signaling_task = asyncio.create_task(_signaling.run(), name="signaling_client")

    logger.info("All components started")

    yield

    # Shutdown
    logger.info("Shutting down gracefully...")

    if _signaling is not None:
        await _signaling.leave_room()
        await _signaling.stop()

    if _signaling_task is not None:
        try:
            await asyncio.wait_for(_signaling_task, timeout=5.0)
        except asyncio.TimeoutError:
            _signaling_task.cancel()
            try:
                await _signaling_task
            except asyncio.CancelledError:
                pass

    if _service is not None:
        await _service.close()

    if _source is not None:
        await _source.stop()

    if _source_task is not None:
        try:
            await asyncio.wait_for(_source_task, timeout=5.0)
        except asyncio.TimeoutError:
            _source_task.cancel()
            try:
                await _source_task
            except asyncio.CancelledError:
                pass

    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="MeetFX",
    description="Real-time virtual backgrounds for video calls",
    version=settings.service.version,
    lifespan=lifespan,
)


def _unavailable() -> JSONResponse:
    return JSONResponse(
        {"error": "camera unavailable", "detail": _camera_error},
        status_code=503,
    )


# =============================================================================
# HTTP Endpoints
# =============================================================================

@app.get("/")
async def root() -> JSONResponse:
    """Service information endpoint."""
    service = get_service()
    return JSONResponse({
        "service": "MeetFX",
        "version": settings.service.version,
        "name": settings.service.name,
        "status": "running",
        "capture_source": settings.capture.source,
        "effect_enabled": service.is_enabled if service else False,
    })


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness check - is the process alive?

    Always returns 200 if the service is running, camera or not.
    """
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "camera_available": _service is not None,
        "camera_error": _camera_error,
        "signaling_connected": _signaling.connected if _signaling else False,
    })


@app.get("/capabilities")
async def capabilities() -> JSONResponse:
    registry = get_registry()
    if registry is None:
        return JSONResponse({"error": "Not started"}, status_code=503)
    return JSONResponse(registry.device_report().model_dump(mode="json"))


@app.get("/backends")
async def backends() -> JSONResponse:
    registry = get_registry()
    if registry is None:
        return JSONResponse({"error": "Not started"}, status_code=503)
    return JSONResponse({
        "backends": [report.model_dump(mode="json") for report in registry.list_backends()],
        "preference": registry.user_preference,
        "recommended": registry.recommend()[0],
    })


@app.post("/effect/enable")
async def enable_effect(request: EnableRequest) -> JSONResponse:
    """Turn the background effect on with the chosen backend."""
    service = get_service()
    if service is None:
        return _unavailable()

    outcome = await service.enable_background_effect(request.backend, request.variant)
    return JSONResponse(outcome.to_dict(), status_code=200 if outcome.success else 409)


@app.post("/effect/disable")
async def disable_effect() -> JSONResponse:
    """Turn the background effect off; the raw camera is sent again."""
    service = get_service()
    if service is None:
        return _unavailable()

    await service.disable_background_effect()
    return JSONResponse({"success": True, "enabled": service.is_enabled})


@app.post("/background")
async def set_background(request: Request) -> JSONResponse:
    """
    Choose the background.

    Body: {"kind": "none"} | {"kind": "blur", "radius": 15}
          | {"kind": "static_image", "image": "beach"}
    """
    service = get_service()
    if service is None:
        return _unavailable()

    try:
        payload = await request.json()
    except json.JSONDecodeError:
        return JSONResponse({"error": "Body must be JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Body must be a JSON object"}, status_code=400)

    try:
        spec = service.background_from_dict(payload)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    service.set_background_spec(spec)
    return JSONResponse({"success": True, "background": describe_background(spec)})


@app.post("/background/upload")
async def upload_background(request: Request) -> JSONResponse:
    """Upload a custom background (raw image body with its Content-Type)."""
    service = get_service()
    if service is None:
        return _unavailable()

    content_type = request.headers.get("content-type", "")
    data = await request.body()
    try:
        handle = service.upload_background(data, content_type)
    except ImageDecodeError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    return JSONResponse(
        {"success": True, "image": handle.name, "state": handle.state.value},
        status_code=202,
    )


@app.post("/backend")
async def select_backend(request: BackendRequest) -> JSONResponse:
    """
    Choose the backend.

    While the effect runs the backend is hot-swapped; a rejected or
    failed switch leaves the current backend running.
    """
    service = get_service()
    if service is None:
        registry = get_registry()
        if registry is None:
            return JSONResponse({"error": "Not started"}, status_code=503)
        try:
            selection = registry.set_user_preference(request.backend, request.variant)
        except BackgroundEffectError as e:
            return JSONResponse({"success": False, "reason": str(e)}, status_code=409)
        return JSONResponse({
            "success": True,
            "backend_id": selection.backend_id,
            "variant": selection.variant_name,
        })

    outcome = await service.select_backend(request.backend, request.variant)
    return JSONResponse(outcome.to_dict(), status_code=200 if outcome.success else 409)


@app.post("/backend/reset")
async def reset_backend() -> JSONResponse:
    registry = get_registry()
    if registry is None:
        return JSONResponse({"error": "Not started"}, status_code=503)
    registry.reset_user_preference()
    return JSONResponse({"success": True, "recommended": registry.recommend()[0]})


@app.get("/metrics")
async def metrics() -> JSONResponse:
    """Detailed metrics for observability."""
    service = get_service()
    if service is None:
        return _unavailable()

    loop = service.loop
    session = loop.session
    return JSONResponse({
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "state": loop.state.value,
        "backend": str(session.selection) if session else None,
        "background": describe_background(loop.spec),
        "frames_published": loop.frames_published,
        "frames_dropped": loop.frames_dropped,
        "ticks_skipped": loop.ticks_skipped,
        "session_errors": session.errors if session else 0,
        "relay": _relay.metrics.to_dict(),
        "signaling": _signaling.metrics.to_dict() if _signaling else None,
        **service.get_current_metrics().model_dump(mode="json"),
    })


@app.get("/comparison")
async def comparison() -> JSONResponse:
    service = get_service()
    if service is None:
        return _unavailable()
    return JSONResponse({
        backend_id: entry.model_dump(mode="json")
        for backend_id, entry in service.get_comparison_table().items()
    })


@app.get("/alerts")
async def alerts() -> JSONResponse:
    service = get_service()
    if service is None:
        return JSONResponse({"alerts": []})
    return JSONResponse({"alerts": [alert.model_dump(mode="json") for alert in service.alerts]})


# =============================================================================
# WebSocket Endpoints
# =============================================================================

@app.websocket("/ws/signal")
async def signal_relay(websocket: WebSocket) -> None:
    """Meeting-room signaling relay."""
    await websocket.accept()
    relay = get_relay()
    peer_id = relay.register(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "invalid JSON"}})
                continue
            if not isinstance(message, dict):
                await websocket.send_json({"event": "error", "data": {"message": "expected an object"}})
                continue
            await relay.handle(peer_id, message)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WebSocket error: {e}")
    finally:
        await relay.unregister(peer_id)


# =============================================================================
# Main Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", settings.server.port))

    uvicorn.run(
        "meetfx.main:app",
        host=settings.server.host,
        port=port,
        reload=False,
    )
