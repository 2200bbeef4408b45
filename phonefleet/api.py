"""
PhoneFleet API Server
=====================

FastAPI surface over ``FleetOrchestrator``: every operator command as a JSON
endpoint plus a websocket that streams notifications.

Run directly:
    python -m phonefleet.cli serve
    uvicorn phonefleet.api:app --host 0.0.0.0 --port 8770

Endpoints (grouped by tag):
    Health     GET  /health
    Jobs       GET/POST /jobs, DELETE /jobs, POST /jobs/cancel-all,
               GET/DELETE /jobs/{id}, GET /jobs/{id}/tasks,
               POST /jobs/{id}/{pause,resume,cancel,retry},
               GET/POST /jobs/{id}/comments
    Workers    GET /workers, POST /workers/{pause-all,resume-all},
               POST /workers/{id}/{pause,resume}
    Devices    POST /devices/{scan,reconnect,command,open-app,close-app}
    Streaming  POST /stream/{start,stop}, POST /stream/{id}/restart,
               GET /stream/frames, GET /stream/frames/{id},
               GET /stream/stats, PUT /stream/settings
    Mirror     POST /mirror/{start,stop,tap,swipe,long-press,key,text},
               GET /mirror/status
    Events     WS   /ws/events[?kinds=job-update,worker-update]

Stream frames are base64-encoded on the websocket and in /stream/frames.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from phonefleet.config import FleetSettings, setup_logging
from phonefleet.errors import (
    ChannelUnavailableError,
    FleetError,
    JobConfigError,
    MirrorNotActiveError,
    MirrorViewError,
)
from phonefleet.mirror import KEYCODE_PATTERN
from phonefleet.notifier import STREAM_FRAME, FleetEvent
from phonefleet.orchestrator import FleetOrchestrator

logger = logging.getLogger("phonefleet.api")

EVENT_QUEUE_SIZE = 500

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    deviceIds: List[str] = Field(default_factory=list)


class CommentsRequest(BaseModel):
    comments: List[str] = Field(default_factory=list)


class DevicesRequest(BaseModel):
    deviceIds: List[str] = Field(default_factory=list)


class CommandRequest(BaseModel):
    deviceIds: List[str]
    command: str


class StreamSettingsRequest(BaseModel):
    width: Optional[int] = None
    quality: Optional[int] = None
    frameDelay: Optional[int] = None


class MirrorStartRequest(BaseModel):
    reference: str
    followers: List[str] = Field(default_factory=list)
    resolutions: Dict[str, str] = Field(default_factory=dict)


class PointRequest(BaseModel):
    x: float
    y: float
    duration: Optional[int] = None


class SwipeRequest(BaseModel):
    x1: float
    y1: float
    x2: float
    y2: float
    duration: int = 300


class KeyRequest(BaseModel):
    keycode: str = Field(..., pattern=KEYCODE_PATTERN, max_length=64)


class TextRequest(BaseModel):
    text: str


# ---------------------------------------------------------------------------
# Pydantic Models -- Responses
# ---------------------------------------------------------------------------


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ActionResponse(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the orchestrator; tests inject their own before startup."""

    def __init__(self) -> None:
        self.orchestrator: Optional[FleetOrchestrator] = None
        self.owns_orchestrator = False


state = AppState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the orchestrator on startup, shut it down on exit."""
    if state.orchestrator is None:
        settings = FleetSettings.from_env()
        setup_logging(settings.log_level)
        state.orchestrator = FleetOrchestrator(settings)
        state.owns_orchestrator = True
    logger.info("Starting PhoneFleet API")
    await state.orchestrator.start()
    yield
    logger.info("Shutting down PhoneFleet API")
    await state.orchestrator.shutdown()
    if state.owns_orchestrator:
        state.orchestrator = None
        state.owns_orchestrator = False


app = FastAPI(
    title="PhoneFleet API",
    description="Job scheduling, streaming and gesture mirroring for an Android device fleet.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=FleetSettings.from_env().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_orchestrator() -> FleetOrchestrator:
    if state.orchestrator is None:
        raise HTTPException(503, "Orchestrator not initialized")
    return state.orchestrator


def _require_job(orch: FleetOrchestrator, job_id: str) -> None:
    if not orch.has_job(job_id):
        raise HTTPException(404, f"Job {job_id} not found")


def _require_worker(orch: FleetOrchestrator, device_id: str) -> None:
    if not orch.has_worker(device_id):
        raise HTTPException(404, f"Worker {device_id} not found")


def _encode_frame(frame: Any) -> Dict[str, Any]:
    return {**frame.to_dict(), "data": base64.b64encode(frame.data).decode("ascii")}


# ===================================================================
# Health
# ===================================================================


@app.get("/health", response_model=StatusResponse, tags=["Health"])
async def health():
    orch = _require_orchestrator()
    return StatusResponse(status="ok", timestamp=_now_iso(), details=orch.health())


# ===================================================================
# Jobs
# ===================================================================


@app.get("/jobs", tags=["Jobs"])
async def list_jobs(status: Optional[str] = Query(None)):
    orch = _require_orchestrator()
    try:
        return {"jobs": orch.list_jobs(status)}
    except ValueError:
        raise HTTPException(400, f"Invalid status: {status}")


@app.post("/jobs", tags=["Jobs"])
async def create_job(req: CreateJobRequest):
    orch = _require_orchestrator()
    try:
        job = orch.create_job(req.type, req.config, req.deviceIds)
    except JobConfigError as exc:
        raise HTTPException(400, str(exc))
    return {"job": job}


@app.delete("/jobs", response_model=ActionResponse, tags=["Jobs"])
async def delete_all_jobs():
    deleted = _require_orchestrator().delete_all_jobs()
    return ActionResponse(success=True, message=f"Deleted {deleted} jobs", data={"deleted": deleted})


@app.post("/jobs/cancel-all", response_model=ActionResponse, tags=["Jobs"])
async def cancel_all_jobs():
    cancelled = await _require_orchestrator().cancel_all_jobs()
    return ActionResponse(success=True, message=f"Cancelled {cancelled} jobs", data={"cancelled": cancelled})


@app.get("/jobs/{job_id}", tags=["Jobs"])
async def get_job(job_id: str):
    job = _require_orchestrator().get_job(job_id)
    if job is None:
        raise HTTPException(404, f"Job {job_id} not found")
    return {"job": job}


@app.get("/jobs/{job_id}/tasks", tags=["Jobs"])
async def get_tasks(job_id: str, status: Optional[str] = Query(None)):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    try:
        return {"tasks": orch.get_tasks(job_id, status)}
    except ValueError:
        raise HTTPException(400, f"Invalid status: {status}")


@app.post("/jobs/{job_id}/pause", response_model=ActionResponse, tags=["Jobs"])
async def pause_job(job_id: str):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    ok = orch.pause_job(job_id)
    return ActionResponse(success=ok, message="paused" if ok else "job is not running")


@app.post("/jobs/{job_id}/resume", response_model=ActionResponse, tags=["Jobs"])
async def resume_job(job_id: str):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    ok = orch.resume_job(job_id)
    return ActionResponse(success=ok, message="resumed" if ok else "job is not paused")


@app.post("/jobs/{job_id}/cancel", response_model=ActionResponse, tags=["Jobs"])
async def cancel_job(job_id: str):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    ok = await orch.cancel_job(job_id)
    return ActionResponse(success=ok, message="cancelled" if ok else "already cancelled")


@app.post("/jobs/{job_id}/retry", response_model=ActionResponse, tags=["Jobs"])
async def retry_job(job_id: str):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    reset = orch.retry_job(job_id)
    return ActionResponse(success=reset > 0, message=f"{reset} tasks reset", data={"reset": reset})


@app.delete("/jobs/{job_id}", response_model=ActionResponse, tags=["Jobs"])
async def delete_job(job_id: str):
    if not _require_orchestrator().delete_job(job_id):
        raise HTTPException(404, f"Job {job_id} not found")
    return ActionResponse(success=True, message="deleted")


@app.get("/jobs/{job_id}/comments", tags=["Jobs"])
async def comment_stats(job_id: str):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    return orch.comment_stats(job_id)


@app.post("/jobs/{job_id}/comments", response_model=ActionResponse, tags=["Jobs"])
async def refill_comments(job_id: str, req: CommentsRequest):
    orch = _require_orchestrator()
    _require_job(orch, job_id)
    added = orch.refill_comments(job_id, req.comments)
    return ActionResponse(success=added > 0, message=f"{added} comments added", data={"added": added})


# ===================================================================
# Workers
# ===================================================================


@app.get("/workers", tags=["Workers"])
async def list_workers():
    return {"workers": _require_orchestrator().list_workers()}


@app.post("/workers/pause-all", response_model=ActionResponse, tags=["Workers"])
async def pause_all_workers():
    count = _require_orchestrator().pause_all_workers()
    return ActionResponse(success=True, message=f"{count} workers paused")


@app.post("/workers/resume-all", response_model=ActionResponse, tags=["Workers"])
async def resume_all_workers():
    count = _require_orchestrator().resume_all_workers()
    return ActionResponse(success=True, message=f"{count} workers resumed")


@app.post("/workers/{device_id}/pause", response_model=ActionResponse, tags=["Workers"])
async def pause_worker(device_id: str):
    orch = _require_orchestrator()
    _require_worker(orch, device_id)
    return ActionResponse(success=orch.pause_worker(device_id), message="paused")


@app.post("/workers/{device_id}/resume", response_model=ActionResponse, tags=["Workers"])
async def resume_worker(device_id: str):
    orch = _require_orchestrator()
    _require_worker(orch, device_id)
    return ActionResponse(success=orch.resume_worker(device_id), message="resumed")


# ===================================================================
# Devices
# ===================================================================


@app.post("/devices/scan", tags=["Devices"])
async def scan_devices():
    try:
        devices = await _require_orchestrator().scan_devices()
    except ChannelUnavailableError as exc:
        raise HTTPException(503, str(exc))
    except FleetError as exc:
        raise HTTPException(502, f"Scan failed: {exc}")
    return {"devices": devices}


@app.post("/devices/reconnect", tags=["Devices"])
async def reconnect_devices():
    return await _require_orchestrator().reconnect_devices()


@app.post("/devices/command", tags=["Devices"])
async def batch_command(req: CommandRequest):
    if not req.deviceIds or not req.command.strip():
        raise HTTPException(400, "deviceIds and command are required")
    return {"results": await _require_orchestrator().batch_command(req.deviceIds, req.command)}


@app.post("/devices/open-app", tags=["Devices"])
async def open_app(req: DevicesRequest):
    return {"results": await _require_orchestrator().open_app(req.deviceIds)}


@app.post("/devices/close-app", tags=["Devices"])
async def close_app(req: DevicesRequest):
    return {"results": await _require_orchestrator().close_app(req.deviceIds)}


# ===================================================================
# Streaming
# ===================================================================


@app.post("/stream/start", tags=["Streaming"])
async def start_streaming(req: DevicesRequest):
    return await _require_orchestrator().start_streaming(req.deviceIds or None)


@app.post("/stream/stop", response_model=ActionResponse, tags=["Streaming"])
async def stop_streaming():
    await _require_orchestrator().stop_streaming()
    return ActionResponse(success=True, message="streaming stopped")


@app.post("/stream/{device_id}/restart", response_model=ActionResponse, tags=["Streaming"])
async def restart_stream(device_id: str):
    ok = await _require_orchestrator().restart_stream(device_id)
    return ActionResponse(success=ok, message="restarted" if ok else "already streaming")


@app.get("/stream/frames", tags=["Streaming"])
async def get_frames():
    frames = _require_orchestrator().get_cached_frames()
    return {"frames": {device_id: _encode_frame(frame) for device_id, frame in frames.items()}}


@app.get("/stream/frames/{device_id}", tags=["Streaming"])
async def get_frame(device_id: str):
    frame = _require_orchestrator().streamer.get_frame(device_id)
    if frame is None:
        raise HTTPException(404, f"No frame cached for {device_id}")
    return Response(content=frame.data, media_type="image/jpeg")


@app.get("/stream/stats", tags=["Streaming"])
async def stream_stats():
    return _require_orchestrator().stream_stats()


@app.put("/stream/settings", tags=["Streaming"])
async def update_stream_settings(req: StreamSettingsRequest):
    return _require_orchestrator().update_stream_settings(
        width=req.width, quality=req.quality, frame_delay_ms=req.frameDelay,
    )


# ===================================================================
# Mirror
# ===================================================================


def _mirror():
    return _require_orchestrator().mirror


async def _gesture(call) -> Dict[str, Any]:
    try:
        return await call
    except MirrorNotActiveError as exc:
        raise HTTPException(409, str(exc))


@app.post("/mirror/start", tags=["Mirror"])
async def mirror_start(req: MirrorStartRequest):
    try:
        return await _mirror().start(req.reference, req.followers, req.resolutions)
    except (MirrorViewError, ChannelUnavailableError) as exc:
        raise HTTPException(502, str(exc))


@app.post("/mirror/stop", response_model=ActionResponse, tags=["Mirror"])
async def mirror_stop():
    stopped = await _mirror().stop()
    return ActionResponse(success=stopped, message="stopped" if stopped else "not active")


@app.post("/mirror/tap", tags=["Mirror"])
async def mirror_tap(req: PointRequest):
    return await _gesture(_mirror().tap(req.x, req.y))


@app.post("/mirror/swipe", tags=["Mirror"])
async def mirror_swipe(req: SwipeRequest):
    return await _gesture(_mirror().swipe(req.x1, req.y1, req.x2, req.y2, req.duration))


@app.post("/mirror/long-press", tags=["Mirror"])
async def mirror_long_press(req: PointRequest):
    mirror = _mirror()
    if req.duration:
        return await _gesture(mirror.long_press(req.x, req.y, req.duration))
    return await _gesture(mirror.long_press(req.x, req.y))


@app.post("/mirror/key", tags=["Mirror"])
async def mirror_key(req: KeyRequest):
    return await _gesture(_mirror().key(req.keycode))


@app.post("/mirror/text", tags=["Mirror"])
async def mirror_text(req: TextRequest):
    return await _gesture(_mirror().text(req.text))


@app.get("/mirror/status", tags=["Mirror"])
async def mirror_status():
    return _mirror().status()


# ===================================================================
# Events
# ===================================================================


def _event_json(event: FleetEvent) -> Dict[str, Any]:
    data = event.to_dict()
    if event.kind == STREAM_FRAME and isinstance(data.get("data"), (bytes, bytearray)):
        data["data"] = base64.b64encode(data["data"]).decode("ascii")
    return data


@app.websocket("/ws/events")
async def events(websocket: WebSocket, kinds: Optional[str] = None):
    orch = state.orchestrator
    if orch is None:
        await websocket.close(code=1013)
        return
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)

    def _enqueue(event: FleetEvent) -> None:
        if queue.full():
            return
        queue.put_nowait(event)

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(_event_json(event))

    wanted = [k.strip() for k in kinds.split(",") if k.strip()] if kinds else None
    unsubscribe = orch.notifier.subscribe(_enqueue, kinds=wanted)
    sender = asyncio.create_task(_pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        logger.debug("Event websocket disconnected")
        unsubscribe()
        sender.cancel()
