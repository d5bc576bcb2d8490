"""
Unlock scheduler API: FastAPI shell.
REST + WebSocket surface over the per-mode process controllers.
Session isolation: every browser tab gets its own controllers and event stream.
"""

import asyncio
import json
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from models import (
    ConfigRequest, ConfigResponse, CalibrationResult, RunMode, StatusResponse, UnlockSettings,
)
from engine import EventSink, ProcessController
from timing import PastDeadlineError, TimeUnavailable, format_ms

logger = logging.getLogger("blunlock")

settings = UnlockSettings.from_env()


def make_controller(mode: RunMode, settings: UnlockSettings, sink: EventSink) -> ProcessController:
    return ProcessController(mode, settings, sink)


# ── Session-based state ──

@dataclass
class SessionState:
    credential: str = ""
    settings: UnlockSettings = field(default_factory=lambda: settings.model_copy())
    sink: EventSink = field(default_factory=EventSink)
    controllers: dict = field(default_factory=dict)  # RunMode -> ProcessController
    poll_task: Optional[asyncio.Task] = None
    ws_clients: list = field(default_factory=list)  # list[WebSocket]
    last_active: float = 0.0

    def controller(self, mode: RunMode) -> ProcessController:
        if mode not in self.controllers:
            self.controllers[mode] = make_controller(mode, self.settings, self.sink)
        return self.controllers[mode]

    @property
    def any_running(self) -> bool:
        return any(c.is_running for c in self.controllers.values())


sessions: dict[str, SessionState] = {}
MAX_SESSIONS = 100
SESSION_TIMEOUT = 7200  # 2 hours

# Session id format (UUIDv4)
UUID_RE = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$',
    re.IGNORECASE,
)

# Rate limiter (per IP)
limiter = Limiter(key_func=get_remote_address)


def _cleanup_sessions():
    """Drop sessions that timed out and have nothing running."""
    now = time.time()
    expired = [
        sid for sid, s in sessions.items()
        if now - s.last_active > SESSION_TIMEOUT and not s.any_running
    ]
    for sid in expired:
        s = sessions[sid]
        for c in s.controllers.values():
            c.shutdown()
        if s.poll_task and not s.poll_task.done():
            s.poll_task.cancel()
        del sessions[sid]


def get_session(session_id: str) -> SessionState:
    """Fetch or create the state for a session id."""
    if session_id not in sessions:
        if len(sessions) >= MAX_SESSIONS:
            _cleanup_sessions()
            if len(sessions) >= MAX_SESSIONS:
                raise HTTPException(503, "Maximum number of sessions reached")
        sessions[session_id] = SessionState()
    s = sessions[session_id]
    s.last_active = time.time()
    return s


def get_session_id(request: Request) -> str:
    """Session id from the X-Session-ID header (or query), UUIDv4 only."""
    sid = request.headers.get("X-Session-ID", "")
    if not sid:
        sid = request.query_params.get("session_id", "")
    if not sid:
        raise HTTPException(400, "X-Session-ID header required")
    if not UUID_RE.match(sid):
        raise HTTPException(400, "Invalid session id format")
    return sid


# ── App ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Shutdown: cancel everything still running
    for s in sessions.values():
        for c in s.controllers.values():
            c.shutdown()
        if s.poll_task and not s.poll_task.done():
            s.poll_task.cancel()

_is_production = os.getenv("ENV", "").lower() == "production"

app = FastAPI(
    title="BL Unlock Scheduler API",
    description="Time-synchronized, latency-compensated unlock request scheduler",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if _is_production else "/docs",
    redoc_url=None if _is_production else "/redoc",
)

app.state.limiter = limiter


# ── Rate limit error handler ──

@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests. Please wait."},
    )


# ── Security headers middleware ──

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        *[o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()],
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Session-ID"],
)
app.add_middleware(SecurityHeadersMiddleware)


# ── WebSocket broadcast (per session) ──

async def broadcast(session_id: str, event: dict):
    session = sessions.get(session_id)
    if not session:
        return
    msg = json.dumps(event, ensure_ascii=False)
    disconnected = []
    for ws in session.ws_clients:
        try:
            await ws.send_text(msg)
        except Exception:
            disconnected.append(ws)
    for ws in disconnected:
        session.ws_clients.remove(ws)


async def poll_events(session_id: str):
    """Drain the session's event sink onto its WebSockets while anything runs."""
    while True:
        session = sessions.get(session_id)
        if not session:
            break

        for event in session.sink.get_events():
            await broadcast(session_id, event)

        # Exit: nothing running and queue drained
        if not session.any_running and session.sink.empty():
            break

        await asyncio.sleep(0.1)


def _poll_task_done(task: asyncio.Task):
    """Log a crashed poll task."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("event poller failed", exc_info=exc)


def _ensure_poller(session_id: str, session: SessionState):
    if session.poll_task and not session.poll_task.done():
        return
    session.poll_task = asyncio.create_task(poll_events(session_id))
    session.poll_task.add_done_callback(_poll_task_done)


# ── REST Endpoints ──

@app.get("/api/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.get("/api/clock")
async def clock():
    now = datetime.now().astimezone()
    return {
        "time": now.strftime("%H:%M:%S.%f")[:-3],
        "epoch_ms": int(now.timestamp() * 1000),
    }


@app.post("/api/config", response_model=ConfigResponse)
async def set_config(req: ConfigRequest, request: Request):
    session_id = get_session_id(request)
    session = get_session(session_id)
    if session.any_running:
        raise HTTPException(409, "Cannot change configuration while a mode is running")

    # Credential is only replaced when sent (partial update)
    if req.credential:
        session.credential = req.credential
    session.settings = session.settings.model_copy(update={
        "target_time": req.target_time,
        "target_zone": req.target_zone,
        "roll": req.roll,
        "scheduled_policy": req.scheduled_policy,
        "manual_policy": req.manual_policy,
        "retry_delay": req.retry_delay,
        "max_attempts": req.max_attempts,
    })
    for c in session.controllers.values():
        c.settings = session.settings
    return _config_response(session)


@app.get("/api/config", response_model=ConfigResponse)
async def get_config(request: Request):
    session_id = get_session_id(request)
    session = get_session(session_id)
    return _config_response(session)


def _config_response(session: SessionState) -> ConfigResponse:
    s = session.settings
    return ConfigResponse(
        target_time=s.target_time,
        target_zone=s.target_zone,
        roll=s.roll,
        scheduled_policy=s.scheduled_policy,
        manual_policy=s.manual_policy,
        retry_delay=s.retry_delay,
        max_attempts=s.max_attempts,
        credential_set=bool(session.credential),
    )


@app.post("/api/calibrate", response_model=CalibrationResult)
@limiter.limit("6/minute")
async def calibrate(request: Request):
    """Time sync + latency probe + schedule preview. Nothing is waited for or sent."""
    session_id = get_session_id(request)
    session = get_session(session_id)

    controller = session.controller(RunMode.SCHEDULED)
    try:
        auth, latency, window = await asyncio.to_thread(controller.plan)
    except TimeUnavailable:
        raise HTTPException(503, "No time server reachable")
    except PastDeadlineError as e:
        raise HTTPException(409, f"Send time is in the past: {e}")
    finally:
        _ensure_poller(session_id, session)

    zone = session.settings.target_zone
    return CalibrationResult(
        time_source=auth.source,
        authoritative_ms=auth.epoch_ms,
        latency_ms=latency.ms,
        latency_samples=latency.samples,
        latency_fallback=latency.fallback,
        arrival_ms=window.arrival_ms,
        send_ms=window.send_ms,
        arrival=format_ms(window.arrival_ms, zone),
        send=format_ms(window.send_ms, zone),
        wait_seconds=(window.send_ms - auth.epoch_ms) / 1000,
    )


@app.post("/api/modes/{mode}/start")
@limiter.limit("20/minute")
async def start_mode(mode: RunMode, request: Request):
    session_id = get_session_id(request)
    session = get_session(session_id)

    if not session.credential.strip():
        raise HTTPException(400, "Credential not set")

    controller = session.controller(mode)
    if not controller.start(session.credential):
        raise HTTPException(409, f"{mode.value} mode is already running")

    _ensure_poller(session_id, session)
    return {"status": "started", "mode": mode.value}


@app.post("/api/modes/{mode}/stop")
async def stop_mode(mode: RunMode, request: Request):
    session_id = get_session_id(request)
    session = get_session(session_id)

    controller = session.controllers.get(mode)
    if not controller or not controller.stop():
        raise HTTPException(404, f"{mode.value} mode is not running")
    return {"status": "stopping", "mode": mode.value}


@app.get("/api/status", response_model=StatusResponse)
async def status(request: Request):
    session_id = get_session_id(request)
    session = get_session(session_id)
    return StatusResponse(modes=[session.controller(mode).status() for mode in RunMode])


# ── WebSocket ──

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket, session_id: str = Query(...)):
    if not UUID_RE.match(session_id):
        await ws.close(code=1008)
        return
    await ws.accept()
    session = get_session(session_id)
    session.ws_clients.append(ws)
    try:
        while True:
            data = await ws.receive_text()
            if data == "ping":
                await ws.send_text(json.dumps({"type": "pong"}))
    except WebSocketDisconnect:
        pass
    finally:
        session = sessions.get(session_id)
        if session and ws in session.ws_clients:
            session.ws_clients.remove(ws)


# ── Run ──

def run():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")), log_level="info")


if __name__ == "__main__":
    run()
