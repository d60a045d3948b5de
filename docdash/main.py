# docdash/main.py
import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from docdash.auth import SessionContext, get_session_context, websocket_session_context
from docdash.backend import Backend, PlatformBackend
from docdash.config import settings
from docdash.dashboard import DashboardView
from docdash.db import close_engine, init_models
from docdash.errors import DocdashError, FileTooLarge
from docdash.profiles import get_or_create_profile, update_profile
from docdash.schemas import DashboardSnapshot, ProfileRecord, ProfileUpdate, SignedUrlResponse, UploadRecord, UserStats
from docdash.stats import recompute_user_stats
from docdash.uploads import ScheduleProcessing

logger = logging.getLogger("uvicorn.error")

app = FastAPI(title="Document Dashboard", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Platform client, created on first use
_backend: Optional[PlatformBackend] = None


def get_backend() -> Backend:
    global _backend
    if _backend is None:
        _backend = PlatformBackend.from_settings()
    return _backend


def get_scheduler() -> ScheduleProcessing:
    from docdash.tasks import schedule_processing
    return schedule_processing


async def get_loaded_view(
    context: SessionContext = Depends(get_session_context),
    backend: Backend = Depends(get_backend),
    scheduler: ScheduleProcessing = Depends(get_scheduler),
) -> DashboardView:
    view = DashboardView(context, backend, schedule_processing=scheduler)
    await view.load()
    return view


@app.on_event("startup")
async def startup():
    if settings.auto_create_tables:
        await init_models()


@app.on_event("shutdown")
async def shutdown():
    global _backend
    if _backend is not None:
        try:
            await _backend.aclose()
        except Exception:
            logger.exception("Failed to close platform client on shutdown")
        _backend = None
    await close_engine()


@app.exception_handler(DocdashError)
def docdash_error_handler(request: Request, exc: DocdashError):
    return JSONResponse({"detail": exc.message, "retryable": exc.retryable}, status_code=exc.status_code)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.get("/healthz")
async def healthz(backend: Backend = Depends(get_backend)):
    ok = await backend.ping()
    status = 200 if all(ok.values()) else 503
    return JSONResponse(ok, status_code=status)


@app.get("/metrics")
def metrics():
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/dashboard", response_model=DashboardSnapshot)
async def dashboard(view: DashboardView = Depends(get_loaded_view)):
    return view.snapshot()


async def _read_limited(file: UploadFile, max_size: int) -> bytes:
    chunks = []
    written = 0
    while True:
        chunk = await file.read(1024 * 64)
        if not chunk:
            break
        written += len(chunk)
        if written > max_size:
            raise FileTooLarge(f"{file.filename} exceeds {max_size} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


@app.post("/uploads", status_code=202, response_model=UploadRecord)
async def upload(file: UploadFile = File(...), view: DashboardView = Depends(get_loaded_view)):
    filename = Path(file.filename or "uploaded").name
    view.uploads.validate_type(filename, file.content_type)
    data = await _read_limited(file, view.uploads.config.max_upload_size)
    return await view.uploads.upload(filename, file.content_type, data)


@app.delete("/uploads/{upload_id}")
async def delete_upload(upload_id: str, view: DashboardView = Depends(get_loaded_view)):
    record = await view.deletes.delete(upload_id)
    return {"deleted": record.id, "stats": view.store.stats.model_dump(mode="json")}


@app.get("/uploads/{upload_id}/url", response_model=SignedUrlResponse)
async def upload_url(upload_id: str, view: DashboardView = Depends(get_loaded_view)):
    url = await view.uploads.signed_url(upload_id)
    return SignedUrlResponse(url=url, expires_in=settings.signed_url_ttl)


@app.post("/stats/recompute", response_model=UserStats)
async def recompute_stats(
    context: SessionContext = Depends(get_session_context),
    backend: Backend = Depends(get_backend),
):
    return await recompute_user_stats(backend, context.user_id)


@app.get("/profile", response_model=ProfileRecord)
async def profile(
    context: SessionContext = Depends(get_session_context),
    backend: Backend = Depends(get_backend),
):
    return await get_or_create_profile(backend, context)


@app.patch("/profile", response_model=ProfileRecord)
async def patch_profile(
    changes: ProfileUpdate,
    context: SessionContext = Depends(get_session_context),
    backend: Backend = Depends(get_backend),
):
    return await update_profile(backend, context, changes)


# ---------- live dashboard ----------
async def _client_actions(websocket: WebSocket, view: DashboardView, outbox: asyncio.Queue) -> None:
    """Reads client commands until the socket closes; replies go through the outbox."""
    while True:
        try:
            message = await websocket.receive_json()
        except WebSocketDisconnect:
            return
        except ValueError:
            await outbox.put({"type": "error", "detail": "messages must be JSON"})
            continue
        action = message.get("action") if isinstance(message, dict) else None
        upload_id = str(message.get("upload_id") or "") if isinstance(message, dict) else ""
        try:
            if action == "delete":
                await view.deletes.delete(upload_id)
            elif action == "open":
                url = await view.uploads.signed_url(upload_id)
                await outbox.put({"type": "signed_url", "upload_id": upload_id, "url": url,
                                  "expires_in": settings.signed_url_ttl})
            else:
                await outbox.put({"type": "error", "detail": f"unknown action {action!r}"})
        except DocdashError as e:
            await outbox.put({"type": "error", "detail": e.message, "retryable": e.retryable})


@app.websocket("/ws/dashboard")
async def dashboard_ws(
    websocket: WebSocket,
    backend: Backend = Depends(get_backend),
    scheduler: ScheduleProcessing = Depends(get_scheduler),
):
    try:
        context = websocket_session_context(websocket)
    except HTTPException:
        await websocket.close(code=1008)
        return
    await websocket.accept()

    view = DashboardView(context, backend, schedule_processing=scheduler)
    outbox: asyncio.Queue = asyncio.Queue()
    view.store.add_listener(lambda _store: outbox.put_nowait(None))
    view.on_notification(lambda _n: outbox.put_nowait(None))
    try:
        await view.mount()
    except DocdashError as e:
        logger.exception("Could not mount dashboard for %s", context.user_id)
        await websocket.send_json({"type": "error", "detail": e.message, "retryable": e.retryable})
        await websocket.close(code=1011)
        await view.unmount()
        return

    # changes made by the initial load are part of the first snapshot
    while not outbox.empty():
        outbox.get_nowait()
    actions = asyncio.create_task(_client_actions(websocket, view, outbox))
    try:
        await websocket.send_json({"type": "snapshot", "data": view.snapshot().model_dump(mode="json")})
        while True:
            getter = asyncio.create_task(outbox.get())
            done, _ = await asyncio.wait({getter, actions}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            items = [getter.result()]
            while not outbox.empty():
                items.append(outbox.get_nowait())
            # None marks "state changed"; a burst of changes becomes one snapshot
            for item in items:
                if item is not None:
                    await websocket.send_json(item)
            if any(item is None for item in items):
                await websocket.send_json({"type": "snapshot", "data": view.snapshot().model_dump(mode="json")})
    except WebSocketDisconnect:
        pass
    finally:
        actions.cancel()
        await view.unmount()
        logger.info("Dashboard view closed for %s", context.user_id)
