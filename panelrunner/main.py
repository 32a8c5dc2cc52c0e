# panelrunner/main.py
import sys, asyncio, logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles

from .automation import ActionRunner
from .broadcast import ScreenshotBroadcaster
from .browser import BrowserSessions
from .config import CONFIG
from .errors import CredentialNotFoundError, JobNotCancellableError, JobNotFoundError, ValidationError
from .jobqueue import JobQueue
from .models import JobStatus, LogUpdate, QueueStats, SaveSessionRequest, ScreenshotFrame, SessionCheck
from .registry import BrowserRegistry
from .store import SessionStore
from .utils import encode_frame
from .worker import Worker, WorkerPool

# Ensure Windows compatibility
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_ids(raw: Optional[str]) -> Optional[List[int]]:
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid id list: {raw}")


def _event_payload(event) -> Dict[str, Any]:
    if isinstance(event, ScreenshotFrame):
        return {
            "type": "screenshot",
            "image": encode_frame(event.image),
            "game_id": event.game_id,
            "game_name": event.game_name,
            "action": event.action,
            "team_id": event.team_id,
            "session_id": event.session_id,
            "timestamp": event.timestamp.isoformat(),
        }
    if isinstance(event, LogUpdate):
        return {"type": "log_update", **event.model_dump(mode="json")}
    raise TypeError(f"unsupported event {type(event).__name__}")


# -- jobs ----------------------------------------------------------------------

@router.post("/jobs")
async def create_job(request: Request, payload: Union[List[Dict[str, Any]], Dict[str, Any]] = Body(...)):
    queue: JobQueue = request.app.state.queue
    try:
        if isinstance(payload, list):
            job_ids = queue.add_jobs(payload)
            return {"job_ids": job_ids, "status": "waiting"}
        job_id = queue.add_job(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"job_id": job_id, "status": "waiting"}


@router.get("/jobs", response_model=List[JobStatus])
async def list_jobs(request: Request, team_id: int, game_name: Optional[str] = None):
    """List every job still held in memory for a team."""
    return request.app.state.queue.list_jobs(team_id, game_name)


@router.get("/jobs/{job_id}", response_model=JobStatus)
async def get_job(request: Request, job_id: str, team_id: int):
    status = request.app.state.queue.get_job_status(job_id, team_id)
    if status is None:
        raise HTTPException(status_code=404, detail="job not found")
    return status


@router.delete("/jobs/{job_id}", response_model=JobStatus)
async def cancel_job(request: Request, job_id: str, team_id: int):
    queue: JobQueue = request.app.state.queue
    try:
        record = queue.get_record(job_id)
        if record.team_id != team_id:
            raise JobNotFoundError(job_id)
        return queue.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="job not found")
    except JobNotCancellableError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/queues/{team_id}/stats", response_model=QueueStats)
async def queue_stats(request: Request, team_id: int):
    return request.app.state.queue.get_queue_stats(team_id)


# -- sessions --------------------------------------------------------------------

@router.get("/sessions/check", response_model=SessionCheck)
async def check_session(request: Request, game_credential_id: int, user_id: Optional[str] = None):
    return request.app.state.store.check_session(game_credential_id, user_id=user_id)


@router.post("/sessions")
async def save_session(request: Request, req: SaveSessionRequest):
    try:
        row = request.app.state.store.get_or_create_session(req.user_id, req.game_credential_id, req.session_data)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"session_token": row.session_token, "expires_at": row.expires_at, "is_active": row.is_active}


@router.delete("/sessions")
async def logout(request: Request, user_id: str, game_credential_id: int):
    count = request.app.state.store.invalidate_session(user_id, game_credential_id)
    return {"user_id": user_id, "game_credential_id": game_credential_id, "invalidated": count}


# -- status ----------------------------------------------------------------------

@router.get("/teams/{team_id}/status")
async def team_status(request: Request, team_id: int):
    """Latest audited result per game and action, plus the live queue counts."""
    state = request.app.state
    return {
        "team_id": team_id,
        "games": state.store.latest_action_statuses(team_id),
        "queue": state.queue.get_queue_stats(team_id),
    }


@router.get("/browser/stats")
async def browser_stats(request: Request):
    state = request.app.state
    return {
        "sessions": state.sessions.stats(),
        "workers": state.pool.stats(),
        "subscribers": state.broadcaster.subscriber_count,
    }


@router.websocket("/ws/screenshots")
async def screenshots(websocket: WebSocket, team_id: Optional[str] = Query(None), game_id: Optional[str] = Query(None)):
    broadcaster: ScreenshotBroadcaster = websocket.app.state.broadcaster
    try:
        team_ids, game_ids = _parse_ids(team_id), _parse_ids(game_id)
    except HTTPException:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    with broadcaster.subscribe(team_ids, game_ids) as sub:
        try:
            async for event in sub:
                await websocket.send_json(_event_payload(event))
        except WebSocketDisconnect:
            logger.debug("Screenshot subscriber disconnected (dropped %d frames)", sub.dropped)


def create_app(store: SessionStore = None, registry: BrowserRegistry = None, sessions: BrowserSessions = None,
               broadcaster: ScreenshotBroadcaster = None, queue: JobQueue = None, runner: ActionRunner = None,
               start_workers: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = app.state
        state.registry = registry or BrowserRegistry()
        state.store = store or SessionStore()
        state.store.create_all()
        state.sessions = sessions or BrowserSessions(state.registry)
        state.broadcaster = broadcaster or ScreenshotBroadcaster()
        state.queue = queue or JobQueue()
        state.runner = runner or ActionRunner(state.store, sessions=state.sessions)
        worker = Worker(state.queue, state.store, state.registry, state.sessions, state.runner, state.broadcaster)
        state.pool = WorkerPool(state.queue, worker)
        if start_workers:
            state.pool.start()
        try:
            yield
        finally:
            # Clean up all browser resources on shutdown
            await state.pool.stop()
            await state.sessions.close_all()

    storage = CONFIG.storage_dir
    storage.mkdir(parents=True, exist_ok=True)

    app = FastAPI(title="panelrunner", lifespan=lifespan)
    # Serve static files (job logs, final screenshots)
    app.mount("/static", StaticFiles(directory=storage), name="static")
    app.include_router(router)
    return app


app = create_app()


def run():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("panelrunner.main:app", host="0.0.0.0", port=8000)
