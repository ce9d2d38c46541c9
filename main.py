from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from synk.config import SyncSettings
from synk.errors import AuthenticationExpired, SchemaError, SynkError
from synk.logging_service import configure_logging
from syncs.models import FULL_POLL_JOB
from syncs.sync_manager import SyncManager, create_sync_manager

settings = SyncSettings.from_env()

# Configure logging
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = create_sync_manager(settings)
    manager.start()
    app.state.manager = manager
    logger.info("Synk backend started")
    try:
        yield
    finally:
        manager.stop()


app = FastAPI(title="Synk Backend", lifespan=lifespan)


class PairRequest(BaseModel):
    notion_database_id: str
    google_calendar_id: str


def get_manager(request: Request) -> SyncManager:
    return request.app.state.manager


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, AuthenticationExpired):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, SchemaError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, SynkError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@app.get("/")
async def root():
    return {"status": "Synk backend is running"}


@app.get("/health")
async def health_check(request: Request):
    manager = get_manager(request)
    stats = manager.get_stats()
    return {
        "status": "degraded" if stats["pausedPairs"] or stats["blockedPairs"] else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sync": {
            "scheduler_state": stats["schedulerState"],
            "sync_in_progress": stats["syncInProgress"],
            "queue_size": stats["queueSize"],
            "backoff_ms": stats["backoffMs"],
        },
    }


@app.get("/stats")
async def get_stats(request: Request):
    return get_manager(request).get_stats()


@app.get("/pairs")
async def list_pairs(request: Request):
    manager = get_manager(request)
    return [
        {**pair.to_dict(), "pair_key": pair.pair_key, "active": manager.is_active(pair.pair_key)}
        for pair in manager.pairs
    ]


@app.post("/pairs", status_code=201)
async def add_pair(body: PairRequest, request: Request):
    pair = get_manager(request).add_sync_pair(body.notion_database_id, body.google_calendar_id)
    return {**pair.to_dict(), "pair_key": pair.pair_key}


@app.delete("/pairs/{pair_key}")
async def remove_pair(pair_key: str, request: Request):
    if not get_manager(request).remove_pair_key(pair_key):
        raise HTTPException(status_code=404, detail=f"Unknown pair {pair_key}")
    return {"status": "removed", "pair_key": pair_key}


@app.post("/pairs/{pair_key}/resume")
async def resume_pair(pair_key: str, request: Request):
    if not get_manager(request).resume_pair(pair_key):
        raise HTTPException(status_code=404, detail=f"Unknown pair {pair_key}")
    return {"status": "resumed", "pair_key": pair_key}


@app.post("/sync/{pair_key}", status_code=202)
async def local_change(pair_key: str, request: Request):
    """
    Fire-and-forget trigger from the UI after a local edit.
    The job is debounced and flushed by the scheduler.
    """
    manager = get_manager(request)
    if manager.get_pair(pair_key) is None and pair_key != FULL_POLL_JOB:
        raise HTTPException(status_code=404, detail=f"Unknown pair {pair_key}")
    manager.on_local_change(pair_key)
    return {"status": "queued", "pair_key": pair_key}


@app.post("/sync/{pair_key}/now")
async def sync_now(pair_key: str, request: Request):
    manager = get_manager(request)
    if manager.get_pair(pair_key) is None:
        raise HTTPException(status_code=404, detail=f"Unknown pair {pair_key}")
    try:
        result = await manager.sync_now(pair_key)
    except Exception as e:
        logger.error(f"Immediate sync of {pair_key} failed: {e}")
        raise to_http_error(e)
    return result.to_dict()


@app.get("/notion/databases")
async def notion_databases(request: Request):
    try:
        return await get_manager(request).reconciler.notion.list_databases()
    except Exception as e:
        raise to_http_error(e)


@app.get("/google/calendars")
async def google_calendars(request: Request):
    try:
        return await get_manager(request).reconciler.calendar.list_calendars()
    except Exception as e:
        raise to_http_error(e)
