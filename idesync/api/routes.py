"""REST API routes for IDE Sync."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from idesync.api.websocket import LocalSelection
from idesync.errors import DiscoveryBindError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_supervisor = None
_store = None


def init_routes(supervisor, store) -> None:
    """Inject service dependencies into the routes module."""
    global _supervisor, _store
    _supervisor = supervisor
    _store = store


# --- Status ---

@router.get("/status")
async def get_status():
    return _supervisor.status().model_dump(mode="json")


# --- Sync lifecycle ---

@router.post("/sync/enable")
async def enable_sync():
    try:
        await _supervisor.enable()
    except DiscoveryBindError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _supervisor.status().model_dump(mode="json")


@router.post("/sync/disable")
async def disable_sync():
    await _supervisor.disable()
    return _supervisor.status().model_dump(mode="json")


@router.post("/sync/toggle")
async def toggle_sync():
    try:
        await _supervisor.toggle()
    except DiscoveryBindError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _supervisor.status().model_dump(mode="json")


@router.post("/discovery/stop")
async def stop_discovery():
    stopped = await _supervisor.stop_discovery()
    return {"stopped": stopped}


# --- Editor state ---

class WindowBody(BaseModel):
    focused: bool


@router.post("/state")
async def publish_state(body: LocalSelection):
    sent = await _supervisor.publish_local_state(body.file_path, body.line, body.column)
    return {"sent": sent}


@router.post("/window")
async def window_state(body: WindowBody):
    _supervisor.window_focus_changed(body.focused)
    return {"status": "updated"}


@router.post("/switch")
async def switch_to_peer():
    if not _supervisor.is_connected:
        raise HTTPException(status_code=409, detail="Not connected to the paired editor")
    if not await _supervisor.switch_now():
        raise HTTPException(status_code=400, detail="No active editor")
    return {"status": "switched"}


# --- Pair history ---

@router.get("/pairs")
async def list_pairs():
    return {"pairs": [p.model_dump(by_alias=True) for p in _store.records()]}
