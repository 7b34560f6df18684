"""
IDE Sync: FastAPI application entry point.

Wires the reconnect supervisor to the editor plugin channel, serves the
REST API and the ``/ws`` event stream for the local editor.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from idesync import __version__
from idesync.api.routes import init_routes, router
from idesync.api.websocket import EditorChannel, WebSocketEditorBridge
from idesync.config import API_HOST, API_PORT, AUTO_ENABLE, SyncSettings
from idesync.discovery.store import PairStore
from idesync.errors import DiscoveryBindError
from idesync.logs import LOG_FORMAT
from idesync.session.supervisor import ReconnectSupervisor

# --- Logging ---
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# --- Service singletons ---
settings = SyncSettings()
pair_store = PairStore()
editor_channel = EditorChannel()
supervisor = ReconnectSupervisor(settings, pair_store, WebSocketEditorBridge(editor_channel))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the sync supervisor."""
    logger.info(f"Starting IDE Sync as {settings.role}, workspace={settings.workspace_path}")

    editor_channel.bind(supervisor)
    supervisor.on_event(editor_channel.handle_event)

    if AUTO_ENABLE:
        try:
            await supervisor.enable()
        except DiscoveryBindError as e:
            logger.error(f"Auto-enable failed: {e}")

    logger.info(f"IDE Sync ready. API: {API_HOST}:{API_PORT}, discovery port: {settings.discovery_port}")
    try:
        yield
    finally:
        logger.info("Shutting down IDE Sync...")
        await supervisor.disable()


app = FastAPI(
    title="IDE Sync",
    version=__version__,
    lifespan=lifespan,
)

init_routes(supervisor, pair_store)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await editor_channel.connect(websocket)
    try:
        while True:
            await editor_channel.dispatch(await websocket.receive_text())
    except WebSocketDisconnect:
        await editor_channel.disconnect(websocket)
    except Exception as e:
        logger.warning(f"Editor plugin connection error: {e}")
        await editor_channel.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
