"""WebSocket channel to the local editor plugin(s)."""

import asyncio
import json
import logging
import os

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from idesync.errors import FileResolutionError

logger = logging.getLogger(__name__)


class LocalSelection(BaseModel):
    """Caret position reported by the local editor."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_path: str
    line: int = Field(ge=0)
    column: int = Field(ge=0)


class EditorChannel:
    """Broadcasts sync events to editor plugins and routes their events to the supervisor."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._supervisor = None

    def bind(self, supervisor) -> None:
        self._supervisor = supervisor

    @property
    def client_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"Editor plugin connected. Total: {len(self._connections)}")
        if self._supervisor is not None:
            await websocket.send_text(json.dumps({
                "event": "sync_status",
                "data": self._supervisor.status().model_dump(mode="json"),
            }))

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"Editor plugin disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Compatible with ReconnectSupervisor.on_event()."""
        await self.broadcast(event_type, data)

    async def dispatch(self, raw: str) -> None:
        """Handle one ``{"event": ..., "data": ...}`` frame from an editor plugin."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed editor event: {e}")
            return
        if not isinstance(payload, dict) or self._supervisor is None:
            return

        event = payload.get("event")
        data = payload.get("data") or {}
        if event == "selection":
            try:
                selection = LocalSelection.model_validate(data)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid selection event: {e.error_count()} error(s)")
                return
            await self._supervisor.publish_local_state(selection.file_path, selection.line, selection.column)
        elif event == "window":
            self._supervisor.window_focus_changed(bool(data.get("focused")))
        elif event == "switch":
            await self._supervisor.switch_now()
        else:
            logger.debug(f"Unknown editor event: {event!r}")


class WebSocketEditorBridge:
    """EditorBridge that asks the connected editor plugin to open a file."""

    def __init__(self, channel: EditorChannel) -> None:
        self._channel = channel

    async def open_file_at(self, file_path: str, line: int, column: int) -> None:
        if not os.path.isfile(file_path):
            raise FileResolutionError(file_path, "no such file")
        if self._channel.client_count == 0:
            raise FileResolutionError(file_path, "no editor plugin connected")
        await self._channel.broadcast("open_file", {"filePath": file_path, "line": line, "column": column})
