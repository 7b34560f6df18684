"""
Reconnect Supervisor: the pairing state machine.

Drives discovery, session setup and reconnection for one local editor.
The host binds the discovery port and hands out session ports; the peer
dials discovery, then the assigned session port. Both share the states
Disabled → Discovering → AwaitingSessionConnect → Connected, with
ErrorBackoff on the peer when discovery is unreachable.

Everything runs on one event loop. At most one state timer is armed at a
time and every transition cancels it; work resumed after an ``await``
checks the enable epoch so nothing outlives ``disable()``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel
from websockets.asyncio.client import connect
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from idesync.config import SyncSettings
from idesync.discovery.allocator import PendingRegistry, PortAllocator
from idesync.discovery.listener import DiscoveryListener, ListenerState
from idesync.discovery.store import PairStore
from idesync.errors import DiscoveryBindError, ProtocolError, SessionBindError
from idesync.logs import SessionLog
from idesync.session.connection import POLICY_VIOLATION, PairConnection, SessionListener
from idesync.session.models import (
    EditorState,
    FocusMessage,
    HelloMessage,
    Message,
    PortAssignmentMessage,
    SyncState,
    WireMessage,
    parse_message,
)
from idesync.sync.focus import WindowFocuser, default_focusers
from idesync.sync.state import EditorBridge, StateSync

logger = logging.getLogger(__name__)

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, InvalidHandshake)


class SyncStatus(BaseModel):
    """Snapshot of the supervisor exposed to the host surface."""
    state: SyncState
    role: str
    identity: str
    workspace_path: str
    connected: bool
    reconnecting: bool
    auto_reconnect: bool
    assigned_port: Optional[int] = None
    peer_path: Optional[str] = None
    discovery_listening: bool = False
    discovery_state: ListenerState = ListenerState.IDLE


class ReconnectSupervisor:
    """Owns every socket, timer and pending handshake of one sync instance."""

    def __init__(
        self,
        settings: SyncSettings,
        store: PairStore,
        bridge: EditorBridge,
        local_focuser: Optional[WindowFocuser] = None,
        peer_focuser: Optional[WindowFocuser] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._is_host = settings.role == "host"

        if local_focuser is None or peer_focuser is None:
            default_local, default_peer = default_focusers(settings.role)
            local_focuser = local_focuser or default_local
            peer_focuser = peer_focuser or default_peer

        self.pending = PendingRegistry(settings.pending_timeout)
        self.allocator = PortAllocator(
            floor=settings.discovery_port + 1,
            history=store.ports(),
            in_use=self._ports_in_use,
        )
        self.discovery = DiscoveryListener(settings, on_hello=self._assign_port)
        self.sync = StateSync(
            identity=settings.identity,
            bridge=bridge,
            local_focuser=local_focuser,
            peer_focuser=peer_focuser,
            send=self._send,
            is_connected=lambda: self.is_connected,
            notify=self._notify,
        )
        self._session_log = SessionLog(settings.log_dir)

        self._state = SyncState.DISABLED
        self._auto_reconnect = False
        self._epoch = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._event_tasks: set[asyncio.Future] = set()
        self._listeners: dict[int, SessionListener] = {}
        self._pair: Optional[PairConnection] = None
        self._discovery_socket = None
        self._assigned_port: Optional[int] = None
        self._peer_path: Optional[str] = None
        self._event_callbacks: list = []  # async fn(event_type, data)

    # --- Accessors ---

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is SyncState.CONNECTED and self._pair is not None and self._pair.is_open

    @property
    def is_reconnecting(self) -> bool:
        return self._auto_reconnect and self._state in (
            SyncState.DISCOVERING,
            SyncState.AWAITING_SESSION_CONNECT,
            SyncState.ERROR_BACKOFF,
        )

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @property
    def assigned_port(self) -> Optional[int]:
        return self._assigned_port

    @property
    def peer_path(self) -> Optional[str]:
        return self._peer_path

    def status(self) -> SyncStatus:
        return SyncStatus(
            state=self._state,
            role=self.settings.role,
            identity=self.settings.identity,
            workspace_path=self.settings.workspace_path,
            connected=self.is_connected,
            reconnecting=self.is_reconnecting,
            auto_reconnect=self._auto_reconnect,
            assigned_port=self._assigned_port,
            peer_path=self._peer_path,
            discovery_listening=self.discovery.is_listening,
            discovery_state=self.discovery.state,
        )

    # --- Subscriptions ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    def on_incoming_state(self, callback: Callable[[EditorState], Awaitable[None]]) -> None:
        self.sync.on_incoming_state(callback)

    def on_focus_requested(self, callback: Callable[[], Awaitable[None]]) -> None:
        self.sync.on_focus_requested(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _fire_event(self, event_type: str, data: dict) -> None:
        if self._event_callbacks:
            task = asyncio.ensure_future(self._emit(event_type, data))
            self._event_tasks.add(task)
            task.add_done_callback(self._event_tasks.discard)

    def _notify(self, level: str, message: str) -> None:
        log = {"error": logger.error, "warning": logger.warning}.get(level, logger.info)
        log(f"[notify] {message}")
        self._fire_event("notification", {"type": level, "message": message})

    # --- Commands ---

    async def enable(self) -> None:
        """Start a discovery cycle. Raises DiscoveryBindError if the host cannot bind."""
        if self._auto_reconnect:
            logger.debug("Sync already enabled")
            return

        self._epoch += 1
        self._auto_reconnect = True
        logger.info(f"Sync enabled as {self.settings.role} (identity={self.settings.identity})")

        if self._is_host:
            try:
                await self.discovery.enable()
            except DiscoveryBindError as e:
                self._fail_discovery(e)
                raise
            self._enter(SyncState.DISCOVERING)
            self._notify("info", f"Discovery listener started on port {self.discovery.port}. Waiting for peer...")
        else:
            self._enter(SyncState.DISCOVERING)
            self._spawn(self._discover())

    async def disable(self) -> None:
        """Close every socket and cancel every timer; late callbacks become no-ops."""
        was_enabled = self._auto_reconnect
        self._epoch += 1
        self._auto_reconnect = False
        self._cancel_timer()
        self.pending.clear()

        current = asyncio.current_task()
        cancelled = [t for t in self._tasks if t is not current]
        for task in cancelled:
            task.cancel()

        pair, self._pair = self._pair, None
        if pair is not None:
            await pair.close()
        socket, self._discovery_socket = self._discovery_socket, None
        if socket is not None:
            await socket.close()
        await self.discovery.stop()
        for port in list(self._listeners):
            await self._drop_listener(port)
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)

        self._assigned_port = None
        self._session_log.stop()
        self._enter(SyncState.DISABLED)
        if was_enabled:
            self._notify("info", "Sync disabled")

    async def toggle(self) -> bool:
        """Flip auto-reconnect; returns the new setting."""
        if self._auto_reconnect:
            await self.disable()
        else:
            await self.enable()
        return self._auto_reconnect

    async def stop_discovery(self) -> bool:
        """Shut the discovery listener down by hand. Returns False if it was not running."""
        if not self.discovery.is_listening:
            return False
        await self.discovery.stop()
        self._notify("info", f"Discovery listener on port {self.discovery.port} stopped")
        return True

    async def switch_now(self) -> bool:
        """Send our caret to the peer and hand it focus."""
        switched = await self.sync.switch(self._peer_path)
        if switched:
            self.store.record_switch(self.settings.workspace_path, self._assigned_port)
        return switched

    async def publish_local_state(self, file_path: str, line: int, column: int) -> bool:
        return await self.sync.local_selection_changed(file_path, line, column)

    def window_focus_changed(self, focused: bool) -> None:
        self.sync.window_focus_changed(focused)

    # --- State and timers ---

    def _enter(
        self,
        state: SyncState,
        after: Optional[float] = None,
        then: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self._cancel_timer()
        if state is not self._state:
            logger.info(f"State {self._state.value} -> {state.value}")
            self._state = state
        if after is not None and then is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(after, self._on_timer, self._epoch, then)
        self._fire_event("sync_status", self.status().model_dump(mode="json"))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _on_timer(self, epoch: int, then: Callable[[], Awaitable[None]]) -> None:
        self._timer = None
        if epoch != self._epoch or not self._auto_reconnect:
            return
        self._spawn(then())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    def _fail_discovery(self, error: DiscoveryBindError) -> None:
        self._epoch += 1
        self._auto_reconnect = False
        self._enter(SyncState.DISABLED)
        self._notify(
            "error",
            f"{error}. Another instance is hosting discovery; wait for it to pair, then try again.",
        )

    async def _restart_discovery(self) -> None:
        if not self._is_host:
            await self._discover()
            return
        try:
            await self.discovery.enable()
        except DiscoveryBindError as e:
            self._fail_discovery(e)
            return
        self._enter(SyncState.DISCOVERING)

    # --- Session channel (both roles) ---

    def _ports_in_use(self) -> set[int]:
        ports = set(self.pending.ports()) | set(self._listeners)
        if self._assigned_port is not None:
            ports.add(self._assigned_port)
        return ports

    def _attach_pair(self, pair: PairConnection) -> None:
        self._pair = pair
        self._assigned_port = pair.port
        self._enter(SyncState.CONNECTED)
        self._session_log.start(pair.port)
        self._notify("info", f"Paired editor connected on port {pair.port}")

    async def _on_pair_closed(self, pair: PairConnection) -> None:
        if pair is not self._pair:
            return
        self._pair = None
        self._assigned_port = None
        self._session_log.stop()
        logger.info(f"Paired editor disconnected from port {pair.port}")
        if self._is_host:
            self._spawn(self._drop_listener(pair.port))

        if self._auto_reconnect:
            self._notify("warning", "Pair disconnected, looking for a new pair...")
            self._enter(SyncState.DISCOVERING, after=self.settings.reconnect_delay, then=self._restart_discovery)
        else:
            self._enter(SyncState.DISABLED)

    async def _on_pair_message(self, message: Message) -> None:
        if isinstance(message, HelloMessage):
            logger.info(f"Peer workspace: {message.path}")
            self._peer_path = message.path
            self.store.record_remote_path(self.settings.workspace_path, message.path)
        elif isinstance(message, FocusMessage):
            focused = await self.sync.handle_focus_request(self.settings.workspace_path)
            self._fire_event("focus_requested", {"focused": focused})
        elif isinstance(message, EditorState):
            applied = await self.sync.apply(message)
            if applied:
                self._fire_event("incoming_state", message.model_dump(by_alias=True, exclude_none=True))
        else:
            logger.warning(f"Unexpected {type(message).__name__} on session channel")

    async def _send(self, message: WireMessage) -> None:
        pair = self._pair
        if pair is None:
            logger.debug(f"Not paired, dropping outbound {type(message).__name__}")
            return
        try:
            await pair.send(message)
        except ConnectionClosed as e:
            logger.warning(f"Send failed, session closed: {e}")

    # --- Host side ---

    async def _assign_port(self, hello: HelloMessage) -> Optional[PortAssignmentMessage]:
        """Called by the discovery listener for each valid hello."""
        if not self._auto_reconnect:
            return None

        await self._release_stale_listeners()
        epoch = self._epoch
        listener = await self._bind_session_listener()
        if epoch != self._epoch:
            await listener.stop()
            return None

        self._listeners[listener.port] = listener
        self.pending.add(listener.port, hello.path)
        self._peer_path = hello.path
        self._assigned_port = listener.port
        self._enter(SyncState.AWAITING_SESSION_CONNECT)
        self._notify("info", f"Peer found, assigned port {listener.port}. Establishing connection...")
        return PortAssignmentMessage(port=listener.port, workspace_path=self.settings.workspace_path)

    async def _bind_session_listener(self) -> SessionListener:
        last_error: Optional[SessionBindError] = None
        for _ in range(self.settings.max_bind_attempts):
            port = self.allocator.next()
            listener = SessionListener(
                self.settings.sync_host, port, self.settings.data_endpoint, self._serve_session,
            )
            try:
                await listener.start()
            except SessionBindError as e:
                logger.warning(f"Port {port} is busy, trying port {self.allocator.peek}")
                last_error = e
                continue
            logger.info(f"Assigning port {port} (next will be {self.allocator.peek})")
            return listener
        raise last_error or SessionBindError(self.allocator.peek, "no bind attempts allowed")

    async def _serve_session(self, port: int, websocket: ServerConnection) -> None:
        pending = self.pending.consume(port)
        if pending is None or not self._auto_reconnect:
            logger.info(f"Rejecting connection: no pending connection for port {port}")
            await websocket.close(POLICY_VIOLATION, "No pending connection")
            return

        previous, self._pair = self._pair, None
        if previous is not None:
            logger.info("Closing existing pair before accepting the new connection")
            await previous.close()

        pair = PairConnection(websocket, port, self._on_pair_message)
        self._peer_path = pending.workspace_path
        self._attach_pair(pair)
        self._spawn(self.discovery.retire())
        for other in [p for p in self._listeners if p != port]:
            self._spawn(self._drop_listener(other))

        await self._send(HelloMessage(path=self.settings.workspace_path))
        self.store.record_connection(self.settings.workspace_path, pending.workspace_path, port)

        await pair.run()
        await self._on_pair_closed(pair)

    async def _drop_listener(self, port: int) -> None:
        self.pending.consume(port)
        listener = self._listeners.pop(port, None)
        if listener is not None:
            await listener.stop()

    async def _release_stale_listeners(self) -> None:
        """Close session listeners whose assignment expired unclaimed."""
        live = self._pair.port if self._pair is not None else None
        for port in [p for p in self._listeners if p not in self.pending and p != live]:
            logger.info(f"Releasing unclaimed session port {port}")
            await self._drop_listener(port)

    # --- Peer side ---

    def _uri(self, port: int, endpoint: str) -> str:
        return f"ws://{self.settings.sync_host}:{port}/{endpoint}"

    async def _discover(self) -> None:
        epoch = self._epoch
        self._enter(SyncState.DISCOVERING)
        uri = self._uri(self.settings.discovery_port, self.settings.discovery_endpoint)
        logger.info(f"Connecting to discovery at {uri}")

        try:
            websocket = await connect(uri, open_timeout=self.settings.connect_timeout)
        except _CONNECT_ERRORS as e:
            if epoch != self._epoch:
                return
            logger.warning(f"Discovery error: {e}")
            self._notify(
                "warning",
                f"Cannot connect to discovery server (port {self.settings.discovery_port}). "
                f"Make sure sync is enabled on the host editor.",
            )
            self._enter(SyncState.ERROR_BACKOFF, after=self.settings.error_backoff, then=self._retry_discovery)
            return

        if epoch != self._epoch:
            await websocket.close()
            return

        self._discovery_socket = websocket
        assignment: Optional[PortAssignmentMessage] = None
        try:
            await websocket.send(HelloMessage(path=self.settings.workspace_path).to_wire())
            logger.info(f"Sent hello with path={self.settings.workspace_path}")
            async for raw in websocket:
                try:
                    message = parse_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Ignoring discovery message: {e}")
                    continue
                if isinstance(message, PortAssignmentMessage):
                    assignment = message
                    break
        except ConnectionClosed as e:
            logger.info(f"Discovery connection closed: {e}")
        finally:
            if self._discovery_socket is websocket:
                self._discovery_socket = None
            await websocket.close()

        if epoch != self._epoch:
            return
        if assignment is None:
            logger.info("Discovery closed without a port assignment")
            self._enter(SyncState.DISCOVERING, after=self.settings.discovery_retry_delay, then=self._discover)
            return

        logger.info(f"Received port assignment: port={assignment.port}, workspacePath={assignment.workspace_path}")
        self._peer_path = assignment.workspace_path or None
        self._assigned_port = assignment.port
        self._enter(SyncState.AWAITING_SESSION_CONNECT)
        await self._connect_session(assignment.port, epoch)

    async def _retry_discovery(self) -> None:
        if self._assigned_port is None:
            logger.info("Retrying discovery after error...")
            await self._discover()

    async def _connect_session(self, port: int, epoch: int) -> None:
        uri = self._uri(port, self.settings.data_endpoint)
        logger.info(f"Connecting to session at {uri}")
        try:
            websocket = await connect(uri, open_timeout=self.settings.connect_timeout)
        except _CONNECT_ERRORS as e:
            if epoch != self._epoch:
                return
            logger.warning(f"Error connecting to session port {port}: {e}")
            self._assigned_port = None
            self._enter(SyncState.DISCOVERING, after=self.settings.discovery_retry_delay, then=self._discover)
            return

        if epoch != self._epoch:
            await websocket.close()
            return

        pair = PairConnection(websocket, port, self._on_pair_message)
        self._attach_pair(pair)
        self.store.record_connection(self.settings.workspace_path, self._peer_path, port)

        await pair.run()
        await self._on_pair_closed(pair)
