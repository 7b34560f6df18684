"""
State synchronisation between the local editor and the paired one.

Outbound: local caret changes become EditorState messages tagged with the
local identity. Inbound: states from any other identity are applied through
the EditorBridge; states carrying our own identity are echoes and are
ignored.
"""

import logging
from typing import Awaitable, Callable, Optional, Protocol

from idesync.errors import FileResolutionError
from idesync.session.models import EditorState, FocusMessage, WireMessage
from idesync.sync.focus import WindowFocuser

logger = logging.getLogger(__name__)


class EditorBridge(Protocol):
    """What the sync layer needs from the host editor."""

    async def open_file_at(self, file_path: str, line: int, column: int) -> None:
        """Open ``file_path`` and place the caret. Raises FileResolutionError if it cannot."""
        ...


Sender = Callable[[WireMessage], Awaitable[None]]
Notifier = Callable[[str, str], None]  # (level, message)


class StateSync:
    """Translates between editor events and protocol messages."""

    def __init__(
        self,
        identity: str,
        bridge: EditorBridge,
        local_focuser: WindowFocuser,
        peer_focuser: WindowFocuser,
        send: Sender,
        is_connected: Callable[[], bool],
        notify: Optional[Notifier] = None,
    ) -> None:
        self.identity = identity
        self._bridge = bridge
        self._local_focuser = local_focuser
        self._peer_focuser = peer_focuser
        self._send = send
        self._is_connected = is_connected
        self._notify = notify or (lambda level, message: None)
        self._current: Optional[EditorState] = None
        self._window_active = False
        self._applying = False
        self._last_applied: Optional[tuple[str, int, int]] = None
        self._state_listeners: list = []  # async fn(EditorState)
        self._focus_listeners: list = []  # async fn()

    @property
    def current(self) -> Optional[EditorState]:
        return self._current

    def on_incoming_state(self, callback) -> None:
        """Register callback: async fn(state: EditorState), after a state is applied."""
        self._state_listeners.append(callback)

    def on_focus_requested(self, callback) -> None:
        """Register callback: async fn(), when the peer asks us to come to front."""
        self._focus_listeners.append(callback)

    # --- Outbound ---

    async def local_selection_changed(self, file_path: str, line: int, column: int) -> bool:
        """Record the local caret and forward it if paired. Returns True if sent."""
        if self._applying:
            # Caret moves caused by applying a remote state must not bounce back.
            return False
        self._current = EditorState(
            file_path=file_path,
            line=line,
            column=column,
            source=self.identity,
            is_active=self._window_active,
        )
        # The editor reports the caret we placed for the peer some time after
        # open_file_at returns; that report is not a local move.
        if (file_path, line, column) == self._last_applied:
            logger.debug(f"Suppressing echo of applied state {file_path}:{line}:{column}")
            return False
        self._last_applied = None
        if not self._is_connected():
            return False
        await self._send(self._current)
        return True

    def window_focus_changed(self, focused: bool) -> None:
        self._window_active = focused
        if self._current:
            self._current = self._current.model_copy(update={"is_active": focused})

    async def switch(self, peer_hint: Optional[str] = None) -> bool:
        """Hand focus to the peer: state with action=switch, focus request, then raise its window."""
        if not self._is_connected():
            logger.info("Not connected, cannot switch")
            self._notify("warning", "Not connected to the paired editor")
            return False
        if self._current is None:
            logger.info("No active editor, cannot switch")
            self._notify("warning", "No active editor")
            return False

        state = self._current.model_copy(update={"action": "switch", "source": self.identity})
        logger.info(f"Switching to peer at {state.file_path}:{state.line}:{state.column}")
        await self._send(state)
        await self._send(FocusMessage())

        focused = await self._peer_focuser.bring_to_front(peer_hint)
        logger.info(f"Peer window focus {'succeeded' if focused else 'failed'}")
        return True

    # --- Inbound ---

    async def apply(self, state: EditorState) -> bool:
        """Apply a remote state. Returns False if it was an echo or could not be applied."""
        if state.source == self.identity:
            logger.debug(f"Ignoring own state echo for {state.file_path}")
            return False

        logger.info(f"Applying state: filePath={state.file_path}, line={state.line}, column={state.column}")
        self._applying = True
        try:
            await self._bridge.open_file_at(state.file_path, state.line, state.column)
        except (FileResolutionError, OSError) as e:
            logger.warning(f"Error applying state: {e}")
            self._notify("error", f"Failed to open file: {state.file_path}")
            return False
        finally:
            self._applying = False
        self._last_applied = (state.file_path, state.line, state.column)

        for cb in self._state_listeners:
            try:
                await cb(state)
            except Exception as e:
                logger.error(f"Incoming state callback error: {e}")
        return True

    async def handle_focus_request(self, hint: Optional[str] = None) -> bool:
        logger.info("Focus request received from peer")
        focused = await self._local_focuser.bring_to_front(hint)
        logger.info(f"Local window focus {'succeeded' if focused else 'failed'}")
        for cb in self._focus_listeners:
            try:
                await cb()
            except Exception as e:
                logger.error(f"Focus callback error: {e}")
        return focused
