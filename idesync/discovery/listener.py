"""
WebSocket discovery listener on the well-known port.

A peer connects to ``/discovery``, says hello with its workspace path and
gets back the session port it should connect to. The listener retires once
a pair is established.
"""

import asyncio
import errno
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from idesync.config import SyncSettings
from idesync.errors import DiscoveryBindError, HandshakeTimeout, ProtocolError, SessionBindError
from idesync.session.models import HelloMessage, PortAssignmentMessage, parse_message

logger = logging.getLogger(__name__)

# Close code for protocol violations (RFC 6455 "policy violation")
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011

HelloHandler = Callable[[HelloMessage], Awaitable[Optional[PortAssignmentMessage]]]


class ListenerState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RETIRED = "retired"


class DiscoveryListener:
    """Services discovery handshakes one at a time."""

    def __init__(self, settings: SyncSettings, on_hello: HelloHandler) -> None:
        self._host = settings.sync_host
        self._port = settings.discovery_port
        self._endpoint = settings.discovery_endpoint
        self._hello_timeout = settings.hello_timeout
        self._grace = settings.discovery_grace
        self._on_hello = on_hello
        self._server: Optional[Server] = None
        self._handshake_lock = asyncio.Lock()
        self.state = ListenerState.IDLE

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_listening(self) -> bool:
        return self.state is ListenerState.LISTENING

    async def enable(self) -> None:
        """Bind the discovery port. Raises DiscoveryBindError if it is taken."""
        if self.state is ListenerState.LISTENING:
            logger.debug("Discovery listener already running")
            return

        try:
            self._server = await serve(self._handle, self._host, self._port)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.error(f"Port {self._port} in use, discovery is already hosted elsewhere")
            else:
                logger.error(f"Failed to start discovery listener: {e}")
            raise DiscoveryBindError(self._port, e.strerror or str(e)) from e

        self.state = ListenerState.LISTENING
        logger.info(f"Discovery listener started on port {self._port}")

    async def retire(self) -> None:
        """Stop accepting handshakes because a pair is established."""
        if await self._close():
            logger.info("Discovery listener retired (pair established)")
        self.state = ListenerState.RETIRED

    async def stop(self) -> None:
        if await self._close():
            logger.info("Discovery listener stopped")
        self.state = ListenerState.IDLE

    async def _close(self) -> bool:
        server, self._server = self._server, None
        if server is None:
            return False
        server.close()
        await server.wait_closed()
        return True

    async def _handle(self, websocket: ServerConnection) -> None:
        tag = websocket.request.path.lstrip("/")
        logger.info(f"New connection on discovery port, endpoint={tag!r}")
        if tag != self._endpoint:
            await websocket.close(POLICY_VIOLATION, f"Invalid endpoint - use /{self._endpoint}")
            return

        try:
            hello = await self._receive_hello(websocket)
        except HandshakeTimeout:
            logger.info("No hello message received, closing discovery connection")
            await websocket.close(POLICY_VIOLATION, "No hello message")
            return
        except ProtocolError as e:
            logger.warning(f"Invalid discovery hello: {e}")
            await websocket.close(POLICY_VIOLATION, "Invalid message")
            return
        except ConnectionClosed:
            logger.debug("Discovery connection closed before hello")
            return

        logger.info(f"Hello received: path={hello.path}")
        async with self._handshake_lock:
            try:
                assignment = await self._on_hello(hello)
            except SessionBindError as e:
                logger.error(f"No session port available: {e}")
                await websocket.close(INTERNAL_ERROR, "No session port available")
                return

        if assignment is None:
            await websocket.close(POLICY_VIOLATION, "Sync disabled")
            return

        logger.info(f"Sending port assignment: {assignment.to_wire()}")
        try:
            await websocket.send(assignment.to_wire())
        except ConnectionClosed:
            logger.warning("Discovery connection closed before the port assignment was sent")
            return

        # The pending entry, not this socket, gates the session connect.
        try:
            await asyncio.wait_for(websocket.wait_closed(), timeout=self._grace)
        except asyncio.TimeoutError:
            await websocket.close()

    async def _receive_hello(self, websocket: ServerConnection) -> HelloMessage:
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=self._hello_timeout)
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(f"no hello within {self._hello_timeout}s") from e

        message = parse_message(raw)
        if not isinstance(message, HelloMessage):
            raise ProtocolError(f"Expected hello, got {type(message).__name__}")
        return message
