"""
Session (data) channel between two paired editors.

The host binds a SessionListener on the negotiated port and accepts exactly
one peer on ``/data``. Both sides then talk through a PairConnection, one
JSON frame per message.
"""

import logging
from typing import Awaitable, Callable, Optional, Union

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.protocol import State

from idesync.errors import ProtocolError, SessionBindError
from idesync.session.models import Message, WireMessage, parse_message

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

MessageHandler = Callable[[Message], Awaitable[None]]
SessionHandler = Callable[[int, ServerConnection], Awaitable[None]]


class PairConnection:
    """The live duplex channel to the paired editor."""

    def __init__(
        self,
        websocket: Union[ServerConnection, ClientConnection],
        port: int,
        on_message: MessageHandler,
    ) -> None:
        self._ws = websocket
        self.port = port
        self._on_message = on_message

    @property
    def is_open(self) -> bool:
        return self._ws.state is State.OPEN

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code

    async def send(self, message: WireMessage) -> None:
        """Write one frame. Fire and forget; raises ConnectionClosed if the peer is gone."""
        payload = message.to_wire()
        logger.debug(f"SEND port={self.port}: {payload}")
        await self._ws.send(payload)

    async def run(self) -> None:
        """Read frames until the connection closes."""
        try:
            async for raw in self._ws:
                logger.debug(f"RECV port={self.port}: {raw!r}")
                try:
                    message = parse_message(raw)
                except ProtocolError as e:
                    logger.warning(f"Dropping message on port {self.port}: {e}")
                    continue

                try:
                    await self._on_message(message)
                except Exception as e:
                    logger.error(f"Error handling {type(message).__name__} on port {self.port}: {e}", exc_info=True)
        except ConnectionClosedError as e:
            logger.warning(f"Session on port {self.port} closed abnormally: {e}")
        finally:
            logger.info(f"Session on port {self.port} closed (code={self.close_code})")

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self._ws.close(code, reason)


class SessionListener:
    """Accepts the paired peer on one assigned port."""

    def __init__(self, host: str, port: int, endpoint: str, on_session: SessionHandler) -> None:
        self._host = host
        self.port = port
        self._endpoint = endpoint
        self._on_session = on_session
        self._server: Optional[Server] = None

    @property
    def is_listening(self) -> bool:
        return self._server is not None

    async def start(self) -> None:
        try:
            self._server = await serve(self._handle, self._host, self.port)
        except OSError as e:
            raise SessionBindError(self.port, e.strerror or str(e)) from e
        logger.info(f"Session listener on port {self.port}")

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info(f"Session listener on port {self.port} closed")

    async def _handle(self, websocket: ServerConnection) -> None:
        tag = websocket.request.path.lstrip("/")
        logger.info(f"New connection on session port {self.port}, endpoint={tag!r}")
        if tag != self._endpoint:
            logger.info(f"Rejecting connection: invalid endpoint {tag!r}, expected {self._endpoint!r}")
            await websocket.close(POLICY_VIOLATION, f"Invalid endpoint - use /{self._endpoint}")
            return

        try:
            await self._on_session(self.port, websocket)
        except ConnectionClosed:
            logger.debug(f"Session on port {self.port} closed during setup")
