"""
Session port allocation and pending-handshake bookkeeping.

A session port is handed out when a discovery hello is accepted and stays
"pending" until the peer connects to it or the pending entry expires.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, Field

from idesync.errors import SessionBindError

logger = logging.getLogger(__name__)

MAX_PORT = 65535


class PortAllocator:
    """Hands out strictly increasing session ports."""

    def __init__(
        self,
        floor: int,
        history: Iterable[int] = (),
        in_use: Optional[Callable[[], Iterable[int]]] = None,
    ) -> None:
        self._floor = floor
        self._next = max([floor, *(p + 1 for p in history)])
        self._in_use = in_use or (lambda: ())
        self._lock = threading.Lock()
        logger.info(f"Next available session port set to {self._next}")

    @property
    def peek(self) -> int:
        """The candidate the next call would start from."""
        return self._next

    def next(self) -> int:
        with self._lock:
            busy = set(self._in_use())
            port = self._next
            while port in busy:
                logger.debug(f"Port {port} is held by a live or pending session, skipping")
                port += 1
            if port > MAX_PORT:
                raise SessionBindError(port, "session port range exhausted")
            self._next = port + 1
            return port


class PendingConnection(BaseModel):
    """A port assignment that has not been claimed by a session connect yet."""
    port: int
    workspace_path: str
    created_at: float = Field(default_factory=time.time)


class PendingRegistry:
    """PendingConnections keyed by port, each expiring after ``timeout`` seconds."""

    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._pending: dict[int, PendingConnection] = {}
        self._timers: dict[int, asyncio.TimerHandle] = {}

    def __contains__(self, port: int) -> bool:
        return port in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def ports(self) -> list[int]:
        return list(self._pending)

    def add(self, port: int, workspace_path: str) -> PendingConnection:
        self._cancel_timer(port)
        pending = PendingConnection(port=port, workspace_path=workspace_path)
        self._pending[port] = pending
        loop = asyncio.get_running_loop()
        self._timers[port] = loop.call_later(self._timeout, self._expire, port)
        return pending

    def consume(self, port: int) -> Optional[PendingConnection]:
        """Remove and return the entry for ``port`` if there is one."""
        self._cancel_timer(port)
        return self._pending.pop(port, None)

    def clear(self) -> None:
        for port in list(self._timers):
            self._cancel_timer(port)
        self._pending.clear()

    def _cancel_timer(self, port: int) -> None:
        timer = self._timers.pop(port, None)
        if timer:
            timer.cancel()

    def _expire(self, port: int) -> None:
        self._timers.pop(port, None)
        pending = self._pending.pop(port, None)
        if pending is None:
            return
        age = time.time() - pending.created_at
        logger.info(f"Cleaning up stale pending connection for port {port} (workspace={pending.workspace_path}, age={age:.1f}s)")
