"""Shared test fixtures for IDE Sync.

Supervisors run against real loopback websockets on free ports with
shortened timeouts; editor and window collaborators are recorded fakes.
"""

import asyncio
import socket
from dataclasses import dataclass
from typing import Optional

import pytest

from idesync.config import SyncSettings
from idesync.discovery.store import PairStore
from idesync.errors import FileResolutionError
from idesync.session.supervisor import ReconnectSupervisor
from idesync.sync.focus import WindowFocuser


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


def make_settings(role: str, discovery_port: int, workspace: str, **overrides) -> SyncSettings:
    fields = dict(
        role=role,
        identity=role,
        workspace_path=workspace,
        discovery_port=discovery_port,
        hello_timeout=0.5,
        discovery_grace=0.3,
        pending_timeout=1.0,
        connect_timeout=1.0,
        reconnect_delay=0.3,
        discovery_retry_delay=0.2,
        error_backoff=0.3,
        log_dir=None,
    )
    fields.update(overrides)
    return SyncSettings(**fields)


class FakeBridge:
    """EditorBridge that records open requests; paths in ``missing`` fail to resolve."""

    def __init__(self, missing=()) -> None:
        self.calls: list[tuple[str, int, int]] = []
        self.missing = set(missing)

    async def open_file_at(self, file_path: str, line: int, column: int) -> None:
        if file_path in self.missing:
            raise FileResolutionError(file_path, "no such file")
        self.calls.append((file_path, line, column))


class RecordingFocuser(WindowFocuser):
    def __init__(self, result: bool = True, journal: Optional[list] = None) -> None:
        super().__init__()
        self.hints: list = []
        self.result = result
        self.journal = journal

    async def bring_to_front(self, hint=None) -> bool:
        self.hints.append(hint)
        if self.journal is not None:
            self.journal.append(("focus", hint))
        return self.result


@dataclass
class Harness:
    supervisor: ReconnectSupervisor
    bridge: object
    local_focuser: RecordingFocuser
    peer_focuser: RecordingFocuser
    events: list


@pytest.fixture
def discovery_port() -> int:
    return free_port()


@pytest.fixture
async def make_harness(tmp_path, discovery_port):
    created: list[ReconnectSupervisor] = []

    def _make(role: str, workspace: Optional[str] = None, bridge=None, **overrides) -> Harness:
        settings = make_settings(role, discovery_port, workspace or f"/proj-{role}", **overrides)
        bridge = bridge if bridge is not None else FakeBridge()
        local_focuser, peer_focuser = RecordingFocuser(), RecordingFocuser()
        store = PairStore(tmp_path / role / "pairs.json")
        supervisor = ReconnectSupervisor(settings, store, bridge, local_focuser, peer_focuser)
        events: list = []

        async def record(event_type, data):
            events.append((event_type, data))

        supervisor.on_event(record)
        created.append(supervisor)
        return Harness(supervisor, bridge, local_focuser, peer_focuser, events)

    yield _make
    for supervisor in created:
        await supervisor.disable()
