import pytest

from idesync.session.models import EditorState, FocusMessage
from idesync.sync.state import StateSync

from conftest import FakeBridge, RecordingFocuser


class Wire:
    def __init__(self, journal=None):
        self.sent = []
        self.connected = True
        self.notifications = []
        self.journal = journal

    async def send(self, message):
        self.sent.append(message)
        if self.journal is not None:
            self.journal.append(("send", message))

    def notify(self, level, message):
        self.notifications.append((level, message))


@pytest.fixture
def wire():
    return Wire(journal=[])


def make_sync(wire, bridge=None, local_focuser=None, peer_focuser=None, identity="host"):
    return StateSync(
        identity=identity,
        bridge=bridge or FakeBridge(),
        local_focuser=local_focuser or RecordingFocuser(),
        peer_focuser=peer_focuser or RecordingFocuser(journal=wire.journal),
        send=wire.send,
        is_connected=lambda: wire.connected,
        notify=wire.notify,
    )


def state(source="peer", **kw):
    fields = dict(file_path="/a.py", line=10, column=4, source=source)
    fields.update(kw)
    return EditorState(**fields)


async def test_own_echo_never_reaches_editor(wire):
    bridge = FakeBridge()
    sync = make_sync(wire, bridge)
    assert await sync.apply(state(source="host")) is False
    assert bridge.calls == []


async def test_remote_state_is_applied_once(wire):
    bridge = FakeBridge()
    sync = make_sync(wire, bridge)
    applied = []

    async def on_state(s):
        applied.append(s)

    sync.on_incoming_state(on_state)
    assert await sync.apply(state()) is True
    assert bridge.calls == [("/a.py", 10, 4)]
    assert [s.file_path for s in applied] == ["/a.py"]


async def test_unresolvable_file_notifies_instead_of_raising(wire):
    sync = make_sync(wire, FakeBridge(missing={"/gone.py"}))
    assert await sync.apply(state(file_path="/gone.py")) is False
    assert wire.notifications == [("error", "Failed to open file: /gone.py")]


async def test_focus_request_raises_local_window(wire):
    local = RecordingFocuser()
    sync = make_sync(wire, local_focuser=local)
    calls = []

    async def on_focus():
        calls.append(True)

    sync.on_focus_requested(on_focus)
    assert await sync.handle_focus_request("/proj") is True
    assert local.hints == ["/proj"]
    assert calls == [True]


async def test_selection_is_sent_only_while_connected(wire):
    sync = make_sync(wire)
    wire.connected = False
    assert await sync.local_selection_changed("/a.py", 1, 2) is False
    assert wire.sent == []
    assert sync.current.file_path == "/a.py"

    wire.connected = True
    sync.window_focus_changed(True)
    assert await sync.local_selection_changed("/b.py", 3, 4) is True
    sent = wire.sent[-1]
    assert (sent.file_path, sent.line, sent.column) == ("/b.py", 3, 4)
    assert sent.source == "host"
    assert sent.is_active is True


async def test_window_focus_updates_current_state(wire):
    sync = make_sync(wire)
    await sync.local_selection_changed("/a.py", 0, 0)
    sync.window_focus_changed(True)
    assert sync.current.is_active is True
    sync.window_focus_changed(False)
    assert sync.current.is_active is False


async def test_selection_caused_by_apply_is_not_echoed(wire):
    class ReentrantBridge(FakeBridge):
        async def open_file_at(self, file_path, line, column):
            await super().open_file_at(file_path, line, column)
            self.echoed = await sync.local_selection_changed(file_path, line, column)

    bridge = ReentrantBridge()
    sync = make_sync(wire, bridge)
    assert await sync.apply(state()) is True
    assert bridge.echoed is False
    assert wire.sent == []


async def test_switch_sends_state_then_focus_then_raises_peer(wire):
    peer = RecordingFocuser(journal=wire.journal)
    sync = make_sync(wire, peer_focuser=peer)
    await sync.local_selection_changed("/a.py", 5, 6)
    wire.journal.clear()

    assert await sync.switch("/proj-peer") is True
    kinds = [entry[0] for entry in wire.journal]
    assert kinds == ["send", "send", "focus"]

    switched, focus = wire.journal[0][1], wire.journal[1][1]
    assert isinstance(switched, EditorState)
    assert switched.action == "switch"
    assert (switched.file_path, switched.line, switched.column) == ("/a.py", 5, 6)
    assert isinstance(focus, FocusMessage)
    assert peer.hints == ["/proj-peer"]


async def test_switch_while_disconnected_does_nothing(wire):
    peer = RecordingFocuser()
    sync = make_sync(wire, peer_focuser=peer)
    await sync.local_selection_changed("/a.py", 0, 0)
    wire.connected = False
    wire.sent.clear()

    assert await sync.switch() is False
    assert wire.sent == []
    assert peer.hints == []
    assert wire.notifications[-1][0] == "warning"


async def test_switch_without_active_editor(wire):
    sync = make_sync(wire)
    assert await sync.switch() is False
    assert wire.sent == []
    assert wire.notifications == [("warning", "No active editor")]


async def test_late_caret_report_after_apply_is_not_echoed(wire):
    bridge = FakeBridge()
    sync = make_sync(wire, bridge)
    assert await sync.apply(state()) is True

    # the editor reports the applied caret only after open_file_at returned
    assert await sync.local_selection_changed("/a.py", 10, 4) is False
    assert wire.sent == []
    assert sync.current.file_path == "/a.py"

    assert await sync.local_selection_changed("/a.py", 11, 0) is True
    assert await sync.local_selection_changed("/a.py", 10, 4) is True
    assert [(s.line, s.column) for s in wire.sent] == [(11, 0), (10, 4)]


async def test_failed_apply_does_not_suppress_local_moves(wire):
    sync = make_sync(wire, FakeBridge(missing={"/a.py"}))
    assert await sync.apply(state()) is False
    assert await sync.local_selection_changed("/a.py", 10, 4) is True
