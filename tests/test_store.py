import json
import logging

from idesync.discovery.store import PairStore


def test_missing_file_gives_empty_store(tmp_path):
    store = PairStore(tmp_path / "pairs.json")
    assert store.records() == []
    assert store.ports() == []


def test_record_connection_persists(tmp_path):
    path = tmp_path / "nested" / "pairs.json"
    store = PairStore(path)
    store.record_connection("/proj", "/proj-peer", 3004)

    reloaded = PairStore(path)
    record = reloaded.get("/proj")
    assert record.remote_path == "/proj-peer"
    assert record.port == 3004
    assert reloaded.ports() == [3004]


def test_file_uses_camel_case_keys(tmp_path):
    path = tmp_path / "pairs.json"
    PairStore(path).record_connection("/proj", "/proj-peer", 3001)

    data = json.loads(path.read_text())
    assert "updatedAt" in data
    record = data["pairs"][0]
    assert record["localPath"] == "/proj"
    assert record["remotePath"] == "/proj-peer"
    assert record["lastConnectedAt"]
    assert record["lastSwitchAt"] is None


def test_reconnect_refreshes_existing_record(tmp_path):
    store = PairStore(tmp_path / "pairs.json")
    store.record_connection("/proj", "/proj-peer", 3001)
    store.record_connection("/proj", None, 3002)

    assert len(store.records()) == 1
    record = store.get("/proj")
    assert record.port == 3002
    assert record.remote_path == "/proj-peer"


def test_record_remote_path_only_touches_known_pairs(tmp_path):
    store = PairStore(tmp_path / "pairs.json")
    store.record_remote_path("/unknown", "/x")
    assert store.records() == []

    store.record_connection("/proj", None, 3001)
    store.record_remote_path("/proj", "/proj-peer")
    assert PairStore(store.path).get("/proj").remote_path == "/proj-peer"


def test_record_switch(tmp_path):
    store = PairStore(tmp_path / "pairs.json")
    store.record_connection("/proj", "/proj-peer", 3001)
    store.record_switch("/proj")
    assert PairStore(store.path).get("/proj").last_switch_at is not None


def test_record_switch_without_pair_or_port_is_skipped(tmp_path, caplog):
    store = PairStore(tmp_path / "pairs.json")
    store.record_switch("/proj")
    assert store.records() == []
    assert not store.path.exists()
    assert "switch not persisted" in caplog.text


def test_corrupt_file_is_logged_and_ignored(tmp_path, caplog):
    path = tmp_path / "pairs.json"
    path.write_text("{definitely not json")

    with caplog.at_level(logging.ERROR):
        store = PairStore(path)
    assert store.records() == []
    assert "Failed to load pairs" in caplog.text


def test_ports_seed_from_history(tmp_path):
    path = tmp_path / "pairs.json"
    store = PairStore(path)
    store.record_connection("/a", None, 3003)
    store.record_connection("/b", None, 3009)
    assert sorted(PairStore(path).ports()) == [3003, 3009]
