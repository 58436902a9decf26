import json
import os
import time

import pytest

from cycle_core.memory import CycleHistoryStore, SessionLogStore

from conftest import make_cycle


@pytest.fixture
def sessions(tmp_path):
    return SessionLogStore(str(tmp_path / "SESSIONS"))


@pytest.fixture
def history():
    store = CycleHistoryStore()
    for i in range(3):
        store.store(make_cycle(i, agent="scroll"))
    return store


def test_save_writes_json(sessions, history):
    path = sessions.save("coastline", history)
    data = json.loads(path.read_text(encoding="utf-8"))

    assert path.name == "coastline.json"
    assert data["session_id"] == "coastline"
    assert data["total_cycles"] == 3
    assert data["summary"]["recent_agents"] == ["scroll", "scroll", "scroll"]
    assert [c["id"] for c in data["cycles"]] == [0, 1, 2]


def test_load_restores_cycles(sessions, history):
    sessions.save("coastline", history)
    cycles = sessions.load("coastline")

    assert [c.id for c in cycles] == [0, 1, 2]
    assert cycles[0].action_result.agent_used == "scroll"
    assert sessions.load("missing") is None


def test_load_into_appends(sessions, history):
    sessions.save("coastline", history)
    target = CycleHistoryStore()
    target.store(make_cycle(9))

    assert sessions.load_into("coastline", target) == 3
    assert [c.id for c in target.all()] == [9, 0, 1, 2]


def test_list_sessions_newest_first(sessions, history):
    sessions.save("older", history)
    older = sessions.sessions_dir / "older.json"
    past = time.time() - 3600
    os.utime(older, (past, past))
    sessions.save("newer", history)

    listed = sessions.list_sessions()
    assert [s["session_id"] for s in listed] == ["newer", "older"]
    assert listed[0]["total_cycles"] == 3
    assert len(sessions.list_sessions(limit=1)) == 1


def test_list_without_directory(sessions):
    assert sessions.list_sessions() == []


def test_delete(sessions, history):
    sessions.save("coastline", history)
    assert sessions.delete("coastline")
    assert not sessions.delete("coastline")


def test_cleanup_keeps_newest(sessions, history):
    sessions.sessions_dir.mkdir(parents=True)
    base = time.time() - 10_000
    for i in range(SessionLogStore.MAX_SESSIONS):
        path = sessions.sessions_dir / f"old_{i:02d}.json"
        path.write_text(json.dumps({"session_id": path.stem, "cycles": []}), encoding="utf-8")
        os.utime(path, (base + i, base + i))

    sessions.save("latest", history)

    remaining = {p.stem for p in sessions.sessions_dir.glob("*.json")}
    assert len(remaining) == SessionLogStore.MAX_SESSIONS
    assert "old_00" not in remaining
    assert "latest" in remaining


@pytest.mark.parametrize("session_id", ["../escape", "a/b", "", ".hidden", "x" * 200])
def test_invalid_session_ids(sessions, history, session_id):
    with pytest.raises(ValueError):
        sessions.save(session_id, history)
