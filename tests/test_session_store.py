import pytest

from kiroweb.errors import InvalidStatusTransition
from kiroweb.web.database import SessionStore
from kiroweb.web.models import SessionStatus


def test_schema_has_expected_tables(tmp_path) -> None:
    store = SessionStore(tmp_path / "sessions.db")
    rows = store._get_conn().execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    tables = {str(r["name"]) for r in rows}

    assert {"sessions", "messages", "permission_requests", "events"} <= tables


def test_create_and_reload_session(tmp_path) -> None:
    store = SessionStore(tmp_path / "sessions.db")
    session = store.create_session(cwd="/work", title="Fix bug", prompt="fix bug", interactive=True)
    store.close()

    reopened = SessionStore(tmp_path / "sessions.db")
    loaded = reopened.get_session(session.id)

    assert loaded is not None
    assert loaded.title == "Fix bug"
    assert loaded.cwd == "/work"
    assert loaded.status == SessionStatus.IDLE
    assert loaded.last_prompt == "fix bug"
    assert loaded.interactive is True
    assert loaded.kiro_history_cursor == 0


def test_update_merges_only_given_fields(store) -> None:
    session = store.create_session(cwd="/work")
    store.update_session(session.id, kiro_history_cursor=4)
    store.update_session(session.id, selected_model="claude-sonnet-4")
    store.close()

    reopened = SessionStore(store._db_path)
    loaded = reopened.get_session(session.id)

    assert loaded.kiro_history_cursor == 4
    assert loaded.selected_model == "claude-sonnet-4"


def test_update_rejects_unknown_fields(store) -> None:
    session = store.create_session(cwd="/work")

    with pytest.raises(ValueError):
        store.update_session(session.id, pending_permissions={})


def test_status_transitions(store) -> None:
    session = store.create_session(cwd="/work")

    with pytest.raises(InvalidStatusTransition):
        store.update_session(session.id, status="completed")

    store.update_session(session.id, status="running")
    store.update_session(session.id, status="running")
    store.update_session(session.id, status=SessionStatus.ERROR)
    store.update_session(session.id, status="running")
    store.update_session(session.id, status="idle")

    with pytest.raises(InvalidStatusTransition):
        store.update_session(session.id, status="error")
    assert store.get_session(session.id).status == SessionStatus.IDLE


def test_conversation_id_is_never_replaced(store) -> None:
    session = store.create_session(cwd="/work")
    store.update_session(session.id, kiro_conversation_id="conv-1")
    store.update_session(session.id, kiro_conversation_id="conv-2", kiro_history_cursor=3)

    loaded = store.get_session(session.id)
    assert loaded.kiro_conversation_id == "conv-1"
    assert loaded.kiro_history_cursor == 3


def test_messages_append_and_replace(store) -> None:
    session = store.create_session(cwd="/work")
    store.record_message(session.id, {"type": "user_prompt", "prompt": "a", "uuid": "1"})
    store.record_message(session.id, {"type": "user_prompt", "prompt": "b", "uuid": "2"})

    assert [m["prompt"] for m in store.get_messages(session.id)] == ["a", "b"]

    store.replace_session_messages(session.id, [{"type": "user_prompt", "prompt": "c", "uuid": "3"}])
    history = store.get_session_history(session.id)

    assert history["session"].id == session.id
    assert [m["prompt"] for m in history["messages"]] == ["c"]


def test_delete_removes_everything(store) -> None:
    session = store.create_session(cwd="/work")
    store.record_message(session.id, {"type": "user_prompt", "prompt": "a", "uuid": "1"})
    store.create_permission_request(session.id, "t1", "fs_write", {"path": "x"})
    store.insert_event(session.id, "session.status", 1.0, {"session_id": session.id, "status": "running"})

    assert store.delete_session(session.id) is True

    assert store.get_session(session.id) is None
    assert store.get_messages(session.id) == []
    assert store.list_pending_permission_requests(session.id) == []
    assert store.get_events(session_id=session.id) == []
    assert store.delete_session(session.id) is False


def test_events_have_per_session_sequence(store) -> None:
    a = store.create_session(cwd="/a")
    b = store.create_session(cwd="/b")

    e1 = store.insert_event(a.id, "stream.message", 1.0, {"session_id": a.id})
    e2 = store.insert_event(b.id, "stream.message", 2.0, {"session_id": b.id})
    e3 = store.insert_event(a.id, "stream.message", 3.0, {"session_id": a.id})

    assert (e1["seq"], e2["seq"], e3["seq"]) == (1, 1, 2)
    assert [e["id"] for e in store.get_events(session_id=a.id, since_seq=1)] == [e3["id"]]
    assert [e["id"] for e in store.get_events(since_id=e1["id"])] == [e2["id"], e3["id"]]
