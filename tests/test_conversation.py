import pytest

from kiroweb.errors import ConversationNotFoundError
from kiroweb.kiro.conversation import ConversationLog, ConversationSynchronizer

from conftest import prompt_entry, response_entry


def test_missing_data_file_is_no_log_yet(tmp_path) -> None:
    sync = ConversationSynchronizer(ConversationLog(lambda: tmp_path / "absent.sqlite3"))

    with pytest.raises(ConversationNotFoundError):
        sync.sync(str(tmp_path), 0)


def test_missing_key_is_no_log_yet(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put("/some/other/dir", [prompt_entry("hi")])

    with pytest.raises(ConversationNotFoundError):
        synchronizer.sync(project_dir, 0)


def test_malformed_payload_is_no_log_yet(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put_raw(project_dir, "{not json")

    with pytest.raises(ConversationNotFoundError):
        synchronizer.sync(project_dir, 0)


def test_sync_returns_full_length_cursor_and_conversation_id(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("fix bug"), response_entry("done")], conversation_id="conv-42")

    result = synchronizer.sync(project_dir, 0)

    assert result.cursor == 2
    assert result.conversation_id == "conv-42"
    assert [m["type"] for m in result.messages] == ["user_prompt", "assistant"]


def test_sync_is_idempotent_at_advanced_cursor(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("fix bug"), response_entry("done")])
    first = synchronizer.sync(project_dir, 0)

    again = synchronizer.sync(project_dir, first.cursor)

    assert again.messages == []
    assert again.cursor == first.cursor


def test_only_new_entries_are_adapted(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("one")])
    first = synchronizer.sync(project_dir, 0)

    kiro_data.put(project_dir, [prompt_entry("one"), response_entry("two"), prompt_entry("three")])
    second = synchronizer.sync(project_dir, first.cursor)

    assert second.cursor == 3
    assert [m.get("prompt") or m["message"]["content"][0]["text"] for m in second.messages] == ["two", "three"]


def test_cursor_never_exceeds_log_length(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("one")])
    cursors = [0]
    for stale_cursor in (0, 5, -3, 1):
        result = synchronizer.sync(project_dir, stale_cursor)
        assert result.cursor <= 1
        cursors.append(result.cursor)

    assert synchronizer.sync(project_dir, 5).messages == []
    assert cursors == sorted(cursors)


def test_fallback_model_is_applied(kiro_data, synchronizer, project_dir) -> None:
    kiro_data.put(project_dir, [response_entry("done")])

    result = synchronizer.sync(project_dir, 0, fallback_model="claude-sonnet-4")

    assert result.messages[0]["model"] == "claude-sonnet-4"


def test_update_default_model_is_visible_to_cached_reader(kiro_data, conversation_log, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("hi")], model="old-model")
    assert conversation_log.load(project_dir).default_model == "old-model"

    assert conversation_log.update_default_model(project_dir, "new-model") is True

    assert conversation_log.load(project_dir).default_model == "new-model"
    assert kiro_data.value(project_dir)["history"] == [prompt_entry("hi")]


def test_update_default_model_rejects_blank_and_unknown(kiro_data, conversation_log, project_dir) -> None:
    kiro_data.put(project_dir, [prompt_entry("hi")], model="old-model")

    assert conversation_log.update_default_model(project_dir, "  ") is False
    assert conversation_log.update_default_model("/nowhere", "new-model") is False
    assert kiro_data.value(project_dir)["default_params"]["model"] == "old-model"


def test_list_recent_orders_by_update(kiro_data, conversation_log) -> None:
    kiro_data.put("/a", [prompt_entry("a")], conversation_id="conv-a")
    kiro_data.put("/b", [prompt_entry("b"), response_entry("b")], conversation_id="conv-b")
    kiro_data.put_raw("/broken", "nope")

    records = conversation_log.list_recent(limit=10)

    assert [r.key for r in records] == ["/b", "/a"]
    assert len(records[0].history) == 2
