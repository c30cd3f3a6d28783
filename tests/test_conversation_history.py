import pytest

from taskpilot.conversation_history import MAX_MESSAGES, ConversationHistory
from taskpilot.storage import StorageError


@pytest.fixture
def history(store):
    return ConversationHistory(store)


def test_append_and_get(history, project):
    history.append(project["id"], "s1", "user", "hello", meta={"intent": "question"})
    messages = history.append(project["id"], "s1", "assistant", "hi")
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert history.get(project["id"], "s1")[0]["meta"] == {"intent": "question"}
    assert history.get(project["id"], "other") == []


def test_history_is_capped(history, project):
    for i in range(MAX_MESSAGES + 5):
        history.append(project["id"], None, "user", f"message {i}")
    messages = history.get(project["id"])
    assert len(messages) == MAX_MESSAGES
    assert messages[0]["content"] == "message 5"


def test_session_ids_are_sanitized(history, store, project):
    history.append(project["id"], "../../evil", "user", "x")
    files = list((store.data_path / "chat_sessions" / project["id"]).iterdir())
    assert [f.name for f in files] == ["evil.json"]


def test_clear(history, project):
    history.append(project["id"], "s1", "user", "x")
    assert history.clear(project["id"], "s1") is True
    assert history.clear(project["id"], "s1") is False
    assert history.get(project["id"], "s1") == []


def test_unsafe_project_id_is_rejected(history):
    with pytest.raises(StorageError):
        history.get("../outside")
