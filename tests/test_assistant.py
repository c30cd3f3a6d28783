from unittest import mock

import pytest

from conftest import FakeLLM
from taskpilot.assistant import ProjectAssistant, classify_intent, looks_like_secrets
from taskpilot.command_executor import CommandExecutor
from taskpilot.command_planner import CommandPlanner
from taskpilot.conversation_history import ConversationHistory
from taskpilot.errors import AIServiceError
from taskpilot.question_answering import QuestionAnsweringService


def make_assistant(store, tasks, llm=None):
    qa = QuestionAnsweringService(tasks, llm)
    planner = CommandPlanner(tasks, llm, qa=qa)
    return ProjectAssistant(planner, CommandExecutor(tasks), qa, ConversationHistory(store), llm)


@pytest.fixture
def assistant(store, tasks):
    return make_assistant(store, tasks)


@pytest.mark.parametrize("message, expected", [
    ("how many tasks are done?", "question"),
    ("assigned to who?", "question"),
    ("status", "question"),
    ("create task Foo", "command"),
    ("make 5 tasks", "command"),
    ("mark #3 done", "command"),
    ("please remove the old stuff from the board", "command"),
])
def test_classify_intent(message, expected):
    assert classify_intent(message) == expected


def test_secret_detection():
    assert looks_like_secrets("my api_key is 123")
    assert looks_like_secrets("Authorization: Bearer abc")
    assert not looks_like_secrets("the token ring project")


def test_empty_and_secret_messages(assistant, project, owner):
    assert assistant.handle(project, owner, "   ")["message"] == "Please type a request."
    result = assistant.handle(project, owner, "password=hunter2")
    assert result["type"] == "error"
    assert assistant.history.get(project["id"]) == []


def test_question_is_answered_and_recorded(assistant, project, owner):
    result = assistant.handle(project, owner, "how many tasks are done?", session_id="s1")
    assert result == {
        "type": "information",
        "message": "There are 0 task(s) in Done.",
        "requires_confirmation": False,
        "meta": {"intent": "question"},
    }
    history = assistant.history.get(project["id"], "s1")
    assert [(m["role"], m["content"]) for m in history] == [
        ("user", "how many tasks are done?"), ("assistant", "There are 0 task(s) in Done.")]


def test_command_preview_then_execute(assistant, tasks, project, owner):
    preview = assistant.handle(project, owner, "create task Write docs", session_id="s1")
    assert preview["type"] == "command"
    assert preview["requires_confirmation"] is True
    assert preview["message"] == '✅ Create a new task "Write docs" in "To Do".'
    assert tasks.get_project_tasks(project["id"]) == []

    result = assistant.execute(project, owner, preview["command_data"], session_id="s1")
    assert result["message"] == '✅ Task "Write docs" created successfully.'
    assert [t["title"] for t in tasks.get_project_tasks(project["id"])] == ["Write docs"]
    assert assistant.history.get(project["id"], "s1")[-1]["content"] == result["message"]


def test_rejected_command(assistant, project, owner):
    result = assistant.handle(project, owner, "delete #999")
    assert result["type"] == "information"
    assert result["message"] == "Task #999 not found in this project."
    assert result["meta"] == {"intent": "command_rejected"}


def test_unexpected_failure(assistant, project, owner):
    with mock.patch.object(assistant.qa, "answer", side_effect=RuntimeError("boom")):
        result = assistant.handle(project, owner, "how many tasks are done?")
    assert result["type"] == "error"
    assert result["message"] == "An unexpected error occurred. Please try again."
    assert assistant.history.get(project["id"]) == []


def test_llm_routes_commands(store, tasks, project, owner):
    llm = FakeLLM(json_replies=[{"kind": "command", "plan": {"type": "create_task", "payload": {"title": "From router"}}}])
    result = make_assistant(store, tasks, llm).handle(project, owner, "jot down something for later")
    assert result["type"] == "command"
    assert result["command_data"]["payload"]["title"] == "From router"
    assert llm.calls[0]["messages"][0]["content"].startswith("You are a routing and parsing controller")


def test_llm_routes_questions_with_rephrasing(store, tasks, project, owner):
    llm = FakeLLM(json_replies=[{"kind": "question", "question": "How many tasks are finished?"}],
                  replies=["No tasks are finished yet."])
    result = make_assistant(store, tasks, llm).handle(project, owner, "anything finished?")
    assert result["message"] == "No tasks are finished yet."
    assert llm.calls[1]["messages"][-1]["content"] == "How many tasks are finished?"


def test_llm_routing_failure_falls_back_to_rules(store, tasks, project, owner):
    llm = FakeLLM(json_replies=[AIServiceError("down")])
    result = make_assistant(store, tasks, llm).handle(project, owner, "how many tasks are done?")
    assert result["message"] == "There are 0 task(s) in Done."
