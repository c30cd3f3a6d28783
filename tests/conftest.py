import os
import json
import tempfile
import dataclasses

import pytest

# The app reads its settings at import time
os.environ.setdefault("TASKPILOT_DATA_PATH", tempfile.mkdtemp(prefix="taskpilot-test-"))
os.environ.setdefault("TASKPILOT_LOG_FILE", "")
os.environ.setdefault("TASKPILOT_WATCH_DATA", "0")

from fastapi.testclient import TestClient  # noqa: E402

from taskpilot import main  # noqa: E402
from taskpilot.analytics import AnalyticsService  # noqa: E402
from taskpilot.attachments_service import AttachmentsService  # noqa: E402
from taskpilot.comments_service import CommentsService  # noqa: E402
from taskpilot.projects_service import ProjectsService  # noqa: E402
from taskpilot.storage import YamlStore  # noqa: E402
from taskpilot.tasks_service import TasksService  # noqa: E402
from taskpilot.users_service import UsersService  # noqa: E402


class FakeLLM:
    """Stands in for LLMClient; replies are queued per call kind."""

    def __init__(self, replies=None, json_replies=None, configured=True):
        self.replies = list(replies or [])
        self.json_replies = list(json_replies or [])
        self.is_configured = configured
        self.calls = []

    def get_models(self):
        return [{"id": "fake", "name": "fake", "provider": "fake"}]

    def chat_completion(self, messages, model_id=None, temperature=0.7, max_tokens=None, json_mode=False):
        self.calls.append({"kind": "chat", "messages": messages, "json_mode": json_mode})
        content = self.replies.pop(0) if self.replies else ""
        if isinstance(content, Exception):
            raise content
        if isinstance(content, (dict, list)):
            content = json.dumps(content)
        return {"id": "resp_1", "role": "assistant", "content": content, "model": "fake"}

    def chat_json(self, messages, temperature=0.2, max_tokens=None):
        self.calls.append({"kind": "json", "messages": messages})
        reply = self.json_replies.pop(0) if self.json_replies else {}
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def store(tmp_path):
    store = YamlStore(tmp_path)
    store.ensure_ready()
    return store


@pytest.fixture
def users(store):
    return UsersService(store, default_plan="pro")


@pytest.fixture
def projects(store, users):
    return ProjectsService(store, users)


@pytest.fixture
def tasks(store, users):
    return TasksService(store, users)


@pytest.fixture
def comments(store, users):
    return CommentsService(store, users)


@pytest.fixture
def attachments(store, users):
    return AttachmentsService(store, users)


@pytest.fixture
def analytics(tasks):
    return AnalyticsService(tasks)


@pytest.fixture
def owner(users):
    return users.register_user("Olivia Owner", "olivia@example.com")


@pytest.fixture
def alice(users):
    return users.register_user("Alice Smith", "alice@example.com")


@pytest.fixture
def outsider(users):
    return users.register_user("Oscar Outsider", "oscar@example.com")


@pytest.fixture
def project(projects, owner, alice):
    project = projects.create_project(owner, {"name": "Website Relaunch", "description": "New marketing site"})
    projects.invite(project, owner, alice["email"])
    return projects.get_project(project["id"])


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def services(tmp_path, fake_llm):
    settings = dataclasses.replace(main.settings, data_path=tmp_path)
    svc = main.Services(settings, llm=fake_llm, publisher=main.manager.publish)
    svc.store.ensure_ready()
    return svc


@pytest.fixture
def client(services):
    main.app.dependency_overrides[main.get_services] = lambda: services
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user):
    return {"X-User-Id": str(user["id"])}
