from datetime import date, datetime, timedelta
from unittest import mock

import pytest
import requests

from taskpilot.automations import AutomationsService, normalize_trigger, render, render_payload
from taskpilot.errors import NotFoundError, ValidationError

NOW = datetime(2025, 3, 10, 9, 30)
HOOK = "https://hooks.example.com/taskpilot"


def _response(status_code=200):
    response = mock.Mock()
    response.status_code = status_code
    response.text = "hook body"
    return response


@pytest.fixture
def publisher():
    return mock.Mock()


@pytest.fixture
def automations(store, tasks, publisher):
    return AutomationsService(store, tasks, publisher, cooldown_minutes=5, timeout=3)


def _webhook_rule(automations, project, owner, **overrides):
    data = {
        "name": "Forward new tasks",
        "trigger": "task_created",
        "trigger_config": {"columns": ["todo"]},
        "actions": [{"type": "webhook", "config": {"url": HOOK, "payload": {"title": "{task_title}"}}}],
    }
    data.update(overrides)
    return automations.create_automation(project, owner, data)


def test_render_leaves_unknown_placeholders():
    variables = {"task_title": "Write copy", "project_name": "Website"}
    assert render("{task_title} in {project_name} ({nope})", variables) == "Write copy in Website ({nope})"
    payload = {"a": ["{task_title}", 3], "b": {"c": "{project_name}"}, "d": None}
    assert render_payload(payload, variables) == {"a": ["Write copy", 3], "b": {"c": "Website"}, "d": None}


def test_normalize_trigger():
    assert normalize_trigger("Task Created") == "task_created"
    assert normalize_trigger("task-due-date") == "task_due_date"
    assert normalize_trigger(None) == ""


@pytest.mark.parametrize("overrides", [
    {"name": "  "},
    {"trigger": "schedule"},
    {"trigger_config": {"columns": ["someday"]}},
    {"trigger": "task_updated", "trigger_config": {"to_status": "shipped"}},
    {"trigger": "task_due_date", "trigger_config": {"hours_before": 0}},
    {"trigger": "task_due_date", "trigger_config": {"hours_before": "soon"}},
    {"actions": [{"type": "webhook", "config": {"url": "ftp://example.com"}}]},
    {"actions": [{"type": "webhook", "config": {"url": HOOK, "method": "DELETE"}}]},
    {"actions": [{"type": "slack", "config": {"webhook_url": HOOK}}]},
    {"actions": [{"type": "discord", "config": {"message": "hi"}}]},
    {"actions": [{"type": "notification", "config": {}}]},
    {"actions": [{"type": "sms", "config": {"message": "hi"}}]},
    {"actions": "webhook"},
])
def test_invalid_rules_are_rejected(automations, project, owner, overrides):
    with pytest.raises(ValidationError):
        _webhook_rule(automations, project, owner, **overrides)
    assert automations.list_automations(project) == []


def test_create_normalizes_rule(automations, project, owner):
    rule = automations.create_automation(project, owner, {
        "name": "Done announcer",
        "trigger": "Task Updated",
        "trigger_config": {"to_status": "Done", "from_status": "Any"},
        "actions": [{"type": "Webhook", "url": HOOK}],
    })
    assert rule["trigger"] == "task_updated"
    assert rule["trigger_config"] == {"to_status": "done"}
    assert rule["actions"] == [{"type": "webhook", "config": {"url": HOOK, "method": "POST", "payload": {}}}]
    assert rule["is_active"] is True
    assert rule["runs_count"] == 0
    assert automations.get_automation(project, rule["id"])["name"] == "Done announcer"


def test_task_created_sends_webhook(automations, tasks, project, owner):
    rule = _webhook_rule(automations, project, owner)
    started = tasks.create_task(project, owner, {"title": "Started", "status": "inprogress"})
    task = tasks.create_task(project, owner, {"title": "Write copy"})

    with mock.patch("taskpilot.automations.requests.request", return_value=_response()) as request:
        assert automations.handle_event(project, "task_created", started, now=NOW) == []
        request.assert_not_called()

        results = automations.handle_event(project, "task_created", task, now=NOW)

    assert results == [{"automation_id": rule["id"], "task_id": task["id"], "success": True,
                        "actions": [{"type": "webhook", "success": True}]}]
    method, url = request.call_args.args
    assert (method, url) == ("POST", HOOK)
    payload = request.call_args.kwargs["json"]
    assert payload["title"] == "Write copy"
    assert payload["automation"]["name"] == "Forward new tasks"
    assert payload["automation"]["project"] == "Website Relaunch"
    assert request.call_args.kwargs["timeout"] == 3

    stored = automations.get_automation(project, rule["id"])
    assert stored["runs_count"] == 1
    assert stored["last_run_at"] == NOW.isoformat()
    assert stored["success_rate"] == 100.0


def test_cooldown_skips_rapid_runs(automations, tasks, project, owner):
    rule = _webhook_rule(automations, project, owner, trigger_config={})
    task = tasks.create_task(project, owner, {"title": "Write copy"})

    with mock.patch("taskpilot.automations.requests.request", return_value=_response()) as request:
        assert len(automations.handle_event(project, "task_created", task, now=NOW)) == 1
        assert automations.handle_event(project, "task_created", task, now=NOW + timedelta(minutes=1)) == []
        assert len(automations.handle_event(project, "task_created", task, now=NOW + timedelta(minutes=6))) == 1

    assert request.call_count == 2
    assert automations.get_automation(project, rule["id"])["runs_count"] == 2


def test_status_transition_notifies_the_project_channel(automations, tasks, project, owner, publisher):
    automations.create_automation(project, owner, {
        "name": "Done announcer",
        "trigger": "task_updated",
        "trigger_config": {"to_status": "done"},
        "actions": [{"type": "notification", "config": {"message": "✅ {task_title} is done ({task_assignee})"}}],
    })
    before = tasks.create_task(project, owner, {"title": "Write copy"})
    after = tasks.update_task_status(project, before["id"], "done")

    assert len(automations.handle_event(project, "task_updated", after, before, now=NOW)) == 1
    event, channel = publisher.call_args.args
    assert channel == f"project.{project['id']}"
    assert event["type"] == "automation_notification"
    assert event["message"] == "✅ Write copy is done (Olivia Owner)"

    # Saving a done task again is not a transition
    publisher.reset_mock()
    later = NOW + timedelta(hours=1)
    assert automations.handle_event(project, "task_updated", after, after, now=later) == []
    publisher.assert_not_called()


def test_from_status_must_match(automations, tasks, project, owner):
    automations.create_automation(project, owner, {
        "name": "Review finished",
        "trigger": "task_updated",
        "trigger_config": {"from_status": "review", "to_status": "done"},
        "actions": [{"type": "notification", "config": {"message": "Reviewed"}}],
    })
    task = tasks.create_task(project, owner, {"title": "Write copy", "status": "done"})
    assert automations.handle_event(project, "task_updated", task, {**task, "status": "todo"}, now=NOW) == []
    assert len(automations.handle_event(project, "task_updated", task, {**task, "status": "review"}, now=NOW)) == 1


def test_failed_actions_lower_the_success_rate(automations, tasks, project, owner):
    rule = _webhook_rule(automations, project, owner, trigger_config={})
    task = tasks.create_task(project, owner, {"title": "Write copy"})

    with mock.patch("taskpilot.automations.requests.request", side_effect=requests.ConnectionError("down")):
        result = automations.run(project, rule, task, now=NOW)
    assert result["success"] is False
    assert automations.get_automation(project, rule["id"])["success_rate"] == 0.0

    with mock.patch("taskpilot.automations.requests.request", return_value=_response(200)):
        automations.run(project, automations.get_automation(project, rule["id"]), task, force=True)
    assert automations.get_automation(project, rule["id"])["success_rate"] == 50.0

    with mock.patch("taskpilot.automations.requests.request", return_value=_response(500)):
        result = automations.run(project, rule, task, force=True)
    assert result["actions"] == [{"type": "webhook", "success": False}]


def test_chat_webhooks(automations, tasks, project, owner):
    rule = automations.create_automation(project, owner, {
        "name": "Chat",
        "trigger": "task_created",
        "actions": [
            {"type": "slack", "config": {"webhook_url": HOOK, "message": "New: {task_title}", "channel": "#dev"}},
            {"type": "discord", "config": {"webhook_url": HOOK, "message": "New: {task_title}"}},
        ],
    })
    task = tasks.create_task(project, owner, {"title": "Write copy"})

    with mock.patch("taskpilot.automations.requests.request", return_value=_response()) as request:
        assert automations.run(project, rule, task, now=NOW)["success"] is True

    slack, discord = [c.kwargs["json"] for c in request.call_args_list]
    assert slack == {"text": "New: Write copy", "username": "TaskPilot Bot", "icon_emoji": ":robot_face:",
                     "channel": "#dev"}
    assert discord == {"content": "New: Write copy", "username": "TaskPilot Bot"}


def test_paused_rules_do_not_run(automations, tasks, project, owner):
    rule = _webhook_rule(automations, project, owner)
    assert automations.toggle(project, rule["id"])["is_active"] is False
    task = tasks.create_task(project, owner, {"title": "Write copy"})

    with mock.patch("taskpilot.automations.requests.request") as request:
        assert automations.handle_event(project, "task_created", task, now=NOW) == []
    request.assert_not_called()
    assert automations.toggle(project, rule["id"])["is_active"] is True


def test_disabled_service_runs_nothing(store, tasks, project, owner):
    disabled = AutomationsService(store, tasks, enabled=False)
    _webhook_rule(disabled, project, owner)
    task = tasks.create_task(project, owner, {"title": "Write copy"})
    with mock.patch("taskpilot.automations.requests.request") as request:
        assert disabled.handle_event(project, "task_created", task) == []
        assert disabled.run_due_date_checks(project) == []
    request.assert_not_called()


def test_due_date_checks_pick_the_soonest_open_task(automations, tasks, project, owner, publisher):
    rule = automations.create_automation(project, owner, {
        "name": "Due soon",
        "trigger": "task_due_date",
        "trigger_config": {"hours_before": 48},
        "actions": [{"type": "notification", "config": {"message": "{task_title} is due {task_due_date}"}}],
    })
    today = date.today()
    tasks.create_task(project, owner, {"title": "Later", "end_date": (today + timedelta(days=5)).isoformat()})
    tasks.create_task(project, owner, {"title": "Late", "end_date": (today - timedelta(days=1)).isoformat()})
    tasks.create_task(project, owner, {"title": "Finished", "status": "done",
                                       "end_date": today.isoformat()})
    soon = tasks.create_task(project, owner, {"title": "Soon", "end_date": (today + timedelta(days=1)).isoformat()})

    results = automations.run_due_date_checks(project)
    assert [(r["automation_id"], r["task_id"]) for r in results] == [(rule["id"], soon["id"])]
    assert publisher.call_args.args[0]["message"] == f"Soon is due {soon['end_date']}"


def test_due_date_checks_without_due_tasks(automations, tasks, project, owner):
    automations.create_automation(project, owner, {
        "name": "Due soon",
        "trigger": "task_due_date",
        "actions": [{"type": "notification", "config": {"message": "due"}}],
    })
    tasks.create_task(project, owner, {"title": "Someday"})
    assert automations.run_due_date_checks(project) == []


def test_update_and_delete(automations, project, owner):
    rule = _webhook_rule(automations, project, owner)
    updated = automations.update_automation(project, rule["id"], {"name": "Renamed", "is_active": False})
    assert updated["name"] == "Renamed"
    assert updated["trigger"] == "task_created"
    assert updated["is_active"] is False

    with pytest.raises(ValidationError):
        automations.update_automation(project, rule["id"], {"trigger": "whenever"})
    with pytest.raises(NotFoundError):
        automations.update_automation(project, 999, {"name": "Ghost"})

    assert automations.delete_automation(project, rule["id"]) is True
    assert automations.delete_automation(project, rule["id"]) is False
    with pytest.raises(NotFoundError):
        automations.get_automation(project, rule["id"])
