from datetime import date, timedelta

import pytest

from taskpilot.errors import NotFoundError, PermissionDeniedError, ValidationError
from taskpilot.storage import write_yaml_file
from taskpilot.tasks_service import filter_flag, filter_ids, has_selector, is_overdue


def _yesterday():
    return (date.today() - timedelta(days=1)).isoformat()


def test_create_task_defaults(tasks, project, owner):
    task = tasks.create_task(project, owner, {"title": "  Write copy  "})
    assert task["title"] == "Write copy"
    assert task["status"] == "todo"
    assert task["priority"] == "medium"
    assert task["assignee_id"] == owner["id"]
    assert task["creator_id"] == owner["id"]
    assert tasks.get_task(project["id"], task["id"])["project_id"] == project["id"]


def test_task_ids_are_global(tasks, projects, project, owner):
    other = projects.create_project(owner, {"name": "Other"})
    first = tasks.create_task(project, owner, {"title": "A"})
    second = tasks.create_task(other, owner, {"title": "B"})
    assert second["id"] == first["id"] + 1
    assert tasks.get_task(project["id"], second["id"]) is None


@pytest.mark.parametrize("data", [
    {"title": ""},
    {"title": "x" * 256},
    {"title": "T", "status": "blocked"},
    {"title": "T", "priority": "whenever"},
    {"title": "T", "start_date": "2025-02-10", "end_date": "2025-02-01"},
    {"title": "T", "end_date": "not a date"},
])
def test_create_task_validation(tasks, project, owner, data):
    with pytest.raises(ValidationError):
        tasks.create_task(project, owner, data)


def test_assignee_must_be_on_the_project(tasks, project, owner, alice, outsider):
    task = tasks.create_task(project, owner, {"title": "T", "assignee_id": alice["id"]})
    assert task["assignee_id"] == alice["id"]
    with pytest.raises(ValidationError):
        tasks.create_task(project, owner, {"title": "T", "assignee_id": outsider["id"]})


def test_parent_and_duplicate_links(tasks, project, owner):
    parent = tasks.create_task(project, owner, {"title": "Parent"})
    child = tasks.create_task(project, owner, {"title": "Child", "parent_id": parent["id"]})
    with pytest.raises(ValidationError):
        tasks.update_task(project, parent["id"], {"parent_id": child["id"]})
    with pytest.raises(ValidationError):
        tasks.update_task(project, child["id"], {"duplicate_of": child["id"]})
    with pytest.raises(ValidationError):
        tasks.create_task(project, owner, {"title": "Orphan", "parent_id": 9999})


def test_update_only_touches_given_fields(tasks, project, owner):
    task = tasks.create_task(project, owner, {"title": "T", "description": "keep", "end_date": "2030-01-10"})
    updated = tasks.update_task(project, task["id"], {"status": "review"})
    assert updated["status"] == "review"
    assert updated["description"] == "keep"
    assert updated["end_date"] == "2030-01-10"
    assert tasks.update_task(project, 9999, {"status": "done"}) is None


def test_end_date_checked_against_existing_start(tasks, project, owner):
    task = tasks.create_task(project, owner, {"title": "T", "start_date": "2030-01-10"})
    with pytest.raises(ValidationError):
        tasks.update_task(project, task["id"], {"end_date": "2030-01-01"})


def test_delete_detaches_children_and_drops_records(tasks, comments, project, owner, store):
    parent = tasks.create_task(project, owner, {"title": "Parent"})
    child = tasks.create_task(project, owner, {"title": "Child", "parent_id": parent["id"]})
    comments.add_comment(tasks.get_task(project["id"], parent["id"]), owner, "note")

    assert tasks.delete_task(project, parent["id"])
    assert tasks.get_task(project["id"], child["id"])["parent_id"] is None
    assert store.read_records(store.project_dir(project["id"]) / "comments.yaml", "comments") == []
    assert not tasks.delete_task(project, parent["id"])


def test_bulk_create_limits(tasks, project, owner):
    with pytest.raises(ValidationError):
        tasks.bulk_create(project, owner, [])
    with pytest.raises(ValidationError):
        tasks.bulk_create(project, owner, [{"title": f"T{i}"} for i in range(21)])
    created = tasks.bulk_create(project, owner, [{"title": "A"}, {"title": "B"}])
    assert [t["title"] for t in created] == ["A", "B"]

    with pytest.raises(ValidationError):
        tasks.bulk_create(project, owner, [{"title": "C"}, {"title": " "}])
    assert [t["title"] for t in tasks.get_project_tasks(project["id"])] == ["A", "B"]


def test_board_groups_by_status_with_counts(tasks, comments, project, owner):
    parent = tasks.create_task(project, owner, {"title": "Parent"})
    tasks.create_task(project, owner, {"title": "Child", "parent_id": parent["id"], "status": "done"})
    comments.add_comment(tasks.get_task(project["id"], parent["id"]), owner, "hello")

    board = tasks.board(project)
    assert board["methodology"] == "kanban"
    assert board["labels"]["todo"] == "To Do"
    assert set(board["tasks"]) == {"todo", "inprogress", "review", "done"}
    card = board["tasks"]["todo"][0]
    assert card["comments_count"] == 1
    assert card["children"][0]["title"] == "Child"
    assert board["tasks"]["done"][0]["parent"]["id"] == parent["id"]
    assert card["assignee"]["id"] == owner["id"]


def test_is_overdue():
    assert is_overdue({"status": "todo", "end_date": _yesterday()})
    assert not is_overdue({"status": "done", "end_date": _yesterday()})
    assert not is_overdue({"status": "todo", "end_date": None})


def test_query_tasks_filters(tasks, project, owner, alice):
    a = tasks.create_task(project, owner, {"title": "A", "priority": "high", "end_date": _yesterday()})
    b = tasks.create_task(project, owner, {"title": "B", "priority": "low", "assignee_id": alice["id"]})
    c = tasks.create_task(project, owner, {"title": "C", "status": "done", "assignee_id": None})

    def ids(filters):
        return [t["id"] for t in tasks.query_tasks(project, filters)]

    assert ids({"priority": "high"}) == [a["id"]]
    assert ids({"overdue": True}) == [a["id"]]
    assert ids({"unassigned": True}) == [c["id"]]
    assert ids({"assigned_to_hint": "alice"}) == [b["id"]]
    assert ids({"assigned_to_hint": "nobody"}) == []
    assert ids({"ids": [b["id"], c["id"]]}) == [b["id"], c["id"]]
    assert ids({"all": True, "limit": 2, "order": "desc"}) == [c["id"], b["id"]]


def test_query_tasks_coerces_model_supplied_values(tasks, project, owner):
    a = tasks.create_task(project, owner, {"title": "A"})
    b = tasks.create_task(project, owner, {"title": "B"})
    assert [t["id"] for t in tasks.query_tasks(project, {"ids": ["abc", f"#{b['id']}"]})] == [b["id"]]
    assert tasks.query_tasks(project, {"ids": ["abc"]}) == []
    assert len(tasks.query_tasks(project, {"all": True, "limit": "ten"})) == 2
    assert len(tasks.query_tasks(project, {"overdue": "false"})) == 2
    assert [t["id"] for t in tasks.query_tasks(project, {"all": True, "limit": "1"})] == [a["id"]]


def test_select_tasks_needs_a_selector(tasks, project, owner):
    tasks.create_task(project, owner, {"title": "A"})
    for filters in ({}, {"colour": "red"}, {"overdue": False}, {"ids": ["x"]}):
        with pytest.raises(ValidationError):
            tasks.select_tasks(project, filters)
    assert len(tasks.select_tasks(project, {"all": "true"})) == 1


def test_filter_helpers():
    assert filter_flag(True) and filter_flag("Yes") and filter_flag(1)
    assert not (filter_flag(False) or filter_flag("false") or filter_flag(None) or filter_flag(0))
    assert filter_ids(["1", "#2", "x", None, 3]) == [1, 2, 3]
    assert filter_ids(4) == [4]
    assert has_selector({"priority": "high"})
    assert not has_selector({"priority": "whenever"})
    assert not has_selector(None)


def test_resolve_assignee(tasks, project, owner, alice):
    assert tasks.resolve_assignee(project, "me", alice)["id"] == alice["id"]
    assert tasks.resolve_assignee(project, "owner")["id"] == owner["id"]
    assert tasks.resolve_assignee(project, "@Alice")["id"] == alice["id"]
    assert tasks.resolve_assignee(project, "alice smith")["id"] == alice["id"]
    assert tasks.resolve_assignee(project, "ALICE@example.com")["id"] == alice["id"]
    assert tasks.resolve_assignee(project, str(owner["id"]))["id"] == owner["id"]
    assert tasks.resolve_assignee(project, "zed") is None
    assert tasks.resolve_assignee(project, "") is None


def test_search_tasks_across_projects(tasks, projects, project, owner):
    other = projects.create_project(owner, {"name": "Other"})
    tasks.create_task(project, owner, {"title": "Fix login", "end_date": "2030-01-05"})
    tasks.create_task(other, owner, {"title": "Login page copy", "priority": "high"})
    tasks.create_task(other, owner, {"title": "Unrelated"})

    found = tasks.search_tasks([project, other], query="login")
    assert {t["title"] for t in found} == {"Fix login", "Login page copy"}
    assert [t["title"] for t in tasks.search_tasks([project, other], query="login", priority="high")] == [
        "Login page copy"]
    assert [t["title"] for t in tasks.search_tasks([project, other], due_before="2030-01-10")] == ["Fix login"]
    assert tasks.search_tasks([project, other], project_id=other["id"], query="fix") == []


def test_statistics(tasks, project, owner):
    tasks.create_task(project, owner, {"title": "Late", "end_date": _yesterday()})
    tasks.create_task(project, owner, {"title": "Today", "end_date": date.today().isoformat()})
    tasks.create_task(project, owner, {"title": "Done", "status": "done"})
    stats = tasks.get_task_statistics(tasks.get_project_tasks(project["id"]))
    assert stats["total_tasks"] == 3
    assert stats["overdue_count"] == 1
    assert stats["due_today_count"] == 1
    assert stats["status_breakdown"] == {"todo": 2, "done": 1}


def test_templates(tasks, project, owner, store):
    write_yaml_file(store.data_path / "templates" / "tasks" / "bug.yaml", {
        "name": "Bug report",
        "description": "Track a defect",
        "template": {"title": "Bug: ", "priority": "high", "due_in_days": 3},
    })
    templates = tasks.get_task_templates()
    assert templates[0]["id"] == "bug"
    assert templates[0]["name"] == "Bug report"

    task = tasks.create_task_from_template(project, owner, "bug", {"title": "Bug: crash on save"})
    assert task["priority"] == "high"
    assert task["end_date"] == (date.today() + timedelta(days=3)).isoformat()

    with pytest.raises(NotFoundError):
        tasks.create_task_from_template(project, owner, "missing", {})
    with pytest.raises(ValidationError):
        tasks.create_task_from_template(project, owner, "../users", {})


def test_ensure_access(tasks, project, owner, outsider):
    task = tasks.create_task(project, owner, {"title": "T"})
    assert tasks.ensure_access(project, task, owner) is task
    with pytest.raises(PermissionDeniedError):
        tasks.ensure_access(project, task, outsider)
    with pytest.raises(NotFoundError):
        tasks.ensure_access(project, None, owner)
