from unittest import mock

import pytest

from conftest import FakeLLM
from taskpilot.errors import AINotConfiguredError, UsageLimitError, ValidationError
from taskpilot.storage import StorageError
from taskpilot.suggestions import DEFAULT_CHIPS, SuggestionService, analyze_context, sanitize_chip
from taskpilot.task_generator import (
    TaskGenerator, analyze_project_context, calculate_estimated_hours, decode_tasks, normalize_range,
    normalize_tasks,
)


def _batch(*titles, **extra):
    return {"tasks": [{"title": t, "description": "d", "priority": "High", **extra} for t in titles]}


def test_analyze_project_context():
    assert analyze_project_context({"name": "Mobile app"}) == {
        "type": "Software Development & Engineering", "complexity": "Advanced"}
    assert analyze_project_context({"name": "Simple website"})["complexity"] == "Standard"
    assert analyze_project_context({"name": "Garden"})["type"] == "General Business Project"


def test_estimated_hours_are_clamped():
    assert calculate_estimated_hours("Medium", "Development") == 32
    assert calculate_estimated_hours("Complex", "Technical Architecture") == 72
    assert calculate_estimated_hours("Simple", "Management") == 8
    assert calculate_estimated_hours("Medium", "QA", "12") == 12


def test_normalize_range_clamps_to_project():
    project = {"start_date": "2025-01-10", "end_date": "2025-01-31"}
    assert normalize_range("2025-02-05", "2025-01-01", project) == ("2025-01-10", "2025-01-31")
    assert normalize_range(None, None, project) == ("2025-01-10", "2025-01-10")


def test_normalize_tasks_drops_untitled_and_maps_priority():
    out = normalize_tasks([{"title": ""}, "junk", {"title": "Plan", "priority": "Critical"}], {})
    assert len(out) == 1
    assert out[0]["priority"] == "urgent"
    assert out[0]["category"] == "Development"


def test_decode_tasks_salvages_wrapped_json():
    assert decode_tasks('```json\n{"tasks": [{"title": "A"}]}\n```') == [{"title": "A"}]
    assert decode_tasks('Here: {"tasks": [{"title": "B"}]} hope it helps') == [{"title": "B"}]
    assert decode_tasks("nothing") == []


def test_generate_tasks_dedupes_titles(tasks, users, project):
    llm = FakeLLM(replies=[_batch("A", "a", "B", "C")])
    generator = TaskGenerator(llm, tasks, users)
    generated = generator.generate_tasks(project, 3)
    assert [t["title"] for t in generated] == ["A", "B", "C"]
    assert all(call["json_mode"] for call in llm.calls)


def test_generate_tasks_in_batches(tasks, users, project):
    first = [f"Task {i}" for i in range(1, 9)]
    llm = FakeLLM(replies=[_batch(*first), _batch("Task 8", "Task 9", "Task 10")])
    generated = TaskGenerator(llm, tasks, users).generate_tasks(project, 10)
    assert [t["title"] for t in generated] == first + ["Task 9", "Task 10"]
    assert len(llm.calls) == 2
    assert "Task 1" in llm.calls[1]["messages"][1]["content"]


def test_generate_tasks_pads_with_placeholders(tasks, users, project):
    generator = TaskGenerator(FakeLLM(replies=["not json"] * 10), tasks, users)
    generated = generator.generate_tasks(project, 2)
    assert len(generated) == 2
    assert generated[0]["title"] == "Website Relaunch: follow-up task 1"


def test_generate_requires_configured_llm(tasks, users, project):
    generator = TaskGenerator(FakeLLM(configured=False), tasks, users)
    with pytest.raises(AINotConfiguredError):
        generator.generate_tasks(project, 1)


def test_generate_and_save_charges_allowance(tasks, users, project, owner):
    generator = TaskGenerator(FakeLLM(replies=[_batch("One", "Two")]), tasks, users)
    created = generator.generate_and_save(project, owner, 2, "launch")
    assert [t["title"] for t in created] == ["One", "Two"]
    assert all(t["status"] == "todo" and t["priority"] == "high" for t in created)
    assert users.usage_summary(users.get_user(owner["id"]))["ai_tasks"]["used"] == 2

    with pytest.raises(ValidationError):
        generator.generate_and_save(project, owner, 51)


def test_usage_limit_blocks_generation(tasks, users, project):
    free = users.register_user("Free", "free@example.com", plan="free")
    users.increment_ai_task_usage(free, 4)
    generator = TaskGenerator(FakeLLM(), tasks, users)
    with pytest.raises(UsageLimitError) as exc:
        generator.generate_and_save(project, free, 2)
    assert (exc.value.limit, exc.value.used, exc.value.plan) == (5, 4, "free")


def test_preview_then_accept(tasks, users, project, owner):
    generator = TaskGenerator(FakeLLM(replies=[_batch("Fresh")]), tasks, users)
    pinned = [{"title": "Pinned", "priority": "low"}]
    preview = generator.preview(project, owner, 2, "", pinned)
    assert [t["title"] for t in preview["generated"]] == ["Pinned", "Fresh"]
    assert preview["can_accept"]
    assert tasks.get_project_tasks(project["id"]) == []

    created = generator.accept(project, owner, preview["generated"])
    assert [t["priority"] for t in created] == ["low", "high"]
    assert users.get_user(owner["id"])["ai_tasks_used"] == 2

    with pytest.raises(ValidationError):
        generator.accept(project, owner, [{"title": " "}])
    with pytest.raises(ValidationError):
        generator.preview(project, owner, 9)


def test_accept_saves_nothing_and_charges_nothing_when_a_task_is_invalid(tasks, users, project, owner):
    generator = TaskGenerator(FakeLLM(), tasks, users)
    batch = [{"title": "Good"}, {"title": "Bad", "start_date": "2026-05-10", "end_date": "2026-05-01"}]
    with pytest.raises(ValidationError):
        generator.accept(project, owner, batch)
    assert tasks.get_project_tasks(project["id"]) == []
    assert users.usage_summary(users.get_user(owner["id"]))["ai_tasks"]["used"] == 0


def test_failed_save_is_not_charged(tasks, users, project, owner):
    generator = TaskGenerator(FakeLLM(replies=[_batch("One", "Two")]), tasks, users)
    with mock.patch.object(tasks.store, "write_records", side_effect=StorageError("disk full")):
        with pytest.raises(StorageError):
            generator.generate_and_save(project, owner, 2)
    assert users.usage_summary(users.get_user(owner["id"]))["ai_tasks"]["used"] == 0


def test_sanitize_chip():
    assert sanitize_chip('"🚀 Launch plan for Q3."') == "Launch plan for Q3"
    long_chip = sanitize_chip("word " * 30)
    assert len(long_chip.split()) <= 14
    assert len(long_chip) <= 60


def test_analyze_context_timeline():
    context = analyze_context({"name": "Online shop", "start_date": "2025-01-01", "end_date": "2025-01-20"})
    assert context["type"] == "E-commerce Platform"
    assert context["timeline"].startswith("Short-term")


def test_suggestions_without_llm(tasks, project):
    service = SuggestionService(FakeLLM(configured=False), tasks)
    assert service.suggest_chips(project, max_chips=3) == DEFAULT_CHIPS[:3]


def test_suggestions_topped_up_with_fallback(tasks, project):
    llm = FakeLLM(json_replies=[{"suggestions": ["Define launch KPIs", "Define launch KPIs", ""]}])
    chips = SuggestionService(llm, tasks).suggest_chips(project, "launch", max_chips=5)
    assert chips[0] == "Define launch KPIs"
    assert len(chips) == 5
    assert len(set(chips)) == 5


def test_suggestions_survive_llm_failure(tasks, project):
    llm = FakeLLM(json_replies=[RuntimeError("boom")])
    assert SuggestionService(llm, tasks).suggest_chips(project) == DEFAULT_CHIPS
