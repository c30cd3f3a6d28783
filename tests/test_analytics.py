from datetime import date, timedelta

from taskpilot.analytics import build_snapshot


def test_snapshot_has_every_key():
    snapshot = build_snapshot([])["tasks"]
    assert snapshot["total"] == 0
    assert snapshot["by_status"] == {"todo": 0, "inprogress": 0, "review": 0, "done": 0}
    assert snapshot["by_priority"] == {"low": 0, "medium": 0, "high": 0, "urgent": 0}


def test_snapshot_counts():
    today = date(2025, 3, 10)
    tasks = [
        {"status": "todo", "priority": "high", "end_date": "2025-03-01"},
        {"status": "done", "priority": "high", "end_date": "2025-03-01", "milestone": True},
        {"status": "review", "priority": "low"},
    ]
    snapshot = build_snapshot(tasks, today)["tasks"]
    assert snapshot["total"] == 3
    assert snapshot["by_priority"]["high"] == 2
    assert snapshot["overdue"] == 1
    assert snapshot["milestones"] == 1


def test_dashboard_data(analytics, tasks, project, owner, alice):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    tasks.create_task(project, owner, {"title": "Late", "priority": "urgent", "end_date": yesterday})
    done = tasks.create_task(project, owner, {"title": "Shipped", "assignee_id": alice["id"]})
    tasks.update_task_status(project, done["id"], "done")

    data = analytics.dashboard_data(project)
    assert data["status_distribution"] == {"todo": 1, "done": 1}
    assert data["assignee_workload"]["Alice Smith"] == {"total": 1, "completed": 1, "pending": 0}
    assert data["overdue_tasks"][0]["days_overdue"] == 1
    assert data["completion_trends"] == [{"date": date.today().isoformat(), "count": 1}]
    assert data["task_summary"] == {"total": 2, "completed": 1, "pending": 1, "high_priority": 1}
    assert data["recent_activity"][0]["title"] == "Shipped"


def test_project_report(analytics, tasks, project, owner):
    today = date.today()
    dated = {**project, "start_date": (today - timedelta(days=10)).isoformat(),
             "end_date": (today + timedelta(days=10)).isoformat()}
    done = tasks.create_task(project, owner, {"title": "Shipped", "milestone": True})
    tasks.update_task_status(project, done["id"], "done")
    tasks.create_task(project, owner, {"title": "Late", "end_date": (today - timedelta(days=1)).isoformat()})
    tasks.create_task(project, owner, {"title": "Nobody", "assignee_id": None})
    tasks.create_task(project, owner, {"title": "Plain"})

    report = analytics.project_report(dated)
    assert report["progress"] == {"completion_rate": 25.0, "time_progress": 50.0, "schedule_performance_index": 0.5}
    assert report["tasks"]["overdue"] == 1
    assert report["tasks"]["without_due_date"] == 3
    assert report["tasks"]["completed_milestones"] == 1
    assert report["velocity"] == {"completed_30d": 1, "avg_completion_days": 0.0}
    assert report["resources"]["unique_assignees"] == 1
    assert report["resources"]["unassigned"] == 1

    # behind schedule 30, overdue ratio 25, unassigned ratio 10
    assert report["risk"]["score"] == 65
    assert report["risk"]["level"] == "High"
    assert report["predictions"] == {
        "estimated_completion_date": (today + timedelta(days=90)).isoformat(),
        "confidence_level": 62.5,
        "success_probability": 60,
    }
    assert report["kpis"]["quality_score"] == 95
    assert report["kpis"]["resource_utilization"] == 98
    assert report["confidence_interval"]["sample_size"] == 4
    assert report["confidence_interval"]["significance"] == "Low"


def test_project_report_without_dates_or_tasks(analytics, project):
    report = analytics.project_report(project)
    assert report["progress"] == {"completion_rate": 0.0, "time_progress": None, "schedule_performance_index": None}
    assert report["risk"] == {"score": 0, "level": "Low", "factors": []}
    assert report["predictions"]["estimated_completion_date"] == date.today().isoformat()
    assert report["kpis"]["schedule_performance"] == 1.0
    assert report["confidence_interval"]["lower"] is None


def test_project_report_without_recent_velocity(analytics, tasks, project, owner):
    tasks.create_task(project, owner, {"title": "Open"})
    report = analytics.project_report(project)
    assert report["predictions"]["estimated_completion_date"] is None
    assert report["predictions"]["success_probability"] == 100
