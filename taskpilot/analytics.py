"""Project snapshots and dashboard aggregates."""

import math
from collections import Counter
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from .dates import parse_date
from .methodology import PRIORITIES, STATUSES
from .tasks_service import TasksService, is_overdue


def build_snapshot(tasks: List[Dict[str, Any]], today: Optional[date] = None) -> Dict[str, Any]:
    """Counts by status and priority; every key is present even when zero."""
    by_status = {status: 0 for status in STATUSES}
    by_priority = {priority: 0 for priority in PRIORITIES}
    for task in tasks:
        if task.get("status") in by_status:
            by_status[task["status"]] += 1
        if task.get("priority") in by_priority:
            by_priority[task["priority"]] += 1
    return {
        "tasks": {
            "total": len(tasks),
            "by_status": by_status,
            "by_priority": by_priority,
            "overdue": sum(1 for t in tasks if is_overdue(t, today)),
            "milestones": sum(1 for t in tasks if t.get("milestone")),
        }
    }


class AnalyticsService:
    def __init__(self, tasks: TasksService):
        self.tasks = tasks

    def snapshot(self, project: Dict[str, Any]) -> Dict[str, Any]:
        return build_snapshot(self.tasks.get_project_tasks(project["id"]))

    def dashboard_data(self, project: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        tasks = self.tasks.get_project_tasks(project["id"])
        users = self.tasks.users

        status_distribution = dict(Counter(t.get("status", "todo") for t in tasks))
        priority_distribution = dict(Counter(t.get("priority", "medium") for t in tasks))

        workload = {}
        for task in tasks:
            if not task.get("assignee_id"):
                continue
            user = users.get_user(task["assignee_id"])
            name = user["name"] if user else f"User {task['assignee_id']}"
            entry = workload.setdefault(name, {"total": 0, "completed": 0, "pending": 0})
            entry["total"] += 1
            if task.get("status") == "done":
                entry["completed"] += 1
            else:
                entry["pending"] += 1

        # Done tasks per day over the last 30 days
        since = today - timedelta(days=30)
        trends = Counter()
        for task in tasks:
            updated = parse_date(task.get("updated_at"))
            if task.get("status") == "done" and updated and updated >= since:
                trends[updated.isoformat()] += 1
        completion_trends = [{"date": day, "count": trends[day]} for day in sorted(trends)]

        overdue_tasks = []
        for task in tasks:
            if is_overdue(task, today):
                overdue_tasks.append({
                    "id": task["id"],
                    "title": task.get("title"),
                    "end_date": task.get("end_date"),
                    "priority": task.get("priority"),
                    "days_overdue": (today - parse_date(task["end_date"])).days,
                })
        overdue_tasks.sort(key=lambda t: t["days_overdue"], reverse=True)

        recent = sorted(tasks, key=lambda t: t.get("updated_at") or "", reverse=True)[:10]
        recent_activity = [
            {"id": t["id"], "title": t.get("title"), "status": t.get("status"), "updated_at": t.get("updated_at")}
            for t in recent
        ]

        completed = status_distribution.get("done", 0)
        return {
            "status_distribution": status_distribution,
            "priority_distribution": priority_distribution,
            "assignee_workload": workload,
            "completion_trends": completion_trends,
            "overdue_tasks": overdue_tasks,
            "recent_activity": recent_activity,
            "task_summary": {
                "total": len(tasks),
                "completed": completed,
                "pending": len(tasks) - completed,
                "high_priority": sum(1 for t in tasks if t.get("priority") in ("high", "urgent")),
            },
        }

    def project_report(self, project: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
        """
        Progress, risk and forecast figures for a project report.

        Time progress needs both project dates; the schedule performance
        index (completion rate over time progress) is None without it, and
        the completion estimate is None while nothing was finished in the
        last 30 days.
        """
        today = today or date.today()
        tasks = self.tasks.get_project_tasks(project["id"])
        dashboard = self.dashboard_data(project, today)
        counts = build_snapshot(tasks, today)["tasks"]
        total = counts["total"]
        done = [t for t in tasks if t.get("status") == "done"]

        completion_rate = round(len(done) / total * 100, 1) if total else 0.0
        time_progress = None
        start, end = parse_date(project.get("start_date")), parse_date(project.get("end_date"))
        if start and end and end > start:
            elapsed = (today - start).days
            time_progress = round(min(100.0, max(0.0, elapsed / (end - start).days * 100)), 1)
        spi = round(completion_rate / time_progress, 2) if time_progress else None

        since = today - timedelta(days=30)
        completed_30d = sum(1 for t in done if (parse_date(t.get("updated_at")) or date.min) >= since)
        durations = [
            (parse_date(t["updated_at"]) - parse_date(t["created_at"])).days
            for t in done if parse_date(t.get("updated_at")) and parse_date(t.get("created_at"))
        ]
        unassigned = sum(1 for t in tasks if not t.get("assignee_id"))

        risk = _risk_assessment(spi, counts["overdue"], unassigned, total)

        remaining = total - len(done)
        estimated = None
        if remaining == 0:
            estimated = today.isoformat()
        elif completed_30d:
            estimated = (today + timedelta(days=math.ceil(remaining / completed_30d * 30))).isoformat()

        return {
            "project": {
                "id": project["id"],
                "name": project.get("name"),
                "start_date": project.get("start_date"),
                "end_date": project.get("end_date"),
            },
            "generated_at": today.isoformat(),
            "progress": {
                "completion_rate": completion_rate,
                "time_progress": time_progress,
                "schedule_performance_index": spi,
            },
            "tasks": {
                **counts,
                "without_due_date": sum(1 for t in tasks if not t.get("end_date")),
                "completed_milestones": sum(1 for t in done if t.get("milestone")),
            },
            "velocity": {
                "completed_30d": completed_30d,
                "avg_completion_days": round(sum(durations) / len(durations), 1) if durations else None,
            },
            "resources": {
                "unique_assignees": len({t["assignee_id"] for t in tasks if t.get("assignee_id")}),
                "unassigned": unassigned,
                "workload": dashboard["assignee_workload"],
            },
            "risk": risk,
            "predictions": {
                "estimated_completion_date": estimated,
                "confidence_level": round(min(95.0, max(50.0, 100 - (100 - completion_rate) * 0.5)), 1),
                "success_probability": max(60, 100 - risk["score"]),
            },
            "confidence_interval": _confidence_interval(len(done), total),
            "kpis": {
                "delivery_performance": completion_rate,
                "schedule_performance": spi if spi is not None else 1.0,
                "quality_score": max(0, 100 - counts["overdue"] * 5),
                "resource_utilization": max(0, 100 - unassigned * 2),
                "velocity_trend": completed_30d,
            },
            "overdue_tasks": dashboard["overdue_tasks"],
            "recent_activity": dashboard["recent_activity"],
        }


def _risk_assessment(spi: Optional[float], overdue: int, unassigned: int, total: int) -> Dict[str, Any]:
    score = 0
    factors = []
    if spi is not None:
        if spi < 0.8:
            score += 30
            factors.append("Significantly behind schedule")
        elif spi < 0.9:
            score += 15
            factors.append("Slightly behind schedule")
        elif spi > 1.2:
            score += 10
            factors.append("Ahead of schedule, estimates may be loose")

    overdue_ratio = overdue / total if total else 0
    if overdue_ratio > 0.2:
        score += 25
        factors.append("High number of overdue tasks")
    elif overdue_ratio > 0.1:
        score += 15
        factors.append("Some overdue tasks")

    unassigned_ratio = unassigned / total if total else 0
    if unassigned_ratio > 0.3:
        score += 20
        factors.append("Many tasks without an assignee")
    elif unassigned_ratio > 0.15:
        score += 10
        factors.append("Some tasks without an assignee")

    level = "High" if score > 50 else "Medium" if score > 25 else "Low"
    return {"score": score, "level": level, "factors": factors}


def _confidence_interval(completed: int, total: int) -> Dict[str, Any]:
    """95% interval for the completion rate, treating each task as a trial."""
    if not total:
        return {"sample_size": 0, "lower": None, "upper": None, "significance": "Low"}
    rate = completed / total
    margin = 1.96 * math.sqrt(rate * (1 - rate) / total)
    return {
        "sample_size": total,
        "lower": round(max(0.0, rate - margin) * 100, 1),
        "upper": round(min(1.0, rate + margin) * 100, 1),
        "significance": "High" if total >= 30 else "Medium" if total >= 10 else "Low",
    }
