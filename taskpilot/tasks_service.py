"""
Tasks Service Module

This module provides service functions for task management in TaskPilot.
It includes functions for creating, reading, updating, and deleting tasks, as well as
specialized operations like the board view, task filtering, status updates, and statistics.
"""

import re
import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Any, Optional

from .dates import parse_date, to_date_string
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .methodology import PRIORITIES, STATUSES, get_methodology, normalize_phrase, status_labels
from .storage import YamlStore, read_yaml_file
from .users_service import UsersService

logger = logging.getLogger(__name__)

OPEN_STATUSES = ["todo", "inprogress", "review"]
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
MAX_BULK_TASKS = 20
TASK_FIELDS = [
    "title", "description", "start_date", "end_date", "assignee_id", "status",
    "priority", "milestone", "parent_id", "duplicate_of",
]


def is_overdue(task: Dict[str, Any], today: Optional[date] = None) -> bool:
    """Open tasks whose end date has passed."""
    if task.get("status") not in OPEN_STATUSES:
        return False
    end = parse_date(task.get("end_date"))
    return bool(end and end < (today or date.today()))


def filter_flag(value: Any) -> bool:
    """Boolean filter values; ``"false"`` from a model is not a truthy flag."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return value is True or value == 1


def filter_ids(values: Any) -> List[int]:
    """Task ids from a filter value, skipping anything that is not a number."""
    if not isinstance(values, (list, tuple, set)):
        values = [values]
    ids = []
    for value in values:
        try:
            ids.append(int(str(value).lstrip("#")))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid task id in filters: {value!r}")
    return ids


def has_selector(filters: Any) -> bool:
    """True when ``filters`` narrows the selection, or explicitly asks for every task."""
    if not isinstance(filters, dict):
        return False
    return bool(
        (filters.get("ids") and filter_ids(filters["ids"]))
        or filters.get("status") in STATUSES
        or filters.get("priority") in PRIORITIES
        or str(filters.get("assigned_to_hint") or "").strip()
        or any(filter_flag(filters.get(key)) for key in ("overdue", "unassigned", "all"))
    )


class TasksService:
    """Service class for task operations."""

    def __init__(self, store: YamlStore, users: UsersService):
        """Initialize TasksService with the shared store."""
        self.store = store
        self.users = users

    def _tasks_file(self, project_id: str):
        return self.store.project_dir(project_id) / "tasks.yaml"

    def _read(self, project_id: str) -> List[Dict[str, Any]]:
        return self.store.read_records(self._tasks_file(project_id), "tasks")

    def _write(self, project_id: str, tasks: List[Dict[str, Any]]):
        self.store.write_records(self._tasks_file(project_id), "tasks", tasks)

    # --- Reading ---

    def get_project_tasks(self, project_id: str) -> List[Dict[str, Any]]:
        """Get tasks for a specific project."""
        tasks = self._read(project_id)
        for task in tasks:
            task["project_id"] = project_id
        return tasks

    def get_task(self, project_id: str, task_id: Any) -> Optional[Dict[str, Any]]:
        """Get a specific task from a project."""
        try:
            task_id = int(task_id)
        except (TypeError, ValueError):
            return None
        for task in self.get_project_tasks(project_id):
            if task.get("id") == task_id:
                return task
        return None

    def can_access(self, project: Dict[str, Any], task: Dict[str, Any], user: Dict[str, Any]) -> bool:
        if project.get("user_id") == user.get("id"):
            return True
        if any(m.get("user_id") == user.get("id") for m in project.get("members") or []):
            return True
        return user.get("id") in (task.get("creator_id"), task.get("assignee_id"))

    def board(self, project: Dict[str, Any]) -> Dict[str, Any]:
        """Tasks grouped by status with the counts the board cards show."""
        project_id = project["id"]
        tasks = self.get_project_tasks(project_id)
        project_dir = self.store.project_dir(project_id)
        comments = self.store.read_records(project_dir / "comments.yaml", "comments")
        attachments = self.store.read_records(project_dir / "attachments.yaml", "attachments")
        by_id = {t["id"]: t for t in tasks}

        columns = {status: [] for status in STATUSES}
        for task in tasks:
            card = dict(task)
            card["comments_count"] = sum(1 for c in comments if c.get("task_id") == task["id"])
            task_files = [a for a in attachments if a.get("task_id") == task["id"]]
            card["attachments_count"] = len(task_files)
            images = [a for a in task_files if str(a.get("original_name", "")).lower().endswith(IMAGE_EXTENSIONS)]
            card["cover_image"] = images[0]["url"] if images else None
            parent = by_id.get(task.get("parent_id"))
            card["parent"] = {"id": parent["id"], "title": parent["title"]} if parent else None
            card["children"] = [
                {"id": t["id"], "title": t["title"], "status": t.get("status")}
                for t in tasks if t.get("parent_id") == task["id"]
            ]
            card["duplicates"] = [
                {"id": t["id"], "title": t["title"]} for t in tasks if t.get("duplicate_of") == task["id"]
            ]
            card["assignee"] = self.users.public_profile(self.users.get_user(task.get("assignee_id")))
            columns.setdefault(task.get("status", "todo"), []).append(card)

        methodology = get_methodology(project)
        return {
            "project_id": project_id,
            "methodology": methodology,
            "labels": status_labels(methodology),
            "tasks": columns,
        }

    # --- Validation ---

    def _validate(self, project: Dict[str, Any], tasks: List[Dict[str, Any]],
                  data: Dict[str, Any], task_id: Optional[int] = None) -> Dict[str, Any]:
        clean = {}
        if "title" in data or task_id is None:
            title = (data.get("title") or "").strip()
            if not title:
                raise ValidationError("The title field is required.")
            if len(title) > 255:
                raise ValidationError("The title may not be greater than 255 characters.")
            clean["title"] = title

        if "description" in data:
            clean["description"] = data.get("description") or None

        for field in ("start_date", "end_date"):
            if field in data:
                if data[field] and not parse_date(data[field]):
                    raise ValidationError(f"The {field.replace('_', ' ')} is not a valid date.")
                clean[field] = to_date_string(data[field])

        if "status" in data and data["status"] is not None:
            if data["status"] not in STATUSES:
                raise ValidationError("The selected status is invalid.")
            clean["status"] = data["status"]

        if "priority" in data and data["priority"] is not None:
            if data["priority"] not in PRIORITIES:
                raise ValidationError("The selected priority is invalid.")
            clean["priority"] = data["priority"]

        if "milestone" in data:
            clean["milestone"] = bool(data["milestone"])

        if "assignee_id" in data:
            assignee_id = data["assignee_id"]
            if assignee_id is not None:
                assignee_id = int(assignee_id)
                if not self._is_project_user(project, assignee_id):
                    raise ValidationError("The assignee must be a member of the project.")
            clean["assignee_id"] = assignee_id

        by_id = {t["id"]: t for t in tasks}
        for field, label in (("parent_id", "parent task"), ("duplicate_of", "duplicate task")):
            if field not in data:
                continue
            ref = data[field]
            if ref is not None:
                ref = int(ref)
                if ref not in by_id:
                    raise ValidationError(f"The selected {label} must belong to this project.")
                if task_id is not None and ref == task_id:
                    raise ValidationError(f"A task cannot be its own {label}.")
            clean[field] = ref

        if clean.get("parent_id") is not None and task_id is not None:
            # Walk up from the new parent; reaching this task means a cycle
            seen = set()
            current = by_id.get(clean["parent_id"])
            while current is not None and current["id"] not in seen:
                if current["id"] == task_id:
                    raise ValidationError("Circular parent relationship detected.")
                seen.add(current["id"])
                current = by_id.get(current.get("parent_id"))

        existing = by_id.get(task_id, {}) if task_id is not None else {}
        start = clean.get("start_date", existing.get("start_date"))
        end = clean.get("end_date", existing.get("end_date"))
        if start and end and end < start:
            raise ValidationError("The end date must be a date after or equal to start date.")
        return clean

    def _is_project_user(self, project: Dict[str, Any], user_id: int) -> bool:
        if project.get("user_id") == user_id:
            return True
        return any(m.get("user_id") == user_id for m in project.get("members") or [])

    # --- Writing ---

    def _new_task(self, project: Dict[str, Any], user: Dict[str, Any], clean: Dict[str, Any],
                  task_data: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now().isoformat()
        task = {
            "id": self.store.next_id("tasks"),
            "project_id": project["id"],
            "title": clean["title"],
            "description": clean.get("description"),
            "start_date": clean.get("start_date"),
            "end_date": clean.get("end_date"),
            "creator_id": user["id"],
            "assignee_id": clean["assignee_id"] if "assignee_id" in clean else user["id"],
            "status": clean.get("status") or "todo",
            "priority": clean.get("priority") or "medium",
            "milestone": clean.get("milestone", False),
            "parent_id": clean.get("parent_id"),
            "duplicate_of": clean.get("duplicate_of"),
            "created_at": now,
            "updated_at": now,
        }
        for extra in ("estimated_hours", "category", "complexity", "dependencies", "deliverables"):
            if task_data.get(extra) not in (None, "", []):
                task[extra] = task_data[extra]
        return task

    def create_task(self, project: Dict[str, Any], user: Dict[str, Any], task_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new task in the specified project."""
        return self.create_tasks(project, user, [task_data])[0]

    def create_tasks(self, project: Dict[str, Any], user: Dict[str, Any],
                     items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Validate every item first, then save them all in one write; nothing is saved if one is invalid."""
        project_id = project["id"]
        with self.store.lock:
            tasks = self._read(project_id)
            cleaned = [self._validate(project, tasks, item) for item in items]
            created = [self._new_task(project, user, clean, item) for clean, item in zip(cleaned, items)]
            tasks.extend(created)
            self._write(project_id, tasks)

        logger.info(f"Created task(s) {[t['id'] for t in created]} in project {project_id}")
        return created

    def bulk_create(self, project: Dict[str, Any], user: Dict[str, Any],
                    items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not items:
            raise ValidationError("At least one task is required.")
        if len(items) > MAX_BULK_TASKS:
            raise ValidationError(f"You can create at most {MAX_BULK_TASKS} tasks at once.")
        return self.create_tasks(project, user, items)

    def update_task(self, project: Dict[str, Any], task_id: Any, task_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update an existing task; only the fields present in ``task_data`` change."""
        project_id = project["id"]
        task_id = int(task_id)
        with self.store.lock:
            tasks = self._read(project_id)
            task = next((t for t in tasks if t.get("id") == task_id), None)
            if not task:
                return None
            fields = {k: v for k, v in task_data.items() if k in TASK_FIELDS}
            task.update(self._validate(project, tasks, fields, task_id=task_id))
            task["updated_at"] = datetime.now().isoformat()
            self._write(project_id, tasks)

        task["project_id"] = project_id
        return task

    def update_task_status(self, project: Dict[str, Any], task_id: Any, new_status: str) -> Optional[Dict[str, Any]]:
        """Update just the status of a task."""
        return self.update_task(project, task_id, {"status": new_status})

    def assign_task(self, project: Dict[str, Any], task_id: Any, assignee_id: Optional[int]) -> Optional[Dict[str, Any]]:
        return self.update_task(project, task_id, {"assignee_id": assignee_id})

    def delete_task(self, project: Dict[str, Any], task_id: Any) -> bool:
        """Delete a task with its comments and attachments."""
        return self.delete_tasks(project, [task_id]) == 1

    def delete_tasks(self, project: Dict[str, Any], task_ids: List[Any]) -> int:
        """Delete several tasks; children are detached and duplicate links cleared."""
        project_id = project["id"]
        doomed = {int(t) for t in task_ids}
        with self.store.lock:
            tasks = self._read(project_id)
            remaining = [t for t in tasks if t.get("id") not in doomed]
            deleted = len(tasks) - len(remaining)
            if not deleted:
                return 0
            now = datetime.now().isoformat()
            for task in remaining:
                if task.get("parent_id") in doomed:
                    task["parent_id"] = None
                    task["updated_at"] = now
                if task.get("duplicate_of") in doomed:
                    task["duplicate_of"] = None
                    task["updated_at"] = now
            self._write(project_id, remaining)
            self._remove_task_records(project_id, doomed)

        logger.info(f"Deleted {deleted} task(s) from project {project_id}")
        return deleted

    def _remove_task_records(self, project_id: str, task_ids: set):
        project_dir = self.store.project_dir(project_id)
        comments_file = project_dir / "comments.yaml"
        comments = self.store.read_records(comments_file, "comments")
        if comments:
            self.store.write_records(
                comments_file, "comments", [c for c in comments if c.get("task_id") not in task_ids]
            )

        attachments_file = project_dir / "attachments.yaml"
        attachments = self.store.read_records(attachments_file, "attachments")
        kept = []
        for attachment in attachments:
            if attachment.get("task_id") not in task_ids:
                kept.append(attachment)
                continue
            file_path = project_dir / "attachments" / str(attachment.get("path", ""))
            if attachment.get("path") and file_path.is_file():
                file_path.unlink()
        if attachments:
            self.store.write_records(attachments_file, "attachments", kept)

    # --- Search and queries ---

    def search_tasks(self, projects: List[Dict[str, Any]],
                     query: Optional[str] = None,
                     status: Optional[str] = None,
                     due_before: Optional[str] = None,
                     due_after: Optional[str] = None,
                     assigned_to: Optional[int] = None,
                     priority: Optional[str] = None,
                     project_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Search for tasks across ``projects`` with various filters."""
        filtered_tasks = []
        for project in projects:
            if project_id and project["id"] != project_id:
                continue
            for task in self.get_project_tasks(project["id"]):
                task["project_name"] = project.get("name")
                filtered_tasks.append(task)

        if query:
            query = query.lower()
            filtered_tasks = [
                task for task in filtered_tasks
                if query in (task.get("title") or "").lower() or query in (task.get("description") or "").lower()
            ]

        if status:
            filtered_tasks = [task for task in filtered_tasks if task.get("status") == status]

        if due_before:
            due_date = parse_date(due_before)
            if due_date:
                filtered_tasks = [
                    task for task in filtered_tasks
                    if parse_date(task.get("end_date")) and parse_date(task.get("end_date")) <= due_date
                ]
            else:
                logger.warning(f"Invalid date format for due_before: {due_before}")

        if due_after:
            due_date = parse_date(due_after)
            if due_date:
                filtered_tasks = [
                    task for task in filtered_tasks
                    if parse_date(task.get("end_date")) and parse_date(task.get("end_date")) >= due_date
                ]
            else:
                logger.warning(f"Invalid date format for due_after: {due_after}")

        if assigned_to is not None:
            filtered_tasks = [task for task in filtered_tasks if task.get("assignee_id") == assigned_to]

        if priority:
            filtered_tasks = [task for task in filtered_tasks if task.get("priority") == priority]

        return filtered_tasks

    def query_tasks(self, project: Dict[str, Any], filters: Dict[str, Any],
                    today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Select project tasks with the assistant's filter vocabulary."""
        tasks = self.get_project_tasks(project["id"])
        filters = filters or {}

        if filters.get("ids"):
            wanted = set(filter_ids(filters["ids"]))
            tasks = [t for t in tasks if t.get("id") in wanted]
        if filters.get("status") in STATUSES:
            tasks = [t for t in tasks if t.get("status") == filters["status"]]
        if filters.get("priority") in PRIORITIES:
            tasks = [t for t in tasks if t.get("priority") == filters["priority"]]
        if filter_flag(filters.get("overdue")):
            tasks = [t for t in tasks if is_overdue(t, today)]
        if filter_flag(filters.get("unassigned")):
            tasks = [t for t in tasks if not t.get("assignee_id")]
        if filters.get("assigned_to_hint"):
            assignee = self.resolve_assignee(project, filters["assigned_to_hint"])
            # An unknown name matches nothing
            wanted_id = assignee["id"] if assignee else -1
            tasks = [t for t in tasks if t.get("assignee_id") == wanted_id]

        order_by = filters.get("order_by") if filters.get("order_by") in (
            "id", "title", "end_date", "start_date", "priority", "created_at", "updated_at") else "id"
        descending = str(filters.get("order") or "asc").lower() == "desc"
        tasks.sort(key=lambda t: (t.get(order_by) is None, t.get(order_by) or ""), reverse=descending)

        try:
            limit = int(filters.get("limit") or 0)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid limit in filters: {filters.get('limit')!r}")
            limit = 0
        if limit:
            tasks = tasks[:max(1, limit)]
        return tasks

    def select_tasks(self, project: Dict[str, Any], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Tasks a bulk change applies to; filters that select nothing specific are refused."""
        if not has_selector(filters):
            raise ValidationError('Please specify which tasks to affect (e.g., "all overdue tasks").')
        return self.query_tasks(project, filters)

    # --- People ---

    def project_people(self, project: Dict[str, Any]) -> List[Dict[str, Any]]:
        people = []
        seen = set()
        for user_id in [project.get("user_id")] + [m.get("user_id") for m in project.get("members") or []]:
            user = self.users.get_user(user_id)
            if user and user["id"] not in seen:
                seen.add(user["id"])
                people.append(user)
        return people

    def resolve_assignee(self, project: Dict[str, Any], hint: Any,
                         current_user: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Resolve a free-text assignee (me, owner, id, email or name) to a project user."""
        text = str(hint or "").strip()
        text = re.sub(r"'s$", "", text.lstrip("@")).strip()
        if not text:
            return None
        lowered = text.lower()

        if lowered in ("me", "myself", "__me__"):
            return current_user
        if lowered in ("owner", "project owner", "__owner__"):
            return self.users.get_user(project.get("user_id"))

        people = self.project_people(project)
        if text.isdigit():
            return next((p for p in people if p["id"] == int(text)), None)
        if "@" in text:
            return next((p for p in people if str(p.get("email", "")).lower() == lowered), None)

        wanted = normalize_phrase(text)
        names = [(p, normalize_phrase(p.get("name", ""))) for p in people]
        for person, name in names:
            if name == wanted:
                return person
        tokens = wanted.split()
        for person, name in names:
            if tokens and all(token in name.split() for token in tokens):
                return person
        for person, name in names:
            if wanted in name:
                return person
        return None

    # --- Statistics and templates ---

    def get_task_statistics(self, tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Get statistics about the given tasks."""
        status_counts = {}
        priority_counts = {}
        assignee_counts = {}
        for task in tasks:
            status = task.get("status", "unknown")
            status_counts[status] = status_counts.get(status, 0) + 1
            priority = task.get("priority", "unknown")
            priority_counts[priority] = priority_counts.get(priority, 0) + 1
            assignee = task.get("assignee_id") or "unassigned"
            assignee_counts[assignee] = assignee_counts.get(assignee, 0) + 1

        overdue_count = 0
        due_today = 0
        due_this_week = 0
        today = date.today()
        for task in tasks:
            due_date = parse_date(task.get("end_date"))
            if not due_date:
                continue
            days_until_due = (due_date - today).days
            if days_until_due < 0 and task.get("status") != "done":
                overdue_count += 1
            elif days_until_due == 0:
                due_today += 1
            elif 0 < days_until_due <= 7:
                due_this_week += 1

        return {
            "total_tasks": len(tasks),
            "total_projects": len({task.get("project_id") for task in tasks}),
            "status_breakdown": status_counts,
            "priority_breakdown": priority_counts,
            "overdue_count": overdue_count,
            "due_today_count": due_today,
            "due_this_week_count": due_this_week,
            "assignee_breakdown": assignee_counts,
        }

    def get_task_templates(self) -> List[Dict[str, Any]]:
        """Get available task templates."""
        templates_dir = self.store.data_path / "templates" / "tasks"
        if not templates_dir.exists():
            return []

        templates = []
        for template_file in sorted(templates_dir.glob("*.yaml")):
            template_data = read_yaml_file(template_file)
            if template_data:
                template_name = template_file.stem
                templates.append({
                    "id": template_name,
                    "name": template_data.get("name", template_name),
                    "description": template_data.get("description", ""),
                    "template": template_data.get("template", {}),
                })
        return templates

    def create_task_from_template(self, project: Dict[str, Any], user: Dict[str, Any], template_id: str,
                                  task_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new task from a template."""
        if not self.store.is_safe_path(template_id):
            raise ValidationError(f"Invalid template ID: {template_id}")
        template_file = self.store.data_path / "templates" / "tasks" / f"{template_id}.yaml"
        template_data = read_yaml_file(template_file)
        if not template_data or "template" not in template_data:
            raise NotFoundError(f"Template not found: {template_id}")

        # Start with template and override with provided data
        final_task_data = dict(template_data["template"])
        final_task_data.update({k: v for k, v in task_data.items() if v is not None})

        offset = final_task_data.pop("due_in_days", None)
        if offset is not None and not final_task_data.get("end_date"):
            final_task_data["end_date"] = (date.today() + timedelta(days=int(offset))).isoformat()
        return self.create_task(project, user, final_task_data)

    def ensure_access(self, project: Dict[str, Any], task: Optional[Dict[str, Any]], user: Dict[str, Any]):
        if not task:
            raise NotFoundError("Task not found")
        if not self.can_access(project, task, user):
            raise PermissionDeniedError("You do not have access to this task.")
        return task
