"""
Command Executor Module

Executes validated action plans from the assistant (or raw JSON plans posted
to the direct-json endpoint) against a project's tasks.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from .analytics import build_snapshot
from .command_planner import CommandPlanner, normalize_type
from .errors import TaskPilotError
from .methodology import PRIORITIES, STATUSES, resolve_priority
from .tasks_service import TasksService, is_overdue

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong. Please adjust and try again."


class CommandError(Exception):
    """A plan that cannot be carried out; the message is safe to show."""


class CommandExecutor:
    """
    Carries out action plans for a project.

    Every handler returns a user-facing message; ``execute`` wraps it together
    with a fresh project snapshot.
    """

    def __init__(self, tasks_service: TasksService, task_generator=None,
                 validator: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Tuple[bool, str]]] = None):
        self.tasks_service = tasks_service
        self.task_generator = task_generator
        # Every plan is validated again before a handler runs
        self.validator = validator or CommandPlanner(tasks_service).validate_plan
        logger.info("Initialized CommandExecutor")

    def execute(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> Dict[str, Any]:
        try:
            plan_type = normalize_type((plan or {}).get("type"))
            handler = {
                "create_task": self._create_task,
                "task_update": self._task_update,
                "task_delete": self._task_delete,
                "bulk_update": self._bulk_update,
                "bulk_assign": self._bulk_assign,
                "bulk_delete_overdue": self._bulk_delete_overdue,
                "bulk_delete_all": self._bulk_delete_all,
                "bulk_delete": self._bulk_delete,
                "bulk_task_generation": self._bulk_task_generation,
            }.get(plan_type)
            if not handler:
                raise CommandError(f"Unknown command type: {plan_type}")
            valid, reason = self.validator(project, plan)
            if not valid:
                raise CommandError(reason)

            message = handler(project, user, plan)
        except (CommandError, TaskPilotError) as e:
            logger.warning(f"Plan for project {project['id']} failed: {e}")
            return self._error(str(e))
        except Exception as e:
            logger.error(f"Execution failed for plan {plan}: {e}", exc_info=True)
            return self._error(GENERIC_FAILURE)

        logger.info(f"Executed {plan_type} on project {project['id']}: {message}")
        return {
            "type": "information",
            "message": message,
            "data": build_snapshot(self.tasks_service.get_project_tasks(project["id"])),
            "requires_confirmation": False,
            "meta": {"intent": "command_execution", "executed_plan": plan},
        }

    def _error(self, message: str) -> Dict[str, Any]:
        return {
            "type": "error",
            "message": message,
            "requires_confirmation": False,
            "meta": {"intent": "command_execution", "error": True},
        }

    # --- Handlers ---

    def _selected_task(self, project: Dict[str, Any], plan: Dict[str, Any]) -> Dict[str, Any]:
        try:
            task_id = int((plan.get("selector") or {}).get("id") or 0)
        except (TypeError, ValueError):
            task_id = 0
        if task_id <= 0:
            raise CommandError("A specific task ID (e.g., #123) is required for this action.")
        task = self.tasks_service.get_task(project["id"], task_id)
        if not task:
            raise CommandError(f"Task #{task_id} not found in this project.")
        return task

    def _create_task(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        payload = plan.get("payload") or {}
        title = str(payload.get("title") or "").strip()
        if not title:
            raise CommandError("A title is required to create a task.")
        task = self.tasks_service.create_task(project, user, {
            "title": title,
            "description": payload.get("description") or None,
            "status": payload.get("status") if payload.get("status") in STATUSES else "todo",
            "priority": payload.get("priority") if payload.get("priority") in PRIORITIES else "medium",
            "start_date": payload.get("start_date"),
            "end_date": payload.get("end_date"),
        })
        return f'✅ Task "{task["title"]}" created successfully.'

    def _task_update(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        task = self._selected_task(project, plan)
        changes = self.apply_updates(project, user, task, plan.get("changes") or {})
        if changes:
            self.tasks_service.update_task(project, task["id"], changes)
        return f"✏️ Task #{task['id']} updated successfully."

    def _task_delete(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        task = self._selected_task(project, plan)
        self.tasks_service.delete_task(project, task["id"])
        return f'🗑️ Task #{task["id"]} "{task["title"]}" deleted successfully.'

    def _bulk_update(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        updates = plan.get("updates") or {}
        tasks = self.tasks_service.select_tasks(project, plan.get("filters") or {})
        if "title" in updates and len(tasks) != 1:
            raise CommandError("Rename requires exactly one task selection.")

        count = 0
        for task in tasks:
            changes = self.apply_updates(project, user, task, updates)
            if changes:
                self.tasks_service.update_task(project, task["id"], changes)
                count += 1
        return f"⚡ Updated {count} task(s) successfully." if count else "No changes applied."

    def _bulk_assign(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        hint = str(plan.get("assignee") or "")
        assignee = self.tasks_service.resolve_assignee(project, hint, user)
        if not assignee:
            raise CommandError(f"Assignee '{hint}' could not be determined.")

        tasks = self.tasks_service.select_tasks(project, plan.get("filters") or {})
        for task in tasks:
            self.tasks_service.assign_task(project, task["id"], assignee["id"])
        return f"👤 Assigned {len(tasks)} task(s) to {assignee['name']}."

    def _bulk_delete_overdue(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        overdue = [t["id"] for t in self.tasks_service.get_project_tasks(project["id"]) if is_overdue(t)]
        count = self.tasks_service.delete_tasks(project, overdue) if overdue else 0
        return f"🗑️ Deleted {count} overdue task(s)."

    def _bulk_delete_all(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        ids = [t["id"] for t in self.tasks_service.get_project_tasks(project["id"])]
        count = self.tasks_service.delete_tasks(project, ids) if ids else 0
        return f"⚠️ Deleted ALL {count} task(s) in this project."

    def _bulk_delete(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        ids = [t["id"] for t in self.tasks_service.select_tasks(project, plan.get("filters") or {})]
        count = self.tasks_service.delete_tasks(project, ids) if ids else 0
        return f"🗑️ Deleted {count} task(s)."

    def _bulk_task_generation(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any]) -> str:
        if not self.task_generator:
            raise CommandError("AI task generation is not available.")
        count = max(1, min(10, int(plan.get("count") or 3)))
        context = str(plan.get("context") or "") or str(plan.get("full_message") or "")

        logger.info(f"Generating {count} tasks for project {project['id']} from the assistant")
        try:
            created = self.task_generator.generate_and_save(project, user, count, context)
        except TaskPilotError as e:
            raise CommandError(f"❌ Task generation failed: {e.message}")

        titles = ", ".join(t["title"] for t in created)
        return f"✨ Generated {len(created)} tasks successfully: {titles}"

    def apply_updates(self, project: Dict[str, Any], user: Dict[str, Any], task: Dict[str, Any],
                      updates: Dict[str, Any]) -> Dict[str, Any]:
        """Return only the fields of ``updates`` that would change ``task``."""
        changes = {}

        if updates.get("status") in STATUSES and task.get("status") != updates["status"]:
            changes["status"] = updates["status"]

        if updates.get("priority"):
            priority = resolve_priority(updates["priority"])
            if priority and task.get("priority") != priority:
                changes["priority"] = priority

        if updates.get("assignee_hint"):
            assignee = self.tasks_service.resolve_assignee(project, updates["assignee_hint"], user)
            if not assignee:
                raise CommandError(f"Assignee '{updates['assignee_hint']}' could not be determined.")
            if task.get("assignee_id") != assignee["id"]:
                changes["assignee_id"] = assignee["id"]

        for field in ("start_date", "end_date"):
            if updates.get(field) and task.get(field) != updates[field]:
                changes[field] = updates[field]

        if "description" in updates:
            text = str(updates["description"] or "")
            if updates.get("_mode") == "append_desc":
                existing = task.get("description") or ""
                text = (f"{existing}\n\n{text}" if existing else text).strip()
            if text != (task.get("description") or ""):
                changes["description"] = text

        title = str(updates.get("title") or "").strip()
        if title and title != task.get("title"):
            changes["title"] = title

        return changes

    # --- Raw JSON actions ---

    def process_llm_response(self, project: Dict[str, Any], user: Dict[str, Any], llm_response: str) -> Dict[str, Any]:
        """
        Execute a JSON plan produced outside the assistant.

        Accepts ``{"type": ...}`` plans as well as the shorter
        ``{"action": "create_task" | "update_task" | "delete_task" | "get_tasks", ...}`` form.
        """
        try:
            action_data = json.loads(llm_response)
        except json.JSONDecodeError as e:
            logger.error(f"JSON parsing error: {e}")
            return {"success": False, "error": "Invalid JSON format", "details": str(e), "attempted_json": llm_response}

        if not isinstance(action_data, dict):
            return {"success": False, "error": "Expected a JSON object"}

        plan = self._plan_from_action(action_data)
        if plan is None:
            if action_data.get("action") == "get_tasks":
                return {"success": True, "action": "get_tasks", "project_id": project["id"],
                        "data": self.tasks_service.get_project_tasks(project["id"])}
            return {"success": False, "error": "Missing 'type' or 'action' field in request"}

        result = self.execute(project, user, plan)
        if result["type"] == "error":
            return {"success": False, "error": result["message"], "project_id": project["id"]}
        return {
            "success": True,
            "action": normalize_type(plan["type"]),
            "project_id": project["id"],
            "message": result["message"],
            "data": result["data"],
        }

    def _plan_from_action(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if data.get("type"):
            return data
        action = data.get("action")
        if action == "create_task":
            return {"type": "create_task", "payload": data.get("task") or {}}
        if action == "update_task":
            return {"type": "task_update", "selector": {"id": data.get("task_id")}, "changes": data.get("updates") or {}}
        if action == "delete_task":
            return {"type": "task_delete", "selector": {"id": data.get("task_id")}}
        return None
