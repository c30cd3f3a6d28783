"""
Automations Module

Per-project rules that react to task changes. A rule pairs one trigger
(task_created, task_updated or task_due_date) with a list of actions: an
outgoing webhook, a Slack or Discord message, or a notification pushed to the
project's realtime channel. Message text and webhook payloads may use
placeholders such as ``{task_title}`` or ``{project_name}``.
"""

import re
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from .dates import parse_date
from .errors import NotFoundError, ValidationError
from .methodology import STATUSES
from .realtime import project_channel
from .storage import YamlStore
from .tasks_service import OPEN_STATUSES, TasksService

logger = logging.getLogger(__name__)

TRIGGERS = ("task_created", "task_updated", "task_due_date")
ACTIONS = ("webhook", "slack", "discord", "notification")
WEBHOOK_METHODS = ("GET", "POST", "PUT", "PATCH")
BOT_NAME = "TaskPilot Bot"
DEFAULT_MESSAGE = "🤖 Automation '{automation_name}' triggered for project '{project_name}'"
PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

TEMPLATES = [
    {
        "name": "Announce finished tasks",
        "description": "Tell everyone watching the board when a task is done.",
        "trigger": "task_updated",
        "trigger_config": {"to_status": "done"},
        "actions": [{"type": "notification", "config": {"message": "✅ {task_title} is done"}}],
    },
    {
        "name": "Due date reminder",
        "description": "Post to Slack a day before a task is due.",
        "trigger": "task_due_date",
        "trigger_config": {"hours_before": 24},
        "actions": [{"type": "slack", "config": {
            "webhook_url": "", "message": "⏰ {task_title} is due on {task_due_date}",
        }}],
    },
    {
        "name": "Forward new tasks",
        "description": "Send every new task to an external system.",
        "trigger": "task_created",
        "trigger_config": {},
        "actions": [{"type": "webhook", "config": {
            "url": "", "method": "POST", "payload": {"task": "{task_title}", "status": "{task_status}"},
        }}],
    },
]


def normalize_trigger(value: Any) -> str:
    """``"Task Created"`` and ``"task-created"`` both become ``task_created``."""
    return re.sub(r"[\s-]+", "_", str(value or "").strip().lower())


def render(text: str, variables: Dict[str, Any]) -> str:
    """Replace known ``{name}`` placeholders; unknown ones are left as they are."""
    return PLACEHOLDER_RE.sub(
        lambda m: str(variables[m.group(1)]) if m.group(1) in variables else m.group(0), text
    )


def render_payload(payload: Any, variables: Dict[str, Any]) -> Any:
    if isinstance(payload, dict):
        return {key: render_payload(value, variables) for key, value in payload.items()}
    if isinstance(payload, list):
        return [render_payload(value, variables) for value in payload]
    if isinstance(payload, str):
        return render(payload, variables)
    return payload


class AutomationsService:
    def __init__(self, store: YamlStore, tasks: TasksService,
                 publisher: Optional[Callable[[Dict[str, Any], Optional[str]], None]] = None,
                 cooldown_minutes: int = 5, timeout: float = 10.0, enabled: bool = True):
        self.store = store
        self.tasks = tasks
        self.publisher = publisher
        self.cooldown_minutes = cooldown_minutes
        self.timeout = timeout
        self.enabled = enabled

    def _file(self, project_id: str) -> Path:
        return self.store.project_dir(project_id) / "automations.yaml"

    def _read(self, project_id: str) -> List[Dict[str, Any]]:
        return self.store.read_records(self._file(project_id), "automations")

    def _write(self, project_id: str, automations: List[Dict[str, Any]]):
        self.store.write_records(self._file(project_id), "automations", automations)

    # --- Rules ---

    def list_automations(self, project: Dict[str, Any]) -> List[Dict[str, Any]]:
        return self._read(project["id"])

    def get_automation(self, project: Dict[str, Any], automation_id: int) -> Dict[str, Any]:
        automation = next((a for a in self._read(project["id"]) if a.get("id") == int(automation_id)), None)
        if not automation:
            raise NotFoundError(f"Automation not found: {automation_id}")
        return automation

    def templates(self) -> List[Dict[str, Any]]:
        return TEMPLATES

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("The name field is required.")
        if len(name) > 255:
            raise ValidationError("The name may not be greater than 255 characters.")

        trigger = normalize_trigger(data.get("trigger"))
        if trigger not in TRIGGERS:
            raise ValidationError(f"The trigger must be one of: {', '.join(TRIGGERS)}.")

        config = data.get("trigger_config") or {}
        if not isinstance(config, dict):
            raise ValidationError("The trigger config must be an object.")
        config = dict(config)
        if trigger == "task_created":
            columns = config.get("columns") or []
            if not isinstance(columns, list) or any(c not in STATUSES for c in columns):
                raise ValidationError(f"Columns must be a list of: {', '.join(STATUSES)}.")
            config["columns"] = columns
        elif trigger == "task_updated":
            for key in ("from_status", "to_status"):
                value = str(config.get(key) or "").strip().lower()
                if value in ("", "any"):
                    config.pop(key, None)
                elif value not in STATUSES:
                    raise ValidationError(f"The {key.replace('_', ' ')} is invalid.")
                else:
                    config[key] = value
        else:
            hours = config.get("hours_before")
            try:
                hours = 24 if hours in (None, "") else int(hours)
            except (TypeError, ValueError):
                raise ValidationError("Hours before must be a whole number.")
            if hours <= 0:
                raise ValidationError("Hours before must be positive.")
            config["hours_before"] = hours

        actions = data.get("actions") or []
        if not isinstance(actions, list):
            raise ValidationError("Actions must be a list.")

        return {
            "name": name,
            "description": data.get("description") or None,
            "trigger": trigger,
            "trigger_config": config,
            "actions": [self._validate_action(action) for action in actions],
        }

    def _validate_action(self, action: Any) -> Dict[str, Any]:
        if not isinstance(action, dict):
            raise ValidationError("Each action must be an object.")
        action_type = str(action.get("type") or "").strip().lower()
        if action_type not in ACTIONS:
            raise ValidationError(f"The action type must be one of: {', '.join(ACTIONS)}.")
        # Accept the settings either nested under "config" or next to "type"
        config = action.get("config")
        if not isinstance(config, dict):
            config = {k: v for k, v in action.items() if k != "type"}
        config = dict(config)

        if action_type == "webhook":
            if not re.match(r"^https?://", str(config.get("url") or "")):
                raise ValidationError("Webhook actions need an http(s) URL.")
            config["method"] = str(config.get("method") or "POST").upper()
            if config["method"] not in WEBHOOK_METHODS:
                raise ValidationError(f"The webhook method must be one of: {', '.join(WEBHOOK_METHODS)}.")
            if not isinstance(config.get("payload") or {}, dict):
                raise ValidationError("The webhook payload must be an object.")
            config["payload"] = config.get("payload") or {}
        elif action_type in ("slack", "discord"):
            if not re.match(r"^https?://", str(config.get("webhook_url") or "")):
                raise ValidationError(f"{action_type.title()} actions need a webhook URL.")
            if not str(config.get("message") or "").strip():
                raise ValidationError(f"{action_type.title()} actions need a message.")
        elif not str(config.get("message") or "").strip():
            raise ValidationError("Notification actions need a message.")

        return {"type": action_type, "config": config}

    def create_automation(self, project: Dict[str, Any], user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        fields = self._validate(data)
        now = datetime.now().isoformat()
        with self.store.lock:
            automations = self._read(project["id"])
            automation = {
                "id": self.store.next_id("automations"),
                "project_id": project["id"],
                **fields,
                "is_active": data.get("is_active", True) is not False,
                "runs_count": 0,
                "success_rate": 100.0,
                "last_run_at": None,
                "created_by": user["id"],
                "created_at": now,
                "updated_at": now,
            }
            automations.append(automation)
            self._write(project["id"], automations)
        logger.info(f"Created automation {automation['id']} ({fields['trigger']}) in project {project['id']}")
        return automation

    def update_automation(self, project: Dict[str, Any], automation_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        with self.store.lock:
            automations = self._read(project["id"])
            automation = next((a for a in automations if a.get("id") == int(automation_id)), None)
            if not automation:
                raise NotFoundError(f"Automation not found: {automation_id}")
            fields = self._validate({**automation, **{k: v for k, v in data.items() if v is not None}})
            automation.update(fields)
            if data.get("is_active") is not None:
                automation["is_active"] = bool(data["is_active"])
            automation["updated_at"] = datetime.now().isoformat()
            self._write(project["id"], automations)
        logger.info(f"Updated automation {automation_id} in project {project['id']}")
        return automation

    def delete_automation(self, project: Dict[str, Any], automation_id: int) -> bool:
        with self.store.lock:
            automations = self._read(project["id"])
            remaining = [a for a in automations if a.get("id") != int(automation_id)]
            if len(remaining) == len(automations):
                return False
            self._write(project["id"], remaining)
        logger.info(f"Deleted automation {automation_id} from project {project['id']}")
        return True

    def toggle(self, project: Dict[str, Any], automation_id: int) -> Dict[str, Any]:
        with self.store.lock:
            automations = self._read(project["id"])
            automation = next((a for a in automations if a.get("id") == int(automation_id)), None)
            if not automation:
                raise NotFoundError(f"Automation not found: {automation_id}")
            automation["is_active"] = not automation.get("is_active", True)
            automation["updated_at"] = datetime.now().isoformat()
            self._write(project["id"], automations)
        logger.info(f"Automation {automation_id} is now {'active' if automation['is_active'] else 'paused'}")
        return automation

    # --- Triggers ---

    def handle_event(self, project: Dict[str, Any], trigger: str, task: Dict[str, Any],
                     previous: Optional[Dict[str, Any]] = None,
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Run every active rule of ``project`` that ``trigger`` on ``task`` satisfies."""
        if not self.enabled or not task:
            return []
        results = []
        for automation in self._read(project["id"]):
            if not automation.get("is_active", True) or automation.get("trigger") != trigger:
                continue
            if not self._matches(automation, task, previous):
                continue
            result = self.run(project, automation, task, now=now)
            if result:
                results.append(result)
        return results

    def _matches(self, automation: Dict[str, Any], task: Dict[str, Any], previous: Optional[Dict[str, Any]]) -> bool:
        config = automation.get("trigger_config") or {}
        status = str(task.get("status") or "").lower()
        if automation["trigger"] == "task_created":
            columns = config.get("columns") or []
            return not columns or status in columns

        old_status = str((previous or {}).get("status") or "").lower()
        if config.get("to_status") and (status != config["to_status"] or old_status == status):
            return False
        if config.get("from_status") and old_status != config["from_status"]:
            return False
        return True

    def run_due_date_checks(self, project: Dict[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Run the due-date rules of ``project``.

        A rule fires for the open task due soonest within its ``hours_before``
        window; tasks already past their due date do not count.
        """
        if not self.enabled:
            return []
        now = now or datetime.now()
        tasks = [t for t in self.tasks.get_project_tasks(project["id"])
                 if t.get("status") in OPEN_STATUSES and parse_date(t.get("end_date"))]
        results = []
        for automation in self._read(project["id"]):
            if not automation.get("is_active", True) or automation.get("trigger") != "task_due_date":
                continue
            hours = (automation.get("trigger_config") or {}).get("hours_before", 24)
            horizon = (now + timedelta(hours=hours)).date()
            due = sorted(
                (t for t in tasks if now.date() <= parse_date(t["end_date"]) <= horizon),
                key=lambda t: parse_date(t["end_date"]),
            )
            if not due:
                logger.debug(f"No tasks due within {hours}h for automation {automation['id']}")
                continue
            result = self.run(project, automation, due[0], now=now)
            if result:
                results.append(result)
        return results

    # --- Running ---

    def in_cooldown(self, automation: Dict[str, Any], now: datetime) -> bool:
        if self.cooldown_minutes <= 0 or not automation.get("last_run_at"):
            return False
        last_run = datetime.fromisoformat(automation["last_run_at"])
        return now < last_run + timedelta(minutes=self.cooldown_minutes)

    def run(self, project: Dict[str, Any], automation: Dict[str, Any], task: Optional[Dict[str, Any]] = None,
            now: Optional[datetime] = None, force: bool = False) -> Optional[Dict[str, Any]]:
        """Execute the actions of ``automation``; None when it is still cooling down."""
        now = now or datetime.now()
        if not force and self.in_cooldown(automation, now):
            logger.info(f"Automation {automation['id']} is in cooldown period, skipping")
            return None

        variables = self.variables(project, automation, task, now)
        outcomes = []
        for action in automation.get("actions") or []:
            success = self._execute_action(project, automation, action, variables, now)
            outcomes.append({"type": action["type"], "success": success})

        success = all(o["success"] for o in outcomes)
        self._record_run(project, automation["id"], success, now)
        logger.info(f"Automation {automation['id']} ran with {len(outcomes)} action(s), success: {success}")
        return {
            "automation_id": automation["id"],
            "task_id": (task or {}).get("id"),
            "success": success,
            "actions": outcomes,
        }

    def _record_run(self, project: Dict[str, Any], automation_id: int, success: bool, now: datetime):
        with self.store.lock:
            automations = self._read(project["id"])
            automation = next((a for a in automations if a.get("id") == automation_id), None)
            if not automation:
                return
            runs = int(automation.get("runs_count") or 0) + 1
            rate = float(automation.get("success_rate", 100.0))
            automation["runs_count"] = runs
            automation["success_rate"] = round((rate * (runs - 1) / 100 + (1 if success else 0)) / runs * 100, 1)
            automation["last_run_at"] = now.isoformat()
            self._write(project["id"], automations)

    def variables(self, project: Dict[str, Any], automation: Dict[str, Any],
                  task: Optional[Dict[str, Any]], now: datetime) -> Dict[str, Any]:
        variables = {
            "project_name": project.get("name") or project["id"],
            "automation_name": automation.get("name"),
            "date": now.date().isoformat(),
            "time": now.strftime("%H:%M"),
            "datetime": now.isoformat(timespec="seconds"),
        }
        if task:
            assignee = self.tasks.users.get_user(task["assignee_id"]) if task.get("assignee_id") else None
            variables.update({
                "task_id": task.get("id"),
                "task_title": task.get("title") or "",
                "task_status": task.get("status") or "",
                "task_priority": task.get("priority") or "",
                "task_due_date": task.get("end_date") or "",
                "task_assignee": assignee["name"] if assignee else "Unassigned",
                "task_assignee_email": assignee["email"] if assignee else "",
            })
        return variables

    def _execute_action(self, project: Dict[str, Any], automation: Dict[str, Any], action: Dict[str, Any],
                        variables: Dict[str, Any], now: datetime) -> bool:
        config = action.get("config") or {}
        if action["type"] == "notification":
            return self._notify(project, automation, render(config["message"], variables))

        if action["type"] == "webhook":
            url, method = config["url"], config.get("method", "POST")
            payload = render_payload(config.get("payload") or {}, variables)
            payload["automation"] = {
                "id": automation["id"],
                "name": automation.get("name"),
                "project": variables["project_name"],
                "triggered_at": now.isoformat(),
            }
        else:
            url, method = config["webhook_url"], "POST"
            message = render(config.get("message") or DEFAULT_MESSAGE, variables)
            if action["type"] == "slack":
                payload = {"text": message, "username": BOT_NAME, "icon_emoji": ":robot_face:"}
                if config.get("channel"):
                    payload["channel"] = config["channel"]
            else:
                payload = {"content": message, "username": BOT_NAME}

        try:
            response = requests.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"{action['type'].title()} action failed for automation {automation['id']}: {e}")
            return False
        if not 200 <= response.status_code < 300:
            logger.error(f"{action['type'].title()} action for automation {automation['id']} got "
                         f"{response.status_code} - {response.text[:200]}")
            return False
        logger.info(f"{action['type'].title()} sent for automation {automation['id']} to {url}")
        return True

    def _notify(self, project: Dict[str, Any], automation: Dict[str, Any], message: str) -> bool:
        if not self.publisher:
            logger.debug(f"No publisher, dropping notification of automation {automation['id']}")
            return True
        self.publisher({
            "type": "automation_notification",
            "project_id": project["id"],
            "automation_id": automation["id"],
            "message": message,
        }, project_channel(project["id"]))
        return True
