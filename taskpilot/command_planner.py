"""
Command Planner Module

Turns a natural-language instruction into a structured action plan for the
command executor. Rule-based parsing handles the common phrasings; anything
else goes to the LLM, whose plan is normalized and validated the same way.
Every plan is validated before a confirmation preview is produced.
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from .dates import parse_relative_date
from .llm_client import LLMClient
from .methodology import (
    PRIORITIES, PRIORITY_ALIASES, get_methodology, pretty_status, resolve_priority, resolve_status, status_labels,
)
from .tasks_service import TasksService, has_selector, is_overdue

logger = logging.getLogger(__name__)

ALLOWED_TYPES = [
    "create_task", "task_update", "task_delete", "bulk_update", "bulk_assign",
    "bulk_delete_overdue", "bulk_delete_all", "bulk_delete", "bulk_task_generation",
]

# Keys are lower-cased with "-" and "_" removed
TYPE_ALIASES = {
    "create": "create_task", "createtask": "create_task", "newtask": "create_task",
    "update": "task_update", "updatetask": "task_update", "taskupdate": "task_update",
    "edittask": "task_update", "movetask": "task_update",
    "delete": "task_delete", "deletetask": "task_delete", "taskdelete": "task_delete", "removetask": "task_delete",
    "bulkupdate": "bulk_update", "massupdate": "bulk_update",
    "assign": "bulk_assign", "bulkassign": "bulk_assign", "assignall": "bulk_assign",
    "bulkdelete": "bulk_delete", "deletefiltered": "bulk_delete",
    "deleteoverdue": "bulk_delete_overdue", "bulkdeleteoverdue": "bulk_delete_overdue",
    "deleteall": "bulk_delete_all", "clearall": "bulk_delete_all", "bulkdeleteall": "bulk_delete_all",
    "bulktaskgeneration": "bulk_task_generation", "generatetasks": "bulk_task_generation",
}

NUMBER_WORDS = {"one": 1, "two": 2, "three": 3, "four": 4, "five": 5}
NTH_STAGE = {"first": "todo", "second": "inprogress", "third": "review", "fourth": "done"}
PRIORITY_WORDS = "|".join(PRIORITIES + list(PRIORITY_ALIASES))
HINT_STOPWORDS = {
    "all", "the", "every", "each", "me", "my", "task", "tasks", "overdue", "unassigned",
    "low", "medium", "high", "urgent", "todo", "done", "review", "this", "next", "today", "tomorrow",
}

BULK_CREATION_PATTERNS = [
    re.compile(r"\b(?:create|generate|make|add)\s+(\d+|several|multiple|some)\s+tasks?\b", re.IGNORECASE),
    re.compile(r"\b(?:create|generate|make|add)\s+(?:a\s+)?(?:bunch\s+of|lot\s+of|few)\s+tasks?\b", re.IGNORECASE),
    re.compile(r"\b(?:create|generate|make)\s+tasks?\s+for\b", re.IGNORECASE),
    re.compile(r"\b(?:generate|create)\s+(?:new\s+)?tasks?\s*$", re.IGNORECASE),
]

TASK_ID_RE = re.compile(r"#(\d+)|\b(?:task|id)\s+(?:with\s+id\s+)?#?(\d+)\b", re.IGNORECASE)

MSG_NOT_UNDERSTOOD = "I couldn't understand that command. Please be more specific."
MSG_DELETE_WHICH = 'Please specify which tasks to delete (e.g., "delete #123", "delete all overdue tasks").'


def normalize_type(value: Any) -> Optional[str]:
    if not value:
        return None
    raw = str(value).strip().lower()
    compact = raw.replace("-", "").replace("_", "")
    if raw in ALLOWED_TYPES:
        return raw
    return TYPE_ALIASES.get(compact, raw)


def find_task_id(message: str) -> Optional[int]:
    match = TASK_ID_RE.search(message)
    if not match:
        return None
    return int(match.group(1) or match.group(2))


def _prefix_phrases(text: str, max_words: int = 4) -> List[str]:
    """Longest-first word prefixes of ``text``; lets 'done please' resolve as 'done'."""
    words = re.sub(r"[.,;!?]+$", "", text.strip()).split()
    return [" ".join(words[:n]) for n in range(min(len(words), max_words), 0, -1)]


def status_from_phrase(phrase: str, methodology: Optional[str] = None) -> Optional[str]:
    for candidate in _prefix_phrases(phrase):
        status = resolve_status(candidate, methodology)
        if status:
            return status
    return None


def date_from_phrase(phrase: str) -> Optional[str]:
    for candidate in _prefix_phrases(phrase):
        parsed = parse_relative_date(candidate)
        if parsed:
            return parsed.isoformat()
    return None


def parse_ordinal_window(message: str) -> Optional[Dict[str, Any]]:
    match = re.search(r"\b(first|last|top)\s+(one|two|three|four|five|\d+)\b", message, re.IGNORECASE)
    if not match:
        return None
    raw = match.group(2).lower()
    count = int(raw) if raw.isdigit() else NUMBER_WORDS.get(raw, 0)
    if count <= 0:
        return None
    return {"limit": count, "order": "desc" if match.group(1).lower() == "last" else "asc"}


class CommandPlanner:
    """Builds and validates action plans for a project."""

    def __init__(self, tasks: TasksService, llm: Optional[LLMClient] = None, qa=None):
        self.tasks = tasks
        self.llm = llm
        self.qa = qa

    # --- Entry point ---

    def generate_plan(self, project: Dict[str, Any], message: str, history: Optional[List[Dict[str, Any]]] = None,
                      llm_plan: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Return ``{"preview_message": str, "command_data": plan or None}``."""
        history = history or []
        lowered = message.strip().lower()

        # Weekly progress is informational only
        if self.qa and (re.search(r"\b(weekly|week)\b.*\b(progress|report|summary)\b", lowered)
                        or "weekly progress" in lowered):
            return {"preview_message": self.qa.weekly_progress(project), "command_data": None}

        plan = {}
        if llm_plan and llm_plan.get("type"):
            normalized = self.normalize_llm_plan(project, llm_plan)
            if self.validate_plan(project, normalized)[0]:
                plan = normalized

        if not plan:
            plan = self.compile_plan(project, message, history)

        if plan.get("_error"):
            return {"preview_message": plan["_error"], "command_data": None}

        ok, why = self.validate_plan(project, plan)
        if not ok:
            repaired = self.llm_repair_plan(project, message, plan, why)
            if not repaired or not self.validate_plan(project, repaired)[0]:
                return {"preview_message": why, "command_data": None}
            plan = repaired

        plan["type"] = normalize_type(plan.get("type"))
        return {"preview_message": self.preview(project, plan), "command_data": plan}

    # --- Rule-based parsing ---

    def compile_plan(self, project: Dict[str, Any], message: str,
                     history: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        text = message.strip()
        lowered = text.lower()
        methodology = get_methodology(project)

        ordinal = parse_ordinal_window(lowered)
        if ordinal:
            updates = self.parse_bulk_updates(project, text)
            if updates:
                return {"type": "bulk_update", "filters": {"all": True, **ordinal}, "updates": updates}

        match = re.search(r"\bmove\s+(?:all\s+)?tasks?\s+(?:to|into)\s+(?:the\s+)?(first|second|third|fourth)\s+"
                          r"(?:stage|column|phase)\b", lowered)
        if match:
            return {"type": "bulk_update", "filters": {"all": True}, "updates": {"status": NTH_STAGE[match.group(1)]}}

        if any(p.search(text) for p in BULK_CREATION_PATTERNS):
            return self.parse_bulk_task_creation(text)

        match = re.search(r"\b(?:create|add|new|make)\s+(?:a\s+)?(?:new\s+)?task\s+(?:called\s+|named\s+|titled\s+)?"
                          r"[\"']?(.+?)[\"']?$", text, re.IGNORECASE)
        if match and match.group(1).strip():
            return {
                "type": "create_task",
                "payload": {"title": match.group(1).strip(), "status": "todo", "priority": "medium"},
            }

        if re.search(r"\b(?:delete|remove|destroy|purge|drop)\b", text, re.IGNORECASE):
            return self.parse_delete(project, text)

        task_id = find_task_id(text)
        if task_id is not None:
            changes = self.parse_task_updates(project, text)
            if changes:
                return {"type": "task_update", "selector": {"id": task_id}, "changes": changes}

        filters = self.parse_filters(project, text)
        updates = self.parse_bulk_updates(project, text)
        if updates:
            filters = filters or {"all": True}
            if ordinal:
                filters.update(ordinal)
            return {"type": "bulk_update", "filters": filters, "updates": updates}

        match = re.search(r"\bassign\b.*?\bto\s+([a-z0-9._@\- ]+)", text, re.IGNORECASE)
        if match:
            plan = self.parse_assign(project, text, match.group(1))
            if ordinal and plan.get("filters") is not None:
                plan["filters"].update(ordinal)
            return plan

        # "move them to done", "mark all of these as in progress"
        match = re.search(r"\b(move|set|mark)\b.*\b(all\s+of\s+)?(them|these|those)\b.*\b(to|as)\s+([a-z\- ]{3,20})",
                          lowered)
        if match:
            status = status_from_phrase(match.group(5), methodology)
            if status:
                return {"type": "bulk_update", "filters": {"all": True}, "updates": {"status": status}}

        return self.llm_synthesis(project, text)

    def parse_task_updates(self, project: Dict[str, Any], message: str) -> Dict[str, Any]:
        updates = {}
        lowered = message.lower()
        methodology = get_methodology(project)

        if re.search(r"\bpriority\b", lowered):
            match = re.search(rf"\b({PRIORITY_WORDS})\b", lowered)
            if match and resolve_priority(match.group(1)):
                updates["priority"] = resolve_priority(match.group(1))

        match = re.search(r"\b(?:move|set|mark|status)\b.*?\b(?:to|in|as)\s+([a-z\- ]+)", lowered)
        if match:
            status = status_from_phrase(match.group(1), methodology)
            if status:
                updates["status"] = status

        match = re.search(r"\bassign\b.*?\bto\s+([a-z0-9._@\- ]+)", message, re.IGNORECASE)
        if match:
            updates["assignee_hint"] = match.group(1).strip()

        match = (re.search(r"\b(?:change|set|update)\s+(?:the\s+)?end\s+date\s+(?:for\s+task\s+#?\d+\s+)?(?:to|as)\s+(.+)$",
                           message, re.IGNORECASE)
                 or re.search(r"\b(?:due|deadline|end\s+date)\s+(?:on|by|at|to|for)?\s*(.+)$", message, re.IGNORECASE))
        if match:
            due = date_from_phrase(match.group(1))
            if due:
                updates["end_date"] = due

        match = re.search(r"\b(?:title|rename|set\s+title)\b.*?\"([^\"]+)\"", message, re.IGNORECASE)
        if match:
            updates["title"] = match.group(1).strip()

        for pattern in (
            r"\b(?:update|set|change)\s+(?:the\s+)?description\s+(?:of\s+task\s+#?\d+\s+)?(?:to|as)\s+[\"'](.+?)[\"']$",
            r"\bdescription\s+(?:to|as)\s+[\"'](.+?)[\"']$",
            r"\b(?:set|update)\s+description[:\s]+[\"'](.+?)[\"']$",
        ):
            match = re.search(pattern, message, re.IGNORECASE)
            if match:
                updates["description"] = match.group(1).strip()
                break

        return updates

    def parse_bulk_updates(self, project: Dict[str, Any], message: str) -> Dict[str, Any]:
        updates = {}
        lowered = message.lower()

        match = re.search(r"\bmove\s+.*?\bto\s+([a-z\- ]+)", lowered)
        if match:
            status = status_from_phrase(match.group(1), get_methodology(project))
            if status:
                updates["status"] = status

        match = re.search(r"\b(?:set|change|update)\s+(?:all\s+)?priority\s+(?:to|as)\s+"
                          rf"({PRIORITY_WORDS})\b", lowered)
        if match:
            updates["priority"] = resolve_priority(match.group(1))

        match = re.search(r"\b(update|set|change)\b.*\b(due|end|deadline)(?:\s+date)?\b.*\bto\s+([^.]+)$",
                          message, re.IGNORECASE)
        if match:
            due = date_from_phrase(match.group(3))
            if due:
                updates["end_date"] = due

        return updates

    def parse_filters(self, project: Dict[str, Any], message: str) -> Dict[str, Any]:
        filters = {}
        lowered = message.lower()
        methodology = get_methodology(project)

        ids = [int(i) for i in re.findall(r"#(\d+)", message)]
        if ids:
            filters["ids"] = ids

        match = (re.search(r"\b(low|medium|high|urgent)\s+priority\b", lowered)
                 or re.search(r"\b(low|medium|high|urgent)\b\s+tasks?", lowered))
        if match:
            filters["priority"] = match.group(1)

        match = (re.search(r"\b(?:with|where)\s+status\s+(?:is\s+|=\s*)?([a-z\- ]+)", lowered)
                 or re.search(r"\bstatus\s+(?:is|=)\s*([a-z\- ]+)", lowered))
        status = status_from_phrase(match.group(1), methodology) if match else None
        if not status:
            match = re.search(r"\b(todo|to do|in\s?progress|review|done|backlog)\b\s+tasks?\b", lowered)
            status = resolve_status(match.group(1), methodology) if match else None
        if status:
            filters["status"] = status

        if "overdue" in lowered:
            filters["overdue"] = True
        if "unassigned" in lowered:
            filters["unassigned"] = True

        if re.search(r"\b(my|me)\b", lowered):
            filters["assigned_to_hint"] = "__ME__"
        if re.search(r"\bowner'?s\b", lowered):
            filters["assigned_to_hint"] = "__OWNER__"
        match = re.search(r"\b([A-Za-z]+)'s\s+tasks\b", message)
        if match and match.group(1).lower() != "owner":
            filters["assigned_to_hint"] = match.group(1)
        match = re.search(r"\bfor\s+(@?[a-z0-9._\-]{2,40})\b(?!\s+priority)", lowered)
        if match and match.group(1).lstrip("@") not in HINT_STOPWORDS:
            filters["assigned_to_hint"] = match.group(1).lstrip("@")

        if re.search(r"\ball\s+tasks?\b", lowered):
            filters["all"] = True

        if "priority" in str(filters.get("assigned_to_hint", "")):
            del filters["assigned_to_hint"]
        return filters

    def parse_delete(self, project: Dict[str, Any], message: str) -> Dict[str, Any]:
        lowered = message.lower()
        task_id = find_task_id(message)
        if task_id is None:
            match = re.match(r"^\s*(?:delete|remove|destroy|purge|drop)\s+(\d+)\s*$", lowered)
            task_id = int(match.group(1)) if match else None
        if task_id is not None:
            if not self.tasks.get_task(project["id"], task_id):
                return {"_error": f"Task #{task_id} not found in this project."}
            return {"type": "task_delete", "selector": {"id": task_id}}

        if "overdue" in lowered and not re.search(r"\b(?:high|low|medium|urgent|my|unassigned)\b", lowered):
            return {"type": "bulk_delete_overdue"}
        if re.search(r"\b(?:everything|all\s+(?:the\s+)?tasks|all)\s*$", lowered):
            return {"type": "bulk_delete_all"}

        filters = self.parse_filters(project, message)
        filters.pop("all", None)
        if filters:
            return {"type": "bulk_delete", "filters": filters}
        if re.search(r"\b(?:all|everything)\b", lowered):
            return {"type": "bulk_delete_all"}
        return {"_error": MSG_DELETE_WHICH}

    def parse_assign(self, project: Dict[str, Any], message: str, assignee: str) -> Dict[str, Any]:
        assignee = assignee.strip()
        if assignee.lower() in ("me", "myself"):
            assignee = "__ME__"
        elif assignee.lower() == "owner":
            assignee = "__OWNER__"

        task_id = find_task_id(message)
        if task_id is not None:
            return {"type": "task_update", "selector": {"id": task_id}, "changes": {"assignee_hint": assignee}}

        filters = self.parse_filters(project, message)
        # Assigning never filters by the current assignee
        filters.pop("assigned_to_hint", None)
        return {"type": "bulk_assign", "filters": filters or {"all": True}, "assignee": assignee}

    def parse_bulk_task_creation(self, message: str) -> Dict[str, Any]:
        count = 3
        match = re.search(r"\b(\d+)\s+tasks?\b", message, re.IGNORECASE)
        if match:
            count = max(1, min(10, int(match.group(1))))
        elif re.search(r"\b(multiple|some)\s+tasks?\b", message, re.IGNORECASE):
            count = 4

        context = ""
        match = (re.search(r"\b(?:for|about)\s+(.+)$", message, re.IGNORECASE)
                 or re.search(r"\btasks?\s+(.+)$", message, re.IGNORECASE))
        if match:
            context = match.group(1).strip().rstrip(".")

        return {"type": "bulk_task_generation", "count": count, "context": context, "full_message": message}

    # --- LLM planning ---

    def _system_prompt(self, project: Dict[str, Any]) -> str:
        methodology = get_methodology(project)
        labels = status_labels(methodology)
        mapping = ", ".join(f"{status}={label}" for status, label in labels.items())
        return "\n".join([
            "You are a strict command planner for a project management system.",
            f"Methodology: {methodology}. Status mapping: {mapping}.",
            "Return ONLY a valid JSON object with this structure:",
            '{ "type": "create_task|task_update|task_delete|bulk_update|bulk_assign|bulk_delete", '
            '"selector": {"id": 123}, "payload": {"title": "...", "description": "..."}, '
            '"changes": {"status": "done", "priority": "high", "description": "...", "title": "...", '
            '"assignee_hint": "user", "end_date": "YYYY-MM-DD"}, "filters": {"status": "todo"}, '
            '"updates": {"priority": "high"}, "assignee": "name" }',
            "",
            "IMPORTANT RULES:",
            "1. For task updates, ALWAYS use 'task_update' type with 'selector.id' and 'changes' object.",
            "2. Description updates: Use changes.description with the new description text.",
            "3. Normalize statuses to: todo, inprogress, review, done.",
            "4. Normalize priorities to: low, medium, high, urgent.",
            "5. Use `filters.assigned_to_hint` for mentions like \"Alice's tasks\".",
            "6. For unclear input, return an empty object {}.",
            "7. ALWAYS extract task IDs from patterns like '#238', 'task 238', 'task ID 238'.",
        ])

    def normalize_llm_plan(self, project: Dict[str, Any], plan: Dict[str, Any]) -> Dict[str, Any]:
        plan = dict(plan or {})
        methodology = get_methodology(project)
        for key in ("changes", "payload", "updates", "filters"):
            section = plan.get(key)
            if not isinstance(section, dict):
                continue
            if section.get("status"):
                section["status"] = resolve_status(section["status"], methodology)
            if section.get("priority"):
                section["priority"] = resolve_priority(section["priority"])
            plan[key] = {k: v for k, v in section.items() if v is not None}
        if isinstance(plan.get("filters"), dict) and plan["filters"].get("assigned_to_hint"):
            plan["filters"].pop("all", None)
        plan["type"] = normalize_type(plan.get("type"))
        return plan

    def llm_synthesis(self, project: Dict[str, Any], message: str) -> Dict[str, Any]:
        if not self.llm or not self.llm.is_configured:
            return {"type": None}
        recent = sorted(self.tasks.get_project_tasks(project["id"]),
                        key=lambda t: t.get("updated_at") or "", reverse=True)[:20]
        recent_lines = "\n".join(f"#{t['id']}: {t['title']} ({t.get('status')}, {t.get('priority')})" for t in recent)
        system = (self._system_prompt(project) + f"\n\nRECENT TASKS FOR CONTEXT:\n{recent_lines}\n\n"
                  "Parse this user command and return the appropriate JSON action:")
        try:
            plan = self.llm.chat_json([
                {"role": "system", "content": system},
                {"role": "user", "content": message},
            ], temperature=0.1)
        except Exception as e:
            logger.error(f"LLM plan synthesis failed: {e}")
            return {"type": None}
        return self.normalize_llm_plan(project, plan)

    def llm_repair_plan(self, project: Dict[str, Any], message: str, bad_plan: Dict[str, Any],
                        why: str) -> Optional[Dict[str, Any]]:
        if not self.llm or not self.llm.is_configured:
            return None
        system = (self._system_prompt(project) + f"\nIMPORTANT: The previous plan was invalid because: {why}"
                  "\nFix the plan based on the user's message.")
        try:
            plan = self.llm.chat_json([
                {"role": "system", "content": system},
                {"role": "assistant", "content": json.dumps(bad_plan, default=str)},
                {"role": "user", "content": message},
            ], temperature=0.2)
        except Exception as e:
            logger.error(f"LLM plan repair failed: {e}")
            return None
        return self.normalize_llm_plan(project, plan)

    # --- Validation and preview ---

    def count_affected(self, project: Dict[str, Any], filters: Dict[str, Any]) -> int:
        return len(self.tasks.query_tasks(project, filters))

    def count_overdue(self, project: Dict[str, Any]) -> int:
        return sum(1 for t in self.tasks.get_project_tasks(project["id"]) if is_overdue(t))

    def validate_plan(self, project: Dict[str, Any], plan: Dict[str, Any]) -> Tuple[bool, str]:
        """Return ``(ok, reason)``; the reason is shown to the user verbatim."""
        plan_type = normalize_type((plan or {}).get("type"))
        if not plan_type:
            return False, MSG_NOT_UNDERSTOOD
        if plan_type not in ALLOWED_TYPES:
            return False, "Unsupported command type."

        if plan_type in ("task_update", "task_delete"):
            try:
                task_id = int((plan.get("selector") or {}).get("id") or 0)
            except (TypeError, ValueError):
                task_id = 0
            if task_id <= 0:
                return False, "A specific task ID (e.g., #123) is required for this action."
            if not self.tasks.get_task(project["id"], task_id):
                return False, f"Task #{task_id} was not found in this project."
            if plan_type == "task_update" and not plan.get("changes"):
                return False, 'Please specify what to change (e.g., "set priority to high").'

        if plan_type in ("bulk_update", "bulk_assign", "bulk_delete"):
            filters = plan.get("filters") or {}
            if not has_selector(filters):
                return False, 'Please specify which tasks to affect (e.g., "all overdue tasks").'
            if self.count_affected(project, filters) <= 0:
                return False, "No tasks match the specified filters."
            if plan_type == "bulk_update" and not plan.get("updates"):
                return False, 'Please specify what to update (e.g., "move to done").'
            if plan_type == "bulk_assign" and not plan.get("assignee"):
                return False, "Please specify who to assign the tasks to."

        if plan_type == "bulk_delete_overdue" and self.count_overdue(project) <= 0:
            return False, "No overdue tasks found."

        if plan_type == "bulk_delete_all" and not self.tasks.get_project_tasks(project["id"]):
            return False, "No tasks to delete."

        if plan_type == "create_task" and not str((plan.get("payload") or {}).get("title") or "").strip():
            return False, "A title is required to create a task."

        if plan_type == "bulk_task_generation":
            try:
                count = int(plan.get("count") or 0)
            except (TypeError, ValueError):
                count = 0
            if not 1 <= count <= 10:
                return False, "Task generation count must be between 1 and 10."

        return True, ""

    def updates_human(self, updates: Dict[str, Any], methodology: str) -> str:
        pieces = []
        if updates.get("status"):
            pieces.append(f'set status to "{pretty_status(methodology, updates["status"])}"')
        if updates.get("priority"):
            pieces.append(f"set priority to {updates['priority']}")
        if updates.get("assignee_hint"):
            pieces.append(f'assign to "{updates["assignee_hint"]}"')
        if updates.get("end_date"):
            pieces.append(f"set due date to {updates['end_date']}")
        if updates.get("title"):
            pieces.append(f'rename to "{updates["title"]}"')
        if "description" in updates:
            pieces.append("update the description")
        return ", ".join(pieces) if pieces else "make changes"

    def filters_human(self, filters: Dict[str, Any], methodology: str) -> str:
        if filters.get("all"):
            return "on ALL tasks"
        parts = []
        if filters.get("ids"):
            parts.append("with ids " + ", ".join(f"#{i}" for i in filters["ids"]))
        if filters.get("status"):
            parts.append(f'in "{pretty_status(methodology, filters["status"])}"')
        if filters.get("priority"):
            parts.append(f"with {filters['priority']} priority")
        if filters.get("overdue"):
            parts.append("that are overdue")
        if filters.get("unassigned"):
            parts.append("that are unassigned")
        if filters.get("assigned_to_hint"):
            parts.append(f'assigned to "{filters["assigned_to_hint"]}"')
        return f"({' and '.join(parts)})" if parts else ""

    def preview(self, project: Dict[str, Any], plan: Dict[str, Any]) -> str:
        plan_type = normalize_type(plan.get("type"))
        methodology = get_methodology(project)

        if plan_type == "create_task":
            title = (plan.get("payload") or {}).get("title") or "Untitled"
            return f'✅ Create a new task "{title}" in "{pretty_status(methodology, "todo")}".'
        if plan_type == "task_delete":
            return f"🗑️ Permanently delete task #{(plan.get('selector') or {}).get('id', 'unknown')}."
        if plan_type == "task_update":
            task_id = (plan.get("selector") or {}).get("id", "unknown")
            return f"✏️ On task #{task_id}, {self.updates_human(plan.get('changes') or {}, methodology)}."
        if plan_type in ("bulk_update", "bulk_assign", "bulk_delete"):
            filters = plan.get("filters") or {}
            count = self.count_affected(project, filters)
            head = f"⚡ This will affect {count} task{'' if count == 1 else 's'} {self.filters_human(filters, methodology)}"
            if plan_type == "bulk_update":
                return f"{head} and update them: {self.updates_human(plan.get('updates') or {}, methodology)}."
            if plan_type == "bulk_assign":
                return f'{head} and assign them to "{plan.get("assignee", "")}".'
            return f"{head} and permanently delete them."
        if plan_type == "bulk_delete_overdue":
            return f"🗑️ This will permanently delete {self.count_overdue(project)} overdue task(s)."
        if plan_type == "bulk_delete_all":
            count = len(self.tasks.get_project_tasks(project["id"]))
            return f"⚠️ This will permanently delete ALL {count} task(s) in this project."
        if plan_type == "bulk_task_generation":
            context = f' for "{plan["context"]}"' if plan.get("context") else ""
            return f"✨ This will generate {int(plan.get('count') or 3)} AI-powered task(s){context} using advanced project analysis."

        logger.warning(f"Unknown command type in preview: {plan_type}")
        return "An unknown action is planned."
