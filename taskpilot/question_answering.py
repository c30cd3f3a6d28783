"""
Question answering for the project assistant.

Deterministic answers cover counts, overviews, task lists, single-task
details, owner and team questions. Follow-ups and anything unmatched go to
the LLM when one is configured.
"""

import re
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from .analytics import build_snapshot
from .command_planner import find_task_id
from .dates import parse_date
from .errors import TaskPilotError
from .llm_client import LLMClient
from .methodology import PRIORITIES, STATUSES, get_methodology, status_labels
from .tasks_service import TasksService, is_overdue

logger = logging.getLogger(__name__)

MAX_ANSWER_LENGTH = 800
LIST_DETAIL_LIMIT = 10

CONTEXT_WORDS = ("they", "them", "their", "those", "these", "it", "its", "that", "this")

HELP_MESSAGE = (
    "I can help you with questions and commands. Try:\n\n"
    "**Questions:**\n"
    "• 'How many tasks are done?'\n"
    "• 'What are the task IDs?'\n"
    "• 'Show all tasks'\n"
    "• 'List overdue tasks'\n"
    "• 'Who is the owner?'\n"
    "• 'Show project overview'\n\n"
    "**Commands:**\n"
    "• 'Create task \"Fix login bug\"'\n"
    "• 'Move #42 to done'\n"
    "• 'Assign #42 to Alex'"
)


def sanitize_answer(text: str) -> str:
    """Drop code fences, collapse whitespace and cap the length."""
    cleaned = re.sub(r"```.*?```", "", text or "", flags=re.DOTALL).strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    if len(cleaned) > MAX_ANSWER_LENGTH:
        return cleaned[:MAX_ANSWER_LENGTH] + "…"
    return cleaned


def needs_conversation_context(message: str, history: List[Dict[str, Any]]) -> bool:
    lowered = message.strip().lower()
    words = set(re.findall(r"[a-z']+", lowered))
    if words.intersection(CONTEXT_WORDS) and not re.search(r"#\d+", lowered):
        return True
    if re.match(r"^(who|whom|whose|assigned to|belong|responsible|owns)", lowered) and \
            not re.search(r"owner|team|member", lowered):
        return True
    if len(lowered) < 20 and history:
        return True
    return bool(re.match(r"^(and|also|what about|how about)", lowered))


def was_discussing_tasks(history: List[Dict[str, Any]]) -> bool:
    for entry in history[-4:]:
        content = str(entry.get("content") or "").lower()
        if "task" in content or re.search(r"\bhow\s+many\b", content) or re.search(r"#\d+", content):
            return True
    return False


class QuestionAnsweringService:
    def __init__(self, tasks: TasksService, llm: Optional[LLMClient] = None):
        self.tasks = tasks
        self.llm = llm

    @property
    def _llm_ready(self) -> bool:
        return bool(self.llm and self.llm.is_configured)

    def answer(self, project: Dict[str, Any], message: str, history: Optional[List[Dict[str, Any]]] = None,
               rephrased: Optional[str] = None) -> str:
        history = history or []
        contextual = needs_conversation_context(message, history)

        if contextual and self._llm_ready:
            answer = self.answer_with_llm(project, message, history, rephrased)
            if answer:
                return answer

        answer = self.answer_deterministic(project, message, history)
        if answer:
            return answer

        if not contextual and self._llm_ready:
            answer = self.answer_with_llm(project, message, history, rephrased)
            if answer:
                return answer

        return HELP_MESSAGE

    # --- Deterministic answers ---

    def answer_deterministic(self, project: Dict[str, Any], message: str,
                             history: Optional[List[Dict[str, Any]]] = None) -> Optional[str]:
        history = history or []
        m = message.strip().lower()

        if re.search(r"\b(weekly|week)\b.*\b(progress|report|summary)\b", m):
            return self.weekly_progress(project)

        if (re.search(r"\btasks?\b.*\b(id|ids|list|show|what|which|detail|info)\b", m)
                or re.search(r"\b(what|which|show|list)\b.*\b(tasks?|ids?)\b", m)
                or re.search(r"\b(their|these|those)\s+(ids?|tasks?)\b", m)
                or (re.search(r"\bids?\b", m) and was_discussing_tasks(history))):
            if find_task_id(m) is None and not re.search(r"\bhow\s+many\b", m):
                return self.task_list(project, m)

        if (re.search(r"\bassigned\s+to\s+(who|whom)\b", m) or re.match(r"^(who|whom)\b", m)) \
                and not re.search(r"owner|owns|created|team|member", m) and was_discussing_tasks(history):
            return self.task_assignments(project)

        task_id = find_task_id(m)
        if task_id is not None:
            return self.task_details(project, task_id)

        if re.search(r"\bwho\b.*\b(owner|owns|created)\b", m) or re.search(r"\bowner\b", m):
            return self.owner(project)

        if re.search(r"\b(members?|team)\b", m):
            return self.members(project, count_only=bool(re.search(r"\bhow\s+many\b|\bcount\b", m)))

        if re.search(r"\b(todo|to do|in\s?progress|review|done|overdue|low|medium|high|urgent)\b", m) \
                or re.search(r"\bhow\s+many\b", m):
            return self.count(project, m)

        if re.search(r"\b(overview|snapshot|summary)\b", m):
            return self.overview(project)

        if re.search(r"\ball\s+tasks?\b", m):
            return self.task_list(project, "")

        if re.search(r"\bhelp\b", m):
            return HELP_MESSAGE
        return None

    def _labels(self, project: Dict[str, Any]) -> Dict[str, str]:
        return status_labels(get_methodology(project))

    def _assignee_name(self, task: Dict[str, Any]) -> str:
        user = self.tasks.users.get_user(task.get("assignee_id")) if task.get("assignee_id") else None
        return user["name"] if user else "Unassigned"

    def count(self, project: Dict[str, Any], message: str) -> str:
        snapshot = build_snapshot(self.tasks.get_project_tasks(project["id"]))["tasks"]
        compact = message.replace(" ", "")

        for priority in PRIORITIES:
            if re.search(rf"\b{priority}\b", message):
                return f"There are {snapshot['by_priority'][priority]} {priority} priority task(s)."
        if "overdue" in message:
            return f"There are {snapshot['overdue']} overdue task(s)."
        for status in STATUSES:
            if status in compact:
                label = self._labels(project)[status]
                return f"There are {snapshot['by_status'][status]} task(s) in {label}."
        return f"There are a total of {snapshot['total']} tasks in the project."

    def overview(self, project: Dict[str, Any]) -> str:
        snapshot = build_snapshot(self.tasks.get_project_tasks(project["id"]))["tasks"]
        labels = self._labels(project)

        lines = ["📊 **Project Overview**", f"Total Tasks: {snapshot['total']}", "", "By Status:"]
        lines += [f"• {labels[s]}: {snapshot['by_status'][s]}" for s in STATUSES]
        lines += ["", "By Priority:"]
        lines += [f"• {p.capitalize()}: {snapshot['by_priority'][p]}" for p in PRIORITIES]
        if snapshot["overdue"]:
            lines += ["", f"⚠️ Overdue Tasks: {snapshot['overdue']}"]
        return "\n".join(lines)

    def task_list(self, project: Dict[str, Any], message: str) -> str:
        filters = {}
        status = re.search(r"\b(todo|in\s?progress|review|done)\b", message)
        if status:
            filters["status"] = status.group(1).replace(" ", "")
        priority = re.search(r"\b(low|medium|high|urgent)\b", message)
        if priority:
            filters["priority"] = priority.group(1)
        if "overdue" in message:
            filters["overdue"] = True
        if "unassigned" in message:
            filters["unassigned"] = True

        tasks = self.tasks.query_tasks(project, filters)
        if not tasks:
            return "No tasks found matching your criteria." if filters else "No tasks found in this project."
        return self.format_task_list(project, tasks)

    def format_task_list(self, project: Dict[str, Any], tasks: List[Dict[str, Any]]) -> str:
        labels = self._labels(project)
        word = "task" if len(tasks) == 1 else "tasks"

        if len(tasks) > LIST_DETAIL_LIMIT:
            ids = ", ".join(f"#{t['id']}" for t in sorted(tasks, key=lambda t: t["id"]))
            lines = [f"Found {len(tasks)} {word}. Task IDs: {ids}", "", "Status breakdown:"]
            counts = build_snapshot(tasks)["tasks"]["by_status"]
            lines += [f"• {labels[s]}: {counts[s]}" for s in STATUSES if counts[s]]
            return "\n".join(lines)

        lines = [f"Found {len(tasks)} {word}:", ""]
        for task in tasks:
            assignee = self._assignee_name(task)
            detail = f"{labels.get(task.get('status'), task.get('status'))}, {task.get('priority')} priority, "
            detail += f"assigned to {assignee}" if assignee != "Unassigned" else "unassigned"
            if is_overdue(task):
                detail += ", **OVERDUE**"
            lines.append(f"• **Task #{task['id']}**: {task['title']} ({detail})")
        return "\n".join(lines)

    def task_assignments(self, project: Dict[str, Any]) -> str:
        tasks = self.tasks.get_project_tasks(project["id"])
        if not tasks:
            return "No tasks found in this project."
        lines = ["Task assignments:", ""]
        lines += [f"• **Task #{t['id']}** ({t['title']}): {self._assignee_name(t)}" for t in tasks]
        return "\n".join(lines)

    def task_details(self, project: Dict[str, Any], task_id: int) -> str:
        task = self.tasks.get_task(project["id"], task_id)
        if not task:
            return f"Task #{task_id} not found in this project."

        labels = self._labels(project)
        lines = [
            f"**Task #{task['id']}**: {task['title']}",
            f"• Status: {labels.get(task.get('status'), task.get('status'))}",
            f"• Priority: {task.get('priority')}",
            f"• Assigned to: {self._assignee_name(task)}",
        ]
        if task.get("end_date"):
            due = f"• Due: {task['end_date']}"
            if is_overdue(task):
                due += " (OVERDUE)"
            lines.append(due)
        if task.get("description"):
            lines.append(f"• Description: {task['description']}")
        return "\n".join(lines)

    def owner(self, project: Dict[str, Any]) -> str:
        owner = self.tasks.users.get_user(project.get("user_id"))
        if not owner:
            return "Project owner not found."
        return f"Project owner: {owner['name']} ({owner['email']})"

    def members(self, project: Dict[str, Any], count_only: bool = False) -> str:
        people = self.tasks.project_people(project)
        if count_only:
            return f"There are {len(people)} project members."
        if not people:
            return "No team members found."
        return "Team members: " + ", ".join(p["name"] for p in people)

    def weekly_progress(self, project: Dict[str, Any], today: Optional[date] = None) -> str:
        today = today or date.today()
        week_ago = today - timedelta(days=7)
        week_ahead = today + timedelta(days=7)
        tasks = self.tasks.get_project_tasks(project["id"])
        labels = self._labels(project)

        def touched_since(task, field):
            value = task.get(field)
            if not value:
                return False
            try:
                return datetime.fromisoformat(str(value)).date() >= week_ago
            except ValueError:
                return False

        completed = [t for t in tasks if t.get("status") == "done" and touched_since(t, "updated_at")]
        created = [t for t in tasks if touched_since(t, "created_at")]
        due_soon = [t for t in tasks if t.get("status") != "done" and parse_date(t.get("end_date"))
                    and today <= parse_date(t.get("end_date")) <= week_ahead]
        overdue = [t for t in tasks if is_overdue(t, today)]
        snapshot = build_snapshot(tasks, today)["tasks"]

        lines = [
            f"📈 **Weekly Progress** ({week_ago.isoformat()} to {today.isoformat()})",
            f"• Completed this week: {len(completed)}",
            f"• Created this week: {len(created)}",
            f"• In {labels['inprogress']}: {snapshot['by_status']['inprogress']}",
            f"• Due in the next 7 days: {len(due_soon)}",
            f"• Overdue: {len(overdue)}",
        ]
        if completed:
            lines += ["", "Completed:"] + [f"• #{t['id']} {t['title']}" for t in completed[:5]]
        if due_soon:
            lines += ["", "Coming up:"] + [f"• #{t['id']} {t['title']} (due {t['end_date']})" for t in due_soon[:5]]
        return "\n".join(lines)

    # --- LLM answers ---

    def project_context(self, project: Dict[str, Any]) -> Dict[str, Any]:
        tasks = self.tasks.get_project_tasks(project["id"])
        owner = self.tasks.users.get_user(project.get("user_id"))
        return {
            "project": {
                "id": project["id"],
                "name": project.get("name"),
                "description": project.get("description"),
                "methodology": get_methodology(project),
                "owner": {"name": owner["name"], "email": owner["email"]} if owner else None,
                "statistics": build_snapshot(tasks)["tasks"],
            },
            "tasks": [
                {
                    "id": t["id"],
                    "title": t["title"],
                    "status": t.get("status"),
                    "priority": t.get("priority"),
                    "assignee": self._assignee_name(t),
                    "end_date": t.get("end_date"),
                    "overdue": is_overdue(t),
                    "description": t.get("description"),
                }
                for t in tasks
            ],
        }

    def answer_with_llm(self, project: Dict[str, Any], message: str, history: List[Dict[str, Any]],
                        rephrased: Optional[str] = None) -> Optional[str]:
        context = self.project_context(project)
        system = (
            "You are a helpful project assistant with complete access to the project and task data below.\n"
            "Always answer from PROJECT_DATA. List tasks with their IDs (e.g. \"Task #123: Fix login bug\") and "
            "include assignee, status and priority when relevant. For follow-up questions, refer back to what "
            "was just discussed. Keep answers clear and concise."
        )
        messages = [
            {"role": "system", "content": system},
            {"role": "system", "content": "PROJECT_DATA:\n" + json.dumps(context, ensure_ascii=False, default=str)},
        ]
        for entry in history[-10:]:
            if entry.get("content") and entry.get("role") in ("user", "assistant"):
                messages.append({"role": entry["role"], "content": str(entry["content"])})

        question = rephrased or message
        if needs_conversation_context(message, history):
            question = f"[Follow-up question referring to previous context] {question}"
        messages.append({"role": "user", "content": question})

        logger.info(f"Answering question with LLM for project {project['id']} ({len(context['tasks'])} tasks)")
        try:
            text = self.llm.chat_completion(messages, temperature=0.2)["content"]
        except TaskPilotError as e:
            logger.error(f"LLM answer failed for project {project['id']}: {e}")
            return None
        return sanitize_answer(text) or None
