"""
Project Assistant Module

Entry point for the in-app assistant chat: screens the message, classifies it
as a question or a command, answers questions and turns commands into a plan
preview that the user confirms before it is executed.
"""

import re
import json
import logging
from typing import Any, Dict, List, Optional

from .command_executor import CommandExecutor
from .command_planner import CommandPlanner
from .conversation_history import ConversationHistory
from .errors import TaskPilotError
from .llm_client import LLMClient
from .question_answering import QuestionAnsweringService
from .storage import StorageError

logger = logging.getLogger(__name__)

SECRETS_RE = re.compile(r"\b(api_key|secret=|password=|token=|bearer|PRIVATE KEY)\b", re.IGNORECASE)

ACTION_PATTERNS = [
    re.compile(r"\b(?:create|add|new|make)\s+(?:a\s+)?(?:new\s+)?task\b"),
    re.compile(r"\b(?:update|change|modify|edit|set)\b"),
    re.compile(r"\b(?:move|transfer|shift)\s+(?:task|#?\d+)\b"),
    re.compile(r"\b(?:delete|remove|destroy|purge|clear|erase|drop)\b"),
    re.compile(r"\b(?:assign|delegate|give|allocate)\b"),
    re.compile(r"\b(?:create|add|make|generate)\s+(?:\d+|several|multiple|some|a\s+few)\s+(?:new\s+)?tasks?\b"),
    re.compile(r"\bgenerate\s+(?:new\s+)?tasks?\b"),
    re.compile(r"\bmark\s+(?:task\s+)?#?\d+\b"),
]

QUESTION_PATTERNS = [
    re.compile(r"^(?:what|which|who|where|when|how|why|is|are|do|does|can)\b"),
    re.compile(r"\?$"),
    re.compile(r"\b(?:show|list|display|get|find|tell)\s+(?:me\s+)?"),
    re.compile(r"\b(?:how\s+many|count|total|number\s+of)\b"),
    re.compile(r"\b(?:status|state|progress|info|details?)\s+(?:of|about|for)?\b"),
]

STRONG_ACTION_RE = re.compile(r"\b(create|add|delete|remove|update|change|move|assign|set|mark|make|generate)\b")
FOLLOW_UP_RE = re.compile(r"^(and|also|what about|how about|assigned (to|by)|belong|who|whom|whose|their|they|"
                          r"them|it|its|that|those|status|priority|due|deadline)\b")
LIKELY_QUESTION_RE = re.compile(r"\b(how many|what is|who is|members|overview|summary|report|assigned to|belong|"
                                r"their|they)\b")

ROUTER_PROMPT = """You are a routing and parsing controller for a project management assistant.
Classify the user's last message as either:
- "question": the user is asking for information (including follow-ups like "assigned to who?")
- "command": the user wants to change state (create, update, delete, assign tasks)

Return a single JSON object with ONLY these keys:
{"kind": "question" | "command", "question": "<rephrased, self-contained question>",
 "plan": {"type": "...", "selector": {}, "payload": {}, "changes": {}, "filters": {}, "updates": {}, "assignee": "..."}}

Status must be one of: todo, inprogress, review, done. Priority must be one of: low, medium, high, urgent.
Map stages: first->todo, second->inprogress, third->review, fourth->done.
If a person is mentioned ("Alice's tasks"), set filters.assigned_to_hint."""


def looks_like_secrets(text: str) -> bool:
    return bool(SECRETS_RE.search(text))


def classify_intent(message: str) -> str:
    """Rule-based question/command classification."""
    m = message.strip().lower()
    strong_action = bool(STRONG_ACTION_RE.search(m))

    if not strong_action and any(p.search(m) for p in QUESTION_PATTERNS):
        return "question"
    if any(p.search(m) for p in ACTION_PATTERNS):
        return "command"
    if FOLLOW_UP_RE.search(m) or (len(m) < 25 and "#" not in m):
        return "question"
    return "question" if LIKELY_QUESTION_RE.search(m) else "command"


def information(message: str, **extra) -> Dict[str, Any]:
    return {"type": "information", "message": message, "requires_confirmation": False, **extra}


class ProjectAssistant:
    def __init__(self, planner: CommandPlanner, executor: CommandExecutor, qa: QuestionAnsweringService,
                 history: ConversationHistory, llm: Optional[LLMClient] = None):
        self.planner = planner
        self.executor = executor
        self.qa = qa
        self.history = history
        self.llm = llm

    def handle(self, project: Dict[str, Any], user: Dict[str, Any], message: str,
               session_id: Optional[str] = None) -> Dict[str, Any]:
        message = (message or "").strip()
        if not message:
            return information("Please type a request.")
        if looks_like_secrets(message):
            return {"type": "error", "message": "I can't process content that looks like secrets.",
                    "requires_confirmation": False}

        history = []
        try:
            history = self.history.get(project["id"], session_id)
        except StorageError as e:
            logger.warning(f"History unavailable for project {project['id']}, continuing without it: {e}")

        try:
            response = self._respond(project, message, history)
        except Exception as e:
            logger.error(f"Assistant failed for project {project['id']}: {e}", exc_info=True)
            return {"type": "error", "message": "An unexpected error occurred. Please try again.",
                    "requires_confirmation": False}

        for role, content in (("user", message), ("assistant", str(response.get("message") or ""))):
            try:
                self.history.append(project["id"], session_id, role, content)
            except StorageError as e:
                logger.warning(f"Failed to record {role} message for project {project['id']}: {e}")
        return response

    def _respond(self, project: Dict[str, Any], message: str, history: List[Dict[str, Any]]) -> Dict[str, Any]:
        route = self.route(project, message, history)
        logger.info(f"Assistant classified message for project {project['id']} as {route['kind']}")

        if route["kind"] == "question":
            answer = self.qa.answer(project, message, history, route.get("question"))
            return information(answer, meta={"intent": "question"})

        result = self.planner.generate_plan(project, message, history, llm_plan=route.get("plan"))
        if not result.get("command_data"):
            return information(result["preview_message"], meta={"intent": "command_rejected"})
        return {
            "type": "command",
            "message": result["preview_message"],
            "command_data": result["command_data"],
            "requires_confirmation": True,
        }

    def route(self, project: Dict[str, Any], message: str, history: List[Dict[str, Any]]) -> Dict[str, Any]:
        """LLM routing when configured, rule-based classification otherwise."""
        if self.llm and self.llm.is_configured:
            try:
                route = self._llm_route(project, message, history)
                if route.get("kind") in ("question", "command"):
                    return route
            except TaskPilotError as e:
                logger.error(f"LLM routing failed, falling back to rules: {e}")
        return {"kind": classify_intent(message)}

    def _llm_route(self, project: Dict[str, Any], message: str, history: List[Dict[str, Any]]) -> Dict[str, Any]:
        context = self.qa.project_context(project)
        messages = [{"role": "system", "content": ROUTER_PROMPT + "\n\nCURRENT PROJECT STATE:\n"
                     + json.dumps(context, ensure_ascii=False, default=str)}]
        for entry in history[-15:]:
            if entry.get("content") and entry.get("role") in ("user", "assistant"):
                messages.append({"role": entry["role"], "content": str(entry["content"])})
        messages.append({"role": "user", "content": message})

        route = self.llm.chat_json(messages, temperature=0.1)
        if not isinstance(route.get("plan"), dict):
            route.pop("plan", None)
        return route

    def execute(self, project: Dict[str, Any], user: Dict[str, Any], plan: Dict[str, Any],
                session_id: Optional[str] = None) -> Dict[str, Any]:
        """Run a confirmed plan."""
        result = self.executor.execute(project, user, plan)
        try:
            self.history.append(project["id"], session_id, "assistant", result["message"])
        except StorageError as e:
            logger.warning(f"Failed to record execution result for project {project['id']}: {e}")
        return result
