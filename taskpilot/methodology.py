"""
Board methodology helpers.

Tasks are always stored with one of four server statuses; the board labels and
the free-text aliases users type depend on the project's methodology.
"""

import re
from typing import Any, Dict, Optional

STATUSES = ["todo", "inprogress", "review", "done"]
PRIORITIES = ["low", "medium", "high", "urgent"]

KANBAN = "kanban"
SCRUM = "scrum"
AGILE = "agile"
WATERFALL = "waterfall"
LEAN = "lean"
METHODOLOGIES = [KANBAN, SCRUM, AGILE, WATERFALL, LEAN]

STATUS_ALIASES = {
    "todo": [
        "todo", "to do", "backlog", "product backlog", "sprint backlog", "icebox", "ideas", "idea backlog",
        "requirements", "specification", "specifications", "analysis", "planning", "plan", "pending",
        "not started", "open",
    ],
    "inprogress": [
        "in progress", "inprogress", "doing", "wip", "work in progress", "active", "ongoing", "started",
        "progress", "design", "implementation", "construction", "build", "building", "development", "dev",
        "executing", "execution",
    ],
    "review": [
        "review", "code review", "peer review", "qa", "quality assurance", "testing", "test", "verification",
        "validation", "test phase", "staging", "approval", "awaiting review", "awaiting approval",
        "ready for review",
    ],
    "done": [
        "done", "complete", "completed", "finished", "closed", "resolved", "shipped", "deployed", "released",
        "maintenance", "live", "accepted", "closed out",
    ],
}

_ALIAS_LOOKUP = {alias: canonical for canonical, aliases in STATUS_ALIASES.items() for alias in aliases}

PRIORITY_ALIASES = {
    "p3": "low", "lowest": "low", "minor": "low",
    "p2": "medium", "normal": "medium", "moderate": "medium",
    "p1": "high", "major": "high",
    "p0": "urgent", "critical": "urgent", "blocker": "urgent", "highest": "urgent",
}


def normalize_phrase(text: str) -> str:
    return re.sub(r"\s+", " ", str(text).replace("_", " ").replace("-", " ").lower()).strip()


def get_methodology(project: Optional[Dict[str, Any]]) -> str:
    meta = (project or {}).get("meta") or {}
    method = str(meta.get("methodology") or "").lower() if isinstance(meta, dict) else ""
    return method if method in METHODOLOGIES else KANBAN


def status_labels(methodology: str) -> Dict[str, str]:
    """Board column label for every server status."""
    if methodology in (SCRUM, AGILE):
        return {"todo": "Backlog", "inprogress": "In Progress", "review": "Review", "done": "Done"}
    if methodology == WATERFALL:
        return {"todo": "Requirements", "inprogress": "Design", "review": "Verification", "done": "Maintenance"}
    if methodology == LEAN:
        return {"todo": "Backlog", "inprogress": "In Progress", "review": "Testing", "done": "Done"}
    return {"todo": "To Do", "inprogress": "In Progress", "review": "Review", "done": "Done"}


def phase_to_status(methodology: str) -> Dict[str, str]:
    if methodology == WATERFALL:
        return {
            "requirements": "todo", "specification": "todo", "analysis": "todo",
            "design": "inprogress", "implementation": "inprogress", "construction": "inprogress",
            "verification": "review", "validation": "review", "testing phase": "review",
            "maintenance": "done", "done": "done", "complete": "done",
        }
    if methodology == LEAN:
        return {
            "backlog": "todo", "kanban backlog": "todo",
            "todo": "inprogress", "value stream": "inprogress",
            "testing": "review", "qa": "review",
            "done": "done", "complete": "done",
        }
    return {
        "product backlog": "todo", "sprint backlog": "todo", "backlog": "todo", "todo": "todo", "to do": "todo",
        "inprogress": "inprogress", "in progress": "inprogress", "doing": "inprogress", "wip": "inprogress",
        "review": "review", "code review": "review", "qa": "review", "testing": "review",
        "done": "done", "complete": "done", "finished": "done",
    }


def resolve_status(token: Optional[str], methodology: Optional[str] = None) -> Optional[str]:
    """Map a user supplied status phrase to a server status, or None."""
    if not token:
        return None
    phrase = normalize_phrase(token)
    if phrase in STATUSES:
        return phrase
    if phrase in _ALIAS_LOOKUP:
        return _ALIAS_LOOKUP[phrase]

    methods = [methodology] if methodology else METHODOLOGIES
    for method in methods:
        mapped = phase_to_status(method).get(phrase)
        if mapped:
            return mapped
        for status, label in status_labels(method).items():
            if label.lower() == phrase:
                return status
    return None


def resolve_priority(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    phrase = normalize_phrase(token)
    if phrase in PRIORITIES:
        return phrase
    return PRIORITY_ALIASES.get(phrase)


def pretty_status(methodology: str, status: str) -> str:
    return status_labels(methodology).get(status, status)
