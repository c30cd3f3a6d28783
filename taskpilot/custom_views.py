"""
Custom Views Module

AI-generated micro-applications stored per project. A view is a React
component (kept as source text) plus metadata; every project member shares
the same view for a given name. Component state saved from the browser is
embedded into the component source so the code is self-contained.
"""

import re
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError, TaskPilotError, ValidationError
from .llm_client import LLMClient
from .llm_json_extractor import extract_code_block
from .storage import YamlStore
from .tasks_service import TasksService
from .users_service import UsersService

logger = logging.getLogger(__name__)

DEFAULT_VIEW = "default"
DATA_EVENT = "custom-view-data-updated"

EMBEDDED_BLOCK_RE = re.compile(r"/\*\s*EMBEDDED_DATA_START\s*\*/.*?/\*\s*EMBEDDED_DATA_END\s*\*/", re.DOTALL)
EMBEDDED_JSON_RE = re.compile(
    r"/\*\s*EMBEDDED_DATA_START\s*\*/\s*const __EMBEDDED_DATA__ = (.*?);\s*/\*\s*EMBEDDED_DATA_END\s*\*/", re.DOTALL
)
IMPORT_LINE_RE = re.compile(r"^import\s.*?;[ \t]*$", re.MULTILINE)
GLOBAL_IMPORT_RES = [
    re.compile(r"^import\s+.*from\s*['\"].*(StyledComponents|MuiMaterial|MuiIcons|@mui).*['\"];?\s*$", re.MULTILINE),
    re.compile(r"^import\s+.*StyledComponents.*from.*['\"].*['\"];?\s*$", re.MULTILINE),
]
VIEW_NAME_RE = re.compile(r"^[a-zA-Z0-9 _-]{1,100}$")

GENERATOR_SYSTEM_PROMPT = (
    "You are an expert React developer. You create ONLY React/JSX components. Return ONLY valid React "
    "component code with NO explanations. The code should start with imports and end with the export "
    "default statement."
)

FALLBACK_COMPONENT = """import React, { useMemo } from 'react';

export default function GeneratedMicroApp({ project, tasks = [] }) {
    const [notes, setNotes] = useEmbeddedData('notes', []);
    const summary = useMemo(() => {
        const statuses = ['todo', 'inprogress', 'review', 'done'];
        return statuses.map((status) => ({
            status,
            count: tasks.filter((task) => (task?.status || 'todo') === status).length,
        }));
    }, [tasks]);

    return (
        <div className="p-4">
            <h2 className="text-lg font-semibold">{project?.name || 'Project'} overview</h2>
            <ul>
                {summary.map((item) => (
                    <li key={item.status}>{item.status}: {item.count}</li>
                ))}
            </ul>
            <p>{notes.length} saved note(s)</p>
        </div>
    );
}
"""


def data_updated_event(project_id: str, view_name: str, data_key: str, data: Any,
                       user: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "event": DATA_EVENT,
        "channel": view_channel(project_id, view_name),
        "project_id": project_id,
        "view_name": view_name,
        "data_key": data_key,
        "data": data,
        "user": {"id": user["id"], "name": user["name"], "email": user["email"]} if user else None,
        "timestamp": datetime.now().isoformat(),
    }


def view_channel(project_id: str, view_name: str) -> str:
    return f"custom-view.{project_id}.{view_name}"


def embed_data(code: str, data_key: str, data: Any) -> str:
    """Store ``data`` under ``data_key`` in the component's embedded data block."""
    existing = {}
    match = EMBEDDED_JSON_RE.search(code)
    if match:
        try:
            parsed = json.loads(match.group(1))
            if isinstance(parsed, dict):
                existing = parsed
        except json.JSONDecodeError:
            logger.warning("Existing embedded data is not valid JSON, replacing it")
    existing[data_key] = data

    block = (
        "/* EMBEDDED_DATA_START */ const __EMBEDDED_DATA__ = "
        f"{json.dumps(existing, ensure_ascii=False, indent=2)}; /* EMBEDDED_DATA_END */"
    )
    if match:
        return code[:match.start()] + block + code[match.end():]

    code = EMBEDDED_BLOCK_RE.sub("", code)
    imports = list(IMPORT_LINE_RE.finditer(code))
    if imports:
        position = imports[-1].end()
        return code[:position] + "\n" + block + "\n" + code[position:]
    return block + "\n" + code


def enhance_component(code: str) -> str:
    """Strip imports of globally provided libraries and make sure there is a default export."""
    for pattern in GLOBAL_IMPORT_RES:
        code = pattern.sub("", code)
    code = re.sub(r"\n{3,}", "\n\n", code).strip() + "\n"

    if not re.search(r"\bexport\s+default\b", code):
        names = re.findall(r"^(?:function|const)\s+([A-Z]\w*)", code, re.MULTILINE)
        if names:
            code += f"\nexport default {names[-1]};\n"
        else:
            logger.warning("Generated component had no component declaration, using fallback")
            code = FALLBACK_COMPONENT
    return code


class CustomViewsService:
    def __init__(self, store: YamlStore, users: UsersService, tasks: TasksService, llm: Optional[LLMClient] = None,
                 publisher: Optional[Callable[[Dict[str, Any], Optional[str]], None]] = None):
        self.store = store
        self.users = users
        self.tasks = tasks
        self.llm = llm
        self.publisher = publisher

    def _views_file(self, project_id: str) -> Path:
        return self.store.project_dir(project_id) / "custom_views.yaml"

    def _read(self, project_id: str) -> List[Dict[str, Any]]:
        return self.store.read_records(self._views_file(project_id), "custom_views")

    def _write(self, project_id: str, views: List[Dict[str, Any]]):
        self.store.write_records(self._views_file(project_id), "custom_views", views)

    def _check_name(self, name: Optional[str]) -> str:
        name = (name or DEFAULT_VIEW).strip()
        if not VIEW_NAME_RE.match(name):
            raise ValidationError("View name may only contain letters, numbers, spaces, '-' and '_'.")
        return name

    def _publish(self, project: Dict[str, Any], view_name: str, data_key: str, data: Any,
                 user: Optional[Dict[str, Any]]):
        if self.publisher:
            event = data_updated_event(project["id"], view_name, data_key, data, user)
            self.publisher(event, event["channel"])

    # --- Reading ---

    def list_views(self, project: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [
            {k: v for k, v in view.items() if k != "html_content"}
            for view in sorted(self._read(project["id"]), key=lambda v: v.get("name", ""))
        ]

    def get_view(self, project: Dict[str, Any], name: Optional[str] = None, touch: bool = True) -> Optional[Dict[str, Any]]:
        name = self._check_name(name)
        with self.store.lock:
            views = self._read(project["id"])
            view = next((v for v in views if v.get("name") == name and v.get("is_active", True)), None)
            if view and touch:
                view["last_accessed_at"] = datetime.now().isoformat()
                self._write(project["id"], views)
        return view

    # --- Writing ---

    def upsert(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str], code: str,
               metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        name = self._check_name(name)
        now = datetime.now().isoformat()
        with self.store.lock:
            views = self._read(project["id"])
            view = next((v for v in views if v.get("name") == name), None)
            if view:
                merged = dict(view.get("metadata") or {})
                merged.update(metadata or {})
                view.update(html_content=code, metadata=merged, is_active=True, last_accessed_at=now, updated_at=now)
            else:
                view = {
                    "id": self.store.next_id("custom_views"),
                    "project_id": project["id"],
                    "user_id": user["id"],
                    "name": name,
                    "html_content": code,
                    "metadata": metadata or {},
                    "is_active": True,
                    "last_accessed_at": now,
                    "created_at": now,
                    "updated_at": now,
                }
                views.append(view)
            self._write(project["id"], views)
        logger.info(f"Saved custom view '{name}' ({view['id']}) for project {project['id']}")
        return view

    def create(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str], code: str) -> Dict[str, Any]:
        name = self._check_name(name)
        if not (code or "").strip():
            raise ValidationError("Component code cannot be empty")
        if self.get_view(project, name, touch=False):
            raise ValidationError(f"A custom view named '{name}' already exists.")
        return self.upsert(project, user, name, code)

    def delete(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str]) -> bool:
        name = self._check_name(name)
        with self.store.lock:
            views = self._read(project["id"])
            remaining = [v for v in views if v.get("name") != name]
            if len(remaining) == len(views):
                return False
            self._write(project["id"], remaining)
        logger.info(f"Deleted custom view '{name}' from project {project['id']}")
        self._publish(project, name, "component", {"deleted": True}, user)
        return True

    def save_component(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str],
                       code: str) -> Dict[str, Any]:
        if not (code or "").strip():
            raise TaskPilotError("Component code cannot be empty")
        view = self.upsert(project, user, name, code, {"saved_at": datetime.now().isoformat()})
        self._publish(project, view["name"], "component",
                      {"custom_view_id": view["id"], "saved_at": view["updated_at"]}, user)
        return {
            "success": True,
            "message": "Custom micro-application saved successfully",
            "custom_view_id": view["id"],
        }

    def save_data(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str], data_key: Optional[str],
                  data: Any) -> Dict[str, Any]:
        name = self._check_name(name)
        data_key = data_key or "default"
        saved_at = datetime.now().isoformat()
        with self.store.lock:
            views = self._read(project["id"])
            view = next((v for v in views if v.get("name") == name and v.get("is_active", True)), None)
            if not view:
                logger.warning(f"Custom view '{name}' not found in project {project['id']}; data not saved")
                return {"success": False, "message": "Custom view not found; data not saved"}

            view["html_content"] = embed_data(view.get("html_content") or "", data_key, data)
            metadata = view.setdefault("metadata", {})
            metadata.setdefault("component_data", {})[data_key] = {"data": data, "saved_at": saved_at}
            view["updated_at"] = saved_at
            self._write(project["id"], views)

        logger.info(f"Saved data key '{data_key}' for custom view '{name}' in project {project['id']}")
        self._publish(project, name, data_key, data, user)
        return {"success": True, "custom_view_id": view["id"], "data_key": data_key, "saved_at": saved_at}

    def load_data(self, project: Dict[str, Any], name: Optional[str], data_key: Optional[str]) -> Dict[str, Any]:
        view = self.get_view(project, name, touch=False)
        if not view:
            return {"success": False, "data": None, "message": "Custom view not found"}
        stored = ((view.get("metadata") or {}).get("component_data") or {}).get(data_key or "default")
        if not stored:
            return {"success": True, "data": None, "message": "No data found for the specified key"}
        return {"success": True, "data": stored.get("data"), "saved_at": stored.get("saved_at")}

    # --- Generation ---

    def _build_prompt(self, project: Dict[str, Any], prompt: str, current_code: Optional[str]) -> str:
        tasks = self.tasks.get_project_tasks(project["id"])
        people = [{"id": p["id"], "name": p["name"]} for p in self.tasks.project_people(project)]
        sample = [{k: t.get(k) for k in ("id", "title", "status", "priority", "assignee_id", "end_date")}
                  for t in tasks[:50]]
        parts = [
            f"Project: {project.get('name')}",
            f"Description: {project.get('description') or ''}",
            f"Tasks ({len(tasks)} total, sample): {json.dumps(sample, default=str)}",
            f"Users: {json.dumps(people)}",
            "",
            "Build a self-contained React component for this request:",
            prompt,
            "",
            "Rules: receive { project, auth, tasks, allTasks, users } as props; persist state with "
            "useEmbeddedData(key, initialValue); StyledComponents, MuiMaterial and MuiIcons are globals and must "
            "not be imported; end with `export default`.",
        ]
        if current_code:
            parts += ["", "Update this existing component instead of starting over:", "```jsx", current_code, "```"]
        return "\n".join(parts)

    def generate(self, project: Dict[str, Any], user: Dict[str, Any], name: Optional[str], prompt: str,
                 conversation: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        try:
            name = self._check_name(name)
        except ValidationError as e:
            return {"type": "error", "success": False, "message": e.message}
        if not (prompt or "").strip():
            return {"type": "error", "success": False, "message": "Please describe the application you want."}
        if not self.llm:
            return {"type": "error", "success": False,
                    "message": "Failed to generate custom application. Please try again."}

        existing = self.get_view(project, name, touch=False)
        current_code = existing.get("html_content") if existing else None
        messages = [{"role": "system", "content": GENERATOR_SYSTEM_PROMPT}]
        for entry in (conversation or [])[-10:]:
            if isinstance(entry, dict) and entry.get("role") in ("user", "assistant") and entry.get("content"):
                messages.append({"role": entry["role"], "content": str(entry["content"])})
        messages.append({"role": "user", "content": self._build_prompt(project, prompt, current_code)})

        try:
            reply = self.llm.chat_completion(messages, temperature=0.2)["content"]
        except TaskPilotError as e:
            logger.error(f"Custom view generation failed for project {project['id']}: {e}")
            return {"type": "error", "success": False,
                    "message": "Failed to generate custom application. Please try again."}

        code = extract_code_block(reply, ("jsx", "javascript", "js", "tsx")) or (reply or "").strip()
        if not code:
            logger.warning("LLM returned an empty component, using fallback")
            code = FALLBACK_COMPONENT
        code = enhance_component(code)

        is_update = bool(current_code and current_code.strip())
        view = self.upsert(project, user, name, code, {
            "type": "react_component",
            "user_request": prompt,
            "generated_at": datetime.now().isoformat(),
            "conversation_history": conversation or [],
            "is_update": is_update,
        })
        self._publish(project, name, "component", {"custom_view_id": view["id"], "saved_at": view["updated_at"]}, user)
        return {
            "type": "spa_generated",
            "success": True,
            "html": code,
            "component_code": code,
            "custom_view_id": view["id"],
            "message": "Custom micro-application updated successfully!" if is_update
            else "Custom micro-application generated successfully!",
        }

    def require_view(self, project: Dict[str, Any], name: Optional[str]) -> Dict[str, Any]:
        view = self.get_view(project, name)
        if not view:
            raise NotFoundError("Custom view not found")
        return view
