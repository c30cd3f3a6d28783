"""Assistant conversation history, one JSON file per project and session."""

import re
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .storage import StorageError, YamlStore, read_json_file, write_json_file

logger = logging.getLogger(__name__)

MAX_MESSAGES = 30
SESSION_RE = re.compile(r"[^a-zA-Z0-9_-]")


class ConversationHistory:
    def __init__(self, store: YamlStore):
        self.store = store

    def _session_file(self, project_id: str, session_id: Optional[str]) -> Path:
        session = SESSION_RE.sub("", str(session_id or "")) or "default"
        # Validates the project id
        self.store.project_dir(project_id)
        return self.store.data_path / "chat_sessions" / project_id / f"{session[:64]}.json"

    def get(self, project_id: str, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        data = read_json_file(self._session_file(project_id, session_id)) or {}
        messages = data.get("messages") if isinstance(data, dict) else data
        return messages if isinstance(messages, list) else []

    def append(self, project_id: str, session_id: Optional[str], role: str, content: str,
               meta: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self.store.lock:
            try:
                messages = self.get(project_id, session_id)
            except StorageError as e:
                logger.warning(f"Discarding unreadable chat history for {project_id}: {e}")
                messages = []
            entry = {"role": role, "content": content, "timestamp": datetime.now().isoformat()}
            if meta:
                entry["meta"] = meta
            messages = (messages + [entry])[-MAX_MESSAGES:]
            write_json_file(self._session_file(project_id, session_id), {"messages": messages})
        return messages

    def clear(self, project_id: str, session_id: Optional[str] = None) -> bool:
        path = self._session_file(project_id, session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Cleared chat history {path.name} for project {project_id}")
        return True
