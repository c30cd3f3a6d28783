"""
Attachments Service Module

Image attachments on tasks. Files live in ``<project>/attachments/`` and are
served back by the ``/attachments/{project_id}/{file_name}`` route.
"""

import logging
import mimetypes
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .storage import YamlStore
from .users_service import UsersService

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = ["jpg", "jpeg", "png", "gif", "webp"]
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


class AttachmentsService:
    """Service class for task attachment operations."""

    def __init__(self, store: YamlStore, users: UsersService):
        self.store = store
        self.users = users

    def _file(self, project_id: str) -> Path:
        return self.store.project_dir(project_id) / "attachments.yaml"

    def _read(self, project_id: str) -> List[Dict[str, Any]]:
        return self.store.read_records(self._file(project_id), "attachments")

    def list_attachments(self, task: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [a for a in self._read(task["project_id"]) if a.get("task_id") == task["id"]]

    def add_attachment(self, task: Dict[str, Any], user: Dict[str, Any], original_name: str,
                       content: bytes, mime_type: Optional[str] = None) -> Dict[str, Any]:
        """Store an uploaded image for ``task``."""
        original_name = Path(original_name or "").name
        extension = original_name.rsplit(".", 1)[-1].lower() if "." in original_name else ""
        if extension not in ALLOWED_EXTENSIONS:
            raise ValidationError(f"The file must be an image of type: {', '.join(ALLOWED_EXTENSIONS)}.")
        if not content:
            raise ValidationError("The file field is required.")
        if len(content) > MAX_ATTACHMENT_BYTES:
            raise ValidationError("The file may not be greater than 5120 kilobytes.")

        project_id = task["project_id"]
        stored_name = f"{task['id']}-{secrets.token_hex(8)}.{extension}"
        target = self.store.project_dir(project_id) / "attachments" / stored_name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

        try:
            with self.store.lock:
                attachments = self._read(project_id)
                attachment = {
                    "id": self.store.next_id("attachments"),
                    "task_id": task["id"],
                    "user_id": user["id"],
                    "kind": "image",
                    "original_name": original_name,
                    "mime_type": mime_type or mimetypes.guess_type(original_name)[0] or "application/octet-stream",
                    "size": len(content),
                    "path": stored_name,
                    "url": f"/attachments/{project_id}/{stored_name}",
                    "created_at": datetime.now().isoformat(),
                }
                attachments.append(attachment)
                self.store.write_records(self._file(project_id), "attachments", attachments)
        except Exception:
            logger.error(f"Failed to record attachment {stored_name}, removing the stored file", exc_info=True)
            target.unlink(missing_ok=True)
            raise

        logger.info(f"Stored attachment {attachment['id']} ({len(content)} bytes) on task {task['id']}")
        return attachment

    def delete_attachment(self, task: Dict[str, Any], attachment_id: int, user: Dict[str, Any]) -> bool:
        project_id = task["project_id"]
        with self.store.lock:
            attachments = self._read(project_id)
            attachment = next((a for a in attachments if a.get("id") == int(attachment_id)), None)
            if not attachment or attachment.get("task_id") != task["id"]:
                raise NotFoundError("Attachment not found")
            if attachment.get("user_id") != user["id"]:
                raise PermissionDeniedError("You can only delete your own attachments.")
            file_path = self.store.project_dir(project_id) / "attachments" / attachment["path"]
            if file_path.is_file():
                file_path.unlink()
            self.store.write_records(
                self._file(project_id), "attachments", [a for a in attachments if a["id"] != attachment["id"]]
            )
        logger.info(f"Deleted attachment {attachment_id} from task {task['id']}")
        return True

    def file_path(self, project_id: str, file_name: str) -> Optional[Path]:
        """Resolve a stored attachment file, or None when it does not exist."""
        if not self.store.is_safe_path(f"{project_id}/attachments/{file_name}") or "/" in file_name:
            return None
        path = self.store.project_dir(project_id) / "attachments" / file_name
        return path if path.is_file() else None
