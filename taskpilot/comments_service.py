"""
Comments Service Module

Threaded task comments. Replies are one level deep and stay inside the task
of their parent comment.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .storage import YamlStore
from .users_service import UsersService

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 2000


class CommentsService:
    """Service class for comment operations."""

    def __init__(self, store: YamlStore, users: UsersService):
        self.store = store
        self.users = users

    def _file(self, project_id: str):
        return self.store.project_dir(project_id) / "comments.yaml"

    def _read(self, project_id: str) -> List[Dict[str, Any]]:
        return self.store.read_records(self._file(project_id), "comments")

    def _with_author(self, comment: Dict[str, Any]) -> Dict[str, Any]:
        return {**comment, "user": self.users.public_profile(self.users.get_user(comment.get("user_id")))}

    def list_comments(self, task: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Top-level comments, newest first, each with its replies oldest first."""
        comments = [c for c in self._read(task["project_id"]) if c.get("task_id") == task["id"]]
        top_level = [self._with_author(c) for c in comments if not c.get("parent_id")]
        for comment in top_level:
            comment["replies"] = [
                self._with_author(c) for c in comments if c.get("parent_id") == comment["id"]
            ]
        top_level.sort(key=lambda c: (c.get("created_at") or "", c["id"]), reverse=True)
        return top_level

    def _validate_content(self, content: Optional[str]) -> str:
        content = (content or "").strip()
        if not content:
            raise ValidationError("The content field is required.")
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValidationError(f"The content may not be greater than {MAX_COMMENT_LENGTH} characters.")
        return content

    def add_comment(self, task: Dict[str, Any], user: Dict[str, Any], content: str,
                    parent_id: Optional[int] = None) -> Dict[str, Any]:
        content = self._validate_content(content)
        project_id = task["project_id"]
        with self.store.lock:
            comments = self._read(project_id)
            if parent_id is not None:
                parent = next((c for c in comments if c.get("id") == int(parent_id)), None)
                if not parent or parent.get("task_id") != task["id"]:
                    raise ValidationError("The parent comment must belong to the same task.")
            now = datetime.now().isoformat()
            comment = {
                "id": self.store.next_id("comments"),
                "task_id": task["id"],
                "user_id": user["id"],
                "content": content,
                "parent_id": int(parent_id) if parent_id is not None else None,
                "created_at": now,
                "updated_at": now,
            }
            comments.append(comment)
            self.store.write_records(self._file(project_id), "comments", comments)

        logger.info(f"User {user['id']} commented on task {task['id']}")
        return self._with_author(comment)

    def _owned_comment(self, comments: List[Dict[str, Any]], task: Dict[str, Any],
                       comment_id: int, user: Dict[str, Any]) -> Dict[str, Any]:
        comment = next((c for c in comments if c.get("id") == int(comment_id)), None)
        if not comment or comment.get("task_id") != task["id"]:
            raise NotFoundError("Comment not found")
        if comment.get("user_id") != user["id"]:
            raise PermissionDeniedError("You can only modify your own comments.")
        return comment

    def update_comment(self, task: Dict[str, Any], comment_id: int, user: Dict[str, Any],
                       content: str) -> Dict[str, Any]:
        content = self._validate_content(content)
        with self.store.lock:
            comments = self._read(task["project_id"])
            comment = self._owned_comment(comments, task, comment_id, user)
            comment["content"] = content
            comment["updated_at"] = datetime.now().isoformat()
            self.store.write_records(self._file(task["project_id"]), "comments", comments)
        return self._with_author(comment)

    def delete_comment(self, task: Dict[str, Any], comment_id: int, user: Dict[str, Any]) -> bool:
        """Delete a comment and its replies."""
        with self.store.lock:
            comments = self._read(task["project_id"])
            comment = self._owned_comment(comments, task, comment_id, user)
            kept = [c for c in comments if c["id"] != comment["id"] and c.get("parent_id") != comment["id"]]
            self.store.write_records(self._file(task["project_id"]), "comments", kept)
        logger.info(f"Deleted comment {comment_id} from task {task['id']}")
        return True
