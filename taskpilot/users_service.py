"""
Users Service Module

Registry of the people who can use TaskPilot plus the per-plan AI usage
allowance. Identity itself comes from the upstream auth layer; this module only
keeps the profile, the plan name and the monthly AI task counter.
"""

import re
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .storage import YamlStore

logger = logging.getLogger(__name__)

PLANS = ["free", "basic", "pro", "business"]

AI_TASK_LIMITS = {
    "free": 5,
    "basic": 25,
    "pro": 50,
    "business": 200,
}

MEMBER_LIMITS = {
    "free": 1,
    "basic": 2,
    "pro": 5,
    "business": 15,
}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UsersService:
    """Service class for user profiles and plan limits."""

    def __init__(self, store: YamlStore, default_plan: str = "pro"):
        self.store = store
        self.default_plan = default_plan if default_plan in PLANS else "pro"

    @property
    def users_file(self):
        return self.store.data_path / "users.yaml"

    def list_users(self) -> List[Dict[str, Any]]:
        return self.store.read_records(self.users_file, "users")

    def get_user(self, user_id: Any) -> Optional[Dict[str, Any]]:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        for user in self.list_users():
            if user.get("id") == user_id:
                return user
        return None

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        wanted = (email or "").strip().lower()
        if not wanted:
            return None
        for user in self.list_users():
            if str(user.get("email", "")).lower() == wanted:
                return user
        return None

    def register_user(self, name: str, email: str, plan: Optional[str] = None) -> Dict[str, Any]:
        """Register a new user; email addresses are unique."""
        name = (name or "").strip()
        email = (email or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        if not EMAIL_RE.match(email):
            raise ValidationError("A valid email address is required.")
        plan = (plan or self.default_plan).lower()
        if plan not in PLANS:
            raise ValidationError(f"Unknown plan: {plan}")

        with self.store.lock:
            if self.find_by_email(email):
                raise ValidationError("The email has already been taken.")

            users = self.list_users()
            user = {
                "id": self.store.next_id("users"),
                "name": name,
                "email": email,
                "plan": plan,
                "ai_tasks_used": 0,
                "ai_usage_reset": datetime.now().strftime("%Y-%m"),
                "created_at": datetime.now().isoformat(),
            }
            users.append(user)
            self.store.write_records(self.users_file, "users", users)

        logger.info(f"Registered user {user['id']} ({email}) on plan {plan}")
        return user

    def public_profile(self, user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not user:
            return None
        return {"id": user.get("id"), "name": user.get("name"), "email": user.get("email")}

    # --- Plan limits ---

    def current_plan(self, user: Dict[str, Any]) -> str:
        plan = str(user.get("plan") or self.default_plan).lower()
        return plan if plan in PLANS else "free"

    def ai_task_limit(self, user: Dict[str, Any]) -> int:
        return AI_TASK_LIMITS.get(self.current_plan(user), 5)

    def member_limit(self, user: Dict[str, Any]) -> int:
        return MEMBER_LIMITS.get(self.current_plan(user), 1)

    def _used_this_month(self, user: Dict[str, Any]) -> int:
        if user.get("ai_usage_reset") != datetime.now().strftime("%Y-%m"):
            return 0
        return int(user.get("ai_tasks_used") or 0)

    def remaining_ai_tasks(self, user: Dict[str, Any]) -> int:
        return max(0, self.ai_task_limit(user) - self._used_this_month(user))

    def can_generate_ai_tasks(self, user: Dict[str, Any], count: int = 1) -> bool:
        return self.remaining_ai_tasks(user) >= count

    def increment_ai_task_usage(self, user: Dict[str, Any], count: int = 1) -> Dict[str, Any]:
        """Add ``count`` generated tasks to the user's monthly counter."""
        month = datetime.now().strftime("%Y-%m")
        with self.store.lock:
            users = self.list_users()
            for stored in users:
                if stored.get("id") != user.get("id"):
                    continue
                if stored.get("ai_usage_reset") != month:
                    stored["ai_usage_reset"] = month
                    stored["ai_tasks_used"] = 0
                stored["ai_tasks_used"] = int(stored.get("ai_tasks_used") or 0) + count
                self.store.write_records(self.users_file, "users", users)
                user.update(stored)
                break
        return user

    def usage_summary(self, user: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "plan": self.current_plan(user),
            "ai_tasks": {
                "used": self._used_this_month(user),
                "limit": self.ai_task_limit(user),
                "remaining": self.remaining_ai_tasks(user),
            },
            "members": {"limit": self.member_limit(user)},
        }
