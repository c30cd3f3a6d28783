"""
Projects Service Module

This module provides project management for TaskPilot: creating, reading,
updating and deleting projects, the project metadata and its context summary,
and team membership (members, invitations and access policies).
"""

import re
import shutil
import secrets
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .dates import parse_date, to_date_string
from .errors import (
    InvitationExpiredError, MemberLimitError, NotFoundError, PermissionDeniedError, ValidationError,
)
from .storage import YamlStore, read_yaml_file, write_yaml_file
from .users_service import UsersService

logger = logging.getLogger(__name__)

META_KEYS = [
    "project_type", "domain", "area", "location", "team_size", "budget",
    "primary_stakeholder", "objectives", "constraints", "methodology",
]
MEMBER_ROLES = ["member", "admin"]
KEY_RE = re.compile(r"^[A-Z0-9]+$")
CONTEXT_SUMMARY_RE = re.compile(r"(?:\n\n|\n)?Context Summary:\n(?:- .*\n?)+", re.IGNORECASE)
INVITATION_TTL_DAYS = 7


def sanitize_meta(meta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep the known meta keys and drop empty values."""
    out = {}
    for key in META_KEYS:
        if key not in (meta or {}):
            continue
        value = meta[key]
        if isinstance(value, str):
            value = value.strip()
        if value is None or value == "":
            continue
        if key == "team_size":
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ValidationError("Team size must be a whole number.")
        if key == "methodology":
            value = str(value).lower()
        out[key] = value
    return out


def strip_context_summary(text: Optional[str]) -> str:
    return CONTEXT_SUMMARY_RE.sub("", text or "").strip()


def build_context_lines(meta: Dict[str, Any], start_date: Optional[str], end_date: Optional[str]) -> List[str]:
    lines = []
    if meta.get("project_type"):
        lines.append(f"Type: {meta['project_type']}")
    if meta.get("domain"):
        lines.append(f"Domain: {meta['domain']}")
    if meta.get("area"):
        lines.append(f"Area: {meta['area']}")
    if meta.get("location"):
        lines.append(f"Location: {meta['location']}")
    if meta.get("team_size"):
        lines.append(f"Team size: {meta['team_size']}")
    if start_date:
        lines.append(f"Start: {start_date}")
    if end_date:
        lines.append(f"End: {end_date}")
    if meta.get("budget"):
        lines.append(f"Budget: {meta['budget']}")
    if meta.get("primary_stakeholder"):
        lines.append(f"Primary stakeholder: {meta['primary_stakeholder']}")
    if meta.get("objectives"):
        lines.append(f"Objectives: {meta['objectives']}")
    if meta.get("constraints"):
        lines.append(f"Constraints: {meta['constraints']}")
    return lines


def augment_description(description: Optional[str], meta: Dict[str, Any],
                        start_date: Optional[str], end_date: Optional[str]) -> str:
    """Append a fresh Context Summary block built from the project meta."""
    base = strip_context_summary(description)
    lines = build_context_lines(meta, start_date, end_date) if meta else []
    if lines:
        base = (base + "\n\nContext Summary:\n- " + "\n- ".join(lines)).strip()
    return base


class ProjectsService:
    """Service class for project and membership operations."""

    def __init__(self, store: YamlStore, users: UsersService):
        self.store = store
        self.users = users

    @property
    def invitations_file(self):
        return self.store.data_path / "invitations.yaml"

    # --- Reading ---

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Get project data by id, or None."""
        if not self.store.is_safe_path(project_id) or project_id.startswith((".", "_")):
            return None
        project_file = self.store.data_path / project_id / "project.yaml"
        if not project_file.exists():
            return None
        project = read_yaml_file(project_file) or {}
        project["id"] = project_id
        project.setdefault("members", [])
        return project

    def get_all_projects(self) -> List[Dict[str, Any]]:
        projects = []
        for project_id in self.store.project_ids():
            project = self.get_project(project_id)
            if project:
                projects.append(project)
        return projects

    def list_projects(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Projects the user owns or has joined, annotated with the user's role."""
        result = []
        for project in self.get_all_projects():
            role = self.user_role(project, user)
            if not role:
                continue
            tasks_file = self.store.data_path / project["id"] / "tasks.yaml"
            result.append({
                **project,
                "user_role": role,
                "is_owner": role == "owner",
                "tasks_count": len(self.store.read_records(tasks_file, "tasks")),
            })
        result.sort(key=lambda p: p.get("created_at") or "", reverse=True)
        return result

    # --- Policies ---

    def user_role(self, project: Dict[str, Any], user: Optional[Dict[str, Any]]) -> Optional[str]:
        if not user:
            return None
        if project.get("user_id") == user.get("id"):
            return "owner"
        for member in project.get("members") or []:
            if member.get("user_id") == user.get("id"):
                return member.get("role") or "member"
        return None

    def is_member(self, project: Dict[str, Any], user_id: Any) -> bool:
        if user_id is None:
            return False
        if project.get("user_id") == user_id:
            return True
        return any(m.get("user_id") == user_id for m in project.get("members") or [])

    def can_view(self, project: Dict[str, Any], user: Dict[str, Any]) -> bool:
        return self.user_role(project, user) is not None

    def can_update(self, project: Dict[str, Any], user: Dict[str, Any]) -> bool:
        return project.get("user_id") == user.get("id")

    def authorize_view(self, project_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """Return the project if ``user`` may see it, else raise."""
        project = self.get_project(project_id)
        if not project:
            raise NotFoundError(f"Project not found: {project_id}")
        if not self.can_view(project, user):
            raise PermissionDeniedError("You do not have access to this project.")
        return project

    def authorize_update(self, project_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        project = self.authorize_view(project_id, user)
        if not self.can_update(project, user):
            raise PermissionDeniedError("Only the project owner can do this.")
        return project

    def team(self, project: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Owner first, then members, as user profiles with their role."""
        people = []
        owner = self.users.get_user(project.get("user_id"))
        if owner:
            people.append({**self.users.public_profile(owner), "role": "owner"})
        for member in project.get("members") or []:
            user = self.users.get_user(member.get("user_id"))
            if user and user.get("id") != project.get("user_id"):
                people.append({
                    **self.users.public_profile(user),
                    "role": member.get("role", "member"),
                    "joined_at": member.get("joined_at"),
                })
        return people

    # --- Writing ---

    def _validate_fields(self, data: Dict[str, Any]) -> Dict[str, Any]:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("The name field is required.")
        if len(name) > 255:
            raise ValidationError("The name may not be greater than 255 characters.")

        key = data.get("key") or None
        if key is not None:
            key = str(key).strip().upper()
            if len(key) > 12 or not KEY_RE.match(key):
                raise ValidationError("The key must be at most 12 uppercase letters or digits.")

        if data.get("start_date") and not parse_date(data["start_date"]):
            raise ValidationError("The start date is not a valid date.")
        if data.get("end_date") and not parse_date(data["end_date"]):
            raise ValidationError("The end date is not a valid date.")
        start_date = to_date_string(data.get("start_date"))
        end_date = to_date_string(data.get("end_date"))
        if start_date and end_date and end_date < start_date:
            raise ValidationError("The end date must be a date after or equal to start date.")

        meta = sanitize_meta(data.get("meta"))
        return {
            "name": name,
            "key": key,
            "description": augment_description(data.get("description"), meta, start_date, end_date),
            "meta": meta or None,
            "start_date": start_date,
            "end_date": end_date,
        }

    def _write_project(self, project: Dict[str, Any]):
        data = {k: v for k, v in project.items() if k not in ("id", "user_role", "is_owner", "tasks_count")}
        write_yaml_file(self.store.data_path / project["id"] / "project.yaml", data)

    def create_project(self, user: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a new project owned by ``user``."""
        fields = self._validate_fields(data)

        # Generate a safe project ID from the name
        project_id = re.sub(r"[^a-zA-Z0-9]", "-", fields["name"].lower())
        project_id = re.sub(r"-+", "-", project_id).strip("-") or "project"

        with self.store.lock:
            # Ensure the project ID is unique
            base_id = project_id
            counter = 1
            while (self.store.data_path / project_id).exists():
                project_id = f"{base_id}-{counter}"
                counter += 1

            now = datetime.now().isoformat()
            project = {
                "id": project_id,
                **fields,
                "user_id": user["id"],
                "members": [],
                "created_at": now,
                "updated_at": now,
            }
            project_dir = self.store.data_path / project_id
            project_dir.mkdir(parents=True, exist_ok=True)
            (project_dir / "attachments").mkdir(exist_ok=True)
            self._write_project(project)
            self.store.write_records(project_dir / "tasks.yaml", "tasks", [])

        logger.info(f"Created project {project_id} for user {user['id']}")
        return project

    def update_project(self, project: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        fields = self._validate_fields({**project, **data})
        with self.store.lock:
            project.update(fields)
            project["updated_at"] = datetime.now().isoformat()
            self._write_project(project)
        logger.info(f"Updated project {project['id']}")
        return project

    def delete_project(self, project: Dict[str, Any]) -> bool:
        project_dir = self.store.data_path / project["id"]
        if not project_dir.is_dir():
            return False
        with self.store.lock:
            shutil.rmtree(project_dir)
            invitations = [i for i in self._invitations() if i.get("project_id") != project["id"]]
            self.store.write_records(self.invitations_file, "invitations", invitations)
            shutil.rmtree(self.store.data_path / "chat_sessions" / project["id"], ignore_errors=True)
        logger.info(f"Deleted project {project['id']}")
        return True

    # --- Members and invitations ---

    def _invitations(self) -> List[Dict[str, Any]]:
        return self.store.read_records(self.invitations_file, "invitations")

    def list_invitations(self, project: Dict[str, Any], status: Optional[str] = "pending") -> List[Dict[str, Any]]:
        return [
            i for i in self._invitations()
            if i.get("project_id") == project["id"] and (status is None or i.get("status") == status)
        ]

    def member_stats(self, project: Dict[str, Any]):
        """Return (limit, used) where used counts the owner plus every member."""
        owner = self.users.get_user(project.get("user_id")) or {}
        limit = self.users.member_limit(owner)
        member_ids = {m.get("user_id") for m in project.get("members") or []}
        member_ids.add(project.get("user_id"))
        return limit, len(member_ids)

    def _check_member_limit(self, project: Dict[str, Any]):
        limit, used = self.member_stats(project)
        if used >= limit:
            owner = self.users.get_user(project.get("user_id")) or {}
            raise MemberLimitError(
                f"Member limit reached ({used}/{limit}). Upgrade your plan to add more team members.",
                limit=limit, used=used, plan=self.users.current_plan(owner),
            )

    def invite(self, project: Dict[str, Any], inviter: Dict[str, Any], email: str,
               role: str = "member") -> Dict[str, Any]:
        """Add an existing user directly, or create a pending invitation."""
        email = (email or "").strip()
        role = role or "member"
        if role not in MEMBER_ROLES:
            raise ValidationError("The selected role is invalid.")
        if "@" not in email:
            raise ValidationError("The email field must be a valid email address.")

        with self.store.lock:
            self._check_member_limit(project)

            invitations = self._invitations()
            if any(i.get("project_id") == project["id"] and i.get("status") == "pending"
                   and str(i.get("email", "")).lower() == email.lower() for i in invitations):
                raise ValidationError("An invitation has already been sent to this email address.")

            existing_user = self.users.find_by_email(email)
            if existing_user and self.is_member(project, existing_user["id"]):
                raise ValidationError("This user is already a member of the project.")

            if existing_user:
                project.setdefault("members", []).append({
                    "user_id": existing_user["id"],
                    "role": role,
                    "joined_at": datetime.now().isoformat(),
                })
                self._write_project(project)
                logger.info(f"Added user {existing_user['id']} to project {project['id']} as {role}")
                return {
                    "message": f"{existing_user['name']} has been added to the project successfully! "
                               f"They will see this project in their dashboard.",
                    "type": "direct_add",
                    "user": self.users.public_profile(existing_user),
                }

            invitation = {
                "id": self.store.next_id("invitations"),
                "project_id": project["id"],
                "invited_by": inviter["id"],
                "email": email,
                "role": role,
                "token": secrets.token_urlsafe(48)[:64],
                "status": "pending",
                "expires_at": (datetime.now() + timedelta(days=INVITATION_TTL_DAYS)).isoformat(),
                "created_at": datetime.now().isoformat(),
            }
            invitations.append(invitation)
            self.store.write_records(self.invitations_file, "invitations", invitations)

        logger.info(f"Invitation {invitation['id']} sent to {email} for project {project['id']}")
        return {"message": "Invitation sent successfully.", "type": "invitation_sent", "invitation": invitation}

    def remove_member(self, project: Dict[str, Any], user_id: int) -> Dict[str, Any]:
        if project.get("user_id") == user_id:
            raise ValidationError("Cannot remove the project owner.")
        with self.store.lock:
            members = project.get("members") or []
            remaining = [m for m in members if m.get("user_id") != user_id]
            if len(remaining) == len(members):
                raise NotFoundError("This user is not a member of the project.")
            project["members"] = remaining
            self._write_project(project)
        logger.info(f"Removed user {user_id} from project {project['id']}")
        return {"message": "Member removed successfully."}

    def cancel_invitation(self, project: Dict[str, Any], invitation_id: int) -> Dict[str, Any]:
        with self.store.lock:
            invitations = self._invitations()
            for invitation in invitations:
                if invitation.get("id") == invitation_id and invitation.get("project_id") == project["id"]:
                    invitation["status"] = "cancelled"
                    self.store.write_records(self.invitations_file, "invitations", invitations)
                    return {"message": "Invitation cancelled successfully."}
        raise NotFoundError(f"Invitation not found: {invitation_id}")

    def accept_invitation(self, token: str, user: Dict[str, Any]) -> Dict[str, Any]:
        """Join the project named by a pending invitation token."""
        with self.store.lock:
            invitations = self._invitations()
            invitation = next(
                (i for i in invitations if i.get("token") == token and i.get("status") == "pending"), None
            )
            if not invitation:
                raise NotFoundError("Invitation not found.")
            if datetime.fromisoformat(invitation["expires_at"]) < datetime.now():
                raise InvitationExpiredError("This invitation has expired.")
            if str(invitation.get("email", "")).lower() != str(user.get("email", "")).lower():
                raise PermissionDeniedError(
                    f"This invitation was sent to {invitation['email']}, but you are signed in as {user.get('email')}."
                )

            project = self.get_project(invitation["project_id"])
            if not project:
                raise NotFoundError("The project for this invitation no longer exists.")

            if self.is_member(project, user["id"]):
                return {"message": "You are already a member of this project!", "project_id": project["id"]}

            project.setdefault("members", []).append({
                "user_id": user["id"],
                "role": invitation.get("role") or "member",
                "joined_at": datetime.now().isoformat(),
            })
            self._write_project(project)

            invitation["status"] = "accepted"
            invitation["accepted_at"] = datetime.now().isoformat()
            self.store.write_records(self.invitations_file, "invitations", invitations)

        logger.info(f"User {user['id']} joined project {project['id']} via invitation {invitation['id']}")
        return {
            "message": f"Welcome to the project! You have successfully joined {project['name']}",
            "project_id": project["id"],
        }
