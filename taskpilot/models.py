"""Request bodies for the HTTP API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    name: str
    email: str
    plan: Optional[str] = None


class ProjectCreate(BaseModel):
    name: str
    key: Optional[str] = None
    description: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    key: Optional[str] = None
    description: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class MemberInvite(BaseModel):
    email: str
    role: str = "member"


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    assignee_id: Optional[int] = None
    status: Optional[str] = "todo"
    priority: Optional[str] = "medium"
    milestone: bool = False
    parent_id: Optional[int] = None
    duplicate_of: Optional[int] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    assignee_id: Optional[int] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    milestone: Optional[bool] = None
    parent_id: Optional[int] = None
    duplicate_of: Optional[int] = None


class TaskStatusUpdate(BaseModel):
    status: str


class TaskAssigneeUpdate(BaseModel):
    assignee_id: Optional[int] = None


class BulkTaskCreate(BaseModel):
    tasks: List[TaskCreate]


class TaskFromTemplate(BaseModel):
    template_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    assignee_id: Optional[int] = None
    priority: Optional[str] = None


class CommentCreate(BaseModel):
    content: str
    parent_id: Optional[int] = None


class CommentUpdate(BaseModel):
    content: str


class GenerateTasksRequest(BaseModel):
    count: int = Field(default=5)
    prompt: Optional[str] = ""


class PreviewTasksRequest(BaseModel):
    count: int = Field(default=5)
    prompt: Optional[str] = ""
    pinned_tasks: List[Dict[str, Any]] = []


class AcceptTasksRequest(BaseModel):
    tasks: List[Dict[str, Any]]


class SuggestionRequest(BaseModel):
    input: Optional[str] = ""
    max: int = 8


class AssistantChatRequest(BaseModel):
    message: str
    session_id: Optional[str] = None


class AssistantExecuteRequest(BaseModel):
    command_data: Dict[str, Any]
    session_id: Optional[str] = None


class CustomViewCode(BaseModel):
    code: str


class CustomViewCreate(BaseModel):
    view_name: str
    code: str


class CustomViewSave(BaseModel):
    view_name: str = "default"
    component_code: str = ""


class CustomViewData(BaseModel):
    view_name: str = "default"
    data_key: str = "default"
    data: Any = None


class CustomViewGenerate(BaseModel):
    view_name: str = "default"
    prompt: str
    conversation: List[Dict[str, Any]] = []


class AutomationCreate(BaseModel):
    name: str
    description: Optional[str] = None
    trigger: str
    trigger_config: Dict[str, Any] = {}
    actions: List[Dict[str, Any]] = []
    is_active: bool = True


class AutomationUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = None
    actions: Optional[List[Dict[str, Any]]] = None
    is_active: Optional[bool] = None
