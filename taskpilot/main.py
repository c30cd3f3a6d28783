"""
TaskPilot Backend

FastAPI application: REST routes for users, projects, tasks, comments,
attachments, reports, automations, AI task generation, the project
assistant and custom views, plus the realtime websocket.
"""

import json
import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import (
    BackgroundTasks, Depends, FastAPI, File, Header, HTTPException, Query, UploadFile, WebSocket, WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from watchdog.observers import Observer

from .analytics import AnalyticsService
from .assistant import ProjectAssistant
from .attachments_service import AttachmentsService
from .automations import AutomationsService
from .command_executor import CommandExecutor
from .command_planner import CommandPlanner
from .comments_service import CommentsService
from .config import Settings, load_settings, setup_logging
from .conversation_history import ConversationHistory
from .custom_views import CustomViewsService
from .errors import NotFoundError, TaskPilotError, UsageLimitError
from .llm_client import LLMClient
from .models import (
    AcceptTasksRequest, AssistantChatRequest, AssistantExecuteRequest, AutomationCreate, AutomationUpdate,
    BulkTaskCreate, CommentCreate, CommentUpdate, CustomViewCode, CustomViewCreate, CustomViewData,
    CustomViewGenerate, CustomViewSave, GenerateTasksRequest, MemberInvite, PreviewTasksRequest, ProjectCreate,
    ProjectUpdate, SuggestionRequest, TaskAssigneeUpdate, TaskCreate, TaskFromTemplate, TaskStatusUpdate, TaskUpdate,
    UserCreate,
)
from .projects_service import ProjectsService
from .question_answering import QuestionAnsweringService
from .realtime import ConnectionManager, DataChangeHandler, channel_project_id, project_channel
from .storage import StorageError, YamlStore
from .suggestions import SuggestionService
from .task_generator import TaskGenerator
from .tasks_service import TasksService
from .users_service import UsersService

settings = load_settings()
setup_logging(settings)
logger = logging.getLogger(__name__)

# --- FastAPI App and CORS ---
app = FastAPI(
    title="TaskPilot Backend",
    description="Project and task management API with an AI assistant",
    version="1.0.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

manager = ConnectionManager()


class Services:
    """Every service wired to one data directory and one LLM client."""

    def __init__(self, settings: Settings, llm: Optional[LLMClient] = None, publisher=None):
        self.store = YamlStore(settings.data_path)
        self.llm = llm or LLMClient(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            provider=settings.llm_provider,
            timeout=settings.llm_timeout,
        )
        self.users = UsersService(self.store, default_plan=settings.default_plan)
        self.projects = ProjectsService(self.store, self.users)
        self.tasks = TasksService(self.store, self.users)
        self.comments = CommentsService(self.store, self.users)
        self.attachments = AttachmentsService(self.store, self.users)
        self.analytics = AnalyticsService(self.tasks)
        self.generator = TaskGenerator(self.llm, self.tasks, self.users)
        self.suggestions = SuggestionService(self.llm, self.tasks)
        self.qa = QuestionAnsweringService(self.tasks, self.llm)
        self.planner = CommandPlanner(self.tasks, self.llm, self.qa)
        self.executor = CommandExecutor(self.tasks, self.generator, self.planner.validate_plan)
        self.history = ConversationHistory(self.store)
        self.assistant = ProjectAssistant(self.planner, self.executor, self.qa, self.history, self.llm)
        self.custom_views = CustomViewsService(self.store, self.users, self.tasks, self.llm, publisher)
        self.automations = AutomationsService(
            self.store, self.tasks, publisher,
            cooldown_minutes=settings.automation_cooldown_minutes,
            timeout=settings.webhook_timeout,
            enabled=settings.automations_enabled,
        )


services = Services(settings, publisher=manager.publish)


# Service dependencies
def get_services() -> Services:
    return services


def get_current_user(x_user_id: Optional[str] = Header(default=None),
                     svc: Services = Depends(get_services)) -> Dict[str, Any]:
    """Resolve the signed-in user from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    user = svc.users.get_user(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


# --- Error handling ---
@app.exception_handler(TaskPilotError)
async def taskpilot_error_handler(request, exc: TaskPilotError):
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, UsageLimitError):
        body.update(limit=exc.limit, used=exc.used, plan=exc.plan)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(StorageError)
async def storage_error_handler(request, exc: StorageError):
    logger.error(f"Storage error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": f"Storage error: {exc}"})


def _task_for(svc: Services, project: Dict[str, Any], task_id: int, user: Dict[str, Any]) -> Dict[str, Any]:
    return svc.tasks.ensure_access(project, svc.tasks.get_task(project["id"], task_id), user)


async def _tasks_updated(project_id: str):
    await _project_event(project_id, "tasks_updated")


async def _project_event(project_id: str, event_type: str, **extra):
    await manager.broadcast({"type": event_type, "project_id": project_id, **extra}, project_channel(project_id))


def _publish_tasks_updated(project_id: str):
    manager.publish({"type": "tasks_updated", "project_id": project_id}, project_channel(project_id))


def _channel_allowed(svc: Services, user: Dict[str, Any], channel: str) -> bool:
    project_id = channel_project_id(channel)
    if not project_id:
        return False
    try:
        svc.projects.authorize_view(project_id, user)
    except TaskPilotError:
        return False
    return True


# --- Lifecycle ---
@app.on_event("startup")
async def startup_event():
    manager.loop = asyncio.get_running_loop()

    logger.info("--- Starting TaskPilot Backend ---")
    try:
        services.store.ensure_ready()
        logger.info(f"Data directory ready: {services.store.data_path}")
    except OSError as e:
        logger.critical(f"Failed to access data directory: {e}", exc_info=True)
        raise RuntimeError(f"Cannot access data directory: {e}")

    app.state.observer = None
    if settings.watch_data:
        event_handler = DataChangeHandler(manager, manager.loop, services.store.data_path)
        observer = Observer()
        try:
            observer.schedule(event_handler, str(services.store.data_path), recursive=True)
            observer.start()
            app.state.observer = observer
            logger.info("File system watcher started successfully.")
        except OSError as e:
            logger.error(f"Failed to start file observer: {e}. Realtime updates for external edits disabled.",
                         exc_info=True)


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("--- Shutting down TaskPilot Backend ---")
    observer = getattr(app.state, "observer", None)
    if observer and observer.is_alive():
        observer.stop()
        observer.join(timeout=2.0)
        logger.info("File system watcher stopped.")


@app.get("/health")
async def health(svc: Services = Depends(get_services)):
    return {"status": "ok", "data_path": str(svc.store.data_path), "ai_configured": svc.llm.is_configured}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, user_id: Optional[str] = Query(default=None),
                             x_user_id: Optional[str] = Header(default=None),
                             svc: Services = Depends(get_services)):
    """Realtime updates; clients subscribe to channels of projects they belong to."""
    identity = x_user_id or user_id
    user = svc.users.get_user(identity) if identity else None
    if not user:
        logger.warning("Rejected websocket connection without a known user")
        await websocket.close(code=1008)
        return

    await manager.connect(websocket, user["id"], lambda channel: _channel_allowed(svc, user, channel))
    try:
        while True:
            data = await websocket.receive_text()
            reply = await manager.handle_client_message(websocket, data)
            if reply:
                await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        await manager.disconnect(websocket)


# --- Users ---
@app.post("/users", status_code=201)
async def register_user(body: UserCreate, svc: Services = Depends(get_services)):
    user = svc.users.register_user(body.name, body.email, body.plan)
    return svc.users.public_profile(user)


@app.get("/users/me")
async def get_me(user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    return {**svc.users.public_profile(user), "plan": svc.users.current_plan(user)}


@app.get("/users/me/usage")
async def get_my_usage(user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    return svc.users.usage_summary(user)


# --- Projects ---
@app.get("/projects")
async def list_projects(user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    return {"projects": svc.projects.list_projects(user)}


@app.post("/projects", status_code=201)
async def create_project(body: ProjectCreate, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.create_project(user, body.model_dump(exclude_none=True))
    await _project_event(project["id"], "project_updated")
    return project


@app.get("/projects/{project_id}")
async def get_project(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                      svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return {
        **project,
        "user_role": svc.projects.user_role(project, user),
        "team": svc.projects.team(project),
    }


@app.put("/projects/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    updated = svc.projects.update_project(project, body.model_dump(exclude_unset=True))
    await _project_event(project_id, "project_updated")
    return updated


@app.delete("/projects/{project_id}")
async def delete_project(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    svc.projects.delete_project(project)
    await _project_event(project_id, "project_updated", deleted=True)
    return {"message": "Project deleted successfully."}


@app.get("/projects/{project_id}/members")
async def list_members(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                       svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    limit, used = svc.projects.member_stats(project)
    invitations = svc.projects.list_invitations(project) if svc.projects.can_update(project, user) else []
    return {
        "members": svc.projects.team(project),
        "invitations": invitations,
        "member_limit": limit,
        "member_count": used,
    }


@app.post("/projects/{project_id}/members")
async def invite_member(project_id: str, body: MemberInvite, user: Dict[str, Any] = Depends(get_current_user),
                        svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    result = svc.projects.invite(project, user, body.email, body.role)
    if result["type"] == "direct_add":
        await _project_event(project_id, "project_updated")
    return result


@app.delete("/projects/{project_id}/members/{member_id}")
async def remove_member(project_id: str, member_id: int, user: Dict[str, Any] = Depends(get_current_user),
                        svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    result = svc.projects.remove_member(project, member_id)
    await manager.revoke(project_id, member_id)
    await _project_event(project_id, "project_updated")
    return result


@app.delete("/projects/{project_id}/invitations/{invitation_id}")
async def cancel_invitation(project_id: str, invitation_id: int, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    return svc.projects.cancel_invitation(project, invitation_id)


@app.post("/invitations/{token}/accept")
async def accept_invitation(token: str, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    return svc.projects.accept_invitation(token, user)


# --- Tasks ---
@app.get("/tasks/search")
async def search_tasks(
    query: Optional[str] = None,
    status: Optional[str] = None,
    due_before: Optional[str] = None,
    due_after: Optional[str] = None,
    assigned_to: Optional[int] = None,
    priority: Optional[str] = None,
    project_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(get_current_user),
    svc: Services = Depends(get_services),
):
    """Search tasks across every project the user can see."""
    projects = svc.projects.list_projects(user)
    tasks = svc.tasks.search_tasks(projects, query, status, due_before, due_after, assigned_to, priority, project_id)
    return {"tasks": tasks}


@app.get("/tasks/templates")
async def get_task_templates(user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    return {"templates": svc.tasks.get_task_templates()}


@app.get("/projects/{project_id}/tasks")
async def get_project_tasks(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    svc.projects.authorize_view(project_id, user)
    return {"tasks": svc.tasks.get_project_tasks(project_id)}


@app.get("/projects/{project_id}/board")
async def get_board(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                    svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.tasks.board(project)


@app.get("/projects/{project_id}/tasks/statistics")
async def get_task_statistics(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                              svc: Services = Depends(get_services)):
    svc.projects.authorize_view(project_id, user)
    return svc.tasks.get_task_statistics(svc.tasks.get_project_tasks(project_id))


# Automations run as background tasks, after the response is sent
@app.post("/projects/{project_id}/tasks", status_code=201)
async def create_task(project_id: str, body: TaskCreate, background_tasks: BackgroundTasks,
                      user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    logger.info(f"Create task request received for project {project_id}: {body.title}")
    project = svc.projects.authorize_view(project_id, user)
    task = svc.tasks.create_task(project, user, body.model_dump(exclude_unset=True))
    background_tasks.add_task(svc.automations.handle_event, project, "task_created", task)
    await _tasks_updated(project_id)
    return task


@app.post("/projects/{project_id}/tasks/bulk", status_code=201)
async def bulk_create_tasks(project_id: str, body: BulkTaskCreate, background_tasks: BackgroundTasks,
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    created = svc.tasks.bulk_create(project, user, [t.model_dump(exclude_unset=True) for t in body.tasks])
    for task in created:
        background_tasks.add_task(svc.automations.handle_event, project, "task_created", task)
    await _tasks_updated(project_id)
    return {"tasks": created, "count": len(created)}


@app.post("/projects/{project_id}/tasks/from-template", status_code=201)
async def create_task_from_template(project_id: str, body: TaskFromTemplate, background_tasks: BackgroundTasks,
                                    user: Dict[str, Any] = Depends(get_current_user),
                                    svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    overrides = body.model_dump(exclude={"template_id"}, exclude_none=True)
    task = svc.tasks.create_task_from_template(project, user, body.template_id, overrides)
    background_tasks.add_task(svc.automations.handle_event, project, "task_created", task)
    await _tasks_updated(project_id)
    return task


@app.get("/projects/{project_id}/tasks/{task_id}")
async def get_task(project_id: str, task_id: int, user: Dict[str, Any] = Depends(get_current_user),
                   svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return _task_for(svc, project, task_id, user)


@app.put("/projects/{project_id}/tasks/{task_id}")
async def update_task(project_id: str, task_id: int, body: TaskUpdate, background_tasks: BackgroundTasks,
                      user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    previous = _task_for(svc, project, task_id, user)
    task = svc.tasks.update_task(project, task_id, body.model_dump(exclude_unset=True))
    background_tasks.add_task(svc.automations.handle_event, project, "task_updated", task, previous)
    await _tasks_updated(project_id)
    return task


@app.patch("/projects/{project_id}/tasks/{task_id}/status")
async def update_task_status(project_id: str, task_id: int, body: TaskStatusUpdate, background_tasks: BackgroundTasks,
                             user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    previous = _task_for(svc, project, task_id, user)
    task = svc.tasks.update_task_status(project, task_id, body.status)
    background_tasks.add_task(svc.automations.handle_event, project, "task_updated", task, previous)
    await _tasks_updated(project_id)
    return task


@app.patch("/projects/{project_id}/tasks/{task_id}/assignee")
async def assign_task(project_id: str, task_id: int, body: TaskAssigneeUpdate, background_tasks: BackgroundTasks,
                      user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    previous = _task_for(svc, project, task_id, user)
    task = svc.tasks.assign_task(project, task_id, body.assignee_id)
    background_tasks.add_task(svc.automations.handle_event, project, "task_updated", task, previous)
    await _tasks_updated(project_id)
    return task


@app.delete("/projects/{project_id}/tasks/{task_id}")
async def delete_task(project_id: str, task_id: int, user: Dict[str, Any] = Depends(get_current_user),
                      svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    _task_for(svc, project, task_id, user)
    svc.tasks.delete_task(project, task_id)
    await _tasks_updated(project_id)
    return {"message": f"Task {task_id} deleted successfully"}


# --- Comments ---
@app.get("/projects/{project_id}/tasks/{task_id}/comments")
async def list_comments(project_id: str, task_id: int, user: Dict[str, Any] = Depends(get_current_user),
                        svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    return {"comments": svc.comments.list_comments(task)}


@app.post("/projects/{project_id}/tasks/{task_id}/comments", status_code=201)
async def add_comment(project_id: str, task_id: int, body: CommentCreate,
                      user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    comment = svc.comments.add_comment(task, user, body.content, body.parent_id)
    await _tasks_updated(project_id)
    return comment


@app.put("/projects/{project_id}/tasks/{task_id}/comments/{comment_id}")
async def update_comment(project_id: str, task_id: int, comment_id: int, body: CommentUpdate,
                         user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    return svc.comments.update_comment(task, comment_id, user, body.content)


@app.delete("/projects/{project_id}/tasks/{task_id}/comments/{comment_id}")
async def delete_comment(project_id: str, task_id: int, comment_id: int,
                         user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    svc.comments.delete_comment(task, comment_id, user)
    await _tasks_updated(project_id)
    return {"message": "Comment deleted successfully."}


# --- Attachments ---
@app.get("/projects/{project_id}/tasks/{task_id}/attachments")
async def list_attachments(project_id: str, task_id: int, user: Dict[str, Any] = Depends(get_current_user),
                           svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    return {"attachments": svc.attachments.list_attachments(task)}


@app.post("/projects/{project_id}/tasks/{task_id}/attachments", status_code=201)
async def upload_attachment(project_id: str, task_id: int, file: UploadFile = File(...),
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    content = await file.read()
    attachment = svc.attachments.add_attachment(task, user, file.filename, content, file.content_type)
    await _tasks_updated(project_id)
    return attachment


@app.delete("/projects/{project_id}/tasks/{task_id}/attachments/{attachment_id}")
async def delete_attachment(project_id: str, task_id: int, attachment_id: int,
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    task = _task_for(svc, project, task_id, user)
    svc.attachments.delete_attachment(task, attachment_id, user)
    await _tasks_updated(project_id)
    return {"message": "Attachment deleted successfully."}


@app.get("/attachments/{project_id}/{file_name}")
async def serve_attachment(project_id: str, file_name: str, user: Dict[str, Any] = Depends(get_current_user),
                           svc: Services = Depends(get_services)):
    svc.projects.authorize_view(project_id, user)
    path = svc.attachments.file_path(project_id, file_name)
    if not path:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return FileResponse(path)


# --- Analytics ---
@app.get("/projects/{project_id}/dashboard-data")
async def dashboard_data(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.analytics.dashboard_data(project)


@app.get("/projects/{project_id}/report")
async def project_report(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.analytics.project_report(project)


# --- Automations ---
@app.get("/automations/templates")
async def automation_templates(user: Dict[str, Any] = Depends(get_current_user),
                               svc: Services = Depends(get_services)):
    return {"templates": svc.automations.templates()}


@app.get("/projects/{project_id}/automations")
async def list_automations(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                           svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return {"automations": svc.automations.list_automations(project)}


@app.post("/projects/{project_id}/automations", status_code=201)
async def create_automation(project_id: str, body: AutomationCreate, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    return svc.automations.create_automation(project, user, body.model_dump())


@app.get("/projects/{project_id}/automations/{automation_id}")
async def get_automation(project_id: str, automation_id: int, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.automations.get_automation(project, automation_id)


@app.put("/projects/{project_id}/automations/{automation_id}")
async def update_automation(project_id: str, automation_id: int, body: AutomationUpdate,
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    return svc.automations.update_automation(project, automation_id, body.model_dump(exclude_unset=True))


@app.delete("/projects/{project_id}/automations/{automation_id}")
async def delete_automation(project_id: str, automation_id: int, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    if not svc.automations.delete_automation(project, automation_id):
        raise NotFoundError(f"Automation not found: {automation_id}")
    return {"message": f"Automation {automation_id} deleted successfully"}


@app.post("/projects/{project_id}/automations/{automation_id}/toggle")
async def toggle_automation(project_id: str, automation_id: int, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    return svc.automations.toggle(project, automation_id)


# Plain def: actions make outgoing HTTP calls
@app.post("/projects/{project_id}/automations/{automation_id}/execute")
def execute_automation(project_id: str, automation_id: int, task_id: Optional[int] = None,
                       user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    automation = svc.automations.get_automation(project, automation_id)
    task = _task_for(svc, project, task_id, user) if task_id else None
    return svc.automations.run(project, automation, task, force=True)


@app.post("/projects/{project_id}/automations/due-date-checks")
def run_due_date_checks(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                        svc: Services = Depends(get_services)):
    project = svc.projects.authorize_update(project_id, user)
    results = svc.automations.run_due_date_checks(project)
    return {"results": results, "count": len(results)}


# --- AI task generation ---
# Plain def: the LLM calls block, so these run in the threadpool
@app.post("/projects/{project_id}/tasks/generate", status_code=201)
def generate_tasks(project_id: str, body: GenerateTasksRequest, user: Dict[str, Any] = Depends(get_current_user),
                   svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    created = svc.generator.generate_and_save(project, user, body.count, body.prompt or "")
    _publish_tasks_updated(project_id)
    return {"tasks": created, "count": len(created), "usage": svc.users.usage_summary(user)["ai_tasks"]}


@app.post("/projects/{project_id}/tasks/generate/preview")
def preview_generated_tasks(project_id: str, body: PreviewTasksRequest,
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.generator.preview(project, user, body.count, body.prompt or "", body.pinned_tasks)


@app.post("/projects/{project_id}/tasks/generate/accept", status_code=201)
def accept_generated_tasks(project_id: str, body: AcceptTasksRequest,
                           user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    created = svc.generator.accept(project, user, body.tasks)
    _publish_tasks_updated(project_id)
    return {"tasks": created, "count": len(created), "usage": svc.users.usage_summary(user)["ai_tasks"]}


@app.post("/projects/{project_id}/suggestions")
def suggestion_chips(project_id: str, body: SuggestionRequest, user: Dict[str, Any] = Depends(get_current_user),
                     svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return {"suggestions": svc.suggestions.suggest_chips(project, body.input or "", body.max)}


@app.get("/llm/models")
def list_models(user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    return {"models": svc.llm.get_models()}


# --- Assistant ---
@app.post("/projects/{project_id}/assistant/chat")
def assistant_chat(project_id: str, body: AssistantChatRequest, user: Dict[str, Any] = Depends(get_current_user),
                   svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.assistant.handle(project, user, body.message, body.session_id)


@app.post("/projects/{project_id}/assistant/execute")
def assistant_execute(project_id: str, body: AssistantExecuteRequest,
                      user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    result = svc.assistant.execute(project, user, body.command_data, body.session_id)
    if result["type"] != "error":
        _publish_tasks_updated(project_id)
    return result


@app.get("/projects/{project_id}/assistant/history")
async def assistant_history(project_id: str, session_id: Optional[str] = None,
                            user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    svc.projects.authorize_view(project_id, user)
    return {"messages": svc.history.get(project_id, session_id)}


@app.delete("/projects/{project_id}/assistant/history")
async def clear_assistant_history(project_id: str, session_id: Optional[str] = None,
                                  user: Dict[str, Any] = Depends(get_current_user),
                                  svc: Services = Depends(get_services)):
    svc.projects.authorize_view(project_id, user)
    return {"cleared": svc.history.clear(project_id, session_id)}


@app.post("/llm/tasks/direct-json")
async def process_direct_json(json_data: Dict[str, Any], user: Dict[str, Any] = Depends(get_current_user),
                              svc: Services = Depends(get_services)):
    """Process JSON task actions directly without LLM interpretation."""
    project_id = str(json_data.get("project_id") or "")
    if not project_id:
        return {"success": False, "error": "Missing 'project_id' field in request"}
    project = svc.projects.authorize_view(project_id, user)
    try:
        result = svc.executor.process_llm_response(project, user, json.dumps(json_data))
    except Exception as e:
        logger.error(f"Error processing direct JSON: {e}", exc_info=True)
        return {"success": False, "error": str(e)}

    if result.get("success") and result.get("action") != "get_tasks":
        await _tasks_updated(project_id)
    return result


# --- Custom views ---
@app.get("/projects/{project_id}/custom-views")
async def list_custom_views(project_id: str, user: Dict[str, Any] = Depends(get_current_user),
                            svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return {"custom_views": svc.custom_views.list_views(project)}


@app.post("/projects/{project_id}/custom-views", status_code=201)
async def create_custom_view(project_id: str, body: CustomViewCreate, user: Dict[str, Any] = Depends(get_current_user),
                             svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    view = svc.custom_views.create(project, user, body.view_name, body.code)
    return {"id": view["id"], "code": view["html_content"]}


@app.post("/projects/{project_id}/custom-views/save")
async def save_custom_view(project_id: str, body: CustomViewSave, user: Dict[str, Any] = Depends(get_current_user),
                           svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.custom_views.save_component(project, user, body.view_name, body.component_code)


@app.post("/projects/{project_id}/custom-views/data")
async def save_custom_view_data(project_id: str, body: CustomViewData,
                                user: Dict[str, Any] = Depends(get_current_user),
                                svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.custom_views.save_data(project, user, body.view_name, body.data_key, body.data)


@app.get("/projects/{project_id}/custom-views/data")
async def load_custom_view_data(project_id: str, view_name: str = Query(default="default"),
                                data_key: str = Query(default="default"),
                                user: Dict[str, Any] = Depends(get_current_user),
                                svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.custom_views.load_data(project, view_name, data_key)


@app.post("/projects/{project_id}/custom-views/generate")
def generate_custom_view(project_id: str, body: CustomViewGenerate, user: Dict[str, Any] = Depends(get_current_user),
                         svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    return svc.custom_views.generate(project, user, body.view_name, body.prompt, body.conversation)


@app.get("/projects/{project_id}/custom-views/{view_name}")
async def get_custom_view(project_id: str, view_name: str, user: Dict[str, Any] = Depends(get_current_user),
                          svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    view = svc.custom_views.require_view(project, view_name)
    return {"id": view["id"], "code": view.get("html_content") or "", "metadata": view.get("metadata") or {}}


@app.put("/projects/{project_id}/custom-views/{view_name}")
async def upsert_custom_view(project_id: str, view_name: str, body: CustomViewCode,
                             user: Dict[str, Any] = Depends(get_current_user), svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    view = svc.custom_views.upsert(project, user, view_name, body.code)
    return {"id": view["id"], "code": view["html_content"]}


@app.delete("/projects/{project_id}/custom-views/{view_name}")
async def delete_custom_view(project_id: str, view_name: str, user: Dict[str, Any] = Depends(get_current_user),
                             svc: Services = Depends(get_services)):
    project = svc.projects.authorize_view(project_id, user)
    if not svc.custom_views.delete(project, user, view_name):
        raise NotFoundError("Custom view not found")
    return {"ok": True}


def run():
    """Console entry point."""
    import uvicorn
    logger.info(f"Starting TaskPilot on {settings.host}:{settings.port}")
    uvicorn.run("taskpilot.main:app", host=settings.host, port=settings.port, workers=1)


# --- Main Execution Guard ---
if __name__ == "__main__":
    run()
