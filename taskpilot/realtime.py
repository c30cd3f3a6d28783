"""
Realtime Module

Websocket connection manager with channel subscriptions, and the data
directory watcher that turns external edits into broadcast events.
"""

import json
import time
import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket
from watchdog.events import (
    FileSystemEventHandler, FileModifiedEvent, FileCreatedEvent, FileDeletedEvent, FileMovedEvent,
)

logger = logging.getLogger(__name__)

WATCHED_FILES = {
    "tasks.yaml": "tasks_updated",
    "project.yaml": "project_updated",
    "custom_views.yaml": "custom_views_updated",
}


def project_channel(project_id: str) -> str:
    return f"project.{project_id}"


def channel_project_id(channel: str) -> Optional[str]:
    """Project id a channel belongs to, for ``project.{id}`` and ``custom-view.{id}.{view}``."""
    parts = channel.split(".", 2)
    if parts[0] == "project" and len(parts) == 2 and parts[1]:
        return parts[1]
    if parts[0] == "custom-view" and len(parts) == 3 and parts[1] and parts[2]:
        return parts[1]
    return None


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.subscriptions: Dict[WebSocket, Set[str]] = {}
        self.users: Dict[WebSocket, Any] = {}
        self.authorizers: Dict[WebSocket, Callable[[str], bool]] = {}
        self.connections_lock = asyncio.Lock()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, websocket: WebSocket, user_id: Any = None,
                      authorize: Optional[Callable[[str], bool]] = None):
        """Accept ``websocket``; ``authorize(channel)`` gates its subscriptions."""
        await websocket.accept()
        async with self.connections_lock:
            self.active_connections.append(websocket)
            self.subscriptions[websocket] = set()
            self.users[websocket] = user_id
            if authorize:
                self.authorizers[websocket] = authorize
        logger.info(f"New WebSocket connection. Total: {len(self.active_connections)}")

    def _forget(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        self.subscriptions.pop(websocket, None)
        self.users.pop(websocket, None)
        self.authorizers.pop(websocket, None)

    async def disconnect(self, websocket: WebSocket):
        async with self.connections_lock:
            self._forget(websocket)
        logger.info(f"WebSocket disconnected. Remaining: {len(self.active_connections)}")

    async def subscribe(self, websocket: WebSocket, channel: str) -> bool:
        authorize = self.authorizers.get(websocket)
        if authorize and not authorize(channel):
            logger.warning(f"Refused subscription to {channel} for user {self.users.get(websocket)}")
            return False
        async with self.connections_lock:
            self.subscriptions.setdefault(websocket, set()).add(channel)
        logger.info(f"WebSocket subscribed to {channel}")
        return True

    async def unsubscribe(self, websocket: WebSocket, channel: str):
        async with self.connections_lock:
            self.subscriptions.get(websocket, set()).discard(channel)

    async def revoke(self, project_id: str, user_id: Any):
        """Drop a removed member's subscriptions to the project's channels."""
        async with self.connections_lock:
            for websocket, channels in self.subscriptions.items():
                if str(self.users.get(websocket)) != str(user_id):
                    continue
                for channel in [c for c in channels if channel_project_id(c) == project_id]:
                    channels.discard(channel)

    async def broadcast(self, message: Dict[str, Any], channel: Optional[str] = None):
        """Send to every socket, or only to subscribers of ``channel``."""
        async with self.connections_lock:
            if channel is None:
                targets = list(self.active_connections)
            else:
                targets = [ws for ws in self.active_connections if channel in self.subscriptions.get(ws, set())]

        label = message.get("type") or message.get("event")
        if not targets:
            logger.debug(f"No listeners for '{label}' on {channel or 'all'}")
            return

        message_json = json.dumps(message, default=str)
        results = await asyncio.gather(*[self._send_message(ws, message_json) for ws in targets],
                                       return_exceptions=True)

        success_count = sum(1 for r in results if not isinstance(r, Exception))
        logger.info(f"Broadcast '{label}' to {success_count}/{len(targets)} clients")

        dead = [targets[i] for i, result in enumerate(results) if isinstance(result, Exception)]
        if dead:
            logger.warning(f"Detected {len(dead)} disconnected websockets during broadcast")
            async with self.connections_lock:
                for socket in dead:
                    self._forget(socket)

    async def _send_message(self, websocket: WebSocket, message_json: str):
        try:
            await websocket.send_text(message_json)
            return True
        except Exception as e:
            logger.error(f"Error sending message to websocket: {e}")
            raise

    def publish(self, message: Dict[str, Any], channel: Optional[str] = None):
        """Schedule a broadcast from synchronous code; dropped when no loop is running."""
        if not self.loop or not self.loop.is_running():
            logger.debug(f"Event loop not running, dropping '{message.get('type') or message.get('event')}'")
            return
        asyncio.run_coroutine_threadsafe(self.broadcast(message, channel), self.loop)

    async def handle_client_message(self, websocket: WebSocket, raw: str) -> Optional[Dict[str, Any]]:
        """Apply a subscribe/unsubscribe/ping request and return the reply, if any."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return {"type": "error", "message": "Invalid JSON"}
        if not isinstance(data, dict):
            return {"type": "error", "message": "Invalid JSON"}

        action = data.get("action")
        channel = str(data.get("channel") or "")
        if action == "ping":
            return {"type": "pong"}
        if action in ("subscribe", "unsubscribe"):
            if not channel:
                return {"type": "error", "message": "Missing channel"}
            if action == "subscribe":
                if not await self.subscribe(websocket, channel):
                    return {"type": "error", "message": "Forbidden channel", "channel": channel}
            else:
                await self.unsubscribe(websocket, channel)
            return {"type": f"{action}d", "channel": channel}
        return {"type": "error", "message": f"Unknown action: {action}"}


class DataChangeHandler(FileSystemEventHandler):
    """Broadcasts project file changes made outside the API."""

    def __init__(self, ws_manager: ConnectionManager, loop: asyncio.AbstractEventLoop, data_path: Path):
        super().__init__()
        self.ws_manager = ws_manager
        self.loop = loop
        self.data_path = Path(data_path).resolve()
        self.debounce_cache: Dict[str, float] = {}
        self.debounce_interval: float = 1.0

    def _should_process(self, path_str: str) -> bool:
        path_obj = Path(path_str)
        if path_obj.name not in WATCHED_FILES:
            return False
        now = time.monotonic()
        last_event = self.debounce_cache.get(path_str)
        if last_event and (now - last_event) < self.debounce_interval:
            return False
        self.debounce_cache[path_str] = now
        return True

    def message_for(self, event_type: str, src_path: str) -> Optional[Dict[str, Any]]:
        try:
            relative = Path(src_path).resolve().relative_to(self.data_path)
        except ValueError:
            return None
        parts = relative.parts
        if len(parts) != 2 or parts[0].startswith((".", "_")):
            return None
        message_type = WATCHED_FILES.get(parts[1])
        if not message_type:
            return None
        return {"type": message_type, "project_id": parts[0], "path": relative.as_posix(), "event": event_type}

    def schedule_broadcast(self, event_type: str, src_path: str):
        if not self.loop.is_running():
            return
        if not self._should_process(src_path):
            return
        message = self.message_for(event_type, src_path)
        if message:
            logger.info(f"File Watcher: {event_type} {message['path']}")
            asyncio.run_coroutine_threadsafe(
                self.ws_manager.broadcast(message, project_channel(message["project_id"])), self.loop)

    def on_modified(self, event: FileModifiedEvent):
        if not event.is_directory:
            self.schedule_broadcast("modified", event.src_path)

    def on_created(self, event: FileCreatedEvent):
        if not event.is_directory:
            self.schedule_broadcast("created", event.src_path)

    def on_deleted(self, event: FileDeletedEvent):
        if not event.is_directory:
            self.schedule_broadcast("deleted", event.src_path)

    def on_moved(self, event: FileMovedEvent):
        # Atomic writes land as a rename onto the target file
        if not event.is_directory:
            self.schedule_broadcast("modified", event.dest_path)
