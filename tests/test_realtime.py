import json
import asyncio
from unittest import mock

import pytest

from taskpilot.realtime import ConnectionManager, DataChangeHandler, channel_project_id, project_channel


class FakeWebSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(text))


def run(coro):
    return asyncio.run(coro)


def test_broadcast_to_all_and_prune_dead_sockets():
    manager = ConnectionManager()
    alive, dead = FakeWebSocket(), FakeWebSocket(fail=True)

    async def scenario():
        await manager.connect(alive)
        await manager.connect(dead)
        await manager.broadcast({"type": "tasks_updated", "project_id": "p1"})

    run(scenario())
    assert alive.accepted
    assert alive.sent == [{"type": "tasks_updated", "project_id": "p1"}]
    assert manager.active_connections == [alive]
    assert dead not in manager.subscriptions
    assert dead not in manager.users


def test_channel_broadcast_reaches_subscribers_only():
    manager = ConnectionManager()
    subscriber, other = FakeWebSocket(), FakeWebSocket()

    async def scenario():
        await manager.connect(subscriber)
        await manager.connect(other)
        reply = await manager.handle_client_message(
            subscriber, json.dumps({"action": "subscribe", "channel": "custom-view.p1.default"}))
        await manager.broadcast({"event": "custom-view-data-updated"}, "custom-view.p1.default")
        return reply

    assert run(scenario()) == {"type": "subscribed", "channel": "custom-view.p1.default"}
    assert subscriber.sent == [{"event": "custom-view-data-updated"}]
    assert other.sent == []


def test_subscriptions_are_authorized_per_socket():
    manager = ConnectionManager()
    member, outsider = FakeWebSocket(), FakeWebSocket()
    allowed = {"project.p1", "custom-view.p1.default"}

    async def scenario():
        await manager.connect(member, 1, lambda channel: channel in allowed)
        await manager.connect(outsider, 2, lambda channel: False)
        replies = [
            await manager.handle_client_message(member, json.dumps({"action": "subscribe", "channel": "project.p1"})),
            await manager.handle_client_message(
                outsider, json.dumps({"action": "subscribe", "channel": "custom-view.p1.default"})),
        ]
        await manager.broadcast({"type": "tasks_updated", "project_id": "p1"}, project_channel("p1"))
        return replies

    assert run(scenario()) == [
        {"type": "subscribed", "channel": "project.p1"},
        {"type": "error", "message": "Forbidden channel", "channel": "custom-view.p1.default"},
    ]
    assert member.sent == [{"type": "tasks_updated", "project_id": "p1"}]
    assert outsider.sent == []
    assert manager.subscriptions[outsider] == set()


def test_revoke_drops_a_removed_members_project_channels():
    manager = ConnectionManager()
    socket = FakeWebSocket()

    async def scenario():
        await manager.connect(socket, 7, lambda channel: True)
        for channel in ("project.p1", "custom-view.p1.default", "project.p2"):
            await manager.subscribe(socket, channel)
        await manager.revoke("p1", 7)
        await manager.broadcast({"type": "project_updated", "project_id": "p1"}, "project.p1")

    run(scenario())
    assert manager.subscriptions[socket] == {"project.p2"}
    assert socket.sent == []


@pytest.mark.parametrize("channel, project_id", [
    ("project.p1", "p1"),
    ("custom-view.website-relaunch.Board", "website-relaunch"),
    ("custom-view.p1.my.view", "p1"),
    ("custom-view.p1", None),
    ("project.", None),
    ("everything", None),
])
def test_channel_project_id(channel, project_id):
    assert channel_project_id(channel) == project_id


def test_unsubscribe_and_disconnect():
    manager = ConnectionManager()
    socket = FakeWebSocket()

    async def scenario():
        await manager.connect(socket)
        await manager.subscribe(socket, "c")
        reply = await manager.handle_client_message(socket, json.dumps({"action": "unsubscribe", "channel": "c"}))
        await manager.broadcast({"type": "x"}, "c")
        await manager.disconnect(socket)
        return reply

    assert run(scenario()) == {"type": "unsubscribed", "channel": "c"}
    assert socket.sent == []
    assert manager.active_connections == []


@pytest.mark.parametrize("raw, reply", [
    ('{"action": "ping"}', {"type": "pong"}),
    ("not json", {"type": "error", "message": "Invalid JSON"}),
    ("[1]", {"type": "error", "message": "Invalid JSON"}),
    ('{"action": "subscribe"}', {"type": "error", "message": "Missing channel"}),
    ('{"action": "dance"}', {"type": "error", "message": "Unknown action: dance"}),
])
def test_client_messages(raw, reply):
    manager = ConnectionManager()
    assert run(manager.handle_client_message(FakeWebSocket(), raw)) == reply


def test_publish_without_running_loop_is_dropped():
    manager = ConnectionManager()
    with mock.patch("taskpilot.realtime.asyncio.run_coroutine_threadsafe") as schedule:
        manager.publish({"type": "tasks_updated"})
    schedule.assert_not_called()


def test_publish_from_worker_thread():
    manager = ConnectionManager()
    socket = FakeWebSocket()

    async def scenario():
        manager.loop = asyncio.get_running_loop()
        await manager.connect(socket)
        await asyncio.get_running_loop().run_in_executor(None, manager.publish, {"type": "tasks_updated"})
        for _ in range(20):
            if socket.sent:
                break
            await asyncio.sleep(0.01)

    run(scenario())
    assert socket.sent == [{"type": "tasks_updated"}]


def test_message_for_watched_files(tmp_path):
    handler = DataChangeHandler(ConnectionManager(), mock.Mock(), tmp_path)
    assert handler.message_for("modified", str(tmp_path / "p1" / "tasks.yaml")) == {
        "type": "tasks_updated", "project_id": "p1", "path": "p1/tasks.yaml", "event": "modified"}
    assert handler.message_for("created", str(tmp_path / "p1" / "custom_views.yaml"))["type"] == "custom_views_updated"
    assert handler.message_for("modified", str(tmp_path / "p1" / "notes.txt")) is None
    assert handler.message_for("modified", str(tmp_path / "_users" / "tasks.yaml")) is None
    assert handler.message_for("modified", str(tmp_path.parent / "elsewhere" / "tasks.yaml")) is None


def test_events_are_debounced(tmp_path):
    handler = DataChangeHandler(ConnectionManager(), mock.Mock(), tmp_path)
    path = str(tmp_path / "p1" / "tasks.yaml")
    assert handler._should_process(path)
    assert not handler._should_process(path)
    assert not handler._should_process(str(tmp_path / "p1" / "notes.txt"))


def test_schedule_broadcast_uses_the_loop(tmp_path):
    loop = mock.Mock()
    loop.is_running.return_value = True
    handler = DataChangeHandler(ConnectionManager(), loop, tmp_path)
    with mock.patch("taskpilot.realtime.asyncio.run_coroutine_threadsafe") as schedule:
        handler.schedule_broadcast("modified", str(tmp_path / "p1" / "tasks.yaml"))
        handler.schedule_broadcast("modified", str(tmp_path / "p1" / "tasks.yaml"))
    assert schedule.call_count == 1
    schedule.call_args.args[0].close()
    assert schedule.call_args.args[1] is loop


def test_watcher_events_go_to_the_project_channel(tmp_path):
    manager = ConnectionManager()
    member, stranger = FakeWebSocket(), FakeWebSocket()

    async def scenario():
        loop = asyncio.get_running_loop()
        await manager.connect(member)
        await manager.connect(stranger)
        await manager.subscribe(member, "project.p1")
        handler = DataChangeHandler(manager, loop, tmp_path)
        await loop.run_in_executor(None, handler.schedule_broadcast, "modified", str(tmp_path / "p1" / "tasks.yaml"))
        for _ in range(20):
            if member.sent:
                break
            await asyncio.sleep(0.01)

    run(scenario())
    assert member.sent[0]["type"] == "tasks_updated"
    assert stranger.sent == []
