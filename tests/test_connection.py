import asyncio
import json

import pytest

from projectflow.domain.kanban import KanbanHandler
from projectflow.domain.messenger import MessengerHandler
from projectflow.domain.models import ChatType, UserType
from projectflow.realtime.backflow import BackFlowRegistry
from projectflow.realtime.routing import IntentRouter
from projectflow.server.connection import ProjectConnection


class _FakeWebSocket:
    """Scripted stand-in for a Starlette WebSocket."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue[dict] = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False
        self.fail_sends = False

    async def receive(self) -> dict:
        return await self.inbox.get()

    async def send_json(self, data: dict) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def push_raw(self, text: str) -> None:
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": 1000})

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]

    def non_keepalive(self) -> list[dict]:
        return [m for m in self.sent if m["type"] != "system:keep_alive"]


class _Client:
    def __init__(self, conn: ProjectConnection, ws: _FakeWebSocket) -> None:
        self.conn = conn
        self.ws = ws
        self.task = asyncio.create_task(conn.run())

    def send(self, **msg) -> None:
        self.ws.push_raw(json.dumps(msg))

    async def disconnect(self) -> None:
        self.ws.disconnect()
        await asyncio.wait_for(self.task, timeout=2.0)


class _Server:
    def __init__(self, store, identity, keepalive_interval: float = 60.0) -> None:
        self.identity = identity
        self.registry = BackFlowRegistry()
        self.router = IntentRouter(KanbanHandler(store), MessengerHandler(store))
        self.keepalive_interval = keepalive_interval

    def connect(self) -> _Client:
        ws = _FakeWebSocket()
        conn = ProjectConnection(
            ws,
            registry=self.registry,
            identity=self.identity,
            router=self.router,
            keepalive_interval=self.keepalive_interval,
            send_timeout=1.0,
        )
        return _Client(conn, ws)

    def authorized(self, user_id: str) -> _Client:
        client = self.connect()
        client.send(type="session:authorize", jwt=self.identity.issue(user_id))
        return client


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class _GatedRegistry(BackFlowRegistry):
    """Holds ``get_or_create`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_or_create(self, project_id, connection_id):
        self.entered.set()
        await self.release.wait()
        return await super().get_or_create(project_id, connection_id)


def _subscribers(server: _Server, project_id: int) -> int:
    flow = server.registry.get(project_id)
    return flow.subscriber_count if flow else 0


# === Authorization ===


@pytest.mark.asyncio
async def test_project_intent_before_authorize_is_unauthorized(store, identity):
    server = _Server(store, identity)
    client = server.connect()

    client.send(type="kanban:start", project_id=7)
    await wait_until(lambda: client.ws.sent)
    assert client.ws.sent == [{"type": "system:unauthorized"}]
    assert client.conn.state == "unauthenticated"
    assert 7 not in server.registry

    # The connection stays usable.
    client.send(type="session:authorize", jwt=identity.issue("alice"))
    await wait_until(lambda: client.conn.state == "authenticated")
    await client.disconnect()


@pytest.mark.asyncio
async def test_bad_token_leaves_connection_unauthenticated(store, identity):
    server = _Server(store, identity)
    client = server.connect()

    client.send(type="session:authorize", jwt="garbage")
    client.send(type="kanban:get", project_id=7)
    await wait_until(lambda: client.ws.sent)
    assert client.ws.sent == [{"type": "system:unauthorized"}]
    assert client.conn.session is None
    await client.disconnect()


@pytest.mark.asyncio
async def test_reauthorize_releases_subscriptions(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=7)
    await wait_until(lambda: _subscribers(server, 7) == 1)

    client.send(type="session:authorize", jwt=identity.issue("bob"))
    await wait_until(lambda: 7 not in server.registry)
    await wait_until(lambda: client.conn.session is not None and client.conn.session.user.id == "bob")
    assert client.conn.session.subscriptions == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_close_session_ends_connection(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=7)
    client.send(type="session:close")

    await asyncio.wait_for(client.task, timeout=2.0)
    assert client.ws.closed
    assert client.conn.state == "closed"
    assert len(server.registry) == 0


@pytest.mark.asyncio
async def test_close_session_unauthenticated_replies_unauthorized_then_closes(store, identity):
    server = _Server(store, identity)
    client = server.connect()
    client.send(type="session:close")

    await asyncio.wait_for(client.task, timeout=2.0)
    assert client.ws.closed
    assert client.ws.sent == [{"type": "system:unauthorized"}]


# === Subscriptions ===


@pytest.mark.asyncio
async def test_start_is_idempotent_per_project(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=5)
    client.send(type="kanban:start", project_id=5)
    client.send(type="messenger:start", project_id=5)
    client.send(type="messenger:stop", project_id=99)
    client.send(type="kanban:stop", project_id=5)

    await wait_until(lambda: client.conn.session is not None and client.conn.session.find(5) is not None)
    await wait_until(lambda: not client.conn.session.find(5).observe_kanban)
    sub = client.conn.session.find(5)
    assert sub.observe_messenger
    assert len(client.conn.session.subscriptions) == 1
    assert _subscribers(server, 5) == 1
    assert len(client.conn._backflow_tasks) == 1
    await client.disconnect()


@pytest.mark.asyncio
async def test_stop_keeps_backflow_membership(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=5)
    client.send(type="kanban:stop", project_id=5)
    client.send(type="kanban:get", project_id=5)

    # The project is still observed, so the board is published but filtered out.
    await wait_until(lambda: server.registry.get(5) is not None and server.registry.get(5).published == 1)
    await asyncio.sleep(0.05)
    assert client.ws.of_type("kanban:set_state") == []
    assert _subscribers(server, 5) == 1
    await client.disconnect()


# === Fan-out ===


@pytest.mark.asyncio
async def test_subsystem_flags_filter_project_actions(store, identity):
    column = store.create_column(7, "Todo")
    chat = store.create_chat(7, "General", ChatType.GENERAL)
    server = _Server(store, identity)
    a = server.authorized("alice")
    b = server.authorized("bob")
    a.send(type="kanban:start", project_id=7)
    b.send(type="messenger:start", project_id=7)
    await wait_until(lambda: _subscribers(server, 7) == 2)

    a.send(type="kanban:create_kard", project_id=7, column_id=column, name="Ship it")
    await wait_until(lambda: a.ws.of_type("kanban:set_state"))
    b.send(type="messenger:send_message", project_id=7, chat_id=chat.id, message="hello")
    await wait_until(lambda: b.ws.of_type("messenger:new_message"))
    # A later board read proves A has already drained and dropped the message.
    a.send(type="kanban:get", project_id=7)
    await wait_until(lambda: len(a.ws.of_type("kanban:set_state")) == 2)

    state = a.ws.of_type("kanban:set_state")[0]
    assert state["project_id"] == 7
    assert state["kanban"]["columns"][0]["kards"][0]["name"] == "Ship it"
    assert state["kanban"]["columns"][0]["kards"][0]["author_id"] == "alice"
    assert b.ws.of_type("messenger:new_message")[0]["message"]["text"] == "hello"
    assert a.ws.of_type("messenger:new_message") == []
    assert b.ws.of_type("kanban:set_state") == []

    await a.disconnect()
    await b.disconnect()


@pytest.mark.asyncio
async def test_intent_for_unobserved_project_is_dropped(store, identity):
    store.create_column(7, "Seven")
    other = store.create_column(9, "Nine")
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=7)
    client.send(type="kanban:create_kard", project_id=9, column_id=other, name="Sneaky")
    client.send(type="kanban:get", project_id=7)

    await wait_until(lambda: client.ws.of_type("kanban:set_state"))
    assert [m["project_id"] for m in client.ws.non_keepalive()] == [7]
    assert store.get_board(9).kards() == []
    assert 9 not in server.registry
    assert not client.task.done()
    await client.disconnect()


@pytest.mark.asyncio
async def test_observers_see_board_updates_in_same_order(store, identity):
    column = store.create_column(3, "Todo")
    server = _Server(store, identity)
    a = server.authorized("alice")
    b = server.authorized("bob")
    a.send(type="kanban:start", project_id=3)
    b.send(type="kanban:start", project_id=3)
    await wait_until(lambda: _subscribers(server, 3) == 2)

    for i in range(3):
        a.send(type="kanban:create_kard", project_id=3, column_id=column, name=f"a{i}")
        b.send(type="kanban:create_kard", project_id=3, column_id=column, name=f"b{i}")

    await wait_until(lambda: len(a.ws.of_type("kanban:set_state")) == 6)
    await wait_until(lambda: len(b.ws.of_type("kanban:set_state")) == 6)
    seen_a = [m["kanban"] for m in a.ws.of_type("kanban:set_state")]
    seen_b = [m["kanban"] for m in b.ws.of_type("kanban:set_state")]
    assert seen_a == seen_b
    assert len(seen_a[-1]["columns"][0]["kards"]) == 6

    await a.disconnect()
    await b.disconnect()


@pytest.mark.asyncio
async def test_local_answers_reach_only_the_requester(store, identity):
    store.create_chat(4, "General", ChatType.GENERAL)
    server = _Server(store, identity)
    a = server.authorized("alice")
    b = server.authorized("bob")
    a.send(type="messenger:start", project_id=4)
    b.send(type="messenger:start", project_id=4)
    await wait_until(lambda: _subscribers(server, 4) == 2)

    a.send(type="messenger:request_chats_list", project_id=4)
    await wait_until(lambda: a.ws.of_type("messenger:chats_list"))
    # A broadcast from B proves its outbound stream has caught up.
    b.send(type="messenger:create_chat", project_id=4, chat_title="Side")
    await wait_until(lambda: b.ws.of_type("messenger:new_chat"))

    assert a.ws.of_type("messenger:chats_list")[0]["chats"][0]["title"] == "General"
    assert b.ws.of_type("messenger:chats_list") == []
    await a.disconnect()
    await b.disconnect()


@pytest.mark.asyncio
async def test_board_intents_cannot_touch_another_project(store, identity):
    theirs = store.create_column(2, "Theirs")
    server = _Server(store, identity)
    bob = server.authorized("bob")
    mallory = server.authorized("mallory")
    bob.send(type="kanban:start", project_id=2)
    mallory.send(type="kanban:start", project_id=1)
    await wait_until(lambda: _subscribers(server, 1) == 1 and _subscribers(server, 2) == 1)

    mallory.send(type="kanban:delete_column", project_id=1, id=theirs)
    mallory.send(type="kanban:update_column", project_id=1, id=theirs, name="Owned")
    mallory.send(type="kanban:create_kard", project_id=1, column_id=theirs, name="Sneaky")
    mallory.send(type="kanban:get", project_id=1)

    await wait_until(lambda: mallory.ws.of_type("kanban:set_state"))
    assert len(mallory.ws.of_type("kanban:set_state")) == 1
    assert mallory.ws.of_type("kanban:set_state")[0]["kanban"]["columns"] == []
    assert store.get_board(2).to_dict() == {
        "project_id": 2,
        "columns": [{"id": theirs, "name": "Theirs", "kards": []}],
    }
    assert bob.ws.of_type("kanban:set_state") == []
    assert not mallory.task.done()
    await bob.disconnect()
    await mallory.disconnect()


@pytest.mark.asyncio
async def test_curator_gets_nothing_from_team_chats(store, identity):
    team = store.create_chat(1, "Team", ChatType.TEAM)
    store.create_message(team.id, "alice", "internal")
    server = _Server(store, identity)
    carol = server.connect()
    carol.send(type="session:authorize", jwt=identity.issue("carol", UserType.CURATOR))
    carol.send(type="messenger:start", project_id=1)
    carol.send(type="messenger:request_chat_messages", project_id=1, chat_id=team.id)
    carol.send(type="messenger:send_message", project_id=1, chat_id=team.id, message="hi")
    carol.send(type="messenger:request_chats_list", project_id=1)

    await wait_until(lambda: carol.ws.of_type("messenger:chats_list"))
    assert carol.ws.of_type("messenger:chats_list")[0]["chats"] == []
    assert carol.ws.of_type("messenger:chat_messages") == []
    assert carol.ws.of_type("messenger:new_message") == []
    assert [m.text for m in store.get_chat_messages(team.id)] == ["internal"]
    await carol.disconnect()


# === Robustness ===


@pytest.mark.asyncio
async def test_malformed_frames_are_ignored(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.ws.push_raw("not json")
    client.ws.push_raw("[1, 2, 3]")
    client.send(type="kanban:explode", project_id=1)
    client.send(type="kanban:create_kard", project_id=1)
    client.ws.push_raw("x" * (client.conn.max_message_size + 1))
    client.send(type="kanban:start", project_id=1)
    client.send(type="kanban:get", project_id=1)

    await wait_until(lambda: client.ws.of_type("kanban:set_state"))
    assert [m["type"] for m in client.ws.non_keepalive()] == ["kanban:set_state"]
    await client.disconnect()


@pytest.mark.asyncio
async def test_frame_size_is_measured_in_bytes(store, identity):
    server = _Server(store, identity)
    client = server.connect()
    client.conn.max_message_size = 100
    frame = json.dumps({"type": "kanban:create_column", "project_id": 1, "name": "\u20ac" * 20}, ensure_ascii=False)
    assert len(frame) <= 100 < len(frame.encode("utf-8"))

    client.ws.push_raw(frame)
    client.send(type="kanban:get", project_id=1)
    await wait_until(lambda: client.ws.sent)
    await asyncio.sleep(0.05)
    # Only the small frame got through to the unauthenticated check.
    assert client.ws.sent == [{"type": "system:unauthorized"}]
    await client.disconnect()


@pytest.mark.asyncio
async def test_failing_handler_does_not_end_connection(store, identity):
    server = _Server(store, identity)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=1)
    client.send(type="kanban:delete_kard", project_id=1, id=404)
    client.send(type="kanban:get", project_id=1)

    await wait_until(lambda: client.ws.of_type("kanban:set_state"))
    assert len(client.ws.of_type("kanban:set_state")) == 1
    assert not client.task.done()
    await client.disconnect()


# === Keep-alive & cleanup ===


@pytest.mark.asyncio
async def test_keepalive_sent_periodically_while_subscribed(store, identity):
    server = _Server(store, identity, keepalive_interval=0.05)
    client = server.authorized("alice")
    client.send(type="messenger:start", project_id=2)

    await wait_until(lambda: len(client.ws.of_type("system:keep_alive")) >= 3)
    await client.disconnect()
    count = len(client.ws.of_type("system:keep_alive"))
    await asyncio.sleep(0.2)
    assert len(client.ws.of_type("system:keep_alive")) == count


@pytest.mark.asyncio
async def test_no_keepalive_without_subscription(store, identity):
    server = _Server(store, identity, keepalive_interval=0.02)
    client = server.authorized("alice")
    await wait_until(lambda: client.conn.state == "authenticated")
    await asyncio.sleep(0.1)
    assert client.ws.sent == []
    await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_tears_down_topics(store, identity):
    server = _Server(store, identity)
    a = server.authorized("alice")
    b = server.authorized("bob")
    a.send(type="kanban:start", project_id=7)
    a.send(type="messenger:start", project_id=8)
    b.send(type="kanban:start", project_id=7)
    await wait_until(lambda: _subscribers(server, 7) == 2 and _subscribers(server, 8) == 1)

    await a.disconnect()
    assert _subscribers(server, 7) == 1
    assert 8 not in server.registry
    assert a.conn.state == "closed"
    assert a.conn._backflow_tasks == {}

    await b.disconnect()
    assert len(server.registry) == 0


@pytest.mark.asyncio
async def test_new_topic_only_carries_later_events(store, identity):
    column = store.create_column(7, "Todo")
    server = _Server(store, identity)
    a = server.authorized("alice")
    a.send(type="kanban:start", project_id=7)
    a.send(type="kanban:create_kard", project_id=7, column_id=column, name="old")
    await wait_until(lambda: a.ws.of_type("kanban:set_state"))
    await a.disconnect()
    assert 7 not in server.registry

    c = server.authorized("carol")
    c.send(type="kanban:start", project_id=7)
    await wait_until(lambda: c.ws.of_type("system:keep_alive"))
    await asyncio.sleep(0.05)
    assert c.ws.non_keepalive() == []

    c.send(type="kanban:create_kard", project_id=7, column_id=column, name="new")
    await wait_until(lambda: c.ws.of_type("kanban:set_state"))
    assert len(c.ws.of_type("kanban:set_state")) == 1
    await c.disconnect()


@pytest.mark.asyncio
async def test_close_while_subscribing_leaves_no_topic(store, identity):
    server = _Server(store, identity)
    server.registry = _GatedRegistry()
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=7)

    await asyncio.wait_for(server.registry.entered.wait(), timeout=2.0)
    await client.conn.close()
    server.registry.release.set()

    await asyncio.wait_for(client.task, timeout=2.0)
    assert 7 not in server.registry
    assert client.conn._backflow_tasks == {}


@pytest.mark.asyncio
async def test_failed_send_stops_forwarding(store, identity):
    server = _Server(store, identity, keepalive_interval=0.02)
    client = server.authorized("alice")
    client.send(type="kanban:start", project_id=1)
    await wait_until(lambda: client.ws.of_type("system:keep_alive"))

    client.ws.fail_sends = True
    task = client.conn._backflow_tasks[1]
    await asyncio.wait_for(task, timeout=2.0)
    await client.disconnect()
    assert len(server.registry) == 0
