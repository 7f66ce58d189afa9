from __future__ import annotations

import asyncio
import logging
import uuid

from fastapi import WebSocket

from ..domain.repos import IdentityError, IdentityResolver
from ..realtime.backflow import BackFlowRegistry
from ..realtime.events import (
    Action,
    Authorize,
    CloseSession,
    Intent,
    KanbanStart,
    KanbanStop,
    KeepAlive,
    MessengerStart,
    MessengerStop,
    ProjectIntent,
    Unauthorized,
)
from ..realtime.routing import Destination, IntentRouter
from ..realtime.session import ProjectSubscription, Session
from .protocol import INTENT_TYPE_NAMES, MalformedIntent, action_to_dict, parse_intent

log = logging.getLogger("projectflow")

DEFAULT_KEEPALIVE_INTERVAL = 10.0
DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_MAX_MESSAGE_SIZE = 1 * 1024 * 1024  # 1 MB


class ProjectConnection:
    """Drive one ``/project`` WebSocket from connect to cleanup.

    Owns three kinds of tasks: the receive loop (``run``), a drain task for
    replies addressed only to this connection, and one task per observed
    project that forwards the project's BackFlow and sends keep-alives.
    """

    def __init__(
        self,
        ws: WebSocket,
        registry: BackFlowRegistry,
        identity: IdentityResolver,
        router: IntentRouter,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
    ) -> None:
        self.id = uuid.uuid4().hex[:12]
        self.ws = ws
        self.registry = registry
        self.identity = identity
        self.router = router
        self.keepalive_interval = keepalive_interval
        self.send_timeout = send_timeout
        self.max_message_size = max_message_size
        self.session: Session | None = None
        self.closed = False
        self._local: asyncio.Queue[Action] = asyncio.Queue()
        self._local_task: asyncio.Task | None = None
        self._backflow_tasks: dict[int, asyncio.Task] = {}
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> str:
        if self.closed:
            return "closed"
        return "unauthenticated" if self.session is None else "authenticated"

    async def run(self) -> None:
        """Process inbound frames in arrival order until the socket goes away."""
        self._local_task = asyncio.create_task(self._drain_local(), name=f"local-{self.id}")
        try:
            while not self.closed:
                message = await self.ws.receive()
                if message["type"] == "websocket.disconnect":
                    log.info("ws disconnected connection=%s", self.id)
                    break
                raw = message.get("text")
                if raw is None:
                    continue
                if not await self.handle_frame(raw):
                    break
        finally:
            await self.close()

    async def handle_frame(self, raw: str) -> bool:
        """Handle one text frame. Returns False once the connection should end."""
        size = len(raw.encode("utf-8"))
        if size > self.max_message_size:
            log.warning("frame too large connection=%s size=%d", self.id, size)
            return True
        try:
            intent = parse_intent(raw)
        except MalformedIntent as exc:
            log.warning("malformed intent connection=%s: %s", self.id, exc)
            return True
        try:
            return await self.dispatch(intent)
        except Exception:
            log.exception("intent %s failed connection=%s", INTENT_TYPE_NAMES.get(type(intent)), self.id)
            return True

    async def dispatch(self, intent: Intent) -> bool:
        match intent:
            case Authorize(jwt=token):
                await self._authorize(token)
            case CloseSession():
                if self.session is None:
                    await self._send(Unauthorized())
                log.info("session closed by client connection=%s", self.id)
                await self.ws.close()
                return False
            case _ if self.session is None:
                self.emit_local(Unauthorized())
            case KanbanStart(project_id=pid):
                await self._start(pid, kanban=True)
            case MessengerStart(project_id=pid):
                await self._start(pid, messenger=True)
            case KanbanStop(project_id=pid):
                self._stop(pid, kanban=True)
            case MessengerStop(project_id=pid):
                self._stop(pid, messenger=True)
            case ProjectIntent():
                await self._forward(intent)
        return True

    def emit_local(self, action: Action) -> None:
        self._local.put_nowait(action)

    async def close(self) -> None:
        """Cancel every owned task, then leave every observed project."""
        if self.closed:
            return
        self.closed = True
        if self._local_task is not None:
            self._local_task.cancel()
            await asyncio.gather(self._local_task, return_exceptions=True)
        await self._release_subscriptions()
        log.info("connection closed connection=%s", self.id)

    # --- session & subscriptions ---

    async def _authorize(self, token: str) -> None:
        try:
            user = await asyncio.to_thread(self.identity.resolve, token)
        except IdentityError as exc:
            log.warning("authorization failed connection=%s: %s", self.id, exc)
            return
        if self.session is not None:
            log.info("re-authorizing connection=%s, dropping %d subscriptions", self.id, len(self.session.subscriptions))
            await self._release_subscriptions()
        self.session = Session(user=user)
        log.info("authorized connection=%s user=%s type=%s", self.id, user.id, user.type.value)

    async def _start(self, project_id: int, *, kanban: bool = False, messenger: bool = False) -> None:
        session = self.session
        sub = session.find(project_id)
        if sub is None:
            handle = await self.registry.get_or_create(project_id, self.id)
            if self.closed:
                # close() ran while waiting on the registry and will not see this project.
                await self.registry.unsubscribe(project_id, self.id)
                return
            sub = session.add(ProjectSubscription(project_id=project_id, backflow=handle))
            self._backflow_tasks[project_id] = asyncio.create_task(
                self._drain_backflow(sub), name=f"backflow-{self.id}-{project_id}",
            )
            log.info("subscribed connection=%s project=%s", self.id, project_id)
        if kanban:
            sub.observe_kanban = True
        if messenger:
            sub.observe_messenger = True

    def _stop(self, project_id: int, *, kanban: bool = False, messenger: bool = False) -> None:
        sub = self.session.find(project_id)
        if sub is None:
            return
        if kanban:
            sub.observe_kanban = False
        if messenger:
            sub.observe_messenger = False

    async def _forward(self, intent: ProjectIntent) -> None:
        session = self.session
        sub = session.find(intent.project_id)
        if sub is None:
            log.debug(
                "dropping %s for unobserved project=%s connection=%s",
                INTENT_TYPE_NAMES.get(type(intent)), intent.project_id, self.id,
            )
            return
        destination, action = await self.router.handle(intent, session.user)
        if destination is Destination.BACKFLOW:
            sub.backflow.publish(action)
        else:
            self.emit_local(action)

    async def _release_subscriptions(self) -> None:
        tasks = list(self._backflow_tasks.values())
        self._backflow_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        session, self.session = self.session, None
        if session is None:
            return
        for project_id in session.project_ids():
            await self.registry.unsubscribe(project_id, self.id)

    # --- outbound ---

    def _accepts(self, action: Action) -> bool:
        if isinstance(action, (Unauthorized, KeepAlive)):
            return True
        return self.session is not None and self.session.accepts(action)

    def _observes(self, sub: ProjectSubscription) -> bool:
        return not self.closed and self.session is not None and self.session.find(sub.project_id) is sub

    async def _drain_local(self) -> None:
        while not self.closed:
            action = await self._local.get()
            if not self._accepts(action):
                continue
            if not await self._send(action):
                return

    async def _drain_backflow(self, sub: ProjectSubscription) -> None:
        loop = asyncio.get_running_loop()
        next_keepalive = loop.time()
        while self._observes(sub):
            wait = next_keepalive - loop.time()
            if wait <= 0:
                if not await self._send(KeepAlive()):
                    return
                next_keepalive = loop.time() + self.keepalive_interval
                continue
            try:
                action = await asyncio.wait_for(sub.backflow.get(), timeout=wait)
            except asyncio.TimeoutError:
                continue
            if self._accepts(action) and not await self._send(action):
                return

    async def _send(self, action: Action) -> bool:
        data = action_to_dict(action)
        try:
            async with self._send_lock:
                await asyncio.wait_for(self.ws.send_json(data), timeout=self.send_timeout)
        except Exception as exc:
            log.warning("send failed connection=%s type=%s error=%s", self.id, data.get("type"), exc)
            return False
        return True
