"""Per-project broadcast topics ("BackFlow") and the registry that owns them.

Every connection observing a project holds one ``BackFlowHandle``: it publishes
the project's domain actions through it and drains its own bounded queue from
it. The registry creates a topic on the first subscriber and discards it when
the last one leaves.
"""

from __future__ import annotations

import asyncio
import logging

from .events import Action

log = logging.getLogger("projectflow")

DEFAULT_QUEUE_SIZE = 256


class BackFlow:
    """Broadcast topic for one project with a bounded queue per subscriber."""

    def __init__(self, project_id: int, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.project_id = project_id
        self.queue_size = queue_size
        self.closed = False
        self.published = 0
        self.dropped = 0
        self._queues: dict[str, asyncio.Queue[Action]] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def subscribers(self) -> list[str]:
        return list(self._queues)

    def attach(self, connection_id: str) -> asyncio.Queue[Action]:
        queue = self._queues.get(connection_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_size)
            self._queues[connection_id] = queue
        return queue

    def detach(self, connection_id: str) -> bool:
        return self._queues.pop(connection_id, None) is not None

    def publish(self, action: Action) -> int:
        """Deliver ``action`` to every subscriber queue without blocking.

        A full queue loses its oldest entry. Returns the number of queues the
        action was put on.
        """
        if self.closed:
            log.debug("publish dropped (topic closed): project=%s", self.project_id)
            return 0
        self.published += 1
        delivered = 0
        for connection_id, queue in list(self._queues.items()):
            if queue.full():
                queue.get_nowait()
                self.dropped += 1
                log.warning(
                    "backflow queue full, dropped oldest project=%s connection=%s",
                    self.project_id,
                    connection_id,
                )
            queue.put_nowait(action)
            delivered += 1
        return delivered


class BackFlowHandle:
    """One connection's attachment to a project's ``BackFlow``."""

    def __init__(self, flow: BackFlow, connection_id: str, queue: asyncio.Queue[Action]) -> None:
        self.flow = flow
        self.connection_id = connection_id
        self._queue = queue

    @property
    def project_id(self) -> int:
        return self.flow.project_id

    def publish(self, action: Action) -> int:
        return self.flow.publish(action)

    async def get(self) -> Action:
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()


class BackFlowRegistry:
    """Process-wide map of project id to ``BackFlow``.

    Creation, attachment, detachment and teardown all happen under one lock, so
    a subscriber arriving while the last one leaves either joins the surviving
    topic or gets a fresh one. Publishing never takes the lock.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._flows: dict[int, BackFlow] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, project_id: int) -> bool:
        return project_id in self._flows

    def __len__(self) -> int:
        return len(self._flows)

    def get(self, project_id: int) -> BackFlow | None:
        return self._flows.get(project_id)

    async def get_or_create(self, project_id: int, connection_id: str) -> BackFlowHandle:
        async with self._lock:
            flow = self._flows.get(project_id)
            if flow is None:
                flow = BackFlow(project_id, self.queue_size)
                self._flows[project_id] = flow
                log.info("backflow created project=%s", project_id)
            queue = flow.attach(connection_id)
        return BackFlowHandle(flow, connection_id, queue)

    async def unsubscribe(self, project_id: int, connection_id: str) -> None:
        async with self._lock:
            flow = self._flows.get(project_id)
            if flow is None:
                return
            flow.detach(connection_id)
            if flow.subscriber_count == 0:
                flow.closed = True
                del self._flows[project_id]
                log.info("backflow removed project=%s", project_id)

    def stats(self) -> dict:
        return {
            "topics": len(self._flows),
            "projects": {
                pid: {
                    "subscribers": flow.subscriber_count,
                    "published": flow.published,
                    "dropped": flow.dropped,
                }
                for pid, flow in self._flows.items()
            },
        }
