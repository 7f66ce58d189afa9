from __future__ import annotations

from dataclasses import dataclass, field

from ..domain.models import User
from .backflow import BackFlowHandle
from .events import Action, KanbanAction, KeepAlive, MessengerAction, Unauthorized


@dataclass
class ProjectSubscription:
    """A connection's observation of one project."""

    project_id: int
    backflow: BackFlowHandle
    observe_kanban: bool = False
    observe_messenger: bool = False


@dataclass
class Session:
    """Authenticated state of one connection."""

    user: User
    subscriptions: list[ProjectSubscription] = field(default_factory=list)

    def find(self, project_id: int) -> ProjectSubscription | None:
        for sub in self.subscriptions:
            if sub.project_id == project_id:
                return sub
        return None

    def add(self, subscription: ProjectSubscription) -> ProjectSubscription:
        if self.find(subscription.project_id) is not None:
            raise ValueError(f"Already subscribed to project {subscription.project_id}")
        self.subscriptions.append(subscription)
        return subscription

    def project_ids(self) -> list[int]:
        return [sub.project_id for sub in self.subscriptions]

    def accepts(self, action: Action) -> bool:
        """Return True if ``action`` should be written to this connection."""
        match action:
            case Unauthorized() | KeepAlive():
                return True
            case KanbanAction(project_id=pid):
                sub = self.find(pid)
                return sub is not None and sub.observe_kanban
            case MessengerAction(project_id=pid):
                sub = self.find(pid)
                return sub is not None and sub.observe_messenger
            case _:
                return False
