from __future__ import annotations

from enum import Enum

from ..domain.kanban import KanbanHandler
from ..domain.messenger import MessengerHandler
from ..domain.models import User
from .events import (
    Action,
    CreateChat,
    CreateColumn,
    CreateKard,
    DeleteColumn,
    DeleteKard,
    GetKanban,
    KanbanIntent,
    MessengerIntent,
    MoveColumn,
    MoveKard,
    ProjectIntent,
    ReadMessage,
    ReadMessagesBefore,
    RequestChatMessages,
    RequestChatsList,
    SendMessage,
    UpdateColumn,
    UpdateKard,
)


class Destination(Enum):
    """Where the action answering an intent is delivered."""

    BACKFLOW = "backflow"  # every observer of the project
    LOCAL = "local"  # the requesting connection only


DESTINATIONS: dict[type[ProjectIntent], Destination] = {
    GetKanban: Destination.BACKFLOW,
    CreateKard: Destination.BACKFLOW,
    MoveKard: Destination.BACKFLOW,
    UpdateKard: Destination.BACKFLOW,
    DeleteKard: Destination.BACKFLOW,
    CreateColumn: Destination.BACKFLOW,
    MoveColumn: Destination.BACKFLOW,
    UpdateColumn: Destination.BACKFLOW,
    DeleteColumn: Destination.BACKFLOW,
    SendMessage: Destination.BACKFLOW,
    CreateChat: Destination.BACKFLOW,
    RequestChatMessages: Destination.LOCAL,
    RequestChatsList: Destination.LOCAL,
    ReadMessage: Destination.LOCAL,
    ReadMessagesBefore: Destination.LOCAL,
}


def destination_for(intent: ProjectIntent) -> Destination:
    try:
        return DESTINATIONS[type(intent)]
    except KeyError:
        raise ValueError(f"No route for intent {type(intent).__name__}") from None


class IntentRouter:
    """Dispatch project intents to the kanban or messenger handler."""

    def __init__(self, kanban: KanbanHandler, messenger: MessengerHandler) -> None:
        self.kanban = kanban
        self.messenger = messenger

    async def handle(self, intent: ProjectIntent, user: User) -> tuple[Destination, Action]:
        destination = destination_for(intent)
        match intent:
            case KanbanIntent():
                action = await self.kanban.handle(intent, user)
            case MessengerIntent():
                action = await self.messenger.handle(intent, user)
            case _:
                raise ValueError(f"Unroutable intent {type(intent).__name__}")
        return destination, action
