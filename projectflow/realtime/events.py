from __future__ import annotations

from dataclasses import dataclass, field

from ..domain.models import Board, Chat, ChatType, Message


# --- Intents (client -> server) ---


@dataclass
class Intent:
    """Base class for client requests."""


@dataclass
class Authorize(Intent):
    jwt: str


@dataclass
class CloseSession(Intent):
    pass


@dataclass
class ProjectIntent(Intent):
    """An intent addressed to one project the connection observes."""
    project_id: int


@dataclass
class KanbanIntent(ProjectIntent):
    pass


@dataclass
class MessengerIntent(ProjectIntent):
    pass


@dataclass
class KanbanStart(KanbanIntent):
    pass


@dataclass
class KanbanStop(KanbanIntent):
    pass


@dataclass
class GetKanban(KanbanIntent):
    pass


@dataclass
class CreateKard(KanbanIntent):
    column_id: int
    name: str
    desc: str = ""


@dataclass
class MoveKard(KanbanIntent):
    id: int
    column_id: int
    new_position: int
    new_column_id: int


@dataclass
class UpdateKard(KanbanIntent):
    id: int
    name: str | None = None
    desc: str | None = None


@dataclass
class DeleteKard(KanbanIntent):
    id: int


@dataclass
class CreateColumn(KanbanIntent):
    name: str


@dataclass
class MoveColumn(KanbanIntent):
    id: int
    new_position: int


@dataclass
class UpdateColumn(KanbanIntent):
    id: int
    name: str


@dataclass
class DeleteColumn(KanbanIntent):
    id: int


@dataclass
class MessengerStart(MessengerIntent):
    pass


@dataclass
class MessengerStop(MessengerIntent):
    pass


@dataclass
class SendMessage(MessengerIntent):
    chat_id: int
    message: str


@dataclass
class CreateChat(MessengerIntent):
    chat_title: str
    chat_type: ChatType = ChatType.GENERAL


@dataclass
class RequestChatMessages(MessengerIntent):
    chat_id: int


@dataclass
class RequestChatsList(MessengerIntent):
    pass


@dataclass
class ReadMessage(MessengerIntent):
    chat_id: int
    message_id: int


@dataclass
class ReadMessagesBefore(MessengerIntent):
    chat_id: int
    message_id: int


# --- Actions (server -> client) ---


@dataclass
class Action:
    """Base class for server events."""


@dataclass
class Unauthorized(Action):
    pass


@dataclass
class KeepAlive(Action):
    """Sent periodically so clients do not drop an idle socket."""


@dataclass
class ProjectAction(Action):
    """An event scoped to one project; ``project_id`` drives filtering."""
    project_id: int


@dataclass
class KanbanAction(ProjectAction):
    pass


@dataclass
class MessengerAction(ProjectAction):
    pass


@dataclass
class SetState(KanbanAction):
    board: Board


@dataclass
class NewMessage(MessengerAction):
    chat_id: int
    message: Message


@dataclass
class NewChat(MessengerAction):
    chat: Chat


@dataclass
class SendChatMessages(MessengerAction):
    chat_id: int
    read_messages: list[Message] = field(default_factory=list)
    unread_messages: list[Message] = field(default_factory=list)


@dataclass
class SendChatsList(MessengerAction):
    chats: list[Chat] = field(default_factory=list)


@dataclass
class MessageReadRecorded(MessengerAction):
    chat_id: int
    message_id: int


@dataclass
class UpdateChatUnreadCount(MessengerAction):
    chat_id: int
    count: int
