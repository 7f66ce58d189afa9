from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class UserType(Enum):
    """Role a user holds across projects."""

    DEFAULT = "default"
    CURATOR = "curator"


class ChatType(Enum):
    """Visibility class of a project chat."""

    GENERAL = "general"
    TEAM = "team"


# Curators only follow general chats.
VISIBLE_CHAT_TYPES: dict[UserType, tuple[ChatType, ...]] = {
    UserType.DEFAULT: (ChatType.GENERAL, ChatType.TEAM),
    UserType.CURATOR: (ChatType.GENERAL,),
}


@dataclass(frozen=True)
class User:
    id: str
    type: UserType = UserType.DEFAULT

    def can_see(self, chat: Chat) -> bool:
        return chat.chat_type in VISIBLE_CHAT_TYPES[self.type]


@dataclass
class Kard:
    """A task card sitting in one kanban column."""

    id: int
    name: str
    desc: str
    author_id: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "desc": self.desc,
            "author_id": self.author_id,
        }


@dataclass
class Column:
    id: int
    name: str
    kards: list[Kard] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kards": [k.to_dict() for k in self.kards],
        }


@dataclass
class Board:
    """Full kanban state of a project: ordered columns of ordered kards."""

    project_id: int
    columns: list[Column] = field(default_factory=list)

    def kards(self) -> list[Kard]:
        return [kard for column in self.columns for kard in column.kards]

    def to_dict(self) -> dict:
        """Serialize the board for JSON / WebSocket transport."""
        return {
            "project_id": self.project_id,
            "columns": [c.to_dict() for c in self.columns],
        }


@dataclass
class Message:
    id: int
    chat_id: int
    sender_id: str
    text: str
    created_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "sender_id": self.sender_id,
            "text": self.text,
            "created_at": self.created_at,
        }


@dataclass
class Chat:
    """A project chat, optionally decorated with per-user unread state."""

    id: int
    project_id: int
    title: str
    chat_type: ChatType
    unread_messages_count: int = 0
    last_message: Message | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "chat_type": self.chat_type.value,
            "unread_messages_count": self.unread_messages_count,
            "last_message": self.last_message.to_dict() if self.last_message else None,
        }
