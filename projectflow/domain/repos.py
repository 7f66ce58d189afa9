"""Collaborator interfaces consumed by the real-time core.

Implementations are synchronous; the async core calls them through
``asyncio.to_thread``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import Board, Chat, ChatType, Message, User, UserType


class IdentityError(Exception):
    """Raised when a token cannot be resolved to a user."""


class StoreError(KeyError):
    """Raised by a repository when a referenced row does not exist."""


class IdentityResolver(ABC):
    @abstractmethod
    def resolve(self, jwt: str) -> User:
        """Return the user the token belongs to or raise ``IdentityError``."""


class KanbanRepository(ABC):
    """Board persistence. Every call naming a column or kard also names the
    project it must belong to and raises ``StoreError`` when it does not."""

    @abstractmethod
    def get_board(self, project_id: int) -> Board:
        """Return every column of the project with its kards, both in order."""

    @abstractmethod
    def create_kard(self, project_id: int, column_id: int, name: str, desc: str, author_id: str) -> int:
        """Append a kard to the column and return its id."""

    @abstractmethod
    def move_kard(self, project_id: int, column_id: int, kard_id: int, new_position: int, new_column_id: int) -> None:
        """Move a kard out of ``column_id`` into ``new_column_id`` at ``new_position``."""

    @abstractmethod
    def update_kard(self, project_id: int, kard_id: int, name: str | None, desc: str | None) -> None:
        """Rename and/or redescribe a kard; ``None`` keeps the current value."""

    @abstractmethod
    def delete_kard(self, project_id: int, kard_id: int) -> None: ...

    @abstractmethod
    def create_column(self, project_id: int, name: str) -> int:
        """Append a column to the project board and return its id."""

    @abstractmethod
    def move_column(self, project_id: int, column_id: int, new_position: int) -> None: ...

    @abstractmethod
    def update_column(self, project_id: int, column_id: int, name: str) -> None: ...

    @abstractmethod
    def delete_column(self, project_id: int, column_id: int) -> None:
        """Delete a column together with its kards."""


class MessengerRepository(ABC):
    @abstractmethod
    def get_chat(self, chat_id: int) -> Chat:
        """Return the chat or raise ``StoreError``."""

    @abstractmethod
    def create_message(self, chat_id: int, sender_id: str, text: str) -> Message: ...

    @abstractmethod
    def get_unread_ids(self, chat_id: int, user_id: str) -> set[int]: ...

    @abstractmethod
    def get_chat_messages(self, chat_id: int) -> list[Message]:
        """Return the chat history, oldest first."""

    @abstractmethod
    def get_last_message(self, chat_id: int) -> Message | None: ...

    @abstractmethod
    def mark_read_before(self, message_id: int, chat_id: int, user_id: str) -> None:
        """Mark every message of the chat up to and including ``message_id`` as read."""

    @abstractmethod
    def mark_read(self, message_id: int, chat_id: int, user_id: str) -> None: ...

    @abstractmethod
    def get_unread_count(self, user_id: str, chat_id: int) -> int: ...

    @abstractmethod
    def create_chat(self, project_id: int, title: str, chat_type: ChatType) -> Chat: ...

    @abstractmethod
    def get_project_chats(self, project_id: int, user_type: UserType) -> list[Chat]:
        """Return the project chats visible to users of ``user_type``."""


class MembershipRepository(ABC):
    @abstractmethod
    def add_member(self, project_id: int, user_id: str) -> None: ...

    @abstractmethod
    def is_member(self, user_id: str, project_id: int) -> bool: ...
