from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TypeVar

from ..realtime.events import (
    CreateChat,
    MessageReadRecorded,
    MessengerAction,
    MessengerIntent,
    NewChat,
    NewMessage,
    ReadMessage,
    ReadMessagesBefore,
    RequestChatMessages,
    RequestChatsList,
    SendChatMessages,
    SendChatsList,
    SendMessage,
    UpdateChatUnreadCount,
)
from .models import Chat, Message, User
from .repos import MessengerRepository, StoreError

_T = TypeVar("_T")


class MessengerHandler:
    """Apply messenger intents on behalf of one user."""

    def __init__(self, repo: MessengerRepository) -> None:
        self.repo = repo

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def handle(self, intent: MessengerIntent, user: User) -> MessengerAction:
        pid = intent.project_id
        match intent:
            case SendMessage(chat_id=chat_id, message=text):
                await self._visible_chat(pid, chat_id, user)
                message = await self._store_call(self.repo.create_message, chat_id, user.id, text)
                # The sender has seen everything up to their own message.
                await self._store_call(self.repo.mark_read_before, message.id, chat_id, user.id)
                return NewMessage(project_id=pid, chat_id=chat_id, message=message)
            case CreateChat(chat_title=title, chat_type=chat_type):
                chat = await self._store_call(self.repo.create_chat, pid, title, chat_type)
                return NewChat(project_id=pid, chat=chat)
            case RequestChatMessages(chat_id=chat_id):
                await self._visible_chat(pid, chat_id, user)
                read, unread = await self._split_by_read_state(chat_id, user)
                return SendChatMessages(project_id=pid, chat_id=chat_id, read_messages=read, unread_messages=unread)
            case RequestChatsList():
                chats = await self._chats_for(pid, user)
                return SendChatsList(project_id=pid, chats=chats)
            case ReadMessage(chat_id=chat_id, message_id=message_id):
                await self._visible_chat(pid, chat_id, user)
                await self._store_call(self.repo.mark_read, message_id, chat_id, user.id)
                return MessageReadRecorded(project_id=pid, chat_id=chat_id, message_id=message_id)
            case ReadMessagesBefore(chat_id=chat_id, message_id=message_id):
                await self._visible_chat(pid, chat_id, user)
                await self._store_call(self.repo.mark_read_before, message_id, chat_id, user.id)
                count = await self._store_call(self.repo.get_unread_count, user.id, chat_id)
                return UpdateChatUnreadCount(project_id=pid, chat_id=chat_id, count=count)
            case _:
                raise ValueError(f"Not a messenger request: {type(intent).__name__}")

    async def _visible_chat(self, project_id: int, chat_id: int, user: User) -> Chat:
        """Return the chat if it is in ``project_id`` and visible to ``user``, else raise ``StoreError``."""
        chat = await self._store_call(self.repo.get_chat, chat_id)
        if chat.project_id != project_id or not user.can_see(chat):
            raise StoreError(f"Chat {chat_id} not found in project {project_id}")
        return chat

    async def _split_by_read_state(self, chat_id: int, user: User) -> tuple[list[Message], list[Message]]:
        unread_ids = await self._store_call(self.repo.get_unread_ids, chat_id, user.id)
        messages = await self._store_call(self.repo.get_chat_messages, chat_id)
        read = [m for m in messages if m.id not in unread_ids]
        unread = [m for m in messages if m.id in unread_ids]
        return read, unread

    async def _chats_for(self, project_id: int, user: User) -> list[Chat]:
        chats = await self._store_call(self.repo.get_project_chats, project_id, user.type)
        for chat in chats:
            chat.unread_messages_count = await self._store_call(self.repo.get_unread_count, user.id, chat.id)
            chat.last_message = await self._store_call(self.repo.get_last_message, chat.id)
        return chats
