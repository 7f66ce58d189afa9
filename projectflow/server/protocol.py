from __future__ import annotations

import json
import typing
from dataclasses import MISSING, fields
from functools import lru_cache

from ..domain.models import ChatType
from ..realtime.events import (
    Action,
    Authorize,
    CloseSession,
    CreateChat,
    CreateColumn,
    CreateKard,
    DeleteColumn,
    DeleteKard,
    GetKanban,
    Intent,
    KanbanStart,
    KanbanStop,
    KeepAlive,
    MessageReadRecorded,
    MessengerStart,
    MessengerStop,
    MoveColumn,
    MoveKard,
    NewChat,
    NewMessage,
    ReadMessage,
    ReadMessagesBefore,
    RequestChatMessages,
    RequestChatsList,
    SendChatMessages,
    SendChatsList,
    SendMessage,
    SetState,
    Unauthorized,
    UpdateChatUnreadCount,
    UpdateColumn,
    UpdateKard,
)


class MalformedIntent(ValueError):
    """Raised when an inbound frame is not a valid intent."""


_INTENT_TYPES: dict[str, type[Intent]] = {
    "session:authorize": Authorize,
    "session:close": CloseSession,
    "kanban:start": KanbanStart,
    "kanban:stop": KanbanStop,
    "kanban:get": GetKanban,
    "kanban:create_kard": CreateKard,
    "kanban:move_kard": MoveKard,
    "kanban:update_kard": UpdateKard,
    "kanban:delete_kard": DeleteKard,
    "kanban:create_column": CreateColumn,
    "kanban:move_column": MoveColumn,
    "kanban:update_column": UpdateColumn,
    "kanban:delete_column": DeleteColumn,
    "messenger:start": MessengerStart,
    "messenger:stop": MessengerStop,
    "messenger:send_message": SendMessage,
    "messenger:create_chat": CreateChat,
    "messenger:request_chat_messages": RequestChatMessages,
    "messenger:request_chats_list": RequestChatsList,
    "messenger:read_message": ReadMessage,
    "messenger:read_messages_before": ReadMessagesBefore,
}

INTENT_TYPE_NAMES: dict[type[Intent], str] = {cls: name for name, cls in _INTENT_TYPES.items()}


@lru_cache(maxsize=None)
def _field_types(cls: type[Intent]) -> dict[str, type]:
    """Resolve each field to its concrete type, unwrapping ``X | None``."""
    resolved = {}
    for name, hint in typing.get_type_hints(cls).items():
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        resolved[name] = args[0] if args else hint
    return resolved


def _coerce(msg_type: str, name: str, expected: type, value: object) -> object:
    if expected is int:
        # bool is an int subclass; "true" is never a valid id.
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    elif expected is str:
        if isinstance(value, str):
            return value
    elif expected is ChatType:
        try:
            return ChatType(str(value).lower())
        except ValueError:
            pass
    else:
        return value
    raise MalformedIntent(f"Invalid value for '{name}' in {msg_type}: {value!r}")


def parse_intent(raw: str | bytes) -> Intent:
    """Parse one text frame into an intent, raising ``MalformedIntent``."""
    try:
        msg = json.loads(raw)
    except (json.JSONDecodeError, ValueError) as exc:
        raise MalformedIntent("Invalid JSON") from exc
    if not isinstance(msg, dict):
        raise MalformedIntent("Message must be a JSON object")
    msg_type = msg.get("type")
    if not isinstance(msg_type, str):
        raise MalformedIntent("Missing or invalid 'type' field")
    cls = _INTENT_TYPES.get(msg_type)
    if cls is None:
        raise MalformedIntent(f"Unknown intent type: {msg_type}")

    types = _field_types(cls)
    kwargs: dict[str, object] = {}
    for f in fields(cls):
        value = msg.get(f.name)
        if value is None:
            if f.default is MISSING and f.default_factory is MISSING:
                raise MalformedIntent(f"Missing required field '{f.name}' for {msg_type}")
            continue
        kwargs[f.name] = _coerce(msg_type, f.name, types[f.name], value)
    return cls(**kwargs)


def action_to_dict(action: Action) -> dict:
    match action:
        case Unauthorized():
            return {"type": "system:unauthorized"}
        case KeepAlive():
            return {"type": "system:keep_alive"}
        case SetState(project_id=pid, board=board):
            return {"type": "kanban:set_state", "project_id": pid, "kanban": board.to_dict()}
        case NewMessage(project_id=pid, chat_id=chat_id, message=message):
            return {
                "type": "messenger:new_message",
                "project_id": pid,
                "chat_id": chat_id,
                "message": message.to_dict(),
            }
        case NewChat(project_id=pid, chat=chat):
            return {"type": "messenger:new_chat", "project_id": pid, "chat": chat.to_dict()}
        case SendChatMessages(project_id=pid, chat_id=chat_id, read_messages=read, unread_messages=unread):
            return {
                "type": "messenger:chat_messages",
                "project_id": pid,
                "chat_id": chat_id,
                "read_messages": [m.to_dict() for m in read],
                "unread_messages": [m.to_dict() for m in unread],
            }
        case SendChatsList(project_id=pid, chats=chats):
            return {"type": "messenger:chats_list", "project_id": pid, "chats": [c.to_dict() for c in chats]}
        case MessageReadRecorded(project_id=pid, chat_id=chat_id, message_id=mid):
            return {"type": "messenger:message_read", "project_id": pid, "chat_id": chat_id, "message_id": mid}
        case UpdateChatUnreadCount(project_id=pid, chat_id=chat_id, count=count):
            return {"type": "messenger:unread_count", "project_id": pid, "chat_id": chat_id, "count": count}
        case _:
            return {"type": "unknown"}
