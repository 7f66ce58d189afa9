from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TypeVar

from ..realtime.events import (
    CreateColumn,
    CreateKard,
    DeleteColumn,
    DeleteKard,
    GetKanban,
    KanbanIntent,
    MoveColumn,
    MoveKard,
    SetState,
    UpdateColumn,
    UpdateKard,
)
from .models import User
from .repos import KanbanRepository

_T = TypeVar("_T")


class KanbanHandler:
    """Apply kanban intents and answer with the resulting board state.

    Every intent, mutating or not, ends with a full re-read of the board so all
    observers converge on the same state.
    """

    def __init__(self, repo: KanbanRepository) -> None:
        self.repo = repo

    async def _store_call(self, fn: Callable[..., _T], *args: object, **kwargs: object) -> _T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def handle(self, intent: KanbanIntent, user: User) -> SetState:
        pid = intent.project_id
        match intent:
            case GetKanban():
                pass
            case CreateKard(column_id=column_id, name=name, desc=desc):
                await self._store_call(self.repo.create_kard, pid, column_id, name, desc, user.id)
            case MoveKard(id=kard_id, column_id=column_id, new_position=pos, new_column_id=new_column_id):
                await self._store_call(self.repo.move_kard, pid, column_id, kard_id, pos, new_column_id)
            case UpdateKard(id=kard_id, name=name, desc=desc):
                await self._store_call(self.repo.update_kard, pid, kard_id, name, desc)
            case DeleteKard(id=kard_id):
                await self._store_call(self.repo.delete_kard, pid, kard_id)
            case CreateColumn(name=name):
                await self._store_call(self.repo.create_column, pid, name)
            case MoveColumn(id=column_id, new_position=pos):
                await self._store_call(self.repo.move_column, pid, column_id, pos)
            case UpdateColumn(id=column_id, name=name):
                await self._store_call(self.repo.update_column, pid, column_id, name)
            case DeleteColumn(id=column_id):
                await self._store_call(self.repo.delete_column, pid, column_id)
            case _:
                raise ValueError(f"Not a kanban board intent: {type(intent).__name__}")
        board = await self._store_call(self.repo.get_board, pid)
        return SetState(project_id=pid, board=board)
