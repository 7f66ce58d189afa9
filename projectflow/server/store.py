from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from ..domain.models import VISIBLE_CHAT_TYPES, Board, Chat, ChatType, Column, Kard, Message, UserType
from ..domain.repos import KanbanRepository, MembershipRepository, MessengerRepository, StoreError

_DEFAULT_DB_PATH = Path.home() / ".projectflow" / "projectflow.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS project_members (
    project_id  INTEGER NOT NULL,
    user_id     TEXT NOT NULL,
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS columns (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id  INTEGER NOT NULL,
    name        TEXT NOT NULL,
    position    INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_columns_project ON columns(project_id);

CREATE TABLE IF NOT EXISTS kards (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    column_id   INTEGER NOT NULL REFERENCES columns(id) ON DELETE CASCADE,
    name        TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    author_id   TEXT NOT NULL,
    position    INTEGER NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kards_column ON kards(column_id);

CREATE TABLE IF NOT EXISTS chats (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id  INTEGER NOT NULL,
    title       TEXT NOT NULL,
    chat_type   TEXT NOT NULL DEFAULT 'general',
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chats_project ON chats(project_id);

CREATE TABLE IF NOT EXISTS messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id     INTEGER NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    sender_id   TEXT NOT NULL,
    text        TEXT NOT NULL,
    created_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id);

CREATE TABLE IF NOT EXISTS message_reads (
    message_id  INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    user_id     TEXT NOT NULL,
    PRIMARY KEY (message_id, user_id)
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clamp(position: int, size: int) -> int:
    return max(0, min(position, size))


class ProjectStore(KanbanRepository, MessengerRepository, MembershipRepository):
    """SQLite persistence for boards, chats, messages, read state and membership."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- membership ---

    def add_member(self, project_id: int, user_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, user_id) VALUES (?, ?)",
                (project_id, user_id),
            )
            self._conn.commit()

    def is_member(self, user_id: str, project_id: int) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "SELECT 1 FROM project_members WHERE project_id = ? AND user_id = ?",
                (project_id, user_id),
            )
            return cur.fetchone() is not None

    # --- kanban ---

    def get_board(self, project_id: int) -> Board:
        with self._lock:
            col_rows = self._conn.execute(
                "SELECT id, name FROM columns WHERE project_id = ? ORDER BY position, id",
                (project_id,),
            ).fetchall()
            kard_rows = self._conn.execute(
                "SELECT k.id, k.column_id, k.name, k.description, k.author_id FROM kards k "
                "JOIN columns c ON c.id = k.column_id WHERE c.project_id = ? ORDER BY k.position, k.id",
                (project_id,),
            ).fetchall()
        columns = {row[0]: Column(id=row[0], name=row[1]) for row in col_rows}
        for kard_id, column_id, name, desc, author_id in kard_rows:
            columns[column_id].kards.append(Kard(id=kard_id, name=name, desc=desc, author_id=author_id))
        return Board(project_id=project_id, columns=list(columns.values()))

    def create_column(self, project_id: int, name: str) -> int:
        with self._lock:
            (size,) = self._conn.execute(
                "SELECT COUNT(*) FROM columns WHERE project_id = ?", (project_id,)
            ).fetchone()
            cur = self._conn.execute(
                "INSERT INTO columns (project_id, name, position) VALUES (?, ?, ?)",
                (project_id, name, size),
            )
            self._conn.commit()
            return cur.lastrowid

    def move_column(self, project_id: int, column_id: int, new_position: int) -> None:
        with self._lock:
            ids = self._column_ids(project_id)
            if column_id not in ids:
                raise StoreError(f"Column {column_id} not in project {project_id}")
            ids.remove(column_id)
            ids.insert(_clamp(new_position, len(ids)), column_id)
            self._renumber("columns", ids)
            self._conn.commit()

    def update_column(self, project_id: int, column_id: int, name: str) -> None:
        with self._lock:
            self._require_column(project_id, column_id)
            self._conn.execute("UPDATE columns SET name = ? WHERE id = ?", (name, column_id))
            self._conn.commit()

    def delete_column(self, project_id: int, column_id: int) -> None:
        with self._lock:
            self._require_column(project_id, column_id)
            self._conn.execute("DELETE FROM columns WHERE id = ?", (column_id,))
            self._renumber("columns", self._column_ids(project_id))
            self._conn.commit()

    def create_kard(self, project_id: int, column_id: int, name: str, desc: str, author_id: str) -> int:
        with self._lock:
            self._require_column(project_id, column_id)
            (size,) = self._conn.execute(
                "SELECT COUNT(*) FROM kards WHERE column_id = ?", (column_id,)
            ).fetchone()
            cur = self._conn.execute(
                "INSERT INTO kards (column_id, name, description, author_id, position, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (column_id, name, desc, author_id, size, _now()),
            )
            self._conn.commit()
            return cur.lastrowid

    def move_kard(self, project_id: int, column_id: int, kard_id: int, new_position: int, new_column_id: int) -> None:
        with self._lock:
            if self._kard_column(project_id, kard_id) != column_id:
                raise StoreError(f"Kard {kard_id} is not in column {column_id}")
            self._require_column(project_id, new_column_id)
            source = self._kard_ids(column_id)
            source.remove(kard_id)
            target = source if new_column_id == column_id else self._kard_ids(new_column_id)
            target.insert(_clamp(new_position, len(target)), kard_id)
            self._conn.execute("UPDATE kards SET column_id = ? WHERE id = ?", (new_column_id, kard_id))
            self._renumber("kards", source)
            self._renumber("kards", target)
            self._conn.commit()

    def update_kard(self, project_id: int, kard_id: int, name: str | None, desc: str | None) -> None:
        with self._lock:
            self._kard_column(project_id, kard_id)
            self._conn.execute(
                "UPDATE kards SET name = COALESCE(?, name), description = COALESCE(?, description) WHERE id = ?",
                (name, desc, kard_id),
            )
            self._conn.commit()

    def delete_kard(self, project_id: int, kard_id: int) -> None:
        with self._lock:
            column_id = self._kard_column(project_id, kard_id)
            self._conn.execute("DELETE FROM kards WHERE id = ?", (kard_id,))
            self._renumber("kards", self._kard_ids(column_id))
            self._conn.commit()

    # Callers hold self._lock.

    def _require_column(self, project_id: int, column_id: int) -> None:
        row = self._conn.execute("SELECT project_id FROM columns WHERE id = ?", (column_id,)).fetchone()
        if row is None or row[0] != project_id:
            raise StoreError(f"Column {column_id} not in project {project_id}")

    def _kard_column(self, project_id: int, kard_id: int) -> int:
        row = self._conn.execute(
            "SELECT k.column_id FROM kards k JOIN columns c ON c.id = k.column_id "
            "WHERE k.id = ? AND c.project_id = ?",
            (kard_id, project_id),
        ).fetchone()
        if row is None:
            raise StoreError(f"Kard {kard_id} not in project {project_id}")
        return row[0]

    def _column_ids(self, project_id: int) -> list[int]:
        cur = self._conn.execute(
            "SELECT id FROM columns WHERE project_id = ? ORDER BY position, id", (project_id,)
        )
        return [row[0] for row in cur.fetchall()]

    def _kard_ids(self, column_id: int) -> list[int]:
        cur = self._conn.execute(
            "SELECT id FROM kards WHERE column_id = ? ORDER BY position, id", (column_id,)
        )
        return [row[0] for row in cur.fetchall()]

    def _renumber(self, table: str, ordered_ids: list[int]) -> None:
        self._conn.executemany(
            f"UPDATE {table} SET position = ? WHERE id = ?",
            [(position, row_id) for position, row_id in enumerate(ordered_ids)],
        )

    # --- messenger ---

    def create_chat(self, project_id: int, title: str, chat_type: ChatType) -> Chat:
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO chats (project_id, title, chat_type, created_at) VALUES (?, ?, ?, ?)",
                (project_id, title, chat_type.value, _now()),
            )
            self._conn.commit()
            return Chat(id=cur.lastrowid, project_id=project_id, title=title, chat_type=chat_type)

    def get_chat(self, chat_id: int) -> Chat:
        with self._lock:
            row = self._conn.execute(
                "SELECT project_id, title, chat_type FROM chats WHERE id = ?", (chat_id,)
            ).fetchone()
        if row is None:
            raise StoreError(f"Chat {chat_id} not found")
        return Chat(id=chat_id, project_id=row[0], title=row[1], chat_type=ChatType(row[2]))

    def get_project_chats(self, project_id: int, user_type: UserType) -> list[Chat]:
        visible = [t.value for t in VISIBLE_CHAT_TYPES[user_type]]
        placeholders = ", ".join("?" for _ in visible)
        with self._lock:
            cur = self._conn.execute(
                f"SELECT id, title, chat_type FROM chats WHERE project_id = ? AND chat_type IN ({placeholders}) ORDER BY id",
                (project_id, *visible),
            )
            rows = cur.fetchall()
        return [Chat(id=r[0], project_id=project_id, title=r[1], chat_type=ChatType(r[2])) for r in rows]

    def create_message(self, chat_id: int, sender_id: str, text: str) -> Message:
        now = _now()
        with self._lock:
            if self._conn.execute("SELECT 1 FROM chats WHERE id = ?", (chat_id,)).fetchone() is None:
                raise StoreError(f"Chat {chat_id} not found")
            cur = self._conn.execute(
                "INSERT INTO messages (chat_id, sender_id, text, created_at) VALUES (?, ?, ?, ?)",
                (chat_id, sender_id, text, now),
            )
            self._conn.commit()
            return Message(id=cur.lastrowid, chat_id=chat_id, sender_id=sender_id, text=text, created_at=now)

    def get_chat_messages(self, chat_id: int) -> list[Message]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, sender_id, text, created_at FROM messages WHERE chat_id = ? ORDER BY id",
                (chat_id,),
            )
            rows = cur.fetchall()
        return [Message(id=r[0], chat_id=chat_id, sender_id=r[1], text=r[2], created_at=r[3]) for r in rows]

    def get_last_message(self, chat_id: int) -> Message | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, sender_id, text, created_at FROM messages WHERE chat_id = ? ORDER BY id DESC LIMIT 1",
                (chat_id,),
            ).fetchone()
        if row is None:
            return None
        return Message(id=row[0], chat_id=chat_id, sender_id=row[1], text=row[2], created_at=row[3])

    def get_unread_ids(self, chat_id: int, user_id: str) -> set[int]:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id FROM messages WHERE chat_id = ? AND id NOT IN "
                "(SELECT message_id FROM message_reads WHERE user_id = ?)",
                (chat_id, user_id),
            )
            return {row[0] for row in cur.fetchall()}

    def get_unread_count(self, user_id: str, chat_id: int) -> int:
        with self._lock:
            (count,) = self._conn.execute(
                "SELECT COUNT(*) FROM messages WHERE chat_id = ? AND id NOT IN "
                "(SELECT message_id FROM message_reads WHERE user_id = ?)",
                (chat_id, user_id),
            ).fetchone()
            return count

    def mark_read(self, message_id: int, chat_id: int, user_id: str) -> None:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM messages WHERE id = ? AND chat_id = ?", (message_id, chat_id)
            ).fetchone()
            if row is None:
                raise StoreError(f"Message {message_id} not in chat {chat_id}")
            self._conn.execute(
                "INSERT OR IGNORE INTO message_reads (message_id, user_id) VALUES (?, ?)",
                (message_id, user_id),
            )
            self._conn.commit()

    def mark_read_before(self, message_id: int, chat_id: int, user_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO message_reads (message_id, user_id) "
                "SELECT id, ? FROM messages WHERE chat_id = ? AND id <= ?",
                (user_id, chat_id, message_id),
            )
            self._conn.commit()
