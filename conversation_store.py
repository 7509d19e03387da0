"""SQLite-backed conversation and message persistence."""
import dataclasses
import logging
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from protocol import load_content_blocks

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"
STATUS_ACTIVE = "active"
STATUS_ARCHIVED = "archived"

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'New conversation',
    session_id TEXT,
    cwd TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
    content TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at);
"""

# Columns added after the first release; applied only when missing.
_MIGRATIONS: tuple[tuple[str, str, str], ...] = (
    (
        "conversations",
        "status",
        "ALTER TABLE conversations ADD COLUMN status TEXT NOT NULL DEFAULT 'active' "
        "CHECK(status IN ('active', 'archived'))",
    ),
    ("conversations", "summary", "ALTER TABLE conversations ADD COLUMN summary TEXT"),
    ("conversations", "archived_at", "ALTER TABLE conversations ADD COLUMN archived_at TEXT"),
    ("messages", "content_blocks", "ALTER TABLE messages ADD COLUMN content_blocks TEXT"),
)


@dataclasses.dataclass
class Conversation:
    id: str
    title: str
    session_id: Optional[str]
    cwd: str
    status: str
    summary: Optional[str]
    archived_at: Optional[str]
    created_at: str
    updated_at: str

    @property
    def is_archived(self) -> bool:
        return self.status == STATUS_ARCHIVED

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    content_blocks: Optional[str]
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["content_blocks"] = load_content_blocks(self.content_blocks)
        return data


_CONVERSATION_COLUMNS = "id, title, session_id, cwd, status, summary, archived_at, created_at, updated_at"
_MESSAGE_COLUMNS = "id, conversation_id, role, content, content_blocks, created_at"


def _conversation_from_row(row: aiosqlite.Row) -> Conversation:
    return Conversation(**{key: row[key] for key in row.keys()})


def _message_from_row(row: aiosqlite.Row) -> Message:
    return Message(**{key: row[key] for key in row.keys()})


class ConversationStore:
    """Async CRUD over the `conversations` and `messages` tables.

    Every write commits immediately; callers never see partially applied updates.
    """

    def __init__(self, conn: aiosqlite.Connection, db_path: str):
        self._conn = conn
        self.db_path = db_path

    @classmethod
    async def open(cls, db_path: str) -> "ConversationStore":
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.execute("PRAGMA foreign_keys=ON")
        store = cls(conn, db_path)
        await store._ensure_schema()
        logger.info("Opened conversation store at %s", db_path)
        return store

    async def _ensure_schema(self) -> None:
        await self._conn.executescript(_SCHEMA_SQL)
        for table, column, ddl in _MIGRATIONS:
            if column not in await self._table_columns(table):
                await self._conn.execute(ddl)
                logger.info("Migrated %s: added column %s", table, column)
        await self._conn.commit()

    async def _table_columns(self, table: str) -> set[str]:
        async with self._conn.execute(f"PRAGMA table_info({table})") as cursor:
            rows = await cursor.fetchall()
        return {row["name"] for row in rows}

    async def _write(self, sql: str, params: tuple[Any, ...]) -> int:
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount

    # Conversations

    async def create_conversation(self, conversation_id: str, title: str, cwd: str) -> Conversation:
        await self._write(
            "INSERT INTO conversations (id, title, cwd) VALUES (?, ?, ?)",
            (conversation_id, title, cwd),
        )
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise RuntimeError(f"Conversation {conversation_id} was not stored")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
            (conversation_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _conversation_from_row(row) if row else None

    async def list_conversations(self) -> list[Conversation]:
        async with self._conn.execute(
            f"SELECT {_CONVERSATION_COLUMNS} FROM conversations ORDER BY updated_at DESC, rowid DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [_conversation_from_row(row) for row in rows]

    async def update_session_id(self, conversation_id: str, session_id: str) -> None:
        await self._write(
            "UPDATE conversations SET session_id = ?, updated_at = datetime('now') WHERE id = ?",
            (session_id, conversation_id),
        )

    async def update_title(self, conversation_id: str, title: str) -> None:
        await self._write(
            "UPDATE conversations SET title = ?, updated_at = datetime('now') WHERE id = ?",
            (title, conversation_id),
        )

    async def touch(self, conversation_id: str) -> None:
        await self._write(
            "UPDATE conversations SET updated_at = datetime('now') WHERE id = ?",
            (conversation_id,),
        )

    async def mark_archived(self, conversation_id: str) -> bool:
        """Flip an active conversation to archived. False if it was not active."""
        changed = await self._write(
            "UPDATE conversations SET status = 'archived', archived_at = datetime('now'), "
            "updated_at = datetime('now') WHERE id = ? AND status = 'active'",
            (conversation_id,),
        )
        return changed > 0

    async def set_summary(self, conversation_id: str, summary: str) -> None:
        await self._write(
            "UPDATE conversations SET summary = ?, updated_at = datetime('now') WHERE id = ?",
            (summary, conversation_id),
        )

    async def delete_conversation(self, conversation_id: str) -> bool:
        changed = await self._write("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return changed > 0

    # Messages

    async def insert_message(
        self,
        message_id: str,
        conversation_id: str,
        role: str,
        content: str,
        content_blocks: Optional[str] = None,
    ) -> None:
        await self._write(
            "INSERT INTO messages (id, conversation_id, role, content, content_blocks) VALUES (?, ?, ?, ?, ?)",
            (message_id, conversation_id, role, content, content_blocks),
        )

    async def list_messages(self, conversation_id: str) -> list[Message]:
        # rowid breaks ties between rows written within the same second
        async with self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? "
            "ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_message_from_row(row) for row in rows]

    async def delete_messages(self, conversation_id: str) -> None:
        await self._write("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

    async def close(self) -> None:
        await self._conn.close()
        logger.info("Closed conversation store at %s", self.db_path)
