"""Conversation history storage."""

import asyncio
import json
from collections import defaultdict
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from talon.config import Config, get_config
from talon.exceptions import SessionError
from talon.llm import Message, ToolCall
from talon.logging import get_logger

log = get_logger(__name__)


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def message_to_dict(message: Message) -> dict[str, Any]:
    """Serialize a message for storage."""
    return {
        "role": message.role,
        "content": message.content,
        "tool_calls": [
            {"id": call.id, "name": call.name, "arguments": call.arguments}
            for call in message.tool_calls
        ],
        "tool_call_id": message.tool_call_id,
        "tool_name": message.tool_name,
    }


def message_from_dict(data: dict[str, Any]) -> Message:
    """Rebuild a message from its stored form."""
    return Message(
        role=str(data.get("role", "")),
        content=str(data.get("content") or ""),
        tool_calls=[
            ToolCall(
                id=str(call.get("id", "")),
                name=str(call.get("name", "")),
                arguments=dict(call.get("arguments") or {}),
            )
            for call in data.get("tool_calls") or []
        ],
        tool_call_id=data.get("tool_call_id"),
        tool_name=data.get("tool_name"),
    )


def trim_history(messages: list[Message], limit: int) -> list[Message]:
    """Keep the newest ``limit`` messages without splitting a tool exchange.

    A window must not open on tool results whose assistant tool-call message
    was cut off, or the model would see unanswered results.
    """
    if limit <= 0:
        return []
    window = messages[-limit:]
    while window and window[0].role == "tool":
        window = window[1:]
    return window


class SessionStore(Protocol):
    """Source of truth for prior conversation turns."""

    async def load_history(self, session_id: str, limit: int) -> list[Message]: ...

    async def append_history(self, session_id: str, message: Message) -> None: ...


class InMemorySessionStore:
    """Process-local history store."""

    def __init__(self):
        self._history: dict[str, list[Message]] = defaultdict(list)

    async def load_history(self, session_id: str, limit: int) -> list[Message]:
        return trim_history(list(self._history.get(session_id, [])), limit)

    async def append_history(self, session_id: str, message: Message) -> None:
        self._history[session_id].append(message)

    def messages(self, session_id: str) -> list[Message]:
        return list(self._history.get(session_id, []))


class SQLiteSessionStore:
    """History store backed by SQLite."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        async with self._init_lock:
            if self._db is None:
                db = await aiosqlite.connect(str(self.db_path))
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                """)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id, id)"
                )
                await db.commit()
                self._db = db
        return self._db

    async def load_history(self, session_id: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        db = await self._ensure_db()
        async with db.execute(
            "SELECT payload FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
            (session_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()

        messages: list[Message] = []
        for (payload,) in reversed(rows):
            try:
                messages.append(message_from_dict(json.loads(payload)))
            except (json.JSONDecodeError, AttributeError) as e:
                raise SessionError(f"Corrupt history row for session {session_id}: {e}") from e
        return trim_history(messages, limit)

    async def append_history(self, session_id: str, message: Message) -> None:
        db = await self._ensure_db()
        await db.execute(
            "INSERT INTO messages (session_id, payload, created_at) VALUES (?, ?, ?)",
            (session_id, json.dumps(message_to_dict(message), ensure_ascii=False), _utcnow_iso()),
        )
        await db.commit()
        log.debug("Appended history", session_id=session_id, role=message.role)

    async def delete_history(self, session_id: str) -> int:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount

    async def close(self) -> None:
        """Close database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None


def create_session_store(config: Config | None = None) -> SessionStore:
    """Build the store selected by ``session.storage``."""
    cfg = config or get_config()
    if cfg.session.storage == "memory":
        return InMemorySessionStore()
    return SQLiteSessionStore(cfg.session.path)
