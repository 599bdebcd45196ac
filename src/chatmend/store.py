"""Concrete implementations for chat persistence."""

import itertools
import json
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .models import Chat, ChatMessage, ConversationState


class Store(ABC):
    """Interface for saving and loading chats."""

    @abstractmethod
    def load_chat(self, chat_id: str) -> Optional[Chat]:
        """Loads a single chat, or None if it does not exist."""
        pass

    @abstractmethod
    def save_chat(self, chat: Chat) -> None:
        """Saves a chat and its full message sequence, all or nothing."""
        pass

    @abstractmethod
    def list_chats(self, user_id: Optional[str] = None) -> List[str]:
        """Lists chat IDs, optionally only those owned by ``user_id``."""
        pass

    @abstractmethod
    def get_next_chat_id(self) -> str:
        """Generates a new, unique chat ID."""
        pass

    def create_chat(
        self,
        user_id: str,
        organization_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Chat:
        chat = Chat(
            id=self.get_next_chat_id(),
            user_id=user_id,
            organization_id=organization_id,
            metadata=dict(metadata or {}),
        )
        self.save_chat(chat)
        return chat

    def iter_chats(self) -> Iterator[Chat]:
        for chat_id in self.list_chats():
            chat = self.load_chat(chat_id)
            if chat is not None:
                yield chat


class InMemory(Store):
    """Keeps chats in a process-local dictionary."""

    def __init__(self):
        self._chats: Dict[str, Chat] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def load_chat(self, chat_id: str) -> Optional[Chat]:
        with self._lock:
            chat = self._chats.get(chat_id)
            return chat.model_copy(deep=True) if chat else None

    def save_chat(self, chat: Chat) -> None:
        with self._lock:
            self._chats[chat.id] = chat.model_copy(deep=True)

    def list_chats(self, user_id: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                chat.id
                for chat in self._chats.values()
                if user_id is None or chat.user_id == user_id
            ]

    def get_next_chat_id(self) -> str:
        with self._lock:
            while True:
                candidate = str(next(self._ids))
                if candidate not in self._chats:
                    return candidate


class SQLite(Store):
    """Persists chats and their messages in a SQLite database file."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._create_tables()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _create_tables(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    organization_id TEXT,
                    conversation_state TEXT NOT NULL DEFAULT 'stable',
                    last_stable_at TEXT,
                    created_at TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT NOT NULL,
                    chat_id TEXT NOT NULL REFERENCES chats(id),
                    position INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    tool_call_id TEXT,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (chat_id, position)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_chats_user ON chats (user_id)"
            )

    def load_chat(self, chat_id: str) -> Optional[Chat]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, user_id, organization_id, conversation_state, "
                "last_stable_at, created_at, metadata FROM chats WHERE id = ?",
                (chat_id,),
            ).fetchone()
            if row is None:
                return None
            payloads = conn.execute(
                "SELECT payload FROM messages WHERE chat_id = ? ORDER BY position",
                (chat_id,),
            ).fetchall()

        return Chat(
            id=row[0],
            user_id=row[1],
            organization_id=row[2],
            conversation_state=ConversationState(row[3]),
            last_stable_at=datetime.fromisoformat(row[4]) if row[4] else None,
            created_at=datetime.fromisoformat(row[5]),
            metadata=json.loads(row[6]),
            messages=[ChatMessage.model_validate_json(p[0]) for p in payloads],
        )

    def save_chat(self, chat: Chat) -> None:
        with self._lock, closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO chats (id, user_id, organization_id, conversation_state,
                                   last_stable_at, created_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    user_id = excluded.user_id,
                    organization_id = excluded.organization_id,
                    conversation_state = excluded.conversation_state,
                    last_stable_at = excluded.last_stable_at,
                    metadata = excluded.metadata
                """,
                (
                    chat.id,
                    chat.user_id,
                    chat.organization_id,
                    chat.conversation_state.value,
                    chat.last_stable_at.isoformat() if chat.last_stable_at else None,
                    chat.created_at.isoformat(),
                    json.dumps(chat.metadata, default=str),
                ),
            )
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat.id,))
            conn.executemany(
                "INSERT INTO messages (id, chat_id, position, role, tool_call_id, payload) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (
                        message.id,
                        chat.id,
                        position,
                        message.role,
                        message.tool_call_id,
                        message.model_dump_json(),
                    )
                    for position, message in enumerate(chat.messages)
                ],
            )

    def list_chats(self, user_id: Optional[str] = None) -> List[str]:
        query = "SELECT id FROM chats"
        params: tuple = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        query += " ORDER BY created_at, id"
        with closing(self._connect()) as conn:
            return [row[0] for row in conn.execute(query, params).fetchall()]

    def get_next_chat_id(self) -> str:
        return uuid.uuid4().hex
