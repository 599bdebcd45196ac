"""Concrete implementations for checkpoint storage."""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .errors import CheckpointError
from .models import USER_ROLE, Chat, Checkpoint, ConversationState, utc_now

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Interface for append-only snapshots of stable chats."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utc_now

    @abstractmethod
    def add(self, checkpoint: Checkpoint) -> None:
        """Appends a checkpoint. Raises CheckpointError on a duplicate name."""
        pass

    @abstractmethod
    def list_for_chat(self, chat_id: str, limit: int = 10) -> List[Checkpoint]:
        """Checkpoints of one chat, newest first."""
        pass

    @abstractmethod
    def purge_older_than(self, retention: timedelta) -> int:
        """Deletes checkpoints created before ``now - retention``; returns the count."""
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    def latest(self, chat_id: str) -> Optional[Checkpoint]:
        found = self.list_for_chat(chat_id, limit=1)
        return found[0] if found else None

    def save(self, chat: Chat, name: Optional[str] = None) -> Checkpoint:
        """Snapshots ``chat``'s current messages.

        The caller is responsible for having validated the chat; only chats in
        the stable state are accepted.
        """
        if chat.conversation_state != ConversationState.STABLE:
            raise CheckpointError(
                f"Chat {chat.id} is '{chat.conversation_state.value}', not stable"
            )
        now = self.clock()
        last_user = next(
            (m for m in reversed(chat.messages) if m.role == USER_ROLE), None
        )
        checkpoint = Checkpoint(
            chat_id=chat.id,
            name=name or f"checkpoint_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}",
            created_at=now,
            conversation_state=chat.conversation_state,
            message_count=len(chat.messages),
            tool_calls_count=len(chat.tool_calls),
            messages_snapshot=[m.model_dump(mode="json") for m in chat.messages],
            context_data={
                "user_id": chat.user_id,
                "conversation_length": len(chat.messages),
                "last_user_message_id": last_user.id if last_user else None,
            },
        )
        self.add(checkpoint)
        logger.info(
            "Created checkpoint '%s' for chat %s (%d messages)",
            checkpoint.name,
            chat.id,
            checkpoint.message_count,
        )
        return checkpoint


class InMemory(CheckpointStore):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._by_chat: Dict[str, List[Checkpoint]] = {}
        self._lock = threading.Lock()

    def add(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            existing = self._by_chat.setdefault(checkpoint.chat_id, [])
            if any(c.name == checkpoint.name for c in existing):
                raise CheckpointError(
                    f"Checkpoint '{checkpoint.name}' already exists for chat {checkpoint.chat_id}"
                )
            existing.append(checkpoint.model_copy(deep=True))

    def list_for_chat(self, chat_id: str, limit: int = 10) -> List[Checkpoint]:
        with self._lock:
            existing = list(self._by_chat.get(chat_id, []))
        # stable sort keeps insertion order for equal timestamps
        ordered = sorted(existing, key=lambda c: c.created_at)
        ordered.reverse()
        return [c.model_copy(deep=True) for c in ordered[:limit]]

    def purge_older_than(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        removed = 0
        with self._lock:
            for chat_id, existing in list(self._by_chat.items()):
                kept = [c for c in existing if c.created_at >= cutoff]
                removed += len(existing) - len(kept)
                if kept:
                    self._by_chat[chat_id] = kept
                else:
                    del self._by_chat[chat_id]
        if removed:
            logger.info("Purged %d checkpoints older than %s", removed, cutoff.isoformat())
        return removed

    def count(self) -> int:
        with self._lock:
            return sum(len(c) for c in self._by_chat.values())


class SQLite(CheckpointStore):
    """Checkpoints in a SQLite table keyed by (chat_id, created_at)."""

    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.db_path = db_path
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_checkpoints (
                    chat_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    conversation_state TEXT NOT NULL,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    tool_calls_count INTEGER NOT NULL DEFAULT 0,
                    messages_snapshot TEXT NOT NULL,
                    context_data TEXT NOT NULL DEFAULT '{}',
                    UNIQUE (chat_id, name)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_checkpoints_chat_created "
                "ON conversation_checkpoints (chat_id, created_at)"
            )

    def add(self, checkpoint: Checkpoint) -> None:
        try:
            with closing(sqlite3.connect(self.db_path)) as conn, conn:
                conn.execute(
                    "INSERT INTO conversation_checkpoints VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        checkpoint.chat_id,
                        checkpoint.name,
                        checkpoint.created_at.isoformat(),
                        checkpoint.conversation_state.value,
                        checkpoint.message_count,
                        checkpoint.tool_calls_count,
                        json.dumps(checkpoint.messages_snapshot),
                        json.dumps(checkpoint.context_data),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise CheckpointError(
                f"Checkpoint '{checkpoint.name}' already exists for chat {checkpoint.chat_id}"
            ) from e

    def list_for_chat(self, chat_id: str, limit: int = 10) -> List[Checkpoint]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT chat_id, name, created_at, conversation_state, message_count, "
                "tool_calls_count, messages_snapshot, context_data "
                "FROM conversation_checkpoints WHERE chat_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (chat_id, limit),
            ).fetchall()
        return [
            Checkpoint(
                chat_id=row[0],
                name=row[1],
                created_at=datetime.fromisoformat(row[2]),
                conversation_state=ConversationState(row[3]),
                message_count=row[4],
                tool_calls_count=row[5],
                messages_snapshot=json.loads(row[6]),
                context_data=json.loads(row[7]),
            )
            for row in rows
        ]

    def purge_older_than(self, retention: timedelta) -> int:
        cutoff = self.clock() - retention
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            cursor = conn.execute(
                "DELETE FROM conversation_checkpoints WHERE created_at < ?",
                (cutoff.isoformat(),),
            )
            removed = cursor.rowcount
        if removed:
            logger.info("Purged %d checkpoints older than %s", removed, cutoff.isoformat())
        return removed

    def count(self) -> int:
        with closing(sqlite3.connect(self.db_path)) as conn:
            return conn.execute("SELECT COUNT(*) FROM conversation_checkpoints").fetchone()[0]
