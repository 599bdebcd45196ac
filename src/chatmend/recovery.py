"""Concrete implementations for recovery-context locking."""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing, contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Optional

from .errors import AlreadyRecovering
from .models import RecoveryContext, utc_now

logger = logging.getLogger(__name__)


class RecoveryContexts(ABC):
    """Interface for per-chat mutual exclusion of repairs.

    At most one context per chat is active (unexpired and not closed) at any
    time. Opening a second one fails fast with AlreadyRecovering.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or utc_now

    @abstractmethod
    def open(
        self,
        chat_id: str,
        ttl_s: float,
        user_id: Optional[str] = None,
        context_data: Optional[Dict[str, Any]] = None,
    ) -> RecoveryContext:
        pass

    @abstractmethod
    def close(self, context: RecoveryContext, outcome: str) -> None:
        pass

    @abstractmethod
    def active_for(self, chat_id: str) -> Optional[RecoveryContext]:
        """The live context holding ``chat_id``, or None."""
        pass

    @abstractmethod
    def active_count(self) -> int:
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        """Drops contexts whose holder never closed them before the TTL ran out."""
        pass

    def _new_context(self, chat_id, ttl_s, user_id, context_data) -> RecoveryContext:
        now = self.clock()
        return RecoveryContext(
            chat_id=chat_id,
            user_id=user_id,
            opened_at=now,
            expires_at=now + timedelta(seconds=ttl_s),
            context_data=dict(context_data or {}),
        )

    @contextmanager
    def recovering(
        self,
        chat_id: str,
        ttl_s: float,
        user_id: Optional[str] = None,
        context_data: Optional[Dict[str, Any]] = None,
    ) -> Iterator[RecoveryContext]:
        """Holds a recovery context for the duration of the block.

        The context is closed with ``context.outcome`` (or "completed") on
        normal exit and with "failed" when the block raises.
        """
        context = self.open(chat_id, ttl_s, user_id=user_id, context_data=context_data)
        try:
            yield context
        except BaseException:
            self.close(context, "failed")
            raise
        self.close(context, context.outcome or "completed")


class InMemory(RecoveryContexts):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self._active: Dict[str, RecoveryContext] = {}
        self._lock = threading.Lock()

    def open(self, chat_id, ttl_s, user_id=None, context_data=None) -> RecoveryContext:
        context = self._new_context(chat_id, ttl_s, user_id, context_data)
        with self._lock:
            current = self._active.get(chat_id)
            if current is not None and current.is_active(context.opened_at):
                logger.warning("Chat %s is already being recovered", chat_id)
                raise AlreadyRecovering(chat_id, current.expires_at)
            self._active[chat_id] = context
        logger.debug("Opened recovery context %s for chat %s", context.id, chat_id)
        return context

    def close(self, context: RecoveryContext, outcome: str) -> None:
        context.outcome = outcome
        with self._lock:
            current = self._active.get(context.chat_id)
            # an expired context may already have been replaced by a newer one
            if current is not None and current.id == context.id:
                del self._active[context.chat_id]
        logger.debug(
            "Closed recovery context %s for chat %s: %s",
            context.id,
            context.chat_id,
            outcome,
        )

    def active_for(self, chat_id: str) -> Optional[RecoveryContext]:
        now = self.clock()
        with self._lock:
            current = self._active.get(chat_id)
            if current is None or not current.is_active(now):
                return None
            return current.model_copy(deep=True)

    def active_count(self) -> int:
        now = self.clock()
        with self._lock:
            return sum(1 for c in self._active.values() if c.is_active(now))

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, c in self._active.items() if not c.is_active(now)]
            for chat_id in expired:
                del self._active[chat_id]
        return len(expired)


class SQLite(RecoveryContexts):
    """Recovery contexts in a SQLite table shared by every process using the file.

    Opening is a single conditional INSERT, so two processes racing for the
    same chat cannot both get a context. Closed contexts stay in the table
    with their outcome until they expire and are purged.
    """

    def __init__(self, db_path: str, clock: Optional[Callable[[], datetime]] = None):
        super().__init__(clock)
        self.db_path = db_path
        self._lock = threading.Lock()
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recovery_contexts (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    user_id TEXT,
                    opened_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    outcome TEXT,
                    context_data TEXT NOT NULL DEFAULT '{}'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_recovery_chat_expires "
                "ON recovery_contexts (chat_id, expires_at)"
            )

    def open(self, chat_id, ttl_s, user_id=None, context_data=None) -> RecoveryContext:
        context = self._new_context(chat_id, ttl_s, user_id, context_data)
        now = context.opened_at.isoformat()
        with self._lock, closing(sqlite3.connect(self.db_path)) as conn, conn:
            cursor = conn.execute(
                """
                INSERT INTO recovery_contexts
                    (id, chat_id, user_id, opened_at, expires_at, attempt_count, context_data)
                SELECT ?, ?, ?, ?, ?, 0, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM recovery_contexts
                    WHERE chat_id = ? AND outcome IS NULL AND expires_at > ?
                )
                """,
                (
                    context.id,
                    chat_id,
                    user_id,
                    now,
                    context.expires_at.isoformat(),
                    json.dumps(context.context_data, default=str),
                    chat_id,
                    now,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT MAX(expires_at) FROM recovery_contexts "
                    "WHERE chat_id = ? AND outcome IS NULL AND expires_at > ?",
                    (chat_id, now),
                ).fetchone()
                logger.warning("Chat %s is already being recovered", chat_id)
                raise AlreadyRecovering(
                    chat_id, datetime.fromisoformat(row[0]) if row and row[0] else None
                )
        logger.debug("Opened recovery context %s for chat %s", context.id, chat_id)
        return context

    def close(self, context: RecoveryContext, outcome: str) -> None:
        context.outcome = outcome
        with self._lock, closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                "UPDATE recovery_contexts SET outcome = ?, attempt_count = ? WHERE id = ?",
                (outcome, context.attempt_count, context.id),
            )
        logger.debug(
            "Closed recovery context %s for chat %s: %s",
            context.id,
            context.chat_id,
            outcome,
        )

    def active_for(self, chat_id: str) -> Optional[RecoveryContext]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            row = conn.execute(
                "SELECT id, chat_id, user_id, opened_at, expires_at, attempt_count, "
                "outcome, context_data FROM recovery_contexts "
                "WHERE chat_id = ? AND outcome IS NULL AND expires_at > ? "
                "ORDER BY opened_at DESC LIMIT 1",
                (chat_id, self.clock().isoformat()),
            ).fetchone()
        if row is None:
            return None
        return RecoveryContext(
            id=row[0],
            chat_id=row[1],
            user_id=row[2],
            opened_at=datetime.fromisoformat(row[3]),
            expires_at=datetime.fromisoformat(row[4]),
            attempt_count=row[5],
            outcome=row[6],
            context_data=json.loads(row[7]),
        )

    def active_count(self) -> int:
        with closing(sqlite3.connect(self.db_path)) as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM recovery_contexts WHERE outcome IS NULL AND expires_at > ?",
                (self.clock().isoformat(),),
            ).fetchone()[0]

    def purge_expired(self) -> int:
        now = self.clock().isoformat()
        with self._lock, closing(sqlite3.connect(self.db_path)) as conn, conn:
            abandoned = conn.execute(
                "SELECT COUNT(*) FROM recovery_contexts WHERE outcome IS NULL AND expires_at <= ?",
                (now,),
            ).fetchone()[0]
            conn.execute("DELETE FROM recovery_contexts WHERE expires_at <= ?", (now,))
        if abandoned:
            logger.info("Purged %d abandoned recovery contexts", abandoned)
        return abandoned
