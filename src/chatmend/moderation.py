"""
Moderation outcomes and the append-only violation ledger.

The classifier itself is an external collaborator behind the ``Moderator``
interface; this module only consumes its verdicts. The ledger drives an
auto-archive policy that is independent of conversation repair.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import closing
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .models import (
    Chat,
    ConversationState,
    ModerationAction,
    ModerationLogEntry,
    ModerationOutcome,
    ViolationType,
    utc_now,
)

logger = logging.getLogger(__name__)


class Moderator(ABC):
    """Interface for classifying a user message before it reaches the LLM."""

    @abstractmethod
    def check(self, content: str, chat: Chat) -> Optional[ModerationOutcome]:
        """Returns an outcome if the content was flagged, None otherwise."""
        pass


class NoModeration(Moderator):
    """Default moderator that never flags anything."""

    def check(self, content: str, chat: Chat) -> Optional[ModerationOutcome]:
        return None


class ModerationLedger(ABC):
    """Interface for the append-only moderation log."""

    def __init__(
        self,
        auto_archive_threshold: int = 5,
        auto_archive_window: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.auto_archive_threshold = auto_archive_threshold
        self.auto_archive_window = auto_archive_window
        self.clock = clock or utc_now

    @abstractmethod
    def append(self, entry: ModerationLogEntry) -> None:
        pass

    @abstractmethod
    def entries(
        self,
        chat_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        action_taken: Optional[ModerationAction] = None,
        since: Optional[datetime] = None,
    ) -> List[ModerationLogEntry]:
        """Entries matching every given filter, oldest first."""
        pass

    def record(
        self,
        chat: Chat,
        user_id: str,
        organization_id: str,
        violation_type: ViolationType,
        action_taken: ModerationAction,
        message_id: Optional[str] = None,
        details: Optional[str] = None,
    ) -> ModerationLogEntry:
        entry = ModerationLogEntry(
            chat_id=chat.id,
            user_id=user_id,
            organization_id=organization_id,
            violation_type=violation_type,
            action_taken=action_taken,
            message_id=message_id,
            details=details,
            detected_at=self.clock(),
        )
        self.append(entry)
        logger.info(
            "Moderation %s (%s) recorded for chat %s",
            entry.action_taken.value,
            entry.violation_type.value,
            chat.id,
        )
        return entry

    def check_auto_archive(self, chat: Chat, organization_id: str) -> bool:
        """Archives ``chat`` once it collects enough blocked messages.

        Counts ``blocked`` entries for the chat inside the trailing window. At
        the threshold the chat moves to ``archived`` and one closing entry is
        written. Returns True only on the call that archived the chat.
        """
        if self.auto_archive_threshold <= 0:
            return False
        if chat.conversation_state == ConversationState.ARCHIVED:
            return False
        if self.entries(chat_id=chat.id, action_taken=ModerationAction.ARCHIVED):
            return False

        blocked = len(
            self.entries(
                chat_id=chat.id,
                action_taken=ModerationAction.BLOCKED,
                since=self.clock() - self.auto_archive_window,
            )
        )
        if blocked < self.auto_archive_threshold:
            return False

        chat.transition_to(ConversationState.ARCHIVED)
        self.record(
            chat,
            user_id=chat.user_id,
            organization_id=organization_id,
            violation_type=ViolationType.OTHER,
            action_taken=ModerationAction.ARCHIVED,
            details=(
                f"Chat auto-archived after {blocked} violations in past "
                f"{self.auto_archive_window.days} days"
            ),
        )
        logger.warning("Chat %s auto-archived after %d blocked messages", chat.id, blocked)
        return True

    def violation_summary(
        self, organization_id: str, window: timedelta = timedelta(hours=24)
    ) -> Dict[str, int]:
        found = self.entries(
            organization_id=organization_id, since=self.clock() - window
        )
        return dict(Counter(e.violation_type.value for e in found))

    def repeat_offenders(
        self,
        organization_id: str,
        window: timedelta = timedelta(days=7),
        threshold: int = 3,
    ) -> List[str]:
        found = self.entries(
            organization_id=organization_id, since=self.clock() - window
        )
        counts = Counter(e.user_id for e in found)
        return sorted(user for user, count in counts.items() if count >= threshold)

    def user_violation_count(
        self,
        user_id: str,
        organization_id: str,
        window: timedelta = timedelta(days=7),
    ) -> int:
        return len(
            self.entries(
                organization_id=organization_id,
                user_id=user_id,
                since=self.clock() - window,
            )
        )


class InMemory(ModerationLedger):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._entries: List[ModerationLogEntry] = []
        self._lock = threading.Lock()

    def append(self, entry: ModerationLogEntry) -> None:
        with self._lock:
            self._entries.append(entry.model_copy())

    def entries(
        self,
        chat_id=None,
        organization_id=None,
        user_id=None,
        action_taken=None,
        since=None,
    ):
        with self._lock:
            snapshot = list(self._entries)
        return [
            e
            for e in snapshot
            if (chat_id is None or e.chat_id == chat_id)
            and (organization_id is None or e.organization_id == organization_id)
            and (user_id is None or e.user_id == user_id)
            and (action_taken is None or e.action_taken == action_taken)
            and (since is None or e.detected_at > since)
        ]


class SQLite(ModerationLedger):
    """The ledger as a SQLite table, indexed for per-organization and per-user windows."""

    def __init__(self, db_path: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.db_path = db_path
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS moderation_logs (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    violation_type TEXT NOT NULL,
                    action_taken TEXT NOT NULL,
                    message_id TEXT,
                    details TEXT,
                    detected_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_moderation_org_detected "
                "ON moderation_logs (organization_id, detected_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_moderation_user_detected "
                "ON moderation_logs (user_id, detected_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_moderation_chat "
                "ON moderation_logs (chat_id, action_taken)"
            )

    def append(self, entry: ModerationLogEntry) -> None:
        with closing(sqlite3.connect(self.db_path)) as conn, conn:
            conn.execute(
                "INSERT INTO moderation_logs VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.chat_id,
                    entry.user_id,
                    entry.organization_id,
                    entry.violation_type.value,
                    entry.action_taken.value,
                    entry.message_id,
                    entry.details,
                    entry.detected_at.isoformat(),
                ),
            )

    def entries(
        self,
        chat_id=None,
        organization_id=None,
        user_id=None,
        action_taken=None,
        since=None,
    ):
        clauses = []
        params: list = []
        for column, value in (
            ("chat_id", chat_id),
            ("organization_id", organization_id),
            ("user_id", user_id),
            ("action_taken", ModerationAction(action_taken).value if action_taken else None),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            clauses.append("detected_at > ?")
            params.append(since.isoformat())

        query = (
            "SELECT id, chat_id, user_id, organization_id, violation_type, action_taken, "
            "message_id, details, detected_at FROM moderation_logs"
        )
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY detected_at, rowid"
        with closing(sqlite3.connect(self.db_path)) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ModerationLogEntry(
                id=row[0],
                chat_id=row[1],
                user_id=row[2],
                organization_id=row[3],
                violation_type=ViolationType(row[4]),
                action_taken=ModerationAction(row[5]),
                message_id=row[6],
                details=row[7],
                detected_at=datetime.fromisoformat(row[8]),
            )
            for row in rows
        ]
