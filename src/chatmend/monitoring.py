"""Operator views and the periodic health sweep."""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .checkpoints import CheckpointStore
from .errors import AlreadyRecovering, ConversationRecoveryError
from .healer import Healer
from .models import Chat, ConversationState, utc_now
from .recovery import RecoveryContexts
from .resilience import ResilientLLM
from .store import Store
from .validation import orphaned_tool_messages

logger = logging.getLogger(__name__)


def conversation_statistics(store: Store) -> Dict[str, Any]:
    """Counts chats per lifecycle state and orphaned tool messages overall."""
    by_state: Counter = Counter()
    orphaned = 0
    for chat in store.iter_chats():
        by_state[chat.conversation_state.value] += 1
        orphaned += len(orphaned_tool_messages(chat))
    return {
        "total_chats": sum(by_state.values()),
        "active_chats": by_state["stable"] + by_state["needs_cleanup"],
        "error_chats": by_state["error"],
        "needs_cleanup_chats": by_state["needs_cleanup"],
        "archived_chats": by_state["archived"],
        "conversations_by_state": {s.value: by_state[s.value] for s in ConversationState},
        "orphaned_tool_messages": orphaned,
    }


class SweepReport(BaseModel):
    checked: int = 0
    healthy: int = 0
    healed: int = 0
    forked: int = 0
    skipped: int = 0
    failed: int = 0
    purged_checkpoints: int = 0
    purged_recovery_contexts: int = 0
    provider_health: Optional[Dict[str, Any]] = None


class HealthSweep:
    """Finds chats that need attention and runs them through the healer.

    A chat is swept when it is in ``needs_cleanup`` or when its last stable
    confirmation is missing or older than ``stale_after``. Terminal chats are
    never swept. Chats already under repair elsewhere are skipped, not waited on.
    """

    def __init__(
        self,
        store: Store,
        healer: Healer,
        checkpoints: CheckpointStore,
        recovery: RecoveryContexts,
        resilient_llm: Optional[ResilientLLM] = None,
        checkpoint_retention: timedelta = timedelta(days=7),
        stale_after: timedelta = timedelta(hours=6),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.healer = healer
        self.checkpoints = checkpoints
        self.recovery = recovery
        self.resilient_llm = resilient_llm
        self.checkpoint_retention = checkpoint_retention
        self.stale_after = stale_after
        self.clock = clock or utc_now
        self.totals: Counter = Counter()
        self.last_report: Optional[SweepReport] = None

    def needs_attention(self, chat: Chat) -> bool:
        if chat.is_terminal:
            return False
        if chat.conversation_state == ConversationState.NEEDS_CLEANUP:
            return True
        return chat.last_stable_at is None or chat.last_stable_at < self.clock() - self.stale_after

    def run(self) -> SweepReport:
        report = SweepReport()
        for chat in self.store.iter_chats():
            if not self.needs_attention(chat):
                continue
            report.checked += 1
            try:
                result = self.healer.validate_and_heal_state(chat)
            except AlreadyRecovering:
                report.skipped += 1
                continue
            except ConversationRecoveryError as e:
                logger.error("Sweep could not recover chat %s: %s", chat.id, e)
                report.failed += 1
                continue
            setattr(report, result.status, getattr(report, result.status) + 1)

        report.purged_checkpoints = self.checkpoints.purge_older_than(self.checkpoint_retention)
        report.purged_recovery_contexts = self.recovery.purge_expired()
        if self.resilient_llm is not None:
            report.provider_health = self.resilient_llm.perform_health_check()

        for field in ("checked", "healthy", "healed", "forked", "skipped", "failed"):
            self.totals[field] += getattr(report, field)
        self.last_report = report
        logger.info(
            "Health sweep: %d checked, %d healed, %d forked, %d failed",
            report.checked,
            report.healed,
            report.forked,
            report.failed,
        )
        return report

    def recovery_success_rate(self) -> Optional[float]:
        """Share of repair attempts that ended with a usable chat, None before any."""
        succeeded = self.totals["healed"] + self.totals["forked"]
        attempts = succeeded + self.totals["failed"]
        if not attempts:
            return None
        return succeeded / attempts
