"""
Conversation state manager: validates chats and repairs or forks broken ones.

Repair runs inside a recovery context so the interactive path and the
background sweep never repair the same chat at the same time. In-place
strategies (trim, synthesize) are tried first; when they cannot reach a
stable chat, the conversation is forked into a new chat seeded from the latest
checkpoint, or from the longest stable prefix when there is none.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from .checkpoints import CheckpointStore
from .errors import (
    CheckpointError,
    ConversationRecoveryError,
    UnrecoverableCorruption,
)
from .models import (
    INTEGRITY_FAILURE_REASON,
    USER_ROLE,
    Chat,
    ChatMessage,
    Checkpoint,
    ConversationState,
    HealReport,
    utc_now,
)
from .recovery import RecoveryContexts
from .repair import (
    DEFAULT_STRATEGIES,
    UNCHANGED,
    RepairStrategy,
    Synthesize,
    stable_prefix,
)
from .store import Store
from .validation import ViolationCode, Verdict, orphaned_tool_messages, validate

logger = logging.getLogger(__name__)


class Healer:
    def __init__(
        self,
        store: Store,
        checkpoints: CheckpointStore,
        recovery: RecoveryContexts,
        strategies: Optional[Sequence[RepairStrategy]] = None,
        max_recovery_attempts: int = 3,
        recovery_context_ttl_s: float = 60.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.recovery = recovery
        self.strategies = list(strategies if strategies is not None else DEFAULT_STRATEGIES)
        self.max_recovery_attempts = max(1, max_recovery_attempts)
        self.recovery_context_ttl_s = recovery_context_ttl_s
        self.clock = clock or utc_now

    def validate_and_heal_state(self, chat: Chat) -> HealReport:
        """Validates ``chat`` and repairs it if needed.

        Parameters
        ----------
        chat : Chat
            The chat to check. It is mutated and saved in place. If the stored
            copy moved on since ``chat`` was loaded, the stored copy is the one
            checked, and ``chat`` is updated to it first.

        Returns
        -------
        HealReport
            ``healthy`` if nothing was wrong, ``healed`` if in-place repair
            succeeded, ``forked`` if a recovery chat was created (it is in
            ``recovery_chat``), ``skipped`` for chats in a terminal state.

        Raises
        ------
        AlreadyRecovering
            Another repair of this chat is in progress.
        ConversationRecoveryError
            The forked chat itself failed validation.
        """
        if chat.is_terminal:
            return HealReport(status="skipped")

        with self._recovering(chat) as context:
            self._refresh(chat)
            if chat.is_terminal:
                context.outcome = "skipped"
                return HealReport(status="skipped")

            verdict = validate(chat)
            if verdict.is_stable:
                self._mark_stable(chat)
                self.store.save_chat(chat)
                context.outcome = "healthy"
                return HealReport(status="healthy")

            logger.warning(
                "Chat %s has %d structural violation(s)",
                chat.id,
                len(verdict.violations),
            )
            if chat.transition_to(ConversationState.NEEDS_CLEANUP):
                logger.info("Chat %s moved to needs_cleanup", chat.id)
                self.store.save_chat(chat)

            messages, verdict, actions = self._repair_in_place(chat, verdict, context)
            if verdict.is_stable:
                chat.messages = messages
                self._mark_stable(chat)
                self.store.save_chat(chat)
                self._checkpoint(chat)
                context.outcome = "healed"
                logger.info("Healed chat %s: %s", chat.id, ", ".join(actions))
                return HealReport(status="healed", actions_taken=actions)

            recovery_chat = self.fork(chat)
            context.outcome = "forked"
            actions.append(f"created_recovery_branch_{recovery_chat.id}")
            return HealReport(
                status="forked", actions_taken=actions, recovery_chat=recovery_chat
            )

    def ensure_conversation_integrity(self, chat: Chat) -> HealReport:
        """Heals ``chat`` on the interactive path.

        Raises UnrecoverableCorruption carrying the recovery chat when the
        conversation had to be forked, so the caller can redirect.
        """
        report = self.validate_and_heal_state(chat)
        if report.status == "forked":
            raise UnrecoverableCorruption(chat.id, report.recovery_chat)
        return report

    def close_open_turn(self, chat: Chat) -> List[str]:
        """Answers tool calls still pending in the open turn before a new one starts.

        Sending a new user message after unanswered calls would make the
        history invalid, so each pending call gets a synthetic response at the
        end of the chat. Returns the actions taken (empty if nothing was open).
        """
        closing = ChatMessage(role=USER_ROLE, content="")
        messages = [*chat.messages, closing]
        pending = [
            v
            for v in validate(messages).violations
            if v.code == ViolationCode.UNANSWERED_TOOL_CALL
            and v.position == len(chat.messages)
        ]
        if not pending:
            return []

        with self._recovering(chat) as context:
            outcome = Synthesize().apply(messages, pending)
            if outcome is UNCHANGED:
                return []
            chat.messages = outcome.messages[:-1]
            self.store.save_chat(chat)
            context.outcome = "closed_turn"
        logger.info("Closed open turn of chat %s: %s", chat.id, outcome.action)
        return [outcome.action]

    def _recovering(self, chat: Chat):
        last = chat.messages[-1] if chat.messages else None
        return self.recovery.recovering(
            chat.id,
            self.recovery_context_ttl_s,
            user_id=chat.user_id,
            context_data={
                "conversation_state": chat.conversation_state.value,
                "message_count": len(chat.messages),
                "last_message_id": last.id if last else None,
            },
        )

    def _refresh(self, chat: Chat) -> None:
        # Caller holds the recovery context, so the stored copy cannot move again.
        stored = self.store.load_chat(chat.id)
        if stored is None or stored.matches_revision(chat):
            return
        logger.info("Chat %s changed since it was loaded, using the stored copy", chat.id)
        chat.messages = stored.messages
        chat.conversation_state = stored.conversation_state
        chat.last_stable_at = stored.last_stable_at
        chat.metadata = stored.metadata

    def _repair_in_place(self, chat: Chat, verdict: Verdict, context: Any):
        messages: List[ChatMessage] = list(chat.messages)
        actions: List[str] = []
        for attempt in range(1, self.max_recovery_attempts + 1):
            context.attempt_count = attempt
            progressed = False
            for strategy in self.strategies:
                outcome = strategy.apply(messages, verdict.violations)
                if outcome is UNCHANGED:
                    continue
                messages = outcome.messages
                actions.append(outcome.action)
                progressed = True
                verdict = validate(messages)
                if verdict.is_stable:
                    return messages, verdict, actions
            if not progressed:
                break
        return messages, verdict, actions

    def fork(self, chat: Chat) -> Chat:
        """Moves the conversation into a new chat for the same owner.

        The original chat is always left in the ``error`` state with a pointer
        to the recovery chat, even when the fork itself turns out invalid.
        """
        checkpoint = self.checkpoints.latest(chat.id)
        if checkpoint is not None:
            seed, source = checkpoint.restore_messages(), "checkpoint"
        else:
            seed, source = stable_prefix(chat.messages), "stable_prefix"

        recovery_chat = self.store.create_chat(
            user_id=chat.user_id,
            organization_id=chat.organization_id,
            metadata={"forked_from": chat.id, "seeded_from": source},
        )
        recovery_chat.messages = [
            m.model_copy(update={"id": str(uuid.uuid4())}, deep=True) for m in seed
        ]

        chat.transition_to(ConversationState.NEEDS_CLEANUP)
        chat.transition_to(ConversationState.ERROR)
        chat.metadata.update(
            {
                "archived_reason": INTEGRITY_FAILURE_REASON,
                "archived_at": self.clock().isoformat(),
                "recovery_chat_id": recovery_chat.id,
            }
        )

        if not validate(recovery_chat).is_stable:
            recovery_chat.transition_to(ConversationState.NEEDS_CLEANUP)
            self.store.save_chat(recovery_chat)
            self.store.save_chat(chat)
            logger.error(
                "Recovery chat %s forked from %s failed validation",
                recovery_chat.id,
                chat.id,
            )
            raise ConversationRecoveryError(
                f"Recovery chat forked from {chat.id} is not stable", recovery_chat
            )

        self._mark_stable(recovery_chat)
        self.store.save_chat(recovery_chat)
        self.store.save_chat(chat)
        self._checkpoint(recovery_chat)
        logger.info(
            "Forked chat %s into %s from %s (%d messages)",
            chat.id,
            recovery_chat.id,
            source,
            len(recovery_chat.messages),
        )
        return recovery_chat

    def create_checkpoint(self, chat: Chat, name: Optional[str] = None) -> Checkpoint:
        if not validate(chat).is_stable:
            raise CheckpointError(f"Chat {chat.id} does not validate as stable")
        return self.checkpoints.save(chat, name)

    def _checkpoint(self, chat: Chat) -> None:
        try:
            self.checkpoints.save(chat)
        except CheckpointError as e:
            logger.warning("Skipped checkpoint for chat %s: %s", chat.id, e)

    def _mark_stable(self, chat: Chat) -> None:
        chat.transition_to(ConversationState.STABLE)
        chat.last_stable_at = self.clock()

    def health_metrics(self, chat: Chat) -> Dict[str, Any]:
        orphaned = len(orphaned_tool_messages(chat))
        return {
            "message_count": len(chat.messages),
            "tool_calls_count": len(chat.tool_calls),
            "orphaned_messages": orphaned,
            "conversation_state": chat.conversation_state.value,
            "last_stable_at": chat.last_stable_at,
            "has_integrity_issues": not validate(chat).is_stable,
            "available_checkpoints": [
                {
                    "name": c.name,
                    "created_at": c.created_at.isoformat(),
                    "message_count": c.message_count,
                }
                for c in self.checkpoints.list_for_chat(chat.id, limit=10)
            ],
            "health_score": self._health_score(chat, orphaned),
        }

    def _health_score(self, chat: Chat, orphaned: int) -> int:
        score = 100 - orphaned * 10
        if chat.conversation_state == ConversationState.ERROR:
            score -= 30
        elif chat.conversation_state == ConversationState.NEEDS_CLEANUP:
            score -= 15
        if chat.last_stable_at and chat.last_stable_at < self.clock() - timedelta(hours=1):
            score -= 20
        return max(score, 0)
