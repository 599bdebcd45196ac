"""Turn orchestration: one user message in, one safe reply out."""

import logging
import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from .errors import (
    AlreadyRecovering,
    CheckpointError,
    CircuitOpenError,
    ConversationRecoveryError,
    ProviderError,
    UnrecoverableCorruption,
)
from .models import (
    TOOL_ROLE,
    USER_ROLE,
    Chat,
    ChatMessage,
    ConversationState,
    HealReport,
    ModerationAction,
    TurnResult,
)

if TYPE_CHECKING:
    from . import Chatmend

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Something went wrong while generating a reply. Please try again."
UNAVAILABLE_MESSAGE = (
    "The assistant is temporarily unavailable. Please try again in {minutes} minute(s)."
)
FAILED_MESSAGE = "We couldn't recover this conversation. Please start a new chat."
REFUSED_MESSAGE = "This message can't be processed because it violates the content policy."
ARCHIVED_MESSAGE = "This conversation has been archived."
EMPTY_REPLY_MESSAGE = "I wasn't able to produce a reply. Please try again."


class Engine(ABC):
    """Interface for handling a single user turn."""

    def __init__(self, app: Optional["Chatmend"] = None):
        self.app = app

    @abstractmethod
    def handle_message(
        self,
        user_input: str,
        user_id: str,
        chat_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> TurnResult:
        pass


class Synchronous(Engine):
    """Runs the whole turn on the calling thread.

    Messages produced during the turn are collected aside and appended to the
    chat only once the provider exchange completed, so a failed or timed-out
    call never leaves a partial turn behind. The append is dropped when the
    stored chat was repaired or forked while the provider was busy.
    """

    def handle_message(self, user_input, user_id, chat_id=None, organization_id=None):
        app = self.app
        chat = self._load_or_create(user_id, chat_id, organization_id)
        redirect: Optional[str] = None

        recovery_chat_id = chat.metadata.get("recovery_chat_id")
        if chat.conversation_state == ConversationState.ERROR and recovery_chat_id:
            recovered = app.store.load_chat(recovery_chat_id)
            if recovered is not None:
                chat, redirect = recovered, recovered.id
        if chat.is_terminal:
            return TurnResult(chat_id=chat.id, status="archived", content=ARCHIVED_MESSAGE)

        user_message = ChatMessage(role=USER_ROLE, content=user_input.strip())
        refusal = self._moderate(chat, user_message, user_id, organization_id)
        if refusal is not None:
            return refusal

        try:
            app.healer.ensure_conversation_integrity(chat)
        except UnrecoverableCorruption as e:
            logger.info("Continuing turn in recovery chat %s", e.recovery_chat.id)
            chat, redirect = e.recovery_chat, e.recovery_chat.id
        except AlreadyRecovering:
            return TurnResult(chat_id=chat.id, status="retry", content=RETRY_MESSAGE)
        except ConversationRecoveryError as e:
            logger.error("Unrecoverable chat %s: %s", chat.id, e)
            return TurnResult(chat_id=chat.id, status="failed", content=FAILED_MESSAGE)

        try:
            app.healer.close_open_turn(chat)
        except AlreadyRecovering:
            return TurnResult(
                chat_id=chat.id, status="retry", content=RETRY_MESSAGE, redirect_chat_id=redirect
            )

        try:
            produced = self._exchange(chat, user_message)
        except CircuitOpenError as e:
            minutes = max(1, math.ceil(e.retry_after / 60))
            return TurnResult(
                chat_id=chat.id,
                status="unavailable",
                content=UNAVAILABLE_MESSAGE.format(minutes=minutes),
                redirect_chat_id=redirect,
            )
        except ProviderError as e:
            if e.kind == "invalid_response":
                logger.warning("Invalid provider response for chat %s, checking integrity", chat.id)
                try:
                    report = self._recheck(chat)
                except ConversationRecoveryError as recovery_error:
                    logger.error("Unrecoverable chat %s: %s", chat.id, recovery_error)
                    return TurnResult(chat_id=chat.id, status="failed", content=FAILED_MESSAGE)
                if report is not None and report.status == "forked":
                    chat, redirect = report.recovery_chat, report.recovery_chat.id
            return TurnResult(
                chat_id=chat.id, status="retry", content=RETRY_MESSAGE, redirect_chat_id=redirect
            )

        conflict = self._commit(chat, produced, redirect)
        if conflict is not None:
            return conflict

        try:
            report = self._recheck(chat)
        except ConversationRecoveryError as e:
            logger.error("Unrecoverable chat %s after turn: %s", chat.id, e)
            return TurnResult(chat_id=chat.id, status="failed", content=FAILED_MESSAGE)
        if report is not None and report.status == "forked":
            # the reply stays in the errored original; the recovery chat ends before it
            recovery_chat = report.recovery_chat
            logger.warning("Turn left chat %s unrepairable, continuing in %s", chat.id, recovery_chat.id)
            return TurnResult(
                chat_id=recovery_chat.id,
                status="retry",
                content=RETRY_MESSAGE,
                redirect_chat_id=recovery_chat.id,
            )
        self._maybe_checkpoint(chat)

        reply = next((m for m in reversed(produced) if m.role != TOOL_ROLE), None)
        content = reply.content if reply is not None and isinstance(reply.content, str) else ""
        return TurnResult(
            chat_id=chat.id,
            status="ok",
            content=content or EMPTY_REPLY_MESSAGE,
            redirect_chat_id=redirect,
        )

    def _load_or_create(self, user_id, chat_id, organization_id) -> Chat:
        store = self.app.store
        chat = store.load_chat(chat_id) if chat_id else None
        if chat is None:
            chat = store.create_chat(user_id=user_id, organization_id=organization_id)
        return chat

    def _moderate(self, chat, user_message, user_id, organization_id) -> Optional[TurnResult]:
        app = self.app
        outcome = app.moderator.check(user_message.content, chat)
        if outcome is None:
            return None

        org = organization_id or chat.organization_id or ""
        blocked = outcome.action_taken in (ModerationAction.BLOCKED, ModerationAction.ARCHIVED)
        app.ledger.record(
            chat,
            user_id=user_id,
            organization_id=org,
            violation_type=outcome.violation_type,
            action_taken=outcome.action_taken,
            # blocked messages are never stored in the chat
            message_id=None if blocked else user_message.id,
            details=outcome.details,
        )
        if not blocked:
            return None
        if app.ledger.check_auto_archive(chat, org):
            app.store.save_chat(chat)
        return TurnResult(chat_id=chat.id, status="refused", content=REFUSED_MESSAGE)

    def _exchange(self, chat: Chat, user_message: ChatMessage) -> List[ChatMessage]:
        app = self.app
        produced = [user_message]
        tools = app.tools.get_tools()
        kwargs = {"tools": tools} if tools else {}
        for _ in range(app.settings.max_tool_rounds):
            reply = app.resilient_llm.complete(chat.messages + produced, **kwargs)
            produced.append(reply)
            if not reply.tool_calls:
                break
            for call in reply.tool_calls:
                result = app.tools.execute_tool_call(call)
                produced.append(
                    ChatMessage(
                        role=TOOL_ROLE,
                        content=result.content,
                        tool_call_id=call.id,
                        metadata={"is_error": result.is_error},
                    )
                )
        return produced

    def _commit(self, chat: Chat, produced: List[ChatMessage], redirect) -> Optional[TurnResult]:
        """Appends the turn, unless the stored chat moved on since it was loaded.

        The stored copy is re-read under a recovery context, so a repair or
        fork that ran during the provider call is never overwritten. Returns
        None on success, or the result to hand back when the turn is dropped.
        """
        app = self.app
        try:
            with app.recovery.recovering(
                chat.id,
                app.settings.recovery_context_ttl_s,
                user_id=chat.user_id,
                context_data={"message_count": len(chat.messages), "appending": len(produced)},
            ) as context:
                current = app.store.load_chat(chat.id)
                if current is not None and not current.matches_revision(chat):
                    context.outcome = "turn_dropped"
                    logger.warning("Chat %s changed during the turn, dropping the reply", chat.id)
                    moved_to = current.metadata.get("recovery_chat_id")
                    if current.conversation_state == ConversationState.ERROR and moved_to:
                        return TurnResult(
                            chat_id=moved_to,
                            status="retry",
                            content=RETRY_MESSAGE,
                            redirect_chat_id=moved_to,
                        )
                    return TurnResult(
                        chat_id=chat.id, status="retry", content=RETRY_MESSAGE, redirect_chat_id=redirect
                    )
                chat.messages.extend(produced)
                app.store.save_chat(chat)
                context.outcome = "turn_appended"
        except AlreadyRecovering:
            logger.info("Chat %s is being repaired, dropping the reply", chat.id)
            return TurnResult(
                chat_id=chat.id, status="retry", content=RETRY_MESSAGE, redirect_chat_id=redirect
            )
        return None

    def _recheck(self, chat: Chat) -> Optional[HealReport]:
        """Validates ``chat`` again; None when another repair already holds it."""
        try:
            return self.app.healer.validate_and_heal_state(chat)
        except AlreadyRecovering:
            logger.info("Check of chat %s deferred to the running repair", chat.id)
            return None

    def _maybe_checkpoint(self, chat: Chat) -> None:
        interval = self.app.settings.checkpoint_interval_turns
        if interval <= 0 or chat.conversation_state != ConversationState.STABLE:
            return
        turns = sum(1 for m in chat.messages if m.role == USER_ROLE)
        if turns % interval:
            return
        try:
            self.app.healer.create_checkpoint(chat)
        except CheckpointError as e:
            logger.warning("Skipped periodic checkpoint for chat %s: %s", chat.id, e)
