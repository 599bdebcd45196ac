"""
The main entrypoint for the Chatmend package.

This module contains the Chatmend class, the central orchestrator that wires
the injected pillars together and exposes the conversation-integrity
operations to callers and operator tooling.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from . import breaker, checkpoints, engine, llm, moderation, recovery, store, tools
from .config import Settings, get_settings
from .errors import AlreadyRecovering, ConversationRecoveryError
from .healer import Healer
from .models import Chat, HealReport, TurnResult, utc_now
from .monitoring import HealthSweep, SweepReport, conversation_statistics
from .resilience import ResilientLLM

logger = logging.getLogger(__name__)

REPAIR_BUSY_MESSAGE = "A repair of this conversation is already in progress."
REPAIR_FAILED_MESSAGE = "The conversation could not be repaired."
REPAIR_NOT_FOUND_MESSAGE = "Conversation not found."


def configure_logging(level: str = "INFO") -> None:
    """Installs a basic stderr handler for command-line and operator use."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


class Chatmend:
    """
    Keeps chat conversations structurally valid across provider failures.

    The constructor uses concrete default implementations for every pillar,
    so ``Chatmend()`` works out of the box, while any pillar can be replaced
    with a custom implementation.
    """

    def __init__(
        self,
        llm: Optional[llm.LLM] = None,
        store: Optional[store.Store] = None,
        tools: Optional[tools.Tool] = None,
        checkpoints: Optional[checkpoints.CheckpointStore] = None,
        recovery: Optional[recovery.RecoveryContexts] = None,
        ledger: Optional[moderation.ModerationLedger] = None,
        moderator: Optional[moderation.Moderator] = None,
        engine: Optional[engine.Engine] = None,
        settings: Optional[Settings] = None,
        breaker: Optional[breaker.CircuitBreaker] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        """
        Initialize Chatmend with configurable pillars.

        Parameters
        ----------
        llm : llm.LLM, optional
            LLM provider. Defaults to llm.OpenAI(), or llm.Echo() with a
            warning when the 'openai' package is not installed.
        store : store.Store, optional
            Chat persistence. Defaults to store.InMemory().
        tools : tools.Tool, optional
            Tool handler for function calling. Defaults to tools.NoTool().
        checkpoints : checkpoints.CheckpointStore, optional
            Defaults to checkpoints.InMemory().
        recovery : recovery.RecoveryContexts, optional
            Defaults to recovery.InMemory(). Use recovery.SQLite when several
            processes serve the same chats.
        ledger : moderation.ModerationLedger, optional
            Defaults to moderation.InMemory() configured from settings.
        moderator : moderation.Moderator, optional
            Defaults to moderation.NoModeration().
        engine : engine.Engine, optional
            Turn handler. Defaults to engine.Synchronous().
        settings : config.Settings, optional
            Defaults to the cached environment-derived settings.
        breaker : breaker.CircuitBreaker, optional
            Shared breaker for the provider endpoint. Pass the same instance
            to several Chatmend objects that talk to the same endpoint.
        sleep : callable, optional
            Used between provider retries. Defaults to time.sleep.

        Examples
        --------
        >>> app = Chatmend(llm=llm.Echo(), store=store.SQLite("chats.db"))
        >>> app.handle_message("hello", user_id="u1").status
        'ok'
        """
        self.settings = settings if settings is not None else get_settings()
        s = self.settings

        if llm:
            self.llm = llm
        else:
            try:
                from .llm import OpenAI

                self.llm = OpenAI()
            except ImportError:
                import warnings

                warnings.warn(
                    "Chatmend is running with a simple EchoLLM because the 'openai' package is not installed. "
                    'For the OpenAI integration, install with: pip install "chatmend[openai]"',
                    UserWarning,
                )
                from .llm import Echo

                self.llm = Echo()

        store_module = globals()["store"]
        tools_module = globals()["tools"]
        checkpoints_module = globals()["checkpoints"]
        recovery_module = globals()["recovery"]
        moderation_module = globals()["moderation"]
        engine_module = globals()["engine"]
        breaker_module = globals()["breaker"]

        self.store = store if store is not None else store_module.InMemory()
        self.tools = tools if tools is not None else tools_module.NoTool()
        self.checkpoints = (
            checkpoints if checkpoints is not None else checkpoints_module.InMemory()
        )
        self.recovery = recovery if recovery is not None else recovery_module.InMemory()
        self.ledger = (
            ledger
            if ledger is not None
            else moderation_module.InMemory(
                auto_archive_threshold=s.auto_archive_violation_threshold,
                auto_archive_window=timedelta(days=s.auto_archive_window_days),
            )
        )
        self.moderator = (
            moderator if moderator is not None else moderation_module.NoModeration()
        )
        self.breaker = (
            breaker
            if breaker is not None
            else breaker_module.CircuitBreaker(
                threshold=s.circuit_breaker_threshold,
                timeout=s.circuit_breaker_timeout_s,
                window=s.circuit_breaker_window_s,
            )
        )

        retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.resilient_llm = ResilientLLM(
            self.llm,
            self.breaker,
            timeout_s=s.provider_timeout_s,
            max_retries=s.provider_max_retries,
            base_delay_s=s.retry_base_delay_s,
            max_delay_s=s.retry_max_delay_s,
            max_workers=s.provider_max_workers,
            **retry_kwargs,
        )
        self.healer = Healer(
            self.store,
            self.checkpoints,
            self.recovery,
            max_recovery_attempts=s.max_recovery_attempts,
            recovery_context_ttl_s=s.recovery_context_ttl_s,
        )
        self.sweep = HealthSweep(
            self.store,
            self.healer,
            self.checkpoints,
            self.recovery,
            resilient_llm=self.resilient_llm,
            checkpoint_retention=timedelta(days=s.checkpoint_retention_days),
            stale_after=timedelta(hours=s.stale_stable_after_hours),
        )

        self.engine = engine if engine is not None else engine_module.Synchronous()
        self.engine.app = self

    def handle_message(
        self,
        user_input: str,
        user_id: str,
        chat_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> TurnResult:
        return self.engine.handle_message(user_input, user_id, chat_id, organization_id)

    def ensure_conversation_integrity(self, chat: Chat) -> HealReport:
        return self.healer.ensure_conversation_integrity(chat)

    def validate_and_heal_state(self, chat: Chat) -> HealReport:
        return self.healer.validate_and_heal_state(chat)

    def repair_conversation(self, chat_id: str) -> Dict[str, Any]:
        """Admin-triggered repair of one chat.

        Returns a plain dict for operator tooling; failures carry a generic
        ``error`` string only.
        """
        chat = self.store.load_chat(chat_id)
        if chat is None:
            return {"success": False, "error": REPAIR_NOT_FOUND_MESSAGE}
        try:
            report = self.healer.validate_and_heal_state(chat)
        except AlreadyRecovering:
            return {"success": False, "error": REPAIR_BUSY_MESSAGE}
        except ConversationRecoveryError as e:
            logger.error("Admin repair of chat %s failed: %s", chat_id, e)
            return {"success": False, "error": REPAIR_FAILED_MESSAGE}
        return {
            "success": True,
            "status": report.status,
            "actions_taken": report.actions_taken,
            "recovery_chat_id": report.recovery_chat.id if report.recovery_chat else None,
        }

    def health_metrics(self, chat_id: str) -> Optional[Dict[str, Any]]:
        chat = self.store.load_chat(chat_id)
        return self.healer.health_metrics(chat) if chat is not None else None

    def health_status(self) -> Dict[str, Any]:
        return self.resilient_llm.health_status()

    def perform_health_check(self) -> Dict[str, Any]:
        return self.resilient_llm.perform_health_check()

    def run_health_sweep(self) -> SweepReport:
        return self.sweep.run()

    def conversation_statistics(self) -> Dict[str, Any]:
        return conversation_statistics(self.store)

    def error_recovery_stats(self) -> Dict[str, Any]:
        return {
            "active_recovery_operations": self.recovery.active_count(),
            "available_checkpoints": self.checkpoints.count(),
            "recovery_success_rate": self.sweep.recovery_success_rate(),
            "timestamp": utc_now(),
        }

    def violation_summary(
        self, organization_id: str, window: Optional[timedelta] = None
    ) -> Dict[str, int]:
        window = window or timedelta(hours=self.settings.violation_summary_window_hours)
        return self.ledger.violation_summary(organization_id, window)

    def repeat_offenders(
        self,
        organization_id: str,
        window: Optional[timedelta] = None,
        threshold: Optional[int] = None,
    ) -> List[str]:
        s = self.settings
        return self.ledger.repeat_offenders(
            organization_id,
            window or timedelta(days=s.repeat_offender_window_days),
            threshold if threshold is not None else s.repeat_offender_threshold,
        )

    def close(self) -> None:
        self.resilient_llm.close()


__all__ = ["Chatmend", "Settings", "configure_logging"]
