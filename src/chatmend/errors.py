"""Exception taxonomy shared by all pillars."""

from typing import Any, List, Literal, Optional

ProviderErrorKind = Literal[
    "timeout", "rate_limited", "invalid_response", "network", "unknown"
]
RETRYABLE_KINDS = frozenset({"timeout", "rate_limited", "network"})


class ChatmendError(Exception):
    """Base class for every error raised by chatmend."""


class StructuralViolation(ChatmendError):
    """A chat breaks the tool-call/tool-response invariants; repairable in place."""

    def __init__(self, violations: List[Any]):
        self.violations = list(violations)
        codes = sorted({v.code.value for v in self.violations})
        super().__init__(
            f"{len(self.violations)} structural violation(s): {', '.join(codes)}"
        )


class UnrecoverableCorruption(ChatmendError):
    """In-place repair failed; the conversation continues in ``recovery_chat``."""

    def __init__(self, chat_id: str, recovery_chat: Any):
        self.chat_id = chat_id
        self.recovery_chat = recovery_chat
        super().__init__(f"Chat {chat_id} was forked into {recovery_chat.id}")


class ProviderError(ChatmendError):
    """A classified failure of an outbound LLM provider call."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str = "",
        retry_after: Optional[float] = None,
    ):
        self.kind = kind
        self.retry_after = retry_after
        super().__init__(message or kind)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class CircuitOpenError(ChatmendError):
    """The circuit breaker is open; no network attempt was made."""

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit '{name}' is open, retry in {self.retry_after:.1f}s"
        )


class AlreadyRecovering(ChatmendError):
    """Another repair of the same chat holds a live recovery context."""

    def __init__(self, chat_id: str, expires_at: Any = None):
        self.chat_id = chat_id
        self.expires_at = expires_at
        super().__init__(f"Chat {chat_id} is already being recovered")


class ConversationRecoveryError(ChatmendError):
    """Fatal: the forked chat itself failed validation."""

    def __init__(self, message: str, new_chat: Any):
        self.new_chat = new_chat
        super().__init__(message)


class InvalidStateTransition(ChatmendError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move conversation from '{current}' to '{target}'")


class CheckpointError(ChatmendError):
    pass
