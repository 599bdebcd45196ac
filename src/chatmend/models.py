"""
Defines the core Pydantic data models for the application.

These models serve as the formal, validated data contract between all other pillars,
aligning with conventions from industry-standard libraries like the OpenAI SDK.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .errors import InvalidStateTransition

# --- Constants ---
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
SYSTEM_ROLE = "system"
TOOL_ROLE = "tool"
Role = Literal[USER_ROLE, ASSISTANT_ROLE, SYSTEM_ROLE, TOOL_ROLE]

# Content of the tool message inserted for a tool call that never got a response.
SYNTHETIC_TOOL_RESPONSE = "cancelled"
INTEGRITY_FAILURE_REASON = "conversation_integrity_failure"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class ConversationState(str, Enum):
    STABLE = "stable"
    NEEDS_CLEANUP = "needs_cleanup"
    ERROR = "error"
    ARCHIVED = "archived"


_ALLOWED_TRANSITIONS = {
    ConversationState.STABLE: {
        ConversationState.NEEDS_CLEANUP,
        ConversationState.ARCHIVED,
    },
    ConversationState.NEEDS_CLEANUP: {
        ConversationState.STABLE,
        ConversationState.ERROR,
        ConversationState.ARCHIVED,
    },
    ConversationState.ERROR: {ConversationState.ARCHIVED},
    ConversationState.ARCHIVED: set(),
}


class ViolationType(str, Enum):
    PROMPT_INJECTION = "prompt_injection"
    HARMFUL_CONTENT = "harmful_content"
    HATE_SPEECH = "hate_speech"
    HARASSMENT = "harassment"
    SELF_HARM = "self_harm"
    SEXUAL_CONTENT = "sexual_content"
    VIOLENCE = "violence"
    OTHER = "other"


class ModerationAction(str, Enum):
    LOGGED = "logged"
    WARNED = "warned"
    BLOCKED = "blocked"
    ARCHIVED = "archived"


# --- Models ---
class ToolCall(BaseModel):
    """A function invocation requested by the assistant.

    ``id`` is the provider's opaque tool_call_id; tool messages answer a call
    by carrying the same value in ``ChatMessage.tool_call_id``.
    """

    id: str
    function_name: str
    function_args: str = "{}"


class ToolResult(BaseModel):
    """The outcome of executing a ToolCall."""

    tool_call_id: str
    function_name: str
    content: str
    is_error: bool = False


class ChatMessage(BaseModel):
    """Represents a single message within a conversation."""

    role: Role
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    id: str = Field(default_factory=_new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_tool_fields(self) -> "ChatMessage":
        # An empty tool_call_id on a tool message is representable on purpose:
        # the validator reports it instead of the model refusing to load it.
        if self.role != TOOL_ROLE and self.tool_call_id is not None:
            raise ValueError("tool_call_id is only allowed on tool messages")
        if self.tool_calls and self.role != ASSISTANT_ROLE:
            raise ValueError("tool_calls are only allowed on assistant messages")
        return self

    @property
    def is_synthetic(self) -> bool:
        return bool(self.metadata.get("synthetic"))


class Chat(BaseModel):
    """A persisted, ordered exchange between a user and the agent."""

    id: str
    user_id: str
    organization_id: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    conversation_state: ConversationState = ConversationState.STABLE
    last_stable_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [
            call
            for message in self.messages
            if message.role == ASSISTANT_ROLE and message.tool_calls
            for call in message.tool_calls
        ]

    @property
    def is_terminal(self) -> bool:
        return self.conversation_state in (
            ConversationState.ERROR,
            ConversationState.ARCHIVED,
        )

    def matches_revision(self, other: "Chat") -> bool:
        """True when both copies hold the same state and message sequence."""
        return self.conversation_state == other.conversation_state and [
            m.id for m in self.messages
        ] == [m.id for m in other.messages]

    def transition_to(self, target: ConversationState) -> bool:
        """Moves ``conversation_state`` to ``target``.

        Returns False when the chat is already in ``target``. Raises
        InvalidStateTransition for moves the state machine does not allow.
        """
        target = ConversationState(target)
        if self.conversation_state == target:
            return False
        if target not in _ALLOWED_TRANSITIONS[self.conversation_state]:
            raise InvalidStateTransition(self.conversation_state.value, target.value)
        self.conversation_state = target
        return True


class Checkpoint(BaseModel):
    """A durable snapshot of a chat's last validated-stable message sequence."""

    chat_id: str
    name: str
    created_at: datetime = Field(default_factory=utc_now)
    conversation_state: ConversationState = ConversationState.STABLE
    message_count: int = Field(default=0, ge=0)
    tool_calls_count: int = Field(default=0, ge=0)
    messages_snapshot: List[Dict[str, Any]] = Field(default_factory=list)
    context_data: Dict[str, Any] = Field(default_factory=dict)

    def restore_messages(self) -> List[ChatMessage]:
        return [ChatMessage.model_validate(data) for data in self.messages_snapshot]


class RecoveryContext(BaseModel):
    """A short-lived lock representing an in-progress repair of one chat."""

    chat_id: str
    id: str = Field(default_factory=_new_id)
    user_id: Optional[str] = None
    opened_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    attempt_count: int = 0
    outcome: Optional[str] = None
    # what the holder saw when it opened the context, for operators
    context_data: Dict[str, Any] = Field(default_factory=dict)

    def is_active(self, now: datetime) -> bool:
        return self.outcome is None and self.expires_at > now


class ModerationOutcome(BaseModel):
    """The verdict of an external moderation classifier for one message."""

    violation_type: ViolationType
    action_taken: ModerationAction
    details: Optional[str] = None


class ModerationLogEntry(BaseModel):
    chat_id: str
    user_id: str
    organization_id: str
    violation_type: ViolationType
    action_taken: ModerationAction = ModerationAction.LOGGED
    message_id: Optional[str] = None
    details: Optional[str] = None
    id: str = Field(default_factory=_new_id)
    detected_at: datetime = Field(default_factory=utc_now)


class HealReport(BaseModel):
    """What validate_and_heal_state did to a chat."""

    status: Literal["healthy", "healed", "forked", "skipped"]
    actions_taken: List[str] = Field(default_factory=list)
    recovery_chat: Optional[Chat] = None


class TurnResult(BaseModel):
    """What a user turn produced, safe to show to the end user."""

    chat_id: str
    status: Literal["ok", "refused", "retry", "unavailable", "failed", "archived"]
    content: str
    redirect_chat_id: Optional[str] = None
