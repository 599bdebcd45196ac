"""
Structural integrity checks over a chat's message/tool-call graph.

A chat is stable when every tool call id is issued once, every tool message
carries a tool_call_id and answers exactly one previously issued tool call,
no call is answered twice, and every call issued in a turn is answered before
the next user message opens a new turn. Calls still pending in the last, open
turn are not violations.

``validate`` is read-only and makes a single pass over the messages.
"""

import logging
from enum import Enum
from typing import Dict, List, Sequence, Union

from pydantic import BaseModel, ConfigDict

from .errors import StructuralViolation
from .models import ASSISTANT_ROLE, TOOL_ROLE, USER_ROLE, Chat, ChatMessage

logger = logging.getLogger(__name__)


class ViolationCode(str, Enum):
    MISSING_TOOL_CALL_ID = "missing_tool_call_id"
    UNKNOWN_TOOL_CALL_ID = "unknown_tool_call_id"
    AMBIGUOUS_TOOL_CALL_ID = "ambiguous_tool_call_id"
    UNANSWERED_TOOL_CALL = "unanswered_tool_call"
    DUPLICATE_TOOL_RESPONSE = "duplicate_tool_response"


# Tool messages nothing can ever reference; safe to delete.
ORPHAN_CODES = frozenset(
    {ViolationCode.MISSING_TOOL_CALL_ID, ViolationCode.UNKNOWN_TOOL_CALL_ID}
)


class Violation(BaseModel):
    """One broken invariant.

    ``message_id`` is the offending message: the tool message for response
    problems, the assistant message that issued the call for unanswered or
    re-issued calls.
    ``position`` is the index where the problem shows up; for unanswered calls
    it is the index of the user message that closed the turn.
    """

    model_config = ConfigDict(frozen=True)

    code: ViolationCode
    message_id: str
    position: int
    tool_call_id: str = ""


class Stable(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def is_stable(self) -> bool:
        return True

    @property
    def violations(self) -> List[Violation]:
        return []

    def raise_for_violations(self) -> None:
        return None


class Invalid(BaseModel):
    model_config = ConfigDict(frozen=True)

    violations: List[Violation]

    @property
    def is_stable(self) -> bool:
        return False

    def by_code(self, *codes: ViolationCode) -> List[Violation]:
        return [v for v in self.violations if v.code in codes]

    def raise_for_violations(self) -> None:
        raise StructuralViolation(self.violations)


Verdict = Union[Stable, Invalid]


def _messages_of(chat: Union[Chat, Sequence[ChatMessage]]) -> Sequence[ChatMessage]:
    return chat.messages if isinstance(chat, Chat) else chat


def validate(chat: Union[Chat, Sequence[ChatMessage]]) -> Verdict:
    """Returns Stable, or Invalid listing every violation in message order."""
    messages = _messages_of(chat)
    violations: List[Violation] = []
    issued: Dict[str, int] = {}
    answered: Dict[str, str] = {}
    # tool_call_id -> id of the assistant message, for calls of the open turn
    pending: Dict[str, str] = {}

    for position, message in enumerate(messages):
        if message.role == USER_ROLE:
            for call_id, owner_id in pending.items():
                violations.append(
                    Violation(
                        code=ViolationCode.UNANSWERED_TOOL_CALL,
                        message_id=owner_id,
                        position=position,
                        tool_call_id=call_id,
                    )
                )
            pending = {}

        elif message.role == ASSISTANT_ROLE and message.tool_calls:
            for call in message.tool_calls:
                issued[call.id] = issued.get(call.id, 0) + 1
                if issued[call.id] > 1:
                    # a second issuance can never be told apart from the first
                    violations.append(
                        Violation(
                            code=ViolationCode.AMBIGUOUS_TOOL_CALL_ID,
                            message_id=message.id,
                            position=position,
                            tool_call_id=call.id,
                        )
                    )
                elif call.id not in answered:
                    pending[call.id] = message.id

        elif message.role == TOOL_ROLE:
            call_id = message.tool_call_id
            code = None
            if not call_id:
                code = ViolationCode.MISSING_TOOL_CALL_ID
            elif call_id not in issued:
                code = ViolationCode.UNKNOWN_TOOL_CALL_ID
            elif issued[call_id] > 1:
                code = ViolationCode.AMBIGUOUS_TOOL_CALL_ID
            elif call_id in answered:
                code = ViolationCode.DUPLICATE_TOOL_RESPONSE

            if code is None:
                answered[call_id] = message.id
                pending.pop(call_id, None)
            else:
                violations.append(
                    Violation(
                        code=code,
                        message_id=message.id,
                        position=position,
                        tool_call_id=call_id or "",
                    )
                )

    if not violations:
        return Stable()
    violations.sort(key=lambda v: v.position)
    logger.debug("Found %d violation(s) in %d messages", len(violations), len(messages))
    return Invalid(violations=violations)


def orphaned_tool_messages(
    chat: Union[Chat, Sequence[ChatMessage]],
) -> List[ChatMessage]:
    """Tool messages that can never be matched to a tool call."""
    messages = _messages_of(chat)
    verdict = validate(messages)
    return [messages[v.position] for v in verdict.violations if v.code in ORPHAN_CODES]
