"""
Repair strategies for structurally invalid chats.

Each strategy is a pure function of ``(messages, violations)`` returning either
``Healed`` with a new message list or ``UNCHANGED``. The healer tries them in
order; adding a rule means adding a strategy to the list.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Sequence, Union

from pydantic import BaseModel

from .models import SYNTHETIC_TOOL_RESPONSE, TOOL_ROLE, ChatMessage
from .validation import ORPHAN_CODES, Violation, ViolationCode, validate


class Healed(BaseModel):
    messages: List[ChatMessage]
    action: str


class Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED = Unchanged()
Outcome = Union[Healed, Unchanged]


class RepairStrategy(ABC):
    """Interface for a single in-place repair rule."""

    name: str = "repair"

    @abstractmethod
    def apply(
        self, messages: Sequence[ChatMessage], violations: Sequence[Violation]
    ) -> Outcome:
        """Returns the repaired message list, or UNCHANGED if the rule does not apply."""
        pass


class Trim(RepairStrategy):
    """Deletes tool messages that reference no known tool call."""

    name = "trim"

    def apply(self, messages, violations):
        doomed = {v.message_id for v in violations if v.code in ORPHAN_CODES}
        if not doomed:
            return UNCHANGED
        kept = [m for m in messages if m.id not in doomed]
        return Healed(
            messages=kept,
            action=f"trimmed_{len(messages) - len(kept)}_orphaned_tool_messages",
        )


class Synthesize(RepairStrategy):
    """Answers tool calls left open across a closed turn.

    One synthetic tool message per call is inserted right before the user
    message that closed the turn. Calls that did get a (late) response are left
    alone; reordering real responses is not this rule's job.
    """

    name = "synthesize"

    def apply(self, messages, violations):
        answered_ids = {
            m.tool_call_id for m in messages if m.role == TOOL_ROLE and m.tool_call_id
        }
        inserts: Dict[int, List[ChatMessage]] = {}
        for violation in violations:
            if violation.code != ViolationCode.UNANSWERED_TOOL_CALL:
                continue
            if violation.tool_call_id in answered_ids:
                continue
            closing = messages[violation.position]
            inserts.setdefault(violation.position, []).append(
                ChatMessage(
                    role=TOOL_ROLE,
                    content=SYNTHETIC_TOOL_RESPONSE,
                    tool_call_id=violation.tool_call_id,
                    timestamp=closing.timestamp,
                    metadata={"synthetic": True},
                )
            )
        if not inserts:
            return UNCHANGED

        repaired: List[ChatMessage] = []
        for position, message in enumerate(messages):
            repaired.extend(inserts.get(position, []))
            repaired.append(message)
        count = sum(len(batch) for batch in inserts.values())
        return Healed(messages=repaired, action=f"synthesized_{count}_tool_responses")


DEFAULT_STRATEGIES = (Trim(), Synthesize())


def stable_prefix(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    """The longest leading run of messages that validates as stable.

    A re-issued tool call id is a violation at the re-issuing message, so the
    run never contains an id twice and its pending calls can still be answered.
    """
    verdict = validate(messages)
    cut = len(messages) if verdict.is_stable else min(v.position for v in verdict.violations)
    return list(messages[:cut])
