"""
Core pytest configuration and fixtures for Chatmend testing.

This module provides shared test fixtures (sample chats, controllable clocks,
a fully wired app on the Echo LLM) that support the pillar-based tests.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest
from chatmend import Chatmend
from chatmend.config import Settings
from chatmend.llm import Echo
from chatmend.models import (
    ASSISTANT_ROLE,
    TOOL_ROLE,
    USER_ROLE,
    Chat,
    ChatMessage,
    ToolCall,
)

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """A datetime clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class EpochClock:
    """An epoch-seconds clock for the circuit breaker."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def assistant_calling(*call_ids: str, name: str = "search_flights") -> ChatMessage:
    return ChatMessage(
        role=ASSISTANT_ROLE,
        content=None,
        tool_calls=[ToolCall(id=cid, function_name=name) for cid in call_ids],
    )


def tool_response(call_id, content: str = "ok") -> ChatMessage:
    return ChatMessage(role=TOOL_ROLE, content=content, tool_call_id=call_id)


# ===== CLOCK FIXTURES =====


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def epoch_clock() -> EpochClock:
    return EpochClock()


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def sample_messages() -> List[ChatMessage]:
    """Sample chat messages with one completed tool round."""
    return [
        ChatMessage(role=USER_ROLE, content="Find me a flight to Lisbon"),
        assistant_calling("call_1"),
        tool_response("call_1", '{"flights": 3}'),
        ChatMessage(role=ASSISTANT_ROLE, content="I found 3 flights."),
        ChatMessage(role=USER_ROLE, content="Thanks!"),
        ChatMessage(role=ASSISTANT_ROLE, content="You're welcome."),
    ]


@pytest.fixture
def stable_chat(sample_messages) -> Chat:
    return Chat(id="chat_1", user_id="user_1", organization_id="org_1", messages=sample_messages)


@pytest.fixture
def unanswered_chat() -> Chat:
    """A turn closed while call_1 was still pending."""
    return Chat(
        id="chat_2",
        user_id="user_1",
        organization_id="org_1",
        messages=[
            ChatMessage(role=USER_ROLE, content="book a flight"),
            assistant_calling("call_1"),
            ChatMessage(role=USER_ROLE, content="never mind"),
        ],
    )


@pytest.fixture
def orphaned_chat(sample_messages) -> Chat:
    """A stable chat with two tool messages nothing refers to."""
    messages = list(sample_messages)
    messages.insert(4, tool_response("call_ghost"))
    messages.append(tool_response(""))
    return Chat(id="chat_3", user_id="user_1", organization_id="org_1", messages=messages)


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== APP FIXTURES =====


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        provider_timeout_s=5.0,
        provider_max_retries=2,
        retry_base_delay_s=0.01,
        checkpoint_interval_turns=2,
    )


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def test_app(test_settings, sleeps):
    """Chatmend wired with the Echo LLM and in-memory pillars."""
    app = Chatmend(llm=Echo(), settings=test_settings, sleep=sleeps.append)
    yield app
    app.close()
