"""Integration tests for Engine + LLM + CircuitBreaker interaction."""

import json

import pytest
from chatmend import Chatmend
from chatmend.breaker import CircuitBreaker, CircuitState
from chatmend.llm import Echo
from chatmend.models import ASSISTANT_ROLE, TOOL_ROLE, USER_ROLE
from chatmend.tools import PythonTool
from chatmend.validation import validate


class FlakyEcho(Echo):
    """Echo that fails while ``down`` is set and counts every call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.down = False
        self.calls = 0
        self.last_wire = None

    def generate_response(self, messages, model=None, **kwargs):
        self.calls += 1
        self.last_wire = messages
        if self.down:
            raise ConnectionError("connection refused")
        return super().generate_response(messages, model, **kwargs)


def calls(*triples):
    """An assistant response dict carrying one tool call per (id, name, args) triple."""
    return {
        "content": None,
        "tool_calls": [
            {"id": call_id, "function": {"name": name, "arguments": json.dumps(args)}}
            for call_id, name, args in triples
        ],
    }


@pytest.fixture
def breaker(epoch_clock):
    return CircuitBreaker(threshold=2, timeout=60.0, clock=epoch_clock)


@pytest.fixture
def flaky():
    return FlakyEcho()


@pytest.fixture
def app(flaky, breaker, test_settings, sleeps):
    app = Chatmend(llm=flaky, breaker=breaker, settings=test_settings, sleep=sleeps.append)
    yield app
    app.close()


class TestMultiTurn:
    def test_history_sent_each_turn(self, app, flaky):
        """Test that the provider sees the whole stored history every turn."""
        chat_id = app.handle_message("first", user_id="u").chat_id
        app.handle_message("second", user_id="u", chat_id=chat_id)

        assert [m["content"] for m in flaky.last_wire] == ["first", "Echo: first", "second"]
        assert [m["role"] for m in flaky.last_wire] == [USER_ROLE, ASSISTANT_ROLE, USER_ROLE]

    def test_user_input_is_stripped(self, app):
        result = app.handle_message("  padded  ", user_id="u")
        assert result.content == "Echo: padded"


class TestToolFlows:
    @pytest.fixture
    def tools(self):
        tools = PythonTool()

        def get_weather(city: str) -> dict:
            return {"city": city, "forecast": "sunny"}

        def fail() -> str:
            raise RuntimeError("backend down")

        tools.register_function(get_weather)
        tools.register_function(fail)
        return tools

    def test_parallel_calls_all_answered(self, tools, test_settings):
        """Test that every call in one assistant message gets its own response."""
        llm = Echo(
            responses=[
                calls(("w1", "get_weather", {"city": "Paris"}), ("w2", "get_weather", {"city": "Rome"})),
                {"content": "Both sunny.", "tool_calls": []},
            ]
        )
        app = Chatmend(llm=llm, tools=tools, settings=test_settings)

        result = app.handle_message("weather?", user_id="u")

        assert result.content == "Both sunny."
        chat = app.store.load_chat(result.chat_id)
        tool_messages = [m for m in chat.messages if m.role == TOOL_ROLE]
        assert [m.tool_call_id for m in tool_messages] == ["w1", "w2"]
        assert json.loads(tool_messages[1].content)["city"] == "Rome"
        assert validate(chat).is_stable
        app.close()

    def test_failing_tool_keeps_chat_valid(self, tools, test_settings):
        """Test that a tool error is reported to the model, not raised."""
        llm = Echo(responses=[calls(("f1", "fail", {}))])
        app = Chatmend(llm=llm, tools=tools, settings=test_settings)

        result = app.handle_message("try it", user_id="u")

        chat = app.store.load_chat(result.chat_id)
        tool_message = next(m for m in chat.messages if m.role == TOOL_ROLE)
        assert tool_message.metadata == {"is_error": True}
        assert tool_message.content == "Tool execution failed: RuntimeError"
        assert result.content == "Echo: Tool execution failed: RuntimeError"
        assert validate(chat).is_stable
        app.close()

    def test_tool_round_trip_over_several_turns(self, tools, test_settings):
        llm = Echo(
            responses=[
                calls(("w1", "get_weather", {"city": "Oslo"})),
                {"content": "Snow.", "tool_calls": []},
            ]
        )
        app = Chatmend(llm=llm, tools=tools, settings=test_settings)
        chat_id = app.handle_message("Oslo?", user_id="u").chat_id

        result = app.handle_message("thanks", user_id="u", chat_id=chat_id)

        assert result.content == "Echo: thanks"
        chat = app.store.load_chat(chat_id)
        assert [m.role for m in chat.messages] == [
            USER_ROLE,
            ASSISTANT_ROLE,
            TOOL_ROLE,
            ASSISTANT_ROLE,
            USER_ROLE,
            ASSISTANT_ROLE,
        ]
        assert validate(chat).is_stable
        app.close()


class TestBreakerThroughEngine:
    def test_outage_opens_circuit(self, app, flaky, breaker):
        """Test that retries exhaust into an open circuit and a friendly reply."""
        chat_id = app.handle_message("hello", user_id="u").chat_id
        flaky.down = True

        result = app.handle_message("anyone?", user_id="u", chat_id=chat_id)

        assert result.status == "unavailable"
        assert result.content.endswith("in 1 minute(s).")
        assert breaker.state == CircuitState.OPEN
        assert len(app.store.load_chat(chat_id).messages) == 2

    def test_open_circuit_skips_provider(self, app, flaky, breaker):
        flaky.down = True
        app.handle_message("hello", user_id="u")
        calls_before = flaky.calls

        result = app.handle_message("again", user_id="u")

        assert result.status == "unavailable"
        assert flaky.calls == calls_before

    def test_recovers_after_timeout(self, app, flaky, breaker, epoch_clock):
        """Test that the half-open trial call closes the circuit once the provider is back."""
        chat_id = app.handle_message("hello", user_id="u").chat_id
        flaky.down = True
        app.handle_message("anyone?", user_id="u", chat_id=chat_id)
        flaky.down = False
        epoch_clock.advance(61)

        result = app.handle_message("back?", user_id="u", chat_id=chat_id)

        assert result.status == "ok"
        assert result.content == "Echo: back?"
        assert breaker.state == CircuitState.CLOSED
        assert app.health_status()["consecutive_failures"] == 0

    def test_breaker_shared_between_apps(self, breaker, test_settings, sleeps):
        """Test that two apps on one endpoint share the same failure view."""
        down = FlakyEcho()
        down.down = True
        healthy = FlakyEcho()
        first = Chatmend(llm=down, breaker=breaker, settings=test_settings, sleep=sleeps.append)
        second = Chatmend(llm=healthy, breaker=breaker, settings=test_settings, sleep=sleeps.append)

        first.handle_message("hello", user_id="u")
        result = second.handle_message("hello", user_id="u")

        assert result.status == "unavailable"
        assert healthy.calls == 0
        first.close()
        second.close()

    def test_invalid_response_does_not_trip_breaker(self, breaker, test_settings):
        broken = {"content": None, "tool_calls": [{"id": "", "function": {"name": "x"}}]}
        llm = Echo(responses=[broken, broken, broken])
        app = Chatmend(llm=llm, breaker=breaker, settings=test_settings)

        for _ in range(3):
            assert app.handle_message("hi", user_id="u").status == "retry"

        assert breaker.state == CircuitState.CLOSED
        assert llm.responses == []
        app.close()
