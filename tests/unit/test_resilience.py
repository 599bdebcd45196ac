"""Tests for the resilient provider-call wrapper."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest
from chatmend.breaker import CircuitBreaker, CircuitState
from chatmend.errors import CircuitOpenError, ProviderError
from chatmend.llm import Echo
from chatmend.models import ASSISTANT_ROLE, USER_ROLE, ChatMessage
from chatmend.resilience import HEALTH_CHECK_PROMPT, ResilientLLM, WorkersBusy


class FlakyLLM(Echo):
    """Echo that raises the queued errors before answering."""

    def __init__(self, errors=(), **kwargs):
        super().__init__(**kwargs)
        self.errors = list(errors)
        self.calls = 0

    def generate_response(self, messages, model=None, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return super().generate_response(messages, model, **kwargs)


@pytest.fixture
def breaker(epoch_clock):
    return CircuitBreaker(threshold=3, timeout=60, clock=epoch_clock)


@pytest.fixture
def sleeps():
    return []


def make(llm, breaker, sleeps, **kwargs):
    kwargs.setdefault("timeout_s", 2.0)
    kwargs.setdefault("max_retries", 2)
    return ResilientLLM(llm, breaker, sleep=sleeps.append, **kwargs)


HELLO = [ChatMessage(role=USER_ROLE, content="hello")]


class TestComplete:
    def test_returns_assistant_message(self, breaker, sleeps):
        resilient = make(Echo(), breaker, sleeps)
        reply = resilient.complete(HELLO)
        assert reply.role == ASSISTANT_ROLE
        assert reply.content == "Echo: hello"
        assert breaker.status()["total_successes"] == 1

    def test_retries_retryable_errors_with_backoff(self, breaker, sleeps):
        """Test exponential backoff between retries of a transient failure."""
        llm = FlakyLLM([ProviderError("network"), ProviderError("timeout")])
        resilient = make(llm, breaker, sleeps, base_delay_s=1.0)

        reply = resilient.complete(HELLO)

        assert reply.content == "Echo: hello"
        assert llm.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_backoff_capped(self, breaker, sleeps):
        llm = FlakyLLM([ProviderError("network")] * 2)
        resilient = make(llm, breaker, sleeps, base_delay_s=10.0, max_delay_s=15.0)
        resilient.complete(HELLO)
        assert sleeps == [10.0, 15.0]

    def test_rate_limit_retry_after_wins(self, breaker, sleeps):
        llm = FlakyLLM([ProviderError("rate_limited", retry_after=4.0)])
        make(llm, breaker, sleeps).complete(HELLO)
        assert sleeps == [4.0]

    def test_gives_up_after_max_retries(self, breaker, sleeps):
        """Test that the last error is raised once retries are exhausted."""
        llm = FlakyLLM([ProviderError("network")] * 5)
        resilient = make(llm, breaker, sleeps, max_retries=1)
        with pytest.raises(ProviderError) as exc_info:
            resilient.complete(HELLO)
        assert exc_info.value.kind == "network"
        assert llm.calls == 2

    def test_invalid_response_not_retried_and_counts_as_success(self, breaker, sleeps):
        """Test that a structural rejection goes straight back to the caller."""
        llm = FlakyLLM([ProviderError("invalid_response")])
        resilient = make(llm, breaker, sleeps)
        with pytest.raises(ProviderError) as exc_info:
            resilient.complete(HELLO)
        assert exc_info.value.kind == "invalid_response"
        assert llm.calls == 1
        assert sleeps == []
        assert breaker.status()["total_successes"] == 1
        assert breaker.status()["consecutive_failures"] == 0

    def test_malformed_tool_call_is_invalid_response(self, breaker, sleeps):
        llm = Echo(responses=[{"content": None, "tool_calls": [{"id": "c1", "function": {}}]}])
        with pytest.raises(ProviderError) as exc_info:
            make(llm, breaker, sleeps).complete(HELLO)
        assert exc_info.value.kind == "invalid_response"

    def test_unknown_errors_are_classified_and_count_as_failures(self, breaker, sleeps):
        """Test that raw SDK exceptions become ProviderError."""
        llm = FlakyLLM([RuntimeError("kaboom")])
        with pytest.raises(ProviderError) as exc_info:
            make(llm, breaker, sleeps).complete(HELLO)
        assert exc_info.value.kind == "unknown"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert breaker.status()["consecutive_failures"] == 1

    def test_passes_kwargs_to_provider(self, breaker, sleeps):
        llm = Mock(wraps=Echo())
        llm.model = "echo-v1"
        make(llm, breaker, sleeps).complete(HELLO, tools=[{"type": "function"}])
        _, kwargs = llm.generate_response.call_args
        assert kwargs["tools"] == [{"type": "function"}]


class TestBreakerIntegration:
    def test_open_circuit_fails_fast(self, breaker, sleeps):
        """Test that no provider call is attempted while the circuit is open."""
        llm = FlakyLLM([ProviderError("network")] * 3)
        resilient = make(llm, breaker, sleeps, max_retries=2)
        with pytest.raises(ProviderError):
            resilient.complete(HELLO)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            resilient.complete(HELLO)
        assert llm.calls == 3

    def test_retries_stop_when_circuit_opens(self, breaker, sleeps):
        llm = FlakyLLM([ProviderError("network")] * 10)
        resilient = make(llm, breaker, sleeps, max_retries=5)
        with pytest.raises(CircuitOpenError):
            resilient.complete(HELLO)
        assert llm.calls == 3

    def test_half_open_trial_recovers(self, breaker, sleeps, epoch_clock):
        llm = FlakyLLM([ProviderError("network")] * 3)
        resilient = make(llm, breaker, sleeps, max_retries=2)
        with pytest.raises(ProviderError):
            resilient.complete(HELLO)
        epoch_clock.advance(60)
        assert resilient.complete(HELLO).content == "Echo: hello"
        assert breaker.state == CircuitState.CLOSED


class TestBoundedWait:
    def test_slow_call_times_out(self, breaker, sleeps):
        """Test that a call exceeding the bound fails as a timeout."""
        release = threading.Event()

        class SlowLLM(Echo):
            def generate_response(self, messages, model=None, **kwargs):
                release.wait(5)
                return super().generate_response(messages, model, **kwargs)

        resilient = make(SlowLLM(), breaker, sleeps, timeout_s=0.05, max_retries=0)
        try:
            with pytest.raises(ProviderError) as exc_info:
                resilient.complete(HELLO)
        finally:
            release.set()
            resilient.close()
        assert exc_info.value.kind == "timeout"
        assert breaker.status()["consecutive_failures"] == 1

    def test_queued_call_is_not_a_breaker_failure(self, breaker, sleeps):
        """Test that an attempt stuck behind a hung worker never counts against the provider."""
        release = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        executor.submit(release.wait, 5)
        llm = FlakyLLM()
        resilient = make(llm, breaker, sleeps, timeout_s=0.05, max_retries=0, executor=executor)
        try:
            with pytest.raises(WorkersBusy) as exc_info:
                resilient.complete(HELLO)
        finally:
            release.set()
            resilient.close()
        assert exc_info.value.kind == "timeout"
        assert llm.calls == 0
        status = breaker.status()
        assert status["consecutive_failures"] == 0
        assert status["total_failures"] == 0

    def test_pool_size(self, breaker, sleeps):
        resilient = make(Echo(), breaker, sleeps, max_workers=3)
        try:
            assert resilient._executor._max_workers == 3
        finally:
            resilient.close()


class TestHealth:
    def test_health_status_includes_model(self, breaker, sleeps):
        status = make(Echo(), breaker, sleeps).health_status()
        assert status["model"] == "echo-v1"
        assert status["state"] == "closed"

    def test_health_check_healthy(self, breaker, sleeps):
        llm = Mock(wraps=Echo())
        result = make(llm, breaker, sleeps).perform_health_check()
        assert result["status"] == "healthy"
        assert result["latency_ms"] >= 0
        assert "checked_at" in result
        llm.generate_response.assert_called_once_with(HEALTH_CHECK_PROMPT, max_tokens=10)

    def test_health_check_failure_never_opens(self, breaker, sleeps):
        """Test that failing health checks leave the breaker streak untouched."""
        llm = FlakyLLM([ProviderError("network")] * 5)
        resilient = make(llm, breaker, sleeps)
        for _ in range(5):
            result = resilient.perform_health_check()
            assert result["status"] == "unhealthy"
            assert result["error"] == "network"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.status()["consecutive_failures"] == 0
        assert breaker.status()["total_failures"] == 5

    def test_health_check_runs_while_open(self, breaker, sleeps):
        """Test that health checks bypass an open circuit."""
        for _ in range(3):
            breaker.record_failure()
        result = make(Echo(), breaker, sleeps).perform_health_check()
        assert result["status"] == "healthy"
        assert breaker.state == CircuitState.OPEN
