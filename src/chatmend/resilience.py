"""Resilient wrapper around an LLM pillar: bounded waits, breaker, retries, health checks."""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, Optional, Sequence

from .breaker import CircuitBreaker
from .errors import CircuitOpenError, ProviderError
from .llm import LLM, classify_error
from .models import ChatMessage, utc_now

logger = logging.getLogger(__name__)

HEALTH_CHECK_PROMPT = [{"role": "user", "content": "ping"}]


class WorkersBusy(ProviderError):
    """Every provider worker stayed busy for the whole wait; nothing was sent."""

    def __init__(self, timeout_s: float):
        super().__init__("timeout", f"No provider worker became free within {timeout_s}s")


class ResilientLLM:
    """Calls ``llm`` through ``breaker`` with a bounded wait per call.

    Timeout, network and rate-limit failures count toward the breaker and are
    retried with exponential backoff. ``invalid_response`` is never retried:
    the endpoint answered, so it counts as a breaker success, and the error is
    handed back to the caller for conversation repair.

    Calls run on a pool of ``max_workers`` threads. A call that outlives its
    wait keeps its worker until the provider returns, so a hung endpoint can
    occupy the whole pool. An attempt that times out while still queued never
    reached the provider: it is raised as WorkersBusy and leaves the breaker
    untouched.
    """

    def __init__(
        self,
        llm: LLM,
        breaker: CircuitBreaker,
        timeout_s: float = 30.0,
        max_retries: int = 2,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 8,
    ):
        self.llm = llm
        self.breaker = breaker
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.sleep = sleep
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="chatmend-provider"
        )

    def complete(self, messages: Sequence[ChatMessage], **kwargs: Any) -> ChatMessage:
        """Sends the conversation and returns the assistant's reply.

        Raises
        ------
        CircuitOpenError
            The breaker is open; no network attempt was made.
        ProviderError
            The call failed and was not (or no longer) retryable.
        """
        wire = self.llm.format_messages(messages)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt(wire, **kwargs)
            except ProviderError as e:
                if not e.retryable:
                    raise
                if attempt > self.max_retries:
                    logger.error(
                        "Provider call failed after %d attempt(s): %s", attempt, e.kind
                    )
                    raise
                delay = self._backoff(attempt, e)
                logger.info(
                    "Provider %s on attempt %d, retrying in %.2fs", e.kind, attempt, delay
                )
                self.sleep(delay)

    def _attempt(self, wire, **kwargs: Any) -> ChatMessage:
        if not self.breaker.allow_request():
            raise CircuitOpenError(self.breaker.name, self.breaker.retry_after())

        started = time.monotonic()
        try:
            response = self._bounded(self.llm.generate_response, wire, **kwargs)
        except WorkersBusy:
            self.breaker.release()
            raise
        except ProviderError as e:
            self._record(e)
            raise
        except Exception as e:  # provider SDK boundary: classify everything
            error = classify_error(e)
            self._record(error)
            raise error from e

        try:
            message = self.llm.create_assistant_message(response)
        except ProviderError as e:
            self._record(e)
            raise
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            error = ProviderError("invalid_response", f"Unreadable provider response: {e}")
            self._record(error)
            raise error from e

        self.breaker.record_success(time.monotonic() - started)
        return message

    def _record(self, error: ProviderError) -> None:
        if error.kind == "invalid_response":
            self.breaker.record_success()
        else:
            self.breaker.record_failure()

    def _bounded(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # The worker may outlive the wait; its result is simply dropped.
        future: Future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout_s)
        except FuturesTimeout as e:
            if future.cancel():
                logger.warning("Provider call still queued after %ss, not sent", self.timeout_s)
                raise WorkersBusy(self.timeout_s) from e
            raise ProviderError(
                "timeout", f"Provider call exceeded {self.timeout_s}s"
            ) from e

    def _backoff(self, attempt: int, error: ProviderError) -> float:
        if error.kind == "rate_limited" and error.retry_after:
            return min(error.retry_after, self.max_delay_s)
        return min(self.base_delay_s * (2 ** (attempt - 1)), self.max_delay_s)

    def health_status(self) -> Dict[str, Any]:
        status = self.breaker.status()
        status["model"] = self.llm.model
        return status

    def perform_health_check(self) -> Dict[str, Any]:
        """Issues a synthetic request regardless of breaker state.

        The outcome updates the breaker's reporting counters but never its
        failure streak or state.
        """
        checked_at = utc_now()
        started = time.monotonic()
        try:
            self._bounded(self.llm.generate_response, HEALTH_CHECK_PROMPT, max_tokens=10)
        except Exception as e:  # provider SDK boundary: classify everything
            error = classify_error(e)
            latency = time.monotonic() - started
            self.breaker.record_health_check(False)
            logger.error("Health check failed: %s", error.kind)
            return {
                "status": "unhealthy",
                "latency_ms": round(latency * 1000, 1),
                "checked_at": checked_at,
                "error": error.kind,
            }
        latency = time.monotonic() - started
        self.breaker.record_health_check(True, latency)
        logger.info("Health check passed (%.2fs)", latency)
        return {
            "status": "healthy",
            "latency_ms": round(latency * 1000, 1),
            "checked_at": checked_at,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)
