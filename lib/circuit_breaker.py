"""Lightweight async circuit breaker with timeout.

Guards the OpenAI speech and transcription calls so a slow or failing
provider degrades to <Say> prompts and missing transcripts instead of
stalling webhooks. States: closed, open (fallback), half_open (probing).
"""

from __future__ import annotations

import asyncio
import time

from loguru import logger

# Registry of all breakers, reported by /health
_breakers: dict[str, CircuitBreaker] = {}


class CircuitBreaker:
    """Async circuit breaker with configurable timeout and failure threshold."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        recovery_timeout: float = 60.0,
        call_timeout: float = 10.0,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.call_timeout = call_timeout
        self.reset()
        _breakers[name] = self

    def reset(self) -> None:
        self.state = "closed"  # closed | open | half_open
        self.failure_count = 0
        self.last_failure_time = 0.0

    @staticmethod
    def _fallback(fallback):
        return fallback() if callable(fallback) else fallback

    def _allow(self) -> bool:
        if self.state != "open":
            return True
        if time.time() - self.last_failure_time > self.recovery_timeout:
            self.state = "half_open"
            logger.info("[CB:{name}] Half-open, probing provider", name=self.name)
            return True
        return False

    def _record_failure(self, err: BaseException) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.error(
                "[CB:{name}] Open after {n} failure(s): {err}",
                name=self.name, n=self.failure_count, err=str(err) or type(err).__name__,
            )
        else:
            logger.warning(
                "[CB:{name}] Failure {n}/{t}: {err}",
                name=self.name, n=self.failure_count, t=self.failure_threshold,
                err=str(err) or type(err).__name__,
            )

    async def call(self, coro, fallback=None):
        """Await `coro` under the breaker; return `fallback` (value or callable) on failure."""
        if not self._allow():
            logger.warning("[CB:{name}] Open, using fallback", name=self.name)
            # close the unawaited coroutine to avoid RuntimeWarning
            if hasattr(coro, "close"):
                coro.close()
            return self._fallback(fallback)

        try:
            result = await asyncio.wait_for(coro, timeout=self.call_timeout)
        except Exception as e:
            self._record_failure(e)
            return self._fallback(fallback)

        if self.state == "half_open":
            logger.info("[CB:{name}] Recovered, closed", name=self.name)
        self.state = "closed"
        self.failure_count = 0
        return result


def get_breaker_states() -> dict[str, str]:
    """Current state of every registered breaker."""
    return {name: cb.state for name, cb in _breakers.items()}
