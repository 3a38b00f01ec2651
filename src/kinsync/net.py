"""Per-provider pacing, retry and circuit-breaker primitives."""
from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, TypeVar

import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import ProviderDelay, SyncConfig
from .errors import classify_error, is_transient
from .models import Provider

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class ProviderRateLimiter:
    """Spaces calls by a delay drawn uniformly from ``[min_delay_ms, max_delay_ms]``.

    The first call goes through immediately; each later call waits until the
    freshly drawn interval has elapsed since the previous one.
    """

    def __init__(
        self,
        delay: ProviderDelay,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.delay = delay
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._last_call: float | None = None

    def next_delay(self) -> float:
        """Seconds to wait before the next call."""
        low, high = self.delay.min_delay_ms, self.delay.max_delay_ms
        return (low + self._rng.random() * (high - low)) / 1000.0

    async def acquire(self) -> float:
        """Wait for the next slot; returns the seconds actually slept."""
        async with self._lock:
            slept = 0.0
            if self._last_call is not None:
                interval = self.next_delay()
                remaining = interval - (time.monotonic() - self._last_call)
                if remaining > 0:
                    await self._sleep(remaining)
                    slept = remaining
            self._last_call = time.monotonic()
            return slept


class ConsecutiveFailureBreaker:
    """Opens after ``max_failures`` failures in a row; any success closes it."""

    def __init__(self, max_failures: int = 3) -> None:
        self.max_failures = max_failures
        self.consecutive_failures = 0

    @property
    def is_open(self) -> bool:
        return self.consecutive_failures >= self.max_failures

    def allow_call(self) -> bool:
        return not self.is_open

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self) -> bool:
        """Count a failure; returns True when this one opened the breaker."""
        self.consecutive_failures += 1
        return self.consecutive_failures == self.max_failures

    def reset(self) -> None:
        self.consecutive_failures = 0


@dataclass
class RetryPolicy:
    """Bounded exponential-backoff retry for transient provider errors.

    Raw exceptions are mapped through :func:`classify_error`, so callers only
    ever see the kinsync taxonomy for recognised transport failures.
    """

    attempts: int = 3
    initial_wait: float = 1.0
    max_wait: float = 10.0
    jitter: float = 1.0
    sleep: Sleep = asyncio.sleep

    @classmethod
    def from_config(cls, config: SyncConfig, **overrides: Any) -> RetryPolicy:
        values: dict[str, Any] = {
            "attempts": config.retry_attempts,
            "initial_wait": config.retry_initial_wait,
            "max_wait": config.retry_max_wait,
        }
        values.update(overrides)
        return cls(**values)

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        @retry(
            reraise=True,
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait) + wait_random(0, self.jitter),
            retry=retry_if_exception(is_transient),
            before_sleep=_log_retry,
            sleep=self.sleep,
        )
        async def _do() -> T:
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                classified = classify_error(exc)
                if classified is exc:
                    raise
                raise classified from exc

        return await _do()


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "net.retry",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


class ProviderGuards:
    """Per-provider rate limiters and breakers built from one config."""

    def __init__(self, config: SyncConfig, *, sleep: Sleep = asyncio.sleep) -> None:
        self.config = config
        self._sleep = sleep
        self._limiters: Dict[Provider, ProviderRateLimiter] = {}
        self._breakers: Dict[Provider, ConsecutiveFailureBreaker] = {}

    def limiter(self, provider: Provider | str) -> ProviderRateLimiter:
        provider = Provider(provider)
        if provider not in self._limiters:
            self._limiters[provider] = ProviderRateLimiter(
                self.config.delay_for(provider), sleep=self._sleep
            )
        return self._limiters[provider]

    def breaker(self, provider: Provider | str) -> ConsecutiveFailureBreaker:
        provider = Provider(provider)
        if provider not in self._breakers:
            self._breakers[provider] = ConsecutiveFailureBreaker(self.config.max_consecutive_failures)
        return self._breakers[provider]

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.config, sleep=self._sleep)

    def report_status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of breaker state and delay windows for debugging."""
        out: dict[str, dict[str, Any]] = {}
        for provider, breaker in self._breakers.items():
            out.setdefault(provider.value, {})["consecutive_failures"] = breaker.consecutive_failures
            out[provider.value]["circuit_open"] = breaker.is_open
        for provider, limiter in self._limiters.items():
            out.setdefault(provider.value, {})["delay_ms"] = {
                "min": limiter.delay.min_delay_ms,
                "max": limiter.delay.max_delay_ms,
            }
        return out
