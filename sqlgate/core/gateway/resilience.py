import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlgate.core.config import Settings
from sqlgate.core.exceptions import CircuitOpenException

# -----------------------------------------------------------------------------
# RESILIENCE MODULE - Retry backoff and circuit breaker
# Purpose: Bounded exponential backoff for transient failures and a shared
# breaker that stops hammering a failing database
# Why: The breaker counter is the only state shared between invocations
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for transient database failures."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_ms: int = 1000

    @staticmethod
    def from_settings(config: Settings) -> "RetryPolicy":
        return RetryPolicy(
            max_retries=config.MAX_RETRY_ATTEMPTS,
            base_delay_ms=config.RETRY_BASE_DELAY_MS,
            max_delay_ms=config.RETRY_MAX_DELAY_MS,
        )

    def should_retry(self, retry_count: int) -> bool:
        """Return whether another retry is permitted after `retry_count` retries."""
        return retry_count < self.max_retries

    def compute_delay(self, retry_number: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """
        Delay in seconds before retry number `retry_number` (1-based).

        base * 2^(n-1), capped at max_delay_ms, plus up to jitter_ms of noise.
        """
        if retry_number < 1:
            raise ValueError("retry_number must be >= 1")
        delay_ms = min(self.base_delay_ms * (2 ** (retry_number - 1)), self.max_delay_ms)
        if self.jitter_ms:
            delay_ms += rng(0, self.jitter_ms)
        return delay_ms / 1000.0


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    recovery_seconds: float = 30
    half_open_max_calls: int = 1

    @staticmethod
    def from_settings(config: Settings) -> "BreakerConfig":
        return BreakerConfig(
            failure_threshold=config.CIRCUIT_BREAKER_THRESHOLD,
            recovery_seconds=config.CIRCUIT_BREAKER_COOLDOWN_SECONDS,
        )


class CircuitBreaker:
    """Count-based circuit breaker with half-open probing."""

    __slots__ = (
        "_cfg",
        "_state",
        "_failure_count",
        "_opened_at",
        "_half_open_calls",
        "_lock",
        "_clock",
    )

    def __init__(
        self,
        config: Optional[BreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cfg = config or BreakerConfig()
        self._state: str = "closed"
        self._failure_count: int = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls: int = 0
        self._lock = threading.Lock()
        self._clock = clock

    # ---------------------- public API ----------------------

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    def allow_call(self) -> bool:
        """Decide if a call is permitted now."""
        with self._lock:
            now = self._clock()
            if self._state == "open":
                opened_at = self._opened_at if self._opened_at is not None else now
                if now - opened_at >= float(self._cfg.recovery_seconds):
                    self._state = "half_open"
                    self._half_open_calls = 0
                    logger.info("Circuit breaker half-open, probing database")
                else:
                    return False

            if self._state == "half_open":
                if self._half_open_calls < max(1, self._cfg.half_open_max_calls):
                    self._half_open_calls += 1
                    return True
                return False

            return True

    def retry_after(self) -> float:
        """Seconds left in the cool-down window, 0 when not open."""
        with self._lock:
            if self._state != "open" or self._opened_at is None:
                return 0.0
            return max(0.0, float(self._cfg.recovery_seconds) - (self._clock() - self._opened_at))

    def guard(self, operation: str) -> None:
        """
        Raise CircuitOpenException instead of letting the call through.
        """
        if not self.allow_call():
            raise CircuitOpenException(
                f"Circuit breaker is open, {operation} short-circuited",
                retry_after_seconds=self.retry_after(),
                operation=operation,
            )

    def release_trial(self) -> None:
        """Hand back a half-open slot when the trial call ended without a verdict."""
        with self._lock:
            if self._state == "half_open" and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == "half_open":
                self._state = "closed"
                self._half_open_calls = 0
                self._opened_at = None
                logger.info("Circuit breaker closed")
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == "half_open":
                # immediate reopen
                self._state = "open"
                self._opened_at = now
                self._failure_count = 0
                self._half_open_calls = 0
                logger.warning("Circuit breaker re-opened after failed trial call")
                return

            if self._state == "closed":
                self._failure_count += 1
                if self._failure_count >= max(1, self._cfg.failure_threshold):
                    self._state = "open"
                    self._opened_at = now
                    self._half_open_calls = 0
                    self._failure_count = 0
                    logger.error(
                        f"Circuit breaker opened for {self._cfg.recovery_seconds}s "
                        f"after {self._cfg.failure_threshold} consecutive failures"
                    )

    def describe(self) -> str:
        with self._lock:
            return (
                f"state={self._state} failures={self._failure_count} "
                f"opened_at={self._opened_at} half_open_calls={self._half_open_calls}"
            )
