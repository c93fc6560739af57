"""Circuit breaker for outbound calls to external endpoints."""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TypeVar
from urllib.parse import urlparse

from booster_beacon.config import settings
from booster_beacon.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_ms() -> float:
    return time.time() * 1000


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Breaker thresholds. Times are in milliseconds."""

    failure_threshold: int
    recovery_timeout_ms: int
    monitoring_period_ms: int
    success_threshold: int = 3

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.recovery_timeout_ms < 0:
            raise ValueError("recovery_timeout_ms must be >= 0")

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout_ms=settings.breaker_recovery_timeout_ms,
            monitoring_period_ms=settings.breaker_monitoring_period_ms,
            success_threshold=settings.breaker_success_threshold,
        )


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "state": self.state.value,
            "failureCount": data["failure_count"],
            "successCount": data["success_count"],
            "lastFailureTime": data["last_failure_time"],
        }


class CircuitBreaker:
    """Guards one external dependency.

    CLOSED runs every call and opens after ``failure_threshold`` consecutive
    failures. OPEN rejects with ``CircuitOpenError`` until
    ``recovery_timeout_ms`` has passed since the last failure, then lets the
    next call through as HALF_OPEN. HALF_OPEN closes after
    ``success_threshold`` successes and reopens on the first failure.

    State is only touched before and after the awaited operation, never
    across it, so the breaker is safe on a single event loop without a lock.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        name: str = "default",
        clock: Callable[[], float] = _now_ms,
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        """Force CLOSED with all counters cleared."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float = 0

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: the breaker is open; ``operation`` was not called.
        """
        if self._state == CircuitState.OPEN:
            if self._clock() - self._last_failure_time >= self.config.recovery_timeout_ms:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN")
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            else:
                raise CircuitOpenError()

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                logger.info(f"Circuit breaker '{self.name}' CLOSED after recovery")
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._success_count = 0
        else:
            self._failure_count = 0

    def _on_failure(self) -> None:
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            logger.warning(f"Circuit breaker '{self.name}' re-opened during trial")
            self._state = CircuitState.OPEN
            self._failure_count = 0
            self._success_count = 0
            return

        self._failure_count += 1
        if self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
            logger.warning(
                f"Circuit breaker '{self.name}' OPEN after {self._failure_count} failures"
            )
            self._state = CircuitState.OPEN

    def get_state(self) -> CircuitState:
        return self._state

    def get_metrics(self) -> CircuitBreakerMetrics:
        return CircuitBreakerMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
        )


class CircuitBreakerRegistry:
    """One breaker per external host, created on first use."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = _now_ms,
    ):
        self._config = config
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @staticmethod
    def key_for(url: str) -> str:
        host = urlparse(url).hostname
        return (host or url).lower()

    def for_endpoint(self, url: str) -> CircuitBreaker:
        key = self.key_for(url)
        breaker = self._breakers.get(key)
        if breaker is None:
            config = self._config or CircuitBreakerConfig.from_settings()
            breaker = CircuitBreaker(config, name=key, clock=self._clock)
            self._breakers[key] = breaker
        return breaker

    def all_metrics(self) -> dict[str, dict]:
        return {key: b.get_metrics().to_dict() for key, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


# Global instances
breaker_registry = CircuitBreakerRegistry()
