"""
Circuit Breaker Pattern Implementation

Isolates calls to unreliable dependencies (database, email provider) so a
sustained outage fails fast instead of piling up retries.
"""
import asyncio
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TypeVar, ParamSpec
from dataclasses import dataclass, field
from functools import wraps

from fulfillment.core.logging import get_logger
from fulfillment.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5          # Consecutive failures before opening
    success_threshold: int = 2          # Successes in half-open to close
    timeout_seconds: float = 30.0       # Time before trying half-open
    half_open_max_calls: int = 3        # Max probe calls in half-open state
    # שגיאות עסקיות שעוברות דרך ה-breaker בלי להיספר ככשל של התלות
    ignored_exceptions: tuple[type[BaseException], ...] = field(default_factory=tuple)


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_calls: int = 0


class CircuitBreaker:
    """
    Circuit breaker for a single named dependency.

    States:
    - CLOSED: Normal operation, counting consecutive failures
    - OPEN: Dependency is failing, every call is rejected until the timeout elapses
    - HALF_OPEN: A limited number of probe calls decide between CLOSED and OPEN
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitBreakerState()
        # threading.Lock ולא asyncio.Lock - ה-breaker משותף גם ל-event loops של Celery
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF_OPEN"""
        with self._lock:
            if self._should_attempt_reset():
                self._transition_to_sync(CircuitState.HALF_OPEN)
            return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    @property
    def success_count(self) -> int:
        return self._state.success_count

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def _should_attempt_reset(self) -> bool:
        """Check if enough time passed to try half-open"""
        if self._state.state != CircuitState.OPEN:
            return False

        time_since_failure = time.time() - self._state.last_failure_time
        return time_since_failure >= self.config.timeout_seconds

    def _transition_to_sync(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller holds the lock."""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0
            self._state.half_open_calls = 0

        if old_state != new_state:
            log = logger.warning if new_state == CircuitState.OPEN else logger.info
            log(
                f"Circuit breaker '{self.service_name}' transitioned",
                extra_data={
                    "service": self.service_name,
                    "old_state": old_state.value,
                    "new_state": new_state.value
                }
            )

    def _release_probe_slot(self) -> None:
        """Free the half-open slot taken in can_execute. Caller holds the lock."""
        if self._state.half_open_calls > 0:
            self._state.half_open_calls -= 1

    async def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._release_probe_slot()
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to_sync(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                # Only consecutive failures trip the circuit
                self._state.failure_count = 0

    async def record_ignored(self) -> None:
        """
        Record a call that ended in an ignored (business) exception.

        In CLOSED the dependency answered, so the failure run ends. In
        HALF_OPEN it proves nothing about recovery: the probe slot is freed
        without counting toward success_threshold.
        """
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._release_probe_slot()
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: Exception | None = None) -> None:
        """Record a failed call"""
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = time.time()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                # Any failure in half-open goes back to open, timeout restarts
                self._transition_to_sync(CircuitState.OPEN)
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to_sync(CircuitState.OPEN)

    async def can_execute(self) -> bool:
        """Check if a request can be executed, reserving a probe slot in half-open"""
        with self._lock:
            if self._should_attempt_reset():
                self._transition_to_sync(CircuitState.HALF_OPEN)

            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.HALF_OPEN:
                if self._state.half_open_calls < self.config.half_open_max_calls:
                    self._state.half_open_calls += 1
                    return True
                return False

            return False

    def get_retry_after(self) -> float:
        """Get seconds until circuit might close"""
        if self._state.state != CircuitState.OPEN:
            return 0.0

        time_since_failure = time.time() - self._state.last_failure_time
        remaining = self.config.timeout_seconds - time_since_failure
        return max(0.0, remaining)

    def next_attempt_time(self) -> datetime | None:
        """When an OPEN circuit will admit its first probe"""
        if self._state.state != CircuitState.OPEN:
            return None
        return datetime.fromtimestamp(
            self._state.last_failure_time + self.config.timeout_seconds,
            tz=timezone.utc,
        )

    def reset(self) -> None:
        """Force the circuit back to CLOSED (operator action)"""
        with self._lock:
            self._transition_to_sync(CircuitState.CLOSED)
            self._state.last_failure_time = 0.0

        logger.info(
            f"Circuit breaker '{self.service_name}' reset",
            extra_data={"service": self.service_name}
        )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for the operator surface"""
        state = self.state
        next_attempt = self.next_attempt_time()
        return {
            "name": self.service_name,
            "state": state.value,
            "failure_count": self._state.failure_count,
            "success_count": self._state.success_count,
            "next_attempt_time": next_attempt.isoformat() if next_attempt else None,
            "failure_threshold": self.config.failure_threshold,
            "success_threshold": self.config.success_threshold,
            "timeout_seconds": self.config.timeout_seconds,
        }

    async def execute(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute a function with circuit breaker protection.

        Args:
            func: Function to execute (sync or async)
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Result of the function

        Raises:
            CircuitBreakerOpenError: If circuit is open; ``func`` is not called
        """
        if not await self.can_execute():
            retry_after = self.get_retry_after()
            raise CircuitBreakerOpenError(self.service_name, retry_after)

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.config.ignored_exceptions:
            # The dependency answered; the caller's request was the problem
            await self.record_ignored()
            raise
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


class CircuitBreakerRegistry:
    """
    Named circuit breakers shared by one process.

    Created explicitly (see ``fulfillment.core.reliability``) and passed to the
    components that need it, so every test gets a fresh set of breakers.
    """

    def __init__(self, default_config: CircuitBreakerConfig | None = None):
        self.default_config = default_config or CircuitBreakerConfig()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """Get or create the breaker for a dependency; first config wins"""
        if name not in self._breakers:
            with self._lock:
                if name not in self._breakers:
                    self._breakers[name] = CircuitBreaker(name, config or self.default_config)
        return self._breakers[name]

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def reset(self, name: str) -> bool:
        """Reset one breaker; False when no breaker has that name"""
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> int:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
        return len(breakers)

    def snapshot(self) -> list[dict[str, Any]]:
        return [self._breakers[name].to_dict() for name in self.names()]


def circuit_breaker(
    registry: CircuitBreakerRegistry,
    service_name: str,
    config: CircuitBreakerConfig | None = None
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator to add circuit breaker protection to an async function.

    Usage:
        @circuit_breaker(reliability.breakers, "email")
        async def send(to: str, subject: str, html: str) -> dict:
            ...
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        cb = registry.get_or_create(service_name, config)

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await cb.execute(func, *args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator
