"""
Reliability features for faultguard

Implements retry policies with exponential backoff and three-state circuit
breakers that shed load from persistently failing dependencies. Both wrap
sync or async callables and suspend only through the injected clock.
"""

import asyncio
import inspect
import random
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple, Type, TypeVar, Union
)

from .clock import Clock, default_clock
from .exceptions import CircuitOpenError, ConfigurationError, ErrorKind, error_kind
from .logging import get_logger

logger = get_logger('reliability')

T = TypeVar('T')

Discriminator = Union[ErrorKind, str, Type[BaseException]]


async def invoke(operation: Callable[..., Any], *args, **kwargs) -> Any:
    """Call a sync or async operation and return its result"""
    result = operation(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


def _operation_name(operation: Callable[..., Any]) -> str:
    return getattr(operation, '__qualname__', None) or getattr(operation, '__name__', None) or repr(operation)


def matches_discriminator(error: BaseException, discriminators: Sequence[Discriminator]) -> bool:
    """Check whether ``error`` matches any kind, class name or class in the list"""
    kind = error_kind(error)
    class_names = {cls.__name__ for cls in type(error).__mro__}

    for discriminator in discriminators:
        if isinstance(discriminator, type):
            if isinstance(error, discriminator):
                return True
        elif isinstance(discriminator, ErrorKind):
            if kind == discriminator:
                return True
        elif isinstance(discriminator, str):
            if discriminator == kind.value or discriminator in class_names:
                return True
    return False


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting requests
    HALF_OPEN = "half-open"  # Single trial call probing recovery


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: Optional[float] = None
    jitter: bool = False
    retryable_errors: Tuple[Discriminator, ...] = ()
    non_retryable_errors: Tuple[Discriminator, ...] = ()

    def __post_init__(self):
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be an integer >= 1", config_key='max_attempts')
        if self.base_delay < 0:
            raise ConfigurationError("base_delay must not be negative", config_key='base_delay')
        if self.backoff_multiplier < 1:
            raise ConfigurationError("backoff_multiplier must be >= 1", config_key='backoff_multiplier')
        if self.max_delay is not None and self.max_delay < 0:
            raise ConfigurationError("max_delay must not be negative", config_key='max_delay')
        object.__setattr__(self, 'retryable_errors', tuple(self.retryable_errors or ()))
        object.__setattr__(self, 'non_retryable_errors', tuple(self.non_retryable_errors or ()))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior"""
    failure_threshold: float = 0.5
    reset_timeout: float = 60.0
    minimum_throughput: int = 10
    monitoring_period: Optional[float] = None

    def __post_init__(self):
        if not 0.0 <= self.failure_threshold <= 1.0:
            raise ConfigurationError("failure_threshold must be a ratio between 0 and 1",
                                     config_key='failure_threshold')
        if self.reset_timeout < 0:
            raise ConfigurationError("reset_timeout must not be negative", config_key='reset_timeout')
        if isinstance(self.minimum_throughput, bool) or not isinstance(self.minimum_throughput, int) \
                or self.minimum_throughput < 1:
            raise ConfigurationError("minimum_throughput must be an integer >= 1",
                                     config_key='minimum_throughput')
        if self.monitoring_period is not None and self.monitoring_period <= 0:
            raise ConfigurationError("monitoring_period must be positive", config_key='monitoring_period')


@dataclass
class RetryContext:
    """Per-attempt retry information handed to ``on_retry`` hooks"""
    attempt: int
    last_error: Optional[BaseException] = None
    delay: float = 0.0


@dataclass
class CircuitBreakerMetrics:
    """Rolling metrics of a circuit breaker"""
    state: CircuitState
    success_count: int = 0
    failure_count: int = 0
    request_count: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None

    @property
    def failure_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.failure_count / self.request_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'request_count': self.request_count,
            'failure_rate': self.failure_rate,
            'last_failure_at': self.last_failure_at,
            'opened_at': self.opened_at,
        }


class RetryPolicy:
    """Re-executes a fallible operation with bounded attempts and backoff"""

    def __init__(self, config: Optional[RetryConfig] = None, clock: Optional[Clock] = None,
                 error_manager=None, on_retry: Optional[Callable[[RetryContext], Any]] = None,
                 name: Optional[str] = None, **overrides: Any):
        config = config or RetryConfig()
        self.config = replace(config, **overrides) if overrides else config
        self.clock = clock or default_clock
        self.error_manager = error_manager
        self.on_retry = on_retry
        self.name = name

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before attempt ``attempt + 1``"""
        delay = self.config.base_delay * (self.config.backoff_multiplier ** (attempt - 1))

        if self.config.max_delay is not None:
            delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay

    def is_retryable(self, error: BaseException) -> bool:
        """Apply the retryable / non-retryable allow-lists"""
        if self.config.non_retryable_errors and matches_discriminator(error, self.config.non_retryable_errors):
            return False
        if self.config.retryable_errors:
            return matches_discriminator(error, self.config.retryable_errors)
        return True

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Determine if a failed attempt should be followed by another"""
        if attempt >= self.config.max_attempts:
            return False
        return self.is_retryable(error)

    async def execute(self, operation: Callable[..., Union[T, Awaitable[T]]], *args, **kwargs) -> T:
        """
        Execute ``operation`` with retry logic.

        The last error is re-raised unchanged once attempts are exhausted;
        non-retryable errors are re-raised immediately. Cancelling the caller
        aborts a pending backoff delay.
        """
        name = self.name or _operation_name(operation)
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await invoke(operation, *args, **kwargs)
            except Exception as e:
                last_error = e

                if not self.is_retryable(e):
                    logger.debug(f"Operation {name} failed with non-retryable error",
                                 attempt=attempt, error_type=type(e).__name__)
                    raise

                if attempt >= self.config.max_attempts:
                    break

                delay = self.calculate_delay(attempt)
                logger.warning(f"Operation {name} failed, retrying",
                               attempt=attempt,
                               max_attempts=self.config.max_attempts,
                               delay=delay,
                               exception=str(e))
                self._notify_retry(RetryContext(attempt=attempt, last_error=e, delay=delay))
                await self.clock.sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"Operation {name} succeeded after retry", attempt=attempt)
            return result

        logger.error(f"Operation {name} failed after all retries",
                     attempts=self.config.max_attempts,
                     final_exception=str(last_error))
        raise last_error

    def _notify_retry(self, context: RetryContext) -> None:
        if self.error_manager is not None:
            self.error_manager.report_exception(
                context.last_error,
                category='network',
                severity='low',
                context={
                    'attempt': context.attempt,
                    'next_delay': context.delay,
                    'retry_policy': self.name or True,
                },
            )
        if self.on_retry is not None:
            try:
                self.on_retry(context)
            except Exception as e:
                logger.error("Retry hook failed", exception=e)


@dataclass(frozen=True)
class _Admission:
    """Breaker state generation a call was admitted under"""
    generation: int
    trial: bool


class CircuitBreaker:
    """
    Three-state circuit breaker for one protected call site.

    closed: calls run and outcomes are counted; the breaker opens once
    ``request_count >= minimum_throughput`` and the failure rate reaches
    ``failure_threshold``. open: calls are rejected with ``CircuitOpenError``
    without invoking the operation until ``reset_timeout`` has elapsed.
    half-open: exactly one trial call decides between closed and open.
    """

    def __init__(self, config: Optional[CircuitBreakerConfig] = None, name: str = "default",
                 clock: Optional[Clock] = None, error_manager=None, **overrides: Any):
        config = config or CircuitBreakerConfig()
        self.config = replace(config, **overrides) if overrides else config
        self.name = name
        self.clock = clock or default_clock
        self.error_manager = error_manager

        self._state = CircuitState.CLOSED
        self._success_count = 0
        self._failure_count = 0
        self._request_count = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._last_request_at: Optional[float] = None
        self._trial_in_flight = False
        self._generation = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self.get_state()

    def get_state(self) -> CircuitState:
        with self._lock:
            return self._state

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Get current circuit breaker metrics"""
        with self._lock:
            return CircuitBreakerMetrics(
                state=self._state,
                success_count=self._success_count,
                failure_count=self._failure_count,
                request_count=self._request_count,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at,
            )

    async def execute(self, operation: Callable[..., Union[T, Awaitable[T]]], *args, **kwargs) -> T:
        """Execute ``operation`` through the circuit breaker"""
        # Raises before the first await, so rejection never suspends
        admission = self._before_call()

        try:
            result = await invoke(operation, *args, **kwargs)
        except asyncio.CancelledError:
            self._on_cancelled(admission)
            raise
        except Exception as e:
            self._on_failure(admission, e)
            raise

        self._on_success(admission)
        return result

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Execute a synchronous function through the circuit breaker"""
        admission = self._before_call()

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(admission, e)
            raise

        self._on_success(admission)
        return result

    def reset(self) -> None:
        """Force the breaker closed and clear its metrics"""
        with self._lock:
            self._close()
        logger.info(f"Circuit breaker {self.name} manually reset")

    def _before_call(self) -> _Admission:
        with self._lock:
            now = self.clock.now()

            if self._state == CircuitState.OPEN:
                elapsed = now - self._opened_at
                if elapsed >= self.config.reset_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                    self._trial_in_flight = True
                    logger.info(f"Circuit breaker {self.name} entering half-open state")
                    return _Admission(self._generation, trial=True)
                raise CircuitOpenError(
                    f"Circuit breaker {self.name} is open",
                    breaker_name=self.name,
                    retry_after=self.config.reset_timeout - elapsed,
                )

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(
                        f"Circuit breaker {self.name} is half-open with a trial in flight",
                        breaker_name=self.name,
                    )
                self._trial_in_flight = True
                return _Admission(self._generation, trial=True)

            period = self.config.monitoring_period
            if period is not None and self._last_request_at is not None \
                    and now - self._last_request_at > period:
                self._reset_window()
            self._last_request_at = now
            return _Admission(self._generation, trial=False)

    def _is_stale(self, admission: _Admission) -> bool:
        # Calls admitted before the last state change no longer drive transitions
        if admission.generation == self._generation:
            return False
        logger.debug(f"Circuit breaker {self.name} ignoring outcome of a call admitted before the last transition",
                     admitted_generation=admission.generation,
                     generation=self._generation)
        return True

    def _on_success(self, admission: _Admission) -> None:
        with self._lock:
            if self._is_stale(admission):
                return

            if admission.trial:
                self._close()
                logger.info(f"Circuit breaker {self.name} closed after successful trial")
                return

            self._success_count += 1
            self._request_count += 1
            tripped = self._trip_if_needed()

        if tripped:
            self._report_trip()

    def _on_failure(self, admission: _Admission, error: BaseException) -> None:
        with self._lock:
            if self._is_stale(admission):
                return

            now = self.clock.now()
            self._last_failure_at = now
            self._failure_count += 1
            self._request_count += 1

            if admission.trial:
                self._transition(CircuitState.OPEN)
                self._opened_at = now
                self._trial_in_flight = False
                logger.warning(f"Circuit breaker {self.name} re-opened after failed trial",
                               exception=str(error))
                return

            tripped = self._trip_if_needed()

        if tripped:
            self._report_trip()

    def _on_cancelled(self, admission: _Admission) -> None:
        with self._lock:
            # A cancelled trial is neither success nor failure; free the slot
            if admission.trial and admission.generation == self._generation:
                self._trial_in_flight = False

    def _trip_if_needed(self) -> bool:
        if self._state != CircuitState.CLOSED:
            return False
        if self._request_count < self.config.minimum_throughput:
            return False
        if self._failure_count / self._request_count < self.config.failure_threshold:
            return False

        self._transition(CircuitState.OPEN)
        self._opened_at = self.clock.now()
        logger.error(f"Circuit breaker {self.name} opened",
                     failure_count=self._failure_count,
                     request_count=self._request_count)
        return True

    def _report_trip(self) -> None:
        if self.error_manager is None:
            return
        metrics = self.get_metrics()
        self.error_manager.report_exception(
            CircuitOpenError("Circuit breaker tripped", breaker_name=self.name),
            category='state',
            severity='medium',
            context={
                'failure_count': metrics.failure_count,
                'request_count': metrics.request_count,
                'failure_rate': metrics.failure_rate,
            },
        )

    def _close(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._opened_at = None
        self._trial_in_flight = False
        self._reset_window()

    def _transition(self, state: CircuitState) -> None:
        self._state = state
        self._generation += 1

    def _reset_window(self) -> None:
        self._success_count = 0
        self._failure_count = 0
        self._request_count = 0


class ReliabilityManager:
    """Registry of named circuit breakers and retry policies"""

    def __init__(self, clock: Optional[Clock] = None, error_manager=None,
                 default_retry_config: Optional[RetryConfig] = None,
                 default_circuit_config: Optional[CircuitBreakerConfig] = None):
        self.clock = clock or default_clock
        self.error_manager = error_manager
        self.retry_policies: Dict[str, RetryPolicy] = {}
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.default_retry_config = default_retry_config or RetryConfig()
        self.default_circuit_config = default_circuit_config or CircuitBreakerConfig()
        self._lock = threading.Lock()

    def get_retry_policy(self, name: str, config: Optional[RetryConfig] = None) -> RetryPolicy:
        """Get or create retry policy"""
        with self._lock:
            if name not in self.retry_policies:
                self.retry_policies[name] = RetryPolicy(
                    config or self.default_retry_config,
                    clock=self.clock,
                    error_manager=self.error_manager,
                    name=name,
                )
            return self.retry_policies[name]

    def get_circuit_breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get or create circuit breaker"""
        with self._lock:
            if name not in self.circuit_breakers:
                self.circuit_breakers[name] = CircuitBreaker(
                    config or self.default_circuit_config,
                    name=name,
                    clock=self.clock,
                    error_manager=self.error_manager,
                )
                logger.info(f"Registered circuit breaker: {name}")
            return self.circuit_breakers[name]

    async def execute_with_reliability(self, service_name: str, func: Callable[..., Any], *args,
                                       retry_config: Optional[RetryConfig] = None,
                                       circuit_config: Optional[CircuitBreakerConfig] = None,
                                       **kwargs) -> Any:
        """Execute function with circuit breaker protection around retries"""
        retry_policy = self.get_retry_policy(f"{service_name}_retry", retry_config)
        circuit_breaker = self.get_circuit_breaker(service_name, circuit_config)
        return await circuit_breaker.execute(retry_policy.execute, func, *args, **kwargs)

    def get_system_health(self) -> Dict[str, Any]:
        """Get overall health of the registered breakers"""
        with self._lock:
            breakers = dict(self.circuit_breakers)

        circuit_states = {name: breaker.get_metrics().to_dict() for name, breaker in breakers.items()}
        open_breakers = [name for name, state in circuit_states.items()
                         if state['state'] != CircuitState.CLOSED.value]
        total = len(circuit_states)
        health_score = (total - len(open_breakers)) / total if total > 0 else 1.0

        return {
            'health_score': health_score,
            'total_breakers': total,
            'open_breakers': open_breakers,
            'circuit_breakers': circuit_states,
            'retry_policies': sorted(self.retry_policies),
        }
