"""
Recovery composition

Combines circuit breaker, retry policy and fallback around one callable.
The breaker wraps the retry loop, which wraps the operation, so a breaker
counts one outcome per logical call rather than one per attempt.
"""

import asyncio
import functools
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .clock import Clock, default_clock
from .error_handling import ErrorClassifier
from .exceptions import ConfigurationError, ErrorKind, OperationTimeoutError
from .logging import get_logger
from .models import ErrorRecord
from .reliability import (
    CircuitBreaker, CircuitBreakerConfig, RetryConfig, RetryPolicy, invoke
)

logger = get_logger('recovery')


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass
class FallbackConfig:
    """Fallback value or factory, optionally cached per key"""
    value: Any = MISSING
    factory: Optional[Callable[[], Any]] = None
    cache: bool = False
    cache_key: Optional[str] = None
    cache_timeout: Optional[float] = None


@dataclass(frozen=True)
class RecoveryPreset:
    retry: Optional[RetryConfig] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = None


RECOVERY_PRESETS: Dict[str, RecoveryPreset] = {
    'network': RecoveryPreset(
        retry=RetryConfig(
            max_attempts=3,
            base_delay=1.0,
            backoff_multiplier=2.0,
            jitter=True,
            retryable_errors=(ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVICE_UNAVAILABLE),
        ),
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=0.5,
            reset_timeout=60.0,
            minimum_throughput=5,
            monitoring_period=300.0,
        ),
    ),
    'component': RecoveryPreset(
        retry=RetryConfig(
            max_attempts=2,
            base_delay=0.1,
            backoff_multiplier=1.5,
            retryable_errors=(ErrorKind.RENDER, ErrorKind.COMPONENT),
        ),
    ),
    'reactive': RecoveryPreset(
        retry=RetryConfig(max_attempts=1, base_delay=0.0),
    ),
}


class FallbackManager:
    """Resolves fallback values and caches them per key"""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or default_clock
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    async def resolve(self, config: FallbackConfig, key: Optional[str] = None) -> Any:
        """Return the fallback value, from cache when still fresh"""
        key = config.cache_key or key
        use_cache = config.cache and key is not None

        if use_cache:
            cached = self._cached(key, config.cache_timeout)
            if cached is not MISSING:
                logger.debug(f"Using cached fallback for {key}")
                return cached

        if config.factory is not None:
            value = await invoke(config.factory)
        elif config.value is not MISSING:
            value = config.value
        else:
            raise ConfigurationError("Fallback needs a value or a factory", config_key='fallback')

        if use_cache:
            with self._lock:
                self._cache[key] = (value, self.clock.now())
        return value

    async def execute(self, operation: Callable[..., Any], config: FallbackConfig, *args, **kwargs) -> Any:
        """Run ``operation``; on failure return the fallback instead"""
        try:
            return await invoke(operation, *args, **kwargs)
        except Exception as e:
            logger.warning("Operation failed, using fallback", exception=str(e))
            return await self.resolve(config)

    def clear_cache(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)

    def _cached(self, key: str, timeout: Optional[float]) -> Any:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return MISSING
            value, stored_at = entry
            if timeout is not None and self.clock.now() - stored_at >= timeout:
                del self._cache[key]
                return MISSING
            return value


@dataclass
class RecoveryMetrics:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    fallbacks: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'calls': self.calls,
            'successes': self.successes,
            'failures': self.failures,
            'fallbacks': self.fallbacks,
        }


def _as_retry_policy(policy: Any, clock: Clock, error_manager) -> Optional[RetryPolicy]:
    if policy is None or isinstance(policy, RetryPolicy):
        return policy
    if isinstance(policy, RetryConfig):
        return RetryPolicy(policy, clock=clock, error_manager=error_manager)
    if isinstance(policy, dict):
        return RetryPolicy(RetryConfig(**policy), clock=clock, error_manager=error_manager)
    raise ConfigurationError(f"Unsupported retry policy: {policy!r}", config_key='retry_policy')


def _as_circuit_breaker(breaker: Any, clock: Clock, error_manager, name: str) -> Optional[CircuitBreaker]:
    if breaker is None or isinstance(breaker, CircuitBreaker):
        return breaker
    if isinstance(breaker, CircuitBreakerConfig):
        return CircuitBreaker(breaker, name=name, clock=clock, error_manager=error_manager)
    if isinstance(breaker, dict):
        return CircuitBreaker(CircuitBreakerConfig(**breaker), name=name, clock=clock, error_manager=error_manager)
    raise ConfigurationError(f"Unsupported circuit breaker: {breaker!r}", config_key='circuit_breaker')


def _as_fallback_config(fallback: Any) -> Optional[FallbackConfig]:
    if fallback is MISSING:
        return None
    if isinstance(fallback, FallbackConfig):
        return fallback
    # Callables are treated as factories and invoked without arguments
    if callable(fallback):
        return FallbackConfig(factory=fallback)
    return FallbackConfig(value=fallback)


class RecoveryOrchestrator:
    """Runs an operation through breaker, retry and fallback in that order"""

    def __init__(self, retry_policy: Any = None, circuit_breaker: Any = None, fallback: Any = MISSING,
                 on_error: Optional[Callable[[ErrorRecord], Any]] = None, name: str = "operation",
                 clock: Optional[Clock] = None, error_manager=None,
                 classifier: Optional[ErrorClassifier] = None,
                 fallback_manager: Optional[FallbackManager] = None):
        self.name = name
        self.clock = clock or default_clock
        self.error_manager = error_manager
        self.classifier = classifier or ErrorClassifier(clock=self.clock)
        self.retry_policy = _as_retry_policy(retry_policy, self.clock, error_manager)
        self.circuit_breaker = _as_circuit_breaker(circuit_breaker, self.clock, error_manager, name)
        self.fallback = _as_fallback_config(fallback)
        self.fallback_manager = fallback_manager or FallbackManager(self.clock)
        self.on_error = on_error
        self.metrics = RecoveryMetrics()

    async def execute(self, operation: Callable[..., Any], *args, **kwargs) -> Any:
        self.metrics.calls += 1
        try:
            result = await self._run(operation, args, kwargs)
        except Exception as e:
            self.metrics.failures += 1
            self._handle_failure(e)
            if self.fallback is None:
                raise
            self.metrics.fallbacks += 1
            logger.info(f"Operation {self.name} failed, returning fallback",
                        error_type=type(e).__name__)
            return await self.fallback_manager.resolve(self.fallback, key=self.name)

        self.metrics.successes += 1
        return result

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.metrics.to_dict()
        if self.circuit_breaker is not None:
            metrics['circuit_breaker'] = self.circuit_breaker.get_metrics().to_dict()
        return metrics

    async def _run(self, operation: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        async def attempt() -> Any:
            if self.retry_policy is not None:
                return await self.retry_policy.execute(operation, *args, **kwargs)
            return await invoke(operation, *args, **kwargs)

        if self.circuit_breaker is not None:
            return await self.circuit_breaker.execute(attempt)
        return await attempt()

    def _handle_failure(self, error: BaseException) -> None:
        record = self.classifier.classify(error, {'context': {'operation': self.name}})

        if self.error_manager is not None:
            self.error_manager.report(record)

        if self.on_error is not None:
            try:
                self.on_error(record)
            except Exception as e:
                logger.error("Error hook failed", exception=e)


def create_robust_function(fn: Callable[..., Any], retry_policy: Any = None, circuit_breaker: Any = None,
                           fallback: Any = MISSING, on_error: Optional[Callable[[ErrorRecord], Any]] = None,
                           preset: Optional[str] = None, name: Optional[str] = None,
                           clock: Optional[Clock] = None, error_manager=None,
                           classifier: Optional[ErrorClassifier] = None) -> Callable[..., Any]:
    """
    Wrap ``fn`` in an async callable protected by the given policies.

    The wrapper keeps ``fn``'s parameters and metadata but is always a
    coroutine function, also for a synchronous ``fn``: retry delays and
    fallback factories may suspend, so callers must ``await`` the result.

    Policies may be instances or configs. ``preset`` names an entry of
    ``RECOVERY_PRESETS`` whose configs fill in any policy not given.
    """
    if preset is not None:
        if preset not in RECOVERY_PRESETS:
            raise ConfigurationError(f"Unknown recovery preset: {preset}", config_key='preset')
        defaults = RECOVERY_PRESETS[preset]
        retry_policy = retry_policy if retry_policy is not None else defaults.retry
        circuit_breaker = circuit_breaker if circuit_breaker is not None else defaults.circuit_breaker

    orchestrator = RecoveryOrchestrator(
        retry_policy=retry_policy,
        circuit_breaker=circuit_breaker,
        fallback=fallback,
        on_error=on_error,
        name=name or getattr(fn, '__name__', 'operation'),
        clock=clock,
        error_manager=error_manager,
        classifier=classifier,
    )

    @functools.wraps(fn)
    async def robust(*args, **kwargs):
        return await orchestrator.execute(fn, *args, **kwargs)

    robust.orchestrator = orchestrator
    return robust


def with_retry(fn: Callable[..., Any], retry_policy: Union[RetryPolicy, RetryConfig, None] = None,
               **options: Any) -> Callable[..., Any]:
    """Protect ``fn`` with a retry policy only"""
    return create_robust_function(fn, retry_policy=retry_policy or RetryConfig(), **options)


def with_circuit_breaker(fn: Callable[..., Any],
                         circuit_breaker: Union[CircuitBreaker, CircuitBreakerConfig, None] = None,
                         **options: Any) -> Callable[..., Any]:
    """Protect ``fn`` with a circuit breaker only"""
    return create_robust_function(fn, circuit_breaker=circuit_breaker or CircuitBreakerConfig(), **options)


def with_fallback(fn: Callable[..., Any], fallback: Any, **options: Any) -> Callable[..., Any]:
    """Return ``fallback`` whenever ``fn`` fails"""
    return create_robust_function(fn, fallback=fallback, **options)


def with_timeout(fn: Callable[..., Any], seconds: float, fallback: Any = MISSING,
                 **options: Any) -> Callable[..., Any]:
    """
    Abandon ``fn`` after ``seconds`` with ``OperationTimeoutError``.

    The timeout is enforced by the event loop, not the injected clock.
    """
    name = getattr(fn, '__name__', 'operation')

    @functools.wraps(fn)
    async def timed(*args, **kwargs):
        try:
            return await asyncio.wait_for(invoke(fn, *args, **kwargs), timeout=seconds)
        except asyncio.TimeoutError:
            raise OperationTimeoutError(f"Operation {name} timed out after {seconds}s", timeout=seconds) from None

    if fallback is MISSING and not options:
        return timed
    return create_robust_function(timed, fallback=fallback, name=name, **options)
