"""
Error boundaries

An ``ErrorBoundary`` contains failures raised while rendering (or inside a
``guard()`` scope), records them, runs configured recovery strategies and
renders a fallback while failed. Nested boundaries each handle only their
own scope.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .error_handling import ErrorClassifier
from .exceptions import ComponentError
from .logging import get_logger
from .models import ErrorCategory, ErrorRecord, ErrorSeverity

logger = get_logger('boundary')


class RecoveryStrategy(str, Enum):
    """What a boundary does after catching a failure"""
    RETRY = "retry"        # Leave the failed state and re-render
    FALLBACK = "fallback"  # Stay failed and render the fallback
    RELOAD = "reload"      # Reset without counting a retry
    IGNORE = "ignore"      # Drop the error
    ESCALATE = "escalate"  # Re-raise to the enclosing scope unless isolated


@dataclass
class RecoveryConfig:
    strategy: Union[RecoveryStrategy, str]
    max_retries: int = 3
    on_recovery: Optional[Callable[[ErrorRecord], Any]] = None
    condition: Optional[Callable[[ErrorRecord], bool]] = None

    def __post_init__(self):
        self.strategy = RecoveryStrategy(self.strategy)


@dataclass
class ErrorInfo:
    boundary_id: str
    retry_attempts: int = 0
    component_stack: List[str] = field(default_factory=list)


@dataclass
class BoundaryState:
    error_info: ErrorInfo
    has_error: bool = False
    error: Optional[ErrorRecord] = None


@dataclass(frozen=True)
class FailurePlaceholder:
    """Default output of a failed boundary without a fallback"""
    message: str
    retry_attempts: int
    boundary_id: str
    retry: Callable[[], None] = field(compare=False, repr=False)

    @property
    def retry_label(self) -> str:
        return f"Retry ({self.retry_attempts} attempts)"

    def render(self) -> str:
        return f"Something went wrong: {self.message}\n[{self.retry_label}]"


class ErrorBoundary:
    """
    Failure-containment scope around a render callable.

    Args:
        render: Zero-argument callable producing the normal output
        fallback: Static node, object with ``render()``, or a callable
            ``(error, retry)`` producing the output while failed
        on_error: Called with ``(error, error_info)`` for every caught failure;
            an exception raised here propagates to the caller
        recovery: Recovery configs tried in order until one succeeds
        error_manager: Optional manager receiving every caught record
        isolate: When False, the ``escalate`` strategy re-raises the cause
    """

    def __init__(self, render: Optional[Callable[[], Any]] = None, fallback: Any = None,
                 on_error: Optional[Callable[[ErrorRecord, ErrorInfo], Any]] = None,
                 recovery: Optional[Iterable[RecoveryConfig]] = None, error_manager=None,
                 classifier: Optional[ErrorClassifier] = None, boundary_id: Optional[str] = None,
                 isolate: bool = True, component_name: str = "ErrorBoundary"):
        self._render = render
        self.fallback = fallback
        self.on_error = on_error
        self.recovery = list(recovery or [])
        self.error_manager = error_manager
        self.classifier = classifier or ErrorClassifier()
        self.boundary_id = boundary_id or f"boundary_{uuid.uuid4().hex[:8]}"
        self.isolate = isolate
        self.component_name = component_name
        self._state = BoundaryState(error_info=ErrorInfo(boundary_id=self.boundary_id))

    @property
    def has_error(self) -> bool:
        return self._state.has_error

    @property
    def error(self) -> Optional[ErrorRecord]:
        return self._state.error

    def get_state(self) -> BoundaryState:
        info = replace(self._state.error_info,
                       component_stack=list(self._state.error_info.component_stack))
        return BoundaryState(error_info=info, has_error=self._state.has_error, error=self._state.error)

    def render(self) -> Any:
        """Render normally, or the fallback while failed"""
        while not self._state.has_error:
            if self._render is None:
                return None
            try:
                return self._render()
            except Exception as e:
                strategy = self.catch(e, {'phase': 'render'})
                if strategy != RecoveryStrategy.RETRY:
                    break
        if not self._state.has_error:
            return None
        return self._render_fallback()

    def catch(self, failure: Any, context_info: Optional[Dict[str, Any]] = None) -> Optional[RecoveryStrategy]:
        """
        Record ``failure`` in this boundary and run recovery.

        Returns the strategy that recovered, if any.
        """
        context_info = dict(context_info or {})
        record = self.classifier.classify(failure, {
            'category': ErrorCategory.COMPONENT,
            'severity': ErrorSeverity.HIGH,
            'component_id': self.boundary_id,
            'component_name': self.component_name,
            'phase': context_info.pop('phase', 'render'),
            'context': context_info,
        })

        info = self._state.error_info
        info.component_stack = list(context_info.get('component_stack') or [])
        self._state = BoundaryState(error_info=info, has_error=True, error=record)

        logger.warning(f"Boundary {self.boundary_id} caught error",
                       error_message=record.message,
                       retry_attempts=info.retry_attempts)

        if self.on_error is not None:
            self.on_error(record, info)

        if self.error_manager is not None:
            self.error_manager.report(record)

        return self._attempt_recovery(record)

    def retry(self) -> None:
        """Clear the failure and count a retry attempt"""
        if not self._state.has_error:
            return
        self._state.error_info.retry_attempts += 1
        self._clear()

    def reset(self) -> None:
        """Clear the failure without counting a retry"""
        self._clear()

    @contextmanager
    def guard(self, **context_info: Any):
        """Contain failures raised inside the ``with`` block in this boundary"""
        try:
            yield self
        except Exception as e:
            self.catch(e, context_info or None)

    def _clear(self) -> None:
        info = self._state.error_info
        info.component_stack = []
        self._state = BoundaryState(error_info=info)

    def _attempt_recovery(self, record: ErrorRecord) -> Optional[RecoveryStrategy]:
        for config in self.recovery:
            if config.condition is not None:
                try:
                    if not config.condition(record):
                        continue
                except Exception as e:
                    logger.error("Recovery condition failed", exception=e)
                    continue

            if not self._strategy_applies(config):
                continue

            if config.on_recovery is not None and config.on_recovery(record) is False:
                continue

            self._apply_strategy(config, record)
            record.annotate('recovery_strategy', config.strategy.value)
            if self.error_manager is not None and config.strategy != RecoveryStrategy.FALLBACK:
                self.error_manager.mark_recovered(record.id)
            return config.strategy
        return None

    def _strategy_applies(self, config: RecoveryConfig) -> bool:
        strategy = config.strategy
        if strategy == RecoveryStrategy.RETRY:
            if self._state.error_info.retry_attempts >= config.max_retries:
                logger.warning(f"Max retry attempts ({config.max_retries}) reached for boundary {self.boundary_id}")
                return False
            return True
        if strategy == RecoveryStrategy.ESCALATE:
            return not self.isolate
        return strategy in (RecoveryStrategy.FALLBACK, RecoveryStrategy.RELOAD, RecoveryStrategy.IGNORE)

    def _apply_strategy(self, config: RecoveryConfig, record: ErrorRecord) -> None:
        # Boundary state only changes once the strategy has been accepted
        strategy = config.strategy

        if strategy == RecoveryStrategy.RETRY:
            self.retry()
        elif strategy in (RecoveryStrategy.RELOAD, RecoveryStrategy.IGNORE):
            self.reset()
        elif strategy == RecoveryStrategy.ESCALATE:
            cause = record.cause
            if isinstance(cause, BaseException):
                raise cause
            raise ComponentError(record.message, component_id=self.boundary_id)

    def _render_fallback(self) -> Any:
        fallback = self.fallback
        error = self._state.error

        if fallback is None:
            return FailurePlaceholder(
                message=error.message if error else "Unknown error",
                retry_attempts=self._state.error_info.retry_attempts,
                boundary_id=self.boundary_id,
                retry=self.retry,
            )

        if hasattr(fallback, 'render'):
            return fallback.render()

        if callable(fallback):
            result = fallback(error, self.retry)
            return result.render() if hasattr(result, 'render') else result

        return fallback


def create_error_boundary(render: Optional[Callable[[], Any]] = None, **options: Any) -> ErrorBoundary:
    """Create an ``ErrorBoundary`` around ``render``"""
    return ErrorBoundary(render, **options)
