"""
Error classification and the session error manager

The classifier normalizes arbitrary failures into ``ErrorRecord`` objects.
The manager is the process-wide sink for classified errors: it throttles
duplicate reports, caps the session buffer, notifies subscribers and answers
category/severity queries. Create one manager at startup and pass it to the
components that report into it.
"""

import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from .clock import Clock, default_clock
from .exceptions import ErrorKind, FaultError, error_kind
from .logging import get_logger
from .models import (
    ClassificationHints, ErrorCategory, ErrorRecord, ErrorSeverity
)

DEFAULT_MAX_ERRORS_PER_SESSION = 100
DEFAULT_REPORTING_THROTTLE_MS = 1000
RECENT_ERROR_WINDOW = 300.0

ErrorHandler = Callable[[ErrorRecord], Any]


_KIND_CATEGORIES = {
    ErrorKind.NETWORK: ErrorCategory.NETWORK,
    ErrorKind.TIMEOUT: ErrorCategory.NETWORK,
    ErrorKind.SERVICE_UNAVAILABLE: ErrorCategory.NETWORK,
    ErrorKind.VALIDATION: ErrorCategory.VALIDATION,
    ErrorKind.COMPONENT: ErrorCategory.COMPONENT,
    ErrorKind.RENDER: ErrorCategory.RENDER,
    ErrorKind.STATE: ErrorCategory.STATE,
}


class ErrorClassifier:
    """
    Classifies failures into structured error records.

    ``classify`` never raises: malformed input still yields a valid record
    with the message stringified and the cause preserved as-is.
    """

    def __init__(self, clock: Optional[Clock] = None, capture_stack: bool = True):
        self.clock = clock or default_clock
        self.capture_stack = capture_stack
        self.logger = get_logger('error_classifier')

    def classify(self, failure: Any, hints: Optional[Union[ClassificationHints, Dict[str, Any]]] = None) -> ErrorRecord:
        """
        Classify a failure and attach attribution.

        Args:
            failure: The raised exception or any other failure payload
            hints: Optional overrides for category, severity, attribution,
                phase and context

        Returns:
            A new ErrorRecord (or ``failure`` itself when it already is one)
        """
        if isinstance(failure, ErrorRecord):
            return failure

        try:
            return self._build_record(failure, ClassificationHints.from_value(hints))
        except Exception as e:
            self.logger.warning("Classification failed, using minimal record",
                                error=_stringify(e))
            return ErrorRecord(
                message=_stringify(failure),
                cause=failure,
                timestamp=self._safe_now(),
            )

    def _build_record(self, failure: Any, hints: ClassificationHints) -> ErrorRecord:
        kind = error_kind(failure)

        if hints.category is not None:
            category = ErrorCategory.coerce(hints.category)
        elif isinstance(failure, FaultError):
            category = _KIND_CATEGORIES.get(kind, ErrorCategory.UNKNOWN)
        else:
            category = ErrorCategory.UNKNOWN

        severity = ErrorSeverity.coerce(hints.severity) if hints.severity is not None else ErrorSeverity.MEDIUM

        context: Dict[str, Any] = {}
        if isinstance(failure, FaultError):
            context.update(failure.context)
        if hints.context:
            context.update(hints.context)

        return ErrorRecord(
            message=_failure_message(failure),
            category=category,
            severity=severity,
            cause=failure,
            component_id=hints.component_id,
            component_name=hints.component_name,
            timestamp=self.clock.now(),
            kind=kind,
            phase=hints.phase,
            context=context,
            stack=self._format_stack(failure),
        )

    def _format_stack(self, failure: Any) -> Optional[str]:
        if not self.capture_stack or not isinstance(failure, BaseException):
            return None
        if failure.__traceback__ is None:
            return None
        return ''.join(traceback.format_exception(
            type(failure), failure, failure.__traceback__
        ))

    def _safe_now(self) -> float:
        try:
            return self.clock.now()
        except Exception:
            return 0.0


def _stringify(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return "<unprintable failure>"


def _failure_message(failure: Any) -> str:
    if failure is None:
        return "Unknown error"
    if isinstance(failure, BaseException):
        message = getattr(failure, 'message', None)
        if not isinstance(message, str):
            message = _stringify(failure)
        return message or type(failure).__name__
    return _stringify(failure)


def _clamp_int(value: Any, default: int, minimum: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if number >= minimum else default


class ManagerConfig(BaseModel):
    """Process-wide error manager configuration; invalid values fall back to defaults"""

    model_config = ConfigDict(extra='ignore')

    enabled: bool = True
    max_errors_per_session: int = DEFAULT_MAX_ERRORS_PER_SESSION
    reporting_throttle_ms: int = DEFAULT_REPORTING_THROTTLE_MS
    max_error_age: Optional[float] = None
    throttle_by_category: bool = False

    @field_validator('enabled', 'throttle_by_category', mode='before')
    @classmethod
    def coerce_flag(cls, value: Any, info: ValidationInfo) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('1', 'true', 'yes', 'on'):
            return True
        if text in ('0', 'false', 'no', 'off'):
            return False
        return cls.model_fields[info.field_name].default

    @field_validator('max_errors_per_session', mode='before')
    @classmethod
    def clamp_max_errors(cls, value: Any) -> int:
        return _clamp_int(value, DEFAULT_MAX_ERRORS_PER_SESSION, minimum=1)

    @field_validator('reporting_throttle_ms', mode='before')
    @classmethod
    def clamp_throttle(cls, value: Any) -> int:
        return _clamp_int(value, DEFAULT_REPORTING_THROTTLE_MS, minimum=0)

    @field_validator('max_error_age', mode='before')
    @classmethod
    def clamp_max_age(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            age = float(value)
        except (TypeError, ValueError):
            return None
        return age if age > 0 else None


@dataclass
class ErrorStatistics:
    """Snapshot of the session buffer"""
    total_errors: int = 0
    errors_by_category: Dict[str, int] = field(default_factory=dict)
    errors_by_severity: Dict[str, int] = field(default_factory=dict)
    recovered_errors: int = 0
    recent_errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_errors': self.total_errors,
            'errors_by_category': dict(self.errors_by_category),
            'errors_by_severity': dict(self.errors_by_severity),
            'recovered_errors': self.recovered_errors,
            'recent_errors': self.recent_errors,
        }


class ErrorManager:
    """
    Session sink for classified errors.

    Owns the ring buffer of ``ErrorRecord`` objects and the subscriber list.
    All mutations are serialized; subscribers are notified after the record
    is in the buffer, synchronously and in subscription order.
    """

    def __init__(self, config: Optional[Union[ManagerConfig, Dict[str, Any]]] = None,
                 clock: Optional[Clock] = None,
                 classifier: Optional[ErrorClassifier] = None):
        self.clock = clock or default_clock
        self.classifier = classifier or ErrorClassifier(clock=self.clock)
        self.logger = get_logger('error_manager')
        self._config = _coerce_config(config)
        self._errors: Deque[ErrorRecord] = deque()
        self._throttle: Dict[str, float] = {}
        self._subscribers: List[ErrorHandler] = []
        self._lock = threading.RLock()

    @property
    def config(self) -> ManagerConfig:
        return self._config

    def configure(self, config: Optional[Union[ManagerConfig, Dict[str, Any]]] = None, **overrides: Any) -> ManagerConfig:
        """Merge a partial configuration into the current one"""
        with self._lock:
            merged = self._config.model_dump()
            if isinstance(config, ManagerConfig):
                merged.update(config.model_dump(exclude_unset=True))
            elif isinstance(config, dict):
                merged.update(config)
            merged.update(overrides)
            self._config = ManagerConfig(**merged)
            self._evict_overflow()

            self.logger.debug("Error manager configured", **self._config.model_dump())
            return self._config

    def report(self, record: Any) -> bool:
        """
        Record a classified error and notify subscribers.

        Returns:
            True when the record was stored, False when the manager is
            disabled or the report was throttled
        """
        if not isinstance(record, ErrorRecord):
            record = self.classifier.classify(record)

        with self._lock:
            if not self._config.enabled:
                return False

            now = self.clock.now()
            key = self._throttle_key(record)
            window = self._config.reporting_throttle_ms / 1000.0
            last_reported = self._throttle.get(key)
            if last_reported is not None and now - last_reported < window:
                self.logger.debug("Duplicate error report throttled",
                                  error_id=record.id, error_message=record.message)
                return False

            self._throttle[key] = now
            self._errors.append(record)
            self._evict_overflow()
            self._clean_old_errors(now)
            self._prune_throttle(now, window)
            subscribers = list(self._subscribers)

        for handler in subscribers:
            try:
                handler(record)
            except Exception as e:
                self.logger.error("Error subscriber failed", exception=e,
                                  error_id=record.id)
        return True

    def report_exception(self, error: Any, **hints: Any) -> Optional[ErrorRecord]:
        """Classify ``error`` with ``hints`` and report it"""
        record = self.classifier.classify(error, hints or None)
        return record if self.report(record) else None

    def subscribe(self, handler: ErrorHandler) -> Callable[[], None]:
        """Register a handler; the returned function removes exactly that handler"""
        token = _Subscription(handler)
        with self._lock:
            self._subscribers.append(token)

        def unsubscribe() -> None:
            with self._lock:
                for index, existing in enumerate(self._subscribers):
                    if existing is token:
                        del self._subscribers[index]
                        return

        return unsubscribe

    def get_errors(self) -> List[ErrorRecord]:
        with self._lock:
            return list(self._errors)

    def by_category(self, category: Union[ErrorCategory, str]) -> List[ErrorRecord]:
        """Get errors by category"""
        wanted = getattr(ErrorCategory.coerce(category), 'value', category)
        with self._lock:
            return [e for e in self._errors if e.category_name == wanted]

    def by_severity(self, severity: Union[ErrorSeverity, str]) -> List[ErrorRecord]:
        """Get errors by severity"""
        wanted = ErrorSeverity.coerce(severity)
        with self._lock:
            return [e for e in self._errors if e.severity == wanted]

    def by_component(self, component_id: str) -> List[ErrorRecord]:
        with self._lock:
            return [e for e in self._errors if e.component_id == component_id]

    def mark_recovered(self, error_id: str) -> bool:
        """Annotate a buffered error as recovered"""
        with self._lock:
            for record in self._errors:
                if record.id == error_id:
                    record.annotate('recovered', True)
                    return True
        return False

    def statistics(self) -> ErrorStatistics:
        """Get error statistics for the current buffer"""
        with self._lock:
            errors = list(self._errors)
        now = self.clock.now()

        stats = ErrorStatistics(total_errors=len(errors))
        for record in errors:
            category = record.category_name
            stats.errors_by_category[category] = stats.errors_by_category.get(category, 0) + 1
            severity = record.severity.value
            stats.errors_by_severity[severity] = stats.errors_by_severity.get(severity, 0) + 1
            if record.recovered:
                stats.recovered_errors += 1
            if now - record.timestamp < RECENT_ERROR_WINDOW:
                stats.recent_errors += 1
        return stats

    def clear(self) -> None:
        """Clear all errors; configuration and subscribers are kept"""
        with self._lock:
            self._errors.clear()
            self._throttle.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)

    def _throttle_key(self, record: ErrorRecord) -> str:
        if self._config.throttle_by_category:
            return f"{record.category_name}_{record.message}"
        return record.message

    def _evict_overflow(self) -> None:
        while len(self._errors) > self._config.max_errors_per_session:
            self._errors.popleft()

    def _clean_old_errors(self, now: float) -> None:
        max_age = self._config.max_error_age
        if max_age is None:
            return
        cutoff = now - max_age
        if any(e.timestamp < cutoff for e in self._errors):
            self._errors = deque(e for e in self._errors if e.timestamp >= cutoff)

    def _prune_throttle(self, now: float, window: float) -> None:
        if len(self._throttle) <= 1000:
            return
        self._throttle = {k: t for k, t in self._throttle.items() if now - t < window}


class _Subscription:
    """Identity wrapper so the same callable can be subscribed twice"""

    __slots__ = ('handler',)

    def __init__(self, handler: ErrorHandler):
        self.handler = handler

    def __call__(self, record: ErrorRecord) -> Any:
        return self.handler(record)


def _coerce_config(config: Optional[Union[ManagerConfig, Dict[str, Any]]]) -> ManagerConfig:
    if config is None:
        return ManagerConfig()
    if isinstance(config, ManagerConfig):
        return config.model_copy()
    return ManagerConfig(**config)
