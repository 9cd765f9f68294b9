"""
faultguard: error handling and resilience core
"""

from .clock import Clock, ManualClock, SystemClock
from .exceptions import (
    ErrorKind,
    FaultError,
    ConfigurationError,
    NetworkError,
    ServiceUnavailableError,
    OperationTimeoutError,
    ValidationError,
    AuthenticationError,
    AuthorizationError,
    ComponentError,
    RenderError,
    StateError,
    CircuitOpenError,
    error_kind
)
from .models import ErrorCategory, ErrorSeverity, ErrorRecord, ClassificationHints
from .error_handling import ErrorClassifier, ErrorManager, ManagerConfig, ErrorStatistics
from .reliability import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    RetryPolicy,
    RetryConfig,
    RetryContext,
    ReliabilityManager
)
from .recovery import (
    MISSING,
    FallbackConfig,
    FallbackManager,
    RecoveryOrchestrator,
    RECOVERY_PRESETS,
    create_robust_function,
    with_retry,
    with_circuit_breaker,
    with_fallback,
    with_timeout
)
from .boundary import ErrorBoundary, RecoveryConfig, RecoveryStrategy, FailurePlaceholder, create_error_boundary
from .aggregation import ErrorAggregator, ErrorAggregation, ErrorPatternDetector, PatternReport
from .reporting import LogLevel, LogEntry, ReportingConfig, StructuredLogger, sanitize_context
from .logging import setup_logging, get_logger

__all__ = [
    'Clock',
    'ManualClock',
    'SystemClock',
    'ErrorKind',
    'FaultError',
    'ConfigurationError',
    'NetworkError',
    'ServiceUnavailableError',
    'OperationTimeoutError',
    'ValidationError',
    'AuthenticationError',
    'AuthorizationError',
    'ComponentError',
    'RenderError',
    'StateError',
    'CircuitOpenError',
    'error_kind',
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorRecord',
    'ClassificationHints',
    'ErrorClassifier',
    'ErrorManager',
    'ManagerConfig',
    'ErrorStatistics',
    'CircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitState',
    'RetryPolicy',
    'RetryConfig',
    'RetryContext',
    'ReliabilityManager',
    'MISSING',
    'FallbackConfig',
    'FallbackManager',
    'RecoveryOrchestrator',
    'RECOVERY_PRESETS',
    'create_robust_function',
    'with_retry',
    'with_circuit_breaker',
    'with_fallback',
    'with_timeout',
    'ErrorBoundary',
    'RecoveryConfig',
    'RecoveryStrategy',
    'FailurePlaceholder',
    'create_error_boundary',
    'ErrorAggregator',
    'ErrorAggregation',
    'ErrorPatternDetector',
    'PatternReport',
    'LogLevel',
    'LogEntry',
    'ReportingConfig',
    'StructuredLogger',
    'sanitize_context',
    'setup_logging',
    'get_logger'
]
