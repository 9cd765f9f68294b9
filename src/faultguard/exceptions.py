"""
Base exception classes for faultguard

This module defines the exception hierarchy used throughout the resilience
core and the ``ErrorKind`` discriminator that retry allow-lists and the
classifier match against.
"""

import asyncio
from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """Discriminator carried by every classified failure"""
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVICE_UNAVAILABLE = "service_unavailable"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    COMPONENT = "component"
    RENDER = "render"
    STATE = "state"
    CONFIGURATION = "configuration"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


class FaultError(Exception):
    """Base exception for all faultguard errors"""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class ConfigurationError(FaultError):
    """Raised when a policy or settings value is invalid"""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.get('context', {})
        if config_key:
            context['config_key'] = config_key
        super().__init__(message, context)
        self.config_key = config_key


class NetworkError(FaultError):
    """Raised when a remote dependency cannot be reached"""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, service: Optional[str] = None,
                 status_code: Optional[int] = None, **kwargs):
        context = kwargs.get('context', {})
        if service:
            context['service'] = service
        if status_code:
            context['status_code'] = status_code
        super().__init__(message, context)
        self.service = service
        self.status_code = status_code


class ServiceUnavailableError(NetworkError):
    """Raised when a dependency answers but refuses work"""

    kind = ErrorKind.SERVICE_UNAVAILABLE


class OperationTimeoutError(FaultError):
    """Raised when a caller-supplied timeout elapses"""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        context = kwargs.get('context', {})
        if timeout is not None:
            context['timeout'] = timeout
        super().__init__(message, context)
        self.timeout = timeout


class ValidationError(FaultError):
    """Raised when data validation fails"""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None, **kwargs):
        context = kwargs.get('context', {})
        if field:
            context['field'] = field
        if value is not None:
            context['value'] = str(value)
        super().__init__(message, context)
        self.field = field
        self.value = value


class AuthenticationError(FaultError):
    kind = ErrorKind.AUTHENTICATION


class AuthorizationError(FaultError):
    kind = ErrorKind.AUTHORIZATION


class ComponentError(FaultError):
    """Raised by a component while building its output"""

    kind = ErrorKind.COMPONENT

    def __init__(self, message: str, component_id: Optional[str] = None, **kwargs):
        context = kwargs.get('context', {})
        if component_id:
            context['component_id'] = component_id
        super().__init__(message, context)
        self.component_id = component_id


class RenderError(ComponentError):
    """Raised when rendering a component scope fails"""

    kind = ErrorKind.RENDER


class StateError(FaultError):
    """Raised when shared state is inconsistent"""

    kind = ErrorKind.STATE


class CircuitOpenError(FaultError):
    """Raised when a call is rejected by an open circuit breaker"""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str, breaker_name: Optional[str] = None,
                 retry_after: Optional[float] = None, **kwargs):
        context = kwargs.get('context', {})
        if breaker_name:
            context['breaker'] = breaker_name
        if retry_after is not None:
            context['retry_after'] = round(retry_after, 3)
        super().__init__(message, context)
        self.breaker_name = breaker_name
        self.retry_after = retry_after


def error_kind(error: Any) -> ErrorKind:
    """Return the discriminator for any failure payload"""
    kind = getattr(error, 'kind', None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(kind, str):
        try:
            return ErrorKind(kind)
        except ValueError:
            return ErrorKind.UNKNOWN

    # asyncio.TimeoutError is only an alias of TimeoutError from 3.11 on
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    return ErrorKind.UNKNOWN
