"""
Data models for classified errors

Defines the canonical ``ErrorRecord`` together with its category and
severity enumerations and the hints accepted by the classifier.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .exceptions import ErrorKind


class ErrorCategory(str, Enum):
    """Error categories for classification"""
    COMPONENT = "component"
    NETWORK = "network"
    VALIDATION = "validation"
    STATE = "state"
    REACTIVE = "reactive"
    RENDER = "render"
    LIFECYCLE = "lifecycle"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: Any) -> Union['ErrorCategory', str]:
        """Map a value onto a known category, keeping custom names verbatim"""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNKNOWN
        text = str(getattr(value, 'value', value)).strip().lower()
        if not text:
            return cls.UNKNOWN
        # Accept the older "<name>_error" spelling
        if text.endswith('_error'):
            text = text[:-len('_error')]
        try:
            return cls(text)
        except ValueError:
            return text


_SEVERITY_RANK = {
    "low": 0,
    "medium": 1,
    "high": 2,
    "critical": 3,
    "fatal": 4,
}


class ErrorSeverity(str, Enum):
    """Error severity levels, totally ordered from LOW to FATAL"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    # str comparison would otherwise order severities alphabetically
    def __lt__(self, other):
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, ErrorSeverity):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def coerce(cls, value: Any) -> 'ErrorSeverity':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(getattr(value, 'value', value)).strip().lower())
        except ValueError:
            return cls.MEDIUM


@dataclass(frozen=True)
class Attribution:
    """Origin of an error in the component tree"""
    component_id: Optional[str] = None
    component_name: Optional[str] = None


@dataclass
class ClassificationHints:
    """Overrides accepted by ``ErrorClassifier.classify``"""
    category: Optional[Union[ErrorCategory, str]] = None
    severity: Optional[Union[ErrorSeverity, str]] = None
    component_id: Optional[str] = None
    component_name: Optional[str] = None
    phase: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

    @classmethod
    def from_value(cls, value: Any) -> 'ClassificationHints':
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            known = {k: value[k] for k in cls.__dataclass_fields__ if k in value}
            return cls(**known)
        return cls()


def generate_error_id() -> str:
    """Timestamp-prefixed id, ordered enough for display"""
    return f"error_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True, eq=False)
class ErrorRecord:
    """Canonical classified error; only ``annotations`` may change after creation"""
    message: str
    category: Union[ErrorCategory, str] = ErrorCategory.UNKNOWN
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    cause: Any = None
    component_id: Optional[str] = None
    component_name: Optional[str] = None
    timestamp: float = 0.0
    kind: ErrorKind = ErrorKind.UNKNOWN
    phase: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    stack: Optional[str] = None
    id: str = field(default_factory=generate_error_id)
    annotations: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def attribution(self) -> Optional[Attribution]:
        if self.component_id is None and self.component_name is None:
            return None
        return Attribution(self.component_id, self.component_name)

    @property
    def category_name(self) -> str:
        return getattr(self.category, 'value', str(self.category))

    @property
    def recovered(self) -> bool:
        return bool(self.annotations.get('recovered', False))

    def annotate(self, key: str, value: Any) -> None:
        """Attach a transient diagnostic annotation"""
        self.annotations[key] = value

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for serialization"""
        return {
            'id': self.id,
            'message': self.message,
            'category': self.category_name,
            'severity': self.severity.value,
            'kind': self.kind.value,
            'component_id': self.component_id,
            'component_name': self.component_name,
            'phase': self.phase,
            'timestamp': self.timestamp,
            'context': dict(self.context),
            'cause_type': type(self.cause).__name__ if self.cause is not None else None,
            'recovered': self.recovered,
        }
