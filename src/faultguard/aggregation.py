"""
Error aggregation and pattern detection

``ErrorAggregator`` folds records sharing a fingerprint into one
aggregation; ``ErrorPatternDetector`` scans a record history for recurring
groups, cascades of closely spaced failures and co-occurring messages.
"""

import re
import threading
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .clock import Clock, default_clock
from .error_handling import ErrorClassifier
from .logging import get_logger
from .models import ErrorCategory, ErrorRecord, ErrorSeverity

logger = get_logger('aggregation')

MAX_SAMPLES = 5

_DIGITS = re.compile(r'\d+')


@dataclass
class ErrorAggregation:
    """Running summary of every record sharing one fingerprint"""
    fingerprint: str
    message: str
    category: Union[ErrorCategory, str]
    severity: ErrorSeverity
    first_seen_at: float
    last_seen_at: float
    count: int = 0
    affected_components: List[str] = field(default_factory=list)
    samples: List[ErrorRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fingerprint': self.fingerprint,
            'message': self.message,
            'category': getattr(self.category, 'value', self.category),
            'severity': self.severity.value,
            'count': self.count,
            'affected_components': list(self.affected_components),
            'first_seen_at': self.first_seen_at,
            'last_seen_at': self.last_seen_at,
        }


class ErrorAggregator:
    """Groups equivalent errors by fingerprint"""

    def __init__(self, fingerprint: Optional[Callable[[ErrorRecord], str]] = None,
                 include_category: bool = False, normalize_numbers: bool = False,
                 aggregation_window: Optional[float] = None, clock: Optional[Clock] = None,
                 classifier: Optional[ErrorClassifier] = None):
        self._fingerprint = fingerprint
        self.include_category = include_category
        self.normalize_numbers = normalize_numbers
        self.aggregation_window = aggregation_window
        self.clock = clock or default_clock
        self.classifier = classifier or ErrorClassifier(clock=self.clock, capture_stack=False)
        self._aggregations: Dict[str, ErrorAggregation] = {}
        self._lock = threading.RLock()

    def fingerprint(self, record: ErrorRecord) -> str:
        if self._fingerprint is not None:
            try:
                return str(self._fingerprint(record))
            except Exception as e:
                logger.error("Custom fingerprint failed, using message", exception=e)

        message = record.message
        if self.normalize_numbers:
            message = _DIGITS.sub('N', message)
        if self.include_category:
            return f"{record.category_name}|{message}"
        return message

    def aggregate_error(self, record: Any) -> ErrorAggregation:
        """Fold ``record`` into its aggregation and return it"""
        record = self.classifier.classify(record)
        key = self.fingerprint(record)

        with self._lock:
            aggregation = self._aggregations.get(key)
            if aggregation is None:
                aggregation = ErrorAggregation(
                    fingerprint=key,
                    message=record.message,
                    category=record.category,
                    severity=record.severity,
                    first_seen_at=record.timestamp,
                    last_seen_at=record.timestamp,
                )
                self._aggregations[key] = aggregation

            aggregation.count += 1
            aggregation.last_seen_at = max(aggregation.last_seen_at, record.timestamp)
            if record.severity > aggregation.severity:
                aggregation.severity = record.severity
            if record.component_id and record.component_id not in aggregation.affected_components:
                aggregation.affected_components.append(record.component_id)
            aggregation.samples.append(record)
            del aggregation.samples[:-MAX_SAMPLES]

        return aggregation

    def get_top_errors(self, n: int = 10) -> List[ErrorAggregation]:
        """Aggregations ordered by count, then most recently seen"""
        with self._lock:
            aggregations = list(self._aggregations.values())
        aggregations.sort(key=lambda a: (a.count, a.last_seen_at), reverse=True)
        return aggregations[:max(0, n)]

    def get_aggregations(self) -> List[ErrorAggregation]:
        with self._lock:
            return list(self._aggregations.values())

    def cleanup_stale(self, now: Optional[float] = None) -> int:
        """Drop aggregations not seen within ``aggregation_window``"""
        if self.aggregation_window is None:
            return 0
        cutoff = (self.clock.now() if now is None else now) - self.aggregation_window
        with self._lock:
            stale = [key for key, a in self._aggregations.items() if a.last_seen_at < cutoff]
            for key in stale:
                del self._aggregations[key]
        if stale:
            logger.debug("Removed stale aggregations", count=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._aggregations.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._aggregations)


@dataclass
class ErrorPattern:
    pattern: str
    count: int
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return {'pattern': self.pattern, 'count': self.count, 'severity': self.severity}


@dataclass
class Correlation:
    first: str
    second: str
    correlation: float

    def to_dict(self) -> Dict[str, Any]:
        return {'first': self.first, 'second': self.second, 'correlation': self.correlation}


@dataclass
class PatternReport:
    patterns: List[ErrorPattern] = field(default_factory=list)
    cascades: List[List[ErrorRecord]] = field(default_factory=list)
    correlations: List[Correlation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'patterns': [p.to_dict() for p in self.patterns],
            'cascades': [[r.id for r in cascade] for cascade in self.cascades],
            'correlations': [c.to_dict() for c in self.correlations],
        }


def _pattern_severity(count: int) -> str:
    if count > 10:
        return 'high'
    if count > 5:
        return 'medium'
    return 'low'


class ErrorPatternDetector:
    """
    Scans recent records for recurring groups, cascades and correlations.

    A cascade is a maximal run of time-ordered records in which each record
    follows the previous one by at most ``cascade_gap`` seconds; only runs
    of two or more are reported. Two messages correlate when they share
    ``correlation_window`` time slots in more than ``correlation_threshold``
    of the slots where either occurs.
    """

    def __init__(self, cascade_gap: float = 1.0, window_size: int = 100,
                 group_key: Optional[Callable[[ErrorRecord], str]] = None,
                 correlation_window: float = 5.0, correlation_threshold: float = 0.5):
        self.cascade_gap = cascade_gap
        self.window_size = max(1, int(window_size))
        self.group_key = group_key or (lambda record: record.category_name)
        self.correlation_window = correlation_window
        self.correlation_threshold = correlation_threshold

    def analyze_patterns(self, records: Sequence[ErrorRecord]) -> PatternReport:
        recent = [r for r in list(records)[-self.window_size:] if isinstance(r, ErrorRecord)]
        return PatternReport(
            patterns=self.detect_patterns(recent),
            cascades=self.detect_cascades(recent),
            correlations=self.detect_correlations(recent),
        )

    def detect_patterns(self, records: Sequence[ErrorRecord]) -> List[ErrorPattern]:
        counts: Dict[str, int] = {}
        for record in records:
            try:
                key = str(self.group_key(record))
            except Exception as e:
                logger.error("Pattern group key failed", exception=e)
                key = record.category_name
            counts[key] = counts.get(key, 0) + 1

        patterns = [ErrorPattern(key, count, _pattern_severity(count)) for key, count in counts.items()]
        patterns.sort(key=lambda p: p.count, reverse=True)
        return patterns

    def detect_cascades(self, records: Sequence[ErrorRecord]) -> List[List[ErrorRecord]]:
        ordered = sorted(records, key=lambda r: r.timestamp)
        cascades: List[List[ErrorRecord]] = []
        run: List[ErrorRecord] = []

        for record in ordered:
            if run and record.timestamp - run[-1].timestamp > self.cascade_gap:
                if len(run) >= 2:
                    cascades.append(run)
                run = []
            run.append(record)

        if len(run) >= 2:
            cascades.append(run)
        return cascades

    def detect_correlations(self, records: Sequence[ErrorRecord]) -> List[Correlation]:
        if self.correlation_window <= 0:
            return []

        slots: Dict[int, set] = {}
        for record in records:
            slot = int(record.timestamp // self.correlation_window)
            slots.setdefault(slot, set()).add(record.message)

        messages = sorted({record.message for record in records})
        correlations = []
        for first, second in combinations(messages, 2):
            both = sum(1 for seen in slots.values() if first in seen and second in seen)
            either = sum(1 for seen in slots.values() if first in seen or second in seen)
            score = both / either if either else 0.0
            if score > self.correlation_threshold:
                correlations.append(Correlation(first, second, score))

        correlations.sort(key=lambda c: c.correlation, reverse=True)
        return correlations
