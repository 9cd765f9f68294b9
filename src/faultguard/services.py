"""
Service wiring

Builds one set of resilience components from ``FaultguardSettings`` and
connects them: every stored error is folded into the aggregator and
written to the structured logger.
"""

from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .aggregation import ErrorAggregator, ErrorPatternDetector
from .boundary import ErrorBoundary
from .clock import Clock, default_clock
from .destinations import ConsoleDestination, HttpDestination, StructlogDestination, WebhookDestination
from .error_handling import ErrorClassifier, ErrorManager
from .logging import get_logger, setup_logging
from .models import ErrorRecord
from .recovery import MISSING, create_robust_function
from .reliability import ReliabilityManager
from .reporting import ReportDestination, StructuredLogger
from .settings import FaultguardSettings
from .structured_logging import setup_structured_logging

logger = get_logger('services')


def setup_error_reporting(error_manager: ErrorManager, aggregator: ErrorAggregator,
                          structured_logger: StructuredLogger) -> Callable[[], None]:
    """Forward stored errors to the aggregator and logger; returns unsubscribe"""

    def forward(record: ErrorRecord) -> None:
        aggregator.aggregate_error(record)
        structured_logger.error(record.message, {
            'error_id': record.id,
            'category': record.category_name,
            'severity': record.severity.value,
            'component_id': record.component_id,
            'component_name': record.component_name,
            'context': record.context,
        })

    return error_manager.subscribe(forward)


def build_error_report(error_manager: ErrorManager, aggregator: ErrorAggregator,
                       structured_logger: StructuredLogger,
                       pattern_detector: Optional[ErrorPatternDetector] = None) -> Dict[str, Any]:
    """Snapshot of logs, aggregations, statistics and detected patterns"""
    report = {
        'logs': [entry.to_dict() for entry in structured_logger.get_entries()],
        'aggregations': [a.to_dict() for a in aggregator.get_top_errors(len(aggregator))],
        'statistics': error_manager.statistics().to_dict(),
    }
    if pattern_detector is not None:
        report['patterns'] = pattern_detector.analyze_patterns(error_manager.get_errors()).to_dict()
    return report


def build_destinations(settings: FaultguardSettings) -> List[ReportDestination]:
    """Create the destinations enabled in ``settings.reporting``"""
    reporting = settings.reporting
    destinations: List[ReportDestination] = []

    if reporting.console:
        destinations.append(ConsoleDestination())

    if reporting.structlog:
        setup_structured_logging(
            log_dir=Path(reporting.jsonl_directory) if reporting.jsonl_directory else None,
            level=settings.logging.level,
        )
        destinations.append(StructlogDestination())

    if reporting.http_endpoint:
        destinations.append(HttpDestination(reporting.http_endpoint, api_key=reporting.http_api_key))

    if reporting.webhook_url:
        destinations.append(WebhookDestination(
            reporting.webhook_url,
            format=reporting.webhook_format,
            only_errors=reporting.webhook_only_errors,
        ))

    return destinations


class ResilienceServices:
    """One wired set of manager, logger, aggregator, detector and registry"""

    def __init__(self, error_manager: ErrorManager, classifier: ErrorClassifier,
                 structured_logger: StructuredLogger, aggregator: ErrorAggregator,
                 pattern_detector: ErrorPatternDetector, reliability: ReliabilityManager,
                 clock: Optional[Clock] = None):
        self.error_manager = error_manager
        self.classifier = classifier
        self.structured_logger = structured_logger
        self.aggregator = aggregator
        self.pattern_detector = pattern_detector
        self.reliability = reliability
        self.clock = clock or default_clock
        self._unsubscribe = setup_error_reporting(error_manager, aggregator, structured_logger)

    @classmethod
    def from_settings(cls, settings: Optional[FaultguardSettings] = None, clock: Optional[Clock] = None,
                      destinations: Optional[Iterable[ReportDestination]] = None,
                      configure_logging: bool = False) -> "ResilienceServices":
        """
        Build services from settings.

        Destinations default to those enabled in the settings; pass a list
        to replace them. ``configure_logging`` installs the diagnostics
        handlers from ``settings.logging``.
        """
        settings = settings or FaultguardSettings()
        clock = clock or default_clock

        if configure_logging:
            setup_logging(settings.to_dict())

        classifier = ErrorClassifier(clock=clock)
        error_manager = ErrorManager(settings.to_manager_config(), clock=clock, classifier=classifier)

        if destinations is None:
            destinations = build_destinations(settings)
        structured_logger = StructuredLogger(settings.to_reporting_config(), destinations=destinations, clock=clock)

        aggregation = settings.aggregation
        aggregator = ErrorAggregator(
            include_category=aggregation.include_category,
            normalize_numbers=aggregation.normalize_numbers,
            aggregation_window=aggregation.aggregation_window,
            clock=clock,
            classifier=classifier,
        )
        pattern_detector = ErrorPatternDetector(
            cascade_gap=aggregation.cascade_gap,
            window_size=aggregation.window_size,
            correlation_window=aggregation.correlation_window,
            correlation_threshold=aggregation.correlation_threshold,
        )
        reliability = ReliabilityManager(
            clock=clock,
            error_manager=error_manager,
            default_retry_config=settings.to_retry_config(),
            default_circuit_config=settings.to_circuit_breaker_config(),
        )

        logger.info("Resilience services initialized",
                    destinations=[d.name for d in structured_logger.destinations])

        return cls(error_manager, classifier, structured_logger, aggregator,
                   pattern_detector, reliability, clock=clock)

    def protect(self, fn: Callable[..., Any], name: Optional[str] = None, retry: bool = True,
                circuit_breaker: bool = True, fallback: Any = MISSING, **options: Any) -> Callable[..., Any]:
        """Wrap ``fn`` with the named registry breaker and retry policy"""
        name = name or getattr(fn, '__name__', 'operation')
        return create_robust_function(
            fn,
            retry_policy=self.reliability.get_retry_policy(f"{name}_retry") if retry else None,
            circuit_breaker=self.reliability.get_circuit_breaker(name) if circuit_breaker else None,
            fallback=fallback,
            name=name,
            clock=self.clock,
            error_manager=self.error_manager,
            classifier=self.classifier,
            **options,
        )

    def boundary(self, render: Optional[Callable[[], Any]] = None, **options: Any) -> ErrorBoundary:
        options.setdefault('error_manager', self.error_manager)
        options.setdefault('classifier', self.classifier)
        return ErrorBoundary(render, **options)

    def error_report(self) -> Dict[str, Any]:
        return build_error_report(self.error_manager, self.aggregator,
                                  self.structured_logger, self.pattern_detector)

    async def publish_aggregations(self, n: int = 10) -> int:
        """Send the top aggregations to every logger destination"""
        self.aggregator.cleanup_stale()
        top = self.aggregator.get_top_errors(n)
        if top:
            await self.structured_logger.send_batch(top)
        return len(top)

    async def shutdown(self) -> None:
        """Detach from the manager and flush the logger"""
        self._unsubscribe()
        await self.structured_logger.stop()
