"""
Tests for error classification and the session error manager.
"""

import asyncio

import pytest

from faultguard.error_handling import ErrorClassifier, ErrorManager, ManagerConfig
from faultguard.exceptions import (
    CircuitOpenError, ComponentError, ConfigurationError, ErrorKind, FaultError,
    NetworkError, OperationTimeoutError, RenderError, ServiceUnavailableError,
    ValidationError, error_kind
)
from faultguard.models import ErrorCategory, ErrorRecord, ErrorSeverity


class TestExceptions:
    """Test the exception taxonomy"""

    def test_context_is_rendered_in_str(self):
        """Test that context is appended to the message"""
        error = NetworkError("Upstream failed", service="billing", status_code=503)

        assert error.message == "Upstream failed"
        assert error.context == {'service': 'billing', 'status_code': 503}
        assert "service=billing" in str(error)

    def test_kind_discriminator(self):
        """Test kinds of built-in and foreign exceptions"""
        assert error_kind(ServiceUnavailableError("down")) == ErrorKind.SERVICE_UNAVAILABLE
        assert error_kind(RenderError("bad")) == ErrorKind.RENDER
        assert error_kind(CircuitOpenError("open")) == ErrorKind.CIRCUIT_OPEN
        assert error_kind(asyncio.TimeoutError()) == ErrorKind.TIMEOUT
        assert error_kind(ConnectionResetError()) == ErrorKind.NETWORK
        assert error_kind(KeyError("x")) == ErrorKind.UNKNOWN

    def test_subclass_hierarchy(self):
        assert issubclass(ServiceUnavailableError, NetworkError)
        assert issubclass(RenderError, ComponentError)
        assert issubclass(ConfigurationError, FaultError)


class TestSeverity:
    """Test severity ordering"""

    def test_total_order(self):
        assert ErrorSeverity.LOW < ErrorSeverity.MEDIUM < ErrorSeverity.HIGH
        assert ErrorSeverity.HIGH < ErrorSeverity.CRITICAL < ErrorSeverity.FATAL
        assert max([ErrorSeverity.HIGH, ErrorSeverity.FATAL, ErrorSeverity.LOW]) == ErrorSeverity.FATAL

    def test_coerce_invalid_falls_back_to_medium(self):
        assert ErrorSeverity.coerce("bogus") == ErrorSeverity.MEDIUM
        assert ErrorSeverity.coerce("HIGH") == ErrorSeverity.HIGH

    def test_category_coerce_keeps_custom_names(self):
        assert ErrorCategory.coerce("network_error") == ErrorCategory.NETWORK
        assert ErrorCategory.coerce("billing") == "billing"
        assert ErrorCategory.coerce(None) == ErrorCategory.UNKNOWN


class TestErrorClassifier:
    """Test error classification functionality"""

    def test_defaults(self, classifier, clock):
        """Test classification without hints"""
        error = KeyError("missing")
        record = classifier.classify(error)

        assert record.category == ErrorCategory.UNKNOWN
        assert record.severity == ErrorSeverity.MEDIUM
        assert record.cause is error
        assert record.timestamp == clock.now()
        assert record.attribution is None

    def test_category_inferred_from_kind(self, classifier):
        """Test category inference for library exceptions"""
        assert classifier.classify(NetworkError("down")).category == ErrorCategory.NETWORK
        assert classifier.classify(OperationTimeoutError("slow")).category == ErrorCategory.NETWORK
        assert classifier.classify(ValidationError("bad", field="email")).category == ErrorCategory.VALIDATION

    def test_hints_override(self, classifier):
        """Test hints override category, severity and attribution"""
        record = classifier.classify(RuntimeError("boom"), {
            'category': 'render',
            'severity': 'critical',
            'component_id': 'c-1',
            'component_name': 'Header',
            'phase': 'mount',
            'context': {'attempt': 2},
        })

        assert record.category == ErrorCategory.RENDER
        assert record.severity == ErrorSeverity.CRITICAL
        assert record.attribution.component_id == 'c-1'
        assert record.attribution.component_name == 'Header'
        assert record.phase == 'mount'
        assert record.context == {'attempt': 2}

    def test_exception_context_is_merged(self, classifier):
        record = classifier.classify(NetworkError("down", service="search"), {'context': {'attempt': 1}})
        assert record.context == {'service': 'search', 'attempt': 1}

    def test_non_exception_inputs(self, classifier):
        """Test that arbitrary payloads never raise"""
        assert classifier.classify("plain string").message == "plain string"
        assert classifier.classify(None).message == "Unknown error"
        assert classifier.classify(42).cause == 42

    def test_unprintable_failure(self, classifier):
        """Test objects whose __str__ raises"""
        class Unprintable:
            def __str__(self):
                raise RuntimeError("nope")

        payload = Unprintable()
        record = classifier.classify(payload)

        assert record.message == "<unprintable failure>"
        assert record.cause is payload

    def test_record_passthrough(self, classifier):
        record = ErrorRecord(message="already classified")
        assert classifier.classify(record) is record

    def test_stack_captured_for_raised_exceptions(self, classifier):
        try:
            raise ValueError("raised")
        except ValueError as e:
            record = classifier.classify(e)

        assert record.stack is not None
        assert "ValueError" in record.stack


class TestManagerConfig:
    """Test manager configuration coercion"""

    def test_invalid_values_fall_back_to_defaults(self):
        config = ManagerConfig(max_errors_per_session=-5, reporting_throttle_ms="fast", enabled="maybe")

        assert config.max_errors_per_session == 100
        assert config.reporting_throttle_ms == 1000
        assert config.enabled is True

    def test_max_error_age_ignores_non_positive(self):
        assert ManagerConfig(max_error_age=0).max_error_age is None
        assert ManagerConfig(max_error_age="30").max_error_age == 30.0


class TestErrorManager:
    """Test error manager functionality"""

    def test_report_stores_and_notifies(self, manager):
        """Test normal report path"""
        received = []
        manager.subscribe(received.append)

        record = ErrorRecord(message="boom")
        assert manager.report(record) is True

        assert manager.get_errors() == [record]
        assert received == [record]

    def test_duplicate_within_throttle_window_dropped(self, manager, clock):
        """Test throttling of identical messages"""
        received = []
        manager.subscribe(received.append)

        assert manager.report(ErrorRecord(message="same")) is True
        clock.advance(0.5)
        assert manager.report(ErrorRecord(message="same")) is False

        assert len(manager.get_errors()) == 1
        assert len(received) == 1

        clock.advance(0.5)
        assert manager.report(ErrorRecord(message="same")) is True
        assert len(manager.get_errors()) == 2

    def test_throttle_by_category(self, manager):
        """Test that the category can be part of the throttle key"""
        manager.configure(throttle_by_category=True)

        assert manager.report(ErrorRecord(message="same", category=ErrorCategory.NETWORK))
        assert manager.report(ErrorRecord(message="same", category=ErrorCategory.STATE))
        assert not manager.report(ErrorRecord(message="same", category=ErrorCategory.STATE))

    def test_ring_buffer_eviction(self, manager):
        """Test that the oldest errors are evicted first"""
        manager.configure(max_errors_per_session=3)

        for i in range(5):
            manager.report(ErrorRecord(message=f"error {i}"))

        assert [e.message for e in manager.get_errors()] == ["error 2", "error 3", "error 4"]

    def test_configure_shrinks_existing_buffer(self, manager):
        for i in range(4):
            manager.report(ErrorRecord(message=f"error {i}"))

        manager.configure({'max_errors_per_session': 2})

        assert [e.message for e in manager.get_errors()] == ["error 2", "error 3"]

    def test_disabled_manager_is_noop(self, manager):
        received = []
        manager.subscribe(received.append)
        manager.configure(enabled=False)

        assert manager.report(ErrorRecord(message="ignored")) is False
        assert manager.get_errors() == []
        assert received == []

    def test_max_error_age(self, manager, clock):
        """Test that expired errors are dropped on the next report"""
        manager.configure(max_error_age=60)
        manager.report(ErrorRecord(message="old", timestamp=clock.now()))

        clock.advance(120)
        manager.report(ErrorRecord(message="new", timestamp=clock.now()))

        assert [e.message for e in manager.get_errors()] == ["new"]

    def test_subscriber_sees_record_in_statistics(self, manager):
        """Test notification happens after the record is buffered"""
        seen = []
        manager.subscribe(lambda record: seen.append(manager.statistics().total_errors))

        manager.report(ErrorRecord(message="first"))

        assert seen == [1]

    def test_subscriber_failure_is_contained(self, manager):
        """Test that a failing subscriber does not break others"""
        received = []

        def broken(record):
            raise RuntimeError("subscriber bug")

        manager.subscribe(broken)
        manager.subscribe(received.append)

        assert manager.report(ErrorRecord(message="boom")) is True
        assert len(received) == 1

    def test_subscription_order_and_unsubscribe(self, manager):
        calls = []
        manager.subscribe(lambda r: calls.append("first"))
        unsubscribe = manager.subscribe(lambda r: calls.append("second"))

        manager.report(ErrorRecord(message="a"))
        unsubscribe()
        unsubscribe()
        manager.report(ErrorRecord(message="b"))

        assert calls == ["first", "second", "first"]

    def test_same_handler_subscribed_twice(self, manager):
        received = []
        first = manager.subscribe(received.append)
        manager.subscribe(received.append)

        first()
        manager.report(ErrorRecord(message="a"))

        assert len(received) == 1

    def test_queries(self, manager):
        manager.report(ErrorRecord(message="a", category=ErrorCategory.NETWORK, severity=ErrorSeverity.HIGH))
        manager.report(ErrorRecord(message="b", category=ErrorCategory.NETWORK, component_id="list"))
        manager.report(ErrorRecord(message="c", category=ErrorCategory.STATE, severity=ErrorSeverity.HIGH))

        assert [e.message for e in manager.by_category("network")] == ["a", "b"]
        assert [e.message for e in manager.by_severity(ErrorSeverity.HIGH)] == ["a", "c"]
        assert [e.message for e in manager.by_component("list")] == ["b"]

    def test_statistics(self, manager, clock):
        """Test statistics including recovered and recent counts"""
        old = ErrorRecord(message="old", category=ErrorCategory.STATE, timestamp=clock.now() - 600)
        manager.report(old)
        manager.report(ErrorRecord(message="new", category=ErrorCategory.NETWORK,
                                   severity=ErrorSeverity.HIGH, timestamp=clock.now()))
        assert manager.mark_recovered(old.id) is True
        assert manager.mark_recovered("missing") is False

        stats = manager.statistics()

        assert stats.total_errors == 2
        assert stats.errors_by_category == {'state': 1, 'network': 1}
        assert stats.errors_by_severity == {'medium': 1, 'high': 1}
        assert stats.recovered_errors == 1
        assert stats.recent_errors == 1

    def test_report_exception(self, manager):
        record = manager.report_exception(RuntimeError("boom"), category="state", severity="low")

        assert record.category == ErrorCategory.STATE
        assert record.severity == ErrorSeverity.LOW
        assert manager.get_errors() == [record]

    def test_report_raw_failure(self, manager):
        assert manager.report("something broke") is True
        assert manager.get_errors()[0].message == "something broke"

    def test_clear_keeps_config_and_subscribers(self, manager):
        received = []
        manager.subscribe(received.append)
        manager.configure(max_errors_per_session=7)
        manager.report(ErrorRecord(message="a"))

        manager.clear()

        assert len(manager) == 0
        assert manager.config.max_errors_per_session == 7
        assert manager.report(ErrorRecord(message="a")) is True
        assert len(received) == 2
