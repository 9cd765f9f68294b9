"""
Tests for service wiring and error reports.
"""

import pytest

from faultguard.destinations import HttpDestination, MemoryDestination, WebhookDestination
from faultguard.exceptions import NetworkError, RenderError
from faultguard.models import ErrorRecord
from faultguard.reporting import LogLevel
from faultguard.services import ResilienceServices, build_destinations, setup_error_reporting
from faultguard.settings import FaultguardSettings
from faultguard.aggregation import ErrorAggregator
from faultguard.reporting import StructuredLogger


class TestSetupErrorReporting:
    """Test manager → aggregator + logger forwarding"""

    def test_reports_are_aggregated_and_logged(self, manager, clock):
        aggregator = ErrorAggregator(clock=clock)
        log = StructuredLogger(clock=clock)
        setup_error_reporting(manager, aggregator, log)

        manager.report(ErrorRecord(message="db down", component_id="orders", timestamp=clock.now()))

        assert aggregator.get_top_errors(1)[0].affected_components == ["orders"]
        [entry] = log.get_entries()
        assert entry.level == LogLevel.ERROR
        assert entry.message == "db down"
        assert entry.context['component_id'] == "orders"

    def test_unsubscribe(self, manager, clock):
        aggregator = ErrorAggregator(clock=clock)
        unsubscribe = setup_error_reporting(manager, aggregator, StructuredLogger(clock=clock))

        unsubscribe()
        manager.report(ErrorRecord(message="db down"))

        assert aggregator.get_aggregations() == []


class TestResilienceServices:
    """Test building services from settings"""

    def test_from_settings(self, clock):
        settings = FaultguardSettings(manager={'max_errors_per_session': 2})

        services = ResilienceServices.from_settings(settings, clock=clock, destinations=[])

        assert services.error_manager.config.max_errors_per_session == 2
        assert services.structured_logger.destinations == []
        assert services.reliability.clock is clock

    def test_build_destinations(self):
        settings = FaultguardSettings(reporting={
            'http_endpoint': "https://logs.example.com",
            'webhook_url': "https://hooks.example.com/x",
            'webhook_format': "slack",
        })

        destinations = build_destinations(settings)

        assert [type(d) for d in destinations] == [HttpDestination, WebhookDestination]
        assert destinations[1].only_errors is True

    @pytest.mark.asyncio
    async def test_protect_reports_terminal_failures(self, clock):
        """Test protected calls flow into manager, aggregator and logger"""
        settings = FaultguardSettings(retry={'max_attempts': 2, 'base_delay': 0.1})
        services = ResilienceServices.from_settings(settings, clock=clock, destinations=[])

        async def charge():
            raise NetworkError("gateway unreachable")

        protected = services.protect(charge, fallback="queued")

        assert await protected() == "queued"
        assert clock.sleeps == [0.1]
        assert services.reliability.get_circuit_breaker("charge").get_metrics().failure_count == 1
        assert services.aggregator.get_top_errors(1)[0].message == "gateway unreachable"

    def test_boundary_reports_to_manager(self, clock):
        services = ResilienceServices.from_settings(clock=clock, destinations=[])

        def view():
            raise RenderError("template missing")

        boundary = services.boundary(view, fallback="<fallback>", boundary_id="page")

        assert boundary.render() == "<fallback>"
        assert services.error_manager.by_component("page")[0].message == "template missing"

    def test_error_report(self, clock):
        """Test the report bundles logs, aggregations, statistics and patterns"""
        services = ResilienceServices.from_settings(clock=clock, destinations=[])
        services.error_manager.report(ErrorRecord(message="a", timestamp=clock.now()))
        clock.advance(0.5)
        services.error_manager.report(ErrorRecord(message="b", timestamp=clock.now()))

        report = services.error_report()

        assert [log['message'] for log in report['logs']] == ["a", "b"]
        assert {a['message'] for a in report['aggregations']} == {"a", "b"}
        assert report['statistics']['total_errors'] == 2
        assert len(report['patterns']['cascades']) == 1

    @pytest.mark.asyncio
    async def test_publish_aggregations_and_shutdown(self, clock):
        destination = MemoryDestination()
        services = ResilienceServices.from_settings(clock=clock, destinations=[destination])
        services.error_manager.report(ErrorRecord(message="a", timestamp=clock.now()))

        assert await services.publish_aggregations() == 1
        assert destination.batches[0][0].message == "a"

        await services.shutdown()

        assert destination.items[-1].message == "a"
        services.error_manager.report(ErrorRecord(message="after shutdown"))
        assert len(services.aggregator) == 1
