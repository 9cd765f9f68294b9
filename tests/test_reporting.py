"""
Tests for the structured logger and report destinations.
"""

import asyncio
import io
import json
import logging

import httpx
import pytest
from rich.console import Console

from faultguard.aggregation import ErrorAggregator
from faultguard.destinations import (
    ConsoleDestination, HttpDestination, MemoryDestination, StructlogDestination, WebhookDestination
)
from faultguard.exceptions import ConfigurationError, NetworkError
from faultguard.models import ErrorRecord
from faultguard.reporting import (
    REDACTED, LogLevel, ReportingConfig, StructuredLogger, sanitize_context
)
from faultguard.structured_logging import setup_structured_logging


class TestSanitizeContext:
    """Test redaction of sensitive context keys"""

    def test_redacts_sensitive_keys(self):
        clean = sanitize_context({'username': 'john', 'password': 'secret123'})

        assert clean == {'username': 'john', 'password': REDACTED}

    def test_substring_and_case_insensitive(self):
        clean = sanitize_context({'X-Auth-Token': 'abc', 'userApiKey': 'k', 'Authorization': 'Bearer x'})

        assert set(clean.values()) == {REDACTED}

    def test_nested_structures(self):
        """Test dicts inside dicts and lists are sanitized"""
        clean = sanitize_context({
            'request': {'headers': {'authorization': 'Bearer x'}, 'path': '/login'},
            'accounts': [{'name': 'a', 'secret': 's'}],
        })

        assert clean['request']['headers']['authorization'] == REDACTED
        assert clean['request']['path'] == '/login'
        assert clean['accounts'] == [{'name': 'a', 'secret': REDACTED}]

    def test_input_not_mutated(self):
        context = {'password': 'secret123'}

        sanitize_context(context)

        assert context == {'password': 'secret123'}

    def test_custom_keys(self):
        assert sanitize_context({'ssn': '123'}, sensitive_keys=['ssn']) == {'ssn': REDACTED}

    def test_empty_and_non_dict(self):
        assert sanitize_context(None) == {}
        assert sanitize_context("raw") == {'value': 'raw'}


class TestStructuredLogger:
    """Test leveled logging and batching"""

    def test_level_filtering(self, clock):
        """Test entries below the configured level are dropped"""
        log = StructuredLogger(ReportingConfig(log_level='warn'), clock=clock)

        assert log.debug("debug") is None
        assert log.info("info") is None
        log.warn("warn")
        log.error("error")

        assert [(e.level, e.message) for e in log.get_entries()] == [
            (LogLevel.WARN, "warn"),
            (LogLevel.ERROR, "error"),
        ]

    def test_context_sanitized_at_write_time(self, clock):
        log = StructuredLogger(clock=clock)

        entry = log.info("login", {'username': 'john', 'password': 'secret123'})

        assert entry.context == {'username': 'john', 'password': REDACTED}
        assert log.get_entries()[0].context['password'] == REDACTED

    def test_entry_metadata(self, clock):
        log = StructuredLogger(clock=clock, name="checkout", session_id="s-1",
                               enable_user_tracking=True, tags={'env': 'test'})
        log.set_user_id("u-9")

        entry = log.error("failed", tags={'region': 'eu'})

        assert entry.timestamp == clock.now()
        assert entry.logger_name == "checkout"
        assert entry.session_id == "s-1"
        assert entry.user_id == "u-9"
        assert entry.tags == {'env': 'test', 'region': 'eu'}

    def test_user_not_tracked_by_default(self, clock):
        log = StructuredLogger(clock=clock)
        log.set_user_id("u-9")

        assert log.info("hello").user_id is None

    def test_disabled(self, clock):
        log = StructuredLogger(clock=clock, enabled=False)

        assert log.error("ignored") is None
        assert log.get_entries() == []

    def test_named_logger(self, clock):
        log = StructuredLogger(clock=clock)

        log.named("payments").warn("slow")

        assert log.get_entries()[0].logger_name == "payments"

    def test_history_is_capped(self, clock):
        log = StructuredLogger(clock=clock, max_entries=10, batch_size=1000)

        for i in range(11):
            log.info(f"entry {i}")

        entries = log.get_entries()
        assert len(entries) == 5
        assert entries[-1].message == "entry 10"

    def test_get_entries_by_level_and_clear(self, clock):
        log = StructuredLogger(clock=clock)
        log.info("a")
        log.error("b")

        assert [e.message for e in log.get_entries(level="error")] == ["b"]

        log.clear()
        assert log.get_entries() == []
        assert log.get_pending() == []

    def test_message_is_stringified(self, clock):
        log = StructuredLogger(clock=clock)

        assert log.info(42).message == "42"

    @pytest.mark.asyncio
    async def test_flush_delivers_in_registration_order(self, clock):
        """Test every enabled destination receives the batch"""
        order = []

        class Recorder(MemoryDestination):
            async def send(self, batch):
                order.append(self.name)
                await super().send(batch)

        first, second = Recorder(name="first"), Recorder(name="second")
        disabled = MemoryDestination(name="disabled", enabled=False)
        log = StructuredLogger(destinations=[first, disabled, second], clock=clock)
        log.info("one")
        log.info("two")

        assert await log.flush() == 2

        assert order == ["first", "second"]
        assert [e.message for e in first.items] == ["one", "two"]
        assert disabled.batches == []
        assert log.get_pending() == []

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(self, clock, memory_destination):
        log = StructuredLogger(destinations=[memory_destination], clock=clock, batch_size=3)

        log.info("a")
        log.info("b")
        assert not log.flush_due()
        log.info("c")

        await asyncio.sleep(0)

        assert [len(batch) for batch in memory_destination.batches] == [3]

    @pytest.mark.asyncio
    async def test_batch_timeout_triggers_flush(self, clock, memory_destination):
        """Test the oldest pending entry's age triggers delivery"""
        log = StructuredLogger(destinations=[memory_destination], clock=clock, batch_timeout=30.0)
        log.info("a")

        clock.advance(29.0)
        assert await log.tick() == 0

        clock.advance(1.0)
        assert await log.tick() == 1
        assert len(memory_destination.items) == 1

    @pytest.mark.asyncio
    async def test_flush_splits_into_batches(self, clock, memory_destination):
        log = StructuredLogger(clock=clock, batch_size=2)
        for i in range(5):
            log.info(str(i))
        log.add_destination(memory_destination)

        await log.flush()

        assert [len(batch) for batch in memory_destination.batches] == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_delivery_retried(self, clock):
        """Test transient destination failures are retried"""
        flaky = MemoryDestination(fail_times=2)
        log = StructuredLogger(destinations=[flaky], clock=clock, max_retries=3, retry_base_delay=0.5)
        log.error("boom")

        await log.flush()

        assert flaky.attempts == 3
        assert len(flaky.items) == 1
        assert clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_contained(self, clock, memory_destination):
        """Test a dead destination does not block the others"""
        dead = MemoryDestination(name="dead", fail_times=100)
        log = StructuredLogger(destinations=[dead, memory_destination], clock=clock, max_retries=2)
        log.error("boom")

        assert await log.flush() == 1

        assert dead.attempts == 2
        assert len(memory_destination.items) == 1

    @pytest.mark.asyncio
    async def test_remove_destination(self, clock, memory_destination):
        log = StructuredLogger(destinations=[memory_destination], clock=clock)

        assert log.remove_destination("memory") is True
        assert log.remove_destination("memory") is False
        assert log.destinations == []

    def test_size_trigger_without_loop_stays_pending(self, clock, memory_destination, caplog):
        """Test a sync host keeps the batch pending and sees why"""
        caplog.set_level(logging.DEBUG, logger="faultguard.reporting")
        log = StructuredLogger(destinations=[memory_destination], clock=clock, batch_size=2)

        log.info("a")
        log.info("b")

        assert len(log.get_pending()) == 2
        assert memory_destination.batches == []
        assert any("No running event loop" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_delivery_is_timed(self, clock, memory_destination, caplog):
        caplog.set_level(logging.DEBUG, logger="faultguard.reporting")
        log = StructuredLogger(destinations=[memory_destination], clock=clock)
        log.info("timed")

        await log.flush()

        [record] = [r for r in caplog.records if r.getMessage() == "Operation 'deliver' completed"]
        assert record.extra_fields['destination'] == "memory"
        assert record.extra_fields['batch_size'] == 1

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(self, clock, memory_destination):
        log = StructuredLogger(destinations=[memory_destination], clock=clock)
        log.start()
        log.info("pending")

        await log.stop()

        assert [e.message for e in memory_destination.items] == ["pending"]


class TestDestinations:
    """Test destination implementations"""

    @pytest.mark.asyncio
    async def test_console_destination(self, clock):
        output = io.StringIO()
        destination = ConsoleDestination(console=Console(file=output, width=200))
        log = StructuredLogger(destinations=[destination], clock=clock)
        log.error("disk full", {'path': '/var'})

        await log.flush()

        assert "ERROR" in output.getvalue()
        assert "disk full" in output.getvalue()

    @pytest.mark.asyncio
    async def test_structlog_destination(self, clock):
        """Test entries are rendered as JSON lines"""
        stream = io.StringIO()
        setup_structured_logging(stream=stream, level="DEBUG")
        log = StructuredLogger(destinations=[StructlogDestination()], clock=clock)
        log.warn("slow query", {'duration': 2.5})

        await log.flush()

        event = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert event['event'] == "slow query"
        assert event['level'] == "warning"
        assert event['context'] == {'duration': 2.5}

    @pytest.mark.asyncio
    async def test_http_destination(self, clock):
        """Test batches are posted as JSON"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            destination = HttpDestination("https://logs.example.com/ingest", api_key="k", client=client)
            await destination.send([StructuredLogger(clock=clock).error("boom")])

        [request] = requests
        body = json.loads(request.content)
        assert request.headers['Authorization'] == "Bearer k"
        assert body['type'] == "logs"
        assert body['data'][0]['message'] == "boom"

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self, clock):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
            destination = HttpDestination("https://logs.example.com/ingest", client=client)

            with pytest.raises(NetworkError) as exc_info:
                await destination.send([StructuredLogger(clock=clock).error("boom")])

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_webhook_only_errors(self, clock):
        """Test non-error entries are filtered before posting"""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(204)

        log = StructuredLogger(clock=clock, log_level="debug")
        info = log.info("fine")
        error = log.error("broken")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            destination = WebhookDestination("https://hooks.example.com/x", format="slack",
                                             only_errors=True, client=client)
            await destination.send([info])
            await destination.send([info, error])

        [payload] = requests
        assert [a['title'] for a in payload['attachments']] == ["broken"]
        assert payload['attachments'][0]['color'] == "danger"

    @pytest.mark.asyncio
    async def test_webhook_discord_aggregations(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200)

        aggregator = ErrorAggregator()
        aggregation = aggregator.aggregate_error(ErrorRecord(message="db down"))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            destination = WebhookDestination("https://hooks.example.com/x", format="discord", client=client)
            await destination.send([aggregation])

        assert requests[0]['embeds'][0]['title'] == "db down"

    def test_webhook_rejects_unknown_format(self):
        with pytest.raises(ConfigurationError):
            WebhookDestination("https://hooks.example.com/x", format="teams")
