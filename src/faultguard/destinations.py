"""
Report destinations

Sinks accepted by ``StructuredLogger``: an in-memory sink for tests and
inspection, a rich console sink, a structlog sink for JSONL output, and
HTTP / webhook sinks posting through httpx.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from rich.console import Console

from .exceptions import ConfigurationError, NetworkError
from .logging import get_logger
from .reporting import LogEntry, LogLevel
from .structured_logging import console as default_console, get_structured_logger

logger = get_logger('destinations')

_STRUCTLOG_METHODS = {
    LogLevel.DEBUG: 'debug',
    LogLevel.INFO: 'info',
    LogLevel.WARN: 'warning',
    LogLevel.ERROR: 'error',
    LogLevel.FATAL: 'critical',
}

_LEVEL_STYLES = {
    LogLevel.DEBUG: 'dim',
    LogLevel.INFO: 'cyan',
    LogLevel.WARN: 'yellow',
    LogLevel.ERROR: 'red',
    LogLevel.FATAL: 'bold red',
}


def item_payload(item: Any) -> Dict[str, Any]:
    """Serialize a batch item (log entry, aggregation, record)"""
    to_dict = getattr(item, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    if isinstance(item, dict):
        return dict(item)
    return {'message': str(item)}


def _is_error_item(item: Any) -> bool:
    level = getattr(item, 'level', None)
    if isinstance(level, LogLevel):
        return level.rank >= LogLevel.ERROR.rank
    # Aggregations and records carry a severity instead of a level
    return getattr(item, 'severity', None) is not None


class BaseDestination:
    """Common enable/disable handling for destinations"""

    name = "destination"

    def __init__(self, name: Optional[str] = None, enabled: bool = True):
        if name is not None:
            self.name = name
        self.enabled = enabled

    def is_enabled(self) -> bool:
        return self.enabled

    async def send(self, batch: List[Any]) -> Any:
        raise NotImplementedError


class MemoryDestination(BaseDestination):
    """Keeps every delivered batch in memory; can be told to fail"""

    name = "memory"

    def __init__(self, name: Optional[str] = None, enabled: bool = True, fail_times: int = 0):
        super().__init__(name, enabled)
        self.batches: List[List[Any]] = []
        self.fail_times = fail_times
        self.attempts = 0

    @property
    def items(self) -> List[Any]:
        return [item for batch in self.batches for item in batch]

    async def send(self, batch: List[Any]) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise NetworkError(f"Destination {self.name} unavailable", service=self.name)
        self.batches.append(list(batch))


class ConsoleDestination(BaseDestination):
    """Prints batches with rich styling"""

    name = "console"

    def __init__(self, console: Optional[Console] = None, name: Optional[str] = None, enabled: bool = True):
        super().__init__(name, enabled)
        self.console = console or default_console

    async def send(self, batch: List[Any]) -> None:
        for item in batch:
            if isinstance(item, LogEntry):
                line = f"[{item.timestamp:.3f}] {item.level.value.upper():5} {item.message}"
                if item.context:
                    line += f" {item.context}"
                self.console.print(line, style=_LEVEL_STYLES[item.level], markup=False, highlight=False)
            else:
                self.console.print(item_payload(item))


class StructlogDestination(BaseDestination):
    """Emits each entry as a structlog event (JSONL when configured so)"""

    name = "structlog"

    def __init__(self, logger_name: str = "faultguard.reports", name: Optional[str] = None, enabled: bool = True):
        super().__init__(name, enabled)
        self.logger_name = logger_name

    async def send(self, batch: List[Any]) -> None:
        log = get_structured_logger(self.logger_name)
        for item in batch:
            payload = item_payload(item)
            if isinstance(item, LogEntry):
                fields = {k: v for k, v in payload.items() if k not in ('level', 'message')}
                getattr(log, _STRUCTLOG_METHODS[item.level])(item.message, **fields)
            else:
                message = payload.pop('message', 'aggregation')
                log.info(message, **payload)


class HttpDestination(BaseDestination):
    """Posts batches as JSON to an HTTP endpoint"""

    name = "http"

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None, name: Optional[str] = None,
                 enabled: bool = True, headers: Optional[Dict[str, str]] = None):
        super().__init__(name, enabled)
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self.client = client
        self.headers = dict(headers or {})

    def build_payload(self, batch: List[Any]) -> Dict[str, Any]:
        return {
            'type': 'logs' if batch and isinstance(batch[0], LogEntry) else 'aggregations',
            'data': [item_payload(item) for item in batch],
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    def build_headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json', **self.headers}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    async def send(self, batch: List[Any]) -> None:
        await self._post(self.build_payload(batch))

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            if self.client is not None:
                response = await self.client.post(self.endpoint, json=payload, headers=self.build_headers())
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.endpoint, json=payload, headers=self.build_headers())
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {self.endpoint} failed: {e}", service=self.name) from e

        if response.status_code >= 400:
            raise NetworkError(
                f"{self.name} destination rejected batch: HTTP {response.status_code}",
                service=self.name,
                status_code=response.status_code,
            )
        logger.debug(f"Delivered batch to {self.endpoint}", status_code=response.status_code)


class WebhookDestination(HttpDestination):
    """Posts batches to a chat webhook (generic, slack or discord format)"""

    name = "webhook"

    FORMATS = ('generic', 'slack', 'discord')

    def __init__(self, url: str, format: str = 'generic', only_errors: bool = False,
                 client: Optional[httpx.AsyncClient] = None, name: Optional[str] = None,
                 enabled: bool = True, timeout: float = 10.0):
        super().__init__(url, client=client, name=name, enabled=enabled, timeout=timeout)
        if format not in self.FORMATS:
            raise ConfigurationError(f"Unsupported webhook format: {format}", config_key="format")
        self.format = format
        self.only_errors = only_errors

    def build_payload(self, batch: List[Any]) -> Dict[str, Any]:
        if self.format == 'slack':
            return {
                'text': f"faultguard report ({len(batch)} items)",
                'attachments': [
                    {
                        'color': 'danger' if _is_error_item(item) else 'good',
                        'title': item_payload(item).get('message', ''),
                        'fields': [
                            {'title': 'Level', 'value': _label(item), 'short': True},
                            {'title': 'Time', 'value': str(getattr(item, 'timestamp', '')), 'short': True},
                        ],
                    }
                    for item in batch
                ],
            }
        if self.format == 'discord':
            return {
                'content': f"faultguard report ({len(batch)} items)",
                'embeds': [
                    {
                        'title': item_payload(item).get('message', ''),
                        'color': 0xFF0000 if _is_error_item(item) else 0x00FF00,
                        'fields': [{'name': 'Level', 'value': _label(item), 'inline': True}],
                    }
                    for item in batch
                ],
            }
        return {
            'items': [item_payload(item) for item in batch],
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    async def send(self, batch: List[Any]) -> None:
        if self.only_errors:
            batch = [item for item in batch if _is_error_item(item)]
            if not batch:
                return
        await self._post(self.build_payload(batch))


def _label(item: Any) -> str:
    level = getattr(item, 'level', None)
    if isinstance(level, LogLevel):
        return level.value
    severity = getattr(item, 'severity', None)
    return str(getattr(severity, 'value', severity or 'unknown'))
