"""
Structured, leveled event logging with batched delivery

``StructuredLogger`` records leveled entries with sanitized context, keeps a
bounded in-memory history and ships pending entries in batches to pluggable
destinations. Delivery failures are retried through ``RetryPolicy`` and then
logged; they never reach the caller that emitted the entry.
"""

import asyncio
import threading
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Union, runtime_checkable

from .clock import Clock, default_clock
from .logging import get_logger
from .reliability import RetryConfig, RetryPolicy

logger = get_logger('reporting')

REDACTED = "[REDACTED]"

DEFAULT_SENSITIVE_KEYS = ("password", "token", "secret", "apikey", "api_key", "authorization")


class LogLevel(str, Enum):
    """Log levels ordered from DEBUG to FATAL"""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self.value]

    @classmethod
    def coerce(cls, value: Any) -> 'LogLevel':
        if isinstance(value, cls):
            return value
        text = str(getattr(value, 'value', value)).strip().lower()
        text = _LEVEL_ALIASES.get(text, text)
        try:
            return cls(text)
        except ValueError:
            return cls.INFO


_LEVEL_RANK = {"debug": 0, "info": 1, "warn": 2, "error": 3, "fatal": 4}

_LEVEL_ALIASES = {"warning": "warn", "critical": "fatal"}


def _is_sensitive(key: Any, fragments: Sequence[str]) -> bool:
    name = str(key).lower()
    return any(fragment in name for fragment in fragments)


def sanitize_context(context: Optional[Dict[str, Any]],
                     sensitive_keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS) -> Dict[str, Any]:
    """
    Return a copy of ``context`` with sensitive values redacted.

    A key is sensitive when its lowercased name contains any of the
    fragments. Nested dicts and lists are walked recursively.
    """
    fragments = tuple(str(k).lower() for k in sensitive_keys)
    if not context:
        return {}
    if not isinstance(context, dict):
        return {'value': context}
    return _sanitize_value(context, fragments)


def _sanitize_value(value: Any, fragments: Sequence[str]) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive(key, fragments) else _sanitize_value(item, fragments)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item, fragments) for item in value]
    return value


@dataclass(frozen=True)
class LogEntry:
    """One recorded log event; context is already sanitized"""
    level: LogLevel
    message: str
    timestamp: float
    context: Dict[str, Any] = field(default_factory=dict)
    logger_name: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"log_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'level': self.level.value,
            'message': self.message,
            'timestamp': self.timestamp,
            'context': dict(self.context),
            'logger_name': self.logger_name,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'tags': dict(self.tags),
        }


@dataclass
class ReportingConfig:
    """Configuration for ``StructuredLogger``"""
    enabled: bool = True
    log_level: Union[LogLevel, str] = LogLevel.INFO
    batch_size: int = 50
    batch_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    max_entries: int = 1000
    enable_context_capture: bool = True
    enable_user_tracking: bool = False
    sensitive_keys: Sequence[str] = DEFAULT_SENSITIVE_KEYS
    tags: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.log_level = LogLevel.coerce(self.log_level)
        self.batch_size = max(1, int(self.batch_size))
        self.batch_timeout = max(0.0, float(self.batch_timeout))
        self.max_retries = max(1, int(self.max_retries))
        self.max_entries = max(2, int(self.max_entries))
        self.sensitive_keys = tuple(self.sensitive_keys)


@runtime_checkable
class ReportDestination(Protocol):
    """Sink that receives batches of log entries or aggregations"""
    name: str

    async def send(self, batch: List[Any]) -> Any:
        ...

    def is_enabled(self) -> bool:
        ...


class StructuredLogger:
    """Leveled logger with sanitized context and batched delivery"""

    def __init__(self, config: Optional[ReportingConfig] = None,
                 destinations: Optional[Iterable[ReportDestination]] = None,
                 clock: Optional[Clock] = None, name: str = "faultguard",
                 session_id: Optional[str] = None, **overrides: Any):
        config = config or ReportingConfig()
        self.config = replace(config, **overrides) if overrides else config
        self.clock = clock or default_clock
        self.name = name
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.user_id: Optional[str] = None

        self._destinations: List[ReportDestination] = list(destinations or [])
        self._entries: List[LogEntry] = []
        self._pending: List[LogEntry] = []
        self._pending_since: Optional[float] = None
        self._lock = threading.RLock()
        self._flush_tasks: Set[asyncio.Task] = set()
        self._timer_task: Optional[asyncio.Task] = None
        self._retry_policy = RetryPolicy(
            RetryConfig(max_attempts=self.config.max_retries, base_delay=self.config.retry_base_delay),
            clock=self.clock,
            name='report_delivery',
        )

    def debug(self, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, message, context, **kwargs)

    def warn(self, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, message, context, **kwargs)

    warning = warn

    def error(self, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[LogEntry]:
        return self.log(LogLevel.ERROR, message, context, **kwargs)

    def fatal(self, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> Optional[LogEntry]:
        return self.log(LogLevel.FATAL, message, context, **kwargs)

    def log(self, level: Union[LogLevel, str], message: Any, context: Optional[Dict[str, Any]] = None,
            logger_name: Optional[str] = None, tags: Optional[Dict[str, str]] = None) -> Optional[LogEntry]:
        """
        Record an entry at ``level``.

        Returns the stored entry, or None when logging is disabled or the
        level is below the configured threshold. Never raises.
        """
        level = LogLevel.coerce(level)
        if not self.config.enabled or level.rank < self.config.log_level.rank:
            return None

        try:
            entry = self._build_entry(level, message, context, logger_name, tags)
        except Exception as e:
            logger.error("Failed to build log entry", exception=e)
            return None

        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self.config.max_entries:
                self._entries = self._entries[-(self.config.max_entries // 2):]

            if not self._pending:
                self._pending_since = entry.timestamp
            self._pending.append(entry)
            due = self._flush_due_locked(entry.timestamp)

        if due:
            self._schedule_flush()
        return entry

    def add_destination(self, destination: ReportDestination) -> None:
        with self._lock:
            self._destinations.append(destination)

    def remove_destination(self, name: str) -> bool:
        with self._lock:
            before = len(self._destinations)
            self._destinations = [d for d in self._destinations if d.name != name]
            return len(self._destinations) != before

    @property
    def destinations(self) -> List[ReportDestination]:
        with self._lock:
            return list(self._destinations)

    def set_user_id(self, user_id: Optional[str]) -> None:
        self.user_id = user_id

    def named(self, logger_name: str) -> 'NamedLogger':
        """Return a view that stamps ``logger_name`` on every entry"""
        return NamedLogger(self, logger_name)

    def get_entries(self, level: Optional[Union[LogLevel, str]] = None) -> List[LogEntry]:
        with self._lock:
            entries = list(self._entries)
        if level is None:
            return entries
        level = LogLevel.coerce(level)
        return [entry for entry in entries if entry.level == level]

    def get_pending(self) -> List[LogEntry]:
        with self._lock:
            return list(self._pending)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._pending.clear()
            self._pending_since = None

    def flush_due(self) -> bool:
        with self._lock:
            return self._flush_due_locked(self.clock.now())

    async def tick(self) -> int:
        """Flush if the size or age threshold has been reached"""
        if self.flush_due():
            return await self.flush()
        return 0

    async def flush(self) -> int:
        """Deliver every pending entry, one batch at a time; returns the count"""
        delivered = 0
        while True:
            with self._lock:
                if not self._pending:
                    self._pending_since = None
                    break
                batch = self._pending[:self.config.batch_size]
                del self._pending[:self.config.batch_size]
                self._pending_since = self._pending[0].timestamp if self._pending else None
                destinations = list(self._destinations)

            await self._deliver(batch, destinations)
            delivered += len(batch)
        return delivered

    async def send_batch(self, batch: List[Any]) -> None:
        """Deliver an arbitrary batch (e.g. aggregations) to the destinations"""
        await self._deliver(list(batch), self.destinations)

    def start(self) -> None:
        """Start the periodic flush timer on the running loop"""
        if self._timer_task is None or self._timer_task.done():
            self._timer_task = asyncio.get_running_loop().create_task(self._run_timer())

    async def stop(self) -> None:
        """Stop the flush timer and deliver whatever is still pending"""
        task, self._timer_task = self._timer_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._flush_tasks):
            await pending
        await self.flush()

    def _build_entry(self, level: LogLevel, message: Any, context: Optional[Dict[str, Any]],
                     logger_name: Optional[str], tags: Optional[Dict[str, str]]) -> LogEntry:
        if self.config.enable_context_capture:
            clean_context = sanitize_context(context, self.config.sensitive_keys)
        else:
            clean_context = {}

        merged_tags = dict(self.config.tags)
        if tags:
            merged_tags.update(tags)

        return LogEntry(
            level=level,
            message=message if isinstance(message, str) else str(message),
            timestamp=self.clock.now(),
            context=clean_context,
            logger_name=logger_name or self.name,
            session_id=self.session_id,
            user_id=self.user_id if self.config.enable_user_tracking else None,
            tags=merged_tags,
        )

    def _flush_due_locked(self, now: float) -> bool:
        if not self._pending:
            return False
        if len(self._pending) >= self.config.batch_size:
            return True
        return self._pending_since is not None and now - self._pending_since >= self.config.batch_timeout

    def _schedule_flush(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; batch stays pending until flush() is awaited",
                         pending=len(self._pending))
            return
        task = loop.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _run_timer(self) -> None:
        while True:
            await self.clock.sleep(self.config.batch_timeout)
            await self.tick()

    async def _deliver(self, batch: List[Any], destinations: List[ReportDestination]) -> None:
        for destination in destinations:
            try:
                if not destination.is_enabled():
                    continue
                with logger.timer("deliver", destination=getattr(destination, 'name', None),
                                  batch_size=len(batch)):
                    await self._retry_policy.execute(destination.send, batch)
            except Exception as e:
                logger.error(f"Failed to deliver batch to destination {getattr(destination, 'name', destination)}",
                             exception=e,
                             batch_size=len(batch))


class NamedLogger:
    """Thin view over a ``StructuredLogger`` that fixes the logger name"""

    def __init__(self, parent: StructuredLogger, logger_name: str):
        self.parent = parent
        self.logger_name = logger_name

    def log(self, level: Union[LogLevel, str], message: Any, context: Optional[Dict[str, Any]] = None,
            tags: Optional[Dict[str, str]] = None) -> Optional[LogEntry]:
        return self.parent.log(level, message, context, logger_name=self.logger_name, tags=tags)

    def debug(self, message: str, context: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.DEBUG, message, context)

    def info(self, message: str, context: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.INFO, message, context)

    def warn(self, message: str, context: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.WARN, message, context)

    def error(self, message: str, context: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.ERROR, message, context)

    def fatal(self, message: str, context: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(LogLevel.FATAL, message, context)
