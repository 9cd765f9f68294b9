"""
Logging infrastructure for faultguard

Provides the internal diagnostics logger used by every component of the
core, a JSON formatter for machine-readable output, and ``setup_logging``
to install file and console handlers from settings.
"""

import json
import logging
import logging.handlers
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class StructuredFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, default=str)


class CoreLogger:
    """Logger wrapper that accepts keyword context on every call"""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def info(self, message: str, **kwargs):
        """Log info message with optional context"""
        extra = {'extra_fields': kwargs} if kwargs else {}
        self.logger.info(message, extra=extra)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context"""
        extra = {'extra_fields': kwargs} if kwargs else {}
        self.logger.warning(message, extra=extra)

    def error(self, message: str, exception: Optional[BaseException] = None, **kwargs):
        """Log error message with optional exception and context"""
        extra = {'extra_fields': kwargs} if kwargs else {}
        if exception:
            self.logger.error(message, exc_info=exception, extra=extra)
        else:
            self.logger.error(message, extra=extra)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context"""
        extra = {'extra_fields': kwargs} if kwargs else {}
        self.logger.debug(message, extra=extra)

    @contextmanager
    def timer(self, operation: str, **kwargs):
        """Context manager for timing operations"""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self.debug(f"Operation '{operation}' completed",
                       duration=duration,
                       operation=operation,
                       **kwargs)


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Set up logging infrastructure based on configuration

    Args:
        config: Configuration dictionary containing a ``logging`` section
            (level, directory, max_file_size_mb, backup_count, console,
            structured)
    """
    log_config = config.get('logging', {}) or {}

    log_level = str(log_config.get('level', 'INFO')).upper()
    directory = log_config.get('directory')
    max_file_size = int(log_config.get('max_file_size_mb', 10)) * 1024 * 1024
    backup_count = int(log_config.get('backup_count', 5))
    console_logging = log_config.get('console', True)
    structured_format = log_config.get('structured', True)

    # Only configure the package logger; the host application owns the root
    package_logger = logging.getLogger('faultguard')
    package_logger.setLevel(getattr(logging, log_level, logging.INFO))
    package_logger.handlers.clear()

    if structured_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    if directory:
        log_dir = Path(directory)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / 'faultguard.log',
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / 'faultguard_errors.log',
            maxBytes=max_file_size,
            backupCount=backup_count
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        package_logger.addHandler(error_handler)

    if console_logging:
        console_handler = logging.StreamHandler()
        if structured_format:
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(levelname)s - %(message)s'
            ))
        else:
            console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    logger = CoreLogger('faultguard.setup')
    logger.info("Logging system initialized",
                log_level=log_level,
                log_directory=str(directory) if directory else None,
                structured_format=structured_format)


def get_logger(name: str) -> CoreLogger:
    """Get a faultguard logger instance"""
    if not name.startswith('faultguard'):
        name = f'faultguard.{name}'
    return CoreLogger(name)
