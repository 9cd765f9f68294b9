"""
Structured logging with JSONL output

Provides dual-mode output for report batches:
- Human-readable console output with Rich formatting
- Machine-readable JSONL files through structlog for parsing and analysis
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, TextIO

import structlog
from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

def setup_structured_logging(
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    console_output: bool = False,
    jsonl_output: bool = True,
    stream: Optional[TextIO] = None,
) -> Optional[Path]:
    """
    Setup structlog with JSONL output

    Args:
        log_dir: Directory for the JSONL file; when omitted, JSON lines go to
            ``stream`` (stdout by default)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_output: Also route the ``faultguard`` stdlib logger through Rich
        jsonl_output: Render events as JSON; plain key/value otherwise
        stream: Explicit output stream, mainly for tests

    Returns:
        Path of the JSONL file when one was created
    """
    jsonl_path = None
    output = stream or sys.stdout

    if log_dir is not None and stream is None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        jsonl_path = log_dir / f"reports_{timestamp}.jsonl"
        output = open(jsonl_path, 'a', encoding='utf-8')

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if jsonl_output:
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event"]))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=False,
    )

    if console_output:
        package_logger = logging.getLogger('faultguard')
        package_logger.setLevel(level.upper())
        package_logger.addHandler(RichHandler(rich_tracebacks=True, console=console))

    return jsonl_path


def get_structured_logger(name: str = "faultguard.reports", **initial_values: Any):
    """Get a structlog logger bound to ``name``"""
    return structlog.get_logger(name, **initial_values)
