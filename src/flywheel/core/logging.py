"""
Structured logging setup using structlog.

Every flywheel record carries ``service`` and ``mode`` (dry_run or live) so
simulated runs can never be mistaken for real fund movements in shared
log storage.
"""
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import structlog

# Libraries that log every SQL statement, HTTP request or access line at INFO
NOISY_LOGGERS = ("aiosqlite", "httpx", "httpcore", "aiohttp.access")


def render_decimals(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Render Decimal amounts as plain strings.

    SOL and token amounts are Decimals; JSON output would otherwise show
    them as ``Decimal('0.5')``.
    """
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    dry_run: Optional[bool] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structured logging for the flywheel service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON formatted logs
        log_file: Optional file path for log output; parent directories are created
        dry_run: When set, every record is tagged with the run mode

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Library chatter only when explicitly debugging
    library_level = log_level if log_level <= logging.DEBUG else max(log_level, logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        render_decimals,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    context: dict[str, Any] = {"service": "flywheel"}
    if dry_run is not None:
        context["mode"] = "dry_run" if dry_run else "live"
    structlog.contextvars.bind_contextvars(**context)

    return structlog.get_logger("flywheel")
