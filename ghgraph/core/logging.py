"""Structured logging for the CLI: structlog events rendered through stdlib logging."""

from __future__ import annotations

import logging
import os
import sys

import structlog

# Applied to ghgraph's own events and to records of other libraries alike.
_PROCESSORS: list[structlog.types.Processor] = [
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]

_QUIET = ("httpx", "httpcore")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(level: str | None = None) -> None:
    """Send all log output to stderr, leaving stdout to snapshot data.

    Environment:
        GHGRAPH_LOG_LEVEL  - log level (default: INFO); *level* overrides it
        GHGRAPH_LOG_FORMAT - console | json (default: console)
    """
    log_level = (level or os.environ.get("GHGRAPH_LOG_LEVEL", "INFO")).upper()
    log_format = os.environ.get("GHGRAPH_LOG_FORMAT", "console").lower()

    structlog.configure(
        processors=[*_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
