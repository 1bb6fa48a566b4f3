"""Structured logging for the intake service, built on structlog."""

from __future__ import annotations

import logging
import sys

import structlog

# Third-party loggers that are noisy at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "aiosqlite")


def setup_logging(*, json: bool = True, level: str = "INFO") -> None:
    """Route structlog and stdlib logging through one stdout handler.

    ``json=True`` renders JSON lines for log shippers; ``json=False``
    uses the colourised console renderer for local runs.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_run(run_id: str, **extra: object) -> None:
    """Attach *run_id* (and any extra keys) to every log line in this context."""
    structlog.contextvars.bind_contextvars(run_id=run_id, **extra)


def unbind_run() -> None:
    structlog.contextvars.unbind_contextvars("run_id", "job_id")
