"""Logging setup shared by the supervisor and every worker process.

Both stdlib loggers and structlog loggers end up in one stderr handler.
Worker stdout carries the message protocol, so nothing may log there.
"""

from __future__ import annotations

import errno
import logging
import sys

import structlog


class SafeStreamHandler(logging.StreamHandler):
    """Stream handler that drops records when the stream has gone away.

    A worker whose parent closed its stderr pipe must keep running until it
    is told to stop; a failed log write is not a reason to die.
    """

    def handleError(self, record: logging.LogRecord) -> None:
        exc = sys.exc_info()[1]
        if isinstance(exc, BrokenPipeError):
            return
        if isinstance(exc, OSError) and exc.errno in (errno.EPIPE, errno.EBADF):
            return
        super().handleError(record)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Install the stderr handler and route structlog through stdlib logging."""
    handler = SafeStreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
