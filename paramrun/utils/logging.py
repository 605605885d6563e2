"""structlog setup for the run engine.

``configure_logging`` routes structlog through the standard library so one
level applies to engine, httpx and store output alike. ``LogContext`` binds
run-scoped keys (``run_id``, ``test_id``) for everything logged inside it.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structlog and the root stdlib logger.

    Args:
        level: Log level name, case-insensitive
        json_format: Render JSON lines instead of console output
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    # httpx logs every executor, store and webhook request at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class LogContext:
    """Binds keys to every log line emitted inside the block.

    Usage:
        with LogContext(run_id="run-123", test_id="login"):
            logger.info("Scheduling iterations")

    Tasks created inside the block copy the context, so iterations running
    in parallel log with the run's keys.
    """

    def __init__(self, **context):
        self.context = context
        self._tokens = None

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._tokens:
            structlog.contextvars.reset_contextvars(**self._tokens)
            self._tokens = None
