"""
structlog setup shared by the CLI and the agent lease tool.

Modules log through ``structlog.get_logger(__name__)`` with snake_case event
names. Workers bind their slot with ``log.bind(worker=...)`` and pass the
issue id on each call, so one session's interleaved output can be filtered
per worker or per issue:

    {"event": "lock_wait", "worker": 1, "issue": "ab-7", "holder": 0, ...}

The lease tool runs as a child of the agent CLI and owns stdout for its
protocol; it passes ``stream=sys.stderr``.
"""

from typing import Any, TextIO

import structlog


def configure_logging(log_level: str = "INFO", json_logs: bool = True, stream: TextIO | None = None) -> None:
    """Install the structlog processor chain.

    Args:
        log_level: Minimum level name, case-insensitive.
        json_logs: One JSON object per line when True; the coloured console
            renderer otherwise.
        stream: Destination; stdout when omitted.
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )
