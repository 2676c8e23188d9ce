import logging
import os
import sys

import structlog

DB_URL = os.getenv("VITALSTREAM_DB_URL", "sqlite:///vitalstream.db")
TICK_INTERVAL_MS = int(os.getenv("VITALSTREAM_TICK_MS", "1000"))
LOG_LEVEL = os.getenv("VITALSTREAM_LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("VITALSTREAM_LOG_JSON", "0") == "1"
WS_ORIGIN = os.getenv("WS_ORIGIN", "*")
EXPORT_DIR = os.getenv("VITALSTREAM_EXPORT_DIR", "exports")

_configured = False


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Route structlog through stdlib logging. Safe to call more than once."""
    global _configured
    if _configured:
        return

    level_name = (level or LOG_LEVEL).upper()
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level_name, logging.INFO),
    )

    if json_logs is None:
        json_logs = LOG_JSON
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
