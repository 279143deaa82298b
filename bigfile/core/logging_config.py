# bigfile/core/logging_config.py
import logging
import sys

import structlog

from bigfile.core.settings import settings

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,  # request_id uit RequestIdMiddleware
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _renderer():
    if settings.LOG_FORMAT.lower() == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging() -> None:
    """
    Configure structlog + standaard logging.
    Standaard JSON naar stdout; ``LOG_FORMAT=console`` voor lokaal leesbare logs.
    Stdlib loggers (storage, retry, botocore) lopen via dezelfde renderer.
    """
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *_SHARED_PROCESSORS],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    # botocore is erg praatgraag op DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# Globale logger die je overal kunt importeren
logger = structlog.get_logger("bigfile")
