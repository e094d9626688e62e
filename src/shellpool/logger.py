from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILE_NAME = "shellpool.log"


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
) -> None:
    """Send shellpool diagnostics to a log file (default: shellpool.log)."""
    handler = logging.FileHandler(
        str(log_file or LOG_FILE_NAME),
        mode="w",
        encoding="utf-8",
        delay=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def _drop_event(_: Any, __: str, event_dict: Any) -> Any:
    raise structlog.DropEvent


def diagnostics_logger(enabled: bool, **context: Any) -> Any:
    """
    Logger for one pool. With diagnostics disabled every event is dropped
    before it reaches the stdlib handlers.
    """
    if enabled:
        return logger.bind(**context)
    return structlog.wrap_logger(None, processors=[_drop_event])


structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(logging.NOTSET),
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.dev.ConsoleRenderer(colors=False),
    ],
)

logger: structlog.BoundLogger = structlog.get_logger("shellpool")
