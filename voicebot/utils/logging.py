"""
Logging setup.

structlog owns event processing; the standard library owns the handlers.
Both structlog events and records from third-party loggers (httpx,
pygame, google) pass through the same ``ProcessorFormatter``, so every
line in a log file is one JSON object. Context bound with
``structlog.contextvars`` (the active ``call_id``) is merged into every
event logged while it is bound.
"""

import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union
import structlog

from ..config.settings import LoggingSettings


# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def _shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _formatter(json_output: bool) -> structlog.stdlib.ProcessorFormatter:
    if json_output:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def setup_logging(
    config: Optional[LoggingSettings] = None,
    debug: bool = False,
    log_file: Optional[bool] = None,
    log_dir: Optional[Union[str, Path]] = None,
) -> Optional[Path]:
    """
    Configure structlog and the root logger.

    Console output goes to stderr so stdout stays free for the transcript.
    The console renders for humans when ``config.format`` is ``dev`` or
    stderr is a terminal; files are always JSON and rotate at
    ``config.file_rotation_mb``.

    Args:
        config: Logging settings; defaults apply when omitted
        debug: Force DEBUG level
        log_file: Overrides ``config.file_enabled``
        log_dir: Directory for log files, ``./logs`` by default

    Returns:
        Path of the log file, or None when file logging is disabled
    """
    config = config or LoggingSettings()
    level_name = "DEBUG" if debug else config.level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    write_file = config.file_enabled if log_file is None else log_file
    console_json = config.format == "json" or (config.format != "dev" and not sys.stderr.isatty())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_formatter(json_output=console_json))
    root_logger.addHandler(console_handler)

    log_path = None
    if write_file:
        directory = Path(log_dir or "./logs")
        directory.mkdir(parents=True, exist_ok=True)
        log_path = directory / f"voicebot_{datetime.now():%Y-%m-%d_%H-%M-%S}.log"

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=config.file_rotation_mb * 1024 * 1024,
            backupCount=config.file_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(_formatter(json_output=True))
        root_logger.addHandler(file_handler)

    root_logger.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if log_path is not None:
        structlog.get_logger("voicebot").info(
            "Logging configured", log_file=str(log_path), log_level=level_name
        )
    return log_path
