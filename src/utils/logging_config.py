"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from src.core.config import logging_config


def setup_logging(log_file: Optional[str] = None, log_format: Optional[str] = None):
    """Configure structured logging.

    Args:
        log_file: Overrides LOG_FILE; an empty string disables the file handler
        log_format: "json" or "console"; overrides LOG_FORMAT
    """
    log_file = logging_config.log_file if log_file is None else log_file
    log_format = log_format or logging_config.log_format
    level = getattr(logging, logging_config.log_level.upper())

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level
    )

    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

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

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        logging.getLogger().addHandler(file_handler)
