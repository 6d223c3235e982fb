# SPDX-License-Identifier: BSD-3-Clause
# Copyright (c) 2025 Scipp contributors (https://github.com/scipp)
"""Structured logging configuration for harness-driven test runs."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV_VAR = 'KOP_HARNESS_LOG_LEVEL'
JSON_MAX_BYTES = 10 * 1024 * 1024
JSON_BACKUP_COUNT = 5


def level_from_env(default: int = logging.INFO) -> int:
    """Log level named by ``KOP_HARNESS_LOG_LEVEL``, or ``default``."""
    name = os.getenv(LOG_LEVEL_ENV_VAR)
    if not name:
        return default
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level in {LOG_LEVEL_ENV_VAR}: {name!r}")
    return level


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _formatter(*processors: Processor) -> structlog.stdlib.ProcessorFormatter:
    # Records from stdlib loggers (the mock stores) get the same pre-chain as
    # records emitted through structlog.
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *processors,
        ],
    )


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    )
    return handler


def _json_file_handler(path: str) -> logging.Handler:
    handler = RotatingFileHandler(
        path, maxBytes=JSON_MAX_BYTES, backupCount=JSON_BACKUP_COUNT
    )
    handler.setFormatter(
        _formatter(
            structlog.processors.format_exc_info, structlog.processors.JSONRenderer()
        )
    )
    return handler


def configure_logging(
    *,
    level: int = logging.INFO,
    json_file: str | None = None,
    disable_stdout: bool = False,
) -> None:
    """
    Route structlog and stdlib logging through one set of root handlers.

    Harness modules log with structlog, the in-memory stores with stdlib logging.
    Existing root handlers are replaced, so calling this again reconfigures
    rather than duplicates output.

    Parameters
    ----------
    level:
        The minimum log level to output.
    json_file:
        Path for JSON lines output, rotated after ``JSON_MAX_BYTES`` with
        ``JSON_BACKUP_COUNT`` backups kept.
    disable_stdout:
        If True, nothing is printed to stdout.
    """
    structlog.configure(
        processors=[
            *_pre_chain(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    handlers = []
    if not disable_stdout:
        handlers.append(_console_handler())
    if json_file is not None:
        handlers.append(_json_file_handler(json_file))

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(level)
