from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from tubedesc.config import AppSettings

LOG_FILE_NAME = "tubedesc.log"
TELEMETRY_LOG_FILE_NAME = "tubedesc-telemetry.log"
ROOT_LOGGER_NAME = "tubedesc"
# googleapiclient logs a discovery-cache warning on every client build.
_QUIETED_LOGGERS: dict[str, int] = {
    "googleapiclient.discovery_cache": logging.ERROR,
    "googleapiclient.discovery": logging.ERROR,
    "google_auth_oauthlib": logging.WARNING,
}


def configure_application_logging(settings: AppSettings) -> Path:
    """Route `tubedesc.*` records to stdout and a JSON file under `log_dir`.

    Telemetry events go to a separate JSON file so sync and update history
    can be read without them. Returns the path of the main log file.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler(stream=sys.stdout)
    console_handler.setLevel(_level_from_name(settings.log_level))
    console_handler.setFormatter(
        _formatter(
            [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
            ]
        )
    )

    app_logger = _detached_logger(ROOT_LOGGER_NAME, logging.DEBUG)
    app_logger.addHandler(console_handler)
    app_logger.addHandler(_json_file_handler(log_file, logging.DEBUG))

    telemetry_logger = _detached_logger(f"{ROOT_LOGGER_NAME}.telemetry", logging.INFO)
    telemetry_logger.addHandler(_json_file_handler(telemetry_log_file, logging.INFO))

    for name, level in _QUIETED_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    app_logger.info(
        "logging configured console_level=%s path=%s telemetry_path=%s",
        settings.log_level.upper(),
        log_file,
        telemetry_log_file,
    )
    return log_file


def _level_from_name(raw_level: str) -> int:
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _detached_logger(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    return logger


def _json_file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(
            [
                _add_callsite,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ]
        )
    )
    return handler


def _formatter(processors: list[Processor]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
        ],
        processors=processors,
    )


def _add_callsite(_logger: logging.Logger, _method_name: str, event_dict: EventDict) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict.update(
            pathname=record.pathname,
            lineno=record.lineno,
            func_name=record.funcName,
            thread_name=record.threadName,
        )
    return event_dict
