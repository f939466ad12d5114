"""Structured logging: readable console output plus JSON log files."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from sku_studio.config import settings

SERVICE_NAME = "sku-studio"

# Context bound through get_logger(); always present in JSON records so log
# queries can filter on them even when unset
CONTEXT_FIELDS = ("order_id", "identifier", "store")

# Third-party loggers that flood DEBUG output
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "openai", "botocore", "boto3", "PIL")


class StudioJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record['service'] = SERVICE_NAME
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        for name in CONTEXT_FIELDS:
            log_record.setdefault(name, getattr(record, name, None))


class ContextFormatter(logging.Formatter):
    """Console formatter that appends bound context as ``key=value`` pairs."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if getattr(record, name, None) is not None
        )
        return f"{line} [{context}]" if context else line


def setup_logging(log_dir: str | Path | None = None):
    """Configure the root logger.

    Console output is human-readable; ``app.log`` and ``error.log`` in
    ``log_dir`` (``settings.log_dir`` when omitted) hold JSON records.
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    json_formatter = StudioJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    if settings.log_json_console:
        console_handler.setFormatter(json_formatter)
    else:
        console_handler.setFormatter(ContextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(console_handler)

    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def bind(self, **context) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with bound context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. order_id=12, identifier='3348901250153'

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
