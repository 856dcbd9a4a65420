"""Structured logging configuration (console + JSON files)."""

import logging
import sys
from datetime import datetime
from pathlib import Path

from pythonjsonlogger import jsonlogger

from src.config import settings

# Context fields copied from LoggerAdapter extras into JSON records
CONTEXT_FIELDS = ("shop_id", "page_id", "scan_id", "scan_depth", "check")


class ScanJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps scan context onto every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.utcnow().isoformat() + "Z"
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"
        log_record["environment"] = settings.environment

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_record[field] = value


def setup_logging(base_dir: str | Path | None = None) -> logging.Logger:
    """Configure logging for the application.

    Args:
        base_dir: Directory that will hold the logs/ folder.
                  Defaults to the current working directory.
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    # Console handler (human-readable)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = ScanJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(logs_dir / "scanner.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    # Playwright and httpx are chatty at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    return root_logger


class ScanLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges bound scan context into each record."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str, **context) -> ScanLoggerAdapter:
    """
    Get a logger bound to scan context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., page_id=12, scan_id=340)

    Returns:
        ScanLoggerAdapter with context
    """
    return ScanLoggerAdapter(logging.getLogger(name), context)
