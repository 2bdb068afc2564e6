"""
Application logging setup driven by ``config.monitoring.MonitoringConfig``.

``LOG_FORMAT=json`` emits one JSON document per record with every
``importer_*`` extra attached; ``text`` keeps a readable single-line format
for local development.
"""

from __future__ import annotations

import json
import logging
import os
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
EXTRA_PREFIXES = ("importer_", "hts_")

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class StructuredJsonFormatter(logging.Formatter):
    """Render log records as JSON with structured ``extra`` fields."""

    def __init__(self, *, app_name: str | None = None, app_version: str | None = None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            log_dict["app"] = self.app_name
        if self.app_version:
            log_dict["version"] = self.app_version

        for key, value in vars(record).items():
            if key in _STANDARD_ATTRS:
                continue
            if key.startswith(EXTRA_PREFIXES):
                log_dict[key] = value

        if record.exc_info:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(log_dict, default=str, ensure_ascii=False)


def _build_formatter(app) -> logging.Formatter:
    if str(app.config.get("LOG_FORMAT", "text")).lower() == "json":
        return StructuredJsonFormatter(
            app_name=app.config.get("APP_NAME"),
            app_version=app.config.get("APP_VERSION"),
        )
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app) -> None:
    """
    Replace the Flask logger's handlers with console and/or rotating file
    handlers according to the monitoring configuration.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    formatter = _build_formatter(app)
    app.logger.handlers.clear()
    app.logger.setLevel(level)

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(level)
        app.logger.addHandler(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "hts_importer.log")),
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 10485760)),
            backupCount=int(app.config.get("LOG_FILE_BACKUP_COUNT", 10)),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)

    if not app.logger.handlers:
        app.logger.addHandler(logging.NullHandler())

    app.logger.debug("Logging configured", extra={"hts_log_format": app.config.get("LOG_FORMAT")})
