"""
Operator-visible job log.

Stages report milestones through the ``JobLogSink`` protocol; the default
sink appends ``"<iso timestamp> - <message>"`` lines to ``ImportJob.log_lines``
and mirrors each one to the application logger.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from flask import current_app

from hts_app.models.importer.schema import ImportJob

DEFAULT_LOG_LIMIT = 5000


class JobLogSink(Protocol):
    def log(self, message: str) -> None: ...


class ImportJobLog:
    """Append-only log stored on the job row; the oldest lines drop past ``limit``."""

    def __init__(self, job: ImportJob, *, limit: int | None = None):
        self.job = job
        self.limit = limit or int(current_app.config.get("IMPORTER_JOB_LOG_LIMIT", DEFAULT_LOG_LIMIT))

    def log(self, message: str) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        lines = list(self.job.log_lines or [])
        lines.append(f"{timestamp} - {message}")
        if len(lines) > self.limit:
            lines = lines[-self.limit :]
        self.job.log_lines = lines
        current_app.logger.info(
            message,
            extra={"importer_job_id": self.job.id, "importer_source_version": self.job.source_version},
        )
