"""
Importer Celery tasks.

``hts.import.execute`` drives one import job through the checkpointed
pipeline. A row-level lock on the job keeps a redelivered message from running
the same job twice; transient failures are retried with exponential backoff
and resume from the last committed checkpoint.
"""

from __future__ import annotations

import socket
from datetime import datetime, timedelta, timezone
from typing import Any

from celery import shared_task
from flask import current_app
from sqlalchemy import or_, update

from hts_app.importer.celery_app import EXECUTE_IMPORT_TASK, HEALTHCHECK_TASK
from hts_app.importer.errors import is_retryable
from hts_app.importer.pipeline import execute_import
from hts_app.models.base import db
from hts_app.models.importer.schema import ImportJob


@shared_task(name=HEALTHCHECK_TASK, bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


def _lock_owner(task) -> str:
    hostname = task.request.hostname or socket.gethostname()
    return f"{hostname}:{task.request.id or 'inline'}"


def acquire_job_lock(import_id: int, owner: str, *, ttl_seconds: int) -> bool:
    """
    Claim ``import_id`` for ``owner``. Locks older than ``ttl_seconds`` are
    treated as abandoned by a dead worker and may be taken over.
    """
    now = datetime.now(timezone.utc)
    result = db.session.execute(
        update(ImportJob)
        .where(
            ImportJob.id == import_id,
            or_(
                ImportJob.locked_by.is_(None),
                ImportJob.locked_by == owner,
                ImportJob.locked_at < now - timedelta(seconds=ttl_seconds),
            ),
        )
        .values(locked_by=owner, locked_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def release_job_lock(import_id: int, owner: str) -> None:
    db.session.rollback()
    db.session.execute(
        update(ImportJob)
        .where(ImportJob.id == import_id, ImportJob.locked_by == owner)
        .values(locked_by=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


@shared_task(name=EXECUTE_IMPORT_TASK, bind=True)
def execute_import_job(self, import_id: int) -> dict[str, Any]:
    """Run or resume the import pipeline for ``import_id``."""
    config = current_app.config
    owner = _lock_owner(self)
    if not acquire_job_lock(import_id, owner, ttl_seconds=int(config.get("IMPORTER_JOB_LOCK_TTL_SECONDS", 3 * 60 * 60))):
        current_app.logger.warning(
            "HTS import already locked by another executor; skipping",
            extra={"importer_job_id": import_id, "importer_task_id": self.request.id},
        )
        return {"import_id": import_id, "status": "skipped", "reason": "locked"}

    try:
        return execute_import(import_id).as_dict()
    except Exception as exc:
        max_retries = int(config.get("IMPORTER_JOB_MAX_RETRIES", 3))
        retries = self.request.retries or 0
        if not is_retryable(exc) or retries >= max_retries:
            raise
        countdown = int(config.get("IMPORTER_JOB_RETRY_BACKOFF_SECONDS", 30)) * (2**retries)
        current_app.logger.warning(
            "HTS import failed; scheduling retry",
            extra={
                "importer_job_id": import_id,
                "importer_retry": retries + 1,
                "importer_retry_countdown": countdown,
                "importer_error": str(exc),
            },
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=max_retries)
    finally:
        release_job_lock(import_id, owner)
