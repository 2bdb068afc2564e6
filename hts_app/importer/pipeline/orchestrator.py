"""
Checkpoint-driven pipeline runner.

``execute_import`` reads the job's checkpoint and runs every stage at or after
it. Each stage commits its own progress and the move to the next stage, so a
crashed or retried execution resumes where the last one stopped.
"""

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import requests
from flask import current_app

from hts_app.models.base import db
from hts_app.models.importer.schema import CLOSED_JOB_STATUSES, ImportJob, ImportJobStatus, PipelineStage

from ..errors import ImportJobNotFound
from ..metrics import record_job_outcome, record_stage_duration
from ..storage import BlobStore
from .context import StageContext
from .diff import run_diff_stage
from .download import run_download_stage
from .promotion import apply_gate, run_promotion_stage
from .staging import run_staging_stage
from .validation import run_validation_stage


@dataclass
class PipelineResult:
    import_id: int
    status: ImportJobStatus
    stage: PipelineStage
    counts: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "status": self.status.value,
            "stage": self.stage.value,
            "counts": dict(self.counts),
        }


def _duration_seconds(job: ImportJob, finished_at: datetime) -> int | None:
    started_at = job.started_at
    if started_at is None:
        return None
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return max(int((finished_at - started_at).total_seconds()), 0)


def _result(job: ImportJob, ctx: StageContext | None = None) -> PipelineResult:
    stage = ctx.checkpoint.stage if ctx is not None else PipelineStage(
        (job.checkpoint or {}).get("stage") or PipelineStage.DOWNLOADING.value
    )
    return PipelineResult(import_id=job.id, status=job.status, stage=stage, counts=dict(job.counts_json or {}))


def _timed(stage: PipelineStage, runner: Callable[[], Any]) -> Any:
    started = time.perf_counter()
    try:
        return runner()
    finally:
        record_stage_duration(stage.value, time.perf_counter() - started)


def _complete(ctx: StageContext) -> PipelineResult:
    job = ctx.job
    finished_at = datetime.now(timezone.utc)
    job.status = ImportJobStatus.COMPLETED
    job.completed_at = finished_at
    job.duration_seconds = _duration_seconds(job, finished_at)
    ctx.log.log(f"Import of {job.source_version} completed")
    db.session.commit()
    record_job_outcome(ImportJobStatus.COMPLETED.value)
    current_app.logger.info(
        "HTS import completed",
        extra={
            "importer_job_id": job.id,
            "importer_source_version": job.source_version,
            "importer_imported": job.imported_entries,
            "importer_updated": job.updated_entries,
            "importer_skipped": job.skipped_entries,
            "importer_failed": job.failed_entries,
            "importer_duration_seconds": job.duration_seconds,
        },
    )
    return _result(job, ctx)


def run_stages(ctx: StageContext) -> PipelineResult:
    """Dispatch on the checkpoint stage until the job completes or parks for review."""
    while True:
        stage = ctx.checkpoint.stage
        match stage:
            case PipelineStage.DOWNLOADING:
                _timed(stage, lambda: run_download_stage(ctx))
            case PipelineStage.DOWNLOADED:
                ctx.advance(stage.next_stage())
            case PipelineStage.STAGING:
                _timed(stage, lambda: run_staging_stage(ctx))
            case PipelineStage.VALIDATING:
                _timed(stage, lambda: run_validation_stage(ctx))
            case PipelineStage.DIFFING:
                _timed(stage, lambda: run_diff_stage(ctx))
            case PipelineStage.PROCESSING:
                if not apply_gate(ctx):
                    return _result(ctx.job, ctx)
                _timed(stage, lambda: run_promotion_stage(ctx))
            case PipelineStage.COMPLETED:
                return _complete(ctx)


def _mark_failed(import_id: int, exc: Exception) -> None:
    db.session.rollback()
    job = db.session.get(ImportJob, import_id)
    if job is None:
        return
    finished_at = datetime.now(timezone.utc)
    job.status = ImportJobStatus.FAILED
    job.error_message = str(exc) or exc.__class__.__name__
    job.error_detail = traceback.format_exc()
    job.completed_at = finished_at
    job.duration_seconds = _duration_seconds(job, finished_at)
    lines = list(job.log_lines or [])
    lines.append(f"{finished_at.isoformat()} - Import failed: {job.error_message}")
    job.log_lines = lines
    db.session.commit()


def execute_import(
    import_id: int,
    *,
    blob_store: BlobStore | None = None,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] | None = None,
) -> PipelineResult:
    """
    Run (or resume) the pipeline for ``import_id``.

    Completed, rolled back, and rejected jobs return immediately. Any exception
    marks the job FAILED with its traceback and is re-raised for the queue;
    the checkpoint keeps the last committed position.
    """
    job = db.session.get(ImportJob, import_id)
    if job is None:
        raise ImportJobNotFound(import_id)
    if job.status == ImportJobStatus.COMPLETED or job.status in CLOSED_JOB_STATUSES:
        return _result(job)

    job.status = ImportJobStatus.IN_PROGRESS
    if job.started_at is None:
        job.started_at = datetime.now(timezone.utc)
    job.error_message = None
    job.error_detail = None
    job.completed_at = None
    db.session.commit()

    try:
        ctx = StageContext.for_job(job, blob_store=blob_store, session=session, sleep=sleep)
        ctx.log.log(f"Executing import {job.id} for {job.source_version} from stage {ctx.checkpoint.stage.value}")
        db.session.commit()
        return run_stages(ctx)
    except Exception as exc:
        _mark_failed(import_id, exc)
        record_job_outcome(ImportJobStatus.FAILED.value)
        current_app.logger.exception(
            "HTS import failed",
            extra={"importer_job_id": import_id, "importer_error": str(exc)},
        )
        raise
