"""
Service layer for import job lifecycle and review operations.

The CLI and the review blueprint both go through ``ImportJobService`` so state
transitions (create, promote, reject, restart, rollback) are enforced in one
place. Services raise ``ImportJobNotFound`` / ``ImportJobConflict``; callers
translate those into HTTP or click errors.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Callable, Iterable, Mapping

from flask import current_app
from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from hts_app.models.base import db
from hts_app.models.hts import HtsEntry
from hts_app.models.importer.schema import (
    ACTIVE_JOB_STATUSES,
    DiffRecord,
    DiffType,
    ImportJob,
    ImportJobStatus,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
    ValidationSeverity,
)

from ..celery_app import EXECUTE_IMPORT_TASK, get_celery_app
from ..errors import ImportJobConflict, ImportJobNotFound, ImportJobStateError
from ..sources import UsitcSource, get_source
from ..utils import isoformat
from .checkpoint import load_checkpoint, reset_checkpoint
from .promotion import validation_error_count

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 500
DEFAULT_LOG_PAGE_SIZE = 200
LEADING_FORMULA_CHARACTERS = ("=", "+", "-", "@")

DIFF_EXPORT_HEADER = (
    "htsNumber",
    "diffType",
    "changedFields",
    "currentDescription",
    "stagedDescription",
    "currentGeneralRate",
    "stagedGeneralRate",
    "extraTaxCodes",
)


@dataclass(frozen=True)
class JobFilters:
    """Validated listing options for import jobs."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    statuses: tuple[ImportJobStatus, ...] = field(default_factory=tuple)
    source_version: str | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        statuses: Iterable[str] | None = None,
        source_version: str | None = None,
    ) -> "JobFilters":
        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        version = source_version.strip() if isinstance(source_version, str) and source_version.strip() else None
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=_default_page_size()), MAX_PAGE_SIZE),
            statuses=resolved_statuses,
            source_version=version,
        )


@dataclass(slots=True)
class JobListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def enqueue_import(job: ImportJob) -> str:
    """Send the execute task for ``job`` and remember its task id."""
    celery_app = get_celery_app(current_app._get_current_object())
    if celery_app is None:
        raise ImportJobConflict("Importer is disabled; run the job inline with `flask importer run --inline`.")
    result = celery_app.send_task(EXECUTE_IMPORT_TASK, kwargs={"import_id": job.id})
    job.task_id = result.id
    db.session.commit()
    current_app.logger.info(
        "HTS import enqueued",
        extra={"importer_job_id": job.id, "importer_task_id": result.id},
    )
    return result.id


def serialize_job(job: ImportJob) -> dict[str, Any]:
    checkpoint = load_checkpoint(job)
    return {
        "id": job.id,
        "source_version": job.source_version,
        "source_url": job.source_url,
        "status": job.status.value if isinstance(job.status, ImportJobStatus) else str(job.status),
        "stage": checkpoint.stage.value,
        "checkpoint": checkpoint.to_dict(),
        "total_entries": job.total_entries or 0,
        "imported_entries": job.imported_entries or 0,
        "updated_entries": job.updated_entries or 0,
        "skipped_entries": job.skipped_entries or 0,
        "failed_entries": job.failed_entries or 0,
        "validation_summary": job.validation_summary,
        "counts": job.counts_json or {},
        "override_promotion": bool(job.override_promotion),
        "override_reason": job.override_reason,
        "requested_by": job.requested_by,
        "error_message": job.error_message,
        "rollback_info": job.rollback_info,
        "task_id": job.task_id,
        "created_at": isoformat(job.created_at),
        "started_at": isoformat(job.started_at),
        "completed_at": isoformat(job.completed_at),
        "duration_seconds": job.duration_seconds,
    }


def serialize_issue(issue: ValidationIssue) -> dict[str, Any]:
    return {
        "id": issue.id,
        "hts_number": issue.hts_number,
        "issue_code": issue.issue_code,
        "severity": issue.severity.value,
        "message": issue.message,
        "details": issue.details or {},
    }


def serialize_diff(record: DiffRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "hts_number": record.hts_number,
        "diff_type": record.diff_type.value,
        "stage_entry_id": record.stage_entry_id,
        "current_entry_id": record.current_entry_id,
        "summary": record.diff_summary or {},
    }


class ImportJobService:
    """Facade over import jobs with consistent state-transition rules."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        source: UsitcSource | None = None,
        enqueue: Callable[[ImportJob], str] | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self._source = source
        self._enqueue = enqueue or enqueue_import

    @property
    def source(self) -> UsitcSource:
        if self._source is None:
            self._source = get_source()
        return self._source

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, version: str = "latest", *, requested_by: str | None = None, enqueue: bool = True) -> ImportJob:
        source_version, source_url = self.source.resolve(version)
        existing = self.session.scalar(
            select(ImportJob).where(
                ImportJob.source_version == source_version,
                ImportJob.status.in_(ACTIVE_JOB_STATUSES),
            )
        )
        if existing is not None:
            raise ImportJobConflict(
                f"Import job {existing.id} for {source_version} is already {existing.status.value}."
            )
        job = ImportJob(
            source_version=source_version,
            source_url=source_url,
            status=ImportJobStatus.PENDING,
            requested_by=requested_by,
            log_lines=[f"{datetime.now(timezone.utc).isoformat()} - Import requested for {source_version}"],
        )
        reset_checkpoint(job)
        self.session.add(job)
        self.session.commit()
        current_app.logger.info(
            "HTS import job created",
            extra={"importer_job_id": job.id, "importer_source_version": source_version},
        )
        if enqueue:
            self._enqueue(job)
        return job

    def request_promotion(
        self,
        import_id: int,
        *,
        override: bool = False,
        reason: str | None = None,
        requested_by: str | None = None,
        enqueue: bool = True,
    ) -> ImportJob:
        """Resume a job parked in review, overriding the gate when errors remain."""
        job = self.get(import_id)
        if job.status != ImportJobStatus.REQUIRES_REVIEW:
            raise ImportJobStateError(f"Import job {job.id} is {job.status.value}; only jobs under review can be promoted.")
        errors = validation_error_count(job)
        if errors and not (override or job.override_promotion):
            raise ImportJobConflict(f"Import job {job.id} has {errors} validation error(s); promotion needs an override.")
        if override:
            job.override_promotion = True
            job.override_reason = reason
        job.status = ImportJobStatus.PENDING
        self._append_log(job, f"Promotion requested by {requested_by or 'operator'}")
        self.session.commit()
        if enqueue:
            self._enqueue(job)
        return job

    def set_override(self, import_id: int, *, enabled: bool = True, reason: str | None = None) -> ImportJob:
        job = self.get(import_id)
        job.override_promotion = enabled
        job.override_reason = reason if enabled else None
        self._append_log(job, f"Promotion override {'enabled' if enabled else 'cleared'}" + (f": {reason}" if reason else ""))
        self.session.commit()
        return job

    def reject(self, import_id: int, *, reason: str | None = None, requested_by: str | None = None) -> ImportJob:
        job = self.get(import_id)
        if job.status not in (ImportJobStatus.REQUIRES_REVIEW, ImportJobStatus.FAILED):
            raise ImportJobStateError(f"Import job {job.id} is {job.status.value}; only jobs under review can be rejected.")
        job.status = ImportJobStatus.REJECTED
        job.completed_at = datetime.now(timezone.utc)
        self._append_log(job, f"Rejected by {requested_by or 'operator'}" + (f": {reason}" if reason else ""))
        self.session.commit()
        return job

    def restart(
        self,
        import_id: int,
        *,
        stage: PipelineStage = PipelineStage.DOWNLOADING,
        enqueue: bool = False,
    ) -> ImportJob:
        """Rewind the checkpoint to ``stage`` and make the job runnable again."""
        job = self.get(import_id)
        if job.status == ImportJobStatus.IN_PROGRESS and job.locked_by:
            raise ImportJobStateError(f"Import job {job.id} is running on {job.locked_by}.")
        reset_checkpoint(job, stage=stage)
        job.status = ImportJobStatus.PENDING
        job.error_message = None
        job.error_detail = None
        job.completed_at = None
        job.duration_seconds = None
        self._append_log(job, f"Checkpoint reset to {stage.value}")
        self.session.commit()
        if enqueue:
            self._enqueue(job)
        return job

    def rollback(self, import_id: int, *, reason: str | None = None, requested_by: str | None = None) -> ImportJob:
        """
        Undo a completed promotion: drop the version's rows and reactivate the
        rows it superseded. Only the most recent completed job may roll back.
        """
        job = self.get(import_id)
        if job.status != ImportJobStatus.COMPLETED:
            raise ImportJobStateError(f"Import job {job.id} is {job.status.value}; only completed jobs can be rolled back.")
        later = self.session.scalar(
            select(ImportJob.id).where(
                ImportJob.status == ImportJobStatus.COMPLETED,
                ImportJob.id > job.id,
                ImportJob.source_version != job.source_version,
            )
        )
        if later is not None:
            raise ImportJobConflict(f"Import job {later} completed after {job.id}; roll it back first.")

        version = job.source_version
        removed = self.session.execute(
            delete(HtsEntry).where(HtsEntry.version == version).execution_options(synchronize_session=False)
        ).rowcount
        reactivated = self.session.execute(
            update(HtsEntry)
            .where(HtsEntry.superseded_by_version == version)
            .values(is_active=True, superseded_by_version=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        job.status = ImportJobStatus.ROLLED_BACK
        job.rollback_info = {
            "rolledBackAt": datetime.now(timezone.utc).isoformat(),
            "removedEntries": int(removed or 0),
            "reactivatedEntries": int(reactivated or 0),
            "reason": reason,
            "requestedBy": requested_by,
        }
        self._append_log(job, f"Rolled back {version}: removed {removed}, reactivated {reactivated}")
        self.session.commit()
        current_app.logger.info(
            "HTS import rolled back",
            extra={"importer_job_id": job.id, "importer_source_version": version, "importer_removed": removed},
        )
        return job

    def check_for_updates(self) -> dict[str, Any]:
        latest = self.session.scalar(
            select(ImportJob.source_version)
            .where(ImportJob.status == ImportJobStatus.COMPLETED)
            .order_by(ImportJob.completed_at.desc(), ImportJob.id.desc())
            .limit(1)
        )
        return self.source.check_for_updates(latest)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, import_id: int) -> ImportJob:
        job = self.session.get(ImportJob, import_id)
        if job is None:
            raise ImportJobNotFound(import_id)
        return job

    def list_jobs(self, filters: JobFilters) -> JobListResult:
        query = select(ImportJob)
        if filters.statuses:
            query = query.where(ImportJob.status.in_(filters.statuses))
        if filters.source_version:
            query = query.where(ImportJob.source_version == filters.source_version)
        total = self.session.scalar(select(func.count()).select_from(query.subquery())) or 0
        if total == 0:
            return JobListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)
        jobs = self.session.scalars(
            query.order_by(ImportJob.created_at.desc(), ImportJob.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).all()
        return JobListResult(
            items=[serialize_job(job) for job in jobs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=(total + filters.page_size - 1) // filters.page_size,
        )

    def logs(self, import_id: int, *, offset: int = 0, limit: int = DEFAULT_LOG_PAGE_SIZE) -> dict[str, Any]:
        lines = list(self.get(import_id).log_lines or [])
        offset = max(offset, 0)
        limit = max(limit, 1)
        return {"lines": lines[offset : offset + limit], "total": len(lines), "offset": offset, "limit": limit}

    def failed_entries(self, import_id: int) -> list[dict[str, Any]]:
        return list(self.get(import_id).failed_entries_detail or [])

    def stage_summary(self, import_id: int) -> dict[str, Any]:
        job = self.get(import_id)
        staged = self.session.scalar(
            select(func.count()).select_from(StagedEntry).where(StagedEntry.import_id == job.id)
        )
        validation_counts = {severity.value: 0 for severity in ValidationSeverity}
        for severity, total in self.session.execute(
            select(ValidationIssue.severity, func.count())
            .where(ValidationIssue.import_id == job.id)
            .group_by(ValidationIssue.severity)
        ):
            validation_counts[severity.value] = int(total)
        diff_counts = {diff_type.value: 0 for diff_type in DiffType}
        for diff_type, total in self.session.execute(
            select(DiffRecord.diff_type, func.count()).where(DiffRecord.import_id == job.id).group_by(DiffRecord.diff_type)
        ):
            diff_counts[diff_type.value] = int(total)
        return {
            "importId": job.id,
            "stage": load_checkpoint(job).stage.value,
            "stagedCount": int(staged or 0),
            "validationCounts": validation_counts,
            "diffCounts": diff_counts,
            "validationSummary": job.validation_summary,
        }

    def list_validation_issues(
        self,
        import_id: int,
        *,
        severity: str | None = None,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        job = self.get(import_id)
        query = select(ValidationIssue).where(ValidationIssue.import_id == job.id)
        if severity:
            query = query.where(ValidationIssue.severity == _coerce_enum(ValidationSeverity, severity, "severity"))
        return self._paginate(query.order_by(ValidationIssue.hts_number, ValidationIssue.id), serialize_issue, page, page_size)

    def list_diffs(
        self,
        import_id: int,
        *,
        diff_type: str | None = None,
        page: int = DEFAULT_PAGE,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        job = self.get(import_id)
        query = select(DiffRecord).where(DiffRecord.import_id == job.id)
        if diff_type:
            query = query.where(DiffRecord.diff_type == _coerce_enum(DiffType, diff_type, "diff type"))
        return self._paginate(query.order_by(DiffRecord.hts_number), serialize_diff, page, page_size)

    def export_diffs_csv(self, import_id: int, *, diff_type: str | None = None) -> tuple[str, str]:
        """Return ``(filename, csv_text)`` for the job's diff records."""
        job = self.get(import_id)
        query = select(DiffRecord).where(DiffRecord.import_id == job.id)
        if diff_type:
            query = query.where(DiffRecord.diff_type == _coerce_enum(DiffType, diff_type, "diff type"))
        limit = int(current_app.config.get("IMPORTER_EXPORT_ROW_LIMIT", 100000))
        records = self.session.scalars(query.order_by(DiffRecord.hts_number).limit(limit))

        buffer = StringIO()
        writer = csv.writer(buffer)
        writer.writerow(DIFF_EXPORT_HEADER)
        for record in records:
            summary = record.diff_summary or {}
            before = summary.get("before") or {}
            after = summary.get("after") or {}
            writer.writerow(
                [
                    _sanitize_csv(record.hts_number),
                    record.diff_type.value,
                    _sanitize_csv(";".join(sorted(summary.get("changes") or {}))),
                    _sanitize_csv(before.get("description")),
                    _sanitize_csv(after.get("description")),
                    _sanitize_csv(before.get("general_rate")),
                    _sanitize_csv(after.get("general_rate")),
                    _sanitize_csv(";".join(rule.get("taxCode") or "" for rule in summary.get("extra_taxes") or [])),
                ]
            )
        suffix = f"_{diff_type.lower()}" if diff_type else ""
        filename = f"hts_import_{job.id}_{job.source_version}_diffs{suffix}.csv"
        return filename, buffer.getvalue()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _paginate(self, query, serializer, page: int, page_size: int) -> dict[str, Any]:
        page = max(int(page or DEFAULT_PAGE), 1)
        page_size = min(max(int(page_size or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
        total = self.session.scalar(select(func.count()).select_from(query.order_by(None).subquery())) or 0
        rows = self.session.scalars(query.offset((page - 1) * page_size).limit(page_size)).all()
        return {
            "items": [serializer(row) for row in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size,
        }

    @staticmethod
    def _append_log(job: ImportJob, message: str) -> None:
        lines = list(job.log_lines or [])
        lines.append(f"{datetime.now(timezone.utc).isoformat()} - {message}")
        job.log_lines = lines


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _default_page_size() -> int:
    return int(current_app.config.get("IMPORTER_JOBS_PAGE_SIZE_DEFAULT", DEFAULT_PAGE_SIZE))


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportJobStatus) -> ImportJobStatus:
    return _coerce_enum(ImportJobStatus, value, "status")


def _coerce_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported {label} filter '{value}'.") from None


def _sanitize_csv(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, (Mapping, list)):
        value = json.dumps(value, sort_keys=True)
    text = str(value)
    if text and text[0] in LEADING_FORMULA_CHARACTERS:
        return f"'{text}"
    return text
