"""
Promotion stage: the data-quality gate and the batched upsert into ``hts_entries``.

New version rows are written inactive. Only after every batch has committed
does a single transaction deactivate the superseded rows and activate the new
version, so readers never observe two active rows for one code.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from hts_app.models.base import db
from hts_app.models.hts import HtsEntry
from hts_app.models.importer.schema import (
    ImportJob,
    ImportJobStatus,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
    ValidationSeverity,
)

from ..metrics import record_batch, record_gate_halt
from .checkpoint import Checkpoint
from .context import StageContext
from .records import HIERARCHY_FIELDS, business_fields_from_live, business_fields_from_staged, changed_fields

BATCH_SIZE = 500

IMPORTED = "imported"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class PromotionSummary:
    imported: int
    updated: int
    skipped: int
    failed: int
    deactivated: int
    activated: int

    def as_dict(self) -> dict[str, int]:
        return {
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deactivated": self.deactivated,
            "activated": self.activated,
        }


def validation_error_count(job: ImportJob) -> int:
    summary = job.validation_summary or {}
    if "errorCount" in summary:
        return int(summary["errorCount"] or 0)
    return int(
        db.session.scalar(
            select(db.func.count())
            .select_from(ValidationIssue)
            .where(ValidationIssue.import_id == job.id, ValidationIssue.severity == ValidationSeverity.ERROR)
        )
        or 0
    )


def evaluate_gate(job: ImportJob) -> bool:
    """Return ``True`` when the job may promote: no validation errors, or an override."""
    return job.override_promotion or validation_error_count(job) == 0


def apply_gate(ctx: StageContext) -> bool:
    """
    Park the job in ``REQUIRES_REVIEW`` when the gate is closed.

    The checkpoint stays at ``PROCESSING`` so a later override resumes here.
    """
    job = ctx.job
    if evaluate_gate(job):
        if job.override_promotion and validation_error_count(job):
            ctx.log.log(f"Promotion gate overridden: {job.override_reason or 'no reason given'}")
        return True
    errors = validation_error_count(job)
    job.status = ImportJobStatus.REQUIRES_REVIEW
    ctx.log.log(f"Promotion halted: {errors} validation error(s) require review or an override")
    db.session.commit()
    record_gate_halt()
    return False


def live_values(job: ImportJob, entry: StagedEntry) -> dict[str, Any]:
    """Column values for the live row promoted from ``entry``."""
    normalized = entry.normalized or {}
    values: dict[str, Any] = dict(business_fields_from_staged(entry))
    values.update({name: getattr(entry, name) for name in HIERARCHY_FIELDS})
    values["special_rates"] = normalized.get("special_rates")
    values["row_hash"] = entry.row_hash
    values["source_version"] = job.source_version
    return values


def promote_entry(job: ImportJob, entry: StagedEntry, existing: HtsEntry | None, *, now: datetime) -> str:
    """Insert, update, or skip the ``(hts_number, source_version)`` row for ``entry``."""
    values = live_values(job, entry)
    if existing is None:
        db.session.add(
            HtsEntry(
                hts_number=entry.hts_number,
                version=job.source_version,
                is_active=False,
                import_date=now,
                **values,
            )
        )
        return IMPORTED
    if not changed_fields(business_fields_from_live(existing), business_fields_from_staged(entry)):
        return SKIPPED
    for name, value in values.items():
        setattr(existing, name, value)
    existing.import_date = now
    return UPDATED


def _existing_rows(job: ImportJob, codes: Sequence[str]) -> dict[str, HtsEntry]:
    return {
        row.hts_number: row
        for row in db.session.scalars(
            select(HtsEntry).where(HtsEntry.version == job.source_version, HtsEntry.hts_number.in_(list(codes)))
        )
    }


def _apply_outcomes(job: ImportJob, outcomes: Mapping[str, int]) -> None:
    job.imported_entries = (job.imported_entries or 0) + outcomes.get(IMPORTED, 0)
    job.updated_entries = (job.updated_entries or 0) + outcomes.get(UPDATED, 0)
    job.skipped_entries = (job.skipped_entries or 0) + outcomes.get(SKIPPED, 0)


def promote_batch(job: ImportJob, entries: Sequence[StagedEntry]) -> dict[str, int]:
    now = datetime.now(timezone.utc)
    existing = _existing_rows(job, [entry.hts_number for entry in entries])
    outcomes = {IMPORTED: 0, UPDATED: 0, SKIPPED: 0}
    for entry in entries:
        outcomes[promote_entry(job, entry, existing.get(entry.hts_number), now=now)] += 1
    db.session.flush()
    return outcomes


def promote_individually(
    ctx: StageContext, entries: Sequence[StagedEntry], checkpoint: Checkpoint
) -> tuple[Checkpoint, list[dict[str, str]]]:
    """
    Retry a failed batch one entry per transaction.

    Each commit carries the entry's row, its counters and the checkpoint moved
    past it, so a resumed run continues after the last committed entry.
    Returns the advanced checkpoint and the ``{hts_number, error}`` details of
    entries that still fail.
    """
    job = ctx.job
    failures: list[dict[str, str]] = []
    for entry in entries:
        hts_number = entry.hts_number
        try:
            outcome = promote_entry(
                job,
                entry,
                _existing_rows(job, [hts_number]).get(hts_number),
                now=datetime.now(timezone.utc),
            )
            _apply_outcomes(job, {outcome: 1})
            db.session.flush()
        except (SQLAlchemyError, ValueError) as exc:
            db.session.rollback()
            failure = {"hts_number": hts_number, "error": str(exc).splitlines()[0][:500]}
            failures.append(failure)
            job.failed_entries = (job.failed_entries or 0) + 1
            job.failed_entries_detail = list(job.failed_entries_detail or []) + [failure]
            ctx.log.log(f"Failed to promote {hts_number}: {failure['error']}")
        checkpoint = ctx.save(checkpoint.with_record(partition_key=hts_number))
    return checkpoint, failures


def finalize_promotion(job: ImportJob) -> tuple[int, int]:
    """
    Flip the active set to ``job.source_version`` in the caller's transaction.

    Rows of other versions are deactivated when this version now has a row for
    their code, or when the code left the schedule. Codes whose promotion failed
    keep their previous active row.
    """
    version = job.source_version
    promoted = aliased(HtsEntry)
    promoted_codes = select(promoted.hts_number).where(promoted.version == version)
    staged_codes = select(StagedEntry.hts_number).where(StagedEntry.import_id == job.id)

    deactivated = db.session.execute(
        update(HtsEntry)
        .where(
            HtsEntry.is_active.is_(True),
            HtsEntry.version != version,
            or_(HtsEntry.hts_number.in_(promoted_codes), HtsEntry.hts_number.not_in(staged_codes)),
        )
        .values(is_active=False, superseded_by_version=version)
        .execution_options(synchronize_session=False)
    ).rowcount
    activated = db.session.execute(
        update(HtsEntry)
        .where(HtsEntry.version == version, HtsEntry.is_active.is_(False))
        .values(is_active=True, superseded_by_version=None)
        .execution_options(synchronize_session=False)
    ).rowcount
    return int(deactivated or 0), int(activated or 0)


def run_promotion_stage(ctx: StageContext, *, batch_size: int | None = None) -> PromotionSummary:
    job = ctx.job
    checkpoint = ctx.checkpoint
    batch_size = batch_size or ctx.setting("IMPORTER_PROMOTION_BATCH_SIZE", BATCH_SIZE)
    staged_total = (
        db.session.scalar(select(db.func.count()).select_from(StagedEntry).where(StagedEntry.import_id == job.id))
        or 0
    )
    total_batches = math.ceil(staged_total / batch_size) if staged_total else 0

    if checkpoint.processed_records == 0:
        job.imported_entries = 0
        job.updated_entries = 0
        job.skipped_entries = 0
        job.failed_entries = 0
        job.failed_entries_detail = []
        ctx.log.log(f"Promoting {staged_total} staged entries in {total_batches} batch(es)")
    else:
        ctx.log.log(
            f"Resuming promotion after {checkpoint.last_processed_partition_key} "
            f"(batch {checkpoint.processed_batches}/{total_batches})"
        )
    db.session.commit()

    while True:
        query = select(StagedEntry).where(StagedEntry.import_id == job.id)
        if checkpoint.last_processed_partition_key is not None:
            query = query.where(StagedEntry.hts_number > checkpoint.last_processed_partition_key)
        entries = list(db.session.scalars(query.order_by(StagedEntry.hts_number).limit(batch_size)))
        if not entries:
            break
        last_code = entries[-1].hts_number
        try:
            outcomes = promote_batch(job, entries)
            _apply_outcomes(job, outcomes)
        except (SQLAlchemyError, ValueError) as exc:
            db.session.rollback()
            ctx.log.log(f"Promotion batch ending at {last_code} failed ({exc.__class__.__name__}); retrying per entry")
            checkpoint, failures = promote_individually(ctx, entries, checkpoint)
            checkpoint = checkpoint.with_batch(records=0, partition_key=last_code, total_batches=total_batches)
            ctx.log.log(
                f"Promoted batch {checkpoint.processed_batches}/{total_batches} per entry with "
                f"{len(failures)} failure(s)"
            )
        else:
            checkpoint = checkpoint.with_batch(
                records=len(entries), partition_key=last_code, total_batches=total_batches
            )
            ctx.log.log(
                f"Promoted batch {checkpoint.processed_batches}/{total_batches}: "
                f"{outcomes[IMPORTED]} imported, {outcomes[UPDATED]} updated, {outcomes[SKIPPED]} unchanged"
            )
        ctx.save(checkpoint)
        record_batch("promotion")

    deactivated, activated = finalize_promotion(job)
    summary = PromotionSummary(
        imported=job.imported_entries or 0,
        updated=job.updated_entries or 0,
        skipped=job.skipped_entries or 0,
        failed=job.failed_entries or 0,
        deactivated=deactivated,
        activated=activated,
    )
    ctx.update_counts("promotion", summary.as_dict())
    ctx.log.log(
        f"Promotion complete: {summary.imported} imported, {summary.updated} updated, "
        f"{summary.skipped} unchanged, {summary.failed} failed, {summary.deactivated} deactivated"
    )
    ctx.advance(PipelineStage.COMPLETED, checkpoint=checkpoint)
    return summary
