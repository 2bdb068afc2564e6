"""Staging stage: parse the raw blob and upsert normalized rows."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from itertools import islice
from typing import Any, Iterable, Iterator

from sqlalchemy import delete, func, select

from hts_app.models.base import db
from hts_app.models.importer.schema import (
    DiffRecord,
    ImportJob,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
)

from ..errors import MalformedPayloadError
from ..metrics import record_batch
from ..storage import BlobStore
from .context import StageContext
from .records import HierarchyTracker, NormalizedRecord, count_source_records, iter_source_records, normalize_record

BATCH_SIZE = 1000


@dataclass
class StagingSummary:
    """Outcome statistics for a staging pass."""

    rows_processed: int
    rows_staged: int
    rows_skipped_no_code: int
    rows_duplicate: int
    batches: int


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    duplicates: int = 0


def load_document(blob_store: BlobStore, key: str) -> Any:
    """Decode the stored JSON document, rejecting anything that is not JSON."""
    with blob_store.open(key) as handle:
        try:
            return json.load(handle)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedPayloadError(f"Blob {key} is not valid JSON: {exc}") from exc


def _chunked(iterable: Iterable[Any], size: int) -> Iterator[list[Any]]:
    iterator = iter(iterable)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


def upsert_staged_batch(job: ImportJob, records: list[NormalizedRecord], raw_items: list[Any]) -> BatchResult:
    """
    Insert or refresh staged rows keyed on ``(import_id, hts_number)``.

    Later occurrences of a code win, both within the batch and across batches.
    """
    result = BatchResult()
    latest: dict[str, tuple[NormalizedRecord, Any]] = {}
    for record, raw in zip(records, raw_items):
        if record.hts_number in latest:
            result.duplicates += 1
        latest[record.hts_number] = (record, raw)
    if not latest:
        return result

    existing = {
        entry.hts_number: entry
        for entry in db.session.scalars(
            select(StagedEntry).where(
                StagedEntry.import_id == job.id,
                StagedEntry.hts_number.in_(list(latest)),
            )
        )
    }
    for hts_number, (record, raw) in latest.items():
        entry = existing.get(hts_number)
        if entry is None:
            db.session.add(
                StagedEntry(
                    import_id=job.id,
                    source_version=job.source_version,
                    partition_key=record.partition_key,
                    row_hash=record.row_hash,
                    raw_item=raw,
                    normalized=record.normalized,
                    **record.columns,
                )
            )
            result.inserted += 1
            continue
        result.duplicates += 1
        if entry.row_hash == record.row_hash:
            result.unchanged += 1
            continue
        for name, value in record.columns.items():
            setattr(entry, name, value)
        entry.partition_key = record.partition_key
        entry.row_hash = record.row_hash
        entry.raw_item = raw
        entry.normalized = record.normalized
        result.updated += 1
    return result


def clear_staged_rows(job: ImportJob) -> None:
    """Drop every staged artefact of ``job`` ahead of a fresh staging pass."""
    db.session.execute(delete(DiffRecord).where(DiffRecord.import_id == job.id))
    db.session.execute(delete(ValidationIssue).where(ValidationIssue.import_id == job.id))
    db.session.execute(delete(StagedEntry).where(StagedEntry.import_id == job.id))


def run_staging_stage(ctx: StageContext, *, batch_size: int | None = None) -> StagingSummary:
    """
    Stage every source record of the job's blob.

    Resuming skips the ``processedRecords`` already committed while still
    replaying them through the hierarchy tracker so parent codes stay correct.
    """
    job = ctx.job
    checkpoint = ctx.checkpoint
    if not checkpoint.blob_key:
        raise MalformedPayloadError(f"Import job {job.id} reached staging without a stored blob.")
    batch_size = batch_size or ctx.setting("IMPORTER_STAGE_BATCH_SIZE", BATCH_SIZE)

    document = load_document(ctx.blob_store, checkpoint.blob_key)
    total_records = count_source_records(document)
    total_batches = math.ceil(total_records / batch_size) if total_records else 0

    if checkpoint.processed_records == 0:
        clear_staged_rows(job)
        ctx.update_counts(
            "staging",
            {"rows_processed": 0, "rows_staged": 0, "rows_skipped_no_code": 0, "rows_duplicate": 0},
        )
        ctx.log.log(f"Staging {total_records} source records in {total_batches} batch(es)")
    else:
        ctx.log.log(
            f"Resuming staging after {checkpoint.processed_records} records "
            f"(batch {checkpoint.processed_batches}/{total_batches})"
        )

    hierarchy = HierarchyTracker()
    source = iter_source_records(document)
    for _ in range(checkpoint.processed_records):
        partition_key, record = next(source)
        if isinstance(record, dict):
            normalize_record(record, partition_key=partition_key, hierarchy=hierarchy)

    batches = 0
    for chunk in _chunked(source, batch_size):
        records: list[NormalizedRecord] = []
        raw_items: list[Any] = []
        skipped = 0
        for partition_key, record in chunk:
            normalized = (
                normalize_record(record, partition_key=partition_key, hierarchy=hierarchy)
                if isinstance(record, dict)
                else None
            )
            if normalized is None:
                skipped += 1
                continue
            records.append(normalized)
            raw_items.append(record)

        result = upsert_staged_batch(job, records, raw_items)
        counts = dict((job.counts_json or {}).get("staging") or {})
        ctx.update_counts(
            "staging",
            {
                "rows_processed": int(counts.get("rows_processed", 0)) + len(chunk),
                "rows_staged": int(counts.get("rows_staged", 0)) + result.inserted,
                "rows_skipped_no_code": int(counts.get("rows_skipped_no_code", 0)) + skipped,
                "rows_duplicate": int(counts.get("rows_duplicate", 0)) + result.duplicates,
            },
        )
        checkpoint = checkpoint.with_batch(
            records=len(chunk),
            partition_key=chunk[-1][0],
            total_batches=total_batches,
        )
        ctx.log.log(
            f"Staged batch {checkpoint.processed_batches}/{total_batches}: "
            f"{result.inserted} inserted, {result.updated} updated, {skipped} skipped without code"
        )
        ctx.save(checkpoint)
        record_batch("staging")
        batches += 1

    staged_count = db.session.scalar(
        select(func.count()).select_from(StagedEntry).where(StagedEntry.import_id == job.id)
    )
    job.total_entries = int(staged_count or 0)
    counts = dict((job.counts_json or {}).get("staging") or {})
    summary = StagingSummary(
        rows_processed=int(counts.get("rows_processed", 0)),
        rows_staged=job.total_entries,
        rows_skipped_no_code=int(counts.get("rows_skipped_no_code", 0)),
        rows_duplicate=int(counts.get("rows_duplicate", 0)),
        batches=batches,
    )
    if summary.rows_skipped_no_code:
        ctx.log.log(f"Dropped {summary.rows_skipped_no_code} record(s) without a tariff code")
    ctx.log.log(f"Staging complete: {summary.rows_staged} entries staged")
    ctx.advance(PipelineStage.VALIDATING, checkpoint=checkpoint)
    return summary
