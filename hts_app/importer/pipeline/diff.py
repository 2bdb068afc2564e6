"""
Diff stage: classify every staged code against the live schedule.

The baseline for a job promoting version ``V`` is the set of live rows that
were active before ``V`` arrived: rows still active under another version plus
rows that ``V`` itself superseded. Re-running the diff after promotion
therefore reproduces the original classification.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import and_, delete, exists, func, or_, select

from hts_app.models.base import db
from hts_app.models.hts import WILDCARD_HTS_NUMBER, ExtraTaxRule, HtsEntry
from hts_app.models.importer.schema import DiffRecord, DiffType, ImportJob, PipelineStage, StagedEntry

from ..metrics import record_batch
from ..utils import digits_only, ensure_json_serializable
from .context import StageContext
from .records import business_fields_from_live, business_fields_from_staged, changed_fields

BATCH_SIZE = 1000


@dataclass
class DiffCounts:
    added: int = 0
    changed: int = 0
    removed: int = 0
    unchanged: int = 0

    def bump(self, diff_type: DiffType, amount: int = 1) -> None:
        setattr(self, diff_type.value, getattr(self, diff_type.value) + amount)


def baseline_filter(version: str):
    """Predicate selecting the pre-promotion live rows for ``version``."""
    return or_(
        and_(HtsEntry.is_active.is_(True), HtsEntry.version != version),
        HtsEntry.superseded_by_version == version,
    )


def _dotted(digits: str) -> str | None:
    if len(digits) < 4:
        return None
    parts = [digits[:4]] + [digits[index : index + 2] for index in range(4, len(digits), 2)]
    return ".".join(parts)


def load_matching_rules(codes: Iterable[str], chapters: Iterable[str], *, on_date: date | None = None) -> list[ExtraTaxRule]:
    """Fetch rules in effect that target any of ``codes``/``chapters`` or every code."""
    variants: set[str] = set()
    for code in codes:
        digits = digits_only(code)
        variants.update(filter(None, (code, digits, _dotted(digits))))
    chapter_list = sorted({chapter for chapter in chapters if chapter})
    query = select(ExtraTaxRule).where(
        *ExtraTaxRule.in_effect_filter(on_date or date.today()),
        or_(
            ExtraTaxRule.hts_chapter.in_(chapter_list),
            and_(
                or_(ExtraTaxRule.hts_chapter.is_(None), ExtraTaxRule.hts_chapter == ""),
                or_(
                    ExtraTaxRule.hts_number.is_(None),
                    ExtraTaxRule.hts_number.in_(["", WILDCARD_HTS_NUMBER]),
                    ExtraTaxRule.hts_number.in_(sorted(variants)),
                ),
            ),
        ),
    )
    return list(db.session.scalars(query.order_by(ExtraTaxRule.priority.desc(), ExtraTaxRule.id)))


def _rule_scope(rule: ExtraTaxRule) -> str:
    if rule.is_wildcard:
        return "wildcard"
    if rule.hts_chapter:
        return "chapter"
    return "code"


def rules_for_code(rules: Sequence[ExtraTaxRule], hts_number: str, chapter: str | None) -> list[dict[str, Any]]:
    digits = digits_only(hts_number)
    matched: list[dict[str, Any]] = []
    for rule in rules:
        scope = _rule_scope(rule)
        if scope == "wildcard":
            hit = True
        elif scope == "chapter":
            hit = rule.hts_chapter == (chapter or digits[:2])
        else:
            hit = digits_only(rule.hts_number) == digits
        if hit:
            matched.append(
                {
                    "id": rule.id,
                    "taxCode": rule.tax_code,
                    "taxName": rule.tax_name,
                    "scope": scope,
                    "rateText": rule.rate_text,
                    "extraRateType": rule.extra_rate_type,
                    "countryCode": rule.country_code,
                    "priority": rule.priority,
                }
            )
    return matched


def build_summary(
    *,
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
    changes: Mapping[str, Any] | None = None,
    extra_taxes: Sequence[Mapping[str, Any]] = (),
) -> dict[str, Any]:
    return ensure_json_serializable(
        {
            "before": dict(before) if before is not None else None,
            "after": dict(after) if after is not None else None,
            "changes": dict(changes or {}),
            "extra_taxes": list(extra_taxes),
        }
    )


def classify_batch(job: ImportJob, entries: Sequence[StagedEntry], counts: DiffCounts) -> list[DiffRecord]:
    """Diff one page of staged entries against their baseline rows."""
    codes = [entry.hts_number for entry in entries]
    baseline: dict[str, HtsEntry] = {}
    for row in db.session.scalars(
        select(HtsEntry)
        .where(HtsEntry.hts_number.in_(codes), baseline_filter(job.source_version))
        .order_by(HtsEntry.is_active.desc(), HtsEntry.id.desc())
    ):
        baseline.setdefault(row.hts_number, row)

    rules = load_matching_rules(codes, (entry.chapter for entry in entries))
    records: list[DiffRecord] = []
    for entry in entries:
        staged = business_fields_from_staged(entry)
        current_row = baseline.get(entry.hts_number)
        matched = rules_for_code(rules, entry.hts_number, entry.chapter)
        if current_row is None:
            diff_type = DiffType.ADDED
            summary = build_summary(before=None, after=staged, extra_taxes=matched)
        else:
            current = business_fields_from_live(current_row)
            changes = changed_fields(current, staged)
            diff_type = DiffType.CHANGED if changes else DiffType.UNCHANGED
            summary = build_summary(before=current, after=staged, changes=changes, extra_taxes=matched)
        counts.bump(diff_type)
        records.append(
            DiffRecord(
                import_id=job.id,
                stage_entry_id=entry.id,
                current_entry_id=current_row.id if current_row is not None else None,
                hts_number=entry.hts_number,
                diff_type=diff_type,
                diff_summary=summary,
            )
        )
    return records


def record_removed(job: ImportJob, *, batch_size: int) -> int:
    """
    Insert REMOVED records for baseline codes absent from staging.

    Existing REMOVED rows are replaced so the pass can run again after a crash.
    """
    db.session.execute(
        delete(DiffRecord).where(DiffRecord.import_id == job.id, DiffRecord.diff_type == DiffType.REMOVED)
    )
    staged_match = exists().where(
        StagedEntry.import_id == job.id,
        StagedEntry.hts_number == HtsEntry.hts_number,
    )
    removed = 0
    last_code: str | None = None
    while True:
        query = select(HtsEntry).where(baseline_filter(job.source_version), ~staged_match)
        if last_code is not None:
            query = query.where(HtsEntry.hts_number > last_code)
        rows = list(db.session.scalars(query.order_by(HtsEntry.hts_number, HtsEntry.is_active.desc()).limit(batch_size)))
        if not rows:
            break
        rules = load_matching_rules((row.hts_number for row in rows), (row.chapter for row in rows))
        seen: set[str] = set()
        for row in rows:
            if row.hts_number in seen:
                continue
            seen.add(row.hts_number)
            db.session.add(
                DiffRecord(
                    import_id=job.id,
                    stage_entry_id=None,
                    current_entry_id=row.id,
                    hts_number=row.hts_number,
                    diff_type=DiffType.REMOVED,
                    diff_summary=build_summary(
                        before=business_fields_from_live(row),
                        after=None,
                        extra_taxes=rules_for_code(rules, row.hts_number, row.chapter),
                    ),
                )
            )
            removed += 1
        last_code = rows[-1].hts_number
        db.session.flush()
    return removed


def diff_counts(job: ImportJob) -> dict[str, int]:
    counts = {diff_type.value: 0 for diff_type in DiffType}
    for diff_type, total in db.session.execute(
        select(DiffRecord.diff_type, func.count()).where(DiffRecord.import_id == job.id).group_by(DiffRecord.diff_type)
    ):
        counts[diff_type.value] = int(total)
    return counts


def run_diff_stage(ctx: StageContext, *, batch_size: int | None = None) -> dict[str, int]:
    job = ctx.job
    checkpoint = ctx.checkpoint
    batch_size = batch_size or ctx.setting("IMPORTER_DIFF_BATCH_SIZE", BATCH_SIZE)
    staged_total = db.session.scalar(select(func.count()).select_from(StagedEntry).where(StagedEntry.import_id == job.id)) or 0
    total_batches = math.ceil(staged_total / batch_size) if staged_total else 0

    if checkpoint.processed_records == 0:
        db.session.execute(delete(DiffRecord).where(DiffRecord.import_id == job.id))
        ctx.log.log(f"Diffing {staged_total} staged entries against the live schedule")
    else:
        ctx.log.log(f"Resuming diff after {checkpoint.last_processed_partition_key}")

    while True:
        query = select(StagedEntry).where(StagedEntry.import_id == job.id)
        if checkpoint.last_processed_partition_key is not None:
            query = query.where(StagedEntry.hts_number > checkpoint.last_processed_partition_key)
        entries = list(db.session.scalars(query.order_by(StagedEntry.hts_number).limit(batch_size)))
        if not entries:
            break
        batch_counts = DiffCounts()
        db.session.add_all(classify_batch(job, entries, batch_counts))
        checkpoint = checkpoint.with_batch(
            records=len(entries),
            partition_key=entries[-1].hts_number,
            total_batches=total_batches,
        )
        ctx.log.log(
            f"Diff batch {checkpoint.processed_batches}/{total_batches}: "
            f"{batch_counts.added} added, {batch_counts.changed} changed, {batch_counts.unchanged} unchanged"
        )
        ctx.save(checkpoint)
        record_batch("diff")

    removed = record_removed(job, batch_size=batch_size)
    counts = diff_counts(job)
    ctx.update_counts("diff", counts)
    ctx.log.log(
        f"Diff complete: {counts['added']} added, {counts['changed']} changed, "
        f"{removed} removed, {counts['unchanged']} unchanged"
    )
    ctx.advance(PipelineStage.PROCESSING, checkpoint=checkpoint)
    return counts
