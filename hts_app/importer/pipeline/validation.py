"""
Validation rules for staged tariff lines and the validation stage runner.

Each rule inspects a payload (the staged entry's normalized projection) and
yields at most one result. Rules are independent; a payload missing a field
simply skips the rules that depend on it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Sequence

from sqlalchemy import delete, func, select

from hts_app.models.base import db
from hts_app.models.importer.schema import (
    ImportJob,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
    ValidationSeverity,
)

from ..metrics import record_batch
from ..utils import digits_only
from .context import StageContext
from .rates import classify_rate

PAGE_SIZE = 1000
RATE_COLUMNS = ("general_rate", "special_rate", "other_rate")

_CODE_CHARSET_RE = re.compile(r"^[0-9.]+$")
_CHAPTER_RE = re.compile(r"^\d{2}$")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of one rule against one payload."""

    issue_code: str
    severity: ValidationSeverity
    message: str
    details: Mapping[str, object]


@dataclass(frozen=True)
class ValidationRule:
    code: str
    description: str
    severity: ValidationSeverity

    def evaluate(self, payload: Mapping[str, object | None]) -> Iterable[ValidationResult]:
        raise NotImplementedError

    def _result(self, message: str, *, severity: ValidationSeverity | None = None, **details) -> list[ValidationResult]:
        return [
            ValidationResult(
                issue_code=self.code,
                severity=severity or self.severity,
                message=message,
                details=details,
            )
        ]


def _code(payload: Mapping[str, object | None]) -> str:
    value = payload.get("hts_number")
    return str(value).strip() if value is not None else ""


class MissingCodeRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="MISSING_HTS_NUMBER",
            description="Every entry must carry a tariff code.",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, payload):
        if _code(payload):
            return []
        return self._result("Entry has no HTS number.", field="hts_number")


class MissingDescriptionRule(ValidationRule):
    """Only fires when the source supplied a description field that is blank."""

    def __init__(self) -> None:
        super().__init__(
            code="MISSING_DESCRIPTION",
            description="Descriptions should not be blank.",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, payload):
        if "description" not in payload:
            return []
        value = payload.get("description")
        if value is not None and str(value).strip():
            return []
        return self._result("Entry has a blank description.", field="description")


class ChapterRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="INVALID_CHAPTER",
            description="Chapter must be two digits and prefix the code.",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, payload):
        chapter = payload.get("chapter")
        if chapter in (None, ""):
            return []
        chapter = str(chapter).strip()
        if not _CHAPTER_RE.match(chapter):
            return self._result(f"Chapter '{chapter}' is not a two-digit value.", field="chapter", value=chapter)
        digits = digits_only(payload.get("hts_number"))
        if len(digits) >= 2 and digits[:2] != chapter:
            return [
                ValidationResult(
                    issue_code="CHAPTER_MISMATCH",
                    severity=ValidationSeverity.WARNING,
                    message=f"Chapter '{chapter}' does not match code prefix '{digits[:2]}'.",
                    details={"field": "chapter", "value": chapter, "expected": digits[:2]},
                )
            ]
        return []


class CodeCharsetRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="INVALID_HTS_CHARACTERS",
            description="Codes contain only digits and dots.",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, payload):
        code = _code(payload)
        if not code or _CODE_CHARSET_RE.match(code):
            return []
        return self._result(f"Code '{code}' contains characters other than digits and dots.", value=code)


class HierarchyRule(ValidationRule):
    """Derived prefixes and the parent code must be consistent with the code itself."""

    PREFIX_FIELDS = (("heading", 4), ("subheading", 6), ("tariff_line", 8), ("statistical_suffix", 10))

    def __init__(self) -> None:
        super().__init__(
            code="HIERARCHY_MISMATCH",
            description="Hierarchy fields must be prefixes of the code.",
            severity=ValidationSeverity.WARNING,
        )

    def evaluate(self, payload):
        digits = digits_only(payload.get("hts_number"))
        if not digits:
            return []
        mismatched: list[str] = []
        for name, length in self.PREFIX_FIELDS:
            value = payload.get(name)
            if value in (None, ""):
                continue
            if len(str(value)) != length or not digits.startswith(str(value)):
                mismatched.append(name)
        parent_digits = digits_only(payload.get("parent_hts_number"))
        if parent_digits and not (digits.startswith(parent_digits) and len(parent_digits) < len(digits)):
            mismatched.append("parent_hts_number")
        if not mismatched:
            return []
        return self._result(
            f"Hierarchy fields inconsistent with code: {', '.join(mismatched)}.",
            fields=mismatched,
        )


class RateTextRule(ValidationRule):
    def __init__(self, column: str) -> None:
        super().__init__(
            code="UNRECOGNIZED_RATE_FORMAT",
            description=f"{column} should match a known rate shape.",
            severity=ValidationSeverity.WARNING,
        )
        object.__setattr__(self, "column", column)

    def evaluate(self, payload):
        column = self.column
        if column not in payload:
            return []
        classification = classify_rate(payload.get(column))
        if not classification.likely_rate:
            return self._result(
                f"{column} '{classification.text}' does not look like a duty rate.",
                field=column,
                value=classification.text,
            )
        if classification.ambiguous:
            return [
                ValidationResult(
                    issue_code="AMBIGUOUS_RATE_FORMAT",
                    severity=ValidationSeverity.INFO,
                    message=f"{column} '{classification.text}' matches several rate shapes.",
                    details={"field": column, "value": classification.text, "matches": list(classification.matches)},
                )
            ]
        return []


class IndentRule(ValidationRule):
    def __init__(self) -> None:
        super().__init__(
            code="NEGATIVE_INDENT",
            description="Indent must be zero or positive.",
            severity=ValidationSeverity.ERROR,
        )

    def evaluate(self, payload):
        indent = payload.get("indent")
        if indent is None:
            return []
        try:
            value = int(indent)
        except (TypeError, ValueError):
            return self._result(f"Indent '{indent}' is not an integer.", value=str(indent))
        if value >= 0:
            return []
        return self._result(f"Indent {value} is negative.", value=value)


DEFAULT_RULES: tuple[ValidationRule, ...] = (
    MissingCodeRule(),
    MissingDescriptionRule(),
    ChapterRule(),
    CodeCharsetRule(),
    HierarchyRule(),
    *(RateTextRule(column) for column in RATE_COLUMNS),
    IndentRule(),
)


def evaluate_payload(
    payload: Mapping[str, object | None],
    rules: Sequence[ValidationRule] = DEFAULT_RULES,
) -> list[ValidationResult]:
    results: list[ValidationResult] = []
    for rule in rules:
        results.extend(rule.evaluate(payload))
    return results


def build_payload(entry: StagedEntry) -> dict[str, object | None]:
    payload = dict(entry.normalized or {})
    payload.setdefault("hts_number", entry.hts_number)
    payload.setdefault("indent", entry.indent)
    payload.setdefault("chapter", entry.chapter)
    return payload


def summarize_validation(job: ImportJob) -> dict[str, object]:
    """Aggregate persisted issues into the job's validation summary."""
    severity_counts = dict(
        db.session.execute(
            select(ValidationIssue.severity, func.count())
            .where(ValidationIssue.import_id == job.id)
            .group_by(ValidationIssue.severity)
        ).all()
    )
    total = db.session.scalar(select(func.count()).select_from(StagedEntry).where(StagedEntry.import_id == job.id)) or 0
    entries_with_errors = (
        db.session.scalar(
            select(func.count(func.distinct(ValidationIssue.hts_number))).where(
                ValidationIssue.import_id == job.id,
                ValidationIssue.severity == ValidationSeverity.ERROR,
            )
        )
        or 0
    )
    return {
        "total": int(total),
        "errorCount": int(severity_counts.get(ValidationSeverity.ERROR, 0)),
        "warningCount": int(severity_counts.get(ValidationSeverity.WARNING, 0)),
        "infoCount": int(severity_counts.get(ValidationSeverity.INFO, 0)),
        "validCount": max(int(total) - int(entries_with_errors), 0),
        "validatedAt": datetime.now(timezone.utc).isoformat(),
    }


def run_validation_stage(
    ctx: StageContext,
    *,
    page_size: int | None = None,
    rules: Sequence[ValidationRule] = DEFAULT_RULES,
) -> dict[str, object]:
    """Validate staged entries page by page, resuming after the last committed code."""
    job = ctx.job
    checkpoint = ctx.checkpoint
    page_size = page_size or ctx.setting("IMPORTER_VALIDATION_PAGE_SIZE", PAGE_SIZE)

    if checkpoint.processed_records == 0:
        db.session.execute(delete(ValidationIssue).where(ValidationIssue.import_id == job.id))
        ctx.log.log("Validating staged entries")
    else:
        ctx.log.log(f"Resuming validation after {checkpoint.last_processed_partition_key}")

    while True:
        query = select(StagedEntry).where(StagedEntry.import_id == job.id)
        if checkpoint.last_processed_partition_key is not None:
            query = query.where(StagedEntry.hts_number > checkpoint.last_processed_partition_key)
        entries = list(db.session.scalars(query.order_by(StagedEntry.hts_number).limit(page_size)))
        if not entries:
            break

        issues: list[ValidationIssue] = []
        for entry in entries:
            for result in evaluate_payload(build_payload(entry), rules):
                issues.append(
                    ValidationIssue(
                        import_id=job.id,
                        stage_entry_id=entry.id,
                        hts_number=entry.hts_number,
                        issue_code=result.issue_code,
                        severity=result.severity,
                        message=result.message,
                        details=dict(result.details),
                    )
                )
        db.session.add_all(issues)
        checkpoint = checkpoint.with_batch(records=len(entries), partition_key=entries[-1].hts_number)
        ctx.log.log(
            f"Validated {checkpoint.processed_records} entries "
            f"(batch {checkpoint.processed_batches}, {len(issues)} issue(s))"
        )
        ctx.save(checkpoint)
        record_batch("validation")

    summary = summarize_validation(job)
    job.validation_summary = summary
    ctx.log.log(
        f"Validation complete: {summary['errorCount']} error(s), {summary['warningCount']} warning(s), "
        f"{summary['infoCount']} info"
    )
    ctx.advance(PipelineStage.DIFFING, checkpoint=checkpoint)
    return summary
