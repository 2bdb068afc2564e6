"""
SQLAlchemy models backing the HTS import pipeline.

An ``ImportJob`` owns its staged rows, validation issues, and diff records.
Staged artefacts are rebuilt by re-running the corresponding stage; the job
row itself is never deleted so it doubles as the audit trail.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REQUIRES_REVIEW = "requires_review"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"


ACTIVE_JOB_STATUSES = (
    ImportJobStatus.PENDING,
    ImportJobStatus.IN_PROGRESS,
    ImportJobStatus.REQUIRES_REVIEW,
    ImportJobStatus.FAILED,
)
CLOSED_JOB_STATUSES = (
    ImportJobStatus.ROLLED_BACK,
    ImportJobStatus.REJECTED,
)


class PipelineStage(str, enum.Enum):
    """Checkpointed pipeline stages, declared in execution order."""

    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    STAGING = "staging"
    VALIDATING = "validating"
    DIFFING = "diffing"
    PROCESSING = "processing"
    COMPLETED = "completed"

    @property
    def position(self) -> int:
        return list(PipelineStage).index(self)

    def at_or_after(self, other: "PipelineStage") -> bool:
        return self.position >= other.position

    def next_stage(self) -> "PipelineStage":
        stages = list(PipelineStage)
        return stages[min(self.position + 1, len(stages) - 1)]


class ValidationSeverity(str, enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class DiffType(str, enum.Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


class ImportJob(BaseModel):
    """One ingestion attempt for a published schedule version."""

    __tablename__ = "hts_import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source_version: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    source_url: Mapped[str] = mapped_column(db.String(500), nullable=False)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="hts_import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    checkpoint: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    total_entries: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    imported_entries: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_entries: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_entries: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_entries: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_entries_detail: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    log_lines: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    validation_summary: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    override_promotion: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    override_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    requested_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    rollback_info: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_seconds: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    task_id: Mapped[str | None] = mapped_column(db.String(155), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(
        db.String(155),
        nullable=True,
        comment="Singleton key of the executor currently holding this job.",
    )
    locked_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    staged_entries = relationship(
        "StagedEntry",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    validation_issues = relationship(
        "ValidationIssue",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    diff_records = relationship(
        "DiffRecord",
        back_populates="import_job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_hts_import_jobs_version_status", "source_version", "status"),)


class StagedEntry(BaseModel):
    """Normalized, not-yet-promoted source record for one import job."""

    __tablename__ = "hts_stage_entries"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(
        ForeignKey("hts_import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_version: Mapped[str] = mapped_column(db.String(64), nullable=False)
    partition_key: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    hts_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    indent: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    unit: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    general_rate: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    special_rate: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    other_rate: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    chapter99: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    chapter: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    heading: Mapped[str | None] = mapped_column(db.String(4), nullable=True)
    subheading: Mapped[str | None] = mapped_column(db.String(6), nullable=True)
    tariff_line: Mapped[str | None] = mapped_column(db.String(8), nullable=True)
    statistical_suffix: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    parent_hts_number: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    row_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    raw_item: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    normalized: Mapped[dict] = mapped_column(db.JSON, nullable=False)

    import_job = relationship("ImportJob", back_populates="staged_entries")

    __table_args__ = (
        UniqueConstraint("import_id", "hts_number", name="uq_hts_stage_entries_import_number"),
        Index("idx_hts_stage_entries_import_chapter", "import_id", "chapter"),
    )


class ValidationIssue(BaseModel):
    """Rule outcome recorded against a staged entry."""

    __tablename__ = "hts_stage_validation_issues"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(
        ForeignKey("hts_import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("hts_stage_entries.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    hts_number: Mapped[str | None] = mapped_column(db.String(20), nullable=True)
    issue_code: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    severity: Mapped[ValidationSeverity] = mapped_column(
        Enum(ValidationSeverity, name="hts_validation_severity_enum"),
        nullable=False,
        default=ValidationSeverity.ERROR,
        index=True,
    )
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    import_job = relationship("ImportJob", back_populates="validation_issues")

    __table_args__ = (Index("idx_hts_validation_issues_import_severity", "import_id", "severity"),)


class DiffRecord(BaseModel):
    """Classification of one code relative to the live dataset."""

    __tablename__ = "hts_stage_diffs"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(
        ForeignKey("hts_import_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("hts_stage_entries.id", ondelete="CASCADE"),
        nullable=True,
    )
    current_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("hts_entries.id", ondelete="SET NULL"),
        nullable=True,
    )
    hts_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    diff_type: Mapped[DiffType] = mapped_column(
        Enum(DiffType, name="hts_diff_type_enum"),
        nullable=False,
        index=True,
    )
    diff_summary: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    import_job = relationship("ImportJob", back_populates="diff_records")

    __table_args__ = (
        UniqueConstraint("import_id", "hts_number", name="uq_hts_stage_diffs_import_number"),
        Index("idx_hts_stage_diffs_import_type", "import_id", "diff_type"),
    )
