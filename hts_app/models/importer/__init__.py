"""
Importer-specific SQLAlchemy models: jobs, staged entries, validation issues,
and diff records.
"""

from .schema import (
    ACTIVE_JOB_STATUSES,
    CLOSED_JOB_STATUSES,
    DiffRecord,
    DiffType,
    ImportJob,
    ImportJobStatus,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
    ValidationSeverity,
)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "CLOSED_JOB_STATUSES",
    "DiffRecord",
    "DiffType",
    "ImportJob",
    "ImportJobStatus",
    "PipelineStage",
    "StagedEntry",
    "ValidationIssue",
    "ValidationSeverity",
]
