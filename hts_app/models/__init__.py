# hts_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .hts import ExtraTaxRule, HtsEntry
from .importer import (
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
    "db",
    "BaseModel",
    "HtsEntry",
    "ExtraTaxRule",
    # Importer models
    "ImportJob",
    "ImportJobStatus",
    "PipelineStage",
    "StagedEntry",
    "ValidationIssue",
    "ValidationSeverity",
    "DiffRecord",
    "DiffType",
]
