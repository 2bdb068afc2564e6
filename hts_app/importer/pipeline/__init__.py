"""HTS import pipeline stages and services."""

from __future__ import annotations

from .checkpoint import Checkpoint, load_checkpoint, reset_checkpoint, save_checkpoint
from .context import StageContext
from .diff import DiffCounts, run_diff_stage
from .download import DownloadSummary, download_with_retry, run_download_stage, stream_source
from .job_log import ImportJobLog, JobLogSink
from .job_service import ImportJobService, JobFilters, JobListResult, enqueue_import, serialize_job
from .orchestrator import PipelineResult, execute_import
from .promotion import PromotionSummary, evaluate_gate, run_promotion_stage
from .rates import RateClassification, classify_rate
from .staging import StagingSummary, run_staging_stage
from .validation import DEFAULT_RULES, ValidationResult, evaluate_payload, run_validation_stage

__all__ = [
    "Checkpoint",
    "DEFAULT_RULES",
    "DiffCounts",
    "DownloadSummary",
    "ImportJobLog",
    "ImportJobService",
    "JobFilters",
    "JobListResult",
    "JobLogSink",
    "PipelineResult",
    "PromotionSummary",
    "RateClassification",
    "StageContext",
    "StagingSummary",
    "ValidationResult",
    "classify_rate",
    "download_with_retry",
    "enqueue_import",
    "evaluate_gate",
    "evaluate_payload",
    "execute_import",
    "load_checkpoint",
    "reset_checkpoint",
    "run_diff_stage",
    "run_download_stage",
    "run_promotion_stage",
    "run_staging_stage",
    "run_validation_stage",
    "save_checkpoint",
    "serialize_job",
    "stream_source",
]
