"""Prometheus metrics helpers for the import pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_stage_duration = Histogram(
    "hts_importer_stage_duration_seconds",
    "Wall-clock duration of a pipeline stage invocation.",
    ["stage"],
    buckets=(0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 900, 1800),
)
_batch_counter = Counter(
    "hts_importer_batches_total",
    "Committed pipeline batches by stage.",
    ["stage"],
)
_download_bytes = Counter(
    "hts_importer_download_bytes_total",
    "Bytes written to the blob store by the download stage.",
)
_download_attempts = Counter(
    "hts_importer_download_attempts_total",
    "Source download attempts by outcome.",
    ["outcome"],
)
_gate_halts = Counter(
    "hts_importer_promotion_gate_halts_total",
    "Jobs parked in requires_review by the promotion gate.",
)
_job_outcomes = Counter(
    "hts_importer_jobs_total",
    "Finished pipeline executions by terminal status.",
    ["status"],
)


def record_stage_duration(stage: str, duration_seconds: float) -> None:
    _stage_duration.labels(stage=stage).observe(max(duration_seconds, 0.0))


def record_batch(stage: str) -> None:
    _batch_counter.labels(stage=stage).inc()


def record_download(*, outcome: Literal["success", "failure", "skipped"], size_bytes: int = 0) -> None:
    _download_attempts.labels(outcome=outcome).inc()
    if size_bytes:
        _download_bytes.inc(size_bytes)


def record_gate_halt() -> None:
    _gate_halts.inc()


def record_job_outcome(status: str) -> None:
    _job_outcomes.labels(status=status).inc()
