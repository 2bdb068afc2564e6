"""
Runtime state handed to every pipeline stage.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import requests
from flask import current_app

from hts_app.models.base import db
from hts_app.models.importer.schema import ImportJob, PipelineStage

from ..storage import BlobStore, get_blob_store
from .checkpoint import Checkpoint, load_checkpoint, save_checkpoint
from .job_log import ImportJobLog, JobLogSink


@dataclass
class StageContext:
    job: ImportJob
    log: JobLogSink
    blob_store: BlobStore
    config: Mapping[str, Any]
    session: requests.Session = field(default_factory=requests.Session)
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def for_job(
        cls,
        job: ImportJob,
        *,
        blob_store: BlobStore | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
        log: JobLogSink | None = None,
    ) -> "StageContext":
        app = current_app._get_current_object()
        return cls(
            job=job,
            log=log or ImportJobLog(job),
            blob_store=blob_store or get_blob_store(app),
            config=app.config,
            session=session or requests.Session(),
            sleep=sleep or time.sleep,
        )

    @property
    def checkpoint(self) -> Checkpoint:
        return load_checkpoint(self.job)

    def setting(self, key: str, default: int) -> int:
        try:
            return int(self.config.get(key, default))
        except (TypeError, ValueError):
            return default

    def save(self, checkpoint: Checkpoint, *, commit: bool = True) -> Checkpoint:
        save_checkpoint(self.job, checkpoint)
        if commit:
            db.session.commit()
        return checkpoint

    def advance(self, stage: PipelineStage, *, checkpoint: Checkpoint | None = None) -> Checkpoint:
        """Persist the move to ``stage`` and log the transition."""
        base = checkpoint or self.checkpoint
        self.log.log(f"Stage {base.stage.value} complete; advancing to {stage.value}")
        return self.save(base.advance(stage))

    def update_counts(self, section: str, values: Mapping[str, Any]) -> None:
        counts = dict(self.job.counts_json or {})
        bucket = dict(counts.get(section) or {})
        bucket.update(values)
        counts[section] = bucket
        self.job.counts_json = counts
