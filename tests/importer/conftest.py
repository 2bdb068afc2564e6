from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import pytest

from hts_app.importer.pipeline.checkpoint import Checkpoint, reset_checkpoint, save_checkpoint
from hts_app.importer.storage import LocalBlobStore, build_blob_key
from hts_app.models import ExtraTaxRule, HtsEntry, ImportJob, ImportJobStatus, PipelineStage, db

from .support import BASELINE_VERSION, NEXT_VERSION


@pytest.fixture
def importer_app(app):
    yield app


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "store", store_id="test-store")


@pytest.fixture
def job_factory(importer_app):
    def _factory(
        *,
        version: str = NEXT_VERSION,
        status: ImportJobStatus = ImportJobStatus.PENDING,
        stage: PipelineStage = PipelineStage.DOWNLOADING,
        **fields: Any,
    ) -> ImportJob:
        fields.setdefault("log_lines", [])
        job = ImportJob(
            source_version=version,
            source_url=f"https://example.test/hts_{version}.json",
            status=status,
            **fields,
        )
        reset_checkpoint(job, stage=stage)
        db.session.add(job)
        db.session.commit()
        return job

    return _factory


@pytest.fixture
def live_entry_factory(importer_app):
    def _factory(
        hts_number: str,
        *,
        version: str = BASELINE_VERSION,
        is_active: bool = True,
        description: str | None = "Live animals",
        unit: str | None = "No.",
        general_rate: str | None = "Free",
        other_rate: str | None = "Free",
        indent: int = 0,
        **fields: Any,
    ) -> HtsEntry:
        digits = "".join(ch for ch in hts_number if ch.isdigit())
        entry = HtsEntry(
            hts_number=hts_number,
            version=version,
            source_version=version,
            indent=indent,
            description=description,
            unit=unit,
            general_rate=general_rate,
            other_rate=other_rate,
            chapter=digits[:2],
            is_active=is_active,
            import_date=datetime.now(timezone.utc),
            **fields,
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    return _factory


@pytest.fixture
def rule_factory(importer_app):
    def _factory(tax_code: str, **fields: Any) -> ExtraTaxRule:
        fields.setdefault("tax_name", f"{tax_code} surcharge")
        fields.setdefault("rate_text", "25%")
        rule = ExtraTaxRule(tax_code=tax_code, **fields)
        db.session.add(rule)
        db.session.commit()
        return rule

    return _factory


@pytest.fixture
def seed_blob(importer_app, blob_store):
    """Store ``document`` where the download stage will find it for ``version``."""

    def _seed(document: Any, *, version: str = NEXT_VERSION) -> str:
        key = build_blob_key(importer_app.config.get("IMPORTER_BLOB_NAMESPACE", "hts"), version)
        payload = json.dumps(document).encode("utf-8")
        blob_store.upload_stream(key, [payload])
        return key

    return _seed


@pytest.fixture
def downloaded_job(job_factory, seed_blob, blob_store):
    """Create a job whose checkpoint already points at a stored blob."""

    def _factory(document: Any, *, version: str = NEXT_VERSION, stage: PipelineStage = PipelineStage.STAGING, **fields):
        key = seed_blob(document, version=version)
        job = job_factory(version=version, **fields)
        metadata = blob_store.get_metadata(key)
        save_checkpoint(
            job,
            Checkpoint(
                stage=stage,
                blob_key=key,
                blob_store_id=blob_store.store_id,
                file_hash=metadata.etag,
                downloaded_bytes=metadata.size,
            ),
        )
        db.session.commit()
        return job

    return _factory
