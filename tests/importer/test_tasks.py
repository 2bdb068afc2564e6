from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hts_app.importer import tasks
from hts_app.importer.errors import DownloadError
from hts_app.importer.tasks import acquire_job_lock, execute_import_job, release_job_lock
from hts_app.models import ImportJob, ImportJobStatus, db


def _reload(job_id):
    db.session.expire_all()
    return db.session.get(ImportJob, job_id)


def test_lock_is_exclusive_until_released(job_factory):
    job = job_factory()

    assert acquire_job_lock(job.id, "worker-a:1", ttl_seconds=60) is True
    assert acquire_job_lock(job.id, "worker-b:2", ttl_seconds=60) is False
    assert acquire_job_lock(job.id, "worker-a:1", ttl_seconds=60) is True

    release_job_lock(job.id, "worker-a:1")
    assert _reload(job.id).locked_by is None
    assert acquire_job_lock(job.id, "worker-b:2", ttl_seconds=60) is True


def test_stale_lock_can_be_taken_over(job_factory):
    job = job_factory(locked_by="dead-worker:9", locked_at=datetime.now(timezone.utc) - timedelta(hours=4))

    assert acquire_job_lock(job.id, "worker-b:2", ttl_seconds=60 * 60) is True
    assert _reload(job.id).locked_by == "worker-b:2"


def test_release_ignores_other_owners(job_factory):
    job = job_factory(locked_by="worker-a:1", locked_at=datetime.now(timezone.utc))

    release_job_lock(job.id, "worker-b:2")

    assert _reload(job.id).locked_by == "worker-a:1"


def test_task_skips_a_locked_job(job_factory, monkeypatch):
    job = job_factory(locked_by="worker-a:1", locked_at=datetime.now(timezone.utc))
    calls = []
    monkeypatch.setattr(tasks, "execute_import", lambda import_id: calls.append(import_id))

    result = execute_import_job.run(job.id)

    assert result == {"import_id": job.id, "status": "skipped", "reason": "locked"}
    assert calls == []


def test_task_runs_pipeline_and_releases_lock(job_factory):
    job = job_factory(status=ImportJobStatus.COMPLETED)

    result = execute_import_job.run(job.id)

    assert result["status"] == "completed"
    assert result["import_id"] == job.id
    reloaded = _reload(job.id)
    assert reloaded.locked_by is None
    assert reloaded.locked_at is None


def test_task_releases_lock_when_pipeline_fails(job_factory, monkeypatch):
    job = job_factory()

    def failing(import_id):
        raise DownloadError("HTTP 503 fetching source", status_code=503)

    monkeypatch.setattr(tasks, "execute_import", failing)
    with pytest.raises(DownloadError):
        execute_import_job.run(job.id)

    assert _reload(job.id).locked_by is None
