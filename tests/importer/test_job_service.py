from __future__ import annotations

import csv
from io import StringIO

import pytest

from hts_app.importer.errors import ImportJobConflict, ImportJobNotFound, ImportJobStateError
from hts_app.importer.pipeline import ImportJobService, JobFilters
from hts_app.models import (
    DiffRecord,
    DiffType,
    HtsEntry,
    ImportJobStatus,
    PipelineStage,
    StagedEntry,
    ValidationIssue,
    ValidationSeverity,
    db,
)

from .support import BASELINE_VERSION, NEXT_VERSION


class FakeSource:
    def __init__(self, latest: str = NEXT_VERSION, update: dict | None = None):
        self.latest = latest
        self.update = update
        self.checked: list[str | None] = []

    def resolve(self, version):
        resolved = self.latest if version == "latest" else version
        return resolved, f"https://example.test/hts_{resolved}_json.json"

    def check_for_updates(self, current_version):
        self.checked.append(current_version)
        return self.update or {"hasUpdate": False, "currentVersion": current_version}


@pytest.fixture
def enqueued():
    return []


@pytest.fixture
def service(importer_app, enqueued):
    def _enqueue(job):
        enqueued.append(job.id)
        job.task_id = f"task-{job.id}"
        return job.task_id

    return ImportJobService(source=FakeSource(), enqueue=_enqueue)


def test_create_resolves_latest_and_enqueues(service, enqueued):
    job = service.create("latest", requested_by="ops@example.test")

    assert job.source_version == NEXT_VERSION
    assert job.status == ImportJobStatus.PENDING
    assert job.checkpoint["stage"] == PipelineStage.DOWNLOADING.value
    assert job.requested_by == "ops@example.test"
    assert enqueued == [job.id]
    assert job.log_lines and "Import requested" in job.log_lines[0]


def test_create_rejects_a_second_active_job_for_a_version(service, job_factory):
    existing = job_factory(status=ImportJobStatus.REQUIRES_REVIEW)

    with pytest.raises(ImportJobConflict, match=str(existing.id)):
        service.create(NEXT_VERSION, enqueue=False)


def test_create_allows_a_version_after_completion(service, job_factory):
    job_factory(status=ImportJobStatus.COMPLETED)

    job = service.create(NEXT_VERSION, enqueue=False)

    assert job.status == ImportJobStatus.PENDING


def test_get_missing_job(service):
    with pytest.raises(ImportJobNotFound):
        service.get(404)


def test_job_filters_coerce_inputs(importer_app):
    filters = JobFilters.coerce(page="2", page_size="1000", statuses=["Completed", ""], source_version=" 2025_revision_2 ")

    assert filters.page == 2
    assert filters.page_size == 500
    assert filters.statuses == (ImportJobStatus.COMPLETED,)
    assert filters.source_version == NEXT_VERSION

    with pytest.raises(ValueError):
        JobFilters.coerce(page="abc")
    with pytest.raises(ValueError):
        JobFilters.coerce(statuses=["exploded"])


def test_list_jobs_filters_and_paginates(service, job_factory):
    job_factory(version=BASELINE_VERSION, status=ImportJobStatus.COMPLETED)
    job_factory(status=ImportJobStatus.FAILED)
    job_factory(version="2025_revision_3")

    result = service.list_jobs(JobFilters.coerce(page_size=2))
    assert result.total == 3
    assert result.total_pages == 2
    assert len(result.items) == 2

    failed = service.list_jobs(JobFilters.coerce(statuses=["failed"]))
    assert [item["status"] for item in failed.items] == ["failed"]

    empty = service.list_jobs(JobFilters.coerce(source_version="1999_revision_1"))
    assert empty.total == 0
    assert empty.items == []


def test_request_promotion_rules(service, job_factory, enqueued):
    pending = job_factory()
    with pytest.raises(ImportJobStateError):
        service.request_promotion(pending.id)

    parked = job_factory(
        version="2025_revision_3",
        status=ImportJobStatus.REQUIRES_REVIEW,
        stage=PipelineStage.PROCESSING,
        validation_summary={"errorCount": 2},
    )
    with pytest.raises(ImportJobConflict, match="override"):
        service.request_promotion(parked.id)

    job = service.request_promotion(parked.id, override=True, reason="known publisher issue", requested_by="lead")

    assert job.status == ImportJobStatus.PENDING
    assert job.override_promotion is True
    assert job.override_reason == "known publisher issue"
    assert enqueued == [parked.id]
    assert "Promotion requested by lead" in job.log_lines[-1]


def test_set_override_then_clear(service, job_factory):
    job = job_factory(status=ImportJobStatus.REQUIRES_REVIEW)

    service.set_override(job.id, reason="approved")
    assert job.override_promotion is True

    service.set_override(job.id, enabled=False)
    assert job.override_promotion is False
    assert job.override_reason is None


def test_reject_only_from_review_or_failed(service, job_factory):
    running = job_factory(status=ImportJobStatus.IN_PROGRESS)
    with pytest.raises(ImportJobStateError):
        service.reject(running.id)

    parked = job_factory(version="2025_revision_3", status=ImportJobStatus.REQUIRES_REVIEW)
    job = service.reject(parked.id, reason="bad release", requested_by="lead")

    assert job.status == ImportJobStatus.REJECTED
    assert job.completed_at is not None
    assert "Rejected by lead: bad release" in job.log_lines[-1]


def test_restart_rewinds_checkpoint(service, job_factory, enqueued):
    job = job_factory(status=ImportJobStatus.FAILED, stage=PipelineStage.DIFFING, error_message="boom")

    service.restart(job.id, stage=PipelineStage.VALIDATING, enqueue=True)

    assert job.status == ImportJobStatus.PENDING
    assert job.error_message is None
    assert job.checkpoint["stage"] == PipelineStage.VALIDATING.value
    assert enqueued == [job.id]


def test_restart_refuses_a_locked_running_job(service, job_factory):
    job = job_factory(status=ImportJobStatus.IN_PROGRESS, locked_by="worker-1:abc")

    with pytest.raises(ImportJobStateError, match="worker-1"):
        service.restart(job.id)


def test_rollback_restores_superseded_rows(service, job_factory, live_entry_factory):
    live_entry_factory("0101.21.00", is_active=False, superseded_by_version=NEXT_VERSION)
    live_entry_factory("0101.30.00", is_active=False, superseded_by_version=NEXT_VERSION)
    live_entry_factory("0101.21.00", version=NEXT_VERSION)
    live_entry_factory("0101.90.00", version=NEXT_VERSION)
    job = job_factory(status=ImportJobStatus.COMPLETED)

    service.rollback(job.id, reason="wrong file", requested_by="lead")

    assert job.status == ImportJobStatus.ROLLED_BACK
    assert job.rollback_info["removedEntries"] == 2
    assert job.rollback_info["reactivatedEntries"] == 2
    assert db.session.query(HtsEntry).filter_by(version=NEXT_VERSION).count() == 0
    active = db.session.query(HtsEntry).filter_by(is_active=True).all()
    assert sorted(row.hts_number for row in active) == ["0101.21.00", "0101.30.00"]
    assert all(row.superseded_by_version is None for row in active)


def test_rollback_requires_latest_completed_job(service, job_factory):
    older = job_factory(status=ImportJobStatus.COMPLETED)
    newer = job_factory(version="2025_revision_3", status=ImportJobStatus.COMPLETED)

    with pytest.raises(ImportJobConflict, match=str(newer.id)):
        service.rollback(older.id)

    pending = job_factory(version="2025_revision_4")
    with pytest.raises(ImportJobStateError):
        service.rollback(pending.id)


def test_check_for_updates_uses_latest_completed_version(importer_app, job_factory):
    source = FakeSource(update={"hasUpdate": True, "latestVersion": "2025_revision_3"})
    service = ImportJobService(source=source, enqueue=lambda job: "unused")
    job_factory(version=BASELINE_VERSION, status=ImportJobStatus.COMPLETED)
    job_factory(status=ImportJobStatus.FAILED)

    assert service.check_for_updates()["hasUpdate"] is True
    assert source.checked == [BASELINE_VERSION]


def test_logs_are_paged(service, job_factory):
    job = job_factory(log_lines=[f"line {index}" for index in range(5)])

    page = service.logs(job.id, offset=1, limit=2)

    assert page == {"lines": ["line 1", "line 2"], "total": 5, "offset": 1, "limit": 2}


def _seed_review_data(job):
    entry = StagedEntry(
        import_id=job.id,
        source_version=job.source_version,
        hts_number="0101.21.00",
        indent=1,
        description="Horses",
        normalized={"hts_number": "0101.21.00"},
        raw_item={"htsno": "0101.21.00"},
        row_hash="abc",
        partition_key="01",
    )
    db.session.add(entry)
    db.session.flush()
    db.session.add_all(
        [
            ValidationIssue(
                import_id=job.id,
                stage_entry_id=entry.id,
                hts_number="0101.21.00",
                issue_code="MISSING_DESCRIPTION",
                severity=ValidationSeverity.WARNING,
                message="blank",
                details={},
            ),
            DiffRecord(
                import_id=job.id,
                stage_entry_id=entry.id,
                hts_number="0101.21.00",
                diff_type=DiffType.CHANGED,
                diff_summary={
                    "before": {"description": "=HYPERLINK(\"x\")", "general_rate": "Free"},
                    "after": {"description": "Horses", "general_rate": "-5%"},
                    "changes": {"description": {}, "general_rate": {}},
                    "extra_taxes": [{"taxCode": "S301"}, {"taxCode": "MPF"}],
                },
            ),
            DiffRecord(
                import_id=job.id,
                hts_number="0101.30.00",
                diff_type=DiffType.REMOVED,
                diff_summary={"before": {"description": "Mules"}, "after": None, "changes": {}, "extra_taxes": []},
            ),
        ]
    )
    db.session.commit()


def test_stage_summary_counts(service, job_factory):
    job = job_factory(stage=PipelineStage.PROCESSING)
    _seed_review_data(job)

    summary = service.stage_summary(job.id)

    assert summary["stage"] == "processing"
    assert summary["stagedCount"] == 1
    assert summary["validationCounts"] == {"error": 0, "warning": 1, "info": 0}
    assert summary["diffCounts"] == {"added": 0, "changed": 1, "removed": 1, "unchanged": 0}


def test_list_diffs_and_issues_filter(service, job_factory):
    job = job_factory()
    _seed_review_data(job)

    removed = service.list_diffs(job.id, diff_type="REMOVED")
    assert [item["hts_number"] for item in removed["items"]] == ["0101.30.00"]
    assert removed["total"] == 1

    with pytest.raises(ValueError):
        service.list_diffs(job.id, diff_type="moved")

    warnings = service.list_validation_issues(job.id, severity="warning", page_size=10)
    assert warnings["items"][0]["issue_code"] == "MISSING_DESCRIPTION"


def test_export_diffs_csv_neutralises_formulas(service, job_factory):
    job = job_factory()
    _seed_review_data(job)

    filename, content = service.export_diffs_csv(job.id, diff_type="changed")

    assert filename == f"hts_import_{job.id}_{NEXT_VERSION}_diffs_changed.csv"
    rows = list(csv.reader(StringIO(content)))
    assert rows[0][0] == "htsNumber"
    assert len(rows) == 2
    row = dict(zip(rows[0], rows[1]))
    assert row["diffType"] == "changed"
    assert row["changedFields"] == "description;general_rate"
    assert row["currentDescription"] == "'=HYPERLINK(\"x\")"
    assert row["stagedGeneralRate"] == "'-5%"
    assert row["extraTaxCodes"] == "S301;MPF"
