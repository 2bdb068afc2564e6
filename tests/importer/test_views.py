from __future__ import annotations

from hts_app.models import DiffRecord, DiffType, ImportJob, ImportJobStatus, PipelineStage, db

from .support import NEXT_VERSION


def test_health_reports_flags(client):
    response = client.get("/importer/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "enabled": True, "worker_enabled": False}


def test_worker_health_disabled_without_worker(client):
    payload = client.get("/importer/worker_health").get_json()

    assert payload["status"] == "disabled"
    assert payload["queue"] == "imports"


def test_api_returns_404_when_importer_disabled(client, importer_app, monkeypatch):
    monkeypatch.setitem(importer_app.config, "IMPORTER_ENABLED", False)

    response = client.get("/importer/jobs")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Importer is disabled."
    assert client.get("/importer/health").status_code == 200


def test_jobs_list_paginates(client, job_factory):
    job_factory(version="2025_revision_1", status=ImportJobStatus.COMPLETED)
    job_factory()

    response = client.get("/importer/jobs?per_page=1&status=pending")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["total"] == 1
    assert payload["page_size"] == 1
    assert payload["jobs"][0]["source_version"] == NEXT_VERSION


def test_jobs_list_rejects_bad_filters(client):
    assert client.get("/importer/jobs?page=zero").status_code == 400
    assert client.get("/importer/jobs?status=exploded").status_code == 400


def test_job_detail_and_missing(client, job_factory):
    job = job_factory()

    detail = client.get(f"/importer/jobs/{job.id}")
    assert detail.status_code == 200
    assert detail.get_json()["checkpoint"]["stage"] == PipelineStage.DOWNLOADING.value

    missing = client.get("/importer/jobs/999")
    assert missing.status_code == 404
    assert "999" in missing.get_json()["error"]


def test_create_job_for_explicit_version(client):
    response = client.post("/importer/jobs", json={"version": NEXT_VERSION, "requested_by": "api"})

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["source_version"] == NEXT_VERSION
    assert payload["status"] == "pending"
    assert payload["task_id"] is None

    conflict = client.post("/importer/jobs", json={"version": NEXT_VERSION})
    assert conflict.status_code == 409

    invalid = client.post("/importer/jobs", json={"version": "yesterday"})
    assert invalid.status_code == 400


def test_promote_accepts_reviewed_job(client, job_factory):
    job = job_factory(
        status=ImportJobStatus.REQUIRES_REVIEW,
        stage=PipelineStage.PROCESSING,
        validation_summary={"errorCount": 3},
    )

    refused = client.post(f"/importer/jobs/{job.id}/promote", json={})
    assert refused.status_code == 409

    response = client.post(f"/importer/jobs/{job.id}/promote", json={"override": True, "reason": "signed off"})
    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "pending"
    assert payload["override_promotion"] is True

    again = client.post(f"/importer/jobs/{job.id}/promote", json={})
    assert again.status_code == 409


def test_reject_and_rollback_state_checks(client, job_factory):
    parked = job_factory(status=ImportJobStatus.REQUIRES_REVIEW)
    assert client.post(f"/importer/jobs/{parked.id}/rollback", json={}).status_code == 409

    rejected = client.post(f"/importer/jobs/{parked.id}/reject", json={"reason": "bad data"})
    assert rejected.status_code == 200
    assert rejected.get_json()["status"] == "rejected"
    assert db.session.get(ImportJob, parked.id).status == ImportJobStatus.REJECTED


def test_diff_listing_and_export(client, job_factory):
    job = job_factory()
    db.session.add_all(
        [
            DiffRecord(
                import_id=job.id,
                hts_number=code,
                diff_type=diff_type,
                diff_summary={"before": None, "after": {"description": "x"}, "changes": {}, "extra_taxes": []},
            )
            for code, diff_type in (("0101.21.00", DiffType.ADDED), ("0101.29.00", DiffType.UNCHANGED))
        ]
    )
    db.session.commit()

    listing = client.get(f"/importer/jobs/{job.id}/diffs?type=added")
    assert listing.status_code == 200
    assert [item["hts_number"] for item in listing.get_json()["items"]] == ["0101.21.00"]
    assert client.get(f"/importer/jobs/{job.id}/diffs?type=bogus").status_code == 400

    export = client.get(f"/importer/jobs/{job.id}/diffs/export")
    assert export.status_code == 200
    assert export.headers["Content-Type"].startswith("text/csv")
    assert f"hts_import_{job.id}_{NEXT_VERSION}_diffs.csv" in export.headers["Content-Disposition"]
    assert export.get_data(as_text=True).count("\n") == 3


def test_stage_summary_logs_and_failed_entries(client, job_factory):
    job = job_factory(
        stage=PipelineStage.PROCESSING,
        log_lines=["a", "b"],
        failed_entries=1,
        failed_entries_detail=[{"hts_number": "0101.21.00", "error": "value too long"}],
    )

    summary = client.get(f"/importer/jobs/{job.id}/stage-summary").get_json()
    assert summary["stage"] == "processing"
    assert summary["stagedCount"] == 0

    logs = client.get(f"/importer/jobs/{job.id}/logs?offset=1").get_json()
    assert logs["lines"] == ["b"]

    failed = client.get(f"/importer/jobs/{job.id}/failed-entries").get_json()
    assert failed == {"items": [{"hts_number": "0101.21.00", "error": "value too long"}], "total": 1}
