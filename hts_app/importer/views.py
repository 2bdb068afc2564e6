"""
Importer blueprint: health checks and the JSON review surface for import jobs.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, make_response, request

from config.monitoring import ImporterMonitoring
from hts_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import DEFAULT_QUEUE_NAME, HEALTHCHECK_TASK, get_celery_app
from .errors import ImportJobConflict, ImportJobNotFound, ImportPipelineError
from .pipeline.job_service import ImportJobService, JobFilters, serialize_job

importer_blueprint = Blueprint("hts_imports", __name__, url_prefix="/importer")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _service() -> ImportJobService:
    return ImportJobService()


@importer_blueprint.before_request
def _ensure_importer_enabled_api():
    if request.endpoint in ("hts_imports.importer_healthcheck", "hts_imports.importer_worker_health"):
        return None
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


@importer_blueprint.errorhandler(ImportJobNotFound)
def _handle_not_found(exc: ImportJobNotFound):
    return _json_error(str(exc), HTTPStatus.NOT_FOUND)


@importer_blueprint.errorhandler(ImportJobConflict)
def _handle_conflict(exc: ImportJobConflict):
    return _json_error(str(exc), HTTPStatus.CONFLICT)


@importer_blueprint.errorhandler(ValueError)
def _handle_bad_request(exc: ValueError):
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


@importer_blueprint.errorhandler(ImportPipelineError)
def _handle_upstream(exc: ImportPipelineError):
    return _json_error(str(exc), HTTPStatus.BAD_GATEWAY)


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    enabled = importer_state.get("enabled", False)
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))

    payload = {
        "importer_enabled": enabled,
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not enabled or not worker_enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK) if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    payload["status"] = "ok"
    return jsonify(payload), 200


@importer_blueprint.get("/jobs")
def importer_jobs_list():
    start_time = time.perf_counter()
    try:
        filters = JobFilters.coerce(
            page=request.args.get("page"),
            page_size=request.args.get("per_page") or request.args.get("page_size"),
            statuses=_split_csv(request.args.get("status")),
            source_version=request.args.get("version"),
        )
    except ValueError as exc:
        ImporterMonitoring.record_jobs_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = _service().list_jobs(filters)
    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_jobs_list(duration_seconds=duration, status="success")
    current_app.logger.info(
        "Import jobs list retrieved",
        extra={
            "importer_job_count": len(result.items),
            "importer_total_jobs": result.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return (
        jsonify(
            {
                "jobs": result.items,
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/jobs")
def importer_jobs_create():
    payload = _payload()
    job = _service().create(
        str(payload.get("version") or "latest"),
        requested_by=payload.get("requested_by"),
        enqueue=is_worker_enabled(current_app),
    )
    return jsonify(serialize_job(job)), HTTPStatus.CREATED


@importer_blueprint.get("/jobs/<int:import_id>")
def importer_job_detail(import_id: int):
    start_time = time.perf_counter()
    try:
        job = _service().get(import_id)
    except ImportJobNotFound:
        ImporterMonitoring.record_jobs_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        raise
    ImporterMonitoring.record_jobs_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(serialize_job(job)), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/logs")
def importer_job_logs(import_id: int):
    offset = request.args.get("offset", default=0, type=int)
    limit = request.args.get("limit", default=200, type=int)
    return jsonify(_service().logs(import_id, offset=offset, limit=limit)), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/failed-entries")
def importer_job_failed_entries(import_id: int):
    entries = _service().failed_entries(import_id)
    return jsonify({"items": entries, "total": len(entries)}), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/stage-summary")
def importer_job_stage_summary(import_id: int):
    return jsonify(_service().stage_summary(import_id)), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/validation")
def importer_job_validation(import_id: int):
    result = _service().list_validation_issues(
        import_id,
        severity=request.args.get("severity"),
        page=request.args.get("page", default=1, type=int),
        page_size=request.args.get("page_size", default=50, type=int),
    )
    return jsonify(result), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/diffs")
def importer_job_diffs(import_id: int):
    diff_type = request.args.get("type")
    try:
        result = _service().list_diffs(
            import_id,
            diff_type=diff_type,
            page=request.args.get("page", default=1, type=int),
            page_size=request.args.get("page_size", default=50, type=int),
        )
    except ValueError:
        ImporterMonitoring.record_diff_list(status="invalid_request", result_count=0)
        raise
    ImporterMonitoring.record_diff_list(status="success", result_count=len(result["items"]))
    return jsonify(result), HTTPStatus.OK


@importer_blueprint.get("/jobs/<int:import_id>/diffs/export")
def importer_job_diffs_export(import_id: int):
    start_time = time.perf_counter()
    filename, content = _service().export_diffs_csv(import_id, diff_type=request.args.get("type"))
    row_count = max(content.count("\n") - 1, 0)
    ImporterMonitoring.record_diff_export(
        duration_seconds=time.perf_counter() - start_time,
        status="success",
        row_count=row_count,
    )
    response = make_response(content)
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


@importer_blueprint.post("/jobs/<int:import_id>/promote")
def importer_job_promote(import_id: int):
    payload = _payload()
    job = _service().request_promotion(
        import_id,
        override=bool(payload.get("override", False)),
        reason=payload.get("reason"),
        requested_by=payload.get("requested_by"),
        enqueue=is_worker_enabled(current_app),
    )
    return jsonify(serialize_job(job)), HTTPStatus.ACCEPTED


@importer_blueprint.post("/jobs/<int:import_id>/rollback")
def importer_job_rollback(import_id: int):
    payload = _payload()
    job = _service().rollback(import_id, reason=payload.get("reason"), requested_by=payload.get("requested_by"))
    return jsonify(serialize_job(job)), HTTPStatus.OK


@importer_blueprint.post("/jobs/<int:import_id>/reject")
def importer_job_reject(import_id: int):
    payload = _payload()
    job = _service().reject(import_id, reason=payload.get("reason"), requested_by=payload.get("requested_by"))
    return jsonify(serialize_job(job)), HTTPStatus.OK


@importer_blueprint.get("/updates")
def importer_check_updates():
    return jsonify(_service().check_for_updates()), HTTPStatus.OK
