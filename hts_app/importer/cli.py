"""
``flask importer`` commands for operating HTS imports.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from hts_app.importer.celery_app import DEFAULT_QUEUE_NAME, HEALTHCHECK_TASK, get_celery_app
from hts_app.importer.errors import ImportJobConflict, ImportJobNotFound, ImportPipelineError
from hts_app.importer.pipeline import ImportJobService, JobFilters, enqueue_import, execute_import, serialize_job
from hts_app.models.importer.schema import PipelineStage
from hts_app.utils.importer import is_importer_enabled, is_worker_enabled


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    HTS importer management commands.

    Shows the importer and worker flags when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. " "Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo("Importer enabled.")
        click.echo(f"Worker enabled: {is_worker_enabled(app)}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _load_service(ctx) -> ImportJobService:
    ctx.ensure_object(ScriptInfo).load_app()
    return ImportJobService()


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _fail(exc: Exception) -> click.ClickException:
    return click.ClickException(str(exc))


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """
    Celery worker utilities for the importer.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException("Importer is disabled; worker commands are unavailable.")


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True, help="Worker log level.")
@click.option("--concurrency", type=int, default=None, help="Number of worker processes.")
@click.option("--pool", default=None, help="Celery pool implementation (e.g. solo, prefork, threads).")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queues to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    state = app.extensions.get("importer", {})
    if state is not None:
        state["worker_enabled"] = True

    argv = [
        "worker",
        "--loglevel",
        loglevel,
        "-Q",
        queues,
    ]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK)
    if task is None:
        raise click.ClickException(f"Heartbeat task '{HEALTHCHECK_TASK}' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


@importer_cli.command("create")
@click.option("--version", "version", default="latest", show_default=True, help="Source version or 'latest'.")
@click.option("--requested-by", default=None, help="Operator recorded on the job.")
@click.option("--enqueue/--no-enqueue", default=None, help="Queue the job for the worker (defaults to IMPORTER_WORKER_ENABLED).")
@click.pass_context
def importer_create(ctx, version: str, requested_by: Optional[str], enqueue: Optional[bool]):
    """Create an import job for a published schedule version."""
    service = _load_service(ctx)
    info = ctx.ensure_object(ScriptInfo)
    if enqueue is None:
        enqueue = is_worker_enabled(info.load_app())
    try:
        job = service.create(version, requested_by=requested_by, enqueue=enqueue)
    except (ImportJobConflict, ImportPipelineError, ValueError) as exc:
        raise _fail(exc) from exc
    click.echo(f"Created import job {job.id} for {job.source_version} ({job.source_url})")
    if job.task_id:
        click.echo(f"Queued as task {job.task_id}")


@importer_cli.command("run")
@click.argument("import_id", type=int)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option(
    "--restart",
    "restart_stage",
    type=click.Choice([stage.value for stage in PipelineStage if stage != PipelineStage.COMPLETED]),
    default=None,
    help="Rewind the checkpoint to this stage before running.",
)
@click.pass_context
def importer_run(ctx, import_id: int, inline: bool, restart_stage: Optional[str]):
    """Execute (or resume) an import job."""
    service = _load_service(ctx)
    try:
        if restart_stage:
            service.restart(import_id, stage=PipelineStage(restart_stage))
            click.echo(f"Checkpoint of job {import_id} reset to {restart_stage}")
        if not inline:
            job = service.get(import_id)
            enqueue_import(job)
            click.echo(f"Queued import job {import_id} as task {job.task_id}")
            return
        result = execute_import(import_id)
    except (ImportJobNotFound, ImportJobConflict) as exc:
        raise _fail(exc) from exc
    except Exception as exc:
        raise click.ClickException(f"Import job {import_id} failed: {exc}") from exc
    click.echo(f"Import job {import_id} finished with status {result.status.value} at stage {result.stage.value}")
    _echo_json(result.counts)


@importer_cli.command("status")
@click.argument("import_id", type=int, required=False)
@click.option("--limit", default=10, show_default=True, help="Number of recent jobs when no id is given.")
@click.pass_context
def importer_status(ctx, import_id: Optional[int], limit: int):
    """Show one job, or the most recent jobs."""
    service = _load_service(ctx)
    if import_id is None:
        result = service.list_jobs(JobFilters.coerce(page_size=limit))
        if not result.items:
            click.echo("No import jobs found.")
            return
        for item in result.items:
            click.echo(f"{item['id']:>5}  {item['source_version']:<20} {item['status']:<16} {item['stage']}")
        return
    try:
        job = service.get(import_id)
    except ImportJobNotFound as exc:
        raise _fail(exc) from exc
    _echo_json(serialize_job(job))


@importer_cli.command("logs")
@click.argument("import_id", type=int)
@click.option("--offset", default=0, show_default=True)
@click.option("--limit", default=200, show_default=True)
@click.pass_context
def importer_logs(ctx, import_id: int, offset: int, limit: int):
    """Print a job's log lines."""
    service = _load_service(ctx)
    try:
        page = service.logs(import_id, offset=offset, limit=limit)
    except ImportJobNotFound as exc:
        raise _fail(exc) from exc
    for line in page["lines"]:
        click.echo(line)


@importer_cli.command("override")
@click.argument("import_id", type=int)
@click.option("--reason", default=None, help="Why the gate is being overridden.")
@click.option("--clear", is_flag=True, help="Remove a previously set override.")
@click.option("--promote", is_flag=True, help="Also request promotion of a job under review.")
@click.pass_context
def importer_override(ctx, import_id: int, reason: Optional[str], clear: bool, promote: bool):
    """Set or clear the promotion override on a job."""
    service = _load_service(ctx)
    try:
        job = service.set_override(import_id, enabled=not clear, reason=reason)
        if promote:
            job = service.request_promotion(
                import_id,
                override=not clear,
                reason=reason,
                enqueue=is_worker_enabled(ctx.ensure_object(ScriptInfo).load_app()),
            )
    except (ImportJobNotFound, ImportJobConflict) as exc:
        raise _fail(exc) from exc
    click.echo(f"Override for job {job.id}: {'enabled' if job.override_promotion else 'cleared'} (status {job.status.value})")


@importer_cli.command("export-diffs")
@click.argument("import_id", type=int)
@click.option("--type", "diff_type", type=click.Choice(["added", "changed", "removed", "unchanged"]), default=None)
@click.option("--output", type=click.Path(path_type=Path, dir_okay=False), default=None, help="File to write.")
@click.pass_context
def importer_export_diffs(ctx, import_id: int, diff_type: Optional[str], output: Optional[Path]):
    """Export a job's diff records as CSV."""
    service = _load_service(ctx)
    try:
        filename, content = service.export_diffs_csv(import_id, diff_type=diff_type)
    except ImportJobNotFound as exc:
        raise _fail(exc) from exc
    target = output or Path(filename)
    target.write_text(content, encoding="utf-8")
    click.echo(f"Wrote {max(content.count(chr(10)) - 1, 0)} diff row(s) to {target}")


@importer_cli.command("rollback")
@click.argument("import_id", type=int)
@click.option("--reason", default=None)
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def importer_rollback(ctx, import_id: int, reason: Optional[str], yes: bool):
    """Undo the promotion of a completed job."""
    service = _load_service(ctx)
    if not yes:
        click.confirm(f"Roll back import job {import_id} and restore the previous schedule?", abort=True)
    try:
        job = service.rollback(import_id, reason=reason)
    except (ImportJobNotFound, ImportJobConflict) as exc:
        raise _fail(exc) from exc
    info = job.rollback_info or {}
    click.echo(
        f"Rolled back job {job.id}: removed {info.get('removedEntries', 0)}, "
        f"reactivated {info.get('reactivatedEntries', 0)}"
    )


@importer_cli.command("check-updates")
@click.pass_context
def importer_check_updates(ctx):
    """Probe the publisher for a release newer than the last completed import."""
    service = _load_service(ctx)
    _echo_json(service.check_for_updates())
