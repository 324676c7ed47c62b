"""
CLI commands for member imports, credential expiry and the importer worker.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from coop_app.importer.adapters import parse_upload
from coop_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from coop_app.importer.errors import ImporterError
from coop_app.importer.pipeline.activation import ActivationService
from coop_app.importer.pipeline.commit import CommitMetadata, ImportCommitService
from coop_app.importer.pipeline.query_service import ImportQueryService
from coop_app.importer.pipeline.validation import ValidationPatterns, build_preview, validate
from coop_app.utils.importer import get_delimiter, get_max_upload_bytes, is_importer_enabled


@click.group(name="importer")
@click.pass_context
def importer_cli(ctx):
    """Member import and activation commands."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    ctx.with_resource(app.app_context())


def get_disabled_importer_group() -> click.Group:
    """Placeholder group registered while IMPORTER_ENABLED is off."""

    @click.group(name="importer", invoke_without_command=True)
    def importer_disabled():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return importer_disabled


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("No Celery app is configured for the importer; check IMPORTER_ENABLED.")
    return celery_app


def _format_job_summary(job, issues) -> str:
    lines = [
        f"Import job {job.id} ({job.status.value}) from {job.source_file_name}",
        f"  Rows: total={job.total_rows} imported={job.successful_imports} "
        f"skipped={job.skipped_rows} failed={job.failed_imports}",
        f"  SMS: sent={job.sms_sent_count} failed={job.sms_failed_count}",
        f"  Email: sent={job.email_sent_count} failed={job.email_failed_count}",
    ]
    for issue in issues:
        lines.append(f"  Row {issue.row_number}: {issue.error_message}")
    return "\n".join(lines)


@importer_cli.command("import-file")
@click.argument("file_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--operator", required=True, help="Identity recorded as the job's initiator.")
@click.option("--dry-run", is_flag=True, help="Validate and preview the file without importing.")
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable payload instead of text.")
@click.pass_context
def importer_import_file(ctx, file_path: Path, operator: str, dry_run: bool, summary_json: bool):
    """Validate and import a member CSV file."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    resolved = file_path.resolve()

    try:
        table = parse_upload(
            resolved.name,
            resolved.read_bytes(),
            delimiter=get_delimiter(app),
            max_bytes=get_max_upload_bytes(app),
        )
    except ImporterError as exc:
        raise click.ClickException(exc.message) from exc

    if dry_run:
        errors = validate(table, patterns=ValidationPatterns.from_config(app.config))
        preview = build_preview(table, errors, preview_rows=int(app.config.get("IMPORT_PREVIEW_ROWS", 10)))
        if summary_json:
            click.echo(json.dumps(preview.as_dict(), indent=2, sort_keys=True))
        else:
            click.echo(
                f"Dry run: {preview.total_rows} rows, {preview.valid_rows} valid, {preview.invalid_rows} invalid"
            )
            for error in preview.errors:
                click.echo(f"  Row {error.row_number} [{error.field}]: {error.message}")
        if errors:
            ctx.exit(1)
        return

    try:
        job = ImportCommitService().commit(
            table,
            CommitMetadata(initiated_by=operator, source_file_name=resolved.name),
        )
    except ImporterError as exc:
        payload = exc.to_dict()
        if summary_json:
            click.echo(json.dumps(payload, indent=2, sort_keys=True), err=True)
        for error in payload.get("errors", ()):
            click.echo(f"  Row {error['row']} [{error['field']}]: {error['message']}", err=True)
        raise click.ClickException(exc.message) from exc

    issues = ImportQueryService().list_job_issues(job.id)
    app.logger.info(
        "Member import completed via CLI",
        extra={"importer_job_id": job.id, "importer_source_file": resolved.name, "user_id": operator},
    )
    if summary_json:
        click.echo(
            json.dumps(
                {
                    "import_job_id": job.id,
                    "status": job.status.value,
                    "total_rows": job.total_rows,
                    "successful_imports": job.successful_imports,
                    "skipped_rows": job.skipped_rows,
                    "failed_imports": job.failed_imports,
                    "issues": [
                        {"row": issue.row_number, "code": issue.error_code.value, "message": issue.error_message}
                        for issue in issues
                    ],
                },
                indent=2,
                sort_keys=True,
            )
        )
    else:
        click.echo(_format_job_summary(job, issues))


@importer_cli.command("expire-tokens")
@click.option("--actor", default="system", show_default=True, help="Identity recorded in the activity log.")
@click.pass_context
def importer_expire_tokens(ctx, actor: str):
    """Expire every pending temporary password whose lifetime has elapsed."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    result = ActivationService().expire_stale(actor=actor)
    click.echo(f"Expired {result.expired} temporary password(s).")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Run or ping the Celery worker that delivers credentials."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Note: IMPORTER_WORKER_ENABLED is off; the health endpoint will report the worker as disabled.",
            err=True,
        )
    ctx.meta["importer.celery"] = _resolve_celery(app)


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Worker process or thread count.")
@click.option("--pool", type=str, help="Pool implementation, e.g. prefork, solo or threads.")
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler for the expiry sweep.")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma separated queues to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], beat: bool, queues: str):
    """Start a worker in this process."""
    celery_app = ctx.meta["importer.celery"]
    ctx.ensure_object(ScriptInfo).load_app().extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    for flag, value in (("--concurrency", concurrency), ("--pool", pool)):
        if value:
            argv.extend([flag, str(value)])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting importer worker on {queues} ({loglevel})", err=True)
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Importer worker stopped.", err=True)


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for the heartbeat.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Round-trip the heartbeat task and print its payload."""
    heartbeat = ctx.meta["importer.celery"].tasks.get("importer.healthcheck")
    if heartbeat is None:
        raise click.ClickException("The importer.healthcheck task is not registered.")

    try:
        payload = heartbeat.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"No heartbeat from a worker within {timeout}s") from exc
    click.echo(json.dumps(payload, indent=2))
