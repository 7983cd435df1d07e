import dataclasses
import json
import sys

import click

from .config import load_settings, normalize_config_value
from .errors import StoreError
from .executor import YtDlpExecutor
from .ingest import EventIngestor
from .jobqueue import JobQueue
from .log import configure_logging
from .models import InboundEvent, JOB_STATES
from .notify import JsonLinesNotifier, LoggingNotifier
from .store import JobStore
from .worker import build_worker, run_service


class AppContext:
    def __init__(self, settings):
        self.settings = settings
        self._store = None

    @property
    def store(self) -> JobStore:
        if self._store is None:
            self._store = JobStore(self.settings.db_path)
        return self._store

    def job_queue(self) -> JobQueue:
        job_queue, _worker, _tunables = build_worker(self.store, self.settings)
        return job_queue


pass_app = click.make_pass_decorator(AppContext)


def fail(message: str):
    click.secho(f"Error: {message}", fg="red", err=True)
    raise SystemExit(1)


@click.group(help="dlqueue: durable download job queue driven by yt-dlp")
@click.option("--db", "db_path", default=None, help="SQLite database path (env: DLQUEUE_DB)")
@click.option("--env-file", default=None, help="Load settings from this .env file")
@click.pass_context
def cli(ctx, db_path, env_file):
    settings = load_settings(env_file)
    if db_path:
        settings = dataclasses.replace(settings, db_path=db_path)
    configure_logging(settings.log_level, settings.log_file)
    ctx.obj = AppContext(settings)


# ---------- Service ----------
@cli.command("run", help="Run the listener, ingestion and download worker")
@click.option("--events", type=click.File("r"), default="-", show_default=True,
              help="JSON-lines event stream ('-' for stdin)")
@click.option("--no-listener", is_flag=True, help="Only process jobs already in the queue")
@click.option("--json-status", is_flag=True, help="Write status notifications as JSON lines to stdout")
@pass_app
def run_cmd(app, events, no_listener, json_status):
    notifier = JsonLinesNotifier(sys.stdout) if json_status else LoggingNotifier()
    click.secho("Starting dlqueue. Press Ctrl+C to stop…", fg="cyan", err=True)
    run_service(app.settings, None if no_listener else events, notifier=notifier)
    click.secho("dlqueue stopped.", fg="yellow", err=True)


# ---------- Ingestion ----------
@cli.command("submit", help="Ingest one inbound event (deduplicated by event id)")
@click.option("--event-id", required=True, help="Inbound event id")
@click.option("--channel-id", default=None, help="Originating channel id")
@click.argument("text")
@pass_app
def submit_cmd(app, event_id, channel_id, text):
    try:
        ingestor = EventIngestor(app.store, app.job_queue(), notifier=LoggingNotifier())
        job_ids = ingestor.handle(InboundEvent(event_id=event_id, channel_id=channel_id, text=text))
    except (ValueError, RuntimeError) as e:
        fail(str(e))
    if not job_ids:
        click.echo("No new jobs.")
        return
    for job_id in job_ids:
        click.secho(f"Enqueued {job_id}", fg="green")


@cli.command("enqueue", help="Enqueue one URL directly")
@click.option("--event-id", required=True, help="Source event id to attach to the job")
@click.argument("url")
@pass_app
def enqueue_cmd(app, event_id, url):
    try:
        job_id = app.job_queue().enqueue(event_id, url)
    except (ValueError, RuntimeError) as e:
        fail(str(e))
    click.secho(f"Enqueued {job_id} -> {url}", fg="green")


# ---------- Jobs ----------
@cli.command("list", help="List jobs")
@click.option("--status", type=click.Choice(JOB_STATES), default=None)
@click.option("--json", "as_json", is_flag=True, help="Print jobs as a JSON array")
@pass_app
def list_cmd(app, status, as_json):
    try:
        jobs = app.store.list_jobs(status)
    except StoreError as e:
        fail(str(e))

    if as_json:
        click.echo(json.dumps([j.to_dict() for j in jobs], indent=2))
        return

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id} | {j.status:<10} | retries={j.retry_count} | event={j.source_event_id} "
            f"| url={j.url} | output={j.output_path} | error={j.error_message}"
        )


@cli.command("status", help="Show queue statistics")
@pass_app
def status_cmd(app):
    try:
        click.echo(json.dumps(app.store.queue_stats().to_dict(), indent=2))
    except StoreError as e:
        fail(str(e))


@cli.command("health", help="Check the database and yt-dlp; exit 1 when unhealthy")
@pass_app
def health_cmd(app):
    report = {"database": "ok", "yt_dlp": None, "healthy": True}
    try:
        report["queue"] = app.store.queue_stats().to_dict()
    except StoreError as e:
        report["database"] = str(e)
        report["healthy"] = False
    version = YtDlpExecutor(app.settings.ytdlp_executable).version()
    report["yt_dlp"] = version or "unavailable"
    if not version:
        report["healthy"] = False
    click.echo(json.dumps(report, indent=2))
    if not report["healthy"]:
        raise SystemExit(1)


# ---------- Config ----------
@cli.group("config", help="Queue tunables")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(app):
    try:
        click.echo(json.dumps(app.store.get_config(), indent=2))
    except StoreError as e:
        fail(str(e))


@config_group.command("set", context_settings={"ignore_unknown_options": True})
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(app, key, value):
    try:
        stored = normalize_config_value(key, value)
        app.store.set_config(key, stored)
    except (ValueError, RuntimeError) as e:
        fail(str(e))
    click.secho(f"Config updated: {key}={stored}", fg="green")


# ---------- App state ----------
@cli.group("state", help="Persisted key/value process state")
def state_group():
    pass


@state_group.command("get")
@click.argument("key")
@click.pass_obj
def state_get(app, key):
    try:
        value = app.store.get_state(key)
    except StoreError as e:
        fail(str(e))
    if value is None:
        fail(f"No state value for {key!r}.")
    click.echo(value)


@state_group.command("set", context_settings={"ignore_unknown_options": True})
@click.argument("key")
@click.argument("value")
@click.pass_obj
def state_set(app, key, value):
    try:
        app.store.set_state(key, value)
    except StoreError as e:
        fail(str(e))
    click.secho(f"State updated: {key}={value}", fg="green")


def main():
    cli()
