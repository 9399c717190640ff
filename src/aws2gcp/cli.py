"""CLI entry point for aws2gcp."""

from __future__ import annotations

import os
import shutil
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
import yaml
from rich.console import Console
from rich.table import Table

from aws2gcp import __version__
from aws2gcp.config import AppConfig, MigrationPlan, StagingConfig
from aws2gcp.errors import CheckpointError, MigrationError
from aws2gcp.utils.logging import get_logger, set_log_level

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)

DEFAULT_WORK_DIR = "/tmp/ec2-to-gcp"


def load_config(config_path: str | None, **overrides) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path, **overrides)
        return AppConfig.from_env_and_args(**overrides)
    except (ValueError, OSError, yaml.YAMLError) as e:
        err_console.print(f"[red]Error loading config: {e}[/red]")
        err_console.print("Provide a --config file or set environment variables (GCP_PROJECT, ...).")
        sys.exit(1)


def _staging(config_path: str | None, work_dir: str | None) -> StagingConfig:
    """Staging settings without requiring the full cloud configuration."""
    staging: dict = {}
    if config_path:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        staging = data.get("staging") or {}
    if work_dir or "work_dir" not in staging:
        staging["work_dir"] = work_dir or DEFAULT_WORK_DIR
    return StagingConfig(**staging)


@contextmanager
def _cancel_on_signals(cancel_event: threading.Event) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative abort of the running job."""

    def handler(signum, frame):
        logger.warning(f"[yellow]Received {signal.Signals(signum).name}, aborting after the current step[/yellow]")
        cancel_event.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _build_pipeline(config: AppConfig, cancel_event: threading.Event):
    from aws2gcp.aws.source import EC2Source
    from aws2gcp.gcp.destination import GCPDestination
    from aws2gcp.pipeline.migration import MigrationPipeline

    with console.status("[bold green]Connecting to AWS and GCP..."):
        source = EC2Source.from_config(config.aws)
        destination = GCPDestination.from_config(config.gcp)
    return MigrationPipeline(config, source, destination, cancel_event=cancel_event)


def _report(result) -> None:
    if result.success:
        console.print("\n[bold green]✅ Migration complete![/bold green]")
        console.print(f"  GCE instance: {result.instance_name}")
        console.print(f"  GCE image:    {result.image_name}")
        console.print(f"  Duration:     {result.duration}")
        return
    err_console.print(f"\n[bold red]❌ Migration {result.status.value}[/bold red]")
    err_console.print(result.report(), markup=False, highlight=False)
    err_console.print(
        f"Run 'aws2gcp forget {result.instance_id}' before migrating this instance again",
        markup=False,
    )
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="aws2gcp")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def main(log_level: str):
    """AWS EC2 to Google Compute Engine migration tool.

    Moves one EC2 instance at a time through snapshot, AMI, VM export,
    local staging, GCS upload, image import and instance creation.
    Progress is checkpointed so an interrupted migration can be resumed.
    """
    set_log_level(log_level)


@main.command()
@click.option("--instance-id", required=True, help="Source EC2 instance ID (i-...)")
@click.option("--instance-name", help="Destination GCE instance name (default: migrated-<id>)")
@click.option("--machine-type", default="n2-standard-2", show_default=True, help="GCE machine type")
@click.option("--network", default="default", show_default=True, help="GCE network")
@click.option("--zone", help="GCE zone (default: gcp.zone from config)")
@click.option("--os-hint", default="debian-9", show_default=True, help="OS passed to the image import")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--project", help="GCP project ID")
@click.option("--region", help="AWS region")
@click.option("--profile", help="AWS credentials profile")
@click.option("--service-account-file", type=click.Path(exists=True), help="GCP service account JSON key")
@click.option("--work-dir", type=click.Path(), help="Local staging directory")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would be done without doing it")
def migrate(instance_id: str, instance_name: str | None, machine_type: str, network: str, zone: str | None,
            os_hint: str, config_path: str | None, project: str | None, region: str | None,
            profile: str | None, service_account_file: str | None, work_dir: str | None, dry_run: bool):
    """Migrate a single EC2 instance to Compute Engine."""
    config = load_config(
        config_path,
        aws={"region": region, "profile": profile},
        gcp={"project_id": project, "service_account_file": service_account_file},
        staging={"work_dir": work_dir},
    )

    try:
        plan = MigrationPlan(
            instance_id=instance_id,
            instance_name=instance_name,
            machine_type=machine_type,
            network=network,
            zone=zone,
            os_hint=os_hint,
        )
    except ValueError as e:
        err_console.print(f"[red]Invalid migration plan: {e}[/red]")
        sys.exit(2)

    if dry_run:
        from aws2gcp.pipeline.migration import MigrationPipeline

        MigrationPipeline(config, source=None, destination=None).dry_run(plan)
        return

    cancel_event = threading.Event()
    try:
        pipeline = _build_pipeline(config, cancel_event)
        with _cancel_on_signals(cancel_event):
            result = pipeline.run(plan)
    except (CheckpointError, MigrationError) as e:
        err_console.print(f"[red]Cannot migrate {instance_id}: {e}[/red]")
        sys.exit(1)

    _report(result)


@main.command()
@click.argument("instance_id")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--project", help="GCP project ID")
@click.option("--work-dir", type=click.Path(), help="Local staging directory")
def resume(instance_id: str, config_path: str | None, project: str | None, work_dir: str | None):
    """Resume an interrupted migration from its last checkpoint."""
    config = load_config(config_path, gcp={"project_id": project}, staging={"work_dir": work_dir})

    cancel_event = threading.Event()
    try:
        pipeline = _build_pipeline(config, cancel_event)
        with _cancel_on_signals(cancel_event):
            result = pipeline.resume(instance_id)
    except (CheckpointError, MigrationError) as e:
        err_console.print(f"[red]Cannot resume {instance_id}: {e}[/red]")
        sys.exit(1)

    _report(result)


@main.command()
@click.argument("instance_id")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--work-dir", envvar="AWS2GCP_WORK_DIR", type=click.Path(), help="Local staging directory")
def status(instance_id: str, config_path: str | None, work_dir: str | None):
    """Show the checkpoint of a migration."""
    from aws2gcp.pipeline.state import CheckpointStore, Stage

    store = CheckpointStore(_staging(config_path, work_dir).state_dir)
    job = store.load(instance_id)

    if not job:
        err_console.print(f"[red]No migration found for '{instance_id}'[/red]")
        sys.exit(1)

    console.print(f"\n[bold]Migration: {job.source_instance_id}[/bold]")
    console.print(f"  Status: {job.status.value}")
    console.print(f"  Stage: {job.current_stage.label}")
    console.print(f"  Started: {job.created_at:%Y-%m-%d %H:%M:%S}")
    console.print(f"  Updated: {job.updated_at:%Y-%m-%d %H:%M:%S}")
    console.print(f"  Completed stages: {', '.join(s.label for s in job.completed_stages) or 'none'}")
    for stage in job.completed_stages:
        console.print(f"    {stage.label}: {job.artifact(stage)}", markup=False)
    if job.error:
        failed = Stage(job.error["stage"]).label
        console.print(
            f"  [red]Error: stage {failed} failed with {job.error['kind']}[/red]"
        )
        console.print(f"    {job.error['message']}", markup=False)
    for stage, message in job.compensation_failures.items():
        console.print(f"  [yellow]Compensation of {Stage(stage).label} failed: {message}[/yellow]")


@main.command("list")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--work-dir", envvar="AWS2GCP_WORK_DIR", type=click.Path(), help="Local staging directory")
def list_jobs(config_path: str | None, work_dir: str | None):
    """List all known migrations."""
    from aws2gcp.pipeline.state import PIPELINE_STAGES, CheckpointStore

    store = CheckpointStore(_staging(config_path, work_dir).state_dir)
    jobs = store.list_all()

    if not jobs:
        console.print("[dim]No migrations found[/dim]")
        return

    table = Table(title="Migrations")
    table.add_column("Instance", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Stage", style="magenta")
    table.add_column("Completed", justify="right")
    table.add_column("Updated")

    colors = {"completed": "green", "failed": "red", "aborted": "yellow", "running": "blue"}
    for job in jobs:
        color = colors.get(job.status.value, "white")
        table.add_row(
            job.source_instance_id,
            f"[{color}]{job.status.value}[/{color}]",
            job.current_stage.label,
            f"{len(job.completed_stages)}/{len(PIPELINE_STAGES)}",
            f"{job.updated_at:%Y-%m-%d %H:%M}",
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(jobs)} migrations[/dim]")


@main.command()
@click.argument("instance_id")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--work-dir", envvar="AWS2GCP_WORK_DIR", type=click.Path(), help="Local staging directory")
@click.confirmation_option(prompt="Delete the checkpoint and local staging for this instance?")
def forget(instance_id: str, config_path: str | None, work_dir: str | None):
    """Delete a migration checkpoint so the instance can be migrated again.

    Cloud resources recorded in the checkpoint are not touched.
    """
    from aws2gcp.pipeline.state import CheckpointStore

    staging_config = _staging(config_path, work_dir)
    store = CheckpointStore(staging_config.state_dir)
    try:
        store.delete(instance_id)
    except CheckpointError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(1)

    staging = staging_config.staging_dir_for(instance_id)
    if staging.exists():
        shutil.rmtree(staging)
        console.print(f"  Removed staging directory {staging}")
    console.print(f"[green]Forgot migration of {instance_id}[/green]")


@main.command()
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def check(config_path: str | None):
    """Check local prerequisites (tools, configuration, credentials file)."""
    from aws2gcp.utils.subprocess import verify_required_tools

    console.print("[bold]Required tools:[/bold]")
    tools = verify_required_tools()
    ok = all(tools.values())

    if config_path or os.environ.get("GCP_PROJECT"):
        config = load_config(config_path)
        key_file = config.gcp.service_account_file
        if key_file and Path(key_file).exists():
            console.print(f"  [green]ok[/green] service account: {key_file}")
        else:
            console.print(f"  [red]missing[/red] service account: {key_file}")
            ok = False
        console.print(f"  AWS region: {config.aws.region} (profile: {config.aws.profile})")
        console.print(f"  GCP project: {config.gcp.project_id} (zone: {config.gcp.zone})")
        console.print(f"  Work dir: {config.staging.work_dir}")

    if not ok:
        err_console.print("[red]Some prerequisites are missing[/red]")
        sys.exit(1)
    console.print("[green]All prerequisites satisfied[/green]")


if __name__ == "__main__":
    main()
