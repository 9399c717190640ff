"""Migration pipeline orchestrator: coordinates all migration stages."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from aws2gcp.config import AppConfig, MigrationPlan
from aws2gcp.errors import AbortRequested, MigrationError, TransientRemoteError, UnexpectedError
from aws2gcp.pipeline.poller import Poller
from aws2gcp.pipeline.stages import (
    BaseStage,
    StageContext,
    StageOutcome,
    StageResult,
    build_stages,
)
from aws2gcp.pipeline.state import (
    PIPELINE_STAGES,
    CheckpointStore,
    JobStatus,
    MigrationJob,
    Stage,
)
from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class MigrationResult:
    """Terminal report of a migration job."""
    success: bool
    instance_id: str
    status: JobStatus
    instance_name: Optional[str] = None
    image_name: Optional[str] = None
    duration: str = ""
    failed_stage: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    last_artifact: Optional[str] = None
    artifacts: dict[str, str] = field(default_factory=dict)
    completed_stages: list[str] = field(default_factory=list)
    compensated: list[str] = field(default_factory=list)
    compensation_failures: dict[str, str] = field(default_factory=dict)

    def report(self) -> str:
        """Human-readable summary naming the failing stage and error kind."""
        if self.success:
            return (
                f"Migration of {self.instance_id} completed in {self.duration}: "
                f"instance '{self.instance_name}' from image '{self.image_name}'"
            )
        lines = [
            f"Migration of {self.instance_id} {self.status.value}: stage {self.failed_stage} "
            f"failed with {self.error_kind}: {self.error}",
            f"Last artifact: {self.last_artifact or 'none'}",
        ]
        if self.compensated:
            lines.append(f"Compensated: {', '.join(self.compensated)}")
        for stage, message in self.compensation_failures.items():
            lines.append(f"Compensation of {stage} failed (clean up manually): {message}")
        return "\n".join(lines)


class MigrationPipeline:
    """Orchestrates the EC2 -> GCE migration as a checkpointed state machine.

    Stages (executed in order):
    1. snapshot       - EBS snapshot of the root volume
    2. image_build    - AMI registered from the snapshot
    3. export         - VM export of the AMI to S3 (VMDK)
    4. transfer_down  - S3 object -> local staging file
    5. transfer_up    - staging file -> GCS transit bucket
    6. import         - GCS object -> GCE image
    7. provision      - GCE instance from the image
    8. cleanup        - remove local staging (always, exactly once)

    The checkpoint is written after every transition, so ``resume`` picks
    up at the first stage that has not succeeded. A fatal error undoes
    the remote work the failing stage left running, then
    compensates completed stages in reverse order before cleanup.
    """

    def __init__(
        self,
        config: AppConfig,
        source: Any,
        destination: Any,
        store: Optional[CheckpointStore] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.source = source
        self.destination = destination
        self.store = store or CheckpointStore(config.staging.state_dir)
        self.cancel_event = cancel_event or threading.Event()
        self.poller = Poller(self.cancel_event)

    def run(self, plan: MigrationPlan) -> MigrationResult:
        """Start a migration, or continue an unfinished one for the same instance."""
        job = self.store.start(plan.instance_id, plan.model_dump())
        if job.plan != plan.model_dump():
            logger.warning(
                f"[yellow]Existing job for {plan.instance_id} was started with a different plan; "
                f"continuing with the recorded one[/yellow]"
            )
        logger.info(
            f"[bold]Starting migration of {plan.instance_id}[/bold] -> "
            f"{job.plan.get('instance_name')} ({job.plan.get('machine_type')})"
        )
        return self._drive(job)

    def resume(self, instance_id: str) -> MigrationResult:
        """Resume a migration from its last checkpoint."""
        job = self.store.start(instance_id)
        completed = ", ".join(s.label for s in job.completed_stages) or "none"
        logger.info(f"Resuming migration of {instance_id}; completed stages: {completed}")
        return self._drive(job)

    def dry_run(self, plan: MigrationPlan) -> None:
        """Log the stages and derived resource names without calling any provider."""
        logger.info(f"[yellow]DRY RUN for instance '{plan.instance_id}'[/yellow]")
        logger.info(f"  AMI name:         {plan.ami_name}")
        logger.info(f"  Export bucket:    {self.config.aws.export_bucket_for(plan.instance_id)}")
        logger.info(f"  Staging dir:      {self.config.staging.staging_dir_for(plan.instance_id)}")
        logger.info(f"  Transit object:   gs://{self.config.gcp.bucket}/{plan.transit_key}")
        logger.info(f"  GCE image:        {plan.image_name} (os: {plan.os_hint})")
        logger.info(
            f"  GCE instance:     {plan.instance_name} ({plan.machine_type}, "
            f"{plan.zone_or(self.config.gcp.zone)}, network {plan.network})"
        )
        logger.info("Stages that would execute:")
        existing = self.store.load(plan.instance_id)
        for i, stage in enumerate(PIPELINE_STAGES + [Stage.CLEANUP], 1):
            done = ""
            if existing and existing.artifact(stage):
                done = " [dim](already completed)[/dim]"
            logger.info(f"  {i}. {stage.label}{done}")

    # ─── State machine ───────────────────────────────────────────────

    def _context(self, job: MigrationJob) -> StageContext:
        return StageContext(
            plan=MigrationPlan(**job.plan),
            config=self.config,
            source=self.source,
            destination=self.destination,
            poller=self.poller,
            staging_dir=self.config.staging.staging_dir_for(job.source_instance_id),
            remember=lambda key, value: self._remember(job, key, value),
        )

    def _drive(self, job: MigrationJob) -> MigrationResult:
        start_time = time.time()
        try:
            context = self._context(job)
            stages = build_stages(context)
            try:
                context.staging_dir.mkdir(parents=True, exist_ok=True)
                self._advance(job, stages)
            except Exception:
                logger.exception(f"Orchestrator error while at stage {job.current_stage.label}")
                # Job stays resumable; only the local staging is dropped.
                stages[Stage.CLEANUP].execute(job)
                raise
        finally:
            self.store.release(job.source_instance_id)

        return self._result(job, time.time() - start_time)

    def _advance(self, job: MigrationJob, stages: dict[Stage, BaseStage]) -> None:
        if job.current_stage == Stage.PENDING:
            job.current_stage = Stage.SNAPSHOT
            self.store.save(job)
        self._rewind_if_staging_lost(job)

        while True:
            stage = job.current_stage
            if stage == Stage.CLEANUP:
                self._complete(job, stages)
                return

            if self.cancel_event.is_set():
                self._terminate(job, stage, AbortRequested(f"Cancelled before stage {stage.label}"), stages)
                return

            logger.info(f"[cyan]▶ Stage: {stage.label}[/cyan]")
            result = self._execute_with_retries(stages[stage], job)
            if not result.ok:
                self._terminate(job, stage, result.error, stages)
                return

            job.record_success(stage, result.artifact)
            self.store.save(job)
            logger.info(f"[green]✓ Stage {stage.label} complete[/green]: {result.artifact}")

    def _execute_with_retries(self, stage: BaseStage, job: MigrationJob) -> StageResult:
        """Run a stage, re-invoking it on retryable outcomes up to the budget."""
        settings = self.config.migration
        retries = 0
        while True:
            result = stage.execute(job)
            if result.outcome != StageOutcome.RETRYABLE:
                return result

            if retries >= settings.retry_count:
                logger.error(f"Stage {stage.label} still failing after {retries} retries")
                return StageResult(
                    StageOutcome.FATAL,
                    error=TransientRemoteError(f"{result.error.message} (gave up after {retries} retries)"),
                )

            retries += 1
            delay = settings.retry_delay_seconds * retries
            logger.warning(
                f"[yellow]Stage {stage.label} hit a transient error: {result.error.message}. "
                f"Retry {retries}/{settings.retry_count} in {delay:.0f}s[/yellow]"
            )
            if self.cancel_event.wait(delay):
                return StageResult.from_error(AbortRequested(f"Cancelled while retrying {stage.label}"))

    def _rewind_if_staging_lost(self, job: MigrationJob) -> None:
        """Re-download when resuming at transfer_up without the staged file."""
        if job.current_stage != Stage.TRANSFER_UP:
            return
        staged = job.artifact(Stage.TRANSFER_DOWN)
        if staged and Path(staged).exists():
            return
        logger.warning(f"[yellow]Staged image {staged} is gone; rewinding to {Stage.TRANSFER_DOWN.label}[/yellow]")
        job.artifacts.pop(Stage.TRANSFER_DOWN.value, None)
        job.current_stage = Stage.TRANSFER_DOWN
        self.store.save(job)

    def _remember(self, job: MigrationJob, key: str, value: str) -> None:
        if job.stage_state.get(key) == value:
            return
        job.stage_state[key] = value
        self.store.save(job)

    # ─── Terminal paths ──────────────────────────────────────────────

    def _complete(self, job: MigrationJob, stages: dict[Stage, BaseStage]) -> None:
        self._cleanup(job, stages)
        job.status = JobStatus.COMPLETED
        job.current_stage = Stage.COMPLETED
        self.store.save(job)
        logger.info(f"[bold green]Migration of {job.source_instance_id} complete[/bold green]")

    def _terminate(
        self,
        job: MigrationJob,
        stage: Stage,
        error: Optional[MigrationError],
        stages: dict[Stage, BaseStage],
    ) -> None:
        if error is None:
            error = UnexpectedError(f"Stage {stage.label} failed without an error")
        job.status = JobStatus.ABORTED if isinstance(error, AbortRequested) else JobStatus.FAILED
        job.error = {"stage": stage.value, "kind": error.kind, "message": error.message}
        self.store.save(job)
        logger.error(f"[red]✗ Stage {stage.label} failed ({error.kind}): {error.message}[/red]")

        self._compensate(job, stages, interrupted=stage)
        self._cleanup(job, stages)

    def _compensate(
        self,
        job: MigrationJob,
        stages: dict[Stage, BaseStage],
        interrupted: Optional[Stage] = None,
    ) -> None:
        """Undo completed stages in reverse order; a failure doesn't stop the rest.

        The interrupted stage goes first when it left remote work running
        (a registered AMI or an export task, for example).
        """
        pending = list(reversed(job.completed_stages))
        if interrupted is not None and stages[interrupted].has_in_flight_work(job):
            pending.insert(0, interrupted)

        for stage in pending:
            if stage.value in job.compensated:
                continue
            logger.info(f"[yellow]↺ Compensating {stage.label}[/yellow]")
            try:
                stages[stage].compensate(job)
            except Exception as e:
                logger.error(f"Compensation of {stage.label} failed: {e}")
                job.compensation_failures[stage.value] = str(e)
            else:
                job.compensated.append(stage.value)
        self.store.save(job)

    def _cleanup(self, job: MigrationJob, stages: dict[Stage, BaseStage]) -> None:
        if job.cleaned_up:
            return
        result = stages[Stage.CLEANUP].execute(job)
        if not result.ok:
            logger.error(f"Cleanup failed ({result.error.kind}): {result.error.message}")
        job.cleaned_up = True
        self.store.save(job)

    def _result(self, job: MigrationJob, elapsed: float) -> MigrationResult:
        last = job.last_artifact()
        error = job.error or {}
        return MigrationResult(
            success=job.status == JobStatus.COMPLETED,
            instance_id=job.source_instance_id,
            status=job.status,
            instance_name=job.artifact(Stage.PROVISION),
            image_name=job.artifact(Stage.IMPORT),
            duration=f"{elapsed:.0f}s",
            failed_stage=Stage(error["stage"]).label if error else None,
            error_kind=error.get("kind"),
            error=error.get("message"),
            last_artifact=f"{last[0].label}={last[1]}" if last else None,
            artifacts=dict(job.artifacts),
            completed_stages=[s.label for s in job.completed_stages],
            compensated=[Stage(s).label for s in job.compensated],
            compensation_failures={Stage(s).label: m for s, m in job.compensation_failures.items()},
        )
