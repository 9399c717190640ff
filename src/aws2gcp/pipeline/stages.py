"""Pipeline stages: one idempotent, retryable step each.

Every stage looks for the resource it would create (by a name or tag
derived from the source instance id) before creating it, so re-running a
stage after a crash reuses what already exists. Errors never leave
``execute``; they come back classified inside a ``StageResult``.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from aws2gcp.aws.source import parse_s3_uri
from aws2gcp.config import AppConfig, MigrationPlan
from aws2gcp.errors import (
    AbortRequested,
    LocalIOError,
    MigrationError,
    PollTimeout,
    RemoteJobFailed,
    ResourceConflict,
    ResourceNotFound,
    UnexpectedError,
)
from aws2gcp.gcp.destination import SOURCE_LABEL, parse_gs_uri
from aws2gcp.pipeline.poller import PollHandle, PollOutcome, Poller
from aws2gcp.pipeline.state import JobStatus, MigrationJob, Stage
from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)

STAGED_FILE_NAME = "exported-ami.vmdk"


class StageOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    ABORTED = "aborted"


@dataclass
class StageResult:
    """Outcome of one stage execution."""
    outcome: StageOutcome
    artifact: Optional[str] = None
    error: Optional[MigrationError] = None

    @property
    def ok(self) -> bool:
        return self.outcome == StageOutcome.SUCCESS

    @classmethod
    def success(cls, artifact: Optional[str]) -> "StageResult":
        return cls(StageOutcome.SUCCESS, artifact=artifact)

    @classmethod
    def from_error(cls, error: MigrationError) -> "StageResult":
        if isinstance(error, AbortRequested):
            outcome = StageOutcome.ABORTED
        elif error.retryable:
            outcome = StageOutcome.RETRYABLE
        else:
            outcome = StageOutcome.FATAL
        return cls(outcome, error=error)


@dataclass
class StageContext:
    """Everything a stage needs besides the job itself.

    ``remember`` hands a resumable value (an in-flight task id) to the
    orchestrator, which stores it in ``job.stage_state`` and checkpoints.
    """
    plan: MigrationPlan
    config: AppConfig
    source: Any
    destination: Any
    poller: Poller
    staging_dir: Path
    remember: Callable[[str, str], None]


class BaseStage:
    """Uniform stage shape: ``execute`` produces, ``compensate`` undoes."""

    stage: Stage
    # stage_state keys naming remote work an unfinished execute left behind
    in_flight_keys: tuple[str, ...] = ()

    def __init__(self, context: StageContext):
        self.context = context

    @property
    def label(self) -> str:
        return self.stage.label

    def has_in_flight_work(self, job: MigrationJob) -> bool:
        """True when this stage started remote work but produced no artifact."""
        if job.artifact(self.stage):
            return False
        return any(job.stage_state.get(key) for key in self.in_flight_keys)

    def execute(self, job: MigrationJob) -> StageResult:
        try:
            artifact = self.produce(job)
        except MigrationError as e:
            return StageResult.from_error(e)
        except OSError as e:
            return StageResult.from_error(LocalIOError(f"{type(e).__name__}: {e}"))
        except Exception as e:
            logger.exception(f"Unclassified error in stage {self.label}")
            return StageResult.from_error(UnexpectedError(f"{type(e).__name__}: {e}"))
        return StageResult.success(artifact)

    def produce(self, job: MigrationJob) -> Optional[str]:
        raise NotImplementedError

    def compensate(self, job: MigrationJob) -> None:
        """Best-effort undo of this stage's side effects. Raises on failure."""

    def _require(self, job: MigrationJob, stage: Stage) -> str:
        value = job.artifact(stage)
        if not value:
            raise ResourceNotFound(f"{self.label} needs the {stage.label} artifact, which is missing")
        return value

    def _await(
        self,
        handle: PollHandle,
        is_done: Callable[[Any], bool],
        is_failed: Callable[[Any], bool],
        interval: float,
        max_attempts: int,
    ) -> Any:
        """Wait on an async job through the poller; raise unless it succeeded."""
        result = self.context.poller.wait_until(handle, is_done, is_failed, interval, max_attempts)
        if result.outcome == PollOutcome.SUCCESS:
            return result.status
        if result.outcome == PollOutcome.ABORTED:
            raise AbortRequested(f"Cancelled while waiting for {handle}")
        if result.outcome == PollOutcome.REMOTE_FAILURE:
            raise RemoteJobFailed(f"{handle} failed: {result.status}")
        raise PollTimeout(
            f"{handle} still unresolved after {result.attempts} polls "
            f"({interval:.0f}s apart, last status: {result.status})"
        )


# ─── Source side ─────────────────────────────────────────────────────


class SnapshotStage(BaseStage):
    """EBS snapshot of the instance's root volume, tagged with the instance id."""

    stage = Stage.SNAPSHOT

    def produce(self, job: MigrationJob) -> str:
        source = self.context.source
        instance_id = job.source_instance_id
        volume_id = source.root_volume_id(instance_id)

        existing = source.find_snapshot(instance_id)
        if existing:
            if existing.get("VolumeId") != volume_id:
                raise ResourceConflict(
                    f"Snapshot {existing['SnapshotId']} is tagged for {instance_id} but was taken "
                    f"from {existing.get('VolumeId')}, not root volume {volume_id}"
                )
            logger.info(f"Reusing snapshot {existing['SnapshotId']}")
            return existing["SnapshotId"]

        return source.create_snapshot(instance_id, volume_id)

    def compensate(self, job: MigrationJob) -> None:
        snapshot_id = job.artifact(Stage.SNAPSHOT)
        if snapshot_id:
            self.context.source.delete_snapshot(snapshot_id)


class ImageBuildStage(BaseStage):
    """AMI registered from the snapshot. Waits for both to be ready."""

    stage = Stage.IMAGE_BUILD
    IMAGE_KEY = "image_id"
    in_flight_keys = (IMAGE_KEY,)

    def produce(self, job: MigrationJob) -> str:
        source = self.context.source
        settings = self.context.config.migration
        snapshot_id = self._require(job, Stage.SNAPSHOT)

        self._await(
            PollHandle(snapshot_id, lambda: source.get_snapshot_state(snapshot_id), f"snapshot {snapshot_id}"),
            is_done=lambda state: state == "completed",
            is_failed=lambda state: state == "error",
            interval=settings.image_poll_interval,
            max_attempts=settings.image_poll_attempts,
        )

        name = self.context.plan.ami_name
        existing = source.find_image(name)
        if existing:
            if existing.get("RootSnapshotId") != snapshot_id:
                raise ResourceConflict(
                    f"AMI '{name}' ({existing['ImageId']}) is backed by "
                    f"{existing.get('RootSnapshotId')}, not {snapshot_id}"
                )
            image_id = existing["ImageId"]
            logger.info(f"Reusing AMI {image_id}")
        else:
            image_id = source.create_image(snapshot_id, name, job.source_instance_id)
        self.context.remember(self.IMAGE_KEY, image_id)

        self._await(
            PollHandle(image_id, lambda: source.get_image_state(image_id), f"AMI {image_id}"),
            is_done=lambda state: state == "available",
            is_failed=lambda state: state in ("failed", "error", "invalid", "deregistered"),
            interval=settings.image_poll_interval,
            max_attempts=settings.image_poll_attempts,
        )
        return image_id

    def compensate(self, job: MigrationJob) -> None:
        # An AMI registered by an interrupted run has no artifact yet.
        image_id = job.artifact(Stage.IMAGE_BUILD) or job.stage_state.get(self.IMAGE_KEY)
        if image_id:
            self.context.source.deregister_image(image_id)


class ExportStage(BaseStage):
    """VM export of the AMI into S3 as a portable disk image."""

    stage = Stage.EXPORT
    TASK_KEY = "export_task_id"
    in_flight_keys = (TASK_KEY,)

    def produce(self, job: MigrationJob) -> str:
        source = self.context.source
        aws = self.context.config.aws
        settings = self.context.config.migration
        instance_id = job.source_instance_id
        image_id = self._require(job, Stage.IMAGE_BUILD)

        task_id = job.stage_state.get(self.TASK_KEY) or source.find_export_task(instance_id, image_id)
        if task_id:
            logger.info(f"Resuming export task {task_id}")
        else:
            bucket = aws.export_bucket_for(instance_id)
            source.ensure_bucket(bucket)
            task_id = source.export_image(
                image_id, bucket, f"{aws.export_prefix}{instance_id}/", aws.disk_image_format, instance_id
            )
        self.context.remember(self.TASK_KEY, task_id)

        status = self._await(
            PollHandle(task_id, lambda: source.get_export_status(task_id), f"export task {task_id}"),
            is_done=lambda s: s["status"] == "completed",
            is_failed=lambda s: s["status"] == "failed",
            interval=settings.export_poll_interval,
            max_attempts=settings.export_poll_attempts,
        )
        return status["location"]

    def compensate(self, job: MigrationJob) -> None:
        # Exported objects are left to the bucket's lifecycle policy.
        task_id = job.stage_state.get(self.TASK_KEY)
        if not task_id:
            return
        source = self.context.source
        if source.get_export_status(task_id)["status"] == "pending":
            source.cancel_export_task(task_id)


class TransferDownStage(BaseStage):
    """Download of the exported image into the local staging directory."""

    stage = Stage.TRANSFER_DOWN

    def produce(self, job: MigrationJob) -> str:
        source = self.context.source
        location = self._require(job, Stage.EXPORT)
        bucket, key = parse_s3_uri(location)

        staging = self.context.staging_dir
        staging.mkdir(parents=True, exist_ok=True)
        dest = staging / STAGED_FILE_NAME

        size = source.object_size(bucket, key)
        if size is None:
            raise ResourceNotFound(f"Exported image {location} not found")
        if dest.exists() and dest.stat().st_size == size:
            logger.info(f"Skipping download (already staged): {dest}")
            return str(dest)

        free = shutil.disk_usage(staging).free
        if free < size:
            raise LocalIOError(
                f"Not enough space in {staging}: need {size / (1024**3):.1f} GB, "
                f"have {free / (1024**3):.1f} GB"
            )

        partial = dest.with_name(dest.name + ".part")
        source.download_object(bucket, key, partial)
        partial.replace(dest)
        return str(dest)

    def compensate(self, job: MigrationJob) -> None:
        staged = job.artifact(Stage.TRANSFER_DOWN)
        if staged:
            path = Path(staged)
            path.unlink(missing_ok=True)
            path.with_name(path.name + ".part").unlink(missing_ok=True)


# ─── Destination side ────────────────────────────────────────────────


class TransferUpStage(BaseStage):
    """Upload of the staged image to the GCS transit bucket."""

    stage = Stage.TRANSFER_UP

    def produce(self, job: MigrationJob) -> str:
        destination = self.context.destination
        local = Path(self._require(job, Stage.TRANSFER_DOWN))
        if not local.exists():
            raise LocalIOError(f"Staged image {local} is missing")

        bucket = self.context.config.gcp.bucket
        key = self.context.plan.transit_key
        destination.ensure_bucket(bucket)

        if destination.object_size(bucket, key) == local.stat().st_size:
            logger.info(f"Skipping upload (already exists): gs://{bucket}/{key}")
        else:
            destination.upload_object(local, bucket, key)
        return f"gs://{bucket}/{key}"

    def compensate(self, job: MigrationJob) -> None:
        uri = job.artifact(Stage.TRANSFER_UP)
        if uri:
            self.context.destination.delete_object(*parse_gs_uri(uri))


class ImportStage(BaseStage):
    """Import of the transit object as a native GCE image."""

    stage = Stage.IMPORT
    BUILD_KEY = "import_build_id"
    in_flight_keys = (BUILD_KEY,)

    def produce(self, job: MigrationJob) -> str:
        destination = self.context.destination
        settings = self.context.config.migration
        plan = self.context.plan
        source_uri = self._require(job, Stage.TRANSFER_UP)
        name = plan.image_name

        existing = destination.find_image(name)
        if existing:
            status = existing.get("status")
            if status == "READY":
                logger.info(f"Reusing image '{name}'")
                return name
            if status == "FAILED":
                raise ResourceConflict(f"Image '{name}' exists in FAILED state; delete it before retrying")
            self._await(
                PollHandle(name, lambda: (destination.find_image(name) or {}).get("status"), f"image {name}"),
                is_done=lambda s: s == "READY",
                is_failed=lambda s: s in (None, "FAILED"),
                interval=settings.import_poll_interval,
                max_attempts=settings.import_poll_attempts,
            )
            return name

        build_id = job.stage_state.get(self.BUILD_KEY)
        if build_id:
            logger.info(f"Resuming image import build {build_id}")
        else:
            build_id = destination.start_image_import(name, source_uri, plan.os_hint)
            self.context.remember(self.BUILD_KEY, build_id)

        self._await(
            PollHandle(build_id, lambda: destination.get_import_status(build_id), f"image import {build_id}"),
            is_done=lambda s: s == "completed",
            is_failed=lambda s: s == "failed",
            interval=settings.import_poll_interval,
            max_attempts=settings.import_poll_attempts,
        )
        if destination.find_image(name) is None:
            raise RemoteJobFailed(f"Import build {build_id} finished but image '{name}' does not exist")
        return name

    def compensate(self, job: MigrationJob) -> None:
        destination = self.context.destination
        name = job.artifact(Stage.IMPORT)
        if name:
            destination.delete_image(name)
            return
        build_id = job.stage_state.get(self.BUILD_KEY)
        if build_id and destination.get_import_status(build_id) == "pending":
            destination.cancel_image_import(build_id)


class ProvisionStage(BaseStage):
    """GCE instance created from the imported image (insert is not awaited)."""

    stage = Stage.PROVISION

    def _zone(self) -> str:
        return self.context.plan.zone_or(self.context.config.gcp.zone)

    def produce(self, job: MigrationJob) -> str:
        destination = self.context.destination
        plan = self.context.plan
        image_name = self._require(job, Stage.IMPORT)
        zone = self._zone()

        existing = destination.find_instance(plan.instance_name, zone)
        if existing:
            owner = existing.get("labels", {}).get(SOURCE_LABEL)
            if owner != job.source_instance_id:
                raise ResourceConflict(
                    f"Instance '{plan.instance_name}' in {zone} exists but is not labelled "
                    f"{SOURCE_LABEL}={job.source_instance_id}"
                )
            logger.info(f"Reusing instance '{plan.instance_name}'")
            return plan.instance_name

        return destination.create_instance(
            plan.instance_name,
            plan.machine_type,
            image_name,
            plan.network,
            zone,
            labels={SOURCE_LABEL: job.source_instance_id},
        )

    def compensate(self, job: MigrationJob) -> None:
        name = job.artifact(Stage.PROVISION)
        if name:
            self.context.destination.delete_instance(name, self._zone())


# ─── Cleanup ─────────────────────────────────────────────────────────


class CleanupStage(BaseStage):
    """Removes the local staging directory. Safe to run when it is absent.

    On the success path it can also drop the S3 export and GCS transit
    objects when ``staging.delete_transit_on_success`` is set.
    """

    stage = Stage.CLEANUP

    def produce(self, job: MigrationJob) -> None:
        staging = self.context.staging_dir
        if staging.exists():
            size_gb = sum(f.stat().st_size for f in staging.rglob("*") if f.is_file()) / (1024**3)
            logger.info(f"Cleaning staging directory: {staging} ({size_gb:.1f} GB)")
            shutil.rmtree(staging)
        else:
            logger.info(f"Staging directory {staging} already absent")

        succeeded = job.status == JobStatus.RUNNING and job.current_stage == Stage.CLEANUP
        if succeeded and self.context.config.staging.delete_transit_on_success:
            self._delete_transit(job)
        return None

    def _delete_transit(self, job: MigrationJob) -> None:
        export_uri = job.artifact(Stage.EXPORT)
        if export_uri:
            try:
                self.context.source.delete_object(*parse_s3_uri(export_uri))
            except MigrationError as e:
                logger.warning(f"Failed to delete S3 export {export_uri}: {e}")
        transit_uri = job.artifact(Stage.TRANSFER_UP)
        if transit_uri:
            try:
                self.context.destination.delete_object(*parse_gs_uri(transit_uri))
            except MigrationError as e:
                logger.warning(f"Failed to delete GCS transit {transit_uri}: {e}")


STAGE_CLASSES: dict[Stage, type[BaseStage]] = {
    Stage.SNAPSHOT: SnapshotStage,
    Stage.IMAGE_BUILD: ImageBuildStage,
    Stage.EXPORT: ExportStage,
    Stage.TRANSFER_DOWN: TransferDownStage,
    Stage.TRANSFER_UP: TransferUpStage,
    Stage.IMPORT: ImportStage,
    Stage.PROVISION: ProvisionStage,
    Stage.CLEANUP: CleanupStage,
}


def build_stages(context: StageContext) -> dict[Stage, BaseStage]:
    return {stage: cls(context) for stage, cls in STAGE_CLASSES.items()}
