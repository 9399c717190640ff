"""Migration job state and checkpoint persistence for resume support.

A ``MigrationJob`` is keyed by the source instance id. The orchestrator
persists it through ``CheckpointStore`` after every stage transition;
stages never touch the store.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import IO, Any, Optional

from aws2gcp.errors import JobAlreadyActive, JobAlreadyFinished, JobNotFound
from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)


class Stage(str, Enum):
    PENDING = "pending"
    SNAPSHOT = "snapshot"
    IMAGE_BUILD = "image_build"
    EXPORT = "export"
    TRANSFER_DOWN = "transfer_down"
    TRANSFER_UP = "transfer_up"
    IMPORT = "import"
    PROVISION = "provision"
    CLEANUP = "cleanup"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        return _LABELS[self]

    def next(self) -> "Stage":
        members = list(Stage)
        return members[members.index(self) + 1]


_LABELS = {
    Stage.PENDING: "Pending",
    Stage.SNAPSHOT: "Snapshot",
    Stage.IMAGE_BUILD: "ImageBuild",
    Stage.EXPORT: "Export",
    Stage.TRANSFER_DOWN: "TransferDown",
    Stage.TRANSFER_UP: "TransferUp",
    Stage.IMPORT: "Import",
    Stage.PROVISION: "Provision",
    Stage.CLEANUP: "Cleanup",
    Stage.COMPLETED: "Completed",
}

# Stages that produce an artifact, in execution order.
PIPELINE_STAGES = [
    Stage.SNAPSHOT,
    Stage.IMAGE_BUILD,
    Stage.EXPORT,
    Stage.TRANSFER_DOWN,
    Stage.TRANSFER_UP,
    Stage.IMPORT,
    Stage.PROVISION,
]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MigrationJob:
    """Persistent record of one instance migration.

    Attributes:
        source_instance_id: EC2 instance id; identity of the job
        current_stage: Next stage to execute (or the one in progress)
        status: Overall job status
        artifacts: Completed stage name -> produced artifact reference
        plan: Migration plan the job was started with
        stage_state: Resumable values owned by individual stages
        error: Terminal error as {stage, kind, message}
    """
    source_instance_id: str
    current_stage: Stage = Stage.PENDING
    status: JobStatus = JobStatus.PENDING
    artifacts: dict[str, str] = field(default_factory=dict)
    plan: dict[str, Any] = field(default_factory=dict)
    stage_state: dict[str, str] = field(default_factory=dict)
    error: Optional[dict[str, str]] = None
    compensated: list[str] = field(default_factory=list)
    compensation_failures: dict[str, str] = field(default_factory=dict)
    cleaned_up: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def completed_stages(self) -> list[Stage]:
        """Artifact-producing stages confirmed successful, in pipeline order."""
        return [s for s in PIPELINE_STAGES if s.value in self.artifacts]

    def artifact(self, stage: Stage) -> Optional[str]:
        return self.artifacts.get(stage.value)

    def last_artifact(self) -> Optional[tuple[Stage, str]]:
        completed = self.completed_stages
        if not completed:
            return None
        return completed[-1], self.artifacts[completed[-1].value]

    def record_success(self, stage: Stage, artifact: Optional[str]) -> None:
        """Store the stage's artifact and advance to the next stage."""
        if stage != self.current_stage:
            raise ValueError(f"Job is at {self.current_stage.value}, cannot complete {stage.value}")
        if artifact is not None:
            self.artifacts[stage.value] = artifact
        self.current_stage = stage.next()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["current_stage"] = self.current_stage.value
        d["status"] = self.status.value
        d["created_at"] = self.created_at.isoformat()
        d["updated_at"] = self.updated_at.isoformat()
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "MigrationJob":
        # Unknown keys come from newer versions; drop them.
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in data.items() if k in known}
        data["current_stage"] = Stage(data.get("current_stage", Stage.PENDING.value))
        data["status"] = JobStatus(data.get("status", JobStatus.PENDING.value))
        for key in ("created_at", "updated_at"):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


class CheckpointStore:
    """Persists migration jobs to disk as JSON checkpoints.

    Checkpoints live at ``{state_dir}/{instance_id}.json`` and are replaced
    atomically, so a crash mid-write leaves the previous checkpoint intact.
    A job is held through an exclusive ``flock`` on
    ``{state_dir}/{instance_id}.lock``; the kernel drops it if the process
    dies, which lets a crashed job be resumed.
    """

    def __init__(self, state_dir: Path | str):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, IO] = {}

    def _state_path(self, instance_id: str) -> Path:
        return self.state_dir / f"{instance_id}.json"

    def _lock_path(self, instance_id: str) -> Path:
        return self.state_dir / f"{instance_id}.lock"

    def save(self, job: MigrationJob) -> None:
        """Atomically write the job checkpoint."""
        job.updated_at = _now()
        path = self._state_path(job.source_instance_id)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(job.to_dict(), f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load(self, instance_id: str) -> Optional[MigrationJob]:
        """Load the last committed checkpoint, or None if there is none."""
        path = self._state_path(instance_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return MigrationJob.from_dict(data)

    def exists(self, instance_id: str) -> bool:
        return self._state_path(instance_id).exists()

    def start(self, instance_id: str, plan: Optional[dict] = None) -> MigrationJob:
        """Create or reload a job and move it to RUNNING under the job lock.

        Raises:
            JobAlreadyActive: Another orchestrator holds this instance
            JobAlreadyFinished: The checkpoint is terminal
            JobNotFound: No checkpoint and no plan to create one from
        """
        self._acquire(instance_id)
        try:
            job = self.load(instance_id)
            if job is None:
                if plan is None:
                    raise JobNotFound(f"No checkpoint for instance '{instance_id}'")
                job = MigrationJob(source_instance_id=instance_id, plan=plan)
                logger.info(f"Created migration job for {instance_id}")
            elif job.status.is_terminal:
                raise JobAlreadyFinished(
                    f"Migration of '{instance_id}' already ended with status '{job.status.value}'"
                )
            else:
                logger.info(
                    f"Resuming migration of {instance_id} at stage '{job.current_stage.value}'"
                )

            job.status = JobStatus.RUNNING
            self.save(job)
            return job
        except BaseException:
            self.release(instance_id)
            raise

    def release(self, instance_id: str) -> None:
        """Drop the job lock held by this store, if any."""
        handle = self._locks.pop(instance_id, None)
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _acquire(self, instance_id: str) -> None:
        handle = open(self._lock_path(instance_id), "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise JobAlreadyActive(f"A migration of '{instance_id}' is already running")
        self._locks[instance_id] = handle

    def list_all(self) -> list[MigrationJob]:
        """List all known migration jobs, most recently updated first."""
        jobs = []
        for path in self.state_dir.glob("*.json"):
            try:
                job = self.load(path.stem)
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Failed to load checkpoint {path.name}: {e}")
                continue
            if job:
                jobs.append(job)
        return sorted(jobs, key=lambda j: j.updated_at, reverse=True)

    def delete(self, instance_id: str) -> None:
        """Delete a terminal checkpoint so the instance can be migrated again."""
        job = self.load(instance_id)
        if job is None:
            raise JobNotFound(f"No checkpoint for instance '{instance_id}'")
        # Raises JobAlreadyActive while another process drives the job. The
        # lock file itself stays: every start must lock the same inode.
        self._acquire(instance_id)
        try:
            self._state_path(instance_id).unlink(missing_ok=True)
        finally:
            self.release(instance_id)
