"""Error taxonomy for the migration pipeline.

Provider errors are translated into these classes at the collaborator
boundary (``aws2gcp.aws.errors``, ``aws2gcp.gcp.errors``). Stages turn
them into a ``StageResult``; only ``retryable`` errors are re-attempted
by the orchestrator.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base class for classified migration errors."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransientRemoteError(MigrationError):
    """Network blip, throttling or a 5xx from the provider."""

    retryable = True


class ResourceConflict(MigrationError):
    """A resource with our deterministic name exists but does not match."""


class AuthorizationError(MigrationError):
    """Credentials missing, expired or lacking permission."""


class ResourceNotFound(MigrationError):
    """A resource the stage depends on does not exist."""


class QuotaExceeded(MigrationError):
    """Provider quota or resource limit reached."""


class PollTimeout(MigrationError):
    """An async provider job did not resolve within the polling budget."""


class RemoteJobFailed(MigrationError):
    """An async provider job reported failure."""


class RemoteOperationError(MigrationError):
    """Provider error that does not fit any other category."""


class LocalIOError(MigrationError):
    """Local staging failure (disk full, permissions, missing file)."""


class AbortRequested(MigrationError):
    """The operator or process shutdown cancelled the job."""


class UnexpectedError(MigrationError):
    """An exception nothing classified; treated as fatal."""


# ─── Checkpoint store errors ─────────────────────────────────────────


class CheckpointError(Exception):
    """Base class for job store errors."""


class JobAlreadyActive(CheckpointError):
    """Another orchestrator holds the job for this source instance."""


class JobNotFound(CheckpointError):
    """No checkpoint exists for the source instance."""


class JobAlreadyFinished(CheckpointError):
    """The checkpoint is terminal and cannot be resumed."""
