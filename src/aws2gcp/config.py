"""Configuration models for aws2gcp using Pydantic v2."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_SERVICE_ACCOUNT_FILE = Path.home() / ".gcp" / "service-account.json"

# GCE resource names: lowercase letter first, then lowercase, digits or '-'.
_GCE_NAME = re.compile(r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")


class AWSConfig(BaseModel):
    """Source side: EC2 region, profile and export settings."""

    region: str = Field("us-west-2", description="AWS region of the source instance")
    profile: Optional[str] = Field("default", description="AWS credentials profile")
    export_bucket: str = Field(
        "ec2-migration-{instance_id}",
        description="S3 bucket receiving the exported image ({instance_id} is substituted)",
    )
    export_prefix: str = Field("exports/", description="Key prefix for exported images")
    disk_image_format: str = Field("VMDK", pattern="^(VMDK|RAW|VHD)$")
    export_role_name: str = Field("vmimport", description="IAM role used by the VM export service")

    def export_bucket_for(self, instance_id: str) -> str:
        return self.export_bucket.format(instance_id=instance_id)


class GCPConfig(BaseModel):
    """Destination side: GCP project, storage and credentials."""

    project_id: str = Field(..., description="GCP project ID")
    zone: str = Field("us-west1-a", description="Default zone for new instances")
    bucket: str = Field("migration-bucket", description="GCS bucket for transit images")
    bucket_location: str = Field("US", description="Location used when creating the bucket")
    service_account_file: Optional[Path] = Field(None, description="Service account JSON key")

    @model_validator(mode="after")
    def resolve_service_account(self) -> "GCPConfig":
        if self.service_account_file is None:
            env_val = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
            self.service_account_file = Path(env_val) if env_val else DEFAULT_SERVICE_ACCOUNT_FILE
        return self

    @field_validator("project_id")
    @classmethod
    def require_project(cls, v: str) -> str:
        if not v:
            raise ValueError("GCP project_id is required (check GCP_PROJECT env var)")
        return v


class StagingConfig(BaseModel):
    """Local staging area and checkpoint location."""

    work_dir: Path = Field(Path("/tmp/ec2-to-gcp"), description="Working directory for staged images")
    state_dir: Optional[Path] = Field(None, description="Checkpoint directory (default: <work_dir>/state)")
    delete_transit_on_success: bool = Field(
        False, description="Remove the S3 export and GCS transit objects after a completed migration"
    )

    @field_validator("work_dir")
    @classmethod
    def ensure_work_dir(cls, v: Path) -> Path:
        v.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def default_state_dir(self) -> "StagingConfig":
        if self.state_dir is None:
            self.state_dir = self.work_dir / "state"
        return self

    def staging_dir_for(self, instance_id: str) -> Path:
        return self.work_dir / instance_id


class MigrationSettings(BaseModel):
    """Retry and polling bounds."""

    retry_count: int = Field(3, ge=0, le=10, description="Retries for transient errors per stage")
    retry_delay_seconds: float = Field(30, ge=0, description="Base delay between retries")
    export_poll_interval: float = Field(60, ge=0)
    export_poll_attempts: int = Field(60, ge=1)
    image_poll_interval: float = Field(15, ge=0)
    image_poll_attempts: int = Field(240, ge=1)
    import_poll_interval: float = Field(60, ge=0)
    import_poll_attempts: int = Field(120, ge=1)


class AppConfig(BaseModel):
    """Root application configuration."""

    aws: AWSConfig = Field(default_factory=AWSConfig)
    gcp: GCPConfig
    staging: StagingConfig = Field(default_factory=StagingConfig)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides) -> "AppConfig":
        """Load configuration from a YAML file, with optional CLI overrides."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**_merge_overrides(data, overrides))

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base: dict = {
            "aws": {
                "region": os.environ.get("AWS_REGION", "us-west-2"),
                "profile": os.environ.get("AWS_PROFILE", "default"),
            },
            "gcp": {
                "project_id": os.environ.get("GCP_PROJECT", ""),
                "zone": os.environ.get("GCP_ZONE", "us-west1-a"),
                "bucket": os.environ.get("GCP_BUCKET", "migration-bucket"),
            },
            "staging": {
                "work_dir": os.environ.get("AWS2GCP_WORK_DIR", "/tmp/ec2-to-gcp"),
            },
        }
        return cls(**_merge_overrides(base, overrides))


def _merge_overrides(base: dict, overrides: dict) -> dict:
    """Deep merge one level of overrides, ignoring unset CLI options."""
    for key, value in overrides.items():
        if isinstance(value, dict):
            section = base.setdefault(key, {}) or {}
            section.update({k: v for k, v in value.items() if v is not None})
            base[key] = section
        elif value is not None:
            base[key] = value
    return base


# --- Per-instance migration plan ---

class MigrationPlan(BaseModel):
    """Migration plan for a single EC2 instance."""

    instance_id: str = Field(..., pattern=r"^i-[0-9a-f]+$", description="Source EC2 instance ID")
    instance_name: Optional[str] = Field(None, description="Destination instance name")
    machine_type: str = Field("n2-standard-2", description="GCE machine type")
    network: str = Field("default", description="GCE network")
    zone: Optional[str] = Field(None, description="GCE zone (default: gcp.zone)")
    os_hint: str = Field("debian-9", description="OS passed to the image import")

    @model_validator(mode="after")
    def derive_instance_name(self) -> "MigrationPlan":
        if not self.instance_name:
            self.instance_name = f"migrated-{self.instance_id}"
        if not _GCE_NAME.match(self.instance_name):
            raise ValueError(f"Invalid GCE instance name: {self.instance_name!r}")
        return self

    @property
    def ami_name(self) -> str:
        return f"migration-ami-{self.instance_id}"

    @property
    def image_name(self) -> str:
        return f"{self.instance_name}-image"

    @property
    def transit_key(self) -> str:
        return f"{self.instance_id}/exported-ami.vmdk"

    def zone_or(self, default: str) -> str:
        return self.zone or default
