"""EC2 source operations: snapshot, AMI, VM export and S3 download.

Every created resource is tagged with the source instance id so that a
re-run can find it instead of creating a duplicate.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config

from aws2gcp.aws.errors import aws_errors
from aws2gcp.config import AWSConfig
from aws2gcp.errors import ResourceNotFound
from aws2gcp.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE_TAG = "aws2gcp:source-instance"

# describe_export_image_tasks status -> pipeline status
EXPORT_STATUS = {
    "active": "pending",
    "completed": "completed",
    "deleting": "failed",
    "deleted": "failed",
}


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an S3 URI: {uri}")
    bucket, _, key = uri[len("s3://"):].partition("/")
    return bucket, key


def _tags(instance_id: str, **extra: str) -> list[dict[str, str]]:
    tags = [{"Key": SOURCE_TAG, "Value": instance_id}, {"Key": "Name", "Value": f"aws2gcp-{instance_id}"}]
    tags.extend({"Key": k, "Value": v} for k, v in extra.items())
    return tags


def _tag_value(resource: dict, key: str) -> Optional[str]:
    for tag in resource.get("Tags", []):
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


class ProgressTracker:
    """boto3 transfer callback that logs every 5%."""

    def __init__(self, label: str, total_size: int):
        self.label = label
        self.total_size = max(total_size, 1)
        self.transferred = 0
        self.last_logged_pct = -5.0

    def __call__(self, bytes_amount: int) -> None:
        self.transferred += bytes_amount
        pct = self.transferred / self.total_size * 100
        if pct - self.last_logged_pct >= 5:
            logger.info(f"{self.label} progress: {pct:.0f}% ({self.transferred / (1024**3):.2f} GB)")
            self.last_logged_pct = pct


class EC2Source:
    """Source cloud collaborator backed by boto3 EC2 and S3 clients.

    The session carries the credentials; nothing here reads ambient
    process state.
    """

    def __init__(self, session: boto3.session.Session, config: AWSConfig):
        self.config = config
        client_config = Config(retries={"max_attempts": 3, "mode": "adaptive"}, max_pool_connections=10)
        self.ec2 = session.client("ec2", region_name=config.region, config=client_config)
        self.s3 = session.client("s3", region_name=config.region, config=client_config)
        logger.info(f"Initialized EC2 source (region: {config.region})")

    @classmethod
    def from_config(cls, config: AWSConfig) -> "EC2Source":
        with aws_errors("CreateSession"):
            session = boto3.session.Session(profile_name=config.profile, region_name=config.region)
            return cls(session, config)

    # ── Snapshots ────────────────────────────────────────────────

    def root_volume_id(self, instance_id: str) -> str:
        """Return the EBS volume id backing the instance's root device."""
        with aws_errors("DescribeInstances"):
            resp = self.ec2.describe_instances(InstanceIds=[instance_id])
        reservations = resp.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            raise ResourceNotFound(f"Instance {instance_id} not found")
        instance = reservations[0]["Instances"][0]
        root_device = instance.get("RootDeviceName")
        for mapping in instance.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == root_device and "Ebs" in mapping:
                return mapping["Ebs"]["VolumeId"]
        raise ResourceNotFound(f"Instance {instance_id} has no EBS root volume")

    def find_snapshot(self, instance_id: str) -> Optional[dict]:
        """Find a usable migration snapshot tagged for this instance."""
        with aws_errors("DescribeSnapshots"):
            resp = self.ec2.describe_snapshots(
                OwnerIds=["self"],
                Filters=[
                    {"Name": f"tag:{SOURCE_TAG}", "Values": [instance_id]},
                    {"Name": "status", "Values": ["pending", "completed"]},
                ],
            )
        snapshots = sorted(resp.get("Snapshots", []), key=lambda s: s.get("StartTime", ""))
        return snapshots[-1] if snapshots else None

    def create_snapshot(self, instance_id: str, volume_id: str) -> str:
        logger.info(f"Creating snapshot of {volume_id} (instance {instance_id})")
        with aws_errors("CreateSnapshot"):
            resp = self.ec2.create_snapshot(
                VolumeId=volume_id,
                Description=f"Snapshot for migration of {instance_id} to GCP",
                TagSpecifications=[{"ResourceType": "snapshot", "Tags": _tags(instance_id)}],
            )
        return resp["SnapshotId"]

    def get_snapshot_state(self, snapshot_id: str) -> str:
        with aws_errors("DescribeSnapshots"):
            resp = self.ec2.describe_snapshots(SnapshotIds=[snapshot_id])
        snapshots = resp.get("Snapshots", [])
        if not snapshots:
            raise ResourceNotFound(f"Snapshot {snapshot_id} not found")
        return snapshots[0]["State"]

    def delete_snapshot(self, snapshot_id: str) -> None:
        logger.info(f"Deleting snapshot {snapshot_id}")
        with aws_errors("DeleteSnapshot"):
            self.ec2.delete_snapshot(SnapshotId=snapshot_id)

    # ── AMIs ─────────────────────────────────────────────────────

    def find_image(self, name: str) -> Optional[dict]:
        """Find a live AMI by name as {ImageId, State, RootSnapshotId}."""
        with aws_errors("DescribeImages"):
            resp = self.ec2.describe_images(
                Owners=["self"],
                Filters=[{"Name": "name", "Values": [name]}],
            )
        images = [i for i in resp.get("Images", []) if i.get("State") not in ("deregistered", "failed")]
        if not images:
            return None
        image = images[0]
        root_snapshot = None
        for mapping in image.get("BlockDeviceMappings", []):
            if mapping.get("DeviceName") == image.get("RootDeviceName"):
                root_snapshot = mapping.get("Ebs", {}).get("SnapshotId")
        return {"ImageId": image["ImageId"], "State": image.get("State"), "RootSnapshotId": root_snapshot}

    def create_image(self, snapshot_id: str, name: str, instance_id: str) -> str:
        """Register an AMI whose root device is the migration snapshot."""
        logger.info(f"Registering AMI '{name}' from snapshot {snapshot_id}")
        with aws_errors("RegisterImage"):
            resp = self.ec2.register_image(
                Name=name,
                Description=f"AMI for migration of {instance_id} to GCP",
                Architecture="x86_64",
                VirtualizationType="hvm",
                EnaSupport=True,
                RootDeviceName="/dev/xvda",
                BlockDeviceMappings=[
                    {"DeviceName": "/dev/xvda", "Ebs": {"SnapshotId": snapshot_id, "DeleteOnTermination": True}},
                ],
                TagSpecifications=[{"ResourceType": "image", "Tags": _tags(instance_id)}],
            )
        return resp["ImageId"]

    def get_image_state(self, image_id: str) -> str:
        with aws_errors("DescribeImages"):
            resp = self.ec2.describe_images(ImageIds=[image_id])
        images = resp.get("Images", [])
        if not images:
            raise ResourceNotFound(f"AMI {image_id} not found")
        return images[0]["State"]

    def deregister_image(self, image_id: str) -> None:
        logger.info(f"Deregistering AMI {image_id}")
        with aws_errors("DeregisterImage"):
            self.ec2.deregister_image(ImageId=image_id)

    # ── VM export ────────────────────────────────────────────────

    def ensure_bucket(self, bucket: str) -> None:
        """Create the export bucket if it doesn't exist."""
        with aws_errors("HeadBucket"):
            try:
                self.s3.head_bucket(Bucket=bucket)
                logger.info(f"Bucket '{bucket}' already exists")
                return
            except self.s3.exceptions.ClientError as e:
                if e.response["Error"]["Code"] not in ("404", "NoSuchBucket"):
                    raise
        logger.info(f"Creating bucket '{bucket}'...")
        params: dict[str, Any] = {"Bucket": bucket}
        if self.config.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.config.region}
        with aws_errors("CreateBucket"):
            self.s3.create_bucket(**params)

    def find_export_task(self, instance_id: str, image_id: str) -> Optional[str]:
        """Find an active or completed export task for this image."""
        with aws_errors("DescribeExportImageTasks"):
            resp = self.ec2.describe_export_image_tasks()
        for task in resp.get("ExportImageTasks", []):
            if _tag_value(task, SOURCE_TAG) != instance_id:
                continue
            if _tag_value(task, "aws2gcp:image") != image_id:
                continue
            if task.get("Status") in ("active", "completed"):
                return task["ExportImageTaskId"]
        return None

    def export_image(self, image_id: str, bucket: str, prefix: str, disk_format: str, instance_id: str) -> str:
        logger.info(f"Exporting {image_id} to s3://{bucket}/{prefix} ({disk_format})")
        with aws_errors("ExportImage"):
            resp = self.ec2.export_image(
                ImageId=image_id,
                DiskImageFormat=disk_format,
                S3ExportLocation={"S3Bucket": bucket, "S3Prefix": prefix},
                RoleName=self.config.export_role_name,
                Description=f"Export of {instance_id} for GCP migration",
                TagSpecifications=[
                    {"ResourceType": "export-image-task", "Tags": _tags(instance_id, **{"aws2gcp:image": image_id})},
                ],
            )
        return resp["ExportImageTaskId"]

    def get_export_status(self, task_id: str) -> dict[str, str]:
        """Return {status: pending|completed|failed, location, message}."""
        with aws_errors("DescribeExportImageTasks"):
            resp = self.ec2.describe_export_image_tasks(ExportImageTaskIds=[task_id])
        tasks = resp.get("ExportImageTasks", [])
        if not tasks:
            raise ResourceNotFound(f"Export task {task_id} not found")
        task = tasks[0]
        location = task.get("S3ExportLocation", {})
        extension = self.config.disk_image_format.lower()
        return {
            "status": EXPORT_STATUS.get(task.get("Status", ""), "pending"),
            "location": f"s3://{location.get('S3Bucket')}/{location.get('S3Prefix', '')}{task_id}.{extension}",
            "message": task.get("StatusMessage", ""),
        }

    def cancel_export_task(self, task_id: str) -> None:
        logger.info(f"Cancelling export task {task_id}")
        with aws_errors("CancelExportTask"):
            self.ec2.cancel_export_task(ExportTaskId=task_id)

    # ── S3 objects ───────────────────────────────────────────────

    def object_size(self, bucket: str, key: str) -> Optional[int]:
        """Size of an S3 object in bytes, or None if it doesn't exist."""
        with aws_errors("HeadObject"):
            try:
                response = self.s3.head_object(Bucket=bucket, Key=key)
            except self.s3.exceptions.ClientError as e:
                if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
                    return None
                raise
        return response["ContentLength"]

    def download_object(
        self,
        bucket: str,
        key: str,
        dest: Path,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> None:
        """Download an S3 object using boto3's managed multipart transfer."""
        size = self.object_size(bucket, key) or 0
        logger.info(f"Downloading s3://{bucket}/{key} ({size / (1024**3):.2f} GB) to {dest}")
        transfer_config = TransferConfig(
            multipart_threshold=64 * 1024 * 1024,
            multipart_chunksize=64 * 1024 * 1024,
            max_concurrency=4,
            use_threads=True,
        )
        callback = progress_callback or ProgressTracker("Download", size)
        with aws_errors("GetObject"):
            self.s3.download_file(bucket, key, str(dest), Config=transfer_config, Callback=callback)

    def delete_object(self, bucket: str, key: str) -> None:
        logger.info(f"Deleting s3://{bucket}/{key}")
        with aws_errors("DeleteObject"):
            self.s3.delete_object(Bucket=bucket, Key=key)
