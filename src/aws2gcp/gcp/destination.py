"""GCP destination operations: GCS transit, image import and instance creation.

Uses the Compute Engine v1 and Cloud Storage v1 APIs through
googleapiclient. Disk image import has no REST equivalent for VMDK, so
it goes through ``gcloud compute images import --async``, which hands
back a Cloud Build id that is polled like any other async job.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from aws2gcp.config import GCPConfig
from aws2gcp.errors import AuthorizationError, RemoteOperationError
from aws2gcp.gcp.errors import gcp_errors
from aws2gcp.utils.logging import get_logger
from aws2gcp.utils.subprocess import run_command

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
SOURCE_LABEL = "aws2gcp-source"
UPLOAD_CHUNK_SIZE = 64 * 1024 * 1024
GCLOUD_TIMEOUT = 300

# Cloud Build status -> pipeline status
BUILD_STATUS = {
    "STATUS_UNKNOWN": "pending",
    "PENDING": "pending",
    "QUEUED": "pending",
    "WORKING": "pending",
    "SUCCESS": "completed",
    "FAILURE": "failed",
    "INTERNAL_ERROR": "failed",
    "TIMEOUT": "failed",
    "CANCELLED": "failed",
    "EXPIRED": "failed",
}

_BUILD_ID = re.compile(r"builds/([0-9a-f-]{8,})")


def parse_gs_uri(uri: str) -> tuple[str, str]:
    """Split ``gs://bucket/key`` into (bucket, key)."""
    if not uri.startswith("gs://"):
        raise ValueError(f"Not a GCS URI: {uri}")
    bucket, _, key = uri[len("gs://"):].partition("/")
    return bucket, key


def _is_not_found(error: HttpError) -> bool:
    return int(error.resp.status) == 404


class GCPDestination:
    """Destination cloud collaborator for Cloud Storage and Compute Engine."""

    def __init__(self, compute: Any, storage: Any, config: GCPConfig):
        self.compute = compute
        self.storage = storage
        self.config = config
        self.project = config.project_id

    @classmethod
    def from_config(cls, config: GCPConfig) -> "GCPDestination":
        """Build API clients from the configured service account key."""
        key_file = Path(config.service_account_file)
        if not key_file.exists():
            raise AuthorizationError(f"Service account file not found: {key_file}")
        with gcp_errors("LoadCredentials"):
            credentials = service_account.Credentials.from_service_account_file(str(key_file), scopes=SCOPES)
        compute = build("compute", "v1", credentials=credentials, cache_discovery=False)
        storage = build("storage", "v1", credentials=credentials, cache_discovery=False)
        logger.info(f"Initialized GCP destination (project: {config.project_id})")
        return cls(compute, storage, config)

    def _gcloud_env(self) -> dict[str, str]:
        return {"CLOUDSDK_AUTH_CREDENTIAL_FILE_OVERRIDE": str(self.config.service_account_file)}

    # ── Cloud Storage ────────────────────────────────────────────

    def ensure_bucket(self, bucket: str) -> None:
        """Create the transit bucket if it doesn't exist."""
        with gcp_errors("storage.buckets.get"):
            try:
                self.storage.buckets().get(bucket=bucket).execute()
                logger.info(f"Bucket '{bucket}' already exists")
                return
            except HttpError as e:
                if not _is_not_found(e):
                    raise
        logger.info(f"Creating bucket '{bucket}'...")
        with gcp_errors("storage.buckets.insert"):
            self.storage.buckets().insert(
                project=self.project,
                body={"name": bucket, "location": self.config.bucket_location},
            ).execute()

    def object_size(self, bucket: str, key: str) -> Optional[int]:
        """Size of a GCS object in bytes, or None if it doesn't exist."""
        with gcp_errors("storage.objects.get"):
            try:
                obj = self.storage.objects().get(bucket=bucket, object=key).execute()
            except HttpError as e:
                if _is_not_found(e):
                    return None
                raise
        return int(obj["size"])

    def upload_object(self, local_path: Path, bucket: str, key: str) -> str:
        """Resumable chunked upload of a staged image; returns its gs:// URI."""
        file_size = local_path.stat().st_size
        logger.info(
            f"Uploading {local_path.name} ({file_size / (1024**3):.2f} GB) to gs://{bucket}/{key}"
        )
        media = MediaFileUpload(
            str(local_path),
            mimetype="application/octet-stream",
            chunksize=UPLOAD_CHUNK_SIZE,
            resumable=True,
        )
        with gcp_errors("storage.objects.insert"):
            request = self.storage.objects().insert(bucket=bucket, name=key, media_body=media)
            response = None
            last_logged_pct = -5.0
            while response is None:
                status, response = request.next_chunk()
                if status:
                    pct = status.progress() * 100
                    if pct - last_logged_pct >= 5:
                        logger.info(f"Upload progress: {pct:.0f}%")
                        last_logged_pct = pct
        uri = f"gs://{bucket}/{key}"
        logger.info(f"Upload complete: {uri}")
        return uri

    def delete_object(self, bucket: str, key: str) -> None:
        logger.info(f"Deleting gs://{bucket}/{key}")
        with gcp_errors("storage.objects.delete"):
            try:
                self.storage.objects().delete(bucket=bucket, object=key).execute()
            except HttpError as e:
                if not _is_not_found(e):
                    raise

    # ── Images ───────────────────────────────────────────────────

    def find_image(self, name: str) -> Optional[dict]:
        with gcp_errors("compute.images.get"):
            try:
                return self.compute.images().get(project=self.project, image=name).execute()
            except HttpError as e:
                if _is_not_found(e):
                    return None
                raise

    def start_image_import(self, name: str, source_uri: str, os_hint: str) -> str:
        """Start an async disk image import; returns the Cloud Build id."""
        logger.info(f"Importing {source_uri} as image '{name}' (os: {os_hint})")
        cmd = [
            "gcloud", "compute", "images", "import", name,
            f"--source-file={source_uri}",
            f"--os={os_hint}",
            f"--project={self.project}",
            "--async",
            "--quiet",
        ]
        with gcp_errors("gcloud compute images import"):
            result = run_command(cmd, env=self._gcloud_env(), timeout=GCLOUD_TIMEOUT)
        match = _BUILD_ID.search(result.output)
        if not match:
            raise RemoteOperationError(f"Could not find a Cloud Build id in import output: {result.output[-300:]}")
        build_id = match.group(1)
        logger.info(f"Image import running as Cloud Build {build_id}")
        return build_id

    def get_import_status(self, build_id: str) -> str:
        """Return pending, completed or failed for an import build."""
        cmd = [
            "gcloud", "builds", "describe", build_id,
            f"--project={self.project}",
            "--format=value(status)",
        ]
        with gcp_errors("gcloud builds describe"):
            result = run_command(cmd, env=self._gcloud_env(), timeout=GCLOUD_TIMEOUT)
        return BUILD_STATUS.get(result.stdout.strip(), "pending")

    def cancel_image_import(self, build_id: str) -> None:
        logger.info(f"Cancelling image import build {build_id}")
        cmd = ["gcloud", "builds", "cancel", build_id, f"--project={self.project}", "--quiet"]
        with gcp_errors("gcloud builds cancel"):
            run_command(cmd, env=self._gcloud_env(), timeout=GCLOUD_TIMEOUT)

    def delete_image(self, name: str) -> None:
        logger.info(f"Deleting image '{name}'")
        with gcp_errors("compute.images.delete"):
            try:
                self.compute.images().delete(project=self.project, image=name).execute()
            except HttpError as e:
                if not _is_not_found(e):
                    raise

    # ── Instances ────────────────────────────────────────────────

    def find_instance(self, name: str, zone: str) -> Optional[dict]:
        with gcp_errors("compute.instances.get"):
            try:
                return self.compute.instances().get(project=self.project, zone=zone, instance=name).execute()
            except HttpError as e:
                if _is_not_found(e):
                    return None
                raise

    def create_instance(
        self,
        name: str,
        machine_type: str,
        image_name: str,
        network: str,
        zone: str,
        labels: Optional[dict[str, str]] = None,
    ) -> str:
        """Submit an instance insert; the operation is not awaited."""
        body = {
            "name": name,
            "machineType": f"zones/{zone}/machineTypes/{machine_type}",
            "labels": labels or {},
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {"sourceImage": f"projects/{self.project}/global/images/{image_name}"},
                }
            ],
            "networkInterfaces": [
                {
                    "network": f"global/networks/{network}",
                    "accessConfigs": [{"name": "External NAT", "type": "ONE_TO_ONE_NAT"}],
                }
            ],
        }
        logger.info(f"Creating instance '{name}' ({machine_type}) in {zone}")
        with gcp_errors("compute.instances.insert"):
            operation = self.compute.instances().insert(project=self.project, zone=zone, body=body).execute()
        logger.info(f"Instance insert accepted (operation: {operation.get('name', 'unknown')})")
        return name

    def delete_instance(self, name: str, zone: str) -> None:
        logger.info(f"Deleting instance '{name}' in {zone}")
        with gcp_errors("compute.instances.delete"):
            try:
                self.compute.instances().delete(project=self.project, zone=zone, instance=name).execute()
            except HttpError as e:
                if not _is_not_found(e):
                    raise
