"""Tests for migration job state and the checkpoint store."""

import json

import pytest

from aws2gcp.errors import JobAlreadyActive, JobAlreadyFinished, JobNotFound


# ═══════════════════════════════════════════════════════════════════
#  Job model
# ═══════════════════════════════════════════════════════════════════

class TestMigrationJob:
    def test_stage_order(self):
        from aws2gcp.pipeline.state import Stage

        assert Stage.PENDING.next() == Stage.SNAPSHOT
        assert Stage.TRANSFER_UP.next() == Stage.IMPORT
        assert Stage.PROVISION.next() == Stage.CLEANUP
        assert Stage.CLEANUP.next() == Stage.COMPLETED
        assert Stage.IMAGE_BUILD.label == "ImageBuild"

    def test_record_success_advances(self):
        from aws2gcp.pipeline.state import MigrationJob, Stage

        job = MigrationJob(source_instance_id="i-abc123", current_stage=Stage.SNAPSHOT)
        job.record_success(Stage.SNAPSHOT, "snap-1")

        assert job.current_stage == Stage.IMAGE_BUILD
        assert job.artifact(Stage.SNAPSHOT) == "snap-1"
        assert job.completed_stages == [Stage.SNAPSHOT]
        assert job.last_artifact() == (Stage.SNAPSHOT, "snap-1")

    def test_record_success_rejects_out_of_order_stage(self):
        from aws2gcp.pipeline.state import MigrationJob, Stage

        job = MigrationJob(source_instance_id="i-abc123", current_stage=Stage.SNAPSHOT)
        with pytest.raises(ValueError):
            job.record_success(Stage.EXPORT, "s3://b/k")

    def test_dict_roundtrip_ignores_unknown_fields(self):
        from aws2gcp.pipeline.state import JobStatus, MigrationJob, Stage

        job = MigrationJob(source_instance_id="i-abc123", current_stage=Stage.EXPORT, status=JobStatus.RUNNING)
        job.artifacts = {"snapshot": "snap-1", "image_build": "ami-1"}
        data = job.to_dict()
        data["added_in_a_later_version"] = {"x": 1}

        loaded = MigrationJob.from_dict(data)
        assert loaded.current_stage == Stage.EXPORT
        assert loaded.status == JobStatus.RUNNING
        assert loaded.artifacts == job.artifacts
        assert loaded.created_at == job.created_at

    def test_terminal_statuses(self):
        from aws2gcp.pipeline.state import JobStatus

        assert JobStatus.FAILED.is_terminal
        assert JobStatus.ABORTED.is_terminal
        assert not JobStatus.RUNNING.is_terminal


# ═══════════════════════════════════════════════════════════════════
#  Checkpoint store
# ═══════════════════════════════════════════════════════════════════

class TestCheckpointStore:
    def test_save_and_load(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore, MigrationJob, Stage

        store = CheckpointStore(tmp_path)
        job = MigrationJob(source_instance_id="i-abc123", current_stage=Stage.TRANSFER_UP)
        job.artifacts["transfer_down"] = "/tmp/x.vmdk"
        store.save(job)

        loaded = store.load("i-abc123")
        assert loaded.current_stage == Stage.TRANSFER_UP
        assert loaded.artifact(Stage.TRANSFER_DOWN) == "/tmp/x.vmdk"
        # No temp files left behind
        assert sorted(p.name for p in tmp_path.iterdir()) == ["i-abc123.json"]

    def test_load_missing_returns_none(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore

        assert CheckpointStore(tmp_path).load("i-0") is None

    def test_start_creates_running_job(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore, JobStatus, Stage

        store = CheckpointStore(tmp_path)
        job = store.start("i-abc123", {"instance_id": "i-abc123"})
        try:
            assert job.status == JobStatus.RUNNING
            assert job.current_stage == Stage.PENDING
            with open(tmp_path / "i-abc123.json") as f:
                assert json.load(f)["status"] == "running"
        finally:
            store.release("i-abc123")

    def test_second_start_is_rejected_while_active(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore

        first = CheckpointStore(tmp_path)
        second = CheckpointStore(tmp_path)
        first.start("i-abc123", {})
        try:
            with pytest.raises(JobAlreadyActive):
                second.start("i-abc123", {})
        finally:
            first.release("i-abc123")

        # Lock released: the job can be taken again
        job = second.start("i-abc123")
        second.release("i-abc123")
        assert job.source_instance_id == "i-abc123"

    def test_start_without_plan_or_checkpoint(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore

        store = CheckpointStore(tmp_path)
        with pytest.raises(JobNotFound):
            store.start("i-abc123")
        # The failed start must not keep the lock
        store.start("i-abc123", {})
        store.release("i-abc123")

    def test_terminal_job_cannot_be_started(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore, JobStatus, MigrationJob

        store = CheckpointStore(tmp_path)
        store.save(MigrationJob(source_instance_id="i-abc123", status=JobStatus.FAILED))

        with pytest.raises(JobAlreadyFinished):
            store.start("i-abc123")

    def test_list_all_newest_first(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore, MigrationJob

        store = CheckpointStore(tmp_path)
        store.save(MigrationJob(source_instance_id="i-1"))
        store.save(MigrationJob(source_instance_id="i-2"))
        (tmp_path / "i-broken.json").write_text("{not json")

        assert [j.source_instance_id for j in store.list_all()] == ["i-2", "i-1"]

    def test_delete(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore, JobStatus, MigrationJob

        store = CheckpointStore(tmp_path)
        store.save(MigrationJob(source_instance_id="i-abc123", status=JobStatus.COMPLETED))
        store.delete("i-abc123")

        assert not store.exists("i-abc123")
        with pytest.raises(JobNotFound):
            store.delete("i-abc123")

    def test_delete_refuses_active_job(self, tmp_path):
        from aws2gcp.pipeline.state import CheckpointStore

        owner = CheckpointStore(tmp_path)
        owner.start("i-abc123", {})
        try:
            with pytest.raises(JobAlreadyActive):
                CheckpointStore(tmp_path).delete("i-abc123")
        finally:
            owner.release("i-abc123")

    def test_delete_keeps_lock_file_for_racing_starts(self, tmp_path):
        import fcntl

        from aws2gcp.pipeline.state import CheckpointStore, JobStatus, MigrationJob

        store = CheckpointStore(tmp_path)
        store.save(MigrationJob(source_instance_id="i-abc123", status=JobStatus.COMPLETED))
        # A start that opened the lock file before the delete finished
        racing = open(tmp_path / "i-abc123.lock", "a+")
        try:
            store.delete("i-abc123")
            assert (tmp_path / "i-abc123.lock").exists()

            fcntl.flock(racing.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            with pytest.raises(JobAlreadyActive):
                CheckpointStore(tmp_path).start("i-abc123", {})
        finally:
            racing.close()
