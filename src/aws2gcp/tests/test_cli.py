"""Tests for the aws2gcp command line, with fake clouds behind the pipeline."""

import pytest
from click.testing import CliRunner

from aws2gcp.errors import AuthorizationError
from aws2gcp.tests.fakes import INSTANCE_ID, ROOT_VOLUME, FakeDestination, FakeSource


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def runner(work_dir, monkeypatch):
    monkeypatch.setenv("GCP_PROJECT", "test-project")
    monkeypatch.setenv("AWS2GCP_WORK_DIR", str(work_dir))
    return CliRunner()


@pytest.fixture
def clouds(monkeypatch):
    source = FakeSource(instances={INSTANCE_ID: ROOT_VOLUME}, export_pending_polls=1)
    destination = FakeDestination()

    def build(config, cancel_event):
        from aws2gcp.pipeline.migration import MigrationPipeline

        config.migration.retry_delay_seconds = 0
        config.migration.export_poll_interval = 0
        config.migration.image_poll_interval = 0
        config.migration.import_poll_interval = 0
        return MigrationPipeline(config, source, destination, cancel_event=cancel_event)

    monkeypatch.setattr("aws2gcp.cli._build_pipeline", build)
    return source, destination


class TestMigrateCommand:
    def test_successful_migration(self, runner, clouds, work_dir):
        from aws2gcp.cli import main

        result = runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        assert result.exit_code == 0, result.output
        assert "Migration complete" in result.output
        assert "migrated-i-abc123" in result.output
        assert not (work_dir / INSTANCE_ID).exists()

    def test_failed_migration_exits_non_zero(self, runner, clouds):
        from aws2gcp.cli import main

        _, destination = clouds
        destination.fail("start_image_import", AuthorizationError("PERMISSION_DENIED"))

        result = runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        assert result.exit_code == 1
        assert "Import" in result.output
        assert "AuthorizationError" in result.output

    def test_dry_run(self, runner, clouds):
        from aws2gcp.cli import main

        source, destination = clouds
        result = runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID, "--dry-run"])

        assert result.exit_code == 0, result.output
        assert source.calls == []
        assert destination.calls == []

    def test_invalid_instance_id(self, runner, clouds):
        from aws2gcp.cli import main

        result = runner.invoke(main, ["migrate", "--instance-id", "web-server"])
        assert result.exit_code == 2

    def test_missing_project(self, runner, clouds, monkeypatch):
        from aws2gcp.cli import main

        monkeypatch.delenv("GCP_PROJECT")
        result = runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        assert result.exit_code == 1
        assert "Error loading config" in result.output

    def test_finished_migration_is_refused(self, runner, clouds):
        from aws2gcp.cli import main

        runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])
        result = runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        assert result.exit_code == 1
        assert "already ended" in result.output


class TestResumeCommand:
    def test_unknown_instance(self, runner, clouds):
        from aws2gcp.cli import main

        result = runner.invoke(main, ["resume", "i-0000"])

        assert result.exit_code == 1
        assert "Cannot resume" in result.output

    def test_resume_interrupted_job(self, runner, clouds, work_dir):
        from aws2gcp.cli import main
        from aws2gcp.config import MigrationPlan
        from aws2gcp.pipeline.state import CheckpointStore, JobStatus, MigrationJob, Stage

        source, _ = clouds
        snapshot_id = source.create_snapshot(INSTANCE_ID, ROOT_VOLUME)
        store = CheckpointStore(work_dir / "state")
        store.save(MigrationJob(
            source_instance_id=INSTANCE_ID,
            current_stage=Stage.IMAGE_BUILD,
            status=JobStatus.RUNNING,
            artifacts={"snapshot": snapshot_id},
            plan=MigrationPlan(instance_id=INSTANCE_ID).model_dump(),
        ))

        result = runner.invoke(main, ["resume", INSTANCE_ID])

        assert result.exit_code == 0, result.output
        assert source.count("create_snapshot") == 1
        assert store.load(INSTANCE_ID).status == JobStatus.COMPLETED


class TestInspectionCommands:
    def test_status_and_list(self, runner, clouds):
        from aws2gcp.cli import main

        runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        status = runner.invoke(main, ["status", INSTANCE_ID])
        assert status.exit_code == 0, status.output
        assert "completed" in status.output
        assert "Provision" in status.output

        listing = runner.invoke(main, ["list"])
        assert listing.exit_code == 0
        assert INSTANCE_ID in listing.output

    def test_status_of_failed_migration(self, runner, clouds):
        from aws2gcp.cli import main

        _, destination = clouds
        destination.fail("create_instance", AuthorizationError("denied"))
        runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])

        result = runner.invoke(main, ["status", INSTANCE_ID])
        assert "failed" in result.output
        assert "AuthorizationError" in result.output

    def test_status_unknown(self, runner):
        from aws2gcp.cli import main

        result = runner.invoke(main, ["status", "i-0000"])
        assert result.exit_code == 1

    def test_list_empty(self, runner):
        from aws2gcp.cli import main

        result = runner.invoke(main, ["list"])
        assert result.exit_code == 0
        assert "No migrations found" in result.output

    def test_forget_allows_new_migration(self, runner, clouds):
        from aws2gcp.cli import main

        runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID])
        forget = runner.invoke(main, ["forget", INSTANCE_ID, "--yes"])
        assert forget.exit_code == 0, forget.output

        assert runner.invoke(main, ["status", INSTANCE_ID]).exit_code == 1
        assert runner.invoke(main, ["migrate", "--instance-id", INSTANCE_ID]).exit_code == 0


class TestCheckCommand:
    def test_tools_present(self, runner, monkeypatch):
        from aws2gcp.cli import main

        monkeypatch.delenv("GCP_PROJECT")
        monkeypatch.setattr("aws2gcp.utils.subprocess.check_tool_available", lambda tool: True)

        result = runner.invoke(main, ["check"])
        assert result.exit_code == 0, result.output

    def test_tools_missing(self, runner, monkeypatch):
        from aws2gcp.cli import main

        monkeypatch.delenv("GCP_PROJECT")
        monkeypatch.setattr("aws2gcp.utils.subprocess.check_tool_available", lambda tool: False)

        result = runner.invoke(main, ["check"])
        assert result.exit_code == 1

    def test_missing_service_account(self, runner, monkeypatch, tmp_path):
        from aws2gcp.cli import main

        monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", str(tmp_path / "absent.json"))
        monkeypatch.setattr("aws2gcp.utils.subprocess.check_tool_available", lambda tool: True)

        result = runner.invoke(main, ["check"])
        assert result.exit_code == 1
        assert "service account" in result.output
