"""Shared fixtures: a fast config, fake collaborators and a checkpoint store."""

import pytest

from aws2gcp.tests.fakes import INSTANCE_ID, ROOT_VOLUME, FakeDestination, FakeSource


@pytest.fixture
def config(tmp_path):
    from aws2gcp.config import AppConfig

    key_file = tmp_path / "service-account.json"
    key_file.write_text("{}")
    return AppConfig(
        gcp={"project_id": "test-project", "service_account_file": key_file},
        staging={"work_dir": tmp_path / "work"},
        migration={
            "retry_count": 2,
            "retry_delay_seconds": 0,
            "export_poll_interval": 0,
            "image_poll_interval": 0,
            "import_poll_interval": 0,
        },
    )


@pytest.fixture
def plan():
    from aws2gcp.config import MigrationPlan

    return MigrationPlan(instance_id=INSTANCE_ID)


@pytest.fixture
def source():
    return FakeSource(instances={INSTANCE_ID: ROOT_VOLUME}, export_pending_polls=2)


@pytest.fixture
def destination():
    return FakeDestination()


@pytest.fixture
def store(config):
    from aws2gcp.pipeline.state import CheckpointStore

    return CheckpointStore(config.staging.state_dir)


@pytest.fixture
def pipeline(config, source, destination, store):
    from aws2gcp.pipeline.migration import MigrationPipeline

    return MigrationPipeline(config, source, destination, store=store)
