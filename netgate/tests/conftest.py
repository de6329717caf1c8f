"""Shared fixtures: a fast gate config rooted in tmp_path, plus fakes."""

import pytest

from netgate.config import GateConfig

from fakes import FakeCluster, FakeRunner


@pytest.fixture
def gate_config(tmp_path):
    return GateConfig(
        namespace="default",
        timeout=1,
        max_attempts=3,
        inter_attempt_delay=0,
        diagnostics_dir=tmp_path / "diagnostics",
        archive_dir=tmp_path / "archives",
        backup_dir=tmp_path / "backups",
        poll_interval=0.01,
        workload_retry_backoff=0,
        max_workers=4,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def cluster(runner):
    return FakeCluster(runner)
