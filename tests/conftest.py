from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import Mock

import pytest

from temporal_deployer.config import StackConfig
from temporal_deployer.services import ComposeRuntime

ENV_CONTENT = """\
# Temporal production settings
POSTGRES_HOST=db.example.internal
POSTGRES_USER=temporal
POSTGRES_PASSWORD=s3cret
DB_PORT=25060
DOMAIN=temporal.example.com
TEMPORAL_ENCRYPTION_KEY=abc123
"""

COMPOSE_CONTENT = """\
services:
  temporal:
    image: temporalio/server:1.24.2
  temporal-elasticsearch:
    image: elasticsearch:7.17.27
volumes:
  temporal-data: {}
  elasticsearch-data: {}
"""


@pytest.fixture
def deploy_dir(tmp_path: Path) -> Path:
    root = (tmp_path / "temporal").resolve()
    root.mkdir()
    (root / ".env.production").write_text(ENV_CONTENT)
    (root / "docker-compose.yml").write_text(COMPOSE_CONTENT)
    return root


@pytest.fixture
def config(deploy_dir: Path) -> StackConfig:
    loaded = StackConfig.load(deploy_dir=deploy_dir)
    loaded.settle_seconds = 0
    return loaded


@pytest.fixture
def runtime() -> Mock:
    fake = Mock(spec=ComposeRuntime)
    fake.pull.return_value = True
    fake.up.return_value = True
    fake.down.return_value = True
    fake.scale.return_value = True
    fake.reconcile.return_value = True
    fake.image_prune.return_value = True
    fake.is_running.return_value = False
    fake.running_services.return_value = []
    fake.container_is_up.return_value = True
    fake.ps.return_value = "NAME  STATUS\ntemporal-server  Up 5 seconds\n"
    fake.copy_from_container.return_value = True
    fake.image_digest.return_value = "temporalio/server@sha256:abc"
    fake.run_container.return_value = subprocess.CompletedProcess(args=["docker"], returncode=0, stdout="", stderr="")
    fake.exec.return_value = subprocess.CompletedProcess(args=["docker"], returncode=0, stdout="", stderr="")
    return fake
