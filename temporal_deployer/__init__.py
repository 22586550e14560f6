"""
Temporal Stack Deployer
=======================

Deployment and backup tooling for a single-host, docker-compose based
Temporal workflow-orchestration stack.

Features:
- Fresh installs and zero-downtime rolling updates
- Bounded health polling with automatic full-stack rollback
- Elasticsearch, configuration and volume backups
- Upload to DigitalOcean Spaces
- Retention on local disk and remote storage

License: MIT
"""

__version__ = "1.0.0"

from .config import StackConfig, DatabaseConfig, SpacesConfig, ConfigError, ErrorKind
from .core import TemporalDeployer, DeploymentError, DeploymentMode, RolloutPhase
from .services import ComposeRuntime
from .health import HealthChecker, HealthOutcome
from .backup import BackupManager, BackupError, SnapshotOutcome

__all__ = [
    "StackConfig",
    "DatabaseConfig",
    "SpacesConfig",
    "ConfigError",
    "ErrorKind",
    "TemporalDeployer",
    "DeploymentError",
    "DeploymentMode",
    "RolloutPhase",
    "ComposeRuntime",
    "HealthChecker",
    "HealthOutcome",
    "BackupManager",
    "BackupError",
    "SnapshotOutcome",
]
