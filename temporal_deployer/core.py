"""
Core deployment functionality for the Temporal stack.

Handles:
- Pre-flight validation (configuration, database connectivity)
- Fresh installs
- Rolling updates with health verification
- Promotion or full-stack rollback
- Post-deploy endpoint verification and image cleanup
"""

import time
import shutil
import logging
from pathlib import Path
from typing import Optional, List, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .config import StackConfig, ConfigError, ErrorKind
from .services import ComposeRuntime
from .health import HealthChecker, HealthOutcome

logger = logging.getLogger(__name__)


class DeploymentMode(Enum):
    """How the stack is converged."""
    FRESH_INSTALL = "fresh_install"
    ROLLING_UPDATE = "rolling_update"


class RolloutPhase(Enum):
    """States of the rolling-update state machine."""
    IDLE = "idle"
    SCALING = "scaling"
    POLLING = "polling"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"


TERMINAL_PHASES = (RolloutPhase.PROMOTED, RolloutPhase.ROLLED_BACK)


class DeploymentError(Exception):
    """A fatal, classified deployment failure."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.RUNTIME):
        super().__init__(message)
        self.kind = kind


@dataclass
class DeploymentState:
    """State of one deploy invocation. Never persisted."""
    mode: Optional[DeploymentMode] = None
    phase: RolloutPhase = RolloutPhase.IDLE
    health_attempts: int = 0
    outcome: Optional[HealthOutcome] = None
    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)


@dataclass
class DeploymentResult:
    """Result of a deployment operation."""
    success: bool
    message: str
    mode: Optional[DeploymentMode] = None
    phase: Optional[RolloutPhase] = None
    outcome: Optional[HealthOutcome] = None
    error_kind: Optional[ErrorKind] = None
    health_attempts: int = 0
    config_backup: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class TemporalDeployer:
    """
    Deployment controller for the Temporal stack.

    Converges the host to the latest pulled images. A running stack is
    updated by running the new server next to the old one and promoting it
    only after it reports healthy; otherwise the whole stack is restarted.
    """

    def __init__(
        self,
        config: StackConfig,
        runtime: Optional[ComposeRuntime] = None,
        health: Optional[HealthChecker] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.runtime = runtime or ComposeRuntime(config)
        self._sleep = sleep
        self.health = health or HealthChecker(config, self.runtime, sleep=sleep)

    # Pre-flight

    def preflight(self):
        """Validate configuration and database connectivity. Mutates nothing."""
        try:
            self.config.require_database()
        except ConfigError as e:
            raise DeploymentError(str(e), e.kind) from e

        for issue in self.config.validate():
            logger.warning(f"Configuration: {issue}")

        db = self.config.database
        logger.info("Testing database connection...")
        result = self.runtime.run_container(
            self.config.db_probe_image,
            ["psql", "-h", db.host, "-p", str(db.port), "-U", db.user, "-d", db.database, "-c", "SELECT 1"],
            environment={"PGPASSWORD": db.password},
            timeout=120
        )
        if result.returncode != 0:
            raise DeploymentError(
                "Failed to connect to database. Check your credentials.",
                ErrorKind.DB_UNREACHABLE
            )

    def snapshot_configuration(self) -> Optional[Path]:
        """Copy the current compose files, env files and dynamic config aside."""
        base = self.config.deploy_dir
        if not self.config.compose_file.exists():
            return None

        target = self.config.backup_dir / f"backup-{datetime.now():%Y%m%d-%H%M%S}"
        logger.info("Backing up current configuration...")
        try:
            target.mkdir(parents=True, exist_ok=True)
            for path in sorted(base.glob("*.yml")) + sorted(base.glob(".env*")):
                if path.is_file():
                    shutil.copy2(path, target / path.name)
            dynamic = base / "dynamicconfig"
            if dynamic.is_dir():
                shutil.copytree(dynamic, target / "dynamicconfig", dirs_exist_ok=True)
        except OSError as e:
            logger.warning(f"Configuration backup incomplete: {e}")
        return target

    def detect_mode(self) -> DeploymentMode:
        """Rolling update when the primary service is already running."""
        if self.runtime.is_running(self.config.primary_service):
            return DeploymentMode.ROLLING_UPDATE
        return DeploymentMode.FRESH_INSTALL

    # Fresh install

    def fresh_install(self, state: DeploymentState):
        """Start the full stack and perform a relaxed readiness check."""
        logger.info("Starting Temporal services...")
        if not self.runtime.up():
            raise DeploymentError("Failed to start the stack")

        logger.info("Waiting for services to be ready...")
        self._sleep(self.config.settle_seconds)

        if self.runtime.container_is_up(self.config.primary_container):
            logger.info("Temporal server is running")
        else:
            state.warn("Temporal server may still be starting up")

    # Rolling update state machine

    def advance(self, state: DeploymentState) -> RolloutPhase:
        """Perform exactly one transition of the rolling-update state machine."""
        service = self.config.primary_service

        if state.phase == RolloutPhase.IDLE:
            logger.info("Performing rolling update...")
            if not self.runtime.scale(service, 2):
                raise DeploymentError(f"Failed to start a second {service} instance")
            state.phase = RolloutPhase.SCALING

        elif state.phase == RolloutPhase.SCALING:
            self._sleep(self.config.settle_seconds)
            poll = self.health.poll(service)
            state.health_attempts = poll.attempts
            state.outcome = poll.outcome
            state.phase = RolloutPhase.POLLING

        elif state.phase == RolloutPhase.POLLING:
            if state.outcome == HealthOutcome.HEALTHY:
                logger.info(f"New {service} container is healthy")
                if not self.runtime.reconcile(service):
                    raise DeploymentError(f"Failed to scale {service} back to one instance")
                state.phase = RolloutPhase.PROMOTED
            else:
                self.rollback(state)
                state.phase = RolloutPhase.ROLLED_BACK

        else:
            raise ValueError(f"No transition from terminal phase {state.phase.value}")

        return state.phase

    def rollback(self, state: DeploymentState):
        """Restart the whole stack from the images it was started with."""
        reason = state.outcome.value if state.outcome else "unknown"
        state.warn(f"Health check failed ({reason} after {state.health_attempts} attempts), rolling back...")
        stopped = self.runtime.down()
        started = self.runtime.up()
        if not (stopped and started):
            raise DeploymentError("Rollback failed; the stack may be down")

    def rolling_update(self, state: DeploymentState) -> RolloutPhase:
        """Drive the state machine until promotion or rollback."""
        while state.phase not in TERMINAL_PHASES:
            self.advance(state)
        return state.phase

    # Post-deploy

    def verify_endpoints(self, state: DeploymentState):
        logger.info("Verifying Temporal accessibility...")
        for result in self.health.verify_endpoints().values():
            if result.healthy:
                logger.info(f"{result.service} is accessible")
            else:
                state.warn(f"Could not verify {result.service}: {result.message}")

    def prune_images(self):
        logger.info("Cleaning up old Docker images...")
        if not self.runtime.image_prune():
            logger.debug("Image prune failed; ignoring")

    def deploy(self) -> DeploymentResult:
        """
        Deploy or update the stack.

        Returns:
            DeploymentResult. ``success`` is False only for fatal errors;
            a completed rollback is a success with a warning.
        """
        start_time = time.time()
        state = DeploymentState()
        result = DeploymentResult(success=True, message="")

        try:
            logger.info("Starting Temporal deployment...")
            self.preflight()

            logger.info("Pulling latest Docker images...")
            if not self.runtime.pull():
                raise DeploymentError("Failed to pull images")

            result.config_backup = self.snapshot_configuration()

            state.mode = self.detect_mode()
            if state.mode == DeploymentMode.ROLLING_UPDATE:
                self.rolling_update(state)
            else:
                self.fresh_install(state)

            logger.info(f"Service status:\n{self.runtime.ps()}")
            self.verify_endpoints(state)
            self.prune_images()

            if state.phase == RolloutPhase.ROLLED_BACK:
                result.message = "Deployment rolled back to the previous stack"
            else:
                result.message = "Deployment completed successfully!"

        except DeploymentError as e:
            result.success = False
            result.error_kind = e.kind
            result.message = str(e)
            logger.error(result.message)

        result.mode = state.mode
        result.phase = state.phase if state.mode == DeploymentMode.ROLLING_UPDATE else None
        result.outcome = state.outcome
        result.health_attempts = state.health_attempts
        result.warnings = list(state.warnings)
        result.duration_seconds = time.time() - start_time
        return result
