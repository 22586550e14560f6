"""
Container runtime interface for the Temporal stack.

Handles:
- Image pulls and stack up/down
- Scaling a single service
- Running-service queries and status tables
- Commands inside running containers
- Short-lived helper containers with volume mounts
"""

import re
import json
import subprocess
import logging
from pathlib import Path
from typing import Optional, Dict, List, Sequence, Tuple, Callable, Union

from .config import StackConfig

logger = logging.getLogger(__name__)


# (source, target, read_only)
VolumeMount = Tuple[Union[str, Path], str, bool]


class ComposeRuntime:
    """
    Thin wrapper around ``docker`` and ``docker compose``.

    Every compose call is pinned to the stack's env file and compose file and
    runs from the deploy directory. Mutating calls return ``True`` on success
    and log the runtime's stderr otherwise; callers decide whether a failure
    is fatal.
    """

    def __init__(
        self,
        config: StackConfig,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run
    ):
        self.config = config
        self._runner = runner

    def _run(self, cmd: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        logger.debug(f"$ {' '.join(cmd)}")
        cwd = self.config.deploy_dir if self.config.deploy_dir.is_dir() else None
        try:
            return self._runner(cmd, capture_output=True, text=True, cwd=cwd, timeout=timeout)
        except FileNotFoundError as e:
            return subprocess.CompletedProcess(cmd, 127, "", str(e))
        except subprocess.TimeoutExpired as e:
            return subprocess.CompletedProcess(cmd, 124, "", f"timed out after {e.timeout}s")

    def _compose(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """Run a docker compose command."""
        cmd = [
            "docker", "compose",
            "--env-file", str(self.config.env_file),
            "-f", str(self.config.compose_file),
        ]
        cmd.extend(args)
        return self._run(cmd, timeout=timeout)

    def _docker(self, *args: str, timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        return self._run(["docker", *args], timeout=timeout)

    @staticmethod
    def _succeeded(result: subprocess.CompletedProcess, action: str) -> bool:
        if result.returncode == 0:
            return True
        detail = (result.stderr or result.stdout or "").strip()
        logger.error(f"Failed to {action}: {detail or f'exit status {result.returncode}'}")
        return False

    # Stack lifecycle

    def pull(self) -> bool:
        """Pull the latest images for every declared service."""
        return self._succeeded(self._compose("pull"), "pull images")

    def up(
        self,
        *services: str,
        no_deps: bool = False,
        scale: Optional[Dict[str, int]] = None,
        remove_orphans: bool = False
    ) -> bool:
        """Bring services (or the whole stack) up in detached mode."""
        args = ["up", "-d"]
        if no_deps:
            args.append("--no-deps")
        if remove_orphans:
            args.append("--remove-orphans")
        for name, replicas in (scale or {}).items():
            args.extend(["--scale", f"{name}={replicas}"])
        args.extend(services)
        target = ", ".join(services) if services else "stack"
        return self._succeeded(self._compose(*args), f"start {target}")

    def down(self) -> bool:
        """Stop and remove every container of the stack."""
        return self._succeeded(self._compose("down"), "stop stack")

    def scale(self, service: str, replicas: int) -> bool:
        """Run ``replicas`` instances of one service without touching its dependencies."""
        return self.up(service, no_deps=True, scale={service: replicas})

    def reconcile(self, service: str) -> bool:
        """Scale a service back to a single instance and drop orphaned containers."""
        return self.up(service, no_deps=True, scale={service: 1}, remove_orphans=True)

    # Status

    def running_services(self) -> List[str]:
        """Names of services with at least one running container."""
        result = self._compose("ps", "--services", "--filter", "status=running")
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_running(self, service: str) -> bool:
        return service in self.running_services()

    def ps(self) -> str:
        """Human-readable status table of the stack."""
        result = self._compose("ps")
        return result.stdout if result.returncode == 0 else ""

    def container_is_up(self, container: str) -> bool:
        """Relaxed check: the container appears in ``ps`` with an ``Up`` status."""
        pattern = re.compile(rf"{re.escape(container)}.*\bUp\b")
        return any(pattern.search(line) for line in self.ps().splitlines())

    # Commands

    def exec(self, service: str, *command: str, timeout: Optional[float] = 30) -> subprocess.CompletedProcess:
        """Execute a command in a running service container (no TTY)."""
        return self._compose("exec", "-T", service, *command, timeout=timeout)

    def run_container(
        self,
        image: str,
        command: Sequence[str],
        volumes: Sequence[VolumeMount] = (),
        network: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None
    ) -> subprocess.CompletedProcess:
        """Run a short-lived container that is removed on exit."""
        args = ["run", "--rm"]
        if network:
            args.extend(["--network", network])
        for key, value in (environment or {}).items():
            args.extend(["-e", f"{key}={value}"])
        for source, target, read_only in volumes:
            mount = f"{source}:{target}"
            if read_only:
                mount += ":ro"
            args.extend(["-v", mount])
        args.append(image)
        args.extend(command)
        return self._docker(*args, timeout=timeout)

    def copy_from_container(self, container: str, source: str, destination: Path) -> bool:
        """Copy a path out of a container onto the host."""
        result = self._docker("cp", f"{container}:{source}", str(destination))
        return self._succeeded(result, f"copy {source} from {container}")

    def image_digest(self, image: str) -> str:
        """Repository digests of a local image, or ``unknown``."""
        result = self._docker("image", "inspect", image, "--format", "{{json .RepoDigests}}")
        if result.returncode != 0:
            return "unknown"
        try:
            digests = json.loads(result.stdout.strip() or "[]")
        except json.JSONDecodeError:
            return result.stdout.strip() or "unknown"
        return ", ".join(digests) if digests else "unknown"

    def image_prune(self) -> bool:
        """Remove dangling images."""
        return self._docker("image", "prune", "-f").returncode == 0
