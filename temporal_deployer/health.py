"""
Health verification for the Temporal stack.

Handles:
- Single in-container health checks
- The bounded, fixed-interval health-poll loop gating promotion
- Best-effort network probes of the gRPC and web UI endpoints
"""

import time
import socket
import logging
from typing import Optional, Dict, Any, Callable
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime

import requests

from .config import StackConfig
from .services import ComposeRuntime

logger = logging.getLogger(__name__)


# Exit codes meaning the health-check entry point could not be executed at all
NOT_EXECUTABLE_CODES = (126, 127)


class HealthStatus(Enum):
    """Health status levels."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class HealthOutcome(Enum):
    """Terminal classification of a health-poll loop."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


@dataclass
class HealthCheckResult:
    """Result of a single health check."""
    service: str
    status: HealthStatus
    response_time_ms: Optional[float] = None
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass
class PollResult:
    """Outcome of a health-poll loop."""
    outcome: HealthOutcome
    attempts: int
    waited_seconds: float = 0.0
    last_result: Optional[HealthCheckResult] = None


class HealthChecker:
    """
    Health checks used by the deployment controller.

    The poll loop blocks for at most ``max_attempts * interval`` seconds;
    ``sleep`` is injectable so tests can drive it without waiting.
    """

    def __init__(
        self,
        config: StackConfig,
        runtime: ComposeRuntime,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.runtime = runtime
        self._sleep = sleep

    def check_service(self, service: str) -> HealthCheckResult:
        """Check that a service is running and that its own health check passes."""
        start_time = time.time()

        if not self.runtime.is_running(service):
            return HealthCheckResult(
                service=service,
                status=HealthStatus.UNHEALTHY,
                message="Service is not running",
                response_time_ms=(time.time() - start_time) * 1000
            )

        result = self.runtime.exec(
            service, "temporal", "health-check", timeout=self.config.health_check_timeout
        )
        elapsed_ms = (time.time() - start_time) * 1000

        if result.returncode == 0:
            return HealthCheckResult(
                service=service,
                status=HealthStatus.HEALTHY,
                message="Health check passed",
                response_time_ms=elapsed_ms,
                details={"output": (result.stdout or "")[:200]}
            )

        status = HealthStatus.UNKNOWN if result.returncode in NOT_EXECUTABLE_CODES else HealthStatus.UNHEALTHY
        return HealthCheckResult(
            service=service,
            status=status,
            message=f"Health check failed: {(result.stderr or '').strip()[:200]}",
            response_time_ms=elapsed_ms,
            details={"returncode": result.returncode}
        )

    def poll(
        self,
        service: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None
    ) -> PollResult:
        """
        Poll a service until it is healthy or the attempts run out.

        The first healthy check ends the loop. A health-check entry point that
        cannot be executed ends it as ``UNHEALTHY``. Otherwise the loop sleeps
        ``interval`` after every failed attempt and reports ``TIMED_OUT`` once
        ``max_attempts`` checks have failed.
        """
        max_attempts = self.config.max_attempts if max_attempts is None else max_attempts
        interval = self.config.poll_interval if interval is None else interval

        waited = 0.0
        last_result = None
        for attempt in range(1, max_attempts + 1):
            last_result = self.check_service(service)

            if last_result.healthy:
                logger.info(f"{service} healthy after {attempt} attempt(s)")
                return PollResult(HealthOutcome.HEALTHY, attempt, waited, last_result)

            if last_result.status == HealthStatus.UNKNOWN:
                logger.error(f"{service} health check cannot run: {last_result.message}")
                return PollResult(HealthOutcome.UNHEALTHY, attempt, waited, last_result)

            logger.debug(f"{service} not healthy yet ({attempt}/{max_attempts}): {last_result.message}")
            self._sleep(interval)
            waited += interval

        logger.warning(f"{service} not healthy after {max_attempts} attempts ({waited:.0f}s)")
        return PollResult(HealthOutcome.TIMED_OUT, max_attempts, waited, last_result)

    def probe_endpoint(self, name: str, url: str, timeout: float = 5) -> HealthCheckResult:
        """Perform an HTTP reachability check."""
        start_time = time.time()
        try:
            response = requests.get(url, timeout=timeout)
        except requests.Timeout:
            return HealthCheckResult(
                service=name,
                status=HealthStatus.UNHEALTHY,
                message="Request timed out"
            )
        except requests.ConnectionError:
            return HealthCheckResult(
                service=name,
                status=HealthStatus.UNHEALTHY,
                message="Connection refused"
            )
        except requests.RequestException as e:
            return HealthCheckResult(
                service=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Request failed: {e}"
            )

        elapsed_ms = (time.time() - start_time) * 1000
        status = HealthStatus.HEALTHY if response.status_code < 400 else HealthStatus.UNHEALTHY
        return HealthCheckResult(
            service=name,
            status=status,
            message=f"HTTP {response.status_code}",
            response_time_ms=elapsed_ms,
            details={"status_code": response.status_code, "url": url}
        )

    def probe_port(self, name: str, host: str, port: int, timeout: float = 5) -> HealthCheckResult:
        """Perform a TCP reachability check (gRPC does not answer plain HTTP)."""
        start_time = time.time()
        try:
            with socket.create_connection((host, port), timeout=timeout):
                pass
        except socket.timeout:
            return HealthCheckResult(
                service=name,
                status=HealthStatus.UNHEALTHY,
                message="Connection timed out"
            )
        except OSError as e:
            return HealthCheckResult(
                service=name,
                status=HealthStatus.UNHEALTHY,
                message=f"Connection refused: {e}"
            )

        return HealthCheckResult(
            service=name,
            status=HealthStatus.HEALTHY,
            message=f"Port {port} open",
            response_time_ms=(time.time() - start_time) * 1000,
            details={"host": host, "port": port}
        )

    def verify_endpoints(self) -> Dict[str, HealthCheckResult]:
        """Probe the gRPC endpoint and the web UI."""
        return {
            "grpc": self.probe_port("Temporal gRPC endpoint", "localhost", self.config.grpc_port),
            "ui": self.probe_endpoint("Temporal UI", self.config.ui_url),
        }
