"""
Configuration management for the Temporal Stack Deployer.

Handles:
- Loading the flat KEY=VALUE environment file
- Database credential validation
- Optional DigitalOcean Spaces credentials
- Compose file introspection (declared volumes, server image)
- Backup retention settings
"""

import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Any, Mapping
from enum import Enum

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)


DEFAULT_DEPLOY_DIR = Path("/opt/temporal")
ENV_FILE_NAME = ".env.production"
COMPOSE_FILE_NAME = "docker-compose.yml"

DEFAULT_RETENTION_DAYS = 7
DEFAULT_SPACES_REGION = "nyc3"
DEFAULT_VOLUMES = ["temporal-data", "elasticsearch-data"]
DEFAULT_SERVER_IMAGE = "temporalio/server:latest"

# Keys the CLI lets the process environment override (cron jobs set these)
OVERRIDABLE_KEYS = (
    "BACKUP_RETENTION_DAYS",
    "DO_SPACES_KEY",
    "DO_SPACES_SECRET",
    "DO_SPACES_BUCKET",
    "DO_SPACES_REGION",
)


class ErrorKind(Enum):
    """Classification of fatal errors."""
    MISSING_ENV_FILE = "missing_env_file"
    MISSING_DB_CREDENTIALS = "missing_db_credentials"
    DB_UNREACHABLE = "db_unreachable"
    RUNTIME = "runtime"


class ConfigError(Exception):
    """Raised when required configuration is missing or unusable."""

    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind


@dataclass
class DatabaseConfig:
    """Connection settings for the external PostgreSQL database."""
    host: str = ""
    port: int = 5432
    user: str = ""
    password: str = ""
    database: str = "defaultdb"

    @property
    def missing_fields(self) -> List[str]:
        return [
            name for name, value in (
                ("POSTGRES_HOST", self.host),
                ("POSTGRES_USER", self.user),
                ("POSTGRES_PASSWORD", self.password),
            )
            if not value
        ]


@dataclass
class SpacesConfig:
    """DigitalOcean Spaces (S3-compatible) credentials."""
    access_key: str
    secret_key: str
    bucket: str
    region: str = DEFAULT_SPACES_REGION
    prefix: str = "temporal-backups"

    @property
    def host_base(self) -> str:
        return f"{self.region}.digitaloceanspaces.com"

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.host_base}"

    @property
    def remote_location(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}/"


@dataclass
class ElasticsearchConfig:
    """Where the search index lives and how it is snapshotted."""
    url: str = "http://localhost:9200"
    container: str = "temporal-elasticsearch"
    internal_url: str = "http://temporal-elasticsearch:9200"
    repository: str = "backup"
    snapshot_path: str = "/usr/share/elasticsearch/backup"
    dump_image: str = "elasticdump/elasticsearch-dump:latest"
    timeout_seconds: int = 600


@dataclass
class StackConfig:
    """Validated configuration shared by the deployer and the backup manager."""

    # Deployment settings
    project_name: str = "temporal"
    primary_service: str = "temporal"
    primary_container: str = "temporal-server"
    network: str = "temporal-network"
    domain: str = ""
    encryption_key: str = ""

    # Directory paths
    deploy_dir: Path = DEFAULT_DEPLOY_DIR
    env_file: Optional[Path] = None
    backup_dir: Optional[Path] = None

    # External collaborators
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    spaces: Optional[SpacesConfig] = None
    elasticsearch: ElasticsearchConfig = field(default_factory=ElasticsearchConfig)

    # Rollout tuning
    max_attempts: int = 30
    poll_interval: float = 2.0
    settle_seconds: float = 10.0
    health_check_timeout: float = 5.0
    grpc_port: int = 7233
    ui_port: int = 8080
    db_probe_image: str = "postgres:16"
    volume_helper_image: str = "alpine"

    # Backup settings
    retention_days: int = DEFAULT_RETENTION_DAYS

    def __post_init__(self):
        # Compose runs from deploy_dir and docker bind mounts need absolute host paths
        self.deploy_dir = Path(self.deploy_dir).resolve()
        self.env_file = Path(self.env_file).resolve() if self.env_file else self.deploy_dir / ENV_FILE_NAME
        self.backup_dir = Path(self.backup_dir).resolve() if self.backup_dir else self.deploy_dir / "backups"

    @property
    def compose_file(self) -> Path:
        return self.deploy_dir / COMPOSE_FILE_NAME


    @property
    def ui_url(self) -> str:
        return f"http://localhost:{self.ui_port}"

    def require_database(self):
        """Fail fast when the database host or credentials are missing."""
        missing = self.database.missing_fields
        if missing:
            raise ConfigError(
                f"Database configuration missing in {self.env_file}: {', '.join(missing)}",
                ErrorKind.MISSING_DB_CREDENTIALS
            )

    def validate(self) -> List[str]:
        """Validate non-fatal settings and return a list of issues."""
        issues = []
        if not self.domain:
            issues.append("DOMAIN is not set; access points will not be reported")
        if not self.encryption_key:
            issues.append("TEMPORAL_ENCRYPTION_KEY is not set")
        if self.retention_days < 1:
            issues.append(f"Retention of {self.retention_days} days deletes every backup")
        return issues

    def _read_compose(self) -> Dict[str, Any]:
        if not self.compose_file.exists():
            return {}
        try:
            with open(self.compose_file) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read {self.compose_file}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def declared_volumes(self) -> List[str]:
        """Named volumes declared by the compose file."""
        volumes = self._read_compose().get("volumes") or {}
        if isinstance(volumes, dict) and volumes:
            return list(volumes.keys())
        return list(DEFAULT_VOLUMES)

    def volume_name(self, volume: str) -> str:
        """Runtime name of a compose volume (project-prefixed)."""
        return f"{self.project_name}_{volume}"

    def server_image(self) -> str:
        """Image of the primary service as declared in the compose file."""
        services = self._read_compose().get("services") or {}
        service = services.get(self.primary_service) if isinstance(services, dict) else None
        if isinstance(service, dict) and service.get("image"):
            return str(service["image"])
        return DEFAULT_SERVER_IMAGE

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary without secrets."""
        return {
            "project_name": self.project_name,
            "deploy_dir": str(self.deploy_dir),
            "env_file": str(self.env_file),
            "backup_dir": str(self.backup_dir),
            "domain": self.domain,
            "database_host": self.database.host,
            "database_port": self.database.port,
            "remote_storage": self.spaces.remote_location if self.spaces else None,
            "retention_days": self.retention_days,
        }

    @classmethod
    def from_values(
        cls,
        values: Mapping[str, Optional[str]],
        deploy_dir: Path = DEFAULT_DEPLOY_DIR,
        env_file: Optional[Path] = None
    ) -> "StackConfig":
        """Build configuration from already-parsed KEY=VALUE pairs."""
        def get(key: str, default: str = "") -> str:
            value = values.get(key)
            return value.strip() if value else default

        database = DatabaseConfig(
            host=get("POSTGRES_HOST"),
            port=_parse_int(get("DB_PORT") or get("POSTGRES_PORT"), 5432, "DB_PORT"),
            user=get("POSTGRES_USER"),
            password=get("POSTGRES_PASSWORD"),
            database=get("POSTGRES_DB", "defaultdb"),
        )

        spaces = None
        key, secret, bucket = get("DO_SPACES_KEY"), get("DO_SPACES_SECRET"), get("DO_SPACES_BUCKET")
        if key and secret and bucket:
            spaces = SpacesConfig(
                access_key=key,
                secret_key=secret,
                bucket=bucket,
                region=get("DO_SPACES_REGION", DEFAULT_SPACES_REGION),
            )
        elif key or secret or bucket:
            logger.warning("Incomplete DO_SPACES_* credentials; remote storage disabled")

        retention = _parse_int(get("BACKUP_RETENTION_DAYS"), DEFAULT_RETENTION_DAYS, "BACKUP_RETENTION_DAYS")
        if retention < 1:
            logger.warning(f"BACKUP_RETENTION_DAYS={retention} must be at least 1; using {DEFAULT_RETENTION_DAYS}")
            retention = DEFAULT_RETENTION_DAYS

        return cls(
            deploy_dir=deploy_dir,
            env_file=env_file,
            domain=get("DOMAIN"),
            encryption_key=get("TEMPORAL_ENCRYPTION_KEY"),
            database=database,
            spaces=spaces,
            retention_days=retention,
        )

    @classmethod
    def load(
        cls,
        env_file: Optional[Path] = None,
        deploy_dir: Path = DEFAULT_DEPLOY_DIR,
        overrides: Optional[Mapping[str, str]] = None,
        require_file: bool = True
    ) -> "StackConfig":
        """Load configuration from the environment file."""
        deploy_dir = Path(deploy_dir)
        env_file = Path(env_file) if env_file else deploy_dir / ENV_FILE_NAME

        values: Dict[str, Optional[str]] = {}
        if env_file.is_file():
            logger.info(f"Loading environment variables from {env_file}")
            values.update(dotenv_values(env_file))
        elif require_file:
            raise ConfigError(f"{env_file} file not found!", ErrorKind.MISSING_ENV_FILE)
        else:
            logger.warning(f"{env_file} not found; using defaults and process environment")

        if overrides:
            for key in OVERRIDABLE_KEYS:
                if overrides.get(key):
                    values[key] = overrides[key]

        return cls.from_values(values, deploy_dir=deploy_dir, env_file=env_file)


def _parse_int(raw: str, default: int, key: str) -> int:
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r}; using {default}")
        return default
