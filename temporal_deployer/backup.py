"""
Backup and retention for the Temporal stack.

Handles:
- Elasticsearch snapshots (with an elasticdump fallback)
- Configuration backup
- Per-volume archives
- Backup manifests and compression
- Upload to DigitalOcean Spaces
- Retention on local disk and remote storage
"""

import json
import shutil
import tarfile
import logging
from pathlib import Path
from typing import Optional, Dict, List, Any, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import requests

from .config import StackConfig
from .services import ComposeRuntime
from .storage import SpacesStorage, StorageError

logger = logging.getLogger(__name__)


BACKUP_PREFIX = "temporal-backup-"
ARCHIVE_SUFFIX = ".tar.gz"
MANIFEST_NAME = "manifest.json"

COMPONENT_ELASTICSEARCH = "elasticsearch"
COMPONENT_CONFIGURATION = "configuration"
COMPONENT_VOLUMES = "volumes"
ALL_COMPONENTS = (COMPONENT_ELASTICSEARCH, COMPONENT_CONFIGURATION, COMPONENT_VOLUMES)

CONFIG_PATTERNS = ("*.yml", ".env*")
CONFIG_DIRECTORIES = ("dynamicconfig", "nginx")


class BackupError(Exception):
    """A fatal backup failure."""


class SnapshotOutcome(Enum):
    """How the search index was captured."""
    SNAPSHOT = "snapshot"
    FALLBACK = "fallback"
    SKIPPED = "skipped"


@dataclass
class VolumeArchive:
    """Result of archiving one volume."""
    volume: str
    path: Optional[Path] = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.path is not None


@dataclass
class BackupRecord:
    """Information about one backup run."""
    name: str
    timestamp: datetime
    components: List[str] = field(default_factory=list)
    size_bytes: int = 0
    local_path: Optional[Path] = None
    remote_key: Optional[str] = None
    snapshot_outcome: SnapshotOutcome = SnapshotOutcome.SKIPPED
    volumes: List[VolumeArchive] = field(default_factory=list)
    configuration_files: List[str] = field(default_factory=list)
    image_digest: str = "unknown"
    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)

    @property
    def backup_type(self) -> str:
        return "full" if set(self.components) == set(ALL_COMPONENTS) else "partial"

    @property
    def size_human(self) -> str:
        return human_size(self.size_bytes)

    def to_manifest(self) -> Dict[str, Any]:
        local = self.timestamp.astimezone()
        return {
            "timestamp": local.strftime("%Y%m%d-%H%M%S"),
            "date": local.strftime("%a %b %d %H:%M:%S %Z %Y"),
            "temporal_version": self.image_digest,
            "backup_type": self.backup_type,
            "components": list(self.components),
            "elasticsearch_method": self.snapshot_outcome.value,
            "volumes": [v.volume for v in self.volumes if v.success],
            "configuration": list(self.configuration_files),
        }


@dataclass
class RetentionReport:
    """What a retention sweep deleted."""
    deleted_local: List[Path] = field(default_factory=list)
    deleted_remote: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def human_size(size_bytes: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


class BackupManager:
    """
    Manages backups for the Temporal stack.

    A run captures what it can: a missing index snapshot, a missing
    configuration file or a failed volume archive is recorded and the run
    goes on. Only failing to create the working directory, or failing to
    compress it, aborts a run.
    """

    def __init__(
        self,
        config: StackConfig,
        runtime: Optional[ComposeRuntime] = None,
        storage: Optional[SpacesStorage] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config
        self.backup_dir = config.backup_dir
        self.runtime = runtime or ComposeRuntime(config)
        if storage is None and config.spaces is not None:
            storage = SpacesStorage(config.spaces)
        self.storage = storage
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        now = self._clock()
        return now if now.tzinfo else now.astimezone()

    # Steps

    def create_working_dir(self, name: str) -> Path:
        workdir = self.backup_dir / name
        try:
            workdir.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise BackupError(f"Cannot create backup directory {workdir}: {e}") from e
        return workdir

    def _native_snapshot(self, workdir: Path, timestamp: str) -> bool:
        """Snapshot through the Elasticsearch snapshot API and copy it out."""
        es = self.config.elasticsearch
        repo_url = f"{es.url}/_snapshot/{es.repository}"
        try:
            response = requests.put(
                repo_url,
                json={"type": "fs", "settings": {"location": es.snapshot_path}},
                timeout=30
            )
            response.raise_for_status()

            response = requests.put(
                f"{repo_url}/snapshot_{timestamp}",
                params={"wait_for_completion": "true"},
                timeout=es.timeout_seconds
            )
            response.raise_for_status()
            state = response.json().get("snapshot", {}).get("state")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Elasticsearch snapshot failed: {e}")
            return False

        if state != "SUCCESS":
            logger.warning(f"Elasticsearch snapshot finished in state {state}")
            return False

        copied = self.runtime.copy_from_container(
            es.container, es.snapshot_path, workdir / COMPONENT_ELASTICSEARCH
        )
        self._delete_snapshot(repo_url, timestamp)
        return copied

    def _delete_snapshot(self, repo_url: str, timestamp: str):
        """Drop this run's snapshot so the repository only ever holds one."""
        try:
            response = requests.delete(
                f"{repo_url}/snapshot_{timestamp}",
                timeout=self.config.elasticsearch.timeout_seconds
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Could not delete Elasticsearch snapshot snapshot_{timestamp}: {e}")

    def _export_index(self, workdir: Path) -> bool:
        """Dump index data as JSON with elasticdump."""
        es = self.config.elasticsearch
        output = workdir / "elasticsearch-data.json"
        result = self.runtime.run_container(
            es.dump_image,
            [f"--input={es.internal_url}", "--output=/backup/elasticsearch-data.json", "--type=data"],
            volumes=[(workdir, "/backup", False)],
            network=self.config.network,
            timeout=es.timeout_seconds
        )
        if result.returncode == 0 and output.exists():
            return True
        logger.warning(f"elasticdump export failed: {(result.stderr or '').strip()[:200]}")
        output.unlink(missing_ok=True)
        return False

    def snapshot_search_index(self, workdir: Path, timestamp: str) -> SnapshotOutcome:
        """Capture the search index, falling back to a data export."""
        logger.info("Backing up Elasticsearch data...")
        if self._native_snapshot(workdir, timestamp):
            return SnapshotOutcome.SNAPSHOT

        shutil.rmtree(workdir / COMPONENT_ELASTICSEARCH, ignore_errors=True)
        logger.info("Using alternative Elasticsearch backup method...")
        if self._export_index(workdir):
            return SnapshotOutcome.FALLBACK
        return SnapshotOutcome.SKIPPED

    def copy_configuration(self, workdir: Path) -> List[str]:
        """Copy configuration artifacts that exist; skip the rest."""
        logger.info("Backing up configuration files...")
        base = self.config.deploy_dir
        copied = []

        for pattern in CONFIG_PATTERNS:
            for path in sorted(base.glob(pattern)):
                if not path.is_file():
                    continue
                try:
                    shutil.copy2(path, workdir / path.name)
                    copied.append(path.name)
                except OSError as e:
                    logger.debug(f"Skipping {path}: {e}")

        for name in CONFIG_DIRECTORIES:
            source = base / name
            if not source.is_dir():
                continue
            try:
                shutil.copytree(source, workdir / name)
                copied.append(f"{name}/")
            except (OSError, shutil.Error) as e:
                logger.debug(f"Skipping {source}: {e}")
                shutil.rmtree(workdir / name, ignore_errors=True)

        return copied

    def archive_volume(self, workdir: Path, volume: str) -> VolumeArchive:
        """Archive one volume through a helper container with a read-only mount."""
        filename = f"{volume}{ARCHIVE_SUFFIX}"
        result = self.runtime.run_container(
            self.config.volume_helper_image,
            ["tar", "czf", f"/backup/{filename}", "-C", "/data", "."],
            volumes=[
                (self.config.volume_name(volume), "/data", True),
                (workdir, "/backup", False),
            ]
        )
        archive = workdir / filename
        if result.returncode == 0 and archive.exists():
            return VolumeArchive(volume=volume, path=archive)

        archive.unlink(missing_ok=True)
        detail = (result.stderr or "").strip()[:200] or f"exit status {result.returncode}"
        return VolumeArchive(volume=volume, message=detail)

    def archive_volumes(self, workdir: Path) -> List[VolumeArchive]:
        """Archive every declared volume independently."""
        logger.info("Backing up Docker volumes...")
        return [self.archive_volume(workdir, volume) for volume in self.config.declared_volumes()]

    def write_manifest(self, workdir: Path, record: BackupRecord) -> Path:
        path = workdir / MANIFEST_NAME
        with open(path, "w") as f:
            json.dump(record.to_manifest(), f, indent=4)
        return path

    def compress(self, workdir: Path) -> Path:
        """Compress the working directory, then remove it."""
        logger.info("Compressing backup...")
        archive = workdir.with_name(workdir.name + ARCHIVE_SUFFIX)
        try:
            with tarfile.open(archive, "w:gz") as tar:
                tar.add(workdir, arcname=workdir.name)
        except (OSError, tarfile.TarError) as e:
            archive.unlink(missing_ok=True)
            raise BackupError(f"Compression failed, kept {workdir}: {e}") from e
        shutil.rmtree(workdir)
        return archive

    def upload(self, archive: Path) -> Optional[str]:
        """Upload the archive to Spaces. Failure leaves only the local copy."""
        if self.storage is None:
            return None
        logger.info("Uploading backup to DigitalOcean Spaces...")
        try:
            return self.storage.upload(archive)
        except StorageError as e:
            logger.warning(f"Failed to upload to Spaces: {e}")
            return None

    # Retention

    def _cutoff(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._now()) - timedelta(days=self.config.retention_days)

    def prune_local(self, now: Optional[datetime] = None, keep: Sequence[str] = ()) -> List[Path]:
        """Delete local archives strictly older than the retention window."""
        cutoff = self._cutoff(now).timestamp()
        deleted = []
        for archive in sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}")):
            try:
                if archive.name not in keep and archive.stat().st_mtime < cutoff:
                    archive.unlink()
                    deleted.append(archive)
                    logger.info(f"Deleted old backup: {archive.name}")
            except OSError as e:
                logger.warning(f"Could not remove {archive}: {e}")
        return deleted

    def prune_remote(self, now: Optional[datetime] = None, keep: Sequence[str] = ()) -> List[str]:
        """Delete remote objects whose modification time is strictly older than the window."""
        if self.storage is None:
            return []
        cutoff = self._cutoff(now).astimezone(timezone.utc)
        deleted = []
        for obj in self.storage.list_objects():
            if obj.last_modified >= cutoff or obj.key.rsplit("/", 1)[-1] in keep:
                continue
            try:
                self.storage.delete(obj.key)
            except StorageError as e:
                logger.warning(str(e))
                continue
            deleted.append(obj.key)
        return deleted

    def apply_retention(self, now: Optional[datetime] = None, keep: Sequence[str] = ()) -> RetentionReport:
        """Run the local and remote sweeps independently. Archives named in ``keep`` survive both."""
        logger.info("Cleaning up old backups...")
        now = now or self._now()
        report = RetentionReport()

        try:
            report.deleted_local = self.prune_local(now, keep)
        except OSError as e:
            report.errors.append(f"local: {e}")
            logger.warning(f"Local retention sweep failed: {e}")

        try:
            report.deleted_remote = self.prune_remote(now, keep)
        except StorageError as e:
            report.errors.append(f"remote: {e}")
            logger.warning(f"Remote retention sweep failed: {e}")

        return report

    def list_backups(self) -> List[Path]:
        """Local archives, newest first."""
        archives = [p for p in self.backup_dir.glob(f"{BACKUP_PREFIX}*{ARCHIVE_SUFFIX}") if p.is_file()]
        return sorted(archives, key=lambda p: p.stat().st_mtime, reverse=True)

    # Full run

    def run(self) -> BackupRecord:
        """Run a complete backup and retention cycle."""
        logger.info("Starting Temporal backup...")
        started = self._now()
        stamp = started.astimezone().strftime("%Y%m%d-%H%M%S")
        name = f"{BACKUP_PREFIX}{stamp}"
        record = BackupRecord(name=name, timestamp=started)

        workdir = self.create_working_dir(name)

        record.snapshot_outcome = self.snapshot_search_index(workdir, stamp)
        if record.snapshot_outcome == SnapshotOutcome.SKIPPED:
            record.warn("Elasticsearch backup skipped: snapshot and export both failed")
        else:
            record.components.append(COMPONENT_ELASTICSEARCH)

        record.configuration_files = self.copy_configuration(workdir)
        if record.configuration_files:
            record.components.append(COMPONENT_CONFIGURATION)

        record.volumes = self.archive_volumes(workdir)
        for archive in record.volumes:
            if not archive.success:
                record.warn(f"Volume {archive.volume} not archived: {archive.message}")
        if any(archive.success for archive in record.volumes):
            record.components.append(COMPONENT_VOLUMES)

        record.image_digest = self.runtime.image_digest(self.config.server_image())
        self.write_manifest(workdir, record)

        record.local_path = self.compress(workdir)
        record.size_bytes = record.local_path.stat().st_size

        record.remote_key = self.upload(record.local_path)
        if self.storage is not None and record.remote_key is None:
            record.warnings.append("Remote upload failed; local archive only")

        report = self.apply_retention(started, keep=[record.local_path.name])
        record.warnings.extend(f"Retention {error}" for error in report.errors)

        logger.info(f"Backup completed: {record.local_path} ({record.size_human})")
        return record
