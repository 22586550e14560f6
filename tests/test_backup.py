from __future__ import annotations

import json
import os
import subprocess
import tarfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest
import requests

from temporal_deployer.backup import (
    BACKUP_PREFIX,
    BackupError,
    BackupManager,
    SnapshotOutcome,
)
from temporal_deployer.config import SpacesConfig, StackConfig
from temporal_deployer.storage import RemoteObject, SpacesStorage, StorageError

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


def _completed(returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["docker"], returncode=returncode, stdout="", stderr=stderr)


def _fake_containers(config: StackConfig, failing: tuple[str, ...] = ()):
    """Helper containers that write their output into the mounted /backup directory."""

    def run_container(image: str, command: list[str], volumes: Any = None, **_kwargs: Any) -> subprocess.CompletedProcess:
        sources = [str(src) for src, _dst, _ro in volumes or []]
        if image in failing or any(src in failing for src in sources):
            return _completed(1, "helper failed")
        workdir = next(Path(src) for src, dst, _ro in volumes if dst == "/backup")
        for arg in command:
            if "/backup/" in arg:
                (workdir / arg.split("/backup/", 1)[1]).write_text("data")
        return _completed()

    return run_container


@pytest.fixture(autouse=True)
def elasticsearch_down(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*_args: Any, **_kwargs: Any) -> None:
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr("temporal_deployer.backup.requests.put", refuse)
    monkeypatch.setattr("temporal_deployer.backup.requests.delete", refuse)


def _manifest(archive: Path) -> tuple[dict[str, Any], list[str]]:
    with tarfile.open(archive, "r:gz") as tar:
        names = tar.getnames()
        manifest_member = next(name for name in names if name.endswith("/manifest.json"))
        manifest = json.load(tar.extractfile(manifest_member))
    return manifest, names


def test_no_spaces_credentials_never_touches_object_storage(
    config: StackConfig, runtime: Mock, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("temporal_deployer.storage.boto3.client", Mock(side_effect=AssertionError("no client")))
    runtime.run_container.side_effect = _fake_containers(config)

    manager = BackupManager(config, runtime=runtime)
    record = manager.run()

    assert manager.storage is None
    assert record.remote_key is None
    assert record.local_path is not None and record.local_path.exists()
    assert not any("upload" in warning.lower() for warning in record.warnings)


def test_manifest_omits_index_when_snapshot_and_export_fail(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config, failing=(config.elasticsearch.dump_image,))

    record = BackupManager(config, runtime=runtime).run()
    manifest, names = _manifest(record.local_path)

    assert record.snapshot_outcome == SnapshotOutcome.SKIPPED
    assert manifest["components"] == ["configuration", "volumes"]
    assert manifest["backup_type"] == "partial"
    assert manifest["elasticsearch_method"] == "skipped"
    assert manifest["temporal_version"] == "temporalio/server@sha256:abc"
    assert not any("elasticsearch-data.json" in name or name.endswith("/elasticsearch") for name in names)
    assert f"{record.name}/docker-compose.yml" in names
    assert f"{record.name}/.env.production" in names
    assert f"{record.name}/temporal-data.tar.gz" in names
    assert any("Elasticsearch backup skipped" in warning for warning in record.warnings)


def test_export_fallback_counts_as_index_backup(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config)

    record = BackupManager(config, runtime=runtime).run()
    manifest, names = _manifest(record.local_path)

    assert record.snapshot_outcome == SnapshotOutcome.FALLBACK
    assert manifest["components"] == ["elasticsearch", "configuration", "volumes"]
    assert manifest["backup_type"] == "full"
    assert f"{record.name}/elasticsearch-data.json" in names
    dump_call = runtime.run_container.call_args_list[0]
    assert dump_call.args[0] == "elasticdump/elasticsearch-dump:latest"
    assert dump_call.kwargs["network"] == "temporal-network"


def test_native_snapshot_is_preferred(config: StackConfig, runtime: Mock, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str, dict[str, Any]]] = []

    def fake_put(url: str, **kwargs: Any) -> Mock:
        calls.append((url, kwargs))
        response = Mock()
        response.json.return_value = {"snapshot": {"state": "SUCCESS"}}
        return response

    deleted: list[str] = []

    def fake_delete(url: str, **_kwargs: Any) -> Mock:
        deleted.append(url)
        return Mock()

    monkeypatch.setattr("temporal_deployer.backup.requests.put", fake_put)
    monkeypatch.setattr("temporal_deployer.backup.requests.delete", fake_delete)
    runtime.run_container.side_effect = _fake_containers(config)

    record = BackupManager(config, runtime=runtime).run()

    stamp = record.name[len(BACKUP_PREFIX):]
    assert deleted == [f"http://localhost:9200/_snapshot/backup/snapshot_{stamp}"]
    assert record.snapshot_outcome == SnapshotOutcome.SNAPSHOT
    assert calls[0][0] == "http://localhost:9200/_snapshot/backup"
    assert calls[0][1]["json"]["settings"]["location"] == "/usr/share/elasticsearch/backup"
    assert calls[1][0] == f"http://localhost:9200/_snapshot/backup/snapshot_{stamp}"
    assert calls[1][1]["params"] == {"wait_for_completion": "true"}
    runtime.copy_from_container.assert_called_once()
    assert runtime.copy_from_container.call_args.args[0] == "temporal-elasticsearch"
    images = [call.args[0] for call in runtime.run_container.call_args_list]
    assert "elasticdump/elasticsearch-dump:latest" not in images


def test_failed_volume_does_not_abort_the_others(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config, failing=("temporal_temporal-data",))

    record = BackupManager(config, runtime=runtime).run()
    manifest, names = _manifest(record.local_path)

    assert [archive.success for archive in record.volumes] == [False, True]
    assert manifest["volumes"] == ["elasticsearch-data"]
    assert "volumes" in manifest["components"]
    assert f"{record.name}/temporal-data.tar.gz" not in names
    assert any("Volume temporal-data not archived" in warning for warning in record.warnings)


def test_volume_archives_mount_data_read_only(config: StackConfig, runtime: Mock, tmp_path: Path) -> None:
    runtime.run_container.side_effect = _fake_containers(config)
    workdir = tmp_path / "work"
    workdir.mkdir()

    archive = BackupManager(config, runtime=runtime).archive_volume(workdir, "temporal-data")

    assert archive.success
    call = runtime.run_container.call_args
    assert call.args[0] == "alpine"
    assert call.args[1] == ["tar", "czf", "/backup/temporal-data.tar.gz", "-C", "/data", "."]
    assert call.kwargs["volumes"][0] == ("temporal_temporal-data", "/data", True)


def test_upload_failure_keeps_local_archive(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config)
    storage = Mock(spec=SpacesStorage)
    storage.upload.side_effect = StorageError("Upload failed: AccessDenied")
    storage.list_objects.return_value = []

    record = BackupManager(config, runtime=runtime, storage=storage).run()

    assert record.remote_key is None
    assert record.local_path.exists()
    assert "Remote upload failed; local archive only" in record.warnings


def test_successful_upload_records_key(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config)
    storage = Mock(spec=SpacesStorage)
    storage.upload.return_value = "temporal-backups/archive.tar.gz"
    storage.list_objects.return_value = []

    record = BackupManager(config, runtime=runtime, storage=storage).run()

    assert record.remote_key == "temporal-backups/archive.tar.gz"
    storage.upload.assert_called_once_with(record.local_path)


def test_compression_removes_working_directory(config: StackConfig, runtime: Mock) -> None:
    runtime.run_container.side_effect = _fake_containers(config)

    record = BackupManager(config, runtime=runtime).run()

    assert record.local_path == config.backup_dir / f"{record.name}.tar.gz"
    assert not (config.backup_dir / record.name).exists()
    assert record.size_bytes == record.local_path.stat().st_size


def test_working_directory_failure_is_fatal(config: StackConfig, runtime: Mock) -> None:
    manager = BackupManager(config, runtime=runtime, clock=lambda: NOW)
    name = f"{BACKUP_PREFIX}{NOW.astimezone():%Y%m%d-%H%M%S}"
    (config.backup_dir / name).mkdir(parents=True)

    with pytest.raises(BackupError):
        manager.run()

    runtime.run_container.assert_not_called()


def test_local_retention_keeps_archives_at_the_boundary(config: StackConfig, runtime: Mock) -> None:
    config.backup_dir.mkdir(parents=True)
    cutoff = (NOW - timedelta(days=7)).timestamp()
    archives = {
        "boundary": (config.backup_dir / f"{BACKUP_PREFIX}20261012-120000.tar.gz", cutoff),
        "expired": (config.backup_dir / f"{BACKUP_PREFIX}20261012-115959.tar.gz", cutoff - 1),
        "fresh": (config.backup_dir / f"{BACKUP_PREFIX}20261018-120000.tar.gz", cutoff + 86400 * 6),
    }
    for path, mtime in archives.values():
        path.write_text("archive")
        os.utime(path, (mtime, mtime))
    unrelated = config.backup_dir / "notes.tar.gz"
    unrelated.write_text("keep")
    os.utime(unrelated, (0, 0))

    deleted = BackupManager(config, runtime=runtime).prune_local(NOW)

    assert deleted == [archives["expired"][0]]
    assert archives["boundary"][0].exists()
    assert archives["fresh"][0].exists()
    assert unrelated.exists()


def test_remote_retention_continues_past_delete_failures(config: StackConfig, runtime: Mock) -> None:
    cutoff = NOW - timedelta(days=7)
    storage = Mock(spec=SpacesStorage)
    storage.list_objects.return_value = [
        RemoteObject(key="temporal-backups/a.tar.gz", last_modified=cutoff - timedelta(days=3)),
        RemoteObject(key="temporal-backups/b.tar.gz", last_modified=cutoff - timedelta(seconds=1)),
        RemoteObject(key="temporal-backups/c.tar.gz", last_modified=cutoff),
        RemoteObject(key="temporal-backups/d.tar.gz", last_modified=NOW),
    ]
    storage.delete.side_effect = [StorageError("Delete failed"), None]

    deleted = BackupManager(config, runtime=runtime, storage=storage).prune_remote(NOW)

    assert deleted == ["temporal-backups/b.tar.gz"]
    assert [call.args[0] for call in storage.delete.call_args_list] == [
        "temporal-backups/a.tar.gz",
        "temporal-backups/b.tar.gz",
    ]


def test_remote_listing_failure_does_not_stop_local_sweep(config: StackConfig, runtime: Mock) -> None:
    config.backup_dir.mkdir(parents=True)
    old = config.backup_dir / f"{BACKUP_PREFIX}20260101-000000.tar.gz"
    old.write_text("archive")
    os.utime(old, (0, 0))
    storage = Mock(spec=SpacesStorage)
    storage.list_objects.side_effect = StorageError("Listing failed")

    report = BackupManager(config, runtime=runtime, storage=storage).apply_retention(NOW)

    assert report.deleted_local == [old]
    assert report.deleted_remote == []
    assert report.errors == ["remote: Listing failed"]


def test_storage_created_only_with_spaces_credentials(config: StackConfig, runtime: Mock) -> None:
    config.spaces = SpacesConfig(access_key="key", secret_key="secret", bucket="bucket", region="nyc3")

    manager = BackupManager(config, runtime=runtime)

    assert isinstance(manager.storage, SpacesStorage)


def test_list_backups_newest_first(config: StackConfig, runtime: Mock) -> None:
    config.backup_dir.mkdir(parents=True)
    older = config.backup_dir / f"{BACKUP_PREFIX}20261001-000000.tar.gz"
    newer = config.backup_dir / f"{BACKUP_PREFIX}20261002-000000.tar.gz"
    for index, path in enumerate([older, newer]):
        path.write_text("archive")
        os.utime(path, (1_000_000 + index, 1_000_000 + index))

    assert BackupManager(config, runtime=runtime).list_backups() == [newer, older]


def test_snapshot_cleanup_failure_keeps_the_snapshot_outcome(
    config: StackConfig, runtime: Mock, monkeypatch: pytest.MonkeyPatch
) -> None:
    response = Mock()
    response.json.return_value = {"snapshot": {"state": "SUCCESS"}}
    monkeypatch.setattr("temporal_deployer.backup.requests.put", lambda url, **_kwargs: response)
    workdir = config.backup_dir / "work"
    workdir.mkdir(parents=True)

    outcome = BackupManager(config, runtime=runtime).snapshot_search_index(workdir, "20261019-120000")

    assert outcome == SnapshotOutcome.SNAPSHOT
    runtime.run_container.assert_not_called()


def test_zero_day_retention_keeps_the_backup_just_made(config: StackConfig, runtime: Mock) -> None:
    config.retention_days = 0
    runtime.run_container.side_effect = _fake_containers(config)
    storage = Mock(spec=SpacesStorage)
    storage.upload.side_effect = lambda path: f"temporal-backups/{path.name}"
    storage.list_objects.side_effect = lambda: [
        RemoteObject(key=f"temporal-backups/{path.name}", last_modified=NOW - timedelta(days=30))
        for path in config.backup_dir.glob(f"{BACKUP_PREFIX}*.tar.gz")
    ]

    record = BackupManager(config, runtime=runtime, storage=storage).run()

    assert record.local_path.exists()
    storage.delete.assert_not_called()


def test_relative_deploy_dir_mounts_absolute_backup_path(
    runtime: Mock, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    config = StackConfig(deploy_dir=Path("srv/temporal"))
    runtime.run_container.side_effect = _fake_containers(config)
    workdir = BackupManager(config, runtime=runtime).create_working_dir("work")

    archive = BackupManager(config, runtime=runtime).archive_volume(workdir, "temporal-data")

    assert archive.success
    source, target, read_only = runtime.run_container.call_args.kwargs["volumes"][1]
    assert Path(source).is_absolute()
    assert Path(source) == (tmp_path / "srv" / "temporal" / "backups" / "work").resolve()
    assert (target, read_only) == ("/backup", False)
