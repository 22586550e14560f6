#!/usr/bin/env python3
"""
Temporal Stack Deployer - Command Line Interface

Usage:
    python -m temporal_deployer deploy [--deploy-dir DIR] [--env-file FILE]
    python -m temporal_deployer backup
    python -m temporal_deployer prune
    python -m temporal_deployer backups
    python -m temporal_deployer status
"""

import os
import sys
import logging
import argparse
from pathlib import Path
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table

from .config import StackConfig, ConfigError, DEFAULT_DEPLOY_DIR
from .core import TemporalDeployer
from .services import ComposeRuntime
from .backup import BackupManager, BackupError, human_size
from .locking import advisory_lock, LockError

console = Console()
logger = logging.getLogger("temporal_deployer")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def configure_logging(log_file: Optional[Path] = None, verbose: bool = False):
    """Log to stderr and, for deploy and backup runs, to a per-run file."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    if log_file is None:
        return
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Cannot write log file {log_file}: {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


def _run_log(deploy_dir: Path, kind: str) -> Path:
    return deploy_dir / "logs" / f"{kind}-{datetime.now():%Y%m%d-%H%M%S}.log"


def _load_config(args, require_file: bool) -> StackConfig:
    return StackConfig.load(
        env_file=Path(args.env_file) if args.env_file else None,
        deploy_dir=Path(args.deploy_dir),
        overrides=os.environ,
        require_file=require_file,
    )


def cmd_deploy(args) -> int:
    """Handle deploy command."""
    log_file = _run_log(Path(args.deploy_dir), "deploy")
    configure_logging(log_file, args.verbose)

    try:
        config = _load_config(args, require_file=True)
        logger.debug(f"Configuration: {config.to_dict()}")
        with advisory_lock(config.deploy_dir / ".deploy.lock"):
            result = TemporalDeployer(config).deploy()
    except (ConfigError, LockError) as e:
        logger.error(str(e))
        console.print(f"[red]❌ {e}[/red]")
        return 1

    if not result.success:
        console.print(f"\n[red]❌ Deployment failed: {result.message}[/red]")
        return 1

    mode = result.mode.value.replace("_", " ") if result.mode else "-"
    console.print(f"\n[green]✅ {result.message}[/green] ({mode}, {result.duration_seconds:.1f}s)")
    if result.warnings:
        console.print("\n[yellow]⚠️  Warnings:[/yellow]")
        for warning in result.warnings:
            console.print(f"   - {warning}")

    if config.domain:
        console.print("\n📍 Access points:")
        console.print(f"   Temporal UI:   https://{config.domain}")
        console.print(f"   Temporal gRPC: {config.domain}:{config.grpc_port}")
    console.print(f"\nLogs available at: {log_file}")
    return 0


def cmd_backup(args) -> int:
    """Handle backup command."""
    configure_logging(_run_log(Path(args.deploy_dir), "backup"), args.verbose)

    config = _load_config(args, require_file=False)
    try:
        with advisory_lock(config.backup_dir / ".backup.lock"):
            record = BackupManager(config).run()
    except (BackupError, LockError) as e:
        logger.error(str(e))
        console.print(f"[red]❌ Backup failed: {e}[/red]")
        return 1

    console.print("\n[green]✅ Backup completed successfully![/green]")
    console.print(f"   Backup name: {record.local_path.name}")
    console.print(f"   Backup size: {record.size_human}")
    console.print(f"   Components:  {', '.join(record.components) or 'none'}")
    console.print(f"   Backup location: {config.backup_dir}/")
    if record.remote_key and config.spaces:
        console.print(f"   Remote location: {config.spaces.remote_location}")
    if record.warnings:
        console.print("\n[yellow]⚠️  Warnings:[/yellow]")
        for warning in record.warnings:
            console.print(f"   - {warning}")
    return 0


def cmd_prune(args) -> int:
    """Handle prune command."""
    configure_logging(verbose=args.verbose)

    config = _load_config(args, require_file=False)
    try:
        with advisory_lock(config.backup_dir / ".backup.lock"):
            report = BackupManager(config).apply_retention()
    except LockError as e:
        console.print(f"[red]❌ {e}[/red]")
        return 1

    console.print(
        f"Deleted {len(report.deleted_local)} local and "
        f"{len(report.deleted_remote)} remote backup(s) older than {config.retention_days} days"
    )
    for error in report.errors:
        console.print(f"[yellow]⚠️  {error}[/yellow]")
    return 0


def cmd_backups(args) -> int:
    """Handle backups command."""
    configure_logging(verbose=args.verbose)

    config = _load_config(args, require_file=False)
    archives = BackupManager(config).list_backups()
    if not archives:
        console.print("No backups found.")
        return 0

    table = Table(title=f"Backups in {config.backup_dir}")
    table.add_column("Name")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for archive in archives:
        stat = archive.stat()
        table.add_row(
            archive.name,
            human_size(stat.st_size),
            datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M")
        )
    console.print(table)
    return 0


def cmd_status(args) -> int:
    """Handle status command."""
    configure_logging(verbose=args.verbose)

    config = _load_config(args, require_file=False)
    runtime = ComposeRuntime(config)
    output = runtime.ps()
    if not output:
        console.print("[red]❌ Could not read stack status[/red]")
        return 1
    console.print(output)
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Temporal Stack Deployer - rolling deploys and backups for a single host"
    )
    parser.add_argument("--deploy-dir", default=str(DEFAULT_DEPLOY_DIR), help="Deployment directory")
    parser.add_argument("--env-file", help="Environment file (default: DEPLOY_DIR/.env.production)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("deploy", help="Install or rolling-update the stack")
    subparsers.add_parser("backup", help="Back up index, configuration and volumes")
    subparsers.add_parser("prune", help="Delete backups older than the retention window")
    subparsers.add_parser("backups", help="List local backups")
    subparsers.add_parser("status", help="Show service status")

    args = parser.parse_args(argv)

    commands = {
        "deploy": cmd_deploy,
        "backup": cmd_backup,
        "prune": cmd_prune,
        "backups": cmd_backups,
        "status": cmd_status,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
