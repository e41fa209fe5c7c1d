"""CLI entry point for zfsbackup."""
from __future__ import annotations

import argparse
import logging
import os
import sys

from rich.console import Console
from rich.logging import RichHandler

from zfsbackup.config import (
    DEFAULT_COMMAND,
    DEFAULT_RETAIN,
    BackupConfig,
    ConfigError,
    JobFile,
    load_job,
    parse_sources,
)
from zfsbackup.executor import ExecutorError, LocalExecutor, Runner
from zfsbackup.units import human_bytes
from zfsbackup.zfs import NoCommonSnapshotError, Zfs, ZfsError

DEFAULT_TARGET = "backup"

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"


def setup_logging(debug: bool = False) -> None:
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[handler],
        force=True,
    )


def load_settings(args, dry_run: bool = False):
    """Merge the optional job file with command-line flags (flags win)."""
    job = load_job(args.config) if args.config else JobFile()
    sources = parse_sources(args.sources) if args.sources else job.sources
    if not sources:
        raise ConfigError("no source filesystems provided")
    config = BackupConfig(
        target=args.target_fs if args.target_fs is not None else (job.target or DEFAULT_TARGET),
        dry_run=dry_run,
        source_command=_pick(args.source_command, job.source_command, DEFAULT_COMMAND),
        target_command=_pick(args.target_command, job.target_command, DEFAULT_COMMAND),
        retain=_pick(getattr(args, "retain", None), job.retain, DEFAULT_RETAIN),
    )
    return config, sources


def _pick(*values):
    return next(v for v in values if v is not None)


def _make_zfs(config: BackupConfig) -> Zfs:
    return Zfs(config, Runner(LocalExecutor(), dry_run=config.dry_run))


def cmd_backup(args) -> int:
    from zfsbackup.backup import run_backup
    try:
        config, sources = load_settings(args, dry_run=args.dry_run)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    print(f"Backing up {', '.join(str(s) for s in sources)} to {config.target}")
    try:
        results = run_backup(sources, _make_zfs(config), config)
    except (ZfsError, ExecutorError, ConfigError) as e:
        print(f"{RED}ERROR: {e}{RESET}", file=sys.stderr)
        return 1

    prefix = "[dry-run] " if config.dry_run else ""
    for result in results:
        print(f"\n{result.source}: snapshot @{result.snapshot.label}")
        for fs in result.filesystems:
            kind = f"incremental from @{fs.base.label}" if fs.incremental else "full"
            size = human_bytes(fs.size) if fs.size is not None else "unknown size"
            state = f"{GREEN}sent{RESET}" if fs.transferred else "not sent"
            print(f"  {fs.filesystem} -> {fs.target}: {kind}, {size}, {state}")
        if result.deleted:
            verb = "Would delete" if config.dry_run else "Deleted"
            print(f"  {verb} {len(result.deleted)} old snapshot(s)")
    print(f"\n{prefix}{GREEN}Backup complete.{RESET}")
    return 0


def cmd_status(args) -> int:
    """Show, per filesystem, whether the target holds the newest snapshot."""
    try:
        config, sources = load_settings(args)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    zfs = _make_zfs(config)
    try:
        for source in sources:
            if source.recurse:
                filesystems = zfs.list_filesystems(source.volume)
            else:
                filesystems = [source.volume]
            for fs in filesystems:
                print(f"{fs}: {_fs_status(zfs, config, fs)}")
    except (ZfsError, ExecutorError) as e:
        print(f"{RED}ERROR: {e}{RESET}", file=sys.stderr)
        return 1
    return 0


def _fs_status(zfs: Zfs, config: BackupConfig, fs: str) -> str:
    snaps = zfs.list_snapshots(fs)
    if not snaps:
        return f"{YELLOW}NO SNAPSHOTS{RESET}"
    latest = snaps[-1]
    target = config.target_path(fs)
    if not zfs.dataset_exists(target):
        return f"{YELLOW}TARGET MISSING (full transfer needed){RESET}"
    if zfs.snapshot_exists(target, latest.label):
        return f"{GREEN}UP TO DATE{RESET} (@{latest.label})"
    try:
        common = zfs.find_common_snapshot(fs, target)
    except NoCommonSnapshotError:
        return f"{RED}NO COMMON SNAPSHOT (full transfer needed){RESET}"
    behind = len(snaps) - 1 - snaps.index(common)
    return f"{behind} snapshot(s) behind (common @{common.label}, latest @{latest.label})"


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zfsbackup",
        description="Back up ZFS filesystems incrementally to target ZFS filesystems",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # Shared options
    def add_common(p):
        p.add_argument("sources", nargs="*", metavar="SOURCE",
                       help="Source filesystem; append /... to include descendants")
        p.add_argument("--config", "-c", help="Path to job YAML config file")
        p.add_argument("--target-fs", "-t", default=None,
                       help=f"Target filesystem (default: {DEFAULT_TARGET})")
        p.add_argument("--source-command", "-S", default=None,
                       help="Command prefix for source zfs calls (default: zfs)")
        p.add_argument("--target-command", "-T", default=None,
                       help="Command prefix for target zfs calls (default: zfs)")
        p.add_argument("--debug", "-d", action="store_true",
                       help="Enable debug output")

    p_backup = sub.add_parser("backup", help="Snapshot sources and send them to the target")
    add_common(p_backup)
    p_backup.add_argument("--dry-run", "-n", action="store_true",
                          help="Perform a trial run with no changes made")
    p_backup.add_argument("--retain", type=int, default=None,
                          help=f"Backup snapshots to keep on the source (default: {DEFAULT_RETAIN})")
    p_backup.set_defaults(func=cmd_backup)

    p_status = sub.add_parser("status", help="Show sync state for each filesystem")
    add_common(p_status)
    p_status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    setup_logging(args.debug)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
