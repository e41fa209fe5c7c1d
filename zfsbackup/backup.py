"""Backup orchestration: snapshot, transfer and clean up each source in turn."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from zfsbackup import retention
from zfsbackup.config import ConfigError
from zfsbackup.models import Snapshot, format_label
from zfsbackup.units import human_bytes
from zfsbackup.zfs import NoCommonSnapshotError, ZfsError

if TYPE_CHECKING:
    from zfsbackup.config import BackupConfig
    from zfsbackup.models import Source
    from zfsbackup.zfs import Zfs

logger = logging.getLogger(__name__)


@dataclass
class FilesystemResult:
    """What happened to one filesystem of a source."""
    filesystem: str
    target: str
    snapshot: Snapshot
    base: Snapshot | None = None
    size: int | None = None
    transferred: bool = False

    @property
    def incremental(self) -> bool:
        return self.base is not None


@dataclass
class SourceResult:
    source: "Source"
    snapshot: Snapshot
    filesystems: list[FilesystemResult] = field(default_factory=list)
    deleted: list[Snapshot] = field(default_factory=list)


def _find_base(zfs: "Zfs", filesystem: str, target: str) -> Snapshot | None:
    """Return the incremental base for filesystem, or None for a full transfer."""
    if not zfs.dataset_exists(target):
        logger.info("%s does not exist, sending full stream", target)
        return None
    try:
        base = zfs.find_common_snapshot(filesystem, target)
    except NoCommonSnapshotError:
        logger.warning(
            "no common snapshot between %s and %s, falling back to full transfer",
            filesystem, target,
        )
        return None
    logger.info("incremental base for %s: @%s", filesystem, base.label)
    return base


def backup_filesystem(
    zfs: "Zfs",
    config: "BackupConfig",
    filesystem: str,
    label: str,
) -> FilesystemResult:
    """Send filesystem@label to its target, incrementally when a common snapshot exists."""
    target = config.target_path(filesystem)
    result = FilesystemResult(
        filesystem=filesystem,
        target=target,
        snapshot=Snapshot(dataset=filesystem, label=label),
    )
    result.base = _find_base(zfs, filesystem, target)

    try:
        result.size = zfs.estimate_size(result.snapshot, result.base)
    except ZfsError as e:
        if not config.dry_run:
            raise
        # The snapshot was never created in a dry run, so this is expected
        logger.warning("[dry-run] could not estimate size of %s: %s", result.snapshot, e)
        return result

    logger.info(
        "estimated backup size of %s: %s", result.snapshot, human_bytes(result.size)
    )
    if config.dry_run:
        return result

    zfs.send(result.snapshot, target, base=result.base, size=result.size)
    result.transferred = True
    return result


def backup_source(
    zfs: "Zfs",
    config: "BackupConfig",
    source: "Source",
    now: Callable[[], datetime] | None = None,
) -> SourceResult:
    """Snapshot a source, send each of its filesystems, then prune old snapshots."""
    label = format_label((now or datetime.now)())
    snapshot = zfs.create_snapshot(source.volume, label, recurse=source.recurse)
    result = SourceResult(source=source, snapshot=snapshot)

    if source.recurse:
        filesystems = zfs.list_filesystems(source.volume)
    else:
        filesystems = [source.volume]

    for filesystem in filesystems:
        result.filesystems.append(backup_filesystem(zfs, config, filesystem, label))

    result.deleted = retention.clean_snapshots(
        zfs,
        source.volume,
        config.retain,
        recurse=source.recurse,
        pending=snapshot if config.dry_run else None,
    )
    return result


def run_backup(
    sources: list["Source"],
    zfs: "Zfs",
    config: "BackupConfig",
    now: Callable[[], datetime] | None = None,
) -> list[SourceResult]:
    """
    Back up every source in order. Returns per-source results.

    The first error (ZfsError, ExecutorError) aborts the whole run; sources
    already completed are not rolled back.
    """
    if not sources:
        raise ConfigError("no source filesystems provided")

    results = []
    for source in sources:
        logger.info("backing up %s to %s", source, config.target)
        results.append(backup_source(zfs, config, source, now=now))
    return results
