"""Retention: prune old backup snapshots on the source."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from zfsbackup.models import Snapshot

if TYPE_CHECKING:
    from zfsbackup.zfs import Zfs

logger = logging.getLogger(__name__)


def select_for_deletion(snapshots: list[Snapshot], retain: int) -> list[Snapshot]:
    """
    Keep the `retain` newest backup snapshots and return the older ones.

    `snapshots` must be ordered oldest to newest; the result keeps that order.
    Snapshots with foreign labels are never returned and do not count towards
    `retain`. `retain` below 1 is treated as 1.
    """
    if retain < 1:
        logger.warning("retain %d too low, retaining 1 snapshot", retain)
        retain = 1
    if len(snapshots) <= retain:
        logger.debug("not cleaning: %d snapshot(s), retain %d", len(snapshots), retain)
        return []

    kept = 0
    to_delete: list[Snapshot] = []
    for snap in reversed(snapshots):
        if not snap.is_backup:
            logger.debug("skipping non-backup snapshot %s", snap)
            continue
        if kept < retain:
            logger.debug("retaining snapshot %s", snap)
            kept += 1
            continue
        to_delete.append(snap)
    to_delete.reverse()
    return to_delete


def clean_snapshots(
    zfs: "Zfs",
    dataset: str,
    retain: int,
    recurse: bool = False,
    pending: Snapshot | None = None,
) -> list[Snapshot]:
    """
    Destroy backup snapshots of `dataset` beyond the `retain` newest.

    `pending` is a snapshot that would exist but is not listed (the one a dry
    run only pretended to create); it is counted as the newest.

    Stops at the first failed destroy (ZfsError propagates); the remaining
    candidates are left in place. Returns the snapshots destroyed.
    """
    snaps = zfs.list_snapshots(dataset)
    if pending is not None and pending not in snaps:
        snaps.append(pending)
    logger.info("cleaning snapshots of %s: %d present, retain %d", dataset, len(snaps), retain)
    deleted = []
    for snap in select_for_deletion(snaps, retain):
        zfs.destroy_snapshot(snap, recurse=recurse)
        deleted.append(snap)
    return deleted
