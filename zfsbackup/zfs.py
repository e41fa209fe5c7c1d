"""ZFS operations issued through a Runner, addressing source or target by dataset."""
from __future__ import annotations

import logging
import shutil
from typing import TYPE_CHECKING

from zfsbackup.executor import ExecutorError, Stage
from zfsbackup.models import Snapshot

if TYPE_CHECKING:
    from zfsbackup.config import BackupConfig
    from zfsbackup.executor import Runner

logger = logging.getLogger(__name__)

PROGRESS_PROGRAM = "pv"


class ZfsError(Exception):
    """A zfs operation failed; carries the operation name and diagnostics."""
    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"error {operation}: {detail}")

    @classmethod
    def wrap(cls, operation: str, err: ExecutorError) -> "ZfsError":
        return cls(operation, err.stderr.strip() or str(err))


class EstimateError(ZfsError):
    """The send size estimate was missing, unparseable or zero."""


class NoCommonSnapshotError(ZfsError):
    """Source and target share no snapshot label."""


def parse_send_size(lines: list[str]) -> int:
    """Extract the byte count from `zfs send -n -P` output ("size\\t<bytes>")."""
    for line in lines:
        parts = line.strip().split("\t")
        if parts[0] != "size":
            continue
        if len(parts) < 2:
            raise EstimateError("estimating send size", f"malformed size line: {line!r}")
        try:
            size = int(parts[1])
        except ValueError:
            raise EstimateError("estimating send size", f"size parse error: {parts[1]!r}")
        if size <= 0:
            raise EstimateError("estimating send size", "backup size 0")
        return size
    raise EstimateError("estimating send size", "no size in zfs send output")


def progress_stage(size: int | None) -> Stage | None:
    """A pv stage showing progress against `size`, if pv is installed."""
    if not size or size <= 0:
        return None
    path = shutil.which(PROGRESS_PROGRAM)
    if path is None:
        return None
    logger.debug("using %s for progress, size %d", path, size)
    return Stage(argv=(path, "-s", str(size)), passthrough=True)


class Zfs:
    """Inventory and transfer operations on the source and target pools."""

    def __init__(self, config: "BackupConfig", runner: "Runner"):
        self.config = config
        self.runner = runner

    def _cmd(self, dataset: str, *args: str) -> list[str]:
        return self.config.command_for(dataset, *args)

    # --- observation ---

    def list_snapshots(self, dataset: str) -> list[Snapshot]:
        """Return snapshots of a dataset, oldest first."""
        try:
            lines = self.runner.observe(self._cmd(
                dataset, "list", "-H", "-o", "name", "-t", "snapshot", "-s", "creation", dataset,
            ))
        except ExecutorError as e:
            raise ZfsError.wrap("listing snapshots", e) from e
        snaps = []
        for line in lines:
            name = line.strip()
            if not name:
                continue
            try:
                snaps.append(Snapshot.parse(name))
            except ValueError as e:
                raise ZfsError("listing snapshots", str(e)) from e
        return snaps

    def latest_snapshot(self, dataset: str) -> Snapshot:
        snaps = self.list_snapshots(dataset)
        if not snaps:
            raise ZfsError("finding latest snapshot", f"no snapshots found for {dataset}")
        return snaps[-1]

    def list_filesystems(self, dataset: str) -> list[str]:
        """Return the dataset and all descendant filesystems and volumes."""
        try:
            lines = self.runner.observe(self._cmd(
                dataset, "list", "-H", "-o", "name", "-r", "-t", "filesystem,volume", dataset,
            ))
        except ExecutorError as e:
            raise ZfsError.wrap("listing filesystems", e) from e
        return [line.strip() for line in lines if line.strip()]

    def dataset_exists(self, dataset: str) -> bool:
        try:
            self.runner.observe(self._cmd(dataset, "list", "-H", "-t", "filesystem,volume", dataset))
            return True
        except ExecutorError:
            return False

    def snapshot_exists(self, dataset: str, label: str) -> bool:
        snap = Snapshot(dataset=dataset, label=label)
        try:
            self.runner.observe(self._cmd(dataset, "list", "-H", "-t", "snapshot", snap.full_name))
            return True
        except ExecutorError:
            return False

    def find_common_snapshot(self, source: str, target: str) -> Snapshot:
        """Return the newest source snapshot whose label also exists on target."""
        src_snaps = self.list_snapshots(source)
        dst_names = {s.full_name for s in self.list_snapshots(target)}
        # Iterate src newest->oldest
        for snap in reversed(src_snaps):
            if snap.on(target).full_name in dst_names:
                return snap
        raise NoCommonSnapshotError(
            "finding common snapshot", f"no matching snapshot found for {source} and {target}"
        )

    def estimate_size(self, snapshot: Snapshot, base: Snapshot | None = None) -> int:
        """Ask zfs how many bytes sending `snapshot` (from `base`) would take."""
        args = ["send", "-n", "-P"]
        if base is not None:
            args += ["-i", base.full_name]
        args.append(snapshot.full_name)
        try:
            lines = self.runner.observe(self._cmd(snapshot.dataset, *args))
        except ExecutorError as e:
            raise EstimateError.wrap("estimating send size", e) from e
        return parse_send_size(lines)

    # --- mutation ---

    def create_snapshot(self, dataset: str, label: str, recurse: bool = False) -> Snapshot:
        snap = Snapshot(dataset=dataset, label=label)
        logger.info("creating snapshot %s (recursive: %s)", snap, recurse)
        args = ["snapshot"]
        if recurse:
            args.append("-r")
        args.append(snap.full_name)
        try:
            self.runner.mutate(self._cmd(dataset, *args))
        except ExecutorError as e:
            raise ZfsError.wrap("creating snapshot", e) from e
        return snap

    def destroy_snapshot(self, snapshot: Snapshot, recurse: bool = False) -> None:
        logger.info("deleting snapshot %s", snapshot)
        args = ["destroy"]
        if recurse:
            args.append("-r")
        args.append(snapshot.full_name)
        try:
            self.runner.mutate(self._cmd(snapshot.dataset, *args))
        except ExecutorError as e:
            raise ZfsError.wrap("deleting snapshot", e) from e

    def send(
        self,
        snapshot: Snapshot,
        target: str,
        base: Snapshot | None = None,
        size: int | None = None,
    ) -> None:
        """
        Transfer `snapshot` into `target`, incrementally from `base` if given.

        Uses: zfs send [-i base] pool/fs@label | [pv -s size] | zfs receive -F target

        receive -F rolls the target back to its newest snapshot first, discarding
        any local changes made there since.
        """
        send_args = ["send"]
        if base is not None:
            send_args += ["-i", base.full_name]
        send_args.append(snapshot.full_name)

        stages = [Stage(argv=tuple(self._cmd(snapshot.dataset, *send_args)))]
        progress = progress_stage(size)
        if progress is not None:
            stages.append(progress)
        stages.append(Stage(argv=tuple(self._cmd(target, "receive", "-F", target))))

        logger.info(
            "sending %s to %s (%s)",
            snapshot, target, f"incremental from @{base.label}" if base else "full",
        )
        try:
            self.runner.mutate(*stages)
        except ExecutorError as e:
            raise ZfsError.wrap("sending snapshot", e) from e
        logger.info("transfer of %s complete", snapshot)
