"""Tests for zfsbackup.zfs module."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from zfsbackup.models import Snapshot
from zfsbackup.zfs import (
    EstimateError,
    NoCommonSnapshotError,
    ZfsError,
    parse_send_size,
    progress_stage,
)
from tests.conftest import (
    SRC_SNAPS,
    Fail,
    estimate_cmd,
    estimate_output,
    fs_exists_cmd,
    fs_list_cmd,
    make_zfs,
    snap_list_cmd,
    snap_list_output,
)

SRC = "pool/data"
DST = "backup/pool/data"


def test_list_snapshots_oldest_first():
    zfs, _ = make_zfs({snap_list_cmd(SRC): snap_list_output(SRC_SNAPS)})
    snaps = zfs.list_snapshots(SRC)
    assert [s.full_name for s in snaps] == SRC_SNAPS
    assert zfs.latest_snapshot(SRC).label == "2025-01-04T00:00:00"


def test_list_snapshots_failure_is_wrapped():
    zfs, _ = make_zfs({snap_list_cmd(SRC): Fail("dataset does not exist")})
    with pytest.raises(ZfsError, match="listing snapshots: dataset does not exist"):
        zfs.list_snapshots(SRC)


def test_latest_snapshot_none():
    zfs, _ = make_zfs({snap_list_cmd(SRC): ""})
    with pytest.raises(ZfsError, match="no snapshots"):
        zfs.latest_snapshot(SRC)


def test_target_uses_target_command():
    zfs, exec_ = make_zfs(
        {("ssh", "nas", "zfs", "list", "-H", "-t", "filesystem,volume", DST): DST + "\n"},
        target_command=["ssh", "nas", "zfs"],
    )
    assert zfs.dataset_exists(DST) is True
    assert exec_.calls[0][:3] == ["ssh", "nas", "zfs"]


def test_dataset_exists_false():
    zfs, _ = make_zfs({fs_exists_cmd(DST): Fail("dataset does not exist")})
    assert zfs.dataset_exists(DST) is False


def test_snapshot_exists():
    zfs, _ = make_zfs({
        ("zfs", "list", "-H", "-t", "snapshot", f"{DST}@a"): f"{DST}@a\n",
        ("zfs", "list", "-H", "-t", "snapshot", f"{DST}@b"): Fail("could not find"),
    })
    assert zfs.snapshot_exists(DST, "a") is True
    assert zfs.snapshot_exists(DST, "b") is False


def test_list_filesystems():
    zfs, _ = make_zfs({fs_list_cmd(SRC): f"{SRC}\n{SRC}/a\n{SRC}/a/b\n"})
    assert zfs.list_filesystems(SRC) == [SRC, f"{SRC}/a", f"{SRC}/a/b"]


class TestFindCommonSnapshot:
    def _zfs(self, src, dst):
        zfs, _ = make_zfs({
            snap_list_cmd(SRC): snap_list_output([f"{SRC}@{s}" for s in src]),
            snap_list_cmd(DST): snap_list_output([f"{DST}@{s}" for s in dst]),
        })
        return zfs

    def test_returns_newest_common(self):
        zfs = self._zfs(["s1", "s2", "s3", "s4"], ["s1", "s2", "s3", "other"])
        assert zfs.find_common_snapshot(SRC, DST) == Snapshot(SRC, "s3")

    def test_ignores_target_order(self):
        zfs = self._zfs(["s1", "s2", "s3"], ["s3", "x", "s1", "s2"])
        assert zfs.find_common_snapshot(SRC, DST).label == "s3"

    def test_no_match(self):
        zfs = self._zfs(["s1", "s2"], ["t1"])
        with pytest.raises(NoCommonSnapshotError, match="no matching snapshot"):
            zfs.find_common_snapshot(SRC, DST)

    def test_empty_target(self):
        with pytest.raises(NoCommonSnapshotError):
            self._zfs(["s1"], []).find_common_snapshot(SRC, DST)


class TestEstimate:
    def test_parse_send_size(self):
        assert parse_send_size(["full\tpool@x\t123", "size\t123"]) == 123

    @pytest.mark.parametrize("lines", [[], ["size\t0"], ["size\tlots"], ["size"]])
    def test_parse_send_size_errors(self, lines):
        with pytest.raises(EstimateError):
            parse_send_size(lines)

    def test_incremental_estimate(self):
        snap = Snapshot(SRC, "2025-01-05T00:00:00")
        base = Snapshot(SRC, "2025-01-04T00:00:00")
        zfs, _ = make_zfs({
            estimate_cmd(snap.full_name, base.full_name): estimate_output(4096),
        })
        assert zfs.estimate_size(snap, base) == 4096

    def test_estimate_command_failure(self):
        snap = Snapshot(SRC, "2025-01-05T00:00:00")
        zfs, _ = make_zfs({estimate_cmd(snap.full_name): Fail("snapshot does not exist")})
        with pytest.raises(EstimateError, match="does not exist"):
            zfs.estimate_size(snap)


class TestSend:
    SNAP = Snapshot(SRC, "2025-01-05T00:00:00")
    BASE = Snapshot(SRC, "2025-01-04T00:00:00")

    def test_full_send_without_pv(self):
        pipeline = (
            ("zfs", "send", self.SNAP.full_name),
            ("zfs", "receive", "-F", DST),
        )
        zfs, exec_ = make_zfs({pipeline: ""})
        with patch("zfsbackup.zfs.shutil.which", return_value=None):
            zfs.send(self.SNAP, DST, size=100)
        assert exec_.pipelines == [[list(c) for c in pipeline]]

    def test_incremental_send_with_pv(self):
        pipeline = (
            ("zfs", "send", "-i", self.BASE.full_name, self.SNAP.full_name),
            ("/usr/bin/pv", "-s", "100"),
            ("ssh", "nas", "zfs", "receive", "-F", DST),
        )
        zfs, exec_ = make_zfs({pipeline: ""}, target_command="ssh nas zfs")
        with patch("zfsbackup.zfs.shutil.which", return_value="/usr/bin/pv"):
            zfs.send(self.SNAP, DST, base=self.BASE, size=100)
        assert len(exec_.pipelines) == 1

    def test_send_failure_is_wrapped(self):
        pipeline = (
            ("zfs", "send", self.SNAP.full_name),
            ("zfs", "receive", "-F", DST),
        )
        zfs, _ = make_zfs({pipeline: Fail("cannot receive: destination has been modified")})
        with patch("zfsbackup.zfs.shutil.which", return_value=None):
            with pytest.raises(ZfsError, match="sending snapshot: cannot receive"):
                zfs.send(self.SNAP, DST, size=100)

    def test_dry_run_send_issues_nothing(self):
        zfs, exec_ = make_zfs({}, dry_run=True)
        with patch("zfsbackup.zfs.shutil.which", return_value=None):
            zfs.send(self.SNAP, DST, size=100)
        assert exec_.calls == []


def test_progress_stage():
    with patch("zfsbackup.zfs.shutil.which", return_value="/usr/bin/pv"):
        stage = progress_stage(2048)
        assert stage.argv == ("/usr/bin/pv", "-s", "2048")
        assert stage.passthrough
        assert progress_stage(0) is None
    with patch("zfsbackup.zfs.shutil.which", return_value=None):
        assert progress_stage(2048) is None


def test_create_and_destroy_recursive():
    zfs, exec_ = make_zfs({
        ("zfs", "snapshot", "-r", f"{SRC}@2025-01-05T00:00:00"): "",
        ("zfs", "destroy", "-r", f"{SRC}@2025-01-01T00:00:00"): "",
    })
    snap = zfs.create_snapshot(SRC, "2025-01-05T00:00:00", recurse=True)
    assert snap.full_name == f"{SRC}@2025-01-05T00:00:00"
    zfs.destroy_snapshot(Snapshot(SRC, "2025-01-01T00:00:00"), recurse=True)
    assert len(exec_.calls) == 2


def test_destroy_on_target_uses_target_command():
    zfs, exec_ = make_zfs(
        {("ssh", "nas", "zfs", "destroy", f"{DST}@old"): ""},
        target_command="ssh nas zfs",
    )
    zfs.destroy_snapshot(Snapshot(DST, "old"))
    assert exec_.calls == [["ssh", "nas", "zfs", "destroy", f"{DST}@old"]]
