"""MockExecutor and shared fixtures for testing."""
from __future__ import annotations

import shlex

import pytest

from zfsbackup.config import BackupConfig
from zfsbackup.executor import PipelineResult, Runner, StageResult, as_stages
from zfsbackup.zfs import Zfs


class Fail:
    """Scripted response for a command that exits non-zero."""
    def __init__(self, stderr: str = "", returncode: int = 1, stdout: str = ""):
        self.stderr = stderr
        self.returncode = returncode
        self.stdout = stdout


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string, Fail or PipelineResult.
    Pipelines are looked up by a tuple of per-stage argv tuples.
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).

    Pass is_verbose=True to print every command that goes through the executor.
    """

    def __init__(self, responses: dict | None = None, is_verbose: bool = False):
        self.responses: dict = responses or {}
        self.verbose = is_verbose
        self.calls: list[list[str]] = []  # every stage of every command run
        self.pipelines: list[list[list[str]]] = []  # multi-stage runs only

    def execute(self, stages) -> PipelineResult:
        stages = as_stages(stages)
        argvs = [list(s.argv) for s in stages]
        self.calls.extend(argvs)
        if len(stages) > 1:
            self.pipelines.append(argvs)
            key = tuple(tuple(a) for a in argvs)
        else:
            key = tuple(argvs[0])
        if self.verbose:
            print("  [mock] " + " | ".join(shlex.join(a) for a in argvs))
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {argvs}")
        result = self.responses[key]
        if isinstance(result, PipelineResult):
            return result
        if isinstance(result, Fail):
            return PipelineResult(
                stages=[StageResult(tuple(argvs[-1]), result.returncode, result.stderr)],
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return PipelineResult(
            stages=[StageResult(tuple(a), 0) for a in argvs],
            stdout=result,
        )

    def mutating_calls(self) -> list[list[str]]:
        """Calls that would change state on a pool."""
        mutating = {"snapshot", "destroy", "receive"}
        return [
            c for c in self.calls
            if len(c) > 1 and (c[1] in mutating or (c[1] == "send" and "-n" not in c))
        ]


# ---------------------------------------------------------------------------
# Command builders matching what zfsbackup.zfs issues
# ---------------------------------------------------------------------------

def snap_list_cmd(dataset: str) -> tuple:
    return ("zfs", "list", "-H", "-o", "name", "-t", "snapshot", "-s", "creation", dataset)


def fs_exists_cmd(dataset: str) -> tuple:
    return ("zfs", "list", "-H", "-t", "filesystem,volume", dataset)


def fs_list_cmd(dataset: str) -> tuple:
    return ("zfs", "list", "-H", "-o", "name", "-r", "-t", "filesystem,volume", dataset)


def estimate_cmd(snapshot: str, base: str | None = None) -> tuple:
    if base:
        return ("zfs", "send", "-n", "-P", "-i", base, snapshot)
    return ("zfs", "send", "-n", "-P", snapshot)


def estimate_output(size: int) -> str:
    return f"full\tpool/data@x\t{size}\nsize\t{size}\n"


def snap_list_output(full_names: list[str]) -> str:
    return "\n".join(full_names) + "\n" if full_names else ""


def make_zfs(
    responses: dict | None = None,
    target: str = "backup",
    dry_run: bool = False,
    retain: int = 2,
    **kwargs,
) -> tuple[Zfs, MockExecutor]:
    config = BackupConfig(target=target, dry_run=dry_run, retain=retain, **kwargs)
    executor = MockExecutor(responses)
    return Zfs(config, Runner(executor, dry_run=dry_run)), executor


# Backup snapshots (canonical labels) and one foreign snapshot
SRC_SNAPS = [
    "pool/data@2025-01-01T00:00:00",
    "pool/data@zfs-auto-snap_daily-2025-01-02-0000",
    "pool/data@2025-01-03T00:00:00",
    "pool/data@2025-01-04T00:00:00",
]


@pytest.fixture
def verbose(request):
    """True if -v was passed to pytest."""
    return request.config.getoption("--verbose", default=False)
