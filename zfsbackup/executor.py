"""Run external commands and pipelines of commands."""
from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Protocol, Sequence, runtime_checkable

from zfsbackup.config import ConfigError

logger = logging.getLogger(__name__)

# Return code reported for a command that could not be started at all.
NOT_STARTED = 127


class ExecutorError(Exception):
    """Raised when a command (or a stage of a pipeline) exits with a non-zero status."""
    def __init__(
        self,
        cmd: list[str],
        returncode: int,
        stderr: str,
        stdout_lines: list[str] | None = None,
        stage: int = 0,
    ):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout_lines = stdout_lines or []
        self.stage = stage
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@dataclass(frozen=True)
class Stage:
    """One command of a pipeline.

    A passthrough stage writes its diagnostics straight to our own stderr
    (used for progress display) instead of having them captured.
    """
    argv: tuple[str, ...]
    passthrough: bool = False


def _as_stage(stage) -> Stage:
    if isinstance(stage, Stage):
        return stage
    return Stage(argv=tuple(stage))


def as_stages(stages: Sequence) -> list[Stage]:
    """Normalise argv lists into Stages; an empty pipeline or command is a ConfigError."""
    result = [_as_stage(s) for s in stages]
    if not result:
        raise ConfigError("pipeline needs at least one command")
    for i, stage in enumerate(result):
        if not stage.argv or not stage.argv[0]:
            raise ConfigError(f"empty command at position {i} in pipeline")
    return result


def describe(stages: Sequence[Stage]) -> str:
    """Shell-like rendering of a pipeline, for logs."""
    return " | ".join(shlex.join(s.argv) for s in stages)


@dataclass
class StageResult:
    argv: tuple[str, ...]
    returncode: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class PipelineResult:
    """Outcome of every stage plus the terminal stage's captured streams."""
    stages: list[StageResult] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""

    @property
    def lines(self) -> list[str]:
        text = self.stdout.rstrip("\n")
        return text.split("\n") if text else []

    @property
    def failures(self) -> list[tuple[int, StageResult]]:
        return [(i, s) for i, s in enumerate(self.stages) if not s.ok]

    @property
    def ok(self) -> bool:
        return not self.failures

    def error(self) -> ExecutorError | None:
        """The first failing stage (in start order) as an ExecutorError, or None.

        The terminal stage's diagnostics win when it produced any; otherwise the
        failing stage's own diagnostics are used.
        """
        failures = self.failures
        if not failures:
            return None
        index, stage = failures[0]
        detail = self.stderr.strip() or stage.stderr.strip()
        if not detail:
            detail = f"command {index} failed with exit code {stage.returncode}"
        return ExecutorError(
            list(stage.argv),
            stage.returncode,
            detail,
            stdout_lines=self.lines,
            stage=index,
        )

    def check(self) -> list[str]:
        """Return the output lines, or raise the aggregated error."""
        err = self.error()
        if err is not None:
            raise err
        return self.lines


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


@runtime_checkable
class Executor(Protocol):
    def execute(self, stages: Sequence[Stage]) -> PipelineResult:
        """Run stages connected stdout->stdin; never raises for non-zero exits."""
        raise NotImplementedError


class LocalExecutor:
    """Run commands on the local machine.

    Remote hosts are reached by putting e.g. ssh in the command prefix.
    """

    def execute(self, stages: Sequence[Stage]) -> PipelineResult:
        stages = as_stages(stages)
        if len(stages) == 1:
            return self._run_single(stages[0])
        return self._run_pipeline(stages)

    def _run_single(self, stage: Stage) -> PipelineResult:
        try:
            result = subprocess.run(
                stage.argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=None if stage.passthrough else subprocess.PIPE,
                check=False,
            )
        except (OSError, ValueError) as e:
            return PipelineResult(
                stages=[StageResult(stage.argv, NOT_STARTED, str(e))],
            )
        stderr = _decode(result.stderr)
        return PipelineResult(
            stages=[StageResult(stage.argv, result.returncode, stderr)],
            stdout=_decode(result.stdout),
            stderr=stderr,
        )

    def _run_pipeline(self, stages: list[Stage]) -> PipelineResult:
        last = len(stages) - 1
        procs: list[subprocess.Popen | None] = []
        spools: list = []
        start_errors: dict[int, str] = {}

        with ExitStack() as stack:
            upstream = subprocess.DEVNULL
            for i, stage in enumerate(stages):
                spool = None
                if stage.passthrough:
                    stderr = None
                elif i == last:
                    stderr = subprocess.PIPE
                else:
                    # Spool to a file so a chatty stage cannot block on a full pipe
                    spool = stack.enter_context(tempfile.TemporaryFile())
                    stderr = spool
                proc = None
                try:
                    proc = subprocess.Popen(
                        stage.argv,
                        stdin=upstream,
                        stdout=subprocess.PIPE,
                        stderr=stderr,
                    )
                except (OSError, ValueError) as e:
                    start_errors[i] = str(e)
                finally:
                    # Drop our copy so the previous stage sees SIGPIPE if we die
                    if upstream is not subprocess.DEVNULL:
                        upstream.close()
                if proc is not None and i != last:
                    upstream = proc.stdout
                else:
                    upstream = subprocess.DEVNULL
                procs.append(proc)
                spools.append(spool)

            stdout = stderr_text = ""
            terminal = procs[last]
            if terminal is not None:
                out, err = terminal.communicate()
                stdout, stderr_text = _decode(out), _decode(err)

            results = []
            for i, (stage, proc) in enumerate(zip(stages, procs)):
                if proc is None:
                    results.append(StageResult(stage.argv, NOT_STARTED, start_errors[i]))
                    continue
                returncode = proc.wait()
                if i == last:
                    diag = stderr_text
                elif spools[i] is not None:
                    spools[i].seek(0)
                    diag = _decode(spools[i].read())
                else:
                    diag = ""
                results.append(StageResult(stage.argv, returncode, diag))

        return PipelineResult(stages=results, stdout=stdout, stderr=stderr_text)


class Runner:
    """Route commands to an executor as either observing or mutating calls.

    Observing calls (listing, probing, size estimates) always run. Mutating
    calls (snapshot, send/receive, destroy) are only logged in dry-run mode.
    """

    def __init__(self, executor: Executor, dry_run: bool = False):
        self.executor = executor
        self.dry_run = dry_run

    def observe(self, *stages) -> list[str]:
        """Run a read-only command or pipeline; return the output lines."""
        stages = as_stages(stages)
        logger.debug("query: %s", describe(stages))
        return self.executor.execute(stages).check()

    def mutate(self, *stages) -> list[str]:
        """Run a state-changing command or pipeline, unless this is a dry run."""
        stages = as_stages(stages)
        if self.dry_run:
            logger.info("[dry-run] skipping: %s", describe(stages))
            return []
        logger.debug("run: %s", describe(stages))
        return self.executor.execute(stages).check()
