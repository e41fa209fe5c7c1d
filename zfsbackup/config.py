"""Session configuration and YAML job files."""
from __future__ import annotations

import shlex
from dataclasses import dataclass, field

import yaml

from zfsbackup.models import Source

DEFAULT_COMMAND = ("zfs",)
DEFAULT_RETAIN = 2


class ConfigError(Exception):
    pass


def _as_command(value, name: str) -> tuple[str, ...]:
    """Normalise a command prefix given as a string or a sequence of tokens."""
    if isinstance(value, str):
        tokens = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        tokens = [str(t) if t is not None else "" for t in value]
    else:
        raise ConfigError(f"{name} must be a string or a list, got {value!r}")
    if not tokens:
        raise ConfigError(f"{name} cannot be empty")
    if any(not t for t in tokens):
        raise ConfigError(f"{name} contains an empty token: {value!r}")
    return tuple(tokens)


def ssh_command(
    host: str,
    user: str | None = None,
    port: int = 22,
    command: str = "zfs",
) -> tuple[str, ...]:
    """Build a command prefix that runs `command` on a remote host via SSH."""
    dest = f"{user}@{host}" if user else host
    return (
        "ssh",
        "-o", "BatchMode=yes",
        "-o", "StrictHostKeyChecking=accept-new",
        "-p", str(port),
        dest,
    ) + _as_command(command, "destination.command")


@dataclass(frozen=True)
class BackupConfig:
    """Immutable settings for one backup run.

    Source and target command prefixes are argv prefixes put in front of every
    zfs sub-command, e.g. ("zfs",) or ("ssh", "backup-host", "zfs"). A dataset
    under `target` is always reached through `target_command`.
    """
    target: str
    dry_run: bool = False
    source_command: tuple[str, ...] = DEFAULT_COMMAND
    target_command: tuple[str, ...] = DEFAULT_COMMAND
    retain: int = DEFAULT_RETAIN

    def __post_init__(self):
        target = (self.target or "").strip().rstrip("/")
        if not target:
            raise ConfigError("target filesystem cannot be empty")
        if "@" in target:
            raise ConfigError(f"target must be a dataset, not a snapshot: {target!r}")
        object.__setattr__(self, "target", target)
        object.__setattr__(
            self, "source_command", _as_command(self.source_command, "source command")
        )
        object.__setattr__(
            self, "target_command", _as_command(self.target_command, "target command")
        )
        if isinstance(self.retain, bool) or not isinstance(self.retain, int):
            raise ConfigError(f"retain must be an integer, got {self.retain!r}")
        if self.retain < 0:
            raise ConfigError(f"retain must be >= 0, got {self.retain}")

    def is_target(self, dataset: str) -> bool:
        """True if the dataset (or snapshot) lives under the target root."""
        return dataset.startswith(self.target + "/")

    def target_path(self, filesystem: str) -> str:
        """Return the backup dataset for a source filesystem.

        Example: pool/data -> backup/pool/data
        """
        return f"{self.target}/{filesystem}"

    def command_for(self, dataset: str, *args: str) -> list[str]:
        """Return the full argv for a zfs sub-command addressing `dataset`."""
        prefix = self.target_command if self.is_target(dataset) else self.source_command
        return [*prefix, *args]


@dataclass
class JobFile:
    """Settings read from a YAML job file; None means 'not set'."""
    target: str | None = None
    sources: list[Source] = field(default_factory=list)
    source_command: tuple[str, ...] | None = None
    target_command: tuple[str, ...] | None = None
    retain: int | None = None


def parse_sources(specs) -> list[Source]:
    """Parse source spec strings, raising ConfigError for invalid entries."""
    sources = []
    for spec in specs:
        if spec is None or not str(spec).strip():
            raise ConfigError(f"Invalid source entry: {spec!r}")
        try:
            sources.append(Source.parse(str(spec)))
        except ValueError as e:
            raise ConfigError(str(e)) from e
    return sources


def load_job(path: str) -> JobFile:
    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    job = JobFile()

    # --- target ---
    if raw.get("target") is not None:
        job.target = str(raw["target"])

    # --- sources ---
    sources_raw = raw.get("sources", [])
    if not isinstance(sources_raw, list):
        raise ConfigError("'sources' must be a list")
    job.sources = parse_sources(sources_raw)

    # --- commands ---
    if raw.get("source_command") is not None:
        job.source_command = _as_command(raw["source_command"], "source_command")
    if raw.get("target_command") is not None:
        job.target_command = _as_command(raw["target_command"], "target_command")

    dst_raw = raw.get("destination")
    if dst_raw is not None:
        if not isinstance(dst_raw, dict) or not dst_raw.get("host"):
            raise ConfigError("destination.host is required when destination is set")
        if job.target_command is not None:
            raise ConfigError("Set either target_command or destination, not both")
        try:
            port = int(dst_raw.get("port", 22))
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid destination.port: {dst_raw.get('port')!r}")
        job.target_command = ssh_command(
            host=str(dst_raw["host"]),
            user=dst_raw.get("user"),
            port=port,
            command=dst_raw.get("command", "zfs"),
        )

    # --- retention ---
    if raw.get("retain") is not None:
        try:
            retain = int(raw["retain"])
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid retain value: {raw['retain']!r}")
        if retain < 0:
            raise ConfigError(f"retain must be >= 0, got {retain}")
        job.retain = retain

    return job
