"""Data models for zfsbackup."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

# Labels created by this tool; anything else is a foreign snapshot.
LABEL_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Trailing marker on a source spec requesting a recursive backup.
RECURSE_MARKER = "/..."


def format_label(when: datetime) -> str:
    return when.strftime(LABEL_FORMAT)


def parse_label(label: str) -> datetime | None:
    """Return the timestamp encoded in a backup label, or None for foreign labels."""
    # Fractional seconds ("...T00:00:00.5") are accepted but never written by us.
    stamp, dot, fraction = label.partition(".")
    if dot and not (fraction.isascii() and fraction.isdigit()):
        return None
    try:
        parsed = datetime.strptime(stamp, LABEL_FORMAT)
    except ValueError:
        return None
    # strptime accepts unpadded fields ("2024-1-5T1:2:3"); we never write those.
    if format_label(parsed) != stamp:
        return None
    if fraction:
        parsed = parsed.replace(microsecond=int(fraction[:6].ljust(6, "0")))
    return parsed


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@label."""
    dataset: str
    label: str

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.label}"

    @property
    def is_backup(self) -> bool:
        """True if the label is one this tool created."""
        return parse_label(self.label) is not None

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, sep, label = full_name.strip().partition("@")
        if not sep or not dataset or not label or "@" in label:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, label=label)

    def on(self, dataset: str) -> "Snapshot":
        """The snapshot with the same label on another dataset."""
        return Snapshot(dataset=dataset, label=self.label)

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class Source:
    """A volume to back up, optionally with all of its descendants."""
    volume: str
    recurse: bool = False

    @classmethod
    def parse(cls, spec: str) -> "Source":
        """Parse 'pool/data' or 'pool/data/...' (recursive)."""
        volume = spec.strip()
        recurse = volume.endswith(RECURSE_MARKER)
        if recurse:
            volume = volume[: -len(RECURSE_MARKER)]
        volume = volume.rstrip("/")
        if not volume:
            raise ValueError(f"Empty source volume: {spec!r}")
        if "@" in volume:
            raise ValueError(f"Source must be a dataset, not a snapshot: {spec!r}")
        return cls(volume=volume, recurse=recurse)

    def __str__(self) -> str:
        return self.volume + (RECURSE_MARKER if self.recurse else "")
