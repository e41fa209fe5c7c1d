"""Human-readable byte sizes."""
from __future__ import annotations

_UNITS = [
    (1 << 60, "EiB"),
    (1 << 50, "PiB"),
    (1 << 40, "TiB"),
    (1 << 30, "GiB"),
    (1 << 20, "MiB"),
    (1 << 10, "kiB"),
]


def human_bytes(size: int) -> str:
    """Format a byte count with binary units, e.g. 1536 -> '1.50 kiB'."""
    for unit, suffix in _UNITS:
        if size >= unit:
            return f"{size / unit:.2f} {suffix}"
    return f"{size} B"
