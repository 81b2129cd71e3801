"""Human-friendly formatting helpers (bytes, durations)."""

from __future__ import annotations

_UNITS: tuple[tuple[str, int], ...] = (
    ("GB", 1024**3),
    ("MB", 1024**2),
    ("KB", 1024),
)


def format_bytes(num_bytes: int | float) -> str:
    value = max(0, int(num_bytes))
    for unit, size in _UNITS:
        if value >= size:
            return f"{value / size:.2f}{unit}"
    return f"{value}B"


def format_duration(seconds: float) -> str:
    total = int(max(0.0, float(seconds)))
    if total >= 3600:
        return f"{total // 3600}h{(total % 3600) // 60}m"
    if total >= 60:
        return f"{total // 60}m{total % 60}s"
    return f"{total}s"
