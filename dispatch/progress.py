"""
Trip and bed-booking progress derived from an ETA and a start time.

Everything here is a pure function of ``(eta_seconds, started_at, now)`` with
times in epoch milliseconds, so it can be recomputed on every refresh tick.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .geo import _finite

# UI tuning thresholds for the discrete status labels.
TRIP_DISPATCHED_BELOW = 0.2
TRIP_EN_ROUTE_BELOW = 0.85
BED_RESERVED_BELOW = 0.15

TRIP_DISPATCHED = "Dispatched"
TRIP_EN_ROUTE = "En Route"
TRIP_ARRIVING = "Arriving"
TRIP_ARRIVED = "Arrived"

BED_RESERVED = "Reserved"
BED_WAITING = "Waiting"
BED_READY = "Ready"


@dataclass(frozen=True)
class Progress:
    remaining_seconds: Optional[int]
    progress: Optional[float]
    status: str
    formatted_remaining: Optional[str]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "remaining_seconds": self.remaining_seconds,
            "progress": self.progress,
            "status": self.status,
            "formatted_remaining": self.formatted_remaining,
        }


def now_ms() -> float:
    return time.time() * 1000


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def remaining_seconds(eta_seconds: Any, started_at: Any, now: Any) -> Optional[int]:
    eta = _finite(eta_seconds)
    start = _finite(started_at)
    current = _finite(now)
    if eta is None or start is None or current is None:
        return None
    elapsed = (current - start) / 1000
    return max(0, _round_half_up(eta - elapsed))


def progress_fraction(eta_seconds: Any, started_at: Any, now: Any) -> Optional[float]:
    eta = _finite(eta_seconds)
    start = _finite(started_at)
    current = _finite(now)
    if eta is None or eta <= 0 or start is None or current is None:
        return None
    elapsed = (current - start) / 1000
    return min(1.0, max(0.0, elapsed / eta))


def trip_status_label(progress: Optional[float]) -> str:
    if progress is None:
        return TRIP_EN_ROUTE
    if progress >= 1:
        return TRIP_ARRIVED
    if progress < TRIP_DISPATCHED_BELOW:
        return TRIP_DISPATCHED
    if progress < TRIP_EN_ROUTE_BELOW:
        return TRIP_EN_ROUTE
    return TRIP_ARRIVING


def bed_status_label(progress: Optional[float]) -> str:
    if progress is None:
        return BED_WAITING
    if progress >= 1:
        return BED_READY
    if progress < BED_RESERVED_BELOW:
        return BED_RESERVED
    return BED_WAITING


def format_remaining(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    minutes, secs = divmod(int(seconds), 60)
    if minutes <= 0:
        return f"{secs}s"
    if secs == 0:
        return f"{minutes}m"
    return f"{minutes}m {secs}s"


def format_duration(seconds: Any) -> str:
    value = _finite(seconds)
    if value is None:
        return "--"
    total = _round_half_up(value)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_distance(meters: Any) -> str:
    value = _finite(meters)
    if value is None:
        return "--"
    if value >= 1000:
        return f"{value / 1000:.1f} km"
    return f"{_round_half_up(value)} m"


def trip_progress(eta_seconds: Any, started_at: Any, now: Any = None) -> Progress:
    """Progress snapshot for an ambulance trip."""
    if now is None:
        now = now_ms()
    remaining = remaining_seconds(eta_seconds, started_at, now)
    fraction = progress_fraction(eta_seconds, started_at, now)
    return Progress(
        remaining_seconds=remaining,
        progress=fraction,
        status=trip_status_label(fraction),
        formatted_remaining=format_remaining(remaining),
    )


def bed_progress(eta_seconds: Any, started_at: Any, now: Any = None) -> Progress:
    """Progress snapshot for a bed booking."""
    if now is None:
        now = now_ms()
    remaining = remaining_seconds(eta_seconds, started_at, now)
    fraction = progress_fraction(eta_seconds, started_at, now)
    return Progress(
        remaining_seconds=remaining,
        progress=fraction,
        status=bed_status_label(fraction),
        formatted_remaining=format_remaining(remaining),
    )
