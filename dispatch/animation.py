"""
Simulated responder movement along a route.

The animator ticks cooperatively on the running event loop: every tick
computes the position for the elapsed time and schedules the next one until
the end of the route is reached. Live positions reported by a real responder
take precedence over the simulated ones without pausing the timer.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .conf import get_dispatch_config
from .geo import Coordinate, _finite, bearing_deg, to_coordinate

LOGGER = logging.getLogger(__name__)

IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
STOPPED = "stopped"


@dataclass(frozen=True)
class AnimatedPosition:
    coordinate: Coordinate
    heading: float
    live: bool = False

    def as_dict(self):
        return {
            "location": self.coordinate.as_dict(),
            "heading": round(self.heading, 1),
            "live": self.live,
        }


def interpolate(route: Sequence[Coordinate], progress_ratio: float) -> AnimatedPosition:
    """
    Position and heading at ``progress_ratio`` (0..1) along ``route``.

    The ratio is spread evenly over the route's segments.
    """
    ratio = min(1.0, max(0.0, progress_ratio))
    segment_count = len(route) - 1
    segment_progress = ratio * segment_count
    index = int(math.floor(segment_progress))

    if index >= segment_count:
        last = route[-1]
        return AnimatedPosition(last, bearing_deg(route[-2], last))

    segment_ratio = segment_progress - index
    start = route[index]
    end = route[index + 1]
    coordinate = Coordinate(
        start.latitude + (end.latitude - start.latitude) * segment_ratio,
        start.longitude + (end.longitude - start.longitude) * segment_ratio,
    )
    return AnimatedPosition(coordinate, bearing_deg(start, end))


class PositionAnimator:
    def __init__(
        self,
        on_update: Callable[[AnimatedPosition], None] = None,
        interval_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_seconds is None:
            interval_seconds = get_dispatch_config()["animation_interval_ms"] / 1000
        self.on_update = on_update
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.state = IDLE
        self._route: List[Coordinate] = []
        self._duration_ms = 0.0
        self._started_at: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._simulated: Optional[AnimatedPosition] = None
        self._live: Optional[AnimatedPosition] = None

    @property
    def is_running(self) -> bool:
        return self.state == RUNNING

    @property
    def position(self) -> Optional[AnimatedPosition]:
        return self._live or self._simulated

    def start(self, route: Sequence[Any], total_duration_sec: Any) -> bool:
        """
        Begin animating from the start of ``route``; restarts when running.

        Returns False and leaves the animator untouched on unusable input.
        """
        coordinates = [c for c in (to_coordinate(item) for item in route or []) if c]
        duration = _finite(total_duration_sec)
        if len(coordinates) < 2 or duration is None or duration <= 0:
            LOGGER.warning(
                "Invalid animation parameters: %s points, duration=%r",
                len(coordinates),
                total_duration_sec,
            )
            return False

        self._cancel_tick()
        self._route = coordinates
        self._duration_ms = duration * 1000
        self._started_at = self.clock()
        self._simulated = None
        self.state = RUNNING
        self._schedule()
        return True

    def stop(self) -> None:
        self._cancel_tick()
        self._started_at = None
        if self.state == RUNNING:
            self.state = STOPPED

    def report_live_position(self, coordinate: Any, heading: Any = None) -> None:
        """Override the simulated output with a real responder position."""
        point = to_coordinate(coordinate)
        if point is None:
            return
        value = _finite(heading)
        if value is None:
            previous = self.position
            value = previous.heading if previous else 0.0
        self._live = AnimatedPosition(point, value % 360, live=True)
        self._emit(self._live)

    def clear_live_position(self) -> None:
        self._live = None

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.interval_seconds, self._tick)

    def _cancel_tick(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if self.state != RUNNING or self._started_at is None:
            return

        elapsed_ms = (self.clock() - self._started_at) * 1000
        ratio = min(1.0, max(0.0, elapsed_ms / self._duration_ms))
        self._simulated = interpolate(self._route, ratio)

        if ratio >= 1.0:
            self.state = COMPLETED
        else:
            self._schedule()

        if self._live is None:
            self._emit(self._simulated)

    def _emit(self, position: AnimatedPosition) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(position)
        except Exception:
            LOGGER.exception("Position listener failed.")
