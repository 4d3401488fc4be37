"""
Single owner of the active ambulance trip and bed booking.

Local actions and remote updates (change subscription or polling) are all
expressed as actions and folded into the state by ``reduce_state``. The
reducer only lets fields present in an update overwrite local ones, ignores
updates for other requests and deletes a record once it reaches a terminal
status, so duplicated or reordered deliveries settle on the same state.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .animation import PositionAnimator
from .conf import get_dispatch_config
from .records import (
    BED_STATUSES,
    BED_TEXT_FIELDS,
    SERVICE_AMBULANCE,
    SERVICE_BED,
    TRIP_STATUSES,
    TRIP_TEXT_FIELDS,
    BedBooking,
    PayloadChanges,
    Responder,
    ResponderDetail,
    Trip,
    is_terminal,
    read_payload,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchState:
    trip: Optional[Trip] = None
    bed_booking: Optional[BedBooking] = None


@dataclass(frozen=True)
class SetTrip:
    trip: Trip


@dataclass(frozen=True)
class SetBedBooking:
    booking: BedBooking


@dataclass(frozen=True)
class ApplyUpdate:
    payload: Dict[str, Any]


@dataclass(frozen=True)
class ClearRecord:
    request_id: str


@dataclass(frozen=True)
class ResponderHydrated:
    request_id: str
    detail: ResponderDetail


def merge_responder(current: Optional[Responder], fields: Dict[str, Any]) -> Optional[Responder]:
    if not fields:
        return current
    if current is None or ("id" in fields and fields["id"] != current.id):
        current = Responder()
    return replace(current, **fields)


def merge_trip(trip: Trip, changes: PayloadChanges) -> Trip:
    updates: Dict[str, Any] = {}
    if changes.status in TRIP_STATUSES:
        updates["status"] = changes.status
    elif changes.status is not None:
        LOGGER.debug("Ignoring unknown trip status %r.", changes.status)
    if changes.eta_seconds is not None:
        updates["eta_seconds"] = changes.eta_seconds
    if changes.started_at is not None:
        updates["started_at"] = changes.started_at
    for key in TRIP_TEXT_FIELDS:
        if key in changes.text:
            updates[key] = changes.text[key]
    if changes.responder:
        updates["assigned_responder"] = merge_responder(
            trip.assigned_responder, changes.responder
        )
    return replace(trip, **updates) if updates else trip


def merge_bed_booking(booking: BedBooking, changes: PayloadChanges) -> BedBooking:
    updates: Dict[str, Any] = {}
    if changes.status in BED_STATUSES:
        updates["status"] = changes.status
    elif changes.status is not None:
        LOGGER.debug("Ignoring unknown bed booking status %r.", changes.status)
    if changes.eta_seconds is not None:
        updates["eta_seconds"] = changes.eta_seconds
    if changes.started_at is not None:
        updates["started_at"] = changes.started_at
    for key in BED_TEXT_FIELDS:
        if key in changes.text:
            updates[key] = changes.text[key]
    return replace(booking, **updates) if updates else booking


def hydrate_responder(responder: Responder, detail: ResponderDetail) -> Responder:
    return replace(
        responder,
        call_sign=detail.call_sign or responder.call_sign,
        vehicle_number=detail.vehicle_number or responder.vehicle_number,
        rating=detail.rating if detail.rating is not None else responder.rating,
        crew=detail.crew or responder.crew,
        name=responder.name or detail.name,
        phone=responder.phone or detail.phone,
        location=responder.location or detail.location,
    )


def reduce_state(state: DispatchState, action: Any) -> DispatchState:
    """Return the state after ``action``; ``state`` itself is never modified."""
    if isinstance(action, SetTrip):
        return replace(state, trip=action.trip)

    if isinstance(action, SetBedBooking):
        return replace(state, bed_booking=action.booking)

    if isinstance(action, ClearRecord):
        if state.trip is not None and state.trip.request_id == action.request_id:
            return replace(state, trip=None)
        if state.bed_booking is not None and state.bed_booking.request_id == action.request_id:
            return replace(state, bed_booking=None)
        return state

    if isinstance(action, ApplyUpdate):
        changes = read_payload(action.payload)
        if changes.request_id is None:
            return state
        if state.trip is not None and state.trip.request_id == changes.request_id:
            if is_terminal(changes.status):
                return replace(state, trip=None)
            return replace(state, trip=merge_trip(state.trip, changes))
        if state.bed_booking is not None and state.bed_booking.request_id == changes.request_id:
            if is_terminal(changes.status):
                return replace(state, bed_booking=None)
            return replace(state, bed_booking=merge_bed_booking(state.bed_booking, changes))
        return state

    if isinstance(action, ResponderHydrated):
        trip = state.trip
        if trip is None or trip.request_id != action.request_id:
            return state
        responder = trip.assigned_responder
        if responder is None or responder.id != action.detail.id:
            return state
        return replace(
            state,
            trip=replace(trip, assigned_responder=hydrate_responder(responder, action.detail)),
        )

    raise TypeError(f"Unknown dispatch action: {action!r}")


def trip_from_payload(payload: Dict[str, Any]) -> Optional[Trip]:
    changes = read_payload(payload)
    if changes.request_id is None or is_terminal(changes.status):
        return None
    return merge_trip(Trip(request_id=changes.request_id), changes)


def bed_booking_from_payload(payload: Dict[str, Any]) -> Optional[BedBooking]:
    changes = read_payload(payload)
    if changes.request_id is None or is_terminal(changes.status):
        return None
    return merge_bed_booking(BedBooking(request_id=changes.request_id), changes)


def latest_by_created(rows: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    best = None
    for row in rows:
        if best is None or str(row.get("created_at") or "") > str(best.get("created_at") or ""):
            best = row
    return best


class DispatchStateStore:
    """
    Owns the Trip and BedBooking slots and their update sources.

    ``channel`` is a change subscription exposing ``subscribe(filter,
    on_update) -> unsubscribe``; ``list_active_requests``, ``get_request``
    and ``get_responder_by_id`` are coroutine functions. Polling only hits the
    backend when no subscription is active or it has been quiet for longer
    than ``idle_seconds``. A held record missing from the active list is
    re-read with ``get_request`` so a terminal status still removes it.
    """

    def __init__(
        self,
        channel: Any = None,
        list_active_requests: Callable[[str], Awaitable[List[Dict[str, Any]]]] = None,
        get_responder_by_id: Callable[[str], Awaitable[Optional[ResponderDetail]]] = None,
        get_request: Callable[[str], Awaitable[Optional[Dict[str, Any]]]] = None,
        animator: PositionAnimator = None,
        polling_interval: float = None,
        idle_seconds: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = get_dispatch_config()
        self.channel = channel
        self.list_active_requests = list_active_requests
        self.get_responder_by_id = get_responder_by_id
        self.get_request = get_request
        self.animator = animator
        self.polling_interval = (
            config["polling_interval_seconds"] if polling_interval is None else polling_interval
        )
        self.idle_seconds = (
            config["subscription_idle_seconds"] if idle_seconds is None else idle_seconds
        )
        self.clock = clock

        self._state = DispatchState()
        self._user_id: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_event_at: Optional[float] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_generation = 0
        self._hydration_task: Optional[asyncio.Task] = None
        self._hydrated_responder_id: Optional[str] = None

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def trip(self) -> Optional[Trip]:
        return self._state.trip

    @property
    def bed_booking(self) -> Optional[BedBooking]:
        return self._state.bed_booking

    @property
    def is_subscribed(self) -> bool:
        return self._unsubscribe is not None

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def dispatch(self, action: Any) -> DispatchState:
        previous = self._state
        self._state = reduce_state(previous, action)
        if self._state is not previous:
            self._after_change(previous, self._state)
        return self._state

    # Optimistic local transitions.

    def start_trip(self, trip: Trip) -> Trip:
        self.dispatch(SetTrip(trip))
        return self.trip

    def start_bed_booking(self, booking: BedBooking) -> BedBooking:
        self.dispatch(SetBedBooking(booking))
        return self.bed_booking

    def update_trip(self, **fields: Any) -> Optional[Trip]:
        if self.trip is None:
            return None
        self.dispatch(ApplyUpdate(dict(fields, request_id=self.trip.request_id)))
        return self.trip

    def update_bed_booking(self, **fields: Any) -> Optional[BedBooking]:
        if self.bed_booking is None:
            return None
        self.dispatch(ApplyUpdate(dict(fields, request_id=self.bed_booking.request_id)))
        return self.bed_booking

    def end_trip(self) -> None:
        if self.trip is not None:
            self.dispatch(ClearRecord(self.trip.request_id))

    def end_bed_booking(self) -> None:
        if self.bed_booking is not None:
            self.dispatch(ClearRecord(self.bed_booking.request_id))

    # Remote updates.

    def receive(self, payload: Dict[str, Any]) -> None:
        """Change-subscription callback."""
        self._last_event_at = self.clock()
        self.dispatch(ApplyUpdate(payload))

    async def resume(self, user_id: str) -> DispatchState:
        """
        Adopt the newest active ambulance and bed requests, then listen.
        """
        self._user_id = user_id
        rows = await self._fetch_active(user_id)
        if rows:
            active = [row for row in rows if not is_terminal(row.get("status"))]
            if self.trip is None:
                row = latest_by_created(
                    [r for r in active if r.get("service_type") == SERVICE_AMBULANCE]
                )
                trip = trip_from_payload(row) if row else None
                if trip is not None:
                    LOGGER.info("Resuming ambulance trip %s.", trip.request_id)
                    self.dispatch(SetTrip(trip))
            if self.bed_booking is None:
                row = latest_by_created([r for r in active if r.get("service_type") == SERVICE_BED])
                booking = bed_booking_from_payload(row) if row else None
                if booking is not None:
                    LOGGER.info("Resuming bed booking %s.", booking.request_id)
                    self.dispatch(SetBedBooking(booking))
        self.listen(user_id)
        return self._state

    def listen(self, user_id: str) -> None:
        self._user_id = user_id
        self._release_channel()
        if self.channel is not None:
            try:
                self._unsubscribe = self.channel.subscribe({"user_id": user_id}, self.receive)
                self._last_event_at = self.clock()
            except Exception as error:
                LOGGER.warning("Change subscription unavailable, polling instead: %s", error)
                self._unsubscribe = None

        if self.list_active_requests is not None and not self.is_polling:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(user_id))

    async def poll_once(self) -> None:
        if self._user_id is None:
            return
        self._poll_generation += 1
        generation = self._poll_generation
        rows = await self._fetch_active(self._user_id)
        if generation != self._poll_generation:
            LOGGER.debug("Discarding stale poll result (generation %s).", generation)
            return
        if rows is None:
            return
        for row in rows:
            self.dispatch(ApplyUpdate(row))

        seen = {str(row.get("request_id")) for row in rows}
        for request_id in self._held_request_ids():
            if request_id in seen:
                continue
            row = await self._fetch_request(request_id)
            if generation != self._poll_generation:
                return
            if row is not None:
                self.dispatch(ApplyUpdate(row))

    def close(self) -> None:
        """Release the subscription, polling and any pending lookups."""
        self._release_channel()
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        self._poll_generation += 1
        self._cancel_hydration()
        if self.animator is not None:
            self.animator.stop()

    def _release_channel(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is None:
            return
        try:
            unsubscribe()
        except Exception:
            LOGGER.exception("Failed to release change subscription.")

    def _subscription_is_fresh(self) -> bool:
        if self._unsubscribe is None or self._last_event_at is None:
            return False
        return self.clock() - self._last_event_at < self.idle_seconds

    async def _poll_loop(self, user_id: str) -> None:
        while True:
            await asyncio.sleep(self.polling_interval)
            if self._subscription_is_fresh():
                continue
            await self.poll_once()

    def _held_request_ids(self) -> List[str]:
        return [
            record.request_id
            for record in (self.trip, self.bed_booking)
            if record is not None
        ]

    async def _fetch_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        if self.get_request is None:
            return None
        try:
            row = await self.get_request(request_id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            LOGGER.warning("Reading request %s failed: %s", request_id, error)
            return None
        return row if isinstance(row, dict) else None

    async def _fetch_active(self, user_id: str) -> Optional[List[Dict[str, Any]]]:
        if self.list_active_requests is None:
            return None
        try:
            rows = await self.list_active_requests(user_id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            LOGGER.warning("Listing active requests failed: %s", error)
            return None
        return [row for row in rows or [] if isinstance(row, dict)]

    def _after_change(self, previous: DispatchState, current: DispatchState) -> None:
        if previous.trip is not None and current.trip is None:
            LOGGER.info("Trip %s ended.", previous.trip.request_id)
            self._cancel_hydration()
            if self.animator is not None:
                self.animator.stop()
                self.animator.clear_live_position()
            return

        trip = current.trip
        responder = trip.assigned_responder if trip else None
        if responder is None:
            return

        before = previous.trip.assigned_responder if previous.trip else None
        if self.animator is not None and responder.location is not None:
            if before is None or before.location != responder.location or before.heading != responder.heading:
                self.animator.report_live_position(responder.location, responder.heading)

        if responder.id is not None and responder.id != self._hydrated_responder_id:
            self._schedule_hydration(trip.request_id, responder.id)

    def _schedule_hydration(self, request_id: str, responder_id: str) -> None:
        if self.get_responder_by_id is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running loop; skipping responder lookup for %s.", responder_id)
            return
        self._cancel_hydration()
        self._hydrated_responder_id = responder_id
        self._hydration_task = loop.create_task(self._hydrate(request_id, responder_id))

    def _cancel_hydration(self) -> None:
        if self._hydration_task is not None:
            self._hydration_task.cancel()
            self._hydration_task = None
        self._hydrated_responder_id = None

    async def _hydrate(self, request_id: str, responder_id: str) -> None:
        try:
            detail = await self.get_responder_by_id(responder_id)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            LOGGER.debug("Responder lookup for %s failed: %s", responder_id, error)
            return
        if detail is not None:
            self.dispatch(ResponderHydrated(request_id, detail))
