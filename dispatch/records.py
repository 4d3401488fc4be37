"""
Immutable records exchanged between the dispatch engines.

Snapshots handed to callers are frozen dataclasses; a new record is built with
``dataclasses.replace`` whenever state changes.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .geo import Coordinate, _finite, parse_point, to_coordinate

SERVICE_AMBULANCE = "ambulance"
SERVICE_BED = "bed"

TRIP_STATUSES = (
    "requested",
    "dispatched",
    "accepted",
    "en_route",
    "arrived",
    "completed",
    "cancelled",
)
BED_STATUSES = ("reserved", "ready", "occupied", "completed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "cancelled"})


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(value) if _finite(value) is not None else None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def _non_negative_int(value: Any) -> Optional[int]:
    number = _finite(value)
    if number is None:
        return None
    return max(0, int(number))


@dataclass(frozen=True)
class Hospital:
    id: str
    name: str = ""
    coordinates: Optional[Coordinate] = None
    distance_km: Optional[float] = None
    rating: float = 0.0
    verified: bool = False
    available_beds: int = 0
    ambulances: int = 0
    wait_time_minutes: Optional[int] = None
    specialties: FrozenSet[str] = frozenset()
    address: Optional[str] = None
    service_type: Optional[str] = None
    eta: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["Hospital"]:
        """Normalise a directory payload; None when it carries no id."""
        if not isinstance(payload, dict):
            return None
        hospital_id = _text(payload.get("id"))
        if hospital_id is None:
            return None

        coordinates = to_coordinate(payload.get("coordinates"))
        if coordinates is None:
            coordinates = to_coordinate(
                (payload.get("latitude"), payload.get("longitude"))
            )

        distance_km = _finite(payload.get("distance_km", payload.get("distanceKm")))
        if distance_km is not None and distance_km < 0:
            distance_km = None

        rating = _finite(payload.get("rating")) or 0.0
        wait = payload.get("wait_time_minutes", payload.get("waitTime"))
        if isinstance(wait, str):
            match = re.match(r"\s*(\d+)", wait)
            wait = match.group(1) if match else None

        return cls(
            id=hospital_id,
            name=_text(payload.get("name")) or "",
            coordinates=coordinates,
            distance_km=distance_km,
            rating=min(5.0, max(0.0, rating)),
            verified=bool(payload.get("verified", False)),
            available_beds=_non_negative_int(
                payload.get("available_beds", payload.get("availableBeds"))
            ) or 0,
            ambulances=_non_negative_int(payload.get("ambulances")) or 0,
            wait_time_minutes=_non_negative_int(wait),
            specialties=frozenset(
                s for s in (payload.get("specialties") or []) if isinstance(s, str)
            ),
            address=_text(payload.get("address")),
            service_type=_text(payload.get("service_type", payload.get("type"))),
            eta=_text(payload.get("eta")),
        )


@dataclass(frozen=True)
class Route:
    coordinates: Tuple[Coordinate, ...]
    duration_sec: Optional[float] = None
    distance_meters: Optional[float] = None
    provider: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return len(self.coordinates) >= 2

    def as_dict(self) -> Dict[str, Any]:
        return {
            "path": [c.as_dict() for c in self.coordinates],
            "duration_sec": self.duration_sec,
            "distance_meters": self.distance_meters,
            "provider": self.provider,
        }


@dataclass(frozen=True)
class Responder:
    id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle_plate: Optional[str] = None
    location: Optional[Coordinate] = None
    heading: Optional[float] = None
    # Hydrated from the responder directory.
    call_sign: Optional[str] = None
    vehicle_number: Optional[str] = None
    rating: Optional[float] = None
    crew: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResponderDetail:
    id: str
    call_sign: Optional[str] = None
    vehicle_number: Optional[str] = None
    rating: Optional[float] = None
    crew: Tuple[str, ...] = ()
    phone: Optional[str] = None
    name: Optional[str] = None
    location: Optional[Coordinate] = None


@dataclass(frozen=True)
class Trip:
    request_id: str
    hospital_id: Optional[str] = None
    status: str = "requested"
    eta_seconds: Optional[float] = None
    started_at: Optional[float] = None
    assigned_responder: Optional[Responder] = None
    hospital_name: Optional[str] = None
    ambulance_type: Optional[str] = None


@dataclass(frozen=True)
class BedBooking:
    request_id: str
    hospital_id: Optional[str] = None
    status: str = "reserved"
    eta_seconds: Optional[float] = None
    started_at: Optional[float] = None
    bed_number: Optional[str] = None
    bed_type: Optional[str] = None
    hospital_name: Optional[str] = None
    specialty: Optional[str] = None


# Payload keys copied verbatim into record fields when present and usable.
TRIP_TEXT_FIELDS = ("hospital_id", "hospital_name", "ambulance_type")
BED_TEXT_FIELDS = ("hospital_id", "hospital_name", "bed_number", "bed_type", "specialty")
RESPONDER_TEXT_FIELDS = {
    "responder_id": "id",
    "responder_name": "name",
    "responder_phone": "phone",
    "vehicle_plate": "vehicle_plate",
}


@dataclass
class PayloadChanges:
    """Fields of a remote payload that are present and well-formed."""

    request_id: Optional[str] = None
    service_type: Optional[str] = None
    status: Optional[str] = None
    eta_seconds: Optional[float] = None
    started_at: Optional[float] = None
    text: Dict[str, str] = field(default_factory=dict)
    responder: Dict[str, Any] = field(default_factory=dict)


def read_payload(payload: Dict[str, Any]) -> PayloadChanges:
    """
    Extract the usable fields of a partial request payload.

    Absent, null or malformed values are left out so that they never
    overwrite known local state.
    """
    changes = PayloadChanges()
    if not isinstance(payload, dict):
        return changes

    changes.request_id = _text(payload.get("request_id"))
    changes.service_type = _text(payload.get("service_type"))
    status = _text(payload.get("status"))
    if status is not None:
        changes.status = status.lower()

    eta = _finite(payload.get("eta_seconds"))
    if eta is not None and eta >= 0:
        changes.eta_seconds = eta
    started_at = _finite(payload.get("started_at"))
    if started_at is not None:
        changes.started_at = started_at

    for key in set(TRIP_TEXT_FIELDS) | set(BED_TEXT_FIELDS):
        value = _text(payload.get(key))
        if value is not None:
            changes.text[key] = value

    for key, attr in RESPONDER_TEXT_FIELDS.items():
        value = _text(payload.get(key))
        if value is not None:
            changes.responder[attr] = value
    location = parse_point(payload.get("responder_location"))
    if location is not None:
        changes.responder["location"] = location
    heading = _finite(payload.get("responder_heading"))
    if heading is not None:
        changes.responder["heading"] = heading % 360

    return changes

