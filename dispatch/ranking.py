"""
Hospital ranking for emergency dispatch.

Each hospital gets a weighted suitability score out of 100; the best-scoring
hospital is proposed for dispatch.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .geo import haversine_km, to_coordinate
from .records import Hospital

LOGGER = logging.getLogger(__name__)

DISTANCE_WEIGHT = 0.4
BEDS_WEIGHT = 0.3
WAIT_WEIGHT = 0.2
RESPONDERS_WEIGHT = 0.1

POINTS_LOST_PER_KM = 10
POINTS_PER_BED = 2
POINTS_LOST_PER_WAIT_MINUTE = 2
POINTS_PER_AMBULANCE = 25

# Used when a hospital reports no wait time.
DEFAULT_WAIT_MINUTES = 15


@dataclass(frozen=True)
class DispatchScore:
    score: int
    distance_score: float
    bed_score: float
    wait_score: float
    responder_score: float
    distance_km: float


@dataclass(frozen=True)
class RankedHospital:
    hospital: Hospital
    dispatch: DispatchScore

    @property
    def score(self) -> int:
        return self.dispatch.score

    def as_dict(self) -> Dict[str, Any]:
        hospital = self.hospital
        return {
            "id": hospital.id,
            "name": hospital.name,
            "address": hospital.address,
            "location": hospital.coordinates.as_dict() if hospital.coordinates else None,
            "distance_km": round(self.dispatch.distance_km, 2),
            "available_beds": hospital.available_beds,
            "ambulances": hospital.ambulances,
            "wait_time_minutes": hospital.wait_time_minutes,
            "rating": hospital.rating,
            "verified": hospital.verified,
            "specialties": sorted(hospital.specialties),
            "dispatch_score": self.score,
        }


def _clamp(value: float) -> float:
    return min(100.0, max(0.0, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_hospital(hospital: Hospital, requester_location: Any) -> Optional[DispatchScore]:
    """
    Score a hospital for a requester; None when it cannot be scored at all.
    """
    requester = to_coordinate(requester_location)
    if hospital is None or hospital.coordinates is None or requester is None:
        return None

    distance_km = hospital.distance_km
    if distance_km is None:
        distance_km = haversine_km(requester, hospital.coordinates)
    if distance_km is None:
        return None

    wait_minutes = hospital.wait_time_minutes
    if wait_minutes is None:
        wait_minutes = DEFAULT_WAIT_MINUTES

    distance_score = _clamp(100 - distance_km * POINTS_LOST_PER_KM)
    bed_score = _clamp(hospital.available_beds * POINTS_PER_BED)
    wait_score = _clamp(100 - wait_minutes * POINTS_LOST_PER_WAIT_MINUTE)
    responder_score = _clamp(hospital.ambulances * POINTS_PER_AMBULANCE)

    total = (
        distance_score * DISTANCE_WEIGHT
        + bed_score * BEDS_WEIGHT
        + wait_score * WAIT_WEIGHT
        + responder_score * RESPONDERS_WEIGHT
    )
    return DispatchScore(
        score=_round_half_up(total),
        distance_score=distance_score,
        bed_score=bed_score,
        wait_score=wait_score,
        responder_score=responder_score,
        distance_km=distance_km,
    )


def rank_hospitals(hospitals: Iterable[Hospital], requester_location: Any) -> List[RankedHospital]:
    """
    Rank hospitals best-first.

    Hospitals without a positive score are left out; equal scores keep their
    input order.
    """
    if hospitals is None or to_coordinate(requester_location) is None:
        return []

    ranked: List[RankedHospital] = []
    for hospital in hospitals:
        dispatch = score_hospital(hospital, requester_location)
        if dispatch is None or dispatch.score <= 0:
            continue
        ranked.append(RankedHospital(hospital=hospital, dispatch=dispatch))

    ranked.sort(key=lambda item: item.score, reverse=True)
    return ranked


def select_best(hospitals: Iterable[Hospital], requester_location: Any) -> Optional[RankedHospital]:
    ranked = rank_hospitals(hospitals, requester_location)
    if not ranked:
        LOGGER.warning("No suitable hospital found for dispatch.")
        return None

    best = ranked[0]
    LOGGER.info(
        "Selected hospital %s (score=%s, distance=%.2f km, beds=%s)",
        best.hospital.name or best.hospital.id,
        best.score,
        best.dispatch.distance_km,
        best.hospital.available_beds,
    )
    return best


def selection_reasons(ranked: RankedHospital) -> List[str]:
    hospital = ranked.hospital
    reasons: List[str] = []

    if ranked.dispatch.distance_km < 5:
        reasons.append(f"Very close ({ranked.dispatch.distance_km:.1f} km)")
    if hospital.available_beds > 20:
        reasons.append(f"High bed availability ({hospital.available_beds} beds)")
    if hospital.wait_time_minutes is not None and hospital.wait_time_minutes < 15:
        reasons.append(f"Low wait time ({hospital.wait_time_minutes} mins)")
    if hospital.ambulances > 0:
        reasons.append(f"On-site ambulances ({hospital.ambulances})")

    return reasons or ["Best overall match"]


def dispatch_recommendation(ranked: Optional[RankedHospital]) -> Optional[Dict[str, Any]]:
    if ranked is None:
        return None

    hospital = ranked.hospital
    label = hospital.name or hospital.id
    return {
        "hospital_id": hospital.id,
        "hospital_name": hospital.name,
        "hospital_address": hospital.address,
        "estimated_arrival": hospital.eta,
        "available_beds": hospital.available_beds,
        "wait_time_minutes": hospital.wait_time_minutes,
        "dispatch_score": ranked.score,
        "recommendation": f"Selected {label} - Score: {ranked.score}/100",
        "reasons": selection_reasons(ranked),
    }
