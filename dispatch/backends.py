"""
Database-backed implementations of the collaborators the dispatch engines
consume: hospital discovery, active-request polling, responder lookup and a
change subscription built on Django's ``post_save`` signal.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional

from asgiref.sync import sync_to_async
from django.db.models.signals import post_save

from .geo import haversine_km, to_coordinate
from .models import Ambulance, EmergencyRequest
from .models import Hospital as HospitalRow
from .records import Hospital, ResponderDetail

LOGGER = logging.getLogger(__name__)


def discover_nearby(lat: float, lng: float, radius_meters: float) -> List[Hospital]:
    """Hospitals within ``radius_meters`` of the point, nearest first."""
    origin = to_coordinate((lat, lng))
    if origin is None:
        return []

    radius_km = max(radius_meters, 0) / 1000
    hospitals: List[Hospital] = []
    for row in HospitalRow.objects.all():
        payload = row.as_payload()
        distance_km = haversine_km(origin, (row.latitude, row.longitude))
        if distance_km is None or distance_km > radius_km:
            continue
        payload["distance_km"] = distance_km
        hospital = Hospital.from_payload(payload)
        if hospital is not None:
            hospitals.append(hospital)

    hospitals.sort(key=lambda hospital: hospital.distance_km)
    return hospitals


def _active_request_rows(user_id: str) -> List[Dict[str, Any]]:
    queryset = (
        EmergencyRequest.objects.filter(user_id=user_id)
        .exclude(status__in=EmergencyRequest.TERMINAL)
        .select_related("ambulance")
    )
    return [row.as_payload() for row in queryset]


async def list_active_requests(user_id: str) -> List[Dict[str, Any]]:
    return await sync_to_async(_active_request_rows)(user_id)


def _request_row(request_id: str) -> Optional[Dict[str, Any]]:
    row = (
        EmergencyRequest.objects.filter(request_id=request_id)
        .select_related("ambulance")
        .first()
    )
    return row.as_payload() if row is not None else None


async def get_request(request_id: str) -> Optional[Dict[str, Any]]:
    """Authoritative row for ``request_id``, whatever its status."""
    return await sync_to_async(_request_row)(request_id)


def _responder_detail(responder_id: str) -> Optional[ResponderDetail]:
    try:
        ambulance = Ambulance.objects.get(pk=responder_id)
    except (Ambulance.DoesNotExist, ValueError):
        return None
    return ResponderDetail(
        id=str(ambulance.pk),
        call_sign=ambulance.call_sign or None,
        vehicle_number=ambulance.vehicle_number or None,
        rating=ambulance.rating,
        crew=tuple(str(member) for member in ambulance.crew or []),
        phone=ambulance.driver_phone or None,
        name=ambulance.driver_name or None,
        location=ambulance.location,
    )


async def get_responder_by_id(responder_id: str) -> Optional[ResponderDetail]:
    return await sync_to_async(_responder_detail)(responder_id)


class SignalChangeChannel:
    """
    Change subscription over ``EmergencyRequest`` saves.

    Saves made with ``update_fields`` are delivered as partial payloads. When
    the subscriber has a running event loop, deliveries are handed to that
    loop; otherwise the callback runs in the saving thread.
    """

    _ids = itertools.count(1)

    def subscribe(self, filters: Dict[str, Any], on_update: Callable[[Dict[str, Any]], None]):
        filters = dict(filters or {})
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        uid = f"dispatch-channel-{next(self._ids)}"

        def receiver(sender, instance, created=False, update_fields=None, **kwargs):
            if any(str(getattr(instance, key, None)) != str(value) for key, value in filters.items()):
                return
            fields = None if created or not update_fields else sorted(update_fields)
            payload = instance.as_payload(fields)
            if loop is not None and not loop.is_closed():
                loop.call_soon_threadsafe(on_update, payload)
            else:
                on_update(payload)

        post_save.connect(receiver, sender=EmergencyRequest, weak=False, dispatch_uid=uid)
        LOGGER.info("Subscribed to request changes for %s.", filters)

        def unsubscribe():
            post_save.disconnect(sender=EmergencyRequest, dispatch_uid=uid)
            LOGGER.info("Unsubscribed from request changes for %s.", filters)

        return unsubscribe
