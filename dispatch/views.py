from __future__ import annotations

import logging

from django.http import JsonResponse
from django.views.generic import View

from .backends import discover_nearby, list_active_requests
from .conf import get_dispatch_config
from .geo import _finite, to_coordinate
from .models import EmergencyRequest
from .progress import bed_progress, format_distance, format_duration, trip_progress
from .ranking import dispatch_recommendation, rank_hospitals
from .records import SERVICE_AMBULANCE
from .routing import RouteService

logger = logging.getLogger(__name__)


def _point(params, lat_key, lng_key):
    return to_coordinate((params.get(lat_key), params.get(lng_key)))


class HospitalRankingAPIView(View):
    def get(self, request, *args, **kwargs):
        location = _point(request.GET, "lat", "lng")
        if location is None:
            return JsonResponse({"error": "lat and lng are required"}, status=400)

        radius = _finite(request.GET.get("radius"))
        if radius is None or radius <= 0:
            radius = get_dispatch_config()["discovery_radius_meters"]

        hospitals = discover_nearby(location.latitude, location.longitude, radius)
        ranked = rank_hospitals(hospitals, location)
        if not ranked:
            logger.warning("No hospital coverage around %s", location)
            return JsonResponse(
                {
                    "hospitals": [],
                    "best": None,
                    "recommendation": None,
                    "no_coverage": True,
                    "message": "No hospital available nearby. Call emergency services directly.",
                }
            )

        return JsonResponse(
            {
                "hospitals": [item.as_dict() for item in ranked],
                "best": ranked[0].as_dict(),
                "recommendation": dispatch_recommendation(ranked[0]),
                "no_coverage": False,
            }
        )


class RouteAPIView(View):
    async def get(self, request, *args, **kwargs):
        origin = _point(request.GET, "start_lat", "start_lng")
        destination = _point(request.GET, "end_lat", "end_lng")
        if origin is None or destination is None:
            return JsonResponse({"route": None, "error": "Invalid coordinates"}, status=400)

        logger.info("Finding route from %s to %s", origin, destination)
        route = await RouteService().get_route(origin, destination)
        if route is None:
            return JsonResponse({"route": None, "error": "Route not found"})

        payload = route.as_dict()
        payload["distance_text"] = format_distance(route.distance_meters)
        payload["duration_text"] = format_duration(route.duration_sec)
        return JsonResponse({"route": payload})


class ActiveRequestsAPIView(View):
    async def get(self, request, *args, **kwargs):
        user_id = request.GET.get("user_id")
        if not user_id:
            return JsonResponse({"error": "user_id is required"}, status=400)
        rows = await list_active_requests(user_id)
        return JsonResponse({"requests": rows})


class RequestProgressAPIView(View):
    def get(self, request, *args, **kwargs):
        try:
            row = EmergencyRequest.objects.get(request_id=self.kwargs["request_id"])
        except EmergencyRequest.DoesNotExist:
            return JsonResponse({"error": "Request not found"}, status=404)

        derive = trip_progress if row.service_type == SERVICE_AMBULANCE else bed_progress
        progress = derive(row.eta_seconds, row.started_at)
        payload = progress.as_dict()
        payload.update(
            {
                "request_id": row.request_id,
                "service_type": row.service_type,
                "request_status": row.status,
            }
        )
        return JsonResponse(payload)
