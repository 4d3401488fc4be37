"""
Engine configuration read from ``settings.DISPATCH_CONFIG``.
"""
from __future__ import annotations

from typing import Any, Dict

from django.conf import settings

DEFAULTS: Dict[str, Any] = {
    "primary_route_provider": "google",
    "google_maps_api_key": "",
    "google_directions_url": "https://maps.googleapis.com/maps/api/directions/json",
    "osrm_base_url": "https://router.project-osrm.org",
    # Shared by both route providers.
    "route_fetch_timeout_seconds": 8.0,
    "animation_interval_ms": 300,
    "polling_interval_seconds": 15.0,
    "subscription_idle_seconds": 45.0,
    "discovery_radius_meters": 15000,
}


def get_dispatch_config() -> Dict[str, Any]:
    config = dict(DEFAULTS)
    config.update(getattr(settings, "DISPATCH_CONFIG", {}) or {})
    return config
