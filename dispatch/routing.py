"""
Driving route acquisition with a primary provider and a fallback.

Both providers run under the same timeout. When the primary fails, times out
or returns fewer than two points, the fallback is asked; when both fail the
caller gets None and renders no route.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

import requests
from asgiref.sync import sync_to_async

from .conf import get_dispatch_config
from .geo import Coordinate, _finite, decode_polyline, to_coordinate
from .records import Route

LOGGER = logging.getLogger(__name__)


class RouteProviderError(Exception):
    """A routing provider could not produce a usable route."""


class RouteProvider:
    name = "base"

    def __init__(self, timeout_seconds: float = None):
        if timeout_seconds is None:
            timeout_seconds = get_dispatch_config()["route_fetch_timeout_seconds"]
        self.timeout_seconds = timeout_seconds

    async def fetch_route(self, origin: Coordinate, destination: Coordinate) -> Route:
        return await sync_to_async(self.fetch_route_sync, thread_sensitive=False)(
            origin, destination
        )

    def fetch_route_sync(self, origin: Coordinate, destination: Coordinate) -> Route:
        raise NotImplementedError

    def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = requests.get(url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, json.JSONDecodeError) as error:
            raise RouteProviderError(f"{self.name} request failed: {error}") from error
        if not isinstance(payload, dict):
            raise RouteProviderError(f"{self.name} returned an unexpected payload.")
        return payload


class GoogleDirectionsProvider(RouteProvider):
    name = "google"

    def __init__(self, api_key: str = None, url: str = None, timeout_seconds: float = None):
        super().__init__(timeout_seconds)
        config = get_dispatch_config()
        self.api_key = api_key if api_key is not None else config["google_maps_api_key"]
        self.url = url or config["google_directions_url"]

    def fetch_route_sync(self, origin: Coordinate, destination: Coordinate) -> Route:
        if not self.api_key:
            raise RouteProviderError("Google Maps API key is not configured.")

        payload = self._get_json(
            self.url,
            {
                "origin": f"{origin.latitude},{origin.longitude}",
                "destination": f"{destination.latitude},{destination.longitude}",
                "mode": "driving",
                "departure_time": "now",
                "traffic_model": "best_guess",
                "key": self.api_key,
            },
        )
        return self.parse(payload)

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> Route:
        routes = payload.get("routes") or []
        if not routes:
            raise RouteProviderError(
                f"Google returned no route (status={payload.get('status')})."
            )
        route = routes[0]
        coordinates = decode_polyline((route.get("overview_polyline") or {}).get("points"))
        legs = route.get("legs") or [{}]
        leg = legs[0] or {}

        duration = _finite((leg.get("duration_in_traffic") or {}).get("value"))
        if duration is None:
            duration = _finite((leg.get("duration") or {}).get("value"))
        distance = _finite((leg.get("distance") or {}).get("value"))

        return Route(
            coordinates=tuple(coordinates),
            duration_sec=duration,
            distance_meters=distance,
            provider=cls.name,
        )


class OsrmRouteProvider(RouteProvider):
    name = "osrm"

    def __init__(self, base_url: str = None, timeout_seconds: float = None):
        super().__init__(timeout_seconds)
        self.base_url = (base_url or get_dispatch_config()["osrm_base_url"]).rstrip("/")

    def fetch_route_sync(self, origin: Coordinate, destination: Coordinate) -> Route:
        url = (
            f"{self.base_url}/route/v1/driving/"
            f"{origin.longitude},{origin.latitude};{destination.longitude},{destination.latitude}"
        )
        payload = self._get_json(
            url,
            {
                "overview": "full",
                "geometries": "geojson",
                "alternatives": "false",
                "steps": "false",
            },
        )
        return self.parse(payload)

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> Route:
        if payload.get("code") != "Ok" or not payload.get("routes"):
            raise RouteProviderError(f"OSRM could not find a route: {payload.get('code')}")
        route = payload["routes"][0]
        raw = (route.get("geometry") or {}).get("coordinates") or []

        coordinates = []
        for point in raw:
            # GeoJSON is [lon, lat].
            if isinstance(point, (list, tuple)) and len(point) >= 2:
                coordinate = to_coordinate((point[1], point[0]))
                if coordinate is not None:
                    coordinates.append(coordinate)

        return Route(
            coordinates=tuple(coordinates),
            duration_sec=_finite(route.get("duration")),
            distance_meters=_finite(route.get("distance")),
            provider=cls.name,
        )


PROVIDERS = {
    GoogleDirectionsProvider.name: GoogleDirectionsProvider,
    OsrmRouteProvider.name: OsrmRouteProvider,
}


def build_providers(config: Dict[str, Any] = None) -> Tuple[RouteProvider, RouteProvider]:
    """Primary and fallback provider according to configuration."""
    config = config or get_dispatch_config()
    primary_name = str(config.get("primary_route_provider", "google")).lower()
    if primary_name not in PROVIDERS:
        LOGGER.warning("Unknown route provider %r, using google.", primary_name)
        primary_name = GoogleDirectionsProvider.name
    fallback_name = next(name for name in PROVIDERS if name != primary_name)
    timeout = config["route_fetch_timeout_seconds"]
    return (
        PROVIDERS[primary_name](timeout_seconds=timeout),
        PROVIDERS[fallback_name](timeout_seconds=timeout),
    )


def _route_key(origin: Coordinate, destination: Coordinate) -> str:
    return f"{origin.latitude}-{origin.longitude}-{destination.latitude}-{destination.longitude}"


class RouteService:
    """
    Holds the current route and fetches new ones.

    Every fetch is tagged with a generation id; a result that arrives after a
    newer fetch started is dropped, so the most recent caller always wins.
    """

    def __init__(
        self,
        primary: RouteProvider = None,
        fallback: RouteProvider = None,
        timeout_seconds: float = None,
    ):
        if primary is None or fallback is None:
            default_primary, default_fallback = build_providers()
            primary = primary or default_primary
            fallback = fallback or default_fallback
        if timeout_seconds is None:
            timeout_seconds = get_dispatch_config()["route_fetch_timeout_seconds"]
        self.primary = primary
        self.fallback = fallback
        self.timeout_seconds = timeout_seconds
        self.route: Optional[Route] = None
        self.fit_key: Optional[str] = None
        self.is_calculating = False
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def get_route(self, origin: Any, destination: Any) -> Optional[Route]:
        origin = to_coordinate(origin)
        destination = to_coordinate(destination)
        if origin is None or destination is None:
            LOGGER.warning("Route requested without a valid origin or destination.")
            return None

        key = _route_key(origin, destination)
        if key == self.fit_key and self.route is not None and not self.is_calculating:
            return self.route

        self._generation += 1
        generation = self._generation
        self.is_calculating = True
        try:
            route = await self._fetch(self.primary, origin, destination)
            if route is None and generation == self._generation:
                LOGGER.info("Falling back to %s route provider.", self.fallback.name)
                route = await self._fetch(self.fallback, origin, destination)
        finally:
            if generation == self._generation:
                self.is_calculating = False

        if generation != self._generation:
            LOGGER.debug("Discarding stale route result (generation %s).", generation)
            return None

        if route is None:
            LOGGER.warning("No route available from %s or %s.", self.primary.name, self.fallback.name)
            self.route = None
            self.fit_key = None
            return None

        self.route = route
        self.fit_key = key
        LOGGER.info(
            "Route calculated by %s: %s points, distance=%s m, duration=%s s",
            route.provider,
            len(route.coordinates),
            route.distance_meters,
            route.duration_sec,
        )
        return route

    async def _fetch(
        self, provider: RouteProvider, origin: Coordinate, destination: Coordinate
    ) -> Optional[Route]:
        try:
            route = await asyncio.wait_for(
                provider.fetch_route(origin, destination), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            LOGGER.warning("%s route request timed out after %ss.", provider.name, self.timeout_seconds)
            return None
        except RouteProviderError as error:
            LOGGER.warning("%s route failed: %s", provider.name, error)
            return None
        except Exception:
            LOGGER.exception("%s route provider raised unexpectedly.", provider.name)
            return None

        if route is None or not route.is_valid:
            LOGGER.warning("%s returned fewer than two route points.", provider.name)
            return None
        return route

    def clear(self) -> None:
        """Forget the current route and drop any fetch still in flight."""
        self._generation += 1
        self.route = None
        self.fit_key = None
        self.is_calculating = False
