import asyncio
from unittest import mock

import requests
from asgiref.sync import async_to_sync
from django.test import SimpleTestCase, TestCase

from . import animation, geo, progress, ranking, reconcile
from .backends import (
    SignalChangeChannel,
    discover_nearby,
    get_request,
    get_responder_by_id,
    list_active_requests,
)
from .geo import Coordinate
from .models import Ambulance, EmergencyRequest
from .models import Hospital as HospitalRow
from .records import BedBooking, Hospital, Responder, ResponderDetail, Route, Trip
from .routing import (
    GoogleDirectionsProvider,
    OsrmRouteProvider,
    RouteProviderError,
    RouteService,
)

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_route(*points, provider="fake"):
    return Route(
        coordinates=tuple(Coordinate(lat, lng) for lat, lng in points),
        duration_sec=120.0,
        distance_meters=1500.0,
        provider=provider,
    )


class FakeProvider:
    def __init__(self, name, result=None, error=None, delay=0.0):
        self.name = name
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    async def fetch_route(self, origin, destination):
        self.calls.append(destination)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class GatedProvider:
    """Answers per destination, optionally waiting for a gate first."""

    name = "gated"

    def __init__(self):
        self.routes = {}
        self.gates = {}
        self.errors = {}

    async def fetch_route(self, origin, destination):
        gate = self.gates.get(destination)
        if gate is not None:
            await gate.wait()
        if destination in self.errors:
            raise self.errors[destination]
        return self.routes[destination]


class GeoTests(SimpleTestCase):
    def test_decodes_reference_polyline(self):
        points = geo.decode_polyline("_p~iF~ps|U_ulLnnqC_mqNvxq`@")

        self.assertEqual(len(points), 3)
        self.assertAlmostEqual(points[0].latitude, 38.5)
        self.assertAlmostEqual(points[0].longitude, -120.2)
        self.assertAlmostEqual(points[2].latitude, 43.252)
        self.assertAlmostEqual(points[2].longitude, -126.453)

    def test_malformed_polyline_decodes_to_empty(self):
        self.assertEqual(geo.decode_polyline("_p~iF~ps|U_ulL"), [])
        self.assertEqual(geo.decode_polyline(None), [])
        self.assertEqual(geo.decode_polyline(12345), [])

    def test_non_finite_coordinates_are_absent(self):
        self.assertIsNone(geo.to_coordinate((float("nan"), 90.0)))
        self.assertIsNone(geo.to_coordinate({"lat": 23.8, "lng": float("inf")}))
        self.assertIsNone(geo.haversine_km((float("nan"), 0), (0, 0)))
        self.assertEqual(geo.bearing_deg(None, (0, 0)), 0.0)
        self.assertFalse(geo.is_valid_coordinate({"latitude": None, "longitude": 1}))

    def test_bearing_and_distance(self):
        self.assertAlmostEqual(geo.bearing_deg((0, 0), (0, 1)), 90.0)
        self.assertAlmostEqual(geo.bearing_deg((0, 0), (1, 0)), 0.0)
        self.assertAlmostEqual(geo.haversine_km((0, 0), (1, 0)), 111.19, delta=0.1)

    def test_coordinate_bounds(self):
        bounds = geo.coordinate_bounds([(23.7, 90.3), (23.9, 90.5), (float("nan"), 0)])

        self.assertEqual(
            bounds, {"min_lat": 23.7, "max_lat": 23.9, "min_lng": 90.3, "max_lng": 90.5}
        )
        self.assertIsNone(geo.coordinate_bounds([]))

    def test_parse_point_formats(self):
        expected = Coordinate(23.8, 90.4)
        self.assertEqual(geo.parse_point({"type": "Point", "coordinates": [90.4, 23.8]}), expected)
        self.assertEqual(geo.parse_point('{"type": "Point", "coordinates": [90.4, 23.8]}'), expected)
        self.assertEqual(geo.parse_point("POINT(90.4 23.8)"), expected)
        self.assertEqual(geo.parse_point("SRID=4326;POINT(90.4 23.8)"), expected)

    def test_parse_point_rejects_malformed_input(self):
        self.assertIsNone(geo.parse_point("not a point"))
        self.assertIsNone(geo.parse_point("{broken json"))
        self.assertIsNone(geo.parse_point("LINESTRING(0 0, 1 1)"))
        self.assertIsNone(geo.parse_point(42))
        self.assertIsNone(geo.parse_point("[" * 100000))


class RankingTests(SimpleTestCase):
    requester = Coordinate(23.81, 90.41)

    def hospital(self, hospital_id, **overrides):
        values = {
            "id": hospital_id,
            "name": f"Hospital {hospital_id}",
            "coordinates": Coordinate(23.8, 90.4),
            "distance_km": 2.0,
            "available_beds": 10,
            "ambulances": 1,
            "wait_time_minutes": 10,
        }
        values.update(overrides)
        return Hospital(**values)

    def test_close_well_equipped_hospital_outranks_distant_empty_one(self):
        far = self.hospital("far", distance_km=50, available_beds=0, ambulances=0)
        near = self.hospital("near", distance_km=1, available_beds=10, ambulances=1)

        ranked = ranking.rank_hospitals([far, near], self.requester)

        self.assertEqual([item.hospital.id for item in ranked], ["near", "far"])
        self.assertEqual(ranked[0].score, 61)
        self.assertEqual(ranked[1].score, 16)

    def test_ranking_is_deterministic_and_stable(self):
        hospitals = [self.hospital("a"), self.hospital("b"), self.hospital("c", distance_km=0.5)]

        first = ranking.rank_hospitals(hospitals, self.requester)
        second = ranking.rank_hospitals(hospitals, self.requester)

        self.assertEqual([h.hospital.id for h in first], ["c", "a", "b"])
        self.assertEqual(first, second)

    def test_hospitals_without_coordinates_are_excluded(self):
        ranked = ranking.rank_hospitals(
            [self.hospital("nowhere", coordinates=None), self.hospital("here")],
            self.requester,
        )

        self.assertEqual([h.hospital.id for h in ranked], ["here"])

    def test_non_positive_scores_are_excluded(self):
        hopeless = self.hospital(
            "x", distance_km=40, available_beds=0, ambulances=0, wait_time_minutes=90
        )
        self.assertEqual(ranking.rank_hospitals([hopeless], self.requester), [])

    def test_missing_distance_is_computed_from_coordinates(self):
        hospital = self.hospital("h", distance_km=None, coordinates=Coordinate(23.81, 90.41))

        score = ranking.score_hospital(hospital, self.requester)

        self.assertAlmostEqual(score.distance_km, 0.0)
        self.assertEqual(score.distance_score, 100.0)

    def test_select_best_reports_no_coverage(self):
        self.assertIsNone(ranking.select_best([], self.requester))
        self.assertIsNone(ranking.select_best([self.hospital("a")], None))

    def test_recommendation_lists_reasons(self):
        best = ranking.select_best(
            [self.hospital("a", available_beds=30, ambulances=2)], self.requester
        )

        recommendation = ranking.dispatch_recommendation(best)

        self.assertEqual(recommendation["hospital_id"], "a")
        self.assertIn("Score:", recommendation["recommendation"])
        self.assertTrue(any(r.startswith("Very close") for r in recommendation["reasons"]))
        self.assertTrue(any(r.startswith("High bed availability") for r in recommendation["reasons"]))
        self.assertTrue(any(r.startswith("On-site ambulances") for r in recommendation["reasons"]))
        self.assertIsNone(ranking.dispatch_recommendation(None))

    def test_hospital_payload_normalisation(self):
        hospital = Hospital.from_payload(
            {
                "id": 7,
                "name": "City General",
                "latitude": 23.8,
                "longitude": 90.4,
                "waitTime": "15 mins",
                "availableBeds": 12,
                "rating": 9,
            }
        )

        self.assertEqual(hospital.id, "7")
        self.assertEqual(hospital.wait_time_minutes, 15)
        self.assertEqual(hospital.available_beds, 12)
        self.assertEqual(hospital.rating, 5.0)
        self.assertEqual(hospital.coordinates, Coordinate(23.8, 90.4))
        self.assertIsNone(Hospital.from_payload({"name": "no id"}))


class ProgressTests(SimpleTestCase):
    def test_progress_is_clamped(self):
        self.assertEqual(progress.progress_fraction(600, T0, T0), 0.0)
        self.assertEqual(progress.progress_fraction(600, T0, T0 + 600_000), 1.0)
        self.assertEqual(progress.progress_fraction(600, T0, T0 + 900_000), 1.0)
        self.assertEqual(progress.progress_fraction(600, T0, T0 - 60_000), 0.0)

    def test_absent_or_zero_eta_has_no_progress(self):
        self.assertIsNone(progress.progress_fraction(None, T0, T0))
        self.assertIsNone(progress.progress_fraction(0, T0, T0))
        self.assertIsNone(progress.progress_fraction(600, None, T0))
        self.assertIsNone(progress.remaining_seconds(None, T0, T0))
        self.assertEqual(progress.remaining_seconds(0, T0, T0), 0)

    def test_trip_status_thresholds(self):
        self.assertEqual(progress.trip_status_label(0.1), "Dispatched")
        self.assertEqual(progress.trip_status_label(0.5), "En Route")
        self.assertEqual(progress.trip_status_label(0.9), "Arriving")
        self.assertEqual(progress.trip_status_label(1.0), "Arrived")
        self.assertEqual(progress.trip_status_label(None), "En Route")

    def test_bed_status_thresholds(self):
        self.assertEqual(progress.bed_status_label(0.1), "Reserved")
        self.assertEqual(progress.bed_status_label(0.5), "Waiting")
        self.assertEqual(progress.bed_status_label(1.0), "Ready")

    def test_remaining_time_formatting(self):
        self.assertEqual(progress.format_remaining(600), "10m")
        self.assertEqual(progress.format_remaining(125), "2m 5s")
        self.assertEqual(progress.format_remaining(45), "45s")
        self.assertIsNone(progress.format_remaining(None))
        self.assertEqual(progress.format_duration(3720), "1h 2m")
        self.assertEqual(progress.format_duration(None), "--")
        self.assertEqual(progress.format_duration(59.6), "1m 0s")
        self.assertEqual(progress.format_duration(119.7), "2m 0s")
        self.assertEqual(progress.format_duration(44.4), "44s")
        self.assertEqual(progress.format_distance(2500), "2.5 km")
        self.assertEqual(progress.format_distance(420), "420 m")

    def test_snapshot_recomputes_from_start_time(self):
        snapshot = progress.trip_progress(600, T0, T0 + 300_000)

        self.assertEqual(snapshot.remaining_seconds, 300)
        self.assertEqual(snapshot.progress, 0.5)
        self.assertEqual(snapshot.status, "En Route")
        self.assertEqual(snapshot.formatted_remaining, "5m")
        self.assertEqual(progress.trip_progress(600, T0, T0 + 300_000), snapshot)

        bed = progress.bed_progress(1000, T0, T0 + 100_000)
        self.assertEqual(bed.status, "Reserved")
        self.assertEqual(bed.remaining_seconds, 900)


class RouteProviderParsingTests(SimpleTestCase):
    def test_google_payload_prefers_traffic_duration(self):
        route = GoogleDirectionsProvider.parse(
            {
                "status": "OK",
                "routes": [
                    {
                        "overview_polyline": {"points": "_p~iF~ps|U_ulLnnqC_mqNvxq`@"},
                        "legs": [
                            {
                                "duration": {"value": 600},
                                "duration_in_traffic": {"value": 840},
                                "distance": {"value": 5200},
                            }
                        ],
                    }
                ],
            }
        )

        self.assertEqual(len(route.coordinates), 3)
        self.assertEqual(route.duration_sec, 840)
        self.assertEqual(route.distance_meters, 5200)
        self.assertEqual(route.provider, "google")

    def test_osrm_payload_flips_geojson_order(self):
        route = OsrmRouteProvider.parse(
            {
                "code": "Ok",
                "routes": [
                    {
                        "geometry": {"coordinates": [[90.4, 23.8], [90.41, 23.81]]},
                        "duration": 95.5,
                        "distance": 1400.0,
                    }
                ],
            }
        )

        self.assertEqual(route.coordinates[0], Coordinate(23.8, 90.4))
        self.assertEqual(route.duration_sec, 95.5)

    def test_osrm_error_code_raises(self):
        with self.assertRaises(RouteProviderError):
            OsrmRouteProvider.parse({"code": "NoRoute", "routes": []})

    def test_google_without_key_fails_fast(self):
        provider = GoogleDirectionsProvider(api_key="", timeout_seconds=1)
        with self.assertRaises(RouteProviderError):
            provider.fetch_route_sync(Coordinate(0, 0), Coordinate(0, 1))

    @mock.patch("dispatch.routing.requests.get")
    def test_osrm_http_request(self, mock_get):
        mock_get.return_value.json.return_value = {
            "code": "Ok",
            "routes": [{"geometry": {"coordinates": [[1, 0], [2, 0]]}, "duration": 10, "distance": 20}],
        }
        provider = OsrmRouteProvider(base_url="http://osrm.local/", timeout_seconds=3)

        route = provider.fetch_route_sync(Coordinate(0, 1), Coordinate(0, 2))

        self.assertEqual(len(route.coordinates), 2)
        url = mock_get.call_args[0][0]
        self.assertEqual(url, "http://osrm.local/route/v1/driving/1,0;2,0")
        self.assertEqual(mock_get.call_args[1]["timeout"], 3)

    @mock.patch("dispatch.routing.requests.get")
    def test_http_errors_become_provider_errors(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("offline")
        provider = OsrmRouteProvider(base_url="http://osrm.local", timeout_seconds=3)

        with self.assertRaises(RouteProviderError):
            provider.fetch_route_sync(Coordinate(0, 1), Coordinate(0, 2))


class RouteServiceTests(SimpleTestCase):
    origin = Coordinate(23.80, 90.40)
    destination = Coordinate(23.75, 90.39)

    async def test_primary_route_is_used_when_available(self):
        primary = FakeProvider("google", result=make_route((0, 0), (0, 1), provider="google"))
        fallback = FakeProvider("osrm", result=make_route((1, 1), (1, 2), provider="osrm"))
        service = RouteService(primary, fallback, timeout_seconds=1)

        route = await service.get_route(self.origin, self.destination)

        self.assertEqual(route.provider, "google")
        self.assertEqual(fallback.calls, [])
        self.assertIs(service.route, route)
        self.assertFalse(service.is_calculating)

    async def test_falls_back_when_primary_rejects(self):
        primary = FakeProvider("google", error=RouteProviderError("boom"))
        fallback = FakeProvider("osrm", result=make_route((1, 1), (1, 2), provider="osrm"))
        service = RouteService(primary, fallback, timeout_seconds=1)

        route = await service.get_route(self.origin, self.destination)

        self.assertEqual(route.provider, "osrm")

    async def test_falls_back_when_primary_times_out(self):
        primary = FakeProvider("google", result=make_route((0, 0), (0, 1)), delay=1.0)
        fallback = FakeProvider("osrm", result=make_route((1, 1), (1, 2), provider="osrm"))
        service = RouteService(primary, fallback, timeout_seconds=0.05)

        route = await service.get_route(self.origin, self.destination)

        self.assertEqual(route.provider, "osrm")

    async def test_falls_back_when_primary_returns_single_point(self):
        primary = FakeProvider("google", result=make_route((0, 0)))
        fallback = FakeProvider("osrm", result=make_route((1, 1), (1, 2), provider="osrm"))
        service = RouteService(primary, fallback, timeout_seconds=1)

        route = await service.get_route(self.origin, self.destination)

        self.assertEqual(route.provider, "osrm")

    async def test_both_providers_failing_yields_no_route(self):
        primary = FakeProvider("google", error=RouteProviderError("down"))
        fallback = FakeProvider("osrm", error=ValueError("unexpected"))
        service = RouteService(primary, fallback, timeout_seconds=1)
        service.route = make_route((5, 5), (5, 6))

        route = await service.get_route(self.origin, self.destination)

        self.assertIsNone(route)
        self.assertIsNone(service.route)

    async def test_invalid_origin_is_rejected(self):
        primary = FakeProvider("google", result=make_route((0, 0), (0, 1)))
        service = RouteService(primary, FakeProvider("osrm"), timeout_seconds=1)

        self.assertIsNone(await service.get_route((float("nan"), 0), self.destination))
        self.assertEqual(primary.calls, [])

    async def test_stale_fetch_is_discarded(self):
        provider = GatedProvider()
        first_destination = Coordinate(10, 10)
        second_destination = Coordinate(20, 20)
        provider.routes[first_destination] = make_route((0, 0), (10, 10), provider="first")
        provider.routes[second_destination] = make_route((0, 0), (20, 20), provider="second")
        gate = asyncio.Event()
        provider.gates[first_destination] = gate
        service = RouteService(provider, FakeProvider("osrm"), timeout_seconds=1)

        first = asyncio.ensure_future(service.get_route(self.origin, first_destination))
        await asyncio.sleep(0)
        second = await service.get_route(self.origin, second_destination)
        gate.set()
        stale = await first

        self.assertIsNone(stale)
        self.assertEqual(second.provider, "second")
        self.assertEqual(service.route.provider, "second")

    async def test_superseded_request_skips_fallback(self):
        provider = GatedProvider()
        first_destination = Coordinate(10, 10)
        second_destination = Coordinate(20, 20)
        gate = asyncio.Event()
        provider.gates[first_destination] = gate
        provider.errors[first_destination] = RouteProviderError("no route")
        provider.routes[second_destination] = make_route((0, 0), (20, 20), provider="second")
        fallback = FakeProvider("osrm", result=make_route((1, 1), (1, 2), provider="osrm"))
        service = RouteService(provider, fallback, timeout_seconds=1)

        first = asyncio.ensure_future(service.get_route(self.origin, first_destination))
        await asyncio.sleep(0)
        await service.get_route(self.origin, second_destination)
        gate.set()

        self.assertIsNone(await first)
        self.assertEqual(fallback.calls, [])
        self.assertEqual(service.route.provider, "second")

    async def test_same_request_reuses_current_route(self):
        primary = FakeProvider("google", result=make_route((0, 0), (0, 1)))
        service = RouteService(primary, FakeProvider("osrm"), timeout_seconds=1)

        first = await service.get_route(self.origin, self.destination)
        second = await service.get_route(self.origin, self.destination)

        self.assertIs(first, second)
        self.assertEqual(len(primary.calls), 1)

        service.clear()
        self.assertIsNone(service.route)
        self.assertIsNone(service.fit_key)


class AnimationTests(SimpleTestCase):
    route = [(0.0, 0.0), (0.0, 1.0)]

    def test_interpolation_midpoint(self):
        position = animation.interpolate([Coordinate(0, 0), Coordinate(0, 1)], 0.5)

        self.assertAlmostEqual(position.coordinate.longitude, 0.5)
        self.assertAlmostEqual(position.heading, 90.0)

    async def test_final_coordinate_reported_once(self):
        clock = FakeClock()
        updates = []
        animator = animation.PositionAnimator(
            on_update=updates.append, interval_seconds=0.01, clock=clock
        )

        self.assertTrue(animator.start(self.route, 5))
        clock.now += 2.5
        await asyncio.sleep(0.05)
        self.assertEqual(animator.state, animation.RUNNING)
        self.assertTrue(updates)
        self.assertAlmostEqual(updates[-1].coordinate.longitude, 0.5)

        clock.now += 3
        await asyncio.sleep(0.05)
        await asyncio.sleep(0.05)

        final = [u for u in updates if u.coordinate == Coordinate(0.0, 1.0)]
        self.assertEqual(len(final), 1)
        self.assertIs(updates[-1], final[0])
        self.assertEqual(animator.state, animation.COMPLETED)
        self.assertAlmostEqual(animator.position.heading, 90.0)

    async def test_stop_cancels_pending_tick(self):
        updates = []
        animator = animation.PositionAnimator(
            on_update=updates.append, interval_seconds=0.01, clock=FakeClock()
        )

        animator.start(self.route, 5)
        animator.stop()
        animator.stop()
        await asyncio.sleep(0.05)

        self.assertEqual(updates, [])
        self.assertEqual(animator.state, animation.STOPPED)

    async def test_live_position_overrides_without_pausing(self):
        clock = FakeClock()
        updates = []
        animator = animation.PositionAnimator(
            on_update=updates.append, interval_seconds=0.01, clock=clock
        )
        animator.start(self.route, 5)

        animator.report_live_position(Coordinate(0.2, 0.2), 45)
        clock.now += 10
        await asyncio.sleep(0.05)

        self.assertEqual(animator.position.coordinate, Coordinate(0.2, 0.2))
        self.assertTrue(animator.position.live)
        self.assertEqual(animator.state, animation.COMPLETED)
        self.assertTrue(all(u.live for u in updates))

        animator.clear_live_position()
        self.assertEqual(animator.position.coordinate, Coordinate(0.0, 1.0))

    async def test_restart_begins_from_time_zero(self):
        clock = FakeClock()
        animator = animation.PositionAnimator(interval_seconds=0.01, clock=clock)
        animator.start(self.route, 5)
        clock.now += 4
        await asyncio.sleep(0.03)
        self.assertGreater(animator.position.coordinate.longitude, 0.7)

        animator.start(self.route, 5)
        await asyncio.sleep(0.03)

        self.assertEqual(animator.state, animation.RUNNING)
        self.assertAlmostEqual(animator.position.coordinate.longitude, 0.0)
        animator.stop()

    def test_invalid_input_keeps_animator_idle(self):
        animator = animation.PositionAnimator(interval_seconds=0.01)

        self.assertFalse(animator.start([(0, 0)], 5))
        self.assertFalse(animator.start(self.route, 0))
        self.assertFalse(animator.start(self.route, float("nan")))
        self.assertEqual(animator.state, animation.IDLE)


class FakeChannel:
    def __init__(self, fail=False):
        self.fail = fail
        self.subscribers = []
        self.released = 0

    def subscribe(self, filters, on_update):
        if self.fail:
            raise ConnectionError("channel unavailable")
        self.subscribers.append((filters, on_update))

        def unsubscribe():
            self.released += 1

        return unsubscribe


class ReducerTests(SimpleTestCase):
    def test_merge_preserves_untouched_fields(self):
        state = reconcile.DispatchState(
            trip=Trip(request_id="r1", status="accepted", hospital_name="X", eta_seconds=600)
        )

        state = reconcile.reduce_state(
            state, reconcile.ApplyUpdate({"request_id": "r1", "status": "en_route"})
        )

        self.assertEqual(state.trip.status, "en_route")
        self.assertEqual(state.trip.hospital_name, "X")
        self.assertEqual(state.trip.eta_seconds, 600)

    def test_null_fields_do_not_overwrite(self):
        state = reconcile.DispatchState(trip=Trip(request_id="r1", eta_seconds=600))

        state = reconcile.reduce_state(
            state,
            reconcile.ApplyUpdate({"request_id": "r1", "eta_seconds": None, "hospital_name": None}),
        )

        self.assertEqual(state.trip.eta_seconds, 600)

    def test_update_for_other_request_is_ignored(self):
        state = reconcile.DispatchState(trip=Trip(request_id="r1", status="accepted"))

        after = reconcile.reduce_state(
            state, reconcile.ApplyUpdate({"request_id": "old", "status": "arrived"})
        )

        self.assertIs(after, state)

    def test_terminal_status_deletes_record(self):
        state = reconcile.DispatchState(
            trip=Trip(request_id="r1"), bed_booking=BedBooking(request_id="b1")
        )

        state = reconcile.reduce_state(
            state, reconcile.ApplyUpdate({"request_id": "b1", "status": "cancelled"})
        )

        self.assertIsNone(state.bed_booking)
        self.assertEqual(state.trip.request_id, "r1")

    def test_malformed_location_keeps_last_known_position(self):
        responder = Responder(id="7", location=Coordinate(23.8, 90.4))
        state = reconcile.DispatchState(trip=Trip(request_id="r1", assigned_responder=responder))

        state = reconcile.reduce_state(
            state,
            reconcile.ApplyUpdate({"request_id": "r1", "responder_location": "POINT(garbage)"}),
        )

        self.assertEqual(state.trip.assigned_responder.location, Coordinate(23.8, 90.4))

        state = reconcile.reduce_state(
            state,
            reconcile.ApplyUpdate(
                {"request_id": "r1", "responder_location": {"type": "Point", "coordinates": [90.5, 23.9]}}
            ),
        )
        self.assertEqual(state.trip.assigned_responder.location, Coordinate(23.9, 90.5))
        self.assertEqual(state.trip.assigned_responder.id, "7")

    def test_deeply_nested_location_is_ignored(self):
        responder = Responder(id="7", location=Coordinate(23.8, 90.4))
        state = reconcile.DispatchState(trip=Trip(request_id="r1", assigned_responder=responder))

        state = reconcile.reduce_state(
            state,
            reconcile.ApplyUpdate(
                {"request_id": "r1", "status": "en_route", "responder_location": "[" * 100000}
            ),
        )

        self.assertEqual(state.trip.status, "en_route")
        self.assertEqual(state.trip.assigned_responder.location, Coordinate(23.8, 90.4))

    def test_delivery_order_does_not_change_result(self):
        initial = reconcile.DispatchState(trip=Trip(request_id="r1", status="accepted"))
        first = reconcile.ApplyUpdate({"request_id": "r1", "status": "en_route"})
        second = reconcile.ApplyUpdate({"request_id": "r1", "eta_seconds": 420, "responder_id": "7"})

        forward = reconcile.reduce_state(reconcile.reduce_state(initial, first), second)
        backward = reconcile.reduce_state(reconcile.reduce_state(initial, second), first)
        duplicated = reconcile.reduce_state(forward, second)

        self.assertEqual(forward, backward)
        self.assertEqual(forward, duplicated)

    def test_stale_hydration_is_discarded(self):
        state = reconcile.DispatchState(
            trip=Trip(request_id="r1", assigned_responder=Responder(id="new"))
        )

        after = reconcile.reduce_state(
            state, reconcile.ResponderHydrated("r1", ResponderDetail(id="old", call_sign="A-1"))
        )

        self.assertIs(after, state)

    def test_new_responder_replaces_previous_one(self):
        state = reconcile.DispatchState(
            trip=Trip(
                request_id="r1",
                assigned_responder=Responder(id="1", name="Rahim", phone="111"),
            )
        )

        state = reconcile.reduce_state(
            state, reconcile.ApplyUpdate({"request_id": "r1", "responder_id": "2"})
        )

        self.assertEqual(state.trip.assigned_responder, Responder(id="2"))

    def test_payload_constructors_skip_terminal_rows(self):
        self.assertIsNone(reconcile.trip_from_payload({"request_id": "r1", "status": "completed"}))
        trip = reconcile.trip_from_payload({"request_id": "r1", "status": "en_route", "eta_seconds": 300})
        self.assertEqual(trip.status, "en_route")
        self.assertEqual(trip.eta_seconds, 300)


class DispatchStateStoreTests(SimpleTestCase):
    async def test_completed_update_clears_trip_and_stops_animation(self):
        animator = animation.PositionAnimator(interval_seconds=0.01, clock=FakeClock())
        store = reconcile.DispatchStateStore(animator=animator)
        store.start_trip(Trip(request_id="r1", status="accepted"))
        animator.start([(0, 0), (0, 1)], 60)

        store.receive({"request_id": "r1", "status": "completed"})

        self.assertIsNone(store.trip)
        self.assertFalse(animator.is_running)
        self.assertEqual(animator.state, animation.STOPPED)

    async def test_live_responder_location_drives_animator(self):
        animator = animation.PositionAnimator(interval_seconds=0.01, clock=FakeClock())
        store = reconcile.DispatchStateStore(animator=animator)
        store.start_trip(Trip(request_id="r1"))

        store.receive(
            {"request_id": "r1", "responder_location": "POINT(90.4 23.8)", "responder_heading": 180}
        )

        self.assertEqual(animator.position.coordinate, Coordinate(23.8, 90.4))
        self.assertEqual(animator.position.heading, 180)

    async def test_responder_details_are_hydrated(self):
        lookups = []

        async def lookup(responder_id):
            lookups.append(responder_id)
            return ResponderDetail(id=responder_id, call_sign="AMB-7", crew=("Nadia",), rating=4.8)

        store = reconcile.DispatchStateStore(get_responder_by_id=lookup)
        store.start_trip(Trip(request_id="r1"))
        store.receive({"request_id": "r1", "responder_id": "7", "responder_name": "Rahim"})
        await asyncio.sleep(0.01)

        responder = store.trip.assigned_responder
        self.assertEqual(responder.call_sign, "AMB-7")
        self.assertEqual(responder.name, "Rahim")
        self.assertEqual(responder.crew, ("Nadia",))

        store.receive({"request_id": "r1", "status": "en_route"})
        await asyncio.sleep(0.01)
        self.assertEqual(lookups, ["7"])

    async def test_failed_hydration_is_swallowed(self):
        async def lookup(responder_id):
            raise ConnectionError("directory offline")

        store = reconcile.DispatchStateStore(get_responder_by_id=lookup)
        store.start_trip(Trip(request_id="r1"))
        store.receive({"request_id": "r1", "responder_id": "7"})
        await asyncio.sleep(0.01)

        self.assertEqual(store.trip.assigned_responder.id, "7")
        self.assertIsNone(store.trip.assigned_responder.call_sign)

    async def test_resume_adopts_latest_active_requests_then_listens(self):
        rows = [
            {"request_id": "a-old", "service_type": "ambulance", "status": "en_route",
             "created_at": "2024-01-01T10:00:00"},
            {"request_id": "a-new", "service_type": "ambulance", "status": "accepted",
             "eta_seconds": 480, "created_at": "2024-01-02T10:00:00"},
            {"request_id": "a-done", "service_type": "ambulance", "status": "completed",
             "created_at": "2024-01-03T10:00:00"},
            {"request_id": "b-1", "service_type": "bed", "status": "reserved",
             "bed_number": "12", "created_at": "2024-01-02T11:00:00"},
        ]

        async def list_active(user_id):
            return rows

        channel = FakeChannel()
        store = reconcile.DispatchStateStore(
            channel=channel, list_active_requests=list_active, polling_interval=60
        )

        await store.resume("user-1")

        self.assertEqual(store.trip.request_id, "a-new")
        self.assertEqual(store.trip.eta_seconds, 480)
        self.assertEqual(store.bed_booking.bed_number, "12")
        self.assertTrue(store.is_subscribed)
        self.assertEqual(channel.subscribers[0][0], {"user_id": "user-1"})
        self.assertTrue(store.is_polling)

        store.close()
        store.close()
        await asyncio.sleep(0)
        self.assertEqual(channel.released, 1)
        self.assertFalse(store.is_subscribed)
        self.assertFalse(store.is_polling)

    async def test_polling_takes_over_when_channel_is_unavailable(self):
        updates = [[{"request_id": "r1", "status": "en_route", "eta_seconds": 300}]]

        async def list_active(user_id):
            return updates[-1]

        store = reconcile.DispatchStateStore(
            channel=FakeChannel(fail=True),
            list_active_requests=list_active,
            polling_interval=0.01,
        )
        store.start_trip(Trip(request_id="r1", status="accepted", hospital_name="X"))
        store.listen("user-1")
        await asyncio.sleep(0.05)

        self.assertFalse(store.is_subscribed)
        self.assertEqual(store.trip.status, "en_route")
        self.assertEqual(store.trip.hospital_name, "X")
        store.close()

    async def test_polling_removes_trip_completed_on_server(self):
        lookups = []

        async def list_active(user_id):
            return []

        async def get_request(request_id):
            lookups.append(request_id)
            return {"request_id": request_id, "service_type": "ambulance", "status": "completed"}

        animator = animation.PositionAnimator(interval_seconds=0.01, clock=FakeClock())
        store = reconcile.DispatchStateStore(
            list_active_requests=list_active,
            get_request=get_request,
            animator=animator,
            polling_interval=0.01,
        )
        store.start_trip(Trip(request_id="r1", status="en_route"))
        animator.start([(0, 0), (0, 1)], 60)
        store.listen("u1")
        await asyncio.sleep(0.05)

        self.assertIsNone(store.trip)
        self.assertEqual(animator.state, animation.STOPPED)
        self.assertIn("r1", lookups)
        store.close()

    async def test_polled_active_rows_need_no_extra_lookup(self):
        lookups = []

        async def list_active(user_id):
            return [{"request_id": "b1", "service_type": "bed", "status": "ready"}]

        async def get_request(request_id):
            lookups.append(request_id)
            return None

        store = reconcile.DispatchStateStore(
            list_active_requests=list_active, get_request=get_request, polling_interval=60
        )
        store.start_bed_booking(BedBooking(request_id="b1"))
        store.start_trip(Trip(request_id="r1", status="accepted"))
        store.listen("u1")

        await store.poll_once()

        self.assertEqual(store.bed_booking.status, "ready")
        self.assertEqual(store.trip.status, "accepted")
        self.assertEqual(lookups, ["r1"])
        store.close()

    async def test_fresh_subscription_suppresses_polling(self):
        calls = []

        async def list_active(user_id):
            calls.append(user_id)
            return []

        clock = FakeClock()
        store = reconcile.DispatchStateStore(
            channel=FakeChannel(),
            list_active_requests=list_active,
            polling_interval=0.01,
            idle_seconds=30,
            clock=clock,
        )
        store.listen("user-1")
        await asyncio.sleep(0.05)
        self.assertEqual(calls, [])

        clock.now += 31
        await asyncio.sleep(0.05)
        self.assertTrue(calls)
        store.close()

    def test_local_updates_go_through_the_reducer(self):
        store = reconcile.DispatchStateStore()
        self.assertIsNone(store.update_trip(status="en_route"))

        store.start_bed_booking(BedBooking(request_id="b1", hospital_name="City"))
        booking = store.update_bed_booking(status="ready", bed_number="4")
        self.assertEqual(booking.status, "ready")
        self.assertEqual(booking.hospital_name, "City")

        store.end_bed_booking()
        self.assertIsNone(store.bed_booking)


class BackendTests(TestCase):
    def setUp(self):
        self.near = HospitalRow.objects.create(
            name="Dhaka Medical", latitude=23.7257, longitude=90.3976,
            available_beds=40, ambulances=3, wait_time_minutes=10,
        )
        self.far = HospitalRow.objects.create(
            name="Chittagong General", latitude=22.3569, longitude=91.7832,
            available_beds=5, ambulances=1, wait_time_minutes=20,
        )
        self.ambulance = Ambulance.objects.create(
            call_sign="AMB-7", vehicle_number="DHA-2013", driver_name="Rahim Khan",
            driver_phone="0170000000", crew=["Nadia", "Karim"], rating=4.7,
        )

    def test_discover_nearby_respects_radius(self):
        hospitals = discover_nearby(23.73, 90.40, 15000)

        self.assertEqual([h.name for h in hospitals], ["Dhaka Medical"])
        self.assertLess(hospitals[0].distance_km, 1.0)
        self.assertEqual(discover_nearby(float("nan"), 90.4, 15000), [])

    def test_signal_channel_delivers_partial_updates(self):
        received = []
        unsubscribe = SignalChangeChannel().subscribe({"user_id": "u1"}, received.append)

        request = EmergencyRequest.objects.create(
            request_id="r1", user_id="u1", service_type="ambulance", eta_seconds=600
        )
        EmergencyRequest.objects.create(request_id="r2", user_id="someone-else", service_type="bed")
        request.status = "en_route"
        request.save(update_fields=["status"])
        unsubscribe()
        request.status = "arrived"
        request.save(update_fields=["status"])

        self.assertEqual(len(received), 2)
        self.assertEqual(received[0]["eta_seconds"], 600)
        self.assertEqual(received[1]["status"], "en_route")
        self.assertNotIn("eta_seconds", received[1])
        self.assertEqual(received[1]["request_id"], "r1")

    def test_signal_channel_feeds_the_store(self):
        store = reconcile.DispatchStateStore(channel=SignalChangeChannel())
        store.start_trip(Trip(request_id="r1", status="accepted", hospital_name="X"))
        store.listen("u1")
        self.addCleanup(store.close)
        self.assertTrue(store.is_subscribed)

        request = EmergencyRequest.objects.create(
            request_id="r1", user_id="u1", service_type="ambulance", status="accepted"
        )
        request.ambulance = self.ambulance
        request.save(update_fields=["ambulance"])
        self.assertEqual(store.trip.assigned_responder.vehicle_plate, "DHA-2013")
        self.assertEqual(store.trip.hospital_name, "X")

        request.status = "completed"
        request.save(update_fields=["status"])
        self.assertIsNone(store.trip)

    def test_list_active_requests_and_responder_lookup(self):
        EmergencyRequest.objects.create(request_id="r1", user_id="u1", service_type="ambulance")
        EmergencyRequest.objects.create(
            request_id="r2", user_id="u1", service_type="bed", status="completed"
        )

        rows = async_to_sync(list_active_requests)("u1")
        detail = async_to_sync(get_responder_by_id)(str(self.ambulance.pk))

        self.assertEqual([row["request_id"] for row in rows], ["r1"])
        self.assertEqual(detail.call_sign, "AMB-7")
        self.assertEqual(detail.crew, ("Nadia", "Karim"))
        self.assertIsNone(async_to_sync(get_responder_by_id)("999"))

        self.assertEqual(async_to_sync(get_request)("r2")["status"], "completed")
        self.assertIsNone(async_to_sync(get_request)("missing"))


class DispatchAPITests(TestCase):
    def setUp(self):
        HospitalRow.objects.create(
            name="Dhaka Medical", latitude=23.7257, longitude=90.3976,
            available_beds=40, ambulances=3, wait_time_minutes=10,
        )

    def test_ranked_hospitals_include_recommendation(self):
        response = self.client.get("/api/hospitals/ranked/", {"lat": 23.73, "lng": 90.40})
        self.assertEqual(response.status_code, 200)

        payload = response.json()
        self.assertFalse(payload["no_coverage"])
        self.assertEqual(payload["best"]["name"], "Dhaka Medical")
        self.assertIn("dispatch_score", payload["hospitals"][0])
        self.assertIn("reasons", payload["recommendation"])

    def test_no_coverage_is_reported(self):
        response = self.client.get("/api/hospitals/ranked/", {"lat": 40.7, "lng": -74.0})

        payload = response.json()
        self.assertTrue(payload["no_coverage"])
        self.assertIsNone(payload["best"])

    def test_missing_location_is_rejected(self):
        response = self.client.get("/api/hospitals/ranked/", {"lat": "abc"})
        self.assertEqual(response.status_code, 400)

    def test_request_progress(self):
        EmergencyRequest.objects.create(
            request_id="r1", user_id="u1", service_type="ambulance",
            eta_seconds=600, started_at=T0,
        )

        with mock.patch("dispatch.progress.now_ms", return_value=T0 + 540_000):
            response = self.client.get("/api/requests/r1/progress/")

        payload = response.json()
        self.assertEqual(payload["status"], "Arriving")
        self.assertEqual(payload["remaining_seconds"], 60)
        self.assertEqual(payload["formatted_remaining"], "1m")
        self.assertEqual(self.client.get("/api/requests/missing/progress/").status_code, 404)

    def test_active_requests_endpoint(self):
        EmergencyRequest.objects.create(request_id="r1", user_id="u1", service_type="bed")

        response = self.client.get("/api/requests/active/", {"user_id": "u1"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["requests"][0]["request_id"], "r1")

    def test_route_endpoint(self):
        route = make_route((23.8, 90.4), (23.75, 90.39), provider="osrm")
        with mock.patch("dispatch.views.RouteService") as service_class:
            service_class.return_value.get_route = mock.AsyncMock(return_value=route)
            response = self.client.get(
                "/api/route/",
                {"start_lat": 23.8, "start_lng": 90.4, "end_lat": 23.75, "end_lng": 90.39},
            )

        payload = response.json()["route"]
        self.assertEqual(len(payload["path"]), 2)
        self.assertEqual(payload["distance_text"], "1.5 km")
        self.assertEqual(payload["duration_text"], "2m 0s")

        bad = self.client.get("/api/route/", {"start_lat": 23.8})
        self.assertEqual(bad.status_code, 400)
