"""Tests for VehicleTransformationService."""

import time
import unittest
from unittest.mock import patch
import sys
from pathlib import Path

# Add src to path so we can import stationboard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stationboard.config import MAX_DISTANCE_CACHE_ENTRIES, PipelineConfig
from stationboard.models import Coordinates, TransformationContext, TransformationStation, VehicleDirection
from stationboard.transformation import (
    PRIORITY_AT_STATION,
    PRIORITY_NEARBY,
    PRIORITY_REAL_TIME,
    VehicleTransformationService,
    generate_synthetic_vehicles,
    parse_direction,
)

NOW = 1_700_000_000.0
STATION = TransformationStation(id="S1", name="Central", coordinates=Coordinates(40.0, -74.0))
ROUTES = [{"id": "A", "name": "A Line"}, {"id": "B", "name": "B Line"}]


def raw_vehicle(vehicle_id, route_id="A", lat=40.001, lon=-74.0, timestamp=NOW, **extra):
    record = {
        "id": vehicle_id,
        "routeId": route_id,
        "position": {"lat": lat, "lon": lon},
        "timestamp": timestamp,
    }
    record.update(extra)
    return record


class TestVehicleTransformationService(unittest.TestCase):

    def setUp(self):
        self.service = VehicleTransformationService(clock=lambda: NOW)
        self.context = TransformationContext(target_stations=[STATION])

    def test_missing_context_returns_empty_bundle(self):
        bundle = self.service.transform([raw_vehicle("v1")], [], ROUTES, TransformationContext())

        self.assertEqual(bundle.vehicles, {})
        self.assertEqual(bundle.metadata.vehicles_processed, 1)
        self.assertEqual(bundle.metadata.vehicles_transformed, 0)

    def test_malformed_records_are_skipped(self):
        raw = [
            raw_vehicle("v1"),
            {"routeId": "A", "position": {"lat": 40.0, "lon": -74.0}},
            raw_vehicle("v2", lat=200.0),
            raw_vehicle("v1"),
            "not a record",
        ]
        bundle = self.service.transform(raw, [], ROUTES, self.context)

        self.assertEqual(list(bundle.vehicles), ["v1"])
        self.assertEqual(bundle.metadata.vehicles_processed, 5)
        self.assertEqual(bundle.metadata.vehicles_skipped, 4)

    def test_display_data(self):
        raw = [raw_vehicle("v1", label="1042", wheelchairAccessible="WHEELCHAIR_ACCESSIBLE")]
        bundle = self.service.transform(raw, [], ROUTES, self.context)

        display = bundle.display_data["v1"]
        self.assertEqual(display.route_name, "A Line")
        self.assertEqual(display.vehicle_label, "1042")
        self.assertTrue(display.wheelchair_accessible)
        self.assertLess(display.distance_to_station, 200)
        # No direction lookup configured: real time and nearby only
        self.assertEqual(display.display_priority, PRIORITY_REAL_TIME + PRIORITY_NEARBY)
        self.assertIn("v1", bundle.real_time_vehicles)

    def test_vehicle_at_station_gets_top_priority(self):
        def lookup(vehicle_id):
            return {"stopSequence": [{"stopId": "S1", "stopName": "Central", "sequence": 1, "isCurrent": True}]}

        service = VehicleTransformationService(direction_lookup=lookup, clock=lambda: NOW)
        bundle = service.transform([raw_vehicle("v1")], [], ROUTES, self.context)

        self.assertEqual(
            bundle.display_data["v1"].display_priority,
            PRIORITY_AT_STATION + PRIORITY_REAL_TIME + PRIORITY_NEARBY,
        )
        self.assertEqual(bundle.directions["v1"].stop_sequence[0].stop_id, "S1")

    def test_old_vehicle_is_scheduled(self):
        bundle = self.service.transform([raw_vehicle("v1", timestamp=NOW - 200)], [], ROUTES, self.context)

        self.assertIn("v1", bundle.scheduled_vehicles)
        self.assertEqual(bundle.display_data["v1"].display_priority, PRIORITY_NEARBY)

    def test_schedule_data_disabled(self):
        context = TransformationContext(target_stations=[STATION], include_schedule_data=False)
        bundle = self.service.transform([raw_vehicle("v1")], [], ROUTES, context)

        self.assertEqual(bundle.real_time_vehicles, set())
        self.assertEqual(bundle.scheduled_vehicles, set())

    def test_enrichment_failure_degrades(self):
        def lookup(vehicle_id):
            if vehicle_id == "v1":
                raise RuntimeError("lookup service down")
            return VehicleDirection()

        service = VehicleTransformationService(direction_lookup=lookup, clock=lambda: NOW)
        bundle = service.transform([raw_vehicle("v1"), raw_vehicle("v2")], [], ROUTES, self.context)

        self.assertEqual(set(bundle.vehicles), {"v1", "v2"})
        self.assertEqual(bundle.directions["v1"].stop_sequence, [])
        self.assertEqual(bundle.metadata.enrichment_failures, 1)
        self.assertEqual(service.get_cache_statistics()["lookups"]["failures"], 1)

    def test_unexpected_error_returns_empty_bundle(self):
        with patch.object(
            self.service.route_activity_analyzer, "analyze_route_activity", side_effect=RuntimeError("boom")
        ):
            bundle = self.service.transform([raw_vehicle("v1")], [], ROUTES, self.context)

        self.assertEqual(bundle.vehicles, {})

    def test_identical_inputs_hit_cache(self):
        raw = [raw_vehicle("v1"), raw_vehicle("v2", route_id="B")]
        first = self.service.transform(raw, [], ROUTES, self.context)
        second = self.service.transform(list(reversed(raw)), [], ROUTES, self.context)

        self.assertEqual(first.vehicles, second.vehicles)
        self.assertFalse(first.metadata.cache_hit)
        self.assertTrue(second.metadata.cache_hit)
        self.assertAlmostEqual(self.service.get_cache_statistics()["transformation"]["hit_rate"], 0.5)

    def test_precomputed_cache_key_skips_fingerprint(self):
        raw = [raw_vehicle("v1")]
        key = self.service.compute_fingerprint(raw, [], ROUTES, self.context)

        with patch.object(self.service, "compute_fingerprint") as mock_fingerprint:
            bundle = self.service.transform(raw, [], ROUTES, self.context, cache_key=key)

        mock_fingerprint.assert_not_called()
        self.assertEqual(list(bundle.vehicles), ["v1"])
        self.assertTrue(self.service.is_cached(key))

    def test_invalidate_cache_for_vehicles(self):
        raw = [raw_vehicle("v1"), raw_vehicle("v2", route_id="B")]
        first = self.service.transform(raw, [], ROUTES, self.context)

        removed = self.service.invalidate_cache_for_vehicles(["v1"])
        second = self.service.transform(raw, [], ROUTES, self.context)

        self.assertGreaterEqual(removed, 1)
        self.assertIsNot(first, second)
        self.assertEqual(set(second.vehicles), {"v1", "v2"})

    def test_station_routes_fill_target_station(self):
        stations = [{"id": "S1", "name": "Central", "coordinates": {"lat": 40.0, "lon": -74.0}, "routeIds": ["A"]}]
        raw = [raw_vehicle("v1"), raw_vehicle("v2", route_id="B")]
        bundle = self.service.transform(raw, stations, ROUTES, self.context)

        self.assertEqual(list(bundle.vehicles), ["v1"])

    def test_clear_and_destroy(self):
        self.service.transform([raw_vehicle("v1")], [], ROUTES, self.context)
        self.service.destroy()

        stats = self.service.get_cache_statistics()
        self.assertEqual(stats["transformation"]["size"], 0)
        self.assertEqual(stats["overall"]["transformation_count"], 0)

    def test_performance_check(self):
        result = self.service.performance_check(100)

        self.assertTrue(result.success)
        self.assertLess(result.average_time, 50)
        self.assertEqual(result.target, 50)
        self.assertEqual(result.vehicle_count, 100)
        # Scratch service: this instance is untouched
        self.assertEqual(self.service.get_cache_statistics()["overall"]["transformation_count"], 0)

    def test_performance_target_scales(self):
        self.assertEqual(self.service.performance_check(2000, iterations=1).target, 100)


class TestHelpers(unittest.TestCase):

    def test_parse_direction_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_direction("north")
        with self.assertRaises(ValueError):
            parse_direction({"stopSequence": [{"stopName": "No id"}]})

    def test_synthetic_vehicles(self):
        vehicles = generate_synthetic_vehicles(20, Coordinates(40.0, -74.0), route_count=4, timestamp=NOW)

        self.assertEqual(len(vehicles), 20)
        self.assertEqual(len({v["id"] for v in vehicles}), 20)
        self.assertEqual({v["routeId"] for v in vehicles}, {"R0", "R1", "R2", "R3"})


class TestSteadyStatePolling(unittest.TestCase):
    """Repeated ticks with moving vehicles, as in normal polling."""

    def test_tick_time_stays_flat_once_caches_are_full(self):
        service = VehicleTransformationService()
        center = Coordinates(40.0, -74.0)
        context = TransformationContext(target_stations=[STATION], user_location=center)
        routes = [{"id": f"R{i}", "name": f"Route {i}"} for i in range(10)]
        base = generate_synthetic_vehicles(1000, center, timestamp=time.time())

        timings = []
        # Two reference points per vehicle: the distance cache fills after 25 ticks
        for tick in range(35):
            raw = [
                dict(v, position={"lat": v["position"]["lat"] + tick * 1e-5, "lon": v["position"]["lon"]})
                for v in base
            ]
            start = time.perf_counter()
            bundle = service.transform(raw, [], routes, context)
            timings.append((time.perf_counter() - start) * 1000)
            self.assertFalse(bundle.metadata.cache_hit)

        self.assertEqual(
            service.vehicle_filter.get_cache_stats()["distance_cache_size"], MAX_DISTANCE_CACHE_ENTRIES
        )
        early = sum(timings[1:6]) / 5
        late = sum(timings[-5:]) / 5
        self.assertLess(late, early * 2, f"early ticks {timings[1:6]}, late ticks {timings[-5:]}")


if __name__ == "__main__":
    unittest.main()
