"""Tests for IntelligentVehicleFilter."""

import unittest
from dataclasses import FrozenInstanceError
from datetime import datetime, timezone
import sys
from pathlib import Path

# Add src to path so we can import stationboard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stationboard.config import PipelineConfig
from stationboard.geo import haversine_distance
from stationboard.models import (
    Coordinates,
    CoreVehicle,
    FilteringContext,
    RouteActivity,
    RouteClassification,
    TransformationContext,
    TransformationStation,
)
from stationboard.vehicle_filter import IntelligentVehicleFilter

NOW = 1_700_000_000.0
STATION = TransformationStation(id="S1", name="Central", coordinates=Coordinates(40.0, -74.0))


def make_vehicle(vehicle_id, route_id, lat_offset):
    """Vehicle due north of STATION; 0.01 degrees is roughly 1112 m."""
    return CoreVehicle(
        id=vehicle_id,
        route_id=route_id,
        position=Coordinates(latitude=40.0 + lat_offset, longitude=-74.0),
        timestamp=datetime.fromtimestamp(NOW, tz=timezone.utc),
    )


def activity_for(vehicles, threshold=5):
    counts = {}
    for v in vehicles:
        counts[v.route_id] = counts.get(v.route_id, 0) + 1
    computed_at = datetime.fromtimestamp(NOW, tz=timezone.utc)
    return {
        route_id: RouteActivity(
            route_id=route_id,
            vehicle_count=count,
            classification=RouteClassification.BUSY if count > threshold else RouteClassification.QUIET,
            computed_at=computed_at,
        )
        for route_id, count in counts.items()
    }


def make_context(stations=(STATION,), max_distance=5000.0, user_location=None):
    return FilteringContext(
        target_stations=list(stations),
        busy_route_threshold=5,
        distance_filter_threshold=2000.0,
        debug_mode=False,
        transformation_context=TransformationContext(
            target_stations=list(stations),
            user_location=user_location,
            max_distance=max_distance,
        ),
    )


# Six vehicles on a busy route: three within 2 km of STATION, three beyond
BUSY_VEHICLES = [
    make_vehicle("a1", "A", 0.005),
    make_vehicle("a2", "A", 0.010),
    make_vehicle("a3", "A", 0.015),
    make_vehicle("a4", "A", 0.020),
    make_vehicle("a5", "A", 0.025),
    make_vehicle("a6", "A", 0.030),
]


class TestIntelligentVehicleFilter(unittest.TestCase):

    def setUp(self):
        self.filter = IntelligentVehicleFilter(PipelineConfig(busy_route_vehicle_cap=0), clock=lambda: NOW)

    def test_busy_route_is_distance_filtered(self):
        result = self.filter.filter_vehicles(BUSY_VEHICLES, activity_for(BUSY_VEHICLES), make_context())

        self.assertEqual([v.id for v in result.filtered_vehicles], ["a1", "a2", "a3"])
        self.assertEqual(result.stats.removed_by_distance, 3)
        self.assertEqual(result.stats.busy_routes, 1)
        self.assertTrue(result.decisions["a4"].distance_filter_applied)
        self.assertFalse(result.decisions["a4"].included)

    def test_quiet_route_shows_all(self):
        vehicles = [make_vehicle("b1", "B", 0.025), make_vehicle("b2", "B", 0.030)]
        result = self.filter.filter_vehicles(vehicles, activity_for(vehicles), make_context())

        self.assertEqual([v.id for v in result.filtered_vehicles], ["b1", "b2"])
        self.assertFalse(result.decisions["b1"].distance_filter_applied)

    def test_max_distance_applies_to_every_route(self):
        vehicles = [make_vehicle("b1", "B", 0.001), make_vehicle("b2", "B", 0.030)]
        result = self.filter.filter_vehicles(vehicles, activity_for(vehicles), make_context(max_distance=2000.0))

        self.assertEqual([v.id for v in result.filtered_vehicles], ["b1"])

    def test_busy_route_cap_keeps_nearest(self):
        capped = IntelligentVehicleFilter(PipelineConfig(busy_route_vehicle_cap=2), clock=lambda: NOW)
        result = capped.filter_vehicles(BUSY_VEHICLES, activity_for(BUSY_VEHICLES), make_context())

        self.assertEqual([v.id for v in result.filtered_vehicles], ["a1", "a2"])
        self.assertEqual(result.stats.removed_by_cap, 1)

    def test_route_association(self):
        station = TransformationStation(
            id="S1", name="Central", coordinates=Coordinates(40.0, -74.0), route_ids=("A",)
        )
        vehicles = [make_vehicle("a1", "A", 0.001), make_vehicle("z1", "Z", 0.001)]
        result = self.filter.filter_vehicles(vehicles, activity_for(vehicles), make_context(stations=[station]))

        self.assertEqual([v.id for v in result.filtered_vehicles], ["a1"])
        self.assertEqual(result.stats.removed_by_route, 1)

    def test_no_reference_points_passes_everything(self):
        vehicles = BUSY_VEHICLES
        result = self.filter.filter_vehicles(vehicles, activity_for(vehicles), make_context(stations=[]))
        self.assertEqual(len(result.filtered_vehicles), 6)

    def test_repeat_call_is_cache_hit(self):
        activity = activity_for(BUSY_VEHICLES)
        first = self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())
        rate_before = self.filter.get_cache_stats()["hit_rate"]
        second = self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())

        self.assertEqual(
            [v.id for v in first.filtered_vehicles],
            [v.id for v in second.filtered_vehicles],
        )
        self.assertFalse(first.stats.cache_hit)
        self.assertTrue(second.stats.cache_hit)
        self.assertGreater(self.filter.get_cache_stats()["hit_rate"], rate_before)

    def test_caller_changes_do_not_leak_into_cache(self):
        activity = activity_for(BUSY_VEHICLES)
        first = self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())
        first.decisions.pop("a1")
        first.filtered_vehicles.clear()

        second = self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())
        self.assertTrue(second.stats.cache_hit)
        second.decisions["a2"] = second.decisions["a4"]
        second.filtered_vehicles.pop()

        third = self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())
        self.assertEqual([v.id for v in third.filtered_vehicles], ["a1", "a2", "a3"])
        self.assertEqual(set(third.decisions), {"a1", "a2", "a3", "a4", "a5", "a6"})
        self.assertTrue(third.decisions["a2"].included)
        self.assertFalse(first.stats.cache_hit)

    def test_decisions_are_read_only(self):
        result = self.filter.filter_vehicles(BUSY_VEHICLES, activity_for(BUSY_VEHICLES), make_context())

        with self.assertRaises(FrozenInstanceError):
            result.decisions["a1"].included = False

    def test_invalidation_forces_recompute(self):
        activity = activity_for(BUSY_VEHICLES)
        self.filter.filter_vehicles(BUSY_VEHICLES, activity, make_context())
        size_before = self.filter.get_cache_stats()["size"]

        removed = self.filter.invalidate_cache_for_vehicles(["a1"])

        self.assertEqual(removed, 1)
        self.assertLessEqual(self.filter.get_cache_stats()["size"], size_before)

        moved = [make_vehicle("a1", "A", 0.028)] + BUSY_VEHICLES[1:]
        result = self.filter.filter_vehicles(moved, activity, make_context())
        self.assertFalse(result.stats.cache_hit)
        self.assertEqual([v.id for v in result.filtered_vehicles], ["a2", "a3"])

    def test_distance_cache_reused(self):
        stations = [STATION]
        self.filter.filter_by_distance(BUSY_VEHICLES, stations, 2000.0)
        computations = self.filter.distance_computations
        self.filter.filter_by_distance(BUSY_VEHICLES, stations, 1000.0)

        self.assertEqual(self.filter.distance_computations, computations)

    def test_filter_by_distance_matches_haversine(self):
        for threshold in (0.0, 500.0, 1112.0, 1700.0, 2500.0, 10000.0):
            kept = {v.id for v in self.filter.filter_by_distance(BUSY_VEHICLES, [STATION], threshold)}
            for vehicle in BUSY_VEHICLES:
                within = haversine_distance(vehicle.position, STATION.coordinates) <= threshold
                self.assertEqual(vehicle.id in kept, within, f"{vehicle.id} at threshold {threshold}")

    def test_filter_by_distance_edge_cases(self):
        with self.assertRaises(ValueError):
            self.filter.filter_by_distance(BUSY_VEHICLES, [STATION], -1.0)
        self.assertEqual(len(self.filter.filter_by_distance(BUSY_VEHICLES, [], 100.0)), 6)

    def test_user_feedback_empty_state(self):
        activity = activity_for(BUSY_VEHICLES)
        feedback = self.filter.generate_user_feedback(activity, [], BUSY_VEHICLES)

        self.assertEqual(feedback.busy_routes, 1)
        self.assertEqual(feedback.distance_filtered_vehicles, 6)
        self.assertIn("filtered due to distance", feedback.empty_state_message)

        feedback = self.filter.generate_user_feedback({}, [], [])
        self.assertEqual(feedback.empty_state_message, "No vehicles are currently active on any routes.")


if __name__ == "__main__":
    unittest.main()
