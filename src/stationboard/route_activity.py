"""Busy/quiet classification of routes from the current vehicle snapshot."""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .cache import TTLCache, make_fingerprint
from .config import PipelineConfig
from .geo import is_valid_position
from .models import CoreVehicle, RouteActivity, RouteClassification

logger = logging.getLogger(__name__)


class RouteActivityAnalyzer:
    """
    Counts vehicles per route and classifies each route as busy or quiet.

    Results are cached per vehicle batch. The whole snapshot is replaced every
    poll, so there is no partial invalidation: a new batch simply produces a
    new fingerprint.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, clock: Callable[[], float] = time.time):
        self.config = (config or PipelineConfig()).validate()
        self._clock = clock
        self._cache: TTLCache[Dict[str, RouteActivity]] = TTLCache.from_options(
            self.config.route_activity_cache, clock=clock, name="route-activity"
        )
        self._last_snapshot: Optional[Dict[str, RouteActivity]] = None
        self._metrics = self._empty_metrics()

    @property
    def busy_route_threshold(self) -> int:
        return self.config.busy_route_threshold

    def analyze_route_activity(self, vehicles: Sequence[CoreVehicle]) -> Dict[str, RouteActivity]:
        """
        Analyze route activity for a vehicle batch.

        Args:
            vehicles: Normalized vehicles from one poll.

        Returns:
            Dictionary of route_id -> RouteActivity. Stale or invalid vehicles
            are not counted.
        """
        start = time.perf_counter()

        if not vehicles:
            logger.debug("No vehicles provided for route activity analysis")
            return {}

        cache_key = self._fingerprint(vehicles)
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Route activity cache hit for {len(vehicles)} vehicles")
            self._record(start, len(vehicles), len(vehicles), 0, len(cached))
            return cached

        valid_vehicles = self.filter_valid_vehicles(vehicles)
        invalid_count = len(vehicles) - len(valid_vehicles)
        if invalid_count and invalid_count / len(vehicles) > 0.5:
            logger.warning(
                f"{invalid_count} of {len(vehicles)} vehicles have stale or invalid positions"
            )

        counts: Dict[str, int] = {}
        for vehicle in valid_vehicles:
            counts[vehicle.route_id] = counts.get(vehicle.route_id, 0) + 1

        computed_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        activities = {
            route_id: RouteActivity(
                route_id=route_id,
                vehicle_count=count,
                classification=self.classify_route(route_id, count),
                computed_at=computed_at,
            )
            for route_id, count in counts.items()
        }

        self._cache.set(cache_key, activities)
        self._last_snapshot = activities
        self._record(start, len(vehicles), len(valid_vehicles), invalid_count, len(activities))

        busy = sum(1 for a in activities.values() if a.classification is RouteClassification.BUSY)
        logger.debug(
            f"Analyzed {len(activities)} routes ({busy} busy) from {len(valid_vehicles)} valid vehicles"
        )
        return activities

    def classify_route(self, route_id: str, vehicle_count: int, threshold: Optional[int] = None) -> RouteClassification:
        """A route is busy when its vehicle count exceeds the threshold."""
        if threshold is None:
            threshold = self.config.busy_route_threshold
        classification = RouteClassification.BUSY if vehicle_count > threshold else RouteClassification.QUIET
        if self.config.debug_mode:
            logger.debug(f"Route {route_id}: {vehicle_count} vehicles, threshold {threshold} -> {classification.value}")
        return classification

    def get_route_vehicle_count(self, route_id: str, vehicles: Sequence[CoreVehicle]) -> int:
        return sum(1 for v in self.filter_valid_vehicles(vehicles) if v.route_id == route_id)

    def validate_vehicle_data(self, vehicle: CoreVehicle) -> dict:
        """
        Assess a single vehicle's data quality.

        Returns:
            Dictionary with is_position_valid, is_timestamp_recent,
            has_required_fields and staleness_score (1 = fresh, 0 = stale).
        """
        age = self._clock() - vehicle.timestamp.timestamp()
        threshold = self.config.stale_data_threshold
        is_recent = age <= threshold
        if is_recent and threshold > 0:
            staleness_score = max(0.0, min(1.0, 1 - age / threshold))
        else:
            staleness_score = 1.0 if is_recent else 0.0

        return {
            "is_position_valid": is_valid_position(vehicle.position),
            "is_timestamp_recent": is_recent,
            "has_required_fields": bool(vehicle.id and vehicle.route_id),
            "staleness_score": staleness_score,
        }

    def filter_valid_vehicles(self, vehicles: Sequence[CoreVehicle]) -> List[CoreVehicle]:
        valid = []
        for vehicle in vehicles:
            quality = self.validate_vehicle_data(vehicle)
            if quality["is_position_valid"] and quality["is_timestamp_recent"] and quality["has_required_fields"]:
                valid.append(vehicle)
        return valid

    def get_route_activity_snapshot(self) -> Optional[dict]:
        """Busy/quiet split of the most recent analysis, or None before the first one."""
        if self._last_snapshot is None:
            return None
        busy = sorted(r for r, a in self._last_snapshot.items() if a.classification is RouteClassification.BUSY)
        quiet = sorted(r for r, a in self._last_snapshot.items() if a.classification is RouteClassification.QUIET)
        return {
            "route_activities": dict(self._last_snapshot),
            "total_vehicles": sum(a.vehicle_count for a in self._last_snapshot.values()),
            "busy_routes": busy,
            "quiet_routes": quiet,
        }

    def get_performance_metrics(self) -> dict:
        metrics = dict(self._metrics)
        metrics["cache_hit_rate"] = self._cache.stats()["hit_rate"]
        metrics["cache_size"] = self._cache.size()
        return metrics

    def cache_stats(self) -> dict:
        return self._cache.stats()

    def cleanup(self) -> int:
        return self._cache.cleanup()

    def clear_cache(self) -> None:
        self._cache.clear()
        self._last_snapshot = None
        self._metrics = self._empty_metrics()
        logger.debug("Route activity cache cleared")

    def _fingerprint(self, vehicles: Sequence[CoreVehicle]) -> str:
        signature = sorted(f"{v.id}:{v.route_id}:{v.timestamp.timestamp()}" for v in vehicles)
        return make_fingerprint("route-activity", len(vehicles), self.config.busy_route_threshold, "|".join(signature))

    def _record(self, start: float, processed: int, valid: int, invalid: int, routes: int) -> None:
        self._metrics.update(
            analysis_time=(time.perf_counter() - start) * 1000,
            vehicles_processed=processed,
            valid_vehicles=valid,
            invalid_vehicles=invalid,
            routes_analyzed=routes,
        )

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "analysis_time": 0.0,
            "vehicles_processed": 0,
            "valid_vehicles": 0,
            "invalid_vehicles": 0,
            "routes_analyzed": 0,
        }
