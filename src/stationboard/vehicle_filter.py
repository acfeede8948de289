"""Distance filtering and busy-route capping of vehicles."""

import logging
import math
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .cache import TTLCache, make_fingerprint
from .config import MAX_DISTANCE_CACHE_ENTRIES, MAX_FILTER_CACHE_ENTRIES, PipelineConfig
from .geo import haversine_distance
from .models import (
    Coordinates,
    CoreVehicle,
    FilteringContext,
    FilteringDecision,
    FilteringResult,
    FilteringStats,
    RouteActivity,
    RouteClassification,
    TransformationStation,
    UserFeedback,
)

logger = logging.getLogger(__name__)

USER_LOCATION_ID = "__user__"


class IntelligentVehicleFilter:
    """
    Prunes a vehicle batch down to what is relevant for the target stations.

    Quiet routes are shown in full. Busy routes are limited to vehicles close
    to a station or the user and then capped per route, so one crowded line
    cannot flood the board.
    """

    def __init__(self, config: Optional[PipelineConfig] = None, clock: Callable[[], float] = time.time):
        self.config = (config or PipelineConfig()).validate()
        self._filter_cache: TTLCache[FilteringResult] = TTLCache.from_options(
            self.config.filter_cache, clock=clock, name="vehicle-filter", max_entries=MAX_FILTER_CACHE_ENTRIES
        )
        self._distance_cache: TTLCache[float] = TTLCache.from_options(
            self.config.distance_cache, clock=clock, name="distance", max_entries=MAX_DISTANCE_CACHE_ENTRIES
        )
        self.distance_computations = 0

    def filter_vehicles(
        self,
        vehicles: Sequence[CoreVehicle],
        route_activity: Dict[str, RouteActivity],
        context: FilteringContext,
    ) -> FilteringResult:
        """
        Filter vehicles for display.

        Args:
            vehicles: Normalized vehicles from one poll.
            route_activity: Output of RouteActivityAnalyzer for the same batch.
            context: Thresholds, target stations and user location.

        Returns:
            FilteringResult with the surviving vehicles in input order, pass
            statistics and one decision per vehicle.
        """
        start = time.perf_counter()
        cache_key = self._fingerprint(vehicles, route_activity, context)

        cached = self._filter_cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Vehicle filter cache hit ({len(cached.filtered_vehicles)} vehicles)")
            stats = replace(cached.stats, cache_hit=True, cache_hit_rate=self._filter_cache.stats()["hit_rate"])
            return FilteringResult(
                filtered_vehicles=list(cached.filtered_vehicles),
                stats=stats,
                decisions=dict(cached.decisions),
            )

        reference_points = self._reference_points(context)
        served_routes = self._served_routes(context.target_stations)
        max_distance = context.transformation_context.max_distance

        decisions: Dict[str, FilteringDecision] = {}
        distances: Dict[str, float] = {}
        removed_by_route = 0
        removed_by_distance = 0

        for vehicle in vehicles:
            activity = route_activity.get(vehicle.route_id)
            classification = activity.classification if activity else RouteClassification.QUIET

            if served_routes and vehicle.route_id not in served_routes:
                removed_by_route += 1
                decisions[vehicle.id] = FilteringDecision(
                    vehicle_id=vehicle.id,
                    route_id=vehicle.route_id,
                    route_classification=classification,
                    distance_filter_applied=False,
                    included=False,
                    reason=f"Route {vehicle.route_id} does not serve any target station",
                )
                continue

            distance = self._min_distance(vehicle, reference_points)
            distances[vehicle.id] = distance

            if reference_points and distance > max_distance:
                removed_by_distance += 1
                decisions[vehicle.id] = self._decision(
                    vehicle, classification, True, False, distance,
                    f"Beyond maximum distance of {max_distance:.0f}m ({distance:.0f}m)",
                )
                continue

            passes_through = (
                not reference_points
                or activity is None
                or activity.vehicle_count <= 1
                or not self.should_apply_distance_filter(vehicle.route_id, route_activity)
            )
            if passes_through:
                decisions[vehicle.id] = self._decision(
                    vehicle, classification, False, True, distance, "Quiet route - showing all vehicles"
                )
                continue

            within = distance <= context.distance_filter_threshold
            if not within:
                removed_by_distance += 1
            decisions[vehicle.id] = self._decision(
                vehicle, classification, True, within, distance,
                f"Busy route - vehicle {'within' if within else 'beyond'} "
                f"{context.distance_filter_threshold:.0f}m threshold ({distance:.0f}m)",
            )

        removed_by_cap = self._apply_busy_route_cap(vehicles, decisions, distances)

        filtered = [v for v in vehicles if decisions[v.id].included]
        busy_routes = sum(1 for a in route_activity.values() if a.classification is RouteClassification.BUSY)

        if context.debug_mode:
            for decision in decisions.values():
                logger.debug(f"Vehicle {decision.vehicle_id} ({decision.route_id}): {decision.reason}")

        stats = FilteringStats(
            total_vehicles=len(vehicles),
            filtered_vehicles=len(filtered),
            removed_by_route=removed_by_route,
            removed_by_distance=removed_by_distance,
            removed_by_cap=removed_by_cap,
            busy_routes=busy_routes,
            quiet_routes=len(route_activity) - busy_routes,
            filtering_time=(time.perf_counter() - start) * 1000,
            cache_hit=False,
            cache_hit_rate=self._filter_cache.stats()["hit_rate"],
        )
        self._filter_cache.set(
            cache_key,
            FilteringResult(filtered_vehicles=filtered, stats=stats, decisions=decisions),
            tags=(v.id for v in vehicles),
        )

        logger.debug(
            f"Filtered {len(vehicles)} vehicles down to {len(filtered)} "
            f"({removed_by_route} off-route, {removed_by_distance} too far, {removed_by_cap} capped) "
            f"in {stats.filtering_time:.1f}ms"
        )
        # Fresh containers; the cached entry is never handed out
        return FilteringResult(filtered_vehicles=list(filtered), stats=replace(stats), decisions=dict(decisions))

    def should_apply_distance_filter(self, route_id: str, route_activity: Dict[str, RouteActivity]) -> bool:
        """Only busy routes are distance-filtered."""
        activity = route_activity.get(route_id)
        return activity is not None and activity.classification is RouteClassification.BUSY

    def filter_by_distance(
        self,
        vehicles: Sequence[CoreVehicle],
        stations: Sequence[TransformationStation],
        threshold_m: float,
    ) -> List[CoreVehicle]:
        """
        Keep vehicles within ``threshold_m`` meters of the nearest station.

        Pairwise distances are cached per (vehicle, station), so repeated calls
        with the same pairs skip the haversine computation.

        Raises:
            ValueError: If threshold_m is negative.
        """
        if threshold_m < 0:
            raise ValueError(f"Distance threshold must be >= 0, got {threshold_m}")
        if not stations:
            logger.warning("No stations provided for distance filtering, returning all vehicles")
            return list(vehicles)

        points = [(s.id, s.coordinates) for s in stations]
        filtered = [v for v in vehicles if self._min_distance(v, points) <= threshold_m]

        logger.debug(f"Distance filter kept {len(filtered)} of {len(vehicles)} vehicles within {threshold_m:.0f}m")
        return filtered

    def generate_user_feedback(
        self,
        route_activity: Dict[str, RouteActivity],
        filtered_vehicles: Sequence[CoreVehicle],
        original_vehicles: Sequence[CoreVehicle],
    ) -> UserFeedback:
        """Summarize a filtering pass, including a message for an empty board."""
        busy = 0
        messages: Dict[str, str] = {}
        for route_id, activity in route_activity.items():
            if activity.classification is RouteClassification.BUSY:
                busy += 1
                messages[route_id] = (
                    f"Route {route_id}: Busy ({activity.vehicle_count} vehicles) - Distance filtering applied"
                )
            else:
                messages[route_id] = (
                    f"Route {route_id}: Quiet ({activity.vehicle_count} vehicles) - All vehicles shown"
                )

        removed = len(original_vehicles) - len(filtered_vehicles)
        empty_message = None
        if not filtered_vehicles:
            if not original_vehicles:
                empty_message = "No vehicles are currently active on any routes."
            elif busy and removed:
                empty_message = (
                    f"{removed} vehicles were filtered due to distance on busy routes. "
                    "Try adjusting your distance threshold or location."
                )
            else:
                empty_message = "No vehicles match the current filtering criteria."

        return UserFeedback(
            total_routes=len(route_activity),
            busy_routes=busy,
            quiet_routes=len(route_activity) - busy,
            distance_filtered_vehicles=removed,
            route_status_messages=messages,
            empty_state_message=empty_message,
        )

    def get_cache_stats(self) -> dict:
        stats = self._filter_cache.stats()
        return {
            "size": stats["size"],
            "hit_rate": stats["hit_rate"],
            "miss_rate": stats["miss_rate"],
            "hits": stats["hits"],
            "misses": stats["misses"],
            "distance_cache_size": self._distance_cache.size(),
            "distance_computations": self.distance_computations,
        }

    def invalidate_cache_for_vehicles(self, vehicle_ids: Iterable[str]) -> int:
        """
        Drop cached results computed from any of ``vehicle_ids``.

        Returns:
            Number of filter results removed.
        """
        ids = set(vehicle_ids)
        removed = self._filter_cache.invalidate_tags(ids)
        self._distance_cache.invalidate_tags(ids)
        logger.debug(f"Invalidated {removed} filter cache entries for {len(ids)} vehicles")
        return removed

    def cleanup(self) -> int:
        return self._filter_cache.cleanup() + self._distance_cache.cleanup()

    def clear_cache(self) -> None:
        self._filter_cache.clear()
        self._distance_cache.clear()
        self.distance_computations = 0
        logger.debug("Vehicle filter caches cleared")

    def _apply_busy_route_cap(
        self,
        vehicles: Sequence[CoreVehicle],
        decisions: Dict[str, FilteringDecision],
        distances: Dict[str, float],
    ) -> int:
        """Keep at most busy_route_vehicle_cap vehicles per busy route, nearest first."""
        cap = self.config.busy_route_vehicle_cap
        if cap == 0:
            return 0

        by_route: Dict[str, List[CoreVehicle]] = {}
        for vehicle in vehicles:
            decision = decisions[vehicle.id]
            if decision.included and decision.distance_filter_applied:
                by_route.setdefault(vehicle.route_id, []).append(vehicle)

        removed = 0
        for route_id, route_vehicles in by_route.items():
            if len(route_vehicles) <= cap:
                continue
            route_vehicles.sort(key=lambda v: (distances[v.id], v.id))
            for vehicle in route_vehicles[cap:]:
                decisions[vehicle.id] = replace(
                    decisions[vehicle.id],
                    included=False,
                    reason=f"Busy route {route_id} capped at {cap} nearest vehicles",
                )
                removed += 1
        return removed

    def _min_distance(self, vehicle: CoreVehicle, points: Sequence[Tuple[str, Coordinates]]) -> float:
        best = math.inf
        for point_id, point in points:
            key = (vehicle.id, vehicle.position, point_id, point)
            distance = self._distance_cache.get(key)
            if distance is None:
                distance = haversine_distance(vehicle.position, point)
                self.distance_computations += 1
                self._distance_cache.set(key, distance, tags=(vehicle.id,))
            if distance < best:
                best = distance
        return best

    @staticmethod
    def _reference_points(context: FilteringContext) -> List[Tuple[str, Coordinates]]:
        """Target stations plus the user's location, if known."""
        points = [(s.id, s.coordinates) for s in context.target_stations]
        user_location = context.transformation_context.user_location
        if user_location is not None:
            points.append((USER_LOCATION_ID, user_location))
        return points

    @staticmethod
    def _served_routes(stations: Sequence[TransformationStation]) -> set:
        routes = set()
        for station in stations:
            routes.update(station.route_ids)
        return routes

    @staticmethod
    def _decision(
        vehicle: CoreVehicle,
        classification: RouteClassification,
        applied: bool,
        included: bool,
        distance: float,
        reason: str,
    ) -> FilteringDecision:
        return FilteringDecision(
            vehicle_id=vehicle.id,
            route_id=vehicle.route_id,
            route_classification=classification,
            distance_filter_applied=applied,
            included=included,
            reason=reason,
            distance_to_nearest=distance,
        )

    def _fingerprint(
        self,
        vehicles: Sequence[CoreVehicle],
        route_activity: Dict[str, RouteActivity],
        context: FilteringContext,
    ) -> str:
        vehicle_sig = "|".join(sorted(
            f"{v.id}:{v.route_id}:{v.position.latitude!r}:{v.position.longitude!r}" for v in vehicles
        ))
        activity_sig = "|".join(sorted(
            f"{r}:{a.classification.value}:{a.vehicle_count}" for r, a in route_activity.items()
        ))
        station_sig = "|".join(sorted(
            f"{s.id}:{s.coordinates.latitude!r}:{s.coordinates.longitude!r}:{','.join(sorted(s.route_ids))}"
            for s in context.target_stations
        ))
        tc = context.transformation_context
        return make_fingerprint(
            "filter",
            vehicle_sig,
            activity_sig,
            station_sig,
            tc.user_location,
            tc.max_distance,
            context.busy_route_threshold,
            context.distance_filter_threshold,
            self.config.busy_route_vehicle_cap,
        )
