"""Vehicle transformation service: raw feed in, presentation bundle out."""

import json
import logging
import math
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .cache import TTLCache, make_fingerprint
from .config import MAX_TRANSFORMATION_CACHE_ENTRIES, PERFORMANCE_TARGET_MS_PER_1000, PipelineConfig
from .geo import min_distance
from .models import (
    Coordinates,
    CoreVehicle,
    FilteringContext,
    FilteringResult,
    PerformanceCheckResult,
    RouteInfo,
    StopSequenceEntry,
    TransformationContext,
    TransformationMetadata,
    TransformationStation,
    TransformedVehicleData,
    VehicleDirection,
    VehicleDisplayData,
)
from .normalize import normalize_route, normalize_station, normalize_vehicle
from .route_activity import RouteActivityAnalyzer
from .vehicle_filter import IntelligentVehicleFilter

logger = logging.getLogger(__name__)

# vehicle_id -> VehicleDirection, {"stopSequence": [...]} or None
DirectionLookup = Callable[[str], Union[VehicleDirection, Mapping[str, Any], None]]

# Display priority weights; higher is shown first
PRIORITY_AT_STATION = 200
PRIORITY_REAL_TIME = 100
PRIORITY_NEARBY = 50


def parse_direction(raw: Any) -> VehicleDirection:
    """
    Convert a direction lookup result into a VehicleDirection.

    Raises:
        ValueError: If the result is not a recognizable stop sequence.
    """
    if isinstance(raw, VehicleDirection):
        return raw
    if not isinstance(raw, Mapping):
        raise ValueError(f"Unexpected direction result type {type(raw).__name__}")

    sequence = raw.get("stopSequence", raw.get("stop_sequence"))
    if sequence is None:
        raise ValueError("Direction result has no stop sequence")

    stops: List[StopSequenceEntry] = []
    for index, stop in enumerate(sequence):
        if isinstance(stop, StopSequenceEntry):
            stops.append(stop)
            continue
        stop_id = stop.get("stopId", stop.get("stop_id"))
        if stop_id is None:
            raise ValueError(f"Stop {index} has no stop id")
        stops.append(StopSequenceEntry(
            stop_id=str(stop_id),
            stop_name=str(stop.get("stopName", stop.get("stop_name", stop_id))),
            sequence=int(stop.get("sequence", index)),
            is_current=bool(stop.get("isCurrent", stop.get("is_current", False))),
            is_destination=bool(stop.get("isDestination", stop.get("is_destination", False))),
        ))
    return VehicleDirection(stop_sequence=stops)


def generate_synthetic_vehicles(
    count: int,
    center: Coordinates,
    route_count: int = 10,
    timestamp: Optional[float] = None,
) -> List[dict]:
    """
    Build deterministic raw vehicle records scattered within ~1.5 km of center.

    Used by performance_check(); also handy for benchmarks and tests.
    """
    timestamp = time.time() if timestamp is None else timestamp
    vehicles = []
    for i in range(count):
        angle = (i * 137.508) % 360  # Golden angle spreads points evenly
        radius = 0.0135 * ((i % 97) + 1) / 97  # Up to ~1.5 km in latitude
        vehicles.append({
            "id": f"synthetic-{i}",
            "routeId": f"R{i % route_count}",
            "tripId": f"T{i % route_count}-{i // route_count}",
            "label": str(1000 + i),
            "position": {
                "lat": center.latitude + radius * math.sin(math.radians(angle)),
                "lon": center.longitude + radius * math.cos(math.radians(angle)),
            },
            "timestamp": timestamp,
            "speed": float(i % 40),
            "wheelchairAccessible": i % 2 == 0,
            "bikeAccessible": i % 3 == 0,
        })
    return vehicles


class VehicleTransformationService:
    """
    Runs the full per-tick pipeline and owns the top-level bundle cache.

    Construct one instance at process start and hand it to consumers. The
    route activity analyzer and vehicle filter can be injected so several
    services share them, or left out to get private instances.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        direction_lookup: Optional[DirectionLookup] = None,
        route_activity_analyzer: Optional[RouteActivityAnalyzer] = None,
        vehicle_filter: Optional[IntelligentVehicleFilter] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the service.

        Args:
            config: Pipeline configuration; validated here.
            direction_lookup: External vehicle_id -> stop sequence lookup.
            route_activity_analyzer: Shared analyzer, or None to create one.
            vehicle_filter: Shared filter, or None to create one.
            clock: Time source in seconds; injectable for tests.

        Raises:
            ValueError: If the configuration is invalid.
        """
        self.config = (config or PipelineConfig()).validate()
        self.direction_lookup = direction_lookup
        self._clock = clock
        self.route_activity_analyzer = route_activity_analyzer or RouteActivityAnalyzer(self.config, clock=clock)
        self.vehicle_filter = vehicle_filter or IntelligentVehicleFilter(self.config, clock=clock)
        self._cache: TTLCache[TransformedVehicleData] = TTLCache.from_options(
            self.config.transformation_cache,
            clock=clock,
            name="transformation",
            max_entries=MAX_TRANSFORMATION_CACHE_ENTRIES,
        )
        self._reset_counters()

    def transform(
        self,
        raw_vehicles: Optional[Sequence[Any]],
        raw_stations: Optional[Sequence[Any]],
        raw_routes: Optional[Sequence[Any]],
        context: TransformationContext,
        cache_key: Optional[str] = None,
    ) -> TransformedVehicleData:
        """
        Transform one poll's raw feed into a presentation bundle.

        Args:
            raw_vehicles: Raw vehicle records (see normalize_vehicle).
            raw_stations: Raw station records ``{id, name, coordinates}``.
            raw_routes: Raw route records ``{id, name}``.
            context: Target stations, user location and feature switches.
            cache_key: Precomputed compute_fingerprint() of the same inputs,
                if the caller already has it.

        Returns:
            TransformedVehicleData. Never raises for bad data: malformed
            records are skipped and counted, enrichment failures leave an
            empty stop sequence, and a missing location yields an empty bundle.
        """
        start = time.perf_counter()
        raw_vehicles = list(raw_vehicles or [])
        raw_stations = list(raw_stations or [])
        raw_routes = list(raw_routes or [])
        self.transformation_count += 1

        try:
            if context.user_location is None and not context.target_stations:
                logger.info("No user location or target stations; returning empty vehicle bundle")
                return self._finish(self._empty_bundle(context, len(raw_vehicles)), start)

            if cache_key is None:
                cache_key = self.compute_fingerprint(raw_vehicles, raw_stations, raw_routes, context)
            cached = self._cache.get_stale(cache_key)
            if cached is not None:
                if cached.is_stale:
                    logger.debug(f"Serving stale transformation result ({cached.age:.0f}s old)")
                else:
                    logger.debug("Transformation cache hit")
                self.total_transformation_time += (time.perf_counter() - start) * 1000
                return replace(cached.data, metadata=replace(cached.data.metadata, cache_hit=True))

            bundle = self._run_pipeline(raw_vehicles, raw_stations, raw_routes, context, start)
            self._cache.set(cache_key, bundle, tags=bundle.vehicles.keys() | self._raw_ids(raw_vehicles))
            return self._finish(bundle, start)

        except Exception as e:
            logger.error(f"Vehicle transformation failed: {e}", exc_info=True)
            return self._finish(self._empty_bundle(context, len(raw_vehicles)), start)

    def compute_fingerprint(
        self,
        raw_vehicles: Sequence[Any],
        raw_stations: Sequence[Any],
        raw_routes: Sequence[Any],
        context: TransformationContext,
    ) -> str:
        """Deterministic digest of all inputs; record order does not matter."""
        def records(items: Sequence[Any]) -> str:
            return "\n".join(sorted(json.dumps(item, sort_keys=True, default=repr) for item in items))

        stations_sig = "|".join(sorted(repr(s) for s in context.target_stations))
        return make_fingerprint(
            "transform",
            records(raw_vehicles),
            records(raw_stations),
            records(raw_routes),
            stations_sig,
            context.user_location,
            context.max_distance,
            context.include_schedule_data,
            context.include_direction_analysis,
        )

    def is_cached(self, cache_key: str) -> bool:
        """Whether a bundle for cache_key is still held (not invalidated or past max_age)."""
        return self._cache.has(cache_key)

    def get_cache_statistics(self) -> dict:
        """Aggregated statistics for every cache in the pipeline."""
        transformation = self._cache.stats()
        lookups = {
            "calls": self.lookup_calls,
            "failures": self.lookup_failures,
            "failure_rate": self.lookup_failures / self.lookup_calls if self.lookup_calls else 0.0,
        }
        return {
            "transformation": transformation,
            "route_activity": self.route_activity_analyzer.get_performance_metrics(),
            "intelligent_filter": self.vehicle_filter.get_cache_stats(),
            "lookups": lookups,
            "overall": {
                "transformation_count": self.transformation_count,
                "total_transformation_time": self.total_transformation_time,
                "average_transformation_time": (
                    self.total_transformation_time / self.transformation_count
                    if self.transformation_count else 0.0
                ),
                "cache_hit_rate": transformation["hit_rate"],
            },
        }

    def optimize_caches(self) -> int:
        """
        Evict expired entries from every cache in the pipeline.

        Returns:
            Total number of entries removed.
        """
        removed = self._cache.cleanup()
        removed += self.route_activity_analyzer.cleanup()
        removed += self.vehicle_filter.cleanup()
        logger.info(f"Cache optimization removed {removed} expired entries")
        return removed

    def invalidate_cache_for_vehicles(self, vehicle_ids: Iterable[str]) -> int:
        """
        Drop cached bundles and filter results that involve any of vehicle_ids.

        Returns:
            Number of entries removed across the bundle and filter caches.
        """
        ids = set(vehicle_ids)
        removed = self._cache.invalidate_tags(ids)
        removed += self.vehicle_filter.invalidate_cache_for_vehicles(ids)
        logger.debug(f"Invalidated {removed} cache entries for {len(ids)} vehicles")
        return removed

    def performance_check(self, vehicle_count: int = 1000, iterations: int = 3) -> PerformanceCheckResult:
        """
        Time a synthetic transform and compare it to the latency budget.

        The budget is 50 ms per 1000 vehicles, never less than 50 ms. Runs on a
        scratch service so this instance's caches and statistics are untouched.
        Diagnostic only: an overrun is reported, never raised.
        """
        target = max(PERFORMANCE_TARGET_MS_PER_1000, PERFORMANCE_TARGET_MS_PER_1000 * vehicle_count / 1000)
        iterations = max(1, iterations)
        center = Coordinates(latitude=46.7712, longitude=23.6236)
        station = TransformationStation(id="synthetic-station", name="Synthetic Station", coordinates=center)
        context = TransformationContext(target_stations=[station], user_location=center)
        raw_routes = [{"id": f"R{i}", "name": f"Route {i}"} for i in range(10)]

        try:
            scratch = VehicleTransformationService(
                config=self.config,
                direction_lookup=lambda vehicle_id: VehicleDirection(),
            )
            timings = []
            for _ in range(iterations):
                # New timestamps each run so every iteration is a cold cache miss
                raw_vehicles = generate_synthetic_vehicles(vehicle_count, center)
                scratch.clear_all_caches()
                run_start = time.perf_counter()
                scratch.transform(raw_vehicles, [], raw_routes, context)
                timings.append((time.perf_counter() - run_start) * 1000)
            average_time = sum(timings) / len(timings)
        except Exception as e:
            logger.error(f"Performance check failed: {e}", exc_info=True)
            return PerformanceCheckResult(
                success=False,
                average_time=math.inf,
                target=target,
                vehicle_count=vehicle_count,
                iterations=0,
                recommendations=[f"Synthetic transform failed: {e}"],
            )

        success = average_time <= target
        recommendations = []
        if not success:
            stats = self.get_cache_statistics()
            if stats["transformation"]["hit_rate"] < 0.8:
                recommendations.append(
                    f"Increase transformation cache hit rate (currently {stats['transformation']['hit_rate']:.0%})"
                )
            if stats["intelligent_filter"]["hit_rate"] < 0.7:
                recommendations.append(
                    f"Improve vehicle filter cache efficiency (currently {stats['intelligent_filter']['hit_rate']:.0%})"
                )
            recommendations.append("Consider increasing cache TTL values")
            recommendations.append("Reduce the number of target stations per distance pass")

        logger.info(
            f"Performance check: {vehicle_count} vehicles averaged {average_time:.1f}ms "
            f"(target {target:.0f}ms, {'ok' if success else 'over budget'})"
        )
        return PerformanceCheckResult(
            success=success,
            average_time=average_time,
            target=target,
            vehicle_count=vehicle_count,
            iterations=iterations,
            recommendations=recommendations,
        )

    def clear_all_caches(self) -> None:
        self._cache.clear()
        self.route_activity_analyzer.clear_cache()
        self.vehicle_filter.clear_cache()
        logger.debug("All transformation caches cleared")

    def destroy(self) -> None:
        """Release caches and counters; the instance can still be reused afterwards."""
        self.clear_all_caches()
        self._reset_counters()
        logger.info("Vehicle transformation service reset")

    def _run_pipeline(
        self,
        raw_vehicles: List[Any],
        raw_stations: List[Any],
        raw_routes: List[Any],
        context: TransformationContext,
        start: float,
    ) -> TransformedVehicleData:
        now_ts = self._clock()
        now = datetime.fromtimestamp(now_ts, tz=timezone.utc)

        route_info: Dict[str, RouteInfo] = {}
        for raw in raw_routes:
            route = normalize_route(raw)
            if route is not None:
                route_info[route.route_id] = route

        station_info: Dict[str, TransformationStation] = {}
        for raw in raw_stations:
            station = normalize_station(raw)
            if station is None:
                logger.debug(f"Skipping malformed station record: {raw!r:.80}")
                continue
            station_info[station.id] = station

        target_stations = [self._with_known_routes(s, station_info) for s in context.target_stations]
        for station in target_stations:
            station_info.setdefault(station.id, station)

        route_names = {route_id: info.route_name for route_id, info in route_info.items()}
        vehicles: List[CoreVehicle] = []
        seen_ids = set()
        skipped = 0
        for raw in raw_vehicles:
            vehicle = normalize_vehicle(raw, now, route_names)
            if vehicle is None or vehicle.id in seen_ids:
                skipped += 1
                continue
            seen_ids.add(vehicle.id)
            vehicles.append(vehicle)

        if skipped:
            logger.warning(f"Skipped {skipped} of {len(raw_vehicles)} malformed or duplicate vehicle records")

        route_activity = self.route_activity_analyzer.analyze_route_activity(vehicles)
        filtering = self.vehicle_filter.filter_vehicles(
            vehicles,
            route_activity,
            FilteringContext(
                target_stations=target_stations,
                busy_route_threshold=self.config.busy_route_threshold,
                distance_filter_threshold=self.config.distance_filter_threshold,
                debug_mode=self.config.debug_mode,
                transformation_context=context,
            ),
        )

        directions, failures = self._enrich(filtering.filtered_vehicles, context)
        target_ids = {s.id for s in target_stations}

        bundle = TransformedVehicleData(
            station_info=station_info,
            route_info=route_info,
            route_activity=route_activity,
            directions=directions,
            context=context,
        )
        for vehicle in filtering.filtered_vehicles:
            bundle.vehicles[vehicle.id] = vehicle
            is_real_time = None
            if context.include_schedule_data:
                is_real_time = (now_ts - vehicle.timestamp.timestamp()) <= self.config.real_time_threshold
                (bundle.real_time_vehicles if is_real_time else bundle.scheduled_vehicles).add(vehicle.id)
            bundle.display_data[vehicle.id] = self._display_data(
                vehicle,
                directions.get(vehicle.id),
                is_real_time,
                self._distance_for(vehicle, filtering, target_stations, context),
                target_ids,
                route_info,
            )

        bundle.metadata = TransformationMetadata(
            vehicles_processed=len(raw_vehicles),
            vehicles_transformed=len(bundle.vehicles),
            vehicles_skipped=skipped,
            enrichment_failures=failures,
            transformed_at=now,
            context_snapshot=self._context_snapshot(context),
        )

        logger.info(
            f"Transformed {len(raw_vehicles)} raw vehicles into {len(bundle.vehicles)} "
            f"({skipped} skipped, {failures} enrichment failures)"
        )
        return bundle

    def _enrich(self, vehicles: Sequence[CoreVehicle], context: TransformationContext):
        """Attach stop sequences from the external lookup; failures degrade to empty."""
        directions: Dict[str, VehicleDirection] = {}
        failures = 0
        if not context.include_direction_analysis or self.direction_lookup is None:
            return {v.id: VehicleDirection() for v in vehicles}, 0

        for vehicle in vehicles:
            self.lookup_calls += 1
            try:
                raw = self.direction_lookup(vehicle.id)
                if raw is None:
                    raise ValueError("lookup returned nothing")
                directions[vehicle.id] = parse_direction(raw)
            except Exception as e:
                failures += 1
                self.lookup_failures += 1
                logger.debug(f"Direction lookup failed for vehicle {vehicle.id}: {e}")
                directions[vehicle.id] = VehicleDirection()

        if failures:
            logger.warning(f"Direction lookup failed for {failures} of {len(vehicles)} vehicles")
        return directions, failures

    def _display_data(
        self,
        vehicle: CoreVehicle,
        direction: Optional[VehicleDirection],
        is_real_time: Optional[bool],
        distance: Optional[float],
        target_ids: set,
        route_info: Dict[str, RouteInfo],
    ) -> VehicleDisplayData:
        priority = 0
        if direction is not None and any(
            stop.is_current and stop.stop_id in target_ids for stop in direction.stop_sequence
        ):
            priority += PRIORITY_AT_STATION
        if is_real_time:
            priority += PRIORITY_REAL_TIME
        if distance is not None and distance <= self.config.nearby_distance:
            priority += PRIORITY_NEARBY

        route = route_info.get(vehicle.route_id)
        return VehicleDisplayData(
            vehicle_id=vehicle.id,
            route_name=route.route_name if route else (vehicle.route_name or vehicle.route_id),
            vehicle_label=vehicle.label or vehicle.id,
            display_priority=priority,
            last_updated=vehicle.timestamp,
            wheelchair_accessible=vehicle.wheelchair_accessible,
            bike_accessible=vehicle.bike_accessible,
            distance_to_station=distance,
        )

    @staticmethod
    def _distance_for(
        vehicle: CoreVehicle,
        filtering: FilteringResult,
        target_stations: Sequence[TransformationStation],
        context: TransformationContext,
    ) -> Optional[float]:
        decision = filtering.decisions.get(vehicle.id)
        if decision is not None and decision.distance_to_nearest is not None:
            distance = decision.distance_to_nearest
        else:
            points = [s.coordinates for s in target_stations]
            if context.user_location is not None:
                points.append(context.user_location)
            distance = min_distance(vehicle.position, points)
        return None if math.isinf(distance) else distance

    @staticmethod
    def _with_known_routes(
        station: TransformationStation,
        station_info: Dict[str, TransformationStation],
    ) -> TransformationStation:
        """Fill in served routes for a target station from the station feed, if it lacks them."""
        known = station_info.get(station.id)
        if station.route_ids or known is None or not known.route_ids:
            return station
        return TransformationStation(
            id=station.id,
            name=station.name,
            coordinates=station.coordinates,
            route_ids=known.route_ids,
        )

    @staticmethod
    def _raw_ids(raw_vehicles: Sequence[Any]) -> set:
        ids = set()
        for raw in raw_vehicles:
            if isinstance(raw, CoreVehicle):
                ids.add(raw.id)
            elif isinstance(raw, Mapping) and raw.get("id") is not None:
                ids.add(str(raw["id"]).strip())
        return ids

    @staticmethod
    def _context_snapshot(context: TransformationContext) -> dict:
        return {
            "target_stations_count": len(context.target_stations),
            "has_user_location": context.user_location is not None,
            "max_distance": context.max_distance,
            "include_schedule_data": context.include_schedule_data,
            "include_direction_analysis": context.include_direction_analysis,
        }

    def _empty_bundle(self, context: TransformationContext, processed: int) -> TransformedVehicleData:
        return TransformedVehicleData(
            context=context,
            metadata=TransformationMetadata(
                vehicles_processed=processed,
                transformed_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
                context_snapshot=self._context_snapshot(context),
            ),
        )

    def _finish(self, bundle: TransformedVehicleData, start: float) -> TransformedVehicleData:
        duration = (time.perf_counter() - start) * 1000
        bundle.metadata.transformation_duration = duration
        self.total_transformation_time += duration
        return bundle

    def _reset_counters(self) -> None:
        self.transformation_count = 0
        self.total_transformation_time = 0.0
        self.lookup_calls = 0
        self.lookup_failures = 0
