"""Main StationBoard class."""

import logging
import time
from typing import Any, Callable, Iterable, List, Optional, Sequence

from .config import PipelineConfig
from .models import PerformanceCheckResult, ProcessedGroups, StationVehicleGroup, TransformationContext
from .station_groups import RouteSelection, StationGroupProcessor, build_station_groups
from .transformation import DirectionLookup, VehicleTransformationService

logger = logging.getLogger(__name__)


class StationBoard:
    """
    Live vehicle board for a set of stations.

    Construct once at startup and call refresh() on every poll tick. This class
    provides methods to:
    - Transform a raw vehicle feed into per-station vehicle cards
    - Filter a station card down to one route
    - Inspect and maintain the pipeline caches
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        direction_lookup: Optional[DirectionLookup] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the board.

        Args:
            config: Pipeline configuration; defaults are used if omitted.
            direction_lookup: Optional vehicle_id -> stop sequence lookup.
            clock: Time source in seconds; injectable for tests.
        """
        self._clock = clock
        self.transformation_service = VehicleTransformationService(
            config=config,
            direction_lookup=direction_lookup,
            clock=clock,
        )
        self.config = self.transformation_service.config
        self.group_processor = StationGroupProcessor()
        self.selection = RouteSelection()

        self._last_fingerprint: Optional[str] = None
        self._last_computed_at = 0.0
        self._last_groups: List[StationVehicleGroup] = []
        self._last_selection: dict = {}
        self._last_result: Optional[ProcessedGroups] = None

    def refresh(
        self,
        raw_vehicles: Optional[Sequence[Any]],
        raw_stations: Optional[Sequence[Any]],
        raw_routes: Optional[Sequence[Any]],
        context: TransformationContext,
    ) -> ProcessedGroups:
        """
        Run one poll tick.

        Recomputation is skipped when the inputs are unchanged since the last
        call, the transformation cache still holds them and they are younger
        than its ttl; if only the route selection changed, only the grouping
        step runs.

        Returns:
            ProcessedGroups ready for display.
        """
        raw_vehicles = list(raw_vehicles or [])
        raw_stations = list(raw_stations or [])
        raw_routes = list(raw_routes or [])

        fingerprint = self.transformation_service.compute_fingerprint(
            raw_vehicles, raw_stations, raw_routes, context
        )
        selection = self.selection.as_dict()

        if self._memo_is_current(fingerprint):
            if selection == self._last_selection:
                logger.debug("Inputs unchanged; reusing previous station groups")
                return self._last_result
            logger.debug("Route selection changed; regrouping")
            return self._process(selection)

        bundle = self.transformation_service.transform(
            raw_vehicles, raw_stations, raw_routes, context, cache_key=fingerprint
        )
        self._last_groups = build_station_groups(bundle)
        self._last_fingerprint = fingerprint
        self._last_computed_at = self._clock()
        return self._process(selection)

    def select_route(self, station_id: str, route_id: str) -> Optional[str]:
        """
        Toggle the route filter of a station.

        Returns:
            The route now selected for the station, or None if it was cleared.
        """
        return self.selection.toggle(station_id, route_id)

    def clear_selection(self) -> None:
        self.selection.clear()

    def cache_statistics(self) -> dict:
        return self.transformation_service.get_cache_statistics()

    def performance_check(self, vehicle_count: int = 1000, iterations: int = 3) -> PerformanceCheckResult:
        return self.transformation_service.performance_check(vehicle_count, iterations)

    def cleanup(self) -> int:
        """
        Evict expired cache entries.

        Returns:
            Number of entries removed.
        """
        removed = self.transformation_service.optimize_caches()
        logger.info("Cleaned up station board caches")
        return removed

    def invalidate_cache_for_vehicles(self, vehicle_ids: Iterable[str]) -> int:
        """
        Drop cached results involving any of vehicle_ids, including the
        memoized station groups, so the next refresh() recomputes.

        Returns:
            Number of pipeline cache entries removed.
        """
        removed = self.transformation_service.invalidate_cache_for_vehicles(vehicle_ids)
        self._forget()
        return removed

    def reset(self) -> None:
        """Drop every cache and the memoized groups."""
        self.transformation_service.destroy()
        self._forget()
        self._last_selection = {}

    def _memo_is_current(self, fingerprint: str) -> bool:
        if self._last_result is None or fingerprint != self._last_fingerprint:
            return False
        if self._clock() - self._last_computed_at > self.config.transformation_cache.ttl:
            return False
        # Invalidated or evicted in the service
        return self.transformation_service.is_cached(fingerprint)

    def _forget(self) -> None:
        self._last_fingerprint = None
        self._last_computed_at = 0.0
        self._last_groups = []
        self._last_result = None

    def _process(self, selection: dict) -> ProcessedGroups:
        result = self.group_processor.process_groups(
            self._last_groups,
            selection,
            self.config.max_vehicles_per_station,
        )
        self._last_selection = selection
        self._last_result = result
        return result
