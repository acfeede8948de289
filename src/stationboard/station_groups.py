"""Per-station grouping, deduplication and route selection."""

import logging
from collections import Counter
from typing import Dict, List, Mapping, Optional, Sequence

from .config import DEFAULT_MAX_VEHICLES_PER_STATION
from .geo import haversine_distance
from .models import (
    ProcessedGroups,
    RouteSummary,
    StationVehicle,
    StationVehicleGroup,
    TransformationStation,
    TransformedVehicleData,
)

logger = logging.getLogger(__name__)


def _display_order(vehicle: StationVehicle):
    return (-vehicle.display_data.display_priority, vehicle.display_data.vehicle_id)


def has_stations_with_vehicles(groups: Sequence[StationVehicleGroup]) -> bool:
    return any(group.vehicles for group in groups)


class RouteSelection:
    """Which route, if any, the user has picked for each station."""

    def __init__(self, selected: Optional[Mapping[str, str]] = None):
        self._selected: Dict[str, str] = dict(selected or {})

    def toggle(self, station_id: str, route_id: str) -> Optional[str]:
        """
        Select route_id for station_id, or clear it if it is already selected.

        Returns:
            The route now selected for the station, or None if cleared.
        """
        if self._selected.get(station_id) == route_id:
            del self._selected[station_id]
            logger.debug(f"Cleared route filter for station {station_id}")
            return None
        self._selected[station_id] = route_id
        logger.debug(f"Station {station_id} now filtered to route {route_id}")
        return route_id

    def get(self, station_id: str) -> Optional[str]:
        return self._selected.get(station_id)

    def clear(self) -> None:
        self._selected.clear()

    def as_dict(self) -> Dict[str, str]:
        return dict(self._selected)

    def __eq__(self, other):
        if not isinstance(other, RouteSelection):
            return NotImplemented
        return self._selected == other._selected

    def __len__(self) -> int:
        return len(self._selected)


class StationGroupProcessor:
    """
    Turns raw per-station vehicle groups into what a station card shows.

    Without a route selection a station shows at most one vehicle per route
    (the one with the highest display priority), capped at
    ``max_vehicles_per_station``. With a route selected, every vehicle of
    that route is shown.
    """

    def process_groups(
        self,
        station_groups: Sequence[StationVehicleGroup],
        selected_route_per_station: Optional[Mapping[str, str]] = None,
        max_vehicles_per_station: int = DEFAULT_MAX_VEHICLES_PER_STATION,
    ) -> ProcessedGroups:
        """
        Deduplicate and cap the vehicles of every station group.

        Args:
            station_groups: Groups as built by build_station_groups().
            selected_route_per_station: station_id -> route_id filter. A
                RouteSelection is accepted too.
            max_vehicles_per_station: Cap for stations without a selection.

        Returns:
            ProcessedGroups in the same station order as the input.

        Raises:
            ValueError: If max_vehicles_per_station is negative.
        """
        if max_vehicles_per_station < 0:
            raise ValueError(f"max_vehicles_per_station must be >= 0, got {max_vehicles_per_station}")

        if isinstance(selected_route_per_station, RouteSelection):
            selected_route_per_station = selected_route_per_station.as_dict()
        selections = selected_route_per_station or {}

        processed = []
        for group in station_groups:
            selected_route = selections.get(group.station.id)
            if selected_route is not None:
                vehicles = self.filter_by_route(group.vehicles, selected_route)
            else:
                vehicles = self.best_per_route(group.vehicles)[:max_vehicles_per_station]

            processed.append(StationVehicleGroup(
                station=group.station,
                distance=group.distance,
                vehicles=vehicles,
                all_routes=list(group.all_routes),
            ))

        return ProcessedGroups(groups=processed, has_stations_with_vehicles=has_stations_with_vehicles(processed))

    @staticmethod
    def filter_by_route(vehicles: Sequence[StationVehicle], route_id: str) -> List[StationVehicle]:
        """All vehicles on route_id, highest priority first."""
        return sorted((v for v in vehicles if v.core_vehicle.route_id == route_id), key=_display_order)

    @staticmethod
    def best_per_route(vehicles: Sequence[StationVehicle]) -> List[StationVehicle]:
        """The highest-priority vehicle of each route, ties broken by smallest vehicle id."""
        best: Dict[str, StationVehicle] = {}
        for vehicle in vehicles:
            route_id = vehicle.core_vehicle.route_id
            current = best.get(route_id)
            if current is None or _display_order(vehicle) < _display_order(current):
                best[route_id] = vehicle
        return sorted(best.values(), key=_display_order)


def build_station_groups(bundle: TransformedVehicleData) -> List[StationVehicleGroup]:
    """
    Assign the vehicles of a transformed bundle to the stations they serve.

    A vehicle belongs to a station when its stop sequence lists the station.
    Vehicles with no stop sequence fall back to proximity: they belong to
    every station within the context's max_distance.

    Returns:
        One group per target station (or per known station when the context
        has no targets), in target order.
    """
    context = bundle.context
    if context is not None and context.target_stations:
        stations: List[TransformationStation] = [
            bundle.station_info.get(s.id, s) for s in context.target_stations
        ]
    else:
        stations = list(bundle.station_info.values())

    max_distance = context.max_distance if context is not None else None
    user_location = context.user_location if context is not None else None

    groups = []
    for station in stations:
        members: List[StationVehicle] = []
        for vehicle_id, vehicle in bundle.vehicles.items():
            display = bundle.display_data.get(vehicle_id)
            if display is None:
                continue
            direction = bundle.directions.get(vehicle_id)
            stop_sequence = list(direction.stop_sequence) if direction is not None else []

            if stop_sequence:
                belongs = any(stop.stop_id == station.id for stop in stop_sequence)
            else:
                belongs = (
                    max_distance is not None
                    and haversine_distance(vehicle.position, station.coordinates) <= max_distance
                )
            if belongs:
                members.append(StationVehicle(display_data=display, core_vehicle=vehicle, stop_sequence=stop_sequence))

        route_counts = Counter(v.core_vehicle.route_id for v in members)
        all_routes = [
            RouteSummary(
                route_id=route_id,
                route_name=bundle.route_info[route_id].route_name if route_id in bundle.route_info else route_id,
                vehicle_count=count,
            )
            for route_id, count in sorted(route_counts.items())
        ]

        distance = haversine_distance(user_location, station.coordinates) if user_location is not None else None
        groups.append(StationVehicleGroup(
            station=station,
            distance=distance,
            vehicles=sorted(members, key=_display_order),
            all_routes=all_routes,
        ))

    logger.debug(f"Built {len(groups)} station groups from {len(bundle.vehicles)} vehicles")
    return groups
