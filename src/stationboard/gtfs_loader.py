"""GTFS static data loader producing station and route records."""

import csv
import io
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Set

from .models import Coordinates, TransformationStation

logger = logging.getLogger(__name__)


class GTFSLoader:
    """Loads and indexes GTFS static stops and routes."""

    def __init__(self):
        self.stations: Dict[str, TransformationStation] = {}
        self.stations_by_name: Dict[str, List[str]] = {}  # name -> [stop_ids]
        self.routes: Dict[str, str] = {}  # route_id -> route_name
        self.stops_by_route: Dict[str, Set[str]] = {}  # route_id -> {stop_ids}
        self.trip_routes: Dict[str, str] = {}  # trip_id -> route_id, from trips.txt
        self.parent_to_children: Dict[str, List[str]] = {}
        self.stop_to_parent: Dict[str, str] = {}

    def load_from_files(
        self,
        stops_path: str,
        routes_path: str,
        stop_times_path: Optional[str] = None,
        trips_path: Optional[str] = None,
    ) -> None:
        """
        Load GTFS data from local CSV files.

        Args:
            stops_path: Path to stops.txt
            routes_path: Path to routes.txt
            stop_times_path: Optional path to stop_times.txt; fills the routes
                served by each station.
            trips_path: Optional path to trips.txt, used to map trips to routes.
        """
        logger.info("Loading GTFS data from local files")
        with open(stops_path, "r", encoding="utf-8") as f:
            self._load_stops(f.read())
        with open(routes_path, "r", encoding="utf-8") as f:
            self._load_routes(f.read())
        if trips_path:
            with open(trips_path, "r", encoding="utf-8") as f:
                self._load_trips(f.read())
        if stop_times_path:
            with open(stop_times_path, "r", encoding="utf-8") as f:
                self._load_stop_times(f.read())
        logger.info(f"Loaded {len(self.stations)} stations and {len(self.routes)} routes")

    def _load_stops(self, csv_content: str) -> None:
        """Parse stops.txt into stations, skipping rows without usable coordinates."""
        reader = csv.DictReader(io.StringIO(csv_content))
        skipped = 0

        for row in reader:
            stop_id = (row.get("stop_id") or "").strip()
            try:
                latitude = float(row["stop_lat"])
                longitude = float(row["stop_lon"])
            except (KeyError, TypeError, ValueError):
                skipped += 1
                continue
            if not stop_id:
                skipped += 1
                continue

            stop_name = row.get("stop_name") or stop_id
            parent_station = row.get("parent_station") or ""

            self.stations[stop_id] = TransformationStation(
                id=stop_id,
                name=stop_name,
                coordinates=Coordinates(latitude=latitude, longitude=longitude),
            )

            if parent_station:
                self.parent_to_children.setdefault(parent_station, []).append(stop_id)
                self.stop_to_parent[stop_id] = parent_station
            # A parent station (location_type=1) is its own parent
            elif row.get("location_type") == "1":
                self.stop_to_parent[stop_id] = stop_id

            self.stations_by_name.setdefault(stop_name, []).append(stop_id)

        if skipped:
            logger.warning(f"Skipped {skipped} stops without an id or coordinates")

    def _load_routes(self, csv_content: str) -> None:
        """Parse routes.txt."""
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            route_id = row["route_id"]
            route_name = row.get("route_short_name") or row.get("route_long_name") or route_id
            self.routes[route_id] = route_name
            self.stops_by_route.setdefault(route_id, set())

    def _load_trips(self, csv_content: str) -> None:
        """Parse trips.txt for the trip -> route mapping."""
        reader = csv.DictReader(io.StringIO(csv_content))
        for row in reader:
            if row.get("trip_id") and row.get("route_id"):
                self.trip_routes[row["trip_id"]] = row["route_id"]

    def _route_for_trip(self, trip_id: str) -> Optional[str]:
        if trip_id in self.trip_routes:
            return self.trip_routes[trip_id]
        # Without trips.txt, fall back to trip ids of the form PREFIX_TIME_ROUTE..DIRECTION
        if ".." in trip_id:
            segments = trip_id.split("..")[0].split("_")
            return segments[-1] if segments else None
        return None

    def _load_stop_times(self, csv_content: str) -> None:
        """Parse stop_times.txt to map stops to the routes serving them."""
        reader = csv.DictReader(io.StringIO(csv_content))

        for row in reader:
            trip_id = row.get("trip_id")
            if not trip_id:
                continue
            route_id = self._route_for_trip(trip_id)
            if route_id and route_id in self.routes:
                self.stops_by_route.setdefault(route_id, set()).add(row["stop_id"])

        served: Dict[str, Set[str]] = {}
        for route_id, stop_ids in self.stops_by_route.items():
            for stop_id in stop_ids:
                served.setdefault(stop_id, set()).add(route_id)

        # stop_times references child platforms; parents inherit their routes
        for child_id, parent_id in self.stop_to_parent.items():
            if child_id != parent_id and child_id in served:
                served.setdefault(parent_id, set()).update(served[child_id])

        for stop_id, route_ids in served.items():
            if stop_id in self.stations:
                self.stations[stop_id] = replace(self.stations[stop_id], route_ids=tuple(sorted(route_ids)))

        logger.debug(f"Populated routes for {len(served)} stations")

    def station_records(self) -> List[dict]:
        """Stations as raw ``{id, name, coordinates, routeIds}`` records."""
        return [
            {
                "id": station.id,
                "name": station.name,
                "coordinates": {"lat": station.coordinates.latitude, "lon": station.coordinates.longitude},
                "routeIds": list(station.route_ids),
            }
            for station in self.stations.values()
        ]

    def route_records(self) -> List[dict]:
        """Routes as raw ``{id, name}`` records."""
        return [{"id": route_id, "name": name} for route_id, name in self.routes.items()]

    def get_station(self, station_id: str) -> TransformationStation:
        """Get station by stop_id."""
        if station_id not in self.stations:
            raise ValueError(f"Station {station_id} not found")
        return self.stations[station_id]

    def find_stations_by_name(self, name: str) -> List[TransformationStation]:
        """Find stations by name (partial, case-insensitive match)."""
        name_lower = name.lower()
        return [
            self.stations[stop_id]
            for station_name, stop_ids in self.stations_by_name.items()
            if name_lower in station_name.lower()
            for stop_id in stop_ids
        ]

    def get_stations_for_route(self, route_id: str) -> List[str]:
        return sorted(self.stops_by_route.get(route_id, set()))

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        self.stations.clear()
        self.stations_by_name.clear()
        self.routes.clear()
        self.stops_by_route.clear()
        self.trip_routes.clear()
        self.parent_to_children.clear()
        self.stop_to_parent.clear()
        logger.info("Cleared GTFS data from memory")
