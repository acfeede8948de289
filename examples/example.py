"""Example usage of StationBoard on a synthetic feed."""

import logging
import sys
import time
from pathlib import Path

# Add src to path so we can import stationboard
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stationboard.config import PipelineConfig
from stationboard.models import Coordinates, TransformationContext, TransformationStation
from stationboard.station_board import StationBoard
from stationboard.transformation import generate_synthetic_vehicles

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

CENTER = Coordinates(latitude=40.7559, longitude=-73.9870)

STATIONS = [
    TransformationStation(id="S1", name="Central", coordinates=CENTER),
    TransformationStation(
        id="S2",
        name="Harbor",
        coordinates=Coordinates(latitude=CENTER.latitude - 0.008, longitude=CENTER.longitude + 0.004),
    ),
]


def print_board(result) -> None:
    """Display every station card."""
    for group in result.groups:
        distance = f"{group.distance:.0f}m away" if group.distance is not None else "distance unknown"
        print(f"\n{group.station.name} ({distance})")
        print("-" * 70)
        if not group.vehicles:
            print("  No vehicles")
            continue
        for vehicle in group.vehicles:
            display = vehicle.display_data
            to_station = f"{display.distance_to_station:.0f}m" if display.distance_to_station is not None else "?"
            print(
                f"  {display.route_name:<8} #{display.vehicle_label:<6} "
                f"priority {display.display_priority:>3}  {to_station}"
            )
        routes = ", ".join(f"{r.route_name} ({r.vehicle_count})" for r in group.all_routes)
        print(f"  Routes here: {routes}")


def main(vehicle_count: int = 200):
    board = StationBoard(PipelineConfig(max_vehicles_per_station=4))
    context = TransformationContext(target_stations=STATIONS, user_location=CENTER)
    raw_routes = [{"id": f"R{i}", "name": f"Route {i}"} for i in range(10)]
    raw_vehicles = generate_synthetic_vehicles(vehicle_count, CENTER, timestamp=time.time())

    print(f"\n{'='*70}")
    print(f"Station board for {vehicle_count} synthetic vehicles")
    print(f"{'='*70}")

    try:
        print_board(board.refresh(raw_vehicles, [], raw_routes, context))

        print(f"\n{'='*70}")
        print("Filtered to route R3 at Central")
        print(f"{'='*70}")
        board.select_route("S1", "R3")
        print_board(board.refresh(raw_vehicles, [], raw_routes, context))

        check = board.performance_check(1000)
        print(f"\nPerformance: {check.average_time:.1f}ms for {check.vehicle_count} vehicles (target {check.target:.0f}ms)")
        for recommendation in check.recommendations:
            print(f"  - {recommendation}")

        stats = board.cache_statistics()
        print(f"Transformation cache hit rate: {stats['transformation']['hit_rate']:.0%}")
        print()
    except Exception as e:
        logger.error(f"Demo failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main(int(sys.argv[1]) if len(sys.argv) > 1 else 200)
