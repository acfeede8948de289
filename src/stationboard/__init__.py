"""stationboard - Live transit vehicle board: feed transformation, filtering and per-station grouping."""

__version__ = "0.1.0"

from .models import (
    Coordinates,
    CoreVehicle,
    ProcessedGroups,
    RouteClassification,
    StationVehicleGroup,
    TransformationContext,
    TransformationStation,
    TransformedVehicleData,
)
from .config import PipelineConfig, CacheOptions
from .cache import TTLCache
from .route_activity import RouteActivityAnalyzer
from .vehicle_filter import IntelligentVehicleFilter
from .transformation import VehicleTransformationService
from .station_groups import StationGroupProcessor, RouteSelection, build_station_groups
from .station_board import StationBoard
from .gtfs_loader import GTFSLoader
from .feed import decode_vehicle_positions

__all__ = [
    "StationBoard",
    "VehicleTransformationService",
    "IntelligentVehicleFilter",
    "RouteActivityAnalyzer",
    "StationGroupProcessor",
    "RouteSelection",
    "build_station_groups",
    "GTFSLoader",
    "decode_vehicle_positions",
    "TTLCache",
    "PipelineConfig",
    "CacheOptions",
    "Coordinates",
    "CoreVehicle",
    "TransformationStation",
    "TransformationContext",
    "TransformedVehicleData",
    "StationVehicleGroup",
    "ProcessedGroups",
    "RouteClassification",
]
