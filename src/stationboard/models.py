"""Data models for the station board pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, List, Optional, Set, Tuple, TypeVar

T = TypeVar("T")


class RouteClassification(str, Enum):
    """Activity level of a route in the current snapshot."""
    BUSY = "busy"
    QUIET = "quiet"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class CoreVehicle:
    """A normalized vehicle position report. Replaced wholesale on every poll."""
    id: str
    route_id: str
    position: Coordinates
    timestamp: datetime  # Aware, UTC
    trip_id: Optional[str] = None
    label: Optional[str] = None
    direction: Optional[float] = None  # Bearing in degrees
    speed: Optional[float] = None
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    wheelchair_accessible: bool = False
    bike_accessible: bool = False
    route_name: Optional[str] = None


@dataclass(frozen=True)
class TransformationStation:
    """A station the user cares about."""
    id: str
    name: str
    coordinates: Coordinates
    route_ids: Tuple[str, ...] = ()  # Routes serving this station, empty if unknown


@dataclass(frozen=True)
class RouteInfo:
    route_id: str
    route_name: str


@dataclass(frozen=True)
class RouteActivity:
    """Vehicle count and busy/quiet classification for one route."""
    route_id: str
    vehicle_count: int
    classification: RouteClassification
    computed_at: datetime


@dataclass
class TransformationContext:
    """Per-call inputs describing where the user is and what to compute."""
    target_stations: List[TransformationStation] = field(default_factory=list)
    user_location: Optional[Coordinates] = None
    max_distance: float = 2000.0  # meters
    include_schedule_data: bool = True
    include_direction_analysis: bool = True


@dataclass
class FilteringContext:
    target_stations: List[TransformationStation]
    busy_route_threshold: int
    distance_filter_threshold: float  # meters
    debug_mode: bool
    transformation_context: TransformationContext


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value. Invariant: expires_at == created_at + ttl."""
    data: T
    created_at: float
    expires_at: float
    tags: FrozenSet[str] = frozenset()  # Vehicle ids the value was derived from


@dataclass(frozen=True)
class StaleRead(Generic[T]):
    """Result of a stale-tolerant cache read."""
    data: T
    is_stale: bool
    age: float  # seconds


@dataclass(frozen=True)
class StopSequenceEntry:
    stop_id: str
    stop_name: str
    sequence: int
    is_current: bool = False
    is_destination: bool = False


@dataclass
class VehicleDirection:
    """Upcoming stops for a vehicle, supplied by the direction lookup."""
    stop_sequence: List[StopSequenceEntry] = field(default_factory=list)


@dataclass
class VehicleDisplayData:
    vehicle_id: str
    route_name: str
    vehicle_label: str
    display_priority: int  # Higher is shown first
    last_updated: datetime
    wheelchair_accessible: bool = False
    bike_accessible: bool = False
    distance_to_station: Optional[float] = None  # meters


@dataclass
class StationVehicle:
    display_data: VehicleDisplayData
    core_vehicle: CoreVehicle
    stop_sequence: List[StopSequenceEntry] = field(default_factory=list)


@dataclass
class RouteSummary:
    route_id: str
    route_name: str
    vehicle_count: int


@dataclass
class StationVehicleGroup:
    """Vehicles relevant to one station, plus every route seen there."""
    station: TransformationStation
    distance: Optional[float]  # meters from the user, if known
    vehicles: List[StationVehicle] = field(default_factory=list)
    all_routes: List[RouteSummary] = field(default_factory=list)


@dataclass
class ProcessedGroups:
    groups: List[StationVehicleGroup]
    has_stations_with_vehicles: bool


@dataclass(frozen=True)
class FilteringDecision:
    vehicle_id: str
    route_id: str
    route_classification: RouteClassification
    distance_filter_applied: bool
    included: bool
    reason: str
    distance_to_nearest: Optional[float] = None


@dataclass
class FilteringStats:
    total_vehicles: int
    filtered_vehicles: int
    removed_by_route: int = 0
    removed_by_distance: int = 0
    removed_by_cap: int = 0
    busy_routes: int = 0
    quiet_routes: int = 0
    filtering_time: float = 0.0  # ms
    cache_hit: bool = False
    cache_hit_rate: float = 0.0


@dataclass
class FilteringResult:
    filtered_vehicles: List[CoreVehicle]
    stats: FilteringStats
    decisions: Dict[str, FilteringDecision] = field(default_factory=dict)


@dataclass
class UserFeedback:
    """Human-readable summary of a filtering pass."""
    total_routes: int
    busy_routes: int
    quiet_routes: int
    distance_filtered_vehicles: int
    route_status_messages: Dict[str, str] = field(default_factory=dict)
    empty_state_message: Optional[str] = None


@dataclass
class TransformationMetadata:
    transformation_duration: float = 0.0  # ms
    vehicles_processed: int = 0
    vehicles_transformed: int = 0
    vehicles_skipped: int = 0
    enrichment_failures: int = 0
    cache_hit: bool = False
    transformed_at: Optional[datetime] = None
    context_snapshot: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransformedVehicleData:
    """Everything the presentation layer needs for one poll tick."""
    vehicles: Dict[str, CoreVehicle] = field(default_factory=dict)
    directions: Dict[str, VehicleDirection] = field(default_factory=dict)
    display_data: Dict[str, VehicleDisplayData] = field(default_factory=dict)
    station_info: Dict[str, TransformationStation] = field(default_factory=dict)
    route_info: Dict[str, RouteInfo] = field(default_factory=dict)
    route_activity: Dict[str, RouteActivity] = field(default_factory=dict)
    real_time_vehicles: Set[str] = field(default_factory=set)
    scheduled_vehicles: Set[str] = field(default_factory=set)
    metadata: TransformationMetadata = field(default_factory=TransformationMetadata)
    context: Optional[TransformationContext] = None


@dataclass
class PerformanceCheckResult:
    success: bool
    average_time: float  # ms
    target: float  # ms
    vehicle_count: int
    iterations: int
    recommendations: List[str] = field(default_factory=list)
