"""Pipeline configuration and defaults."""

from dataclasses import dataclass, field

# Cache lifetimes (seconds)
DEFAULT_CACHE_TTL = 5 * 60
DEFAULT_CACHE_MAX_AGE = 30 * 60
ROUTE_ACTIVITY_CACHE_TTL = 30
FILTER_CACHE_TTL = 30
DISTANCE_CACHE_TTL = 5 * 60
MAX_FILTER_CACHE_ENTRIES = 100
MAX_DISTANCE_CACHE_ENTRIES = 50000
MAX_TRANSFORMATION_CACHE_ENTRIES = 100

# Route classification
DEFAULT_BUSY_ROUTE_THRESHOLD = 5  # A route with more vehicles than this is busy
DEFAULT_BUSY_ROUTE_VEHICLE_CAP = 3

# Distances (meters)
DEFAULT_DISTANCE_FILTER_THRESHOLD = 2000.0
DEFAULT_MAX_DISTANCE = 5000.0
NEARBY_DISTANCE = 500.0

# Freshness (seconds)
STALE_DATA_THRESHOLD = 5 * 60
REAL_TIME_THRESHOLD = 2 * 60

DEFAULT_MAX_VEHICLES_PER_STATION = 5

# 50 ms per 1000 vehicles
PERFORMANCE_TARGET_MS_PER_1000 = 50.0


@dataclass(frozen=True)
class CacheOptions:
    ttl: float = DEFAULT_CACHE_TTL
    max_age: float = DEFAULT_CACHE_MAX_AGE

    def validate(self) -> None:
        if self.ttl < 0:
            raise ValueError(f"Cache ttl must be >= 0, got {self.ttl}")
        if self.max_age < self.ttl:
            raise ValueError(f"Cache max_age ({self.max_age}) must be >= ttl ({self.ttl})")


@dataclass(frozen=True)
class PipelineConfig:
    """
    Explicit configuration for every stage of the pipeline.

    Services receive one of these at construction; nothing is read from the
    environment.
    """
    busy_route_threshold: int = DEFAULT_BUSY_ROUTE_THRESHOLD
    busy_route_vehicle_cap: int = DEFAULT_BUSY_ROUTE_VEHICLE_CAP
    distance_filter_threshold: float = DEFAULT_DISTANCE_FILTER_THRESHOLD
    max_vehicles_per_station: int = DEFAULT_MAX_VEHICLES_PER_STATION
    stale_data_threshold: float = STALE_DATA_THRESHOLD
    real_time_threshold: float = REAL_TIME_THRESHOLD
    nearby_distance: float = NEARBY_DISTANCE
    debug_mode: bool = False
    transformation_cache: CacheOptions = field(default_factory=CacheOptions)
    route_activity_cache: CacheOptions = field(
        default_factory=lambda: CacheOptions(ttl=ROUTE_ACTIVITY_CACHE_TTL)
    )
    filter_cache: CacheOptions = field(default_factory=lambda: CacheOptions(ttl=FILTER_CACHE_TTL))
    distance_cache: CacheOptions = field(default_factory=lambda: CacheOptions(ttl=DISTANCE_CACHE_TTL))

    def validate(self) -> "PipelineConfig":
        """
        Fail fast on values that can only come from a programming mistake.

        Returns:
            self, so callers can write ``config = PipelineConfig(...).validate()``.

        Raises:
            ValueError: If any threshold, cap or cache lifetime is negative.
        """
        for name in (
            "busy_route_threshold",
            "busy_route_vehicle_cap",
            "distance_filter_threshold",
            "max_vehicles_per_station",
            "stale_data_threshold",
            "real_time_threshold",
            "nearby_distance",
        ):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")

        for options in (
            self.transformation_cache,
            self.route_activity_cache,
            self.filter_cache,
            self.distance_cache,
        ):
            options.validate()

        return self
