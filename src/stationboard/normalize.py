"""Normalization of raw feed records into the core data model."""

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .geo import is_valid_position
from .models import ConfidenceLevel, Coordinates, CoreVehicle, RouteInfo, TransformationStation

# Epoch values above this are taken to be milliseconds
_EPOCH_MS_CUTOFF = 1e12

# Age thresholds (seconds) for deriving confidence when the feed has none
_HIGH_CONFIDENCE_AGE = 30
_MEDIUM_CONFIDENCE_AGE = 120


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-None value among keys (camelCase and snake_case spellings)."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(result) else result


def _as_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_coordinates(raw: Any) -> Optional[Coordinates]:
    """
    Parse a position in any of the shapes seen in feeds.

    Accepts a Coordinates instance, ``{lat, lon}``, ``{latitude, longitude}``
    or ``{lat, lng}``. Returns None when the position is missing or out of range.
    """
    if isinstance(raw, Coordinates):
        return raw if is_valid_position(raw) else None
    if not isinstance(raw, Mapping):
        return None

    lat = _as_float(_first(raw, "lat", "latitude"))
    lon = _as_float(_first(raw, "lon", "lng", "longitude"))
    if lat is None or lon is None:
        return None

    coords = Coordinates(latitude=lat, longitude=lon)
    return coords if is_valid_position(coords) else None


def parse_timestamp(value: Any, now: datetime) -> Optional[datetime]:
    """
    Parse a feed timestamp to an aware UTC datetime.

    Args:
        value: Epoch seconds, epoch milliseconds, ISO-8601 string or datetime.
            None means "now".
        now: Current time, used when the feed omits the timestamp.

    Returns:
        Aware datetime, or None if the value cannot be parsed.
    """
    if value is None:
        return now
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    number = _as_float(value)
    if number is not None:
        if number > _EPOCH_MS_CUTOFF:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def _parse_flag(value: Any, accessible_token: str) -> bool:
    if isinstance(value, str):
        return value.upper() in (accessible_token, "TRUE", "YES", "1")
    return bool(value)


def _parse_confidence(value: Any, age_seconds: float) -> ConfidenceLevel:
    if isinstance(value, ConfidenceLevel):
        return value
    if isinstance(value, str):
        try:
            return ConfidenceLevel(value.lower())
        except ValueError:
            pass
    if age_seconds <= _HIGH_CONFIDENCE_AGE:
        return ConfidenceLevel.HIGH
    if age_seconds <= _MEDIUM_CONFIDENCE_AGE:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.LOW


def normalize_vehicle(
    raw: Any,
    now: datetime,
    route_names: Optional[Mapping[str, str]] = None,
) -> Optional[CoreVehicle]:
    """
    Convert one raw vehicle record into a CoreVehicle.

    Args:
        raw: Feed record, e.g. ``{id, routeId, tripId, label, position:{lat,lon},
            timestamp, direction, speed, confidence, wheelchairAccessible,
            bikeAccessible}``. snake_case keys and flat latitude/longitude are
            also accepted.
        now: Current time.
        route_names: Optional route_id -> display name.

    Returns:
        CoreVehicle, or None if the record is malformed (missing id or route,
        unusable position or timestamp).
    """
    if isinstance(raw, CoreVehicle):
        return raw
    if not isinstance(raw, Mapping):
        return None

    vehicle_id = _as_id(raw.get("id"))
    route_id = _as_id(_first(raw, "routeId", "route_id"))
    if vehicle_id is None or route_id is None:
        return None

    position = raw.get("position")
    coords = parse_coordinates(position if position is not None else raw)
    if coords is None:
        return None

    timestamp = parse_timestamp(raw.get("timestamp"), now)
    if timestamp is None:
        return None

    age = (now - timestamp).total_seconds()
    route_name = (route_names or {}).get(route_id)

    return CoreVehicle(
        id=vehicle_id,
        route_id=route_id,
        position=coords,
        timestamp=timestamp,
        trip_id=_as_id(_first(raw, "tripId", "trip_id")),
        label=_as_id(raw.get("label")),
        direction=_as_float(_first(raw, "direction", "bearing")),
        speed=_as_float(raw.get("speed")),
        confidence=_parse_confidence(raw.get("confidence"), age),
        wheelchair_accessible=_parse_flag(
            _first(raw, "wheelchairAccessible", "wheelchair_accessible"), "WHEELCHAIR_ACCESSIBLE"
        ),
        bike_accessible=_parse_flag(_first(raw, "bikeAccessible", "bike_accessible"), "BIKE_ACCESSIBLE"),
        route_name=route_name,
    )


def normalize_station(raw: Any) -> Optional[TransformationStation]:
    """Convert ``{id, name, coordinates:{lat,lon}, routeIds?}`` into a TransformationStation."""
    if isinstance(raw, TransformationStation):
        return raw
    if not isinstance(raw, Mapping):
        return None

    station_id = _as_id(raw.get("id"))
    if station_id is None:
        return None

    coordinates = raw.get("coordinates")
    coords = parse_coordinates(coordinates if coordinates is not None else raw)
    if coords is None:
        return None

    route_ids = _first(raw, "routeIds", "route_ids") or ()
    return TransformationStation(
        id=station_id,
        name=str(raw.get("name") or station_id),
        coordinates=coords,
        route_ids=tuple(str(r) for r in route_ids),
    )


def normalize_route(raw: Any) -> Optional[RouteInfo]:
    """Convert ``{id, name}`` into a RouteInfo."""
    if isinstance(raw, RouteInfo):
        return raw
    if not isinstance(raw, Mapping):
        return None

    route_id = _as_id(_first(raw, "id", "route_id"))
    if route_id is None:
        return None
    name = _first(raw, "name", "route_short_name", "route_long_name") or route_id
    return RouteInfo(route_id=route_id, route_name=str(name))
