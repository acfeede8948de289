"""GTFS-Realtime vehicle position decoding."""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


def _wheelchair_token(descriptor) -> Optional[str]:
    """Enum name of the descriptor's wheelchair flag, if this protobuf build has the field."""
    if "wheelchair_accessible" not in descriptor.DESCRIPTOR.fields_by_name:
        return None
    if not descriptor.HasField("wheelchair_accessible"):
        return None
    field = descriptor.DESCRIPTOR.fields_by_name["wheelchair_accessible"]
    return field.enum_type.values_by_number[descriptor.wheelchair_accessible].name


def decode_vehicle_positions(feed_data: bytes) -> List[dict]:
    """
    Parse vehicle positions from a GTFS-Realtime feed.

    Args:
        feed_data: Raw protobuf bytes of a FeedMessage.

    Returns:
        Raw vehicle records in the shape VehicleTransformationService.transform
        consumes. Entities without a vehicle position are skipped; an
        undecodable feed yields an empty list.
    """
    try:
        from google.transit import gtfs_realtime_pb2

        feed = gtfs_realtime_pb2.FeedMessage()
        feed.ParseFromString(feed_data)

        header_timestamp = feed.header.timestamp if feed.header.HasField("timestamp") else None
        records: List[dict] = []

        for entity in feed.entity:
            if not entity.HasField("vehicle"):
                continue

            vehicle = entity.vehicle
            if not vehicle.HasField("position"):
                logger.debug(f"Skipping vehicle entity {entity.id} without a position")
                continue

            descriptor = vehicle.vehicle
            vehicle_id = descriptor.id or entity.id
            position = vehicle.position

            records.append({
                "id": vehicle_id,
                "routeId": vehicle.trip.route_id or None,
                "tripId": vehicle.trip.trip_id or None,
                "label": descriptor.label or None,
                "position": {"lat": position.latitude, "lon": position.longitude},
                "timestamp": vehicle.timestamp if vehicle.HasField("timestamp") else header_timestamp,
                "direction": position.bearing if position.HasField("bearing") else None,
                "speed": position.speed if position.HasField("speed") else None,
                "wheelchairAccessible": _wheelchair_token(descriptor),
            })

        logger.debug(f"Decoded {len(records)} vehicle positions from {len(feed.entity)} entities")
        return records

    except ImportError:
        logger.error("google.transit.gtfs_realtime_pb2 not installed")
        raise
    except Exception as e:
        logger.error(f"Failed to parse vehicle positions: {e}", exc_info=True)
        return []
