from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, radians, sin, sqrt

from app.models import RangeStatus, RejectReason, ValidationDecision

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeofenceDecision:
    decision: ValidationDecision
    range_status: RangeStatus | None
    reject_reason: RejectReason | None
    distance_m: float


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def evaluate_geofence(
    site_lat: float,
    site_lng: float,
    radius_m: float,
    lat: float,
    lng: float,
    *,
    strict: bool,
) -> GeofenceDecision:
    """Classify a device position against a site's radius.

    Inside the radius (boundary included) is accepted. Outside is rejected
    under a strict site policy, otherwise accepted and flagged OUT_OF_RANGE.
    """
    distance_value = distance_m(site_lat, site_lng, lat, lng)
    if distance_value <= radius_m:
        return GeofenceDecision(
            decision=ValidationDecision.ACCEPTED,
            range_status=RangeStatus.IN_RANGE,
            reject_reason=None,
            distance_m=distance_value,
        )

    if strict:
        return GeofenceDecision(
            decision=ValidationDecision.REJECTED,
            range_status=None,
            reject_reason=RejectReason.OUT_OF_RANGE,
            distance_m=distance_value,
        )

    return GeofenceDecision(
        decision=ValidationDecision.ACCEPTED,
        range_status=RangeStatus.OUT_OF_RANGE,
        reject_reason=None,
        distance_m=distance_value,
    )
