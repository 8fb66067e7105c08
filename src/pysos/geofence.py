"""Geofence evaluation.

A zone is a circle (centre, radius in metres) on a spherical Earth. A point
is inside when its great-circle distance to the centre is at most the radius;
the boundary itself counts as inside.

Given two points P1(phi1, lambda1) and P2(phi2, lambda2)::

    a = sin^2(dphi / 2) + cos(phi1) * cos(phi2) * sin^2(dlambda / 2)
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    d = R * c

Zones may overlap. :func:`match_zone` walks the zones in the order given and
returns the first one that contains the point, which is not necessarily the
nearest one. Callers pass zones in registry storage order.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass

from pysos.models.location import Location
from pysos.models.zone import Zone

EARTH_RADIUS_METERS: float = 6_371_000.0


@dataclass(frozen=True, slots=True)
class ZoneDistance:
    """A zone together with a point's distance to its centre."""

    zone: Zone
    distance_meters: float


def haversine_meters(a: Location, b: Location) -> float:
    """Great-circle distance between two points in metres."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lon - a.lon)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def distance_to_zone(point: Location, zone: Zone) -> float:
    return haversine_meters(point, Location(lat=zone.lat, lon=zone.lon))


def zone_contains(zone: Zone, point: Location) -> bool:
    return distance_to_zone(point, zone) <= zone.radius_meters


def match_zone(point: Location, zones: Iterable[Zone]) -> Zone | None:
    """Return the first zone (in iteration order) containing *point*."""
    for zone in zones:
        if zone_contains(zone, point):
            return zone
    return None


def zones_containing(point: Location, zones: Iterable[Zone]) -> list[ZoneDistance]:
    """Every zone containing *point*, in iteration order, with distances."""
    result: list[ZoneDistance] = []
    for zone in zones:
        distance = distance_to_zone(point, zone)
        if distance <= zone.radius_meters:
            result.append(ZoneDistance(zone=zone, distance_meters=distance))
    return result
