"""distance.py

Distance strategies applied at query time.

Two interchangeable models work over the same stored coordinates:

- ``flat``: Euclidean distance on raw ``(x, y)`` values.
- ``spherical``: great-circle distance in radians on the unit sphere,
  reading ``x`` as longitude and ``y`` as latitude in degrees.

The mode is picked per query.  It never changes how points are stored.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from math import asin, cos, degrees, hypot, inf, pi, radians, sin, sqrt
from typing import List, Union

from .errors import GeometryError, QueryError
from .geohash import Box, GeoRange, Point

# Mean Earth radius (meters).  Multiply a spherical distance by this to get meters.
EARTH_RADIUS_M = 6371008.8


class DistanceMode(str, Enum):
    FLAT = "flat"
    SPHERICAL = "spherical"


class DistanceCalculator(ABC):
    """Stateless strategy computing a scalar distance between two points."""

    mode: DistanceMode

    @abstractmethod
    def distance(self, a: Point, b: Point) -> float:
        """Distance between *a* and *b* under this model."""

    def validate(self, pt: Point) -> None:
        """Reject query points that have no meaning under this model."""

    def accepts(self, pt: Point) -> bool:
        """Whether a stored point can be ranked under this model."""
        return True

    @abstractmethod
    def lower_bound_outside(self, center: Point, box: Box, geo_range: GeoRange) -> float:
        """Smallest distance from *center* to any in-range point outside *box*.

        *box* must contain *center*.  Returns ``inf`` when *box* already
        covers the whole range, since nothing can lie outside it.
        """

    @abstractmethod
    def radius_boxes(self, center: Point, radius: float) -> List[Box]:
        """Coordinate boxes that together hold every point within *radius*."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FlatDistance(DistanceCalculator):
    mode = DistanceMode.FLAT

    def distance(self, a: Point, b: Point) -> float:
        return hypot(a.x - b.x, a.y - b.y)

    def lower_bound_outside(self, center: Point, box: Box, geo_range: GeoRange) -> float:
        gaps = []
        if box.low.x > geo_range.min:
            gaps.append(center.x - box.low.x)
        if box.high.x < geo_range.max:
            gaps.append(box.high.x - center.x)
        if box.low.y > geo_range.min:
            gaps.append(center.y - box.low.y)
        if box.high.y < geo_range.max:
            gaps.append(box.high.y - center.y)
        return min(gaps) if gaps else inf

    def radius_boxes(self, center: Point, radius: float) -> List[Box]:
        return [Box(Point(center.x - radius, center.y - radius),
                    Point(center.x + radius, center.y + radius))]


class SphericalDistance(DistanceCalculator):
    """Haversine great-circle distance on the unit sphere.

    Points must be valid ``(lon, lat)`` pairs: longitude in ``[-180, 180)``
    and latitude in ``[-90, 90]``.  Longitude differences wrap around the
    antimeridian.
    """

    mode = DistanceMode.SPHERICAL

    def distance(self, a: Point, b: Point) -> float:
        lon1, lat1, lon2, lat2 = map(radians, (a.x, a.y, b.x, b.y))
        dlon = lon2 - lon1
        dlat = lat2 - lat1
        h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
        return 2 * asin(sqrt(min(1.0, h)))

    def validate(self, pt: Point) -> None:
        if not -90.0 <= pt.y <= 90.0:
            raise GeometryError(f"latitude {pt.y} is outside [-90, 90]")
        if not -180.0 <= pt.x < 180.0:
            raise GeometryError(f"longitude {pt.x} is outside [-180, 180)")

    def accepts(self, pt: Point) -> bool:
        return -90.0 <= pt.y <= 90.0 and -180.0 <= pt.x < 180.0

    def lower_bound_outside(self, center: Point, box: Box, geo_range: GeoRange) -> float:
        gaps = []
        # A latitude difference of d degrees is at least d degrees of arc.
        if box.low.y > geo_range.min:
            gaps.append(radians(center.y - box.low.y))
        if box.high.y < geo_range.max:
            gaps.append(radians(box.high.y - center.y))

        # Longitude: flat difference d can wrap to 360 - d.
        lon_gaps = []
        if box.low.x > geo_range.min:
            lon_gaps.append(min(center.x - box.low.x, 360.0 - (center.x - geo_range.min)))
        if box.high.x < geo_range.max:
            lon_gaps.append(min(box.high.x - center.x, 360.0 - (geo_range.max - center.x)))
        for dlon in lon_gaps:
            dlon = radians(min(max(dlon, 0.0), 90.0))
            gaps.append(asin(min(1.0, cos(radians(center.y)) * sin(dlon))))

        return min(gaps) if gaps else inf

    def radius_boxes(self, center: Point, radius: float) -> List[Box]:
        lat_lo = center.y - degrees(radius)
        lat_hi = center.y + degrees(radius)
        if lat_lo <= -90.0 or lat_hi >= 90.0 or radius >= pi / 2:
            # A pole is inside the circle; every longitude is reachable.
            return [Box(Point(-180.0, max(lat_lo, -90.0)), Point(180.0, min(lat_hi, 90.0)))]

        dlon = degrees(asin(min(1.0, sin(radius) / cos(radians(center.y)))))
        lon_lo, lon_hi = center.x - dlon, center.x + dlon
        if lon_lo < -180.0:
            return [Box(Point(-180.0, lat_lo), Point(lon_hi, lat_hi)),
                    Box(Point(lon_lo + 360.0, lat_lo), Point(180.0, lat_hi))]
        if lon_hi >= 180.0:
            return [Box(Point(lon_lo, lat_lo), Point(180.0, lat_hi)),
                    Box(Point(-180.0, lat_lo), Point(lon_hi - 360.0, lat_hi))]
        return [Box(Point(lon_lo, lat_lo), Point(lon_hi, lat_hi))]


FLAT = FlatDistance()
SPHERICAL = SphericalDistance()


def calculator_for(mode: Union[DistanceMode, str, bool, None] = None) -> DistanceCalculator:
    """Return the shared calculator for a mode.

    Args:
        mode: A :class:`DistanceMode`, its string value, ``True`` for
            spherical, or ``False``/``None`` for flat.

    Raises:
        QueryError: If *mode* names no known model.
    """
    if isinstance(mode, DistanceCalculator):
        return mode
    if mode is None or mode is False:
        return FLAT
    if mode is True:
        return SPHERICAL
    try:
        mode = DistanceMode(mode)
    except ValueError as e:
        raise QueryError(f"unknown distance mode {mode!r}") from e
    return SPHERICAL if mode is DistanceMode.SPHERICAL else FLAT
