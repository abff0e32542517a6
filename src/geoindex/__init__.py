"""geoindex: geohash-based 2D point indexes for embedded document stores."""

from .collection import Collection
from .distance import (
    EARTH_RADIUS_M,
    DistanceCalculator,
    DistanceMode,
    FlatDistance,
    SphericalDistance,
    calculator_for,
)
from .errors import ConfigError, GeoIndexError, GeometryError, QueryError, RangeError
from .geohash import Box, GeoHash, GeohashCodec, GeoRange, Point, decode, encode
from .haystack import HaystackIndex
from .models import CollectionMetadata, IndexSpec, parse_index_request
from .spatial_index import GeoNearHit, SpatialIndex

__version__ = "0.1.0"

__all__ = [
    "Box",
    "Collection",
    "CollectionMetadata",
    "ConfigError",
    "DistanceCalculator",
    "DistanceMode",
    "EARTH_RADIUS_M",
    "FlatDistance",
    "GeoHash",
    "GeoIndexError",
    "GeoNearHit",
    "GeoRange",
    "GeohashCodec",
    "GeometryError",
    "HaystackIndex",
    "IndexSpec",
    "Point",
    "QueryError",
    "RangeError",
    "SpatialIndex",
    "SphericalDistance",
    "calculator_for",
    "decode",
    "encode",
    "parse_index_request",
]
