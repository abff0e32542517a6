# conftest.py
import random

import pytest

from geoindex.collection import Collection
from geoindex.geohash import GeoRange, Point
from geoindex.spatial_index import SpatialIndex


@pytest.fixture
def world() -> GeoRange:
    return GeoRange(-180.0, 180.0)


@pytest.fixture
def corner_index(world) -> SpatialIndex[str]:
    """16x16 cells, one point near each far corner."""
    idx = SpatialIndex[str](world, bits=4)
    idx.insert(Point(-170.0, -170.0), "a")
    idx.insert(Point(170.0, 170.0), "b")
    return idx


@pytest.fixture
def scattered_points():
    rng = random.Random(42)
    return [(i, Point(rng.uniform(-100.0, 100.0), rng.uniform(-100.0, 100.0))) for i in range(300)]


@pytest.fixture
def lonlat_points():
    rng = random.Random(7)
    return [(i, Point(rng.uniform(-180.0, 179.999), rng.uniform(-90.0, 90.0))) for i in range(300)]


@pytest.fixture
def places() -> Collection:
    return Collection("places")


@pytest.fixture
def metadata_path(tmp_path):
    return tmp_path / "meta" / "places.json"
