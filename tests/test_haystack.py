import math

import pytest

from geoindex.errors import ConfigError, QueryError, RangeError
from geoindex.geohash import Point
from geoindex.haystack import (
    DEFAULT_HAYSTACK_LIMIT,
    MAX_BUCKET_COORD,
    BucketKey,
    HaystackIndex,
    base36_decode,
    base36_encode,
    bucket_of,
    decode_bucket_label,
    encode_bucket_label,
    neighbors_square,
    zigzag_decode,
    zigzag_encode,
)


# ---- base36 encoding ----

class TestBase36:
    def test_zero(self):
        assert base36_encode(0) == "0"
        assert base36_decode("0") == 0

    def test_single_digit(self):
        assert base36_encode(9) == "9"
        assert base36_encode(10) == "a"
        assert base36_encode(35) == "z"

    def test_multi_digit(self):
        assert base36_encode(36) == "10"
        assert base36_decode("11") == 37

    def test_negative_raises(self):
        with pytest.raises(ValueError):
            base36_encode(-1)

    def test_decode_rejects_bad_input(self):
        with pytest.raises(ValueError):
            base36_decode("")
        with pytest.raises(ValueError):
            base36_decode("A!")


# ---- zigzag encoding ----

class TestZigZag:
    def test_small_values(self):
        assert [zigzag_encode(n) for n in (0, -1, 1, -2, 2)] == [0, 1, 2, 3, 4]

    def test_inverse(self):
        for n in [0, 1, -1, 100, -100, 999999, -999999]:
            assert zigzag_decode(zigzag_encode(n)) == n

    def test_always_non_negative(self):
        for n in range(-50, 51):
            assert zigzag_encode(n) >= 0

    def test_wide_integers(self):
        for n in [2 ** 62 - 1, -(2 ** 62), 2 ** 100, -(2 ** 100)]:
            assert zigzag_decode(zigzag_encode(n)) == n


# ---- bucket labels ----

class TestBucketLabel:
    def test_origin_bucket(self):
        assert encode_bucket_label(0, 0) == "1010"
        assert decode_bucket_label("1010") == (0, 0)

    def test_negative_and_large_coords(self):
        for cx, cy in [(-3, -7), (-10, 20), (100000, -200000)]:
            assert decode_bucket_label(encode_bucket_label(cx, cy)) == (cx, cy)

    def test_label_is_lowercase_alphanumeric(self):
        label = encode_bucket_label(-42, 99)
        assert label.isalnum()
        assert label == label.lower()

    def test_distinct_buckets_distinct_labels(self):
        labels = {encode_bucket_label(x, y) for x in range(-5, 6) for y in range(-5, 6)}
        assert len(labels) == 121

    def test_bucket_key_label(self):
        assert BucketKey(3, -4, "cafe").label == encode_bucket_label(3, -4)

    def test_largest_bucket_round_trips(self):
        edge = MAX_BUCKET_COORD - 1
        assert decode_bucket_label(encode_bucket_label(edge, -edge)) == (edge, -edge)

    @pytest.mark.parametrize("label", ["", "1", "10", "101", "10100", "2a10", "1?10"])
    def test_malformed_label(self, label):
        with pytest.raises(ValueError):
            decode_bucket_label(label)


# ---- bucket math ----

class TestBucketOf:
    def test_origin(self):
        assert bucket_of(Point(0.0, 0.0), 10.0) == (0, 0)

    def test_positive(self):
        assert bucket_of(Point(15.0, 25.0), 10.0) == (1, 2)

    def test_negative(self):
        assert bucket_of(Point(-5.0, -15.0), 10.0) == (-1, -2)

    def test_exact_boundary(self):
        assert bucket_of(Point(10.0, 20.0), 10.0) == (1, 2)

    def test_just_below_boundary(self):
        assert bucket_of(Point(9.99, 19.99), 10.0) == (0, 1)

    def test_quotient_overflow(self):
        with pytest.raises(RangeError):
            bucket_of(Point(1e10, 0.0), 1e-300)

    def test_too_far_from_origin(self):
        with pytest.raises(RangeError):
            bucket_of(Point(0.0, -float(MAX_BUCKET_COORD)), 1.0)


class TestNeighborsSquare:
    def test_r0_returns_self(self):
        assert neighbors_square(5, 5, 0) == [(5, 5)]

    def test_r1_returns_9_cells_center_first(self):
        result = neighbors_square(0, 0, 1)
        assert len(result) == 9
        assert result[0] == (0, 0)

    def test_r2_returns_25_unique_cells(self):
        result = neighbors_square(0, 0, 2)
        assert len(result) == 25
        assert len(set(result)) == 25

    def test_ring_order(self):
        result = neighbors_square(10, -5, 2)
        rings = [max(abs(x - 10), abs(y + 5)) for x, y in result]
        assert rings == sorted(rings)

    def test_expected_cells(self):
        expected = {(10 + dx, -5 + dy) for dx in range(-1, 2) for dy in range(-1, 2)}
        assert set(neighbors_square(10, -5, 1)) == expected


# ---- HaystackIndex ----

class TestHaystackIndex:
    @pytest.fixture
    def restaurants(self):
        idx = HaystackIndex[str](bucket_size=10.0)
        idx.insert((5.0, 5.0), "restaurant", "r-center")
        idx.insert((15.0, 5.0), "restaurant", "r-east")
        idx.insert((5.0, 5.0), "bar", "b-center")
        idx.insert((35.0, 5.0), "restaurant", "r-far")
        return idx

    @pytest.mark.parametrize("size", [0, -1.0, math.inf, "10", None, True])
    def test_bucket_size_must_be_positive_number(self, size):
        with pytest.raises(ConfigError):
            HaystackIndex(bucket_size=size)

    def test_empty_index(self):
        idx = HaystackIndex(bucket_size=1.0)
        assert len(idx) == 0
        assert idx.buckets() == 0
        assert idx.search((0, 0), "x") == []

    def test_insert_returns_bucket_label(self):
        idx = HaystackIndex(bucket_size=10.0)
        assert idx.insert((5.0, 5.0), "a", 1) == encode_bucket_label(0, 0)
        assert idx.insert((-5.0, 25.0), "a", 2) == encode_bucket_label(-1, 2)

    def test_attribute_splits_buckets(self, restaurants):
        assert len(restaurants) == 4
        assert restaurants.buckets() == 4

    def test_search_same_and_adjacent_bucket(self, restaurants):
        assert restaurants.search((5.0, 5.0), "restaurant") == ["r-center", "r-east"]

    def test_search_filters_attribute(self, restaurants):
        assert restaurants.search((5.0, 5.0), "bar") == ["b-center"]
        assert restaurants.search((5.0, 5.0), "hotel") == []

    def test_wider_radius(self, restaurants):
        assert "r-far" not in restaurants.search((5.0, 5.0), "restaurant", radius=2)
        assert "r-far" in restaurants.search((5.0, 5.0), "restaurant", radius=3)

    def test_radius_zero_is_own_bucket(self, restaurants):
        assert restaurants.search((5.0, 5.0), "restaurant", radius=0) == ["r-center"]

    def test_default_limit(self):
        idx = HaystackIndex[int](bucket_size=1.0)
        for i in range(80):
            idx.insert((0.5, 0.5), "x", i)
        assert len(idx.search((0.5, 0.5), "x")) == DEFAULT_HAYSTACK_LIMIT == 50
        assert idx.search((0.5, 0.5), "x", max_results=3) == [0, 1, 2]

    def test_results_are_not_distance_sorted(self):
        idx = HaystackIndex[str](bucket_size=10.0)
        idx.insert((9.9, 9.9), "A", "far")
        idx.insert((5.1, 5.1), "A", "close")
        # truncation keeps bucket order, not the closest entry
        assert idx.search((5.0, 5.0), "A", max_results=1) == ["far"]

    def test_same_bucket_beats_closer_neighbor(self):
        idx = HaystackIndex[str](bucket_size=10.0)
        center = Point(5.0, 5.0)
        idx.insert((-0.5, 5.0), "B", "nearest")   # adjacent bucket, other attribute
        idx.insert((5.0, -1.0), "B", "middle")
        idx.insert((9.9, 9.9), "A", "farthest")   # same bucket as the query
        result = idx.search(center, "A")
        assert result == ["farthest"]
        assert "nearest" not in result

    def test_remove(self, restaurants):
        assert restaurants.remove((5.0, 5.0), "restaurant", "r-center") is True
        assert restaurants.search((5.0, 5.0), "restaurant") == ["r-east"]
        assert len(restaurants) == 3

    def test_remove_absent(self, restaurants):
        assert restaurants.remove((5.0, 5.0), "restaurant", "nope") is False
        assert restaurants.remove((500.0, 5.0), "restaurant", "r-center") is False
        assert restaurants.remove((math.nan, 5.0), "restaurant", "r-center") is False
        assert len(restaurants) == 4

    def test_non_finite_point_rejected(self):
        idx = HaystackIndex(bucket_size=1.0)
        with pytest.raises(RangeError):
            idx.insert((math.inf, 0.0), "x", 1)

    def test_bad_search_arguments(self, restaurants):
        with pytest.raises(QueryError):
            restaurants.search((5.0, 5.0), "restaurant", max_results=-1)
        with pytest.raises(QueryError):
            restaurants.search((5.0, 5.0), "restaurant", radius=-1)
        with pytest.raises(QueryError):
            restaurants.search((math.nan, 5.0), "restaurant")

    def test_unbucketable_point_rejected(self):
        idx = HaystackIndex(bucket_size=1e-300)
        with pytest.raises(RangeError):
            idx.insert((1e10, 0.0), "x", 1)
        assert idx.remove((1e10, 0.0), "x", 1) is False
        with pytest.raises(QueryError):
            idx.search((1e10, 0.0), "x")
        assert len(idx) == 0

    def test_bucket_entries_by_label(self, restaurants):
        label = restaurants.insert((7.0, 2.0), "restaurant", "r-new")
        assert restaurants.bucket_entries(label, "restaurant") == ["r-center", "r-new"]
        assert restaurants.bucket_entries(label, "bar") == ["b-center"]
        assert restaurants.bucket_entries(encode_bucket_label(3, 0), "restaurant") == ["r-far"]
        assert restaurants.bucket_entries(encode_bucket_label(-9, -9), "restaurant") == []

    def test_bucket_entries_bad_label(self, restaurants):
        with pytest.raises(QueryError):
            restaurants.bucket_entries("not-a-label", "restaurant")
