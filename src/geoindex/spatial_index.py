"""
spatial_index.py

Ordered 2D point index keyed by geohash.

Entries are kept sorted by their full-precision geohash value.  Because a
prefix covers one contiguous interval of hash values, "all entries under
prefix P" and "all entries with hash in [a, b]" are both a pair of
:func:`bisect` lookups plus a slice.

Box queries decompose the target rectangle into quadtree cells (geohash
prefixes), scan each cell and then check every candidate against the exact
box.  Nearest-neighbour queries grow a search box around the center until
no unscanned point could beat the current k-th result.

Writers swap in a new sorted snapshot under a lock.  Readers grab the
current snapshot once and never block, so each query sees one consistent
state of the index.
"""

from __future__ import annotations

import logging
import threading
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from math import inf
from typing import (
    Any,
    Generic,
    Hashable,
    Iterable,
    Iterator,
    List,
    Mapping,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from .distance import DistanceCalculator, DistanceMode, calculator_for
from .errors import QueryError
from .geohash import (
    DEFAULT_BITS,
    ROOT,
    Box,
    GeoHash,
    GeohashCodec,
    GeoRange,
    Point,
    PointLike,
    as_point,
)

logger = logging.getLogger(__name__)

# Upper bound on the number of prefixes a box is decomposed into.  Partial
# cells stop being refined once this is reached; the exact filter removes
# the extra candidates.
MAX_COVER_CELLS = 64

K = TypeVar("K", bound=Hashable)

DistanceArg = Union[DistanceCalculator, DistanceMode, str, bool, None]


@dataclass(frozen=True)
class IndexEntry(Generic[K]):
    """One indexed location of one record.

    Attributes:
        geohash: Full-precision hash of *point*.
        key: The record this entry refers to.
        point: The exact stored coordinates.
        attrs: Compound attribute values, ordered like the index's
            compound fields.  Not part of the hash.
    """
    geohash: GeoHash
    key: K
    point: Point
    attrs: Tuple[Any, ...] = ()


class GeoNearHit(NamedTuple):
    key: Hashable
    point: Point
    distance: float


_Snapshot = Tuple[Tuple[int, ...], Tuple[IndexEntry, ...]]


def _overlaps(cell: Box, box: Box) -> bool:
    # cell is half-open [low, high), box is closed
    return (cell.low.x <= box.high.x and cell.high.x > box.low.x
            and cell.low.y <= box.high.y and cell.high.y > box.low.y)


def _inside(cell: Box, box: Box) -> bool:
    return (box.low.x <= cell.low.x and cell.high.x <= box.high.x
            and box.low.y <= cell.low.y and cell.high.y <= box.high.y)


class SpatialIndex(Generic[K]):
    """Geohash-ordered point index with box, circle and nearest queries.

    Configuration (range, bits, compound fields) is fixed for the lifetime
    of the instance.  Changing it means building a new index.

    Example::

        idx = SpatialIndex[str](GeoRange(-180, 180), bits=4)
        idx.insert((-170, -170), "a")
        idx.insert((170, 170), "b")
        idx.query_box((-180, -180), (0, 0))   # ['a']
        idx.query_near((0, 0), 1)             # ['a']
    """

    def __init__(
        self,
        geo_range: GeoRange = GeoRange(),
        bits: int = DEFAULT_BITS,
        compound_fields: Sequence[str] = (),
    ):
        """Create an empty index.

        Args:
            geo_range: Bounds every stored point must fall within.
            bits: Geohash precision (1-32).
            compound_fields: Names of non-geo attributes stored with each
                entry and usable as equality post-filters.

        Raises:
            ConfigError: If *bits* is out of bounds.
        """
        self.codec = GeohashCodec(geo_range, bits)
        self.compound_fields: Tuple[str, ...] = tuple(compound_fields)
        self._state: _Snapshot = ((), ())
        self._write_lock = threading.Lock()

    @property
    def range(self) -> GeoRange:
        return self.codec.range

    @property
    def bits(self) -> int:
        return self.codec.bits

    # --------------------------------------------------------
    # Mutation
    # --------------------------------------------------------

    def _make_entry(self, point: PointLike, key: K, attrs: Optional[Mapping[str, Any]]) -> IndexEntry:
        pt = as_point(point)
        attrs = attrs or {}
        values = tuple(attrs.get(name) for name in self.compound_fields)
        return IndexEntry(self.codec.encode(pt), key, pt, values)

    def insert(self, point: PointLike, key: K, attrs: Optional[Mapping[str, Any]] = None) -> GeoHash:
        """Index *key* at *point*.

        Args:
            point: Location of the record.
            key: Record reference.
            attrs: Values for the compound fields; missing ones are stored
                as ``None``.

        Returns:
            The geohash the entry was stored under.

        Raises:
            RangeError: If *point* lies outside the index range.  The index
                is left untouched.
        """
        entry = self._make_entry(point, key, attrs)
        with self._write_lock:
            self._state = self._with(self._state, entry)
        logger.debug("Inserted %r at %s (total entries: %d)", key, entry.geohash, len(self))
        return entry.geohash

    def bulk_insert(self, rows: Iterable[Tuple[Any, ...]]) -> int:
        """Insert ``(point, key)`` or ``(point, key, attrs)`` rows in one step.

        Every row is encoded before the index changes, then the new entries
        are merged with a single sort and published as one snapshot, so
        loading n rows costs O(n log n) instead of n snapshot copies.

        Returns:
            The number of entries inserted.

        Raises:
            RangeError: If any point is out of range.  Nothing is inserted.
        """
        fresh = [
            self._make_entry(row[0], row[1], row[2] if len(row) > 2 else None)
            for row in rows
        ]
        if not fresh:
            return 0
        with self._write_lock:
            self._state = self._with_many(self._state, fresh)
        logger.debug("Bulk inserted %d entries (total entries: %d)", len(fresh), len(self))
        return len(fresh)

    def remove(self, point: PointLike, key: K) -> bool:
        """Remove the entry for *key* at *point*.

        Returns:
            ``True`` if an entry was removed, ``False`` if none matched.
            A missing entry (or an out-of-range point, which could never
            have been stored) is not an error.
        """
        pt = as_point(point)
        if not self.range.contains(pt):
            return False
        gh = self.codec.encode(pt)
        with self._write_lock:
            state, removed = self._without(self._state, gh, key)
            self._state = state
        if removed:
            logger.debug("Removed %r from %s", key, gh)
        return removed

    def update(
        self,
        old_point: PointLike,
        new_point: PointLike,
        key: K,
        attrs: Optional[Mapping[str, Any]] = None,
    ) -> GeoHash:
        """Move *key* from *old_point* to *new_point* in one step.

        Raises:
            RangeError: If *new_point* is out of range.  The old entry stays.
        """
        entry = self._make_entry(new_point, key, attrs)
        old = as_point(old_point)
        with self._write_lock:
            state = self._state
            if self.range.contains(old):
                state, _ = self._without(state, self.codec.encode(old), key)
            self._state = self._with(state, entry)
        return entry.geohash

    def clear(self) -> None:
        with self._write_lock:
            self._state = ((), ())

    @staticmethod
    def _with(state: _Snapshot, entry: IndexEntry) -> _Snapshot:
        hashes, entries = state
        i = bisect_right(hashes, entry.geohash.value)
        return (hashes[:i] + (entry.geohash.value,) + hashes[i:],
                entries[:i] + (entry,) + entries[i:])

    @staticmethod
    def _with_many(state: _Snapshot, fresh: List[IndexEntry]) -> _Snapshot:
        # stable sort: equal hashes keep existing entries first, then
        # new ones in row order, same as repeated _with calls
        merged = list(state[1]) + fresh
        merged.sort(key=lambda e: e.geohash.value)
        return tuple(e.geohash.value for e in merged), tuple(merged)

    @staticmethod
    def _without(state: _Snapshot, gh: GeoHash, key: K) -> Tuple[_Snapshot, bool]:
        hashes, entries = state
        lo = bisect_left(hashes, gh.value)
        hi = bisect_right(hashes, gh.value)
        for i in range(lo, hi):
            if entries[i].key == key:
                return (hashes[:i] + hashes[i + 1:], entries[:i] + entries[i + 1:]), True
        return state, False

    # --------------------------------------------------------
    # Ordered scans
    # --------------------------------------------------------

    @staticmethod
    def _slice(state: _Snapshot, lo: int, hi: int) -> Tuple[IndexEntry, ...]:
        hashes, entries = state
        return entries[bisect_left(hashes, lo):bisect_right(hashes, hi)]

    def scan_range(self, lo: GeoHash, hi: GeoHash) -> List[IndexEntry]:
        """All entries with a hash in the inclusive interval ``[lo, hi]``.

        Both bounds may be prefixes; a prefix bound covers every full hash
        that starts with it.
        """
        start, _ = lo.key_range(self.bits)
        _, end = hi.key_range(self.bits)
        return list(self._slice(self._state, start, end))

    def scan_prefix(self, prefix: GeoHash) -> List[IndexEntry]:
        """All entries whose hash starts with *prefix*."""
        return list(self._slice(self._state, *prefix.key_range(self.bits)))

    def entries(self) -> List[IndexEntry]:
        return list(self._state[1])

    def __len__(self) -> int:
        return len(self._state[1])

    def __iter__(self) -> Iterator[IndexEntry]:
        return iter(self._state[1])

    # --------------------------------------------------------
    # Box decomposition
    # --------------------------------------------------------

    def cover_box(self, box: Box) -> List[GeoHash]:
        """Decompose *box* into geohash prefixes whose cells cover it.

        Cells fully inside the box are kept whole.  Cells crossing its edge
        are split into quadrants while the prefix count stays within
        :data:`MAX_COVER_CELLS` and the precision limit allows.  The union
        of the returned cells is a superset of ``box`` intersected with the
        index range; the cells never overlap each other.

        Returns:
            Prefixes in hash order.  Empty if *box* misses the range.
        """
        full: List[GeoHash] = []
        partial: List[GeoHash] = [ROOT]
        if not _overlaps(self.range.as_box(), box):
            return []

        while partial:
            level = partial[0].precision
            if level >= self.bits or len(full) + 4 * len(partial) > MAX_COVER_CELLS:
                break
            refined: List[GeoHash] = []
            for cell in partial:
                for child in cell.children():
                    bounds = self.codec.cell_bounds(child)
                    if not _overlaps(bounds, box):
                        continue
                    if _inside(bounds, box):
                        full.append(child)
                    else:
                        refined.append(child)
            partial = refined

        return sorted(full + partial)

    def _box_entries(self, state: _Snapshot, box: Box) -> Iterator[IndexEntry]:
        for prefix in self.cover_box(box):
            for entry in self._slice(state, *prefix.key_range(self.bits)):
                if box.contains(entry.point):
                    yield entry

    # --------------------------------------------------------
    # Compound filtering
    # --------------------------------------------------------

    def _compile_where(self, where: Optional[Mapping[str, Any]]) -> List[Tuple[int, Any]]:
        if not where:
            return []
        compiled = []
        for name, value in where.items():
            if name not in self.compound_fields:
                raise QueryError(
                    f"{name!r} is not a compound field of this index "
                    f"(fields: {list(self.compound_fields)})"
                )
            compiled.append((self.compound_fields.index(name), value))
        return compiled

    @staticmethod
    def _matches(entry: IndexEntry, predicate: List[Tuple[int, Any]]) -> bool:
        return all(entry.attrs[i] == value for i, value in predicate)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def query_box(
        self,
        low: PointLike,
        high: PointLike,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[K]:
        """Keys of entries inside the closed box ``[low, high]``.

        Args:
            low: Lower-left corner.
            high: Upper-right corner.
            where: Equality filter on compound fields, applied after the
                geo filter.

        Returns:
            Matching keys in hash order.  Callers should treat the result
            as unordered.

        Raises:
            QueryError: If ``low`` exceeds ``high`` on either axis, or
                *where* names an unknown field.
        """
        lo, hi = as_point(low), as_point(high)
        if lo.x > hi.x or lo.y > hi.y:
            raise QueryError(f"box min ({lo.x}, {lo.y}) exceeds max ({hi.x}, {hi.y})")
        predicate = self._compile_where(where)
        return [
            e.key for e in self._box_entries(self._state, Box(lo, hi))
            if self._matches(e, predicate)
        ]

    def query_center(
        self,
        center: PointLike,
        radius: float,
        distance: DistanceArg = None,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[K]:
        """Keys of entries within *radius* of *center*.

        With spherical distance, *radius* is in radians.

        Raises:
            QueryError: If *radius* is negative.
            GeometryError: If *center* is invalid for a spherical query.
        """
        calc = calculator_for(distance)
        c = as_point(center)
        calc.validate(c)
        if radius < 0:
            raise QueryError(f"radius must be non-negative, got {radius}")
        predicate = self._compile_where(where)

        state = self._state
        seen = set()
        out: List[K] = []
        for box in calc.radius_boxes(c, radius):
            for e in self._box_entries(state, box):
                if id(e) in seen or not calc.accepts(e.point):
                    continue
                seen.add(id(e))
                if calc.distance(c, e.point) <= radius and self._matches(e, predicate):
                    out.append(e.key)
        return out

    def query_near(
        self,
        center: PointLike,
        limit: Optional[int],
        distance: DistanceArg = None,
        max_distance: Optional[float] = None,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[K]:
        """Keys of the *limit* entries closest to *center*, nearest first.

        See :meth:`geo_near` for the arguments.
        """
        return [hit.key for hit in self.geo_near(center, limit, distance, max_distance, where)]

    def geo_near(
        self,
        center: PointLike,
        limit: Optional[int],
        distance: DistanceArg = None,
        max_distance: Optional[float] = None,
        where: Optional[Mapping[str, Any]] = None,
        distance_multiplier: float = 1.0,
    ) -> List[GeoNearHit]:
        """Exact k-nearest-neighbour search by expanding box.

        The search box starts one cell wide on each side of *center* and
        doubles every round.  A round ends the search when

        - at least *limit* hits are known and the k-th one is no farther
          than the lower bound for any point outside the box, or
        - that lower bound exceeds *max_distance*, or
        - the box covers the whole range.

        Ties on distance are broken by key, so keys should be mutually
        orderable.

        Args:
            center: Query point.  It may lie outside the index range.
            limit: Maximum number of hits, or ``None`` for no limit.
            distance: Distance model (flat by default).
            max_distance: Drop hits farther than this.
            where: Equality filter on compound fields.
            distance_multiplier: Scale applied to reported distances, e.g.
                :data:`~geoindex.distance.EARTH_RADIUS_M` for spherical
                queries.

        Returns:
            Hits in ascending ``(distance, key)`` order.

        Raises:
            QueryError: On a negative *limit* or *max_distance*, or an
                unknown field in *where*.
            GeometryError: If *center* is invalid for a spherical query.
        """
        calc = calculator_for(distance)
        c = as_point(center)
        calc.validate(c)
        if limit is not None and limit < 0:
            raise QueryError(f"limit must be non-negative, got {limit}")
        if max_distance is not None and max_distance < 0:
            raise QueryError(f"max_distance must be non-negative, got {max_distance}")
        predicate = self._compile_where(where)

        state = self._state
        if not state[1] or limit == 0:
            return []

        half = self.codec.cell_size()
        rounds = 0
        while True:
            rounds += 1
            box = Box(Point(c.x - half, c.y - half), Point(c.x + half, c.y + half))
            hits: List[GeoNearHit] = []
            for e in self._box_entries(state, box):
                if not calc.accepts(e.point) or not self._matches(e, predicate):
                    continue
                d = calc.distance(c, e.point)
                if max_distance is None or d <= max_distance:
                    hits.append(GeoNearHit(e.key, e.point, d))
            hits.sort(key=lambda h: (h.distance, h.key))

            bound = calc.lower_bound_outside(c, box, self.range)
            if limit is not None and len(hits) >= limit and hits[limit - 1].distance < bound:
                break
            if max_distance is not None and bound > max_distance:
                break
            if bound == inf:
                break
            half *= 2

        logger.debug("Near search at (%s, %s) finished after %d rounds", c.x, c.y, rounds)
        if limit is not None:
            hits = hits[:limit]
        if distance_multiplier != 1.0:
            hits = [h._replace(distance=h.distance * distance_multiplier) for h in hits]
        return hits

    def __repr__(self) -> str:
        return (f"SpatialIndex(range=[{self.range.min}, {self.range.max}), "
                f"bits={self.bits}, entries={len(self)})")
