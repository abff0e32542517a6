"""
haystack.py

Coarse bucket index for "near this point, with this attribute" lookups.

Each axis is cut into uniform cells of ``bucket_size``.  Entries are grouped
by ``(cx, cy, attribute)``.  A search visits the query's own bucket and the
buckets around it, and returns entries with a matching attribute.

The index is *not* a nearest-neighbour matcher:

- results are only guaranteed to lie in the searched buckets
- results are truncated to ``max_results`` in bucket visiting order,
  without any distance sort, so they need not be the closest ones

Callers needing exact ranking should use
:class:`~geoindex.spatial_index.SpatialIndex`.  Haystack buckets are plain
quantized coordinates; there is no spherical mode.
"""

from __future__ import annotations

import logging
import threading
from math import floor, isfinite
from typing import Dict, Generic, Hashable, List, NamedTuple, Tuple, TypeVar

from .errors import ConfigError, QueryError, RangeError
from .geohash import Point, PointLike, as_point

logger = logging.getLogger(__name__)

DEFAULT_HAYSTACK_LIMIT = 50

# Bucket coordinates must stay below this magnitude so labels keep their
# single-digit length prefixes.
MAX_BUCKET_COORD = 2 ** 62


# ------------------------------------------------------------
# Base36 encoding (lowercase alphanumeric only)
# ------------------------------------------------------------

ALPHABET36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def base36_encode(n: int) -> str:
    """Encode a non-negative integer to a lowercase base-36 string.

    Raises:
        ValueError: If *n* is negative.
    """
    if n < 0:
        raise ValueError("base36 only supports non-negative integers")
    if n == 0:
        return "0"

    chars = []
    while n:
        n, r = divmod(n, 36)
        chars.append(ALPHABET36[r])
    return "".join(reversed(chars))


def base36_decode(s: str) -> int:
    """Inverse of :func:`base36_encode`.

    Raises:
        ValueError: If *s* is empty or has a character outside ``[0-9a-z]``.
    """
    if not s:
        raise ValueError("empty base36 string")
    n = 0
    for c in s:
        n = n * 36 + ALPHABET36.index(c)
    return n


# ------------------------------------------------------------
# ZigZag encoding (signed integer -> unsigned integer)
# ------------------------------------------------------------

def zigzag_encode(n: int) -> int:
    """Map a signed integer to a non-negative one: 0, -1, 1, -2 -> 0, 1, 2, 3."""
    return n << 1 if n >= 0 else (-n << 1) - 1


def zigzag_decode(n: int) -> int:
    return (n >> 1) ^ -(n & 1)


# ------------------------------------------------------------
# Bucket labels
# ------------------------------------------------------------

def encode_bucket_label(cx: int, cy: int) -> str:
    """Compact, reversible label for bucket ``(cx, cy)``.

    Each coordinate goes through zigzag then base36, and is prefixed with
    its own length::

        <len(cx_b36)><cx_b36><len(cy_b36)><cy_b36>
    """
    sx = base36_encode(zigzag_encode(cx))
    sy = base36_encode(zigzag_encode(cy))
    return f"{base36_encode(len(sx))}{sx}{base36_encode(len(sy))}{sy}"


def decode_bucket_label(label: str) -> Tuple[int, int]:
    """Inverse of :func:`encode_bucket_label`.

    Raises:
        ValueError: If *label* was not produced by :func:`encode_bucket_label`.
    """
    i = 0

    lx = base36_decode(label[i:i + 1])
    i += 1
    sx = label[i:i + lx]
    i += lx

    ly = base36_decode(label[i:i + 1])
    i += 1
    sy = label[i:i + ly]
    i += ly

    if len(sx) != lx or len(sy) != ly or i != len(label):
        raise ValueError(f"malformed bucket label {label!r}")
    return zigzag_decode(base36_decode(sx)), zigzag_decode(base36_decode(sy))


# ------------------------------------------------------------
# Bucket math
# ------------------------------------------------------------

class BucketKey(NamedTuple):
    cx: int
    cy: int
    attribute: Hashable

    @property
    def label(self) -> str:
        return encode_bucket_label(self.cx, self.cy)


def bucket_of(pt: Point, bucket_size: float) -> Tuple[int, int]:
    """Quantize *pt* into ``(floor(x / size), floor(y / size))``.

    Raises:
        RangeError: If a coordinate, or its quotient by *bucket_size*, is
            not finite or reaches ``MAX_BUCKET_COORD``.
    """
    qx, qy = pt.x / bucket_size, pt.y / bucket_size
    if not (isfinite(qx) and isfinite(qy)) or max(abs(qx), abs(qy)) >= MAX_BUCKET_COORD:
        raise RangeError(f"point ({pt.x}, {pt.y}) has no bucket at size {bucket_size}")
    return (int(floor(qx)), int(floor(qy)))


def neighbors_square(cx: int, cy: int, r: int) -> List[Tuple[int, int]]:
    """Buckets of the ``(2r + 1) ** 2`` square around ``(cx, cy)``.

    Ordered ring by ring: the center first, then every bucket at
    Chebyshev distance 1, then 2, and so on.  Within a ring the order is
    row-major.
    """
    out = [(cx, cy)]
    for ring in range(1, r + 1):
        for dx in range(-ring, ring + 1):
            for dy in range(-ring, ring + 1):
                if max(abs(dx), abs(dy)) == ring:
                    out.append((cx + dx, cy + dy))
    return out


# ------------------------------------------------------------
# Haystack index
# ------------------------------------------------------------

K = TypeVar("K", bound=Hashable)


class HaystackIndex(Generic[K]):
    """Bucket index keyed by quantized location plus one secondary attribute.

    Example::

        idx = HaystackIndex[str](bucket_size=1.0)
        idx.insert((10.2, 20.7), "restaurant", "r1")
        idx.search((10.0, 20.0), "restaurant")   # ['r1']
    """

    def __init__(self, bucket_size: float):
        """Create an empty index.

        Args:
            bucket_size: Side length of each bucket, in coordinate units.

        Raises:
            ConfigError: If *bucket_size* is not a positive finite number.
        """
        if isinstance(bucket_size, bool) or not isinstance(bucket_size, (int, float)):
            raise ConfigError(f"bucketSize must be a number, got {bucket_size!r}")
        if not isfinite(bucket_size) or bucket_size <= 0:
            raise ConfigError(f"bucketSize must be positive, got {bucket_size}")
        self.bucket_size = float(bucket_size)

        # maps BucketKey -> [(Point, key), ...]
        self._buckets: Dict[BucketKey, List[Tuple[Point, K]]] = {}
        self._lock = threading.Lock()

    def key_for(self, point: PointLike, attribute: Hashable) -> BucketKey:
        pt = as_point(point)
        cx, cy = bucket_of(pt, self.bucket_size)
        return BucketKey(cx, cy, attribute)

    # --------------------------------------------------------

    def insert(self, point: PointLike, attribute: Hashable, key: K) -> str:
        """Store *key* at *point* under *attribute*.

        Returns:
            The label of the bucket the entry was placed in.

        Raises:
            RangeError: If the point has no bucket (non-finite or too large
                for *bucket_size*).
        """
        bucket = self.key_for(point, attribute)
        with self._lock:
            self._buckets.setdefault(bucket, []).append((as_point(point), key))
        logger.debug("Inserted %r into bucket %s/%r", key, bucket.label, attribute)
        return bucket.label

    def remove(self, point: PointLike, attribute: Hashable, key: K) -> bool:
        """Remove the entry for *key*.  Returns ``False`` when nothing matched."""
        try:
            bucket = self.key_for(point, attribute)
        except RangeError:
            # such a point could never have been stored
            return False
        with self._lock:
            rows = self._buckets.get(bucket)
            if not rows:
                return False
            for i, (_pt, k) in enumerate(rows):
                if k == key:
                    del rows[i]
                    if not rows:
                        del self._buckets[bucket]
                    return True
        return False

    # --------------------------------------------------------

    def search(
        self,
        point: PointLike,
        attribute: Hashable,
        max_results: int = DEFAULT_HAYSTACK_LIMIT,
        radius: int = 1,
    ) -> List[K]:
        """Keys near *point* whose secondary attribute equals *attribute*.

        Visits the point's bucket, then the surrounding rings of buckets up
        to *radius* (1 = the immediate neighbours).  Entries are gathered in
        visiting order and cut at *max_results*.  No distance sorting takes
        place: a closer entry in a later bucket can be dropped in favour of
        a farther one in an earlier bucket.

        Raises:
            QueryError: If *max_results* or *radius* is negative, or
                *point* has non-finite coordinates.
        """
        if max_results < 0:
            raise QueryError(f"max_results must be non-negative, got {max_results}")
        if radius < 0:
            raise QueryError(f"radius must be non-negative, got {radius}")
        try:
            cx, cy = bucket_of(as_point(point), self.bucket_size)
        except RangeError as e:
            raise QueryError(f"bad search point: {e}") from e

        out: List[K] = []
        with self._lock:
            for bx, by in neighbors_square(cx, cy, radius):
                for _pt, key in self._buckets.get(BucketKey(bx, by, attribute), ()):
                    if len(out) >= max_results:
                        return out
                    out.append(key)
        return out

    def bucket_entries(self, label: str, attribute: Hashable) -> List[K]:
        """Keys stored in the bucket *label* (as returned by :meth:`insert`)
        under *attribute*, in insertion order.

        Raises:
            QueryError: If *label* is not a bucket label.
        """
        try:
            cx, cy = decode_bucket_label(label)
        except ValueError as e:
            raise QueryError(str(e)) from e
        with self._lock:
            return [key for _pt, key in self._buckets.get(BucketKey(cx, cy, attribute), ())]

    # --------------------------------------------------------

    def buckets(self) -> int:
        """Number of non-empty buckets."""
        return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def __len__(self) -> int:
        """Total number of stored entries."""
        return sum(len(v) for v in self._buckets.values())

    def __repr__(self) -> str:
        return f"HaystackIndex(bucket_size={self.bucket_size}, entries={len(self)})"
