"""
geohash.py

Binary geohash codec for points on a bounded square plane.

A geohash is built by recursive quadrant subdivision of the configured
range.  Each subdivision step halves the current x-interval and then the
current y-interval, emitting one bit per axis:

    step 1: x-bit, y-bit
    step 2: x-bit, y-bit
    ...

A bit is ``1`` when the coordinate lies in the upper half ``[mid, hi)`` and
``0`` otherwise.  After ``precision`` steps the accumulated ``2 * precision``
bits form the hash.  The x-bit always comes first; decoding relies on that
order.

Design goals:
- pure functions over immutable range/precision values
- hashes at a lower precision are prefixes of hashes at a higher one
- integer payloads, so prefix scans reduce to integer interval scans

Decoding is lossy.  It recovers the cell, not the original point.
"""

from __future__ import annotations
from dataclasses import dataclass
from functools import total_ordering
from math import isfinite
from typing import Iterator, Optional, Sequence, Tuple, Union

from .errors import ConfigError, RangeError

# ------------------------------------------------------------
# Defaults
# ------------------------------------------------------------

DEFAULT_MIN = -180.0
DEFAULT_MAX = 180.0

DEFAULT_BITS = 26
MIN_BITS = 1
MAX_BITS = 32


# ------------------------------------------------------------
# Geometry values
# ------------------------------------------------------------

@dataclass(frozen=True)
class Point:
    """A 2D coordinate pair.

    Immutable (frozen dataclass) so it can be safely stored inside an index
    without risk of accidental mutation.

    Attributes:
        x: First coordinate (longitude when interpreted spherically).
        y: Second coordinate (latitude when interpreted spherically).
    """
    x: float
    y: float

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y


PointLike = Union[Point, Sequence[float]]


def as_point(value: PointLike) -> Point:
    """Coerce a :class:`Point` or an ``(x, y)`` sequence into a :class:`Point`.

    Raises:
        ValueError: If *value* does not hold exactly two numbers.
    """
    if isinstance(value, Point):
        return value
    if isinstance(value, (str, bytes)):
        raise ValueError(f"not a coordinate pair: {value!r}")
    coords = list(value)
    if len(coords) != 2:
        raise ValueError(f"expected 2 coordinates, got {len(coords)}")
    return Point(float(coords[0]), float(coords[1]))


@dataclass(frozen=True)
class Box:
    """Axis-aligned rectangle, inclusive on both corners."""
    low: Point
    high: Point

    def contains(self, pt: Point) -> bool:
        return (self.low.x <= pt.x <= self.high.x
                and self.low.y <= pt.y <= self.high.y)

    @property
    def center(self) -> Point:
        return Point((self.low.x + self.high.x) / 2, (self.low.y + self.high.y) / 2)

    @property
    def width(self) -> float:
        return self.high.x - self.low.x


@dataclass(frozen=True)
class GeoRange:
    """The bounded square plane ``[min, max)`` shared by both axes.

    Raises:
        ConfigError: If the bounds are not finite or ``min >= max``.
    """
    min: float = DEFAULT_MIN
    max: float = DEFAULT_MAX

    def __post_init__(self) -> None:
        if not (isfinite(self.min) and isfinite(self.max)):
            raise ConfigError(f"range bounds must be finite, got [{self.min}, {self.max})")
        if self.min >= self.max:
            raise ConfigError(f"range min must be < max, got [{self.min}, {self.max})")

    @property
    def width(self) -> float:
        return self.max - self.min

    def contains(self, pt: Point) -> bool:
        return (self.min <= pt.x < self.max) and (self.min <= pt.y < self.max)

    def check(self, pt: Point) -> None:
        """Raise :class:`RangeError` unless *pt* is indexable under this range."""
        if not (isfinite(pt.x) and isfinite(pt.y)) or not self.contains(pt):
            raise RangeError(
                f"point ({pt.x}, {pt.y}) is outside the index range "
                f"[{self.min}, {self.max})"
            )

    def as_box(self) -> Box:
        return Box(Point(self.min, self.min), Point(self.max, self.max))


def check_precision(precision: int) -> int:
    """Validate a geohash precision in bits.

    Raises:
        ConfigError: If *precision* is not an integer in ``[1, 32]``.
    """
    if isinstance(precision, bool) or not isinstance(precision, int):
        raise ConfigError(f"bits must be an integer, got {precision!r}")
    if not MIN_BITS <= precision <= MAX_BITS:
        raise ConfigError(f"bits must be in [{MIN_BITS}, {MAX_BITS}], got {precision}")
    return precision


# ------------------------------------------------------------
# GeoHash value
# ------------------------------------------------------------

@total_ordering
@dataclass(frozen=True)
class GeoHash:
    """A geohash (or geohash prefix) of ``2 * precision`` bits.

    The payload is stored as an integer whose binary form, left padded to
    ``2 * precision`` digits, is the canonical bit string.  Ordering is
    lexicographic over that string, so a prefix sorts before everything it
    covers.

    A precision of ``0`` is the empty prefix that covers the whole range.
    """
    value: int
    precision: int

    def __post_init__(self) -> None:
        if not 0 <= self.precision <= MAX_BITS:
            raise ValueError(f"precision must be in [0, {MAX_BITS}], got {self.precision}")
        if not 0 <= self.value < (1 << (2 * self.precision)):
            raise ValueError(f"value {self.value} does not fit in {2 * self.precision} bits")

    @classmethod
    def from_string(cls, bits: str) -> "GeoHash":
        """Parse a bit string such as ``"0110"``.

        Raises:
            ValueError: On characters other than ``0``/``1`` or an odd length.
        """
        if len(bits) % 2 or set(bits) - {"0", "1"}:
            raise ValueError(f"not a geohash bit string: {bits!r}")
        return cls(int(bits, 2) if bits else 0, len(bits) // 2)

    def __str__(self) -> str:
        if not self.precision:
            return ""
        return format(self.value, f"0{2 * self.precision}b")

    def __lt__(self, other: "GeoHash") -> bool:
        if not isinstance(other, GeoHash):
            return NotImplemented
        return str(self) < str(other)

    def prefix(self, precision: int) -> "GeoHash":
        """Truncate to the first *precision* bit pairs."""
        if not 0 <= precision <= self.precision:
            raise ValueError(f"cannot take a {precision}-bit prefix of a {self.precision}-bit hash")
        return GeoHash(self.value >> (2 * (self.precision - precision)), precision)

    def is_prefix_of(self, other: "GeoHash") -> bool:
        return self.precision <= other.precision and other.prefix(self.precision) == self

    def children(self) -> Tuple["GeoHash", ...]:
        """The four quadrants one level down, in hash order."""
        return tuple(GeoHash((self.value << 2) | q, self.precision + 1) for q in range(4))

    def key_range(self, precision: int) -> Tuple[int, int]:
        """Inclusive interval of *precision*-bit hash values under this prefix."""
        shift = 2 * (precision - self.precision)
        if shift < 0:
            raise ValueError(f"prefix precision {self.precision} exceeds {precision}")
        return self.value << shift, ((self.value + 1) << shift) - 1


ROOT = GeoHash(0, 0)


# ------------------------------------------------------------
# Encode / decode
# ------------------------------------------------------------

def encode(pt: Point, geo_range: GeoRange, precision: int) -> GeoHash:
    """Encode a point into a geohash of ``2 * precision`` bits.

    Args:
        pt: The point to encode.
        geo_range: Bounds of the plane.
        precision: Number of subdivision steps (1-32).

    Returns:
        The :class:`GeoHash` of the cell containing *pt*.

    Raises:
        RangeError: If a coordinate lies outside ``[min, max)``.
        ConfigError: If *precision* is out of bounds.
    """
    check_precision(precision)
    geo_range.check(pt)

    x_lo, x_hi = geo_range.min, geo_range.max
    y_lo, y_hi = geo_range.min, geo_range.max
    value = 0
    for _ in range(precision):
        mid = (x_lo + x_hi) / 2
        if pt.x >= mid:
            value = (value << 1) | 1
            x_lo = mid
        else:
            value <<= 1
            x_hi = mid

        mid = (y_lo + y_hi) / 2
        if pt.y >= mid:
            value = (value << 1) | 1
            y_lo = mid
        else:
            value <<= 1
            y_hi = mid

    return GeoHash(value, precision)


def cell_bounds(gh: GeoHash, geo_range: GeoRange) -> Box:
    """Return the cell covered by a geohash or prefix.

    The cell is half-open ``[low, high)`` in both axes; the returned
    :class:`Box` simply carries its corners.
    """
    x_lo, x_hi = geo_range.min, geo_range.max
    y_lo, y_hi = geo_range.min, geo_range.max
    for step in range(gh.precision):
        shift = 2 * (gh.precision - step) - 1
        x_bit = (gh.value >> shift) & 1
        y_bit = (gh.value >> (shift - 1)) & 1

        mid = (x_lo + x_hi) / 2
        if x_bit:
            x_lo = mid
        else:
            x_hi = mid

        mid = (y_lo + y_hi) / 2
        if y_bit:
            y_lo = mid
        else:
            y_hi = mid

    return Box(Point(x_lo, y_lo), Point(x_hi, y_hi))


def decode(gh: GeoHash, geo_range: GeoRange) -> Point:
    """Decode a geohash back to the center of its cell.

    ``decode(encode(p))`` is within half a cell side of ``p`` on each axis.
    """
    return cell_bounds(gh, geo_range).center


def cell_size(geo_range: GeoRange, precision: int) -> float:
    """Side length of one cell at *precision* bits."""
    return geo_range.width / (1 << precision)


# ------------------------------------------------------------
# Bound codec
# ------------------------------------------------------------

class GeohashCodec:
    """Encoder/decoder bound to one range and precision.

    Example::

        codec = GeohashCodec(GeoRange(-180, 180), bits=4)
        gh = codec.encode(Point(-170.0, -170.0))
        str(gh)  # '00000000'
    """

    def __init__(self, geo_range: GeoRange = GeoRange(), bits: int = DEFAULT_BITS):
        self.range = geo_range
        self.bits = check_precision(bits)

    def encode(self, pt: Point) -> GeoHash:
        return encode(pt, self.range, self.bits)

    def decode(self, gh: GeoHash) -> Point:
        return decode(gh, self.range)

    def cell_bounds(self, gh: GeoHash) -> Box:
        return cell_bounds(gh, self.range)

    def cell_size(self, precision: Optional[int] = None) -> float:
        return cell_size(self.range, self.bits if precision is None else precision)

    def __repr__(self) -> str:
        return f"GeohashCodec(range=[{self.range.min}, {self.range.max}), bits={self.bits})"
