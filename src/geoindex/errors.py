"""errors.py

Exception hierarchy shared by every index in the package.

All of these are caller-input errors.  They are raised immediately and never
retried internally.
"""

from __future__ import annotations


class GeoIndexError(ValueError):
    """Base class for all geo index errors."""


class ConfigError(GeoIndexError):
    """Invalid index options, or a second geo index on one collection."""


class RangeError(GeoIndexError):
    """A point to be indexed falls outside the configured ``[min, max)`` range."""


class GeometryError(GeoIndexError):
    """A spherical query received a point that is not a valid lon/lat pair."""


class QueryError(GeoIndexError):
    """Malformed query shape, or a query sent to the wrong index kind."""
