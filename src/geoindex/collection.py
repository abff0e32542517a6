"""collection.py

A minimal record collection that owns at most one geo index.

This is the boundary between the indexes and whatever document store embeds
them.  It keeps the index in step with record writes, persists index
configuration next to the collection, and routes queries to the right index
kind.

Usage::

    from geoindex.collection import Collection

    places = Collection("places", metadata_path=Path("places.meta.json"))
    places.create_index({"loc": "2d", "category": 1}, bits=26)
    places.insert("hut-1", {"loc": [10.1, 46.7], "category": "hut"})
    places.near((10.0, 46.7), limit=5, spherical=True)
"""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Hashable, List, Mapping, Optional, Type, Union

from pydantic import ValidationError

from .distance import calculator_for
from .errors import ConfigError, GeoIndexError, QueryError, RangeError
from .geohash import Point, PointLike, as_point
from .haystack import DEFAULT_HAYSTACK_LIMIT, HaystackIndex
from .models import CollectionMetadata, IndexSpec, parse_index_request
from .spatial_index import GeoNearHit, SpatialIndex

logger = logging.getLogger(__name__)

GeoIndex = Union[SpatialIndex, HaystackIndex]

_MISSING = object()

# One metadata lock per metadata file, shared by every Collection opened on it.
_metadata_locks: Dict[Path, threading.RLock] = {}
_metadata_locks_guard = threading.Lock()


def _metadata_lock(path: Optional[Path]) -> threading.RLock:
    if path is None:
        return threading.RLock()
    with _metadata_locks_guard:
        return _metadata_locks.setdefault(path.resolve(), threading.RLock())


# ------------------------------------------------------------
# Record helpers
# ------------------------------------------------------------

def lookup(doc: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted field path such as ``"address.loc"`` in a record."""
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return default
        value = value[part]
    return value


def coerce_location(value: Any, error: Type[GeoIndexError] = RangeError) -> Point:
    """Read a location stored as ``[x, y]``, ``(x, y)`` or a two-value mapping.

    Mappings such as ``{"lng": 10.0, "lat": 46.0}`` are read in insertion
    order: first value is x, second is y.

    Raises:
        error: If *value* is not a pair of numbers.
    """
    if isinstance(value, Mapping):
        value = list(value.values())
    try:
        return as_point(value)
    except (TypeError, ValueError) as e:
        raise error(f"malformed location {value!r}: {e}") from e


def _hashable(value: Any) -> Hashable:
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, dict):
        return tuple((k, _hashable(v)) for k, v in value.items())
    return value


def build_index(spec: IndexSpec) -> GeoIndex:
    """Create an empty index for *spec*."""
    if spec.kind == "geoHaystack":
        return HaystackIndex(bucket_size=spec.bucket_size)
    return SpatialIndex(spec.geo_range, bits=spec.bits, compound_fields=spec.compound_fields)


# ------------------------------------------------------------
# Collection
# ------------------------------------------------------------

class Collection:
    """In-memory records plus one optional geo index.

    Record writes are serialized by a per-collection lock.  Index
    creation and drop also hold a metadata lock shared by every
    collection opened on the same metadata file, and decide against the
    metadata as persisted, not this handle's copy.  Queries read the
    current index without taking either lock.

    Records are deep-copied on the way in and out, so callers mutating
    their documents cannot desynchronize the index.
    """

    def __init__(self, name: str, metadata_path: Optional[Union[str, Path]] = None):
        """Open a collection.

        Args:
            name: Collection name, stored in the metadata.
            metadata_path: JSON file holding the index configuration.  When
                it exists, the configured index is rebuilt (empty) from it.
                When *None*, metadata lives only in memory.

        Raises:
            ConfigError: If the metadata file is invalid or belongs to
                another collection.
        """
        self.name = name
        self.metadata_path = Path(metadata_path) if metadata_path is not None else None
        self._records: Dict[Hashable, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._metadata_lock = _metadata_lock(self.metadata_path)

        self.metadata = self._load_metadata()
        self._spec: Optional[IndexSpec] = self.metadata.geo_index()
        self._index: Optional[GeoIndex] = build_index(self._spec) if self._spec else None

    # --------------------------------------------------------
    # Metadata persistence
    # --------------------------------------------------------

    def _load_metadata(self) -> CollectionMetadata:
        if self.metadata_path is None or not self.metadata_path.exists():
            return CollectionMetadata(name=self.name)
        raw = self.metadata_path.read_text(encoding="utf-8")
        try:
            metadata = CollectionMetadata.model_validate_json(raw)
        except ValidationError as e:
            raise ConfigError(f"invalid metadata in {self.metadata_path}: {e}") from e
        if metadata.name != self.name:
            raise ConfigError(
                f"metadata in {self.metadata_path} belongs to collection "
                f"{metadata.name!r}, not {self.name!r}"
            )
        logger.info("Loaded %d index spec(s) for collection %r", len(metadata.indexes), self.name)
        return metadata

    def _refresh_metadata(self) -> CollectionMetadata:
        # another collection on the same file may have changed it
        if self.metadata_path is None:
            return self.metadata
        return self._load_metadata()

    def _save_metadata(self, metadata: CollectionMetadata) -> None:
        if self.metadata_path is None:
            return
        self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.metadata_path.with_name(self.metadata_path.name + ".tmp")
        tmp.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.metadata_path)

    # --------------------------------------------------------
    # Index management
    # --------------------------------------------------------

    @property
    def index_spec(self) -> Optional[IndexSpec]:
        return self._spec

    @property
    def index(self) -> Optional[GeoIndex]:
        return self._index

    def create_index(self, key_pattern: Mapping[str, Any], **options: Any) -> IndexSpec:
        """Create the collection's geo index and fill it from existing records.

        Args:
            key_pattern: e.g. ``{"loc": "2d"}``, ``{"loc": "2d", "tag": 1}``
                or ``{"pos": "geoHaystack", "type": 1}``.
            **options: ``min``, ``max``, ``bits``, ``bucketSize``.

        Returns:
            The persisted :class:`IndexSpec`.

        Raises:
            ConfigError: On invalid options, or if the collection already
                has a geo index, including one created through another
                collection on the same metadata file.
            RangeError: If an existing record lies outside the range.  No
                index is created.
        """
        spec = parse_index_request(key_pattern, **options)
        with self._metadata_lock, self._lock:
            self.metadata = self._refresh_metadata()
            existing = self.metadata.geo_index()
            if existing is not None:
                raise ConfigError(
                    f"collection {self.name!r} already has a {existing.kind} index "
                    f"on {existing.field!r}; drop it before creating another"
                )
            index = self._build(spec)

            metadata = CollectionMetadata(name=self.name, indexes=[*self.metadata.indexes, spec])
            self._save_metadata(metadata)
            self.metadata = metadata
            self._spec, self._index = spec, index

        logger.info(
            "Created %s index on %s.%s (%d records indexed)",
            spec.kind, self.name, spec.field, len(index),
        )
        return spec

    def _build(self, spec: IndexSpec) -> GeoIndex:
        index = build_index(spec)
        if isinstance(index, SpatialIndex):
            rows = []
            for key, doc in self._records.items():
                raw = lookup(doc, spec.field)
                if raw is not None:
                    attrs = {f: lookup(doc, f) for f in spec.compound_fields}
                    rows.append((coerce_location(raw), key, attrs))
            index.bulk_insert(rows)
        else:
            for key, doc in self._records.items():
                self._index_insert(index, spec, key, doc)
        return index

    def drop_index(self, field: Optional[str] = None) -> IndexSpec:
        """Drop the geo index.

        Args:
            field: When given, the index must be on this field.

        Raises:
            ConfigError: If there is no (matching) geo index.
        """
        with self._metadata_lock, self._lock:
            self.metadata = self._refresh_metadata()
            spec = self.metadata.geo_index()
            if spec is None or (field is not None and spec.field != field):
                raise ConfigError(f"collection {self.name!r} has no geo index on {field!r}")
            metadata = CollectionMetadata(
                name=self.name,
                indexes=[s for s in self.metadata.indexes if s is not spec],
            )
            self._save_metadata(metadata)
            self.metadata = metadata
            self._spec, self._index = None, None
        logger.info("Dropped %s index on %s.%s", spec.kind, self.name, spec.field)
        return spec

    # --------------------------------------------------------
    # Index maintenance
    # --------------------------------------------------------

    @staticmethod
    def _index_insert(index: GeoIndex, spec: IndexSpec, key: Hashable, doc: Mapping[str, Any]) -> None:
        raw = lookup(doc, spec.field)
        if raw is None:
            return
        pt = coerce_location(raw)
        if isinstance(index, HaystackIndex):
            index.insert(pt, _hashable(lookup(doc, spec.secondary_field)), key)
        else:
            index.insert(pt, key, {f: lookup(doc, f) for f in spec.compound_fields})

    @staticmethod
    def _index_remove(index: GeoIndex, spec: IndexSpec, key: Hashable, doc: Mapping[str, Any]) -> None:
        raw = lookup(doc, spec.field)
        if raw is None:
            return
        pt = coerce_location(raw)
        if isinstance(index, HaystackIndex):
            index.remove(pt, _hashable(lookup(doc, spec.secondary_field)), key)
        else:
            index.remove(pt, key)

    def _validate(self, doc: Mapping[str, Any]) -> None:
        # Reject the write before anything is mutated.
        spec, index = self._spec, self._index
        if spec is None or index is None:
            return
        raw = lookup(doc, spec.field)
        if raw is None:
            return
        pt = coerce_location(raw)
        if isinstance(index, HaystackIndex):
            index.key_for(pt, _hashable(lookup(doc, spec.secondary_field)))
        else:
            index.range.check(pt)

    # --------------------------------------------------------
    # Record writes
    # --------------------------------------------------------

    def insert(self, key: Hashable, doc: Mapping[str, Any]) -> None:
        """Store a new record and index its location.

        Raises:
            KeyError: If *key* already exists.
            RangeError: If the location is malformed or out of range.  The
                record is not stored.
        """
        with self._lock:
            if key in self._records:
                raise KeyError(f"duplicate key {key!r} in collection {self.name!r}")
            doc = copy.deepcopy(dict(doc))
            self._validate(doc)
            if self._index is not None:
                self._index_insert(self._index, self._spec, key, doc)
            self._records[key] = doc

    def update(self, key: Hashable, doc: Mapping[str, Any]) -> None:
        """Replace a record, moving its index entry if the location changed.

        Raises:
            KeyError: If *key* does not exist.
            RangeError: If the new location is malformed or out of range.
                The old record and its index entry stay in place.
        """
        with self._lock:
            old = self._records[key]
            doc = copy.deepcopy(dict(doc))
            self._validate(doc)
            index, spec = self._index, self._spec
            if isinstance(index, SpatialIndex):
                old_raw, new_raw = lookup(old, spec.field), lookup(doc, spec.field)
                if old_raw is not None and new_raw is not None:
                    # single swap, so readers never see the record missing
                    index.update(
                        coerce_location(old_raw),
                        coerce_location(new_raw),
                        key,
                        {f: lookup(doc, f) for f in spec.compound_fields},
                    )
                    self._records[key] = doc
                    return
            if index is not None:
                self._index_remove(index, spec, key, old)
                self._index_insert(index, spec, key, doc)
            self._records[key] = doc

    def delete(self, key: Hashable) -> bool:
        """Delete a record.  Returns ``False`` if it did not exist."""
        with self._lock:
            doc = self._records.pop(key, _MISSING)
            if doc is _MISSING:
                return False
            if self._index is not None:
                self._index_remove(self._index, self._spec, key, doc)
            return True

    def get(self, key: Hashable) -> Optional[Dict[str, Any]]:
        """A copy of the stored record, or ``None``."""
        doc = self._records.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    # --------------------------------------------------------
    # Queries
    # --------------------------------------------------------

    def _spatial(self) -> SpatialIndex:
        index = self._index
        if not isinstance(index, SpatialIndex):
            raise QueryError(f"collection {self.name!r} has no 2d index")
        return index

    def _haystack(self) -> HaystackIndex:
        index = self._index
        if not isinstance(index, HaystackIndex):
            raise QueryError(f"collection {self.name!r} has no geoHaystack index")
        return index

    @staticmethod
    def _point(value: PointLike) -> Point:
        return coerce_location(value, error=QueryError)

    def near(
        self,
        center: PointLike,
        limit: Optional[int] = None,
        max_distance: Optional[float] = None,
        spherical: bool = False,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[Hashable]:
        """Record keys ordered by ascending distance from *center*.

        With ``spherical=True``, *max_distance* is in radians.
        """
        index = self._spatial()
        return index.query_near(
            self._point(center), limit, calculator_for(spherical), max_distance, where
        )

    def geo_near(
        self,
        center: PointLike,
        limit: Optional[int] = None,
        max_distance: Optional[float] = None,
        spherical: bool = False,
        where: Optional[Mapping[str, Any]] = None,
        distance_multiplier: float = 1.0,
    ) -> List[GeoNearHit]:
        """Like :meth:`near`, but each hit carries its (scaled) distance."""
        index = self._spatial()
        return index.geo_near(
            self._point(center), limit, calculator_for(spherical), max_distance, where,
            distance_multiplier=distance_multiplier,
        )

    def within_box(
        self,
        low: PointLike,
        high: PointLike,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[Hashable]:
        """Record keys inside the box; treat the result as unordered."""
        return self._spatial().query_box(self._point(low), self._point(high), where)

    def within_center(
        self,
        center: PointLike,
        radius: float,
        spherical: bool = False,
        where: Optional[Mapping[str, Any]] = None,
    ) -> List[Hashable]:
        """Record keys within *radius* of *center*; unordered."""
        return self._spatial().query_center(
            self._point(center), radius, calculator_for(spherical), where
        )

    def geo_search(
        self,
        center: PointLike,
        search: Mapping[str, Any],
        limit: int = DEFAULT_HAYSTACK_LIMIT,
        radius: int = 1,
    ) -> List[Hashable]:
        """Haystack search: keys in the buckets around *center* matching *search*.

        Args:
            center: Query point.
            search: ``{secondary_field: value}``.
            limit: Maximum number of keys (default 50).
            radius: Bucket rings to visit around the center bucket.

        Raises:
            QueryError: If the collection has no haystack index, or
                *search* does not name exactly its secondary field.
        """
        index = self._haystack()
        field = self._spec.secondary_field
        if set(search) != {field}:
            raise QueryError(f"geoSearch needs exactly {{{field!r}: value}}, got {dict(search)}")
        return index.search(self._point(center), _hashable(search[field]), limit, radius)

    def __repr__(self) -> str:
        kind = self._spec.kind if self._spec else None
        return f"Collection(name={self.name!r}, records={len(self)}, geo_index={kind!r})"
