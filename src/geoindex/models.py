"""models.py

Pydantic models for persisted index configuration.

An :class:`IndexSpec` is everything needed to rebuild a geo index from
scratch: kind, field names, range, precision and bucket size.  Specs are
frozen; changing an index means dropping it and creating a new one.
:class:`CollectionMetadata` groups the specs of one collection and is what
gets written to disk.
"""

from __future__ import annotations

from typing import Any, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError
from .geohash import DEFAULT_BITS, DEFAULT_MAX, DEFAULT_MIN, MAX_BITS, MIN_BITS, GeoRange

IndexKind = Literal["2d", "geoHaystack"]
GEO_KINDS = ("2d", "geoHaystack")

# Request option names -> IndexSpec field names.
_OPTION_NAMES = {
    "min": "min",
    "max": "max",
    "bits": "bits",
    "bucketSize": "bucket_size",
    "bucket_size": "bucket_size",
}
_2D_ONLY_OPTIONS = ("min", "max", "bits")


class CompoundField(BaseModel):
    """A non-geo field stored alongside the geohash."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    direction: Literal[1, -1] = 1


class IndexSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: Literal["1.0"] = "1.0"
    field: str = Field(min_length=1)
    kind: IndexKind
    min: float = Field(default=DEFAULT_MIN, allow_inf_nan=False)
    max: float = Field(default=DEFAULT_MAX, allow_inf_nan=False)
    bits: int = Field(default=DEFAULT_BITS, ge=MIN_BITS, le=MAX_BITS)
    bucket_size: Optional[float] = Field(default=None, gt=0)
    secondary_field: Optional[str] = None
    compound: List[CompoundField] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_kind_options(self) -> "IndexSpec":
        if self.min >= self.max:
            raise ValueError(f"min must be < max, got min={self.min}, max={self.max}")
        if self.kind == "geoHaystack":
            if self.bucket_size is None:
                raise ValueError("geoHaystack index requires bucketSize")
            if not self.secondary_field:
                raise ValueError("geoHaystack index requires exactly one secondary field")
            if self.compound:
                raise ValueError("geoHaystack index takes no compound fields")
            if (self.min, self.max, self.bits) != (DEFAULT_MIN, DEFAULT_MAX, DEFAULT_BITS):
                raise ValueError("min, max and bits only apply to 2d indexes")
        else:
            if self.bucket_size is not None:
                raise ValueError("bucketSize only applies to geoHaystack indexes")
            if self.secondary_field is not None:
                raise ValueError("secondary_field only applies to geoHaystack indexes")
        names = [self.field] + self.compound_fields
        if self.secondary_field:
            names.append(self.secondary_field)
        if len(set(names)) != len(names):
            raise ValueError(f"index fields must be distinct, got {names}")
        return self

    @property
    def geo_range(self) -> GeoRange:
        return GeoRange(self.min, self.max)

    @property
    def compound_fields(self) -> List[str]:
        return [c.name for c in self.compound]

    @property
    def key_pattern(self) -> dict:
        """The request form this spec was parsed from."""
        pattern: dict = {self.field: self.kind}
        for c in self.compound:
            pattern[c.name] = c.direction
        if self.secondary_field:
            pattern[self.secondary_field] = 1
        return pattern


class CollectionMetadata(BaseModel):
    """Durable per-collection metadata: its name and its index specs."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    indexes: List[IndexSpec] = Field(default_factory=list)

    def geo_index(self) -> Optional[IndexSpec]:
        for spec in self.indexes:
            if spec.kind in GEO_KINDS:
                return spec
        return None


def parse_index_request(key_pattern: Mapping[str, Any], **options: Any) -> IndexSpec:
    """Turn an index creation request into a validated :class:`IndexSpec`.

    Accepted shapes::

        {"loc": "2d"}                           # plain 2d index
        {"loc": "2d", "category": 1}            # compound 2d index
        {"pos": "geoHaystack", "type": 1}       # haystack + secondary field

    The geo field must come first.  Options are ``min``, ``max``, ``bits``
    and ``bucketSize``.

    Raises:
        ConfigError: On any malformed pattern or invalid option.
    """
    items = list(key_pattern.items())
    geo = [(name, kind) for name, kind in items if kind in GEO_KINDS]
    if not geo:
        raise ConfigError(f"no geo field in index key pattern {dict(key_pattern)}")
    if len(geo) > 1:
        raise ConfigError(f"only one geo field is allowed per index, got {dict(key_pattern)}")
    field, kind = items[0]
    if kind not in GEO_KINDS:
        raise ConfigError(f"the geo field must come first in {dict(key_pattern)}")

    data: dict = {"field": field, "kind": kind}
    for option, value in options.items():
        if option not in _OPTION_NAMES:
            raise ConfigError(f"unknown index option {option!r}")
        if kind == "geoHaystack" and option in _2D_ONLY_OPTIONS:
            raise ConfigError(f"option {option!r} only applies to 2d indexes")
        data[_OPTION_NAMES[option]] = value

    rest = items[1:]
    for name, direction in rest:
        if isinstance(direction, bool) or direction not in (1, -1):
            raise ConfigError(f"field {name!r} needs a direction of 1 or -1, got {direction!r}")
    if kind == "geoHaystack":
        if len(rest) != 1:
            raise ConfigError("geoHaystack index requires exactly one secondary field")
        data["secondary_field"] = rest[0][0]
    else:
        data["compound"] = [{"name": name, "direction": int(d)} for name, d in rest]

    try:
        return IndexSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid {kind} index options: {e}") from e
