import dataclasses
import functools
import logging
import re
from typing import Any, Optional, Sequence, Tuple, Union

import pyproj
import pyproj.exceptions
import shapely.geometry
import shapely.ops
import shapely.wkt
from shapely.geometry.base import BaseGeometry

_log = logging.getLogger(__name__)


class SpatialReferenceException(ValueError):
    pass


class BoundingBoxException(ValueError):
    pass


_SRS_REGEX = re.compile(r"^(?P<authority>[A-Za-z][A-Za-z0-9_-]*):{1,2}(?P<code>\d+)$")
_SRS_URN_REGEX = re.compile(r"^urn:ogc:def:crs:(?P<authority>[A-Za-z][A-Za-z0-9_-]*):[^:]*:(?P<code>\d+)$", re.I)
_SRS_URL_REGEX = re.compile(
    r"^https?://www\.opengis\.net/def/crs/(?P<authority>[A-Za-z][A-Za-z0-9_-]*)/[^/]+/(?P<code>\d+)$", re.I
)


@functools.lru_cache(maxsize=256)
def _resolve_crs(authority: str, code: int) -> pyproj.CRS:
    try:
        return pyproj.CRS.from_authority(authority, str(code))
    except pyproj.exceptions.CRSError as e:
        raise SpatialReferenceException(f"Unknown spatial reference {authority}:{code}") from e


@dataclasses.dataclass(frozen=True)
class SpatialReference:
    """
    Spatial reference system, identified by an authority and a code (e.g. "EPSG:4326").

    Instances can only be constructed for reference systems that resolve
    to a known coordinate reference system.
    """

    authority: str
    code: int

    def __post_init__(self):
        if not isinstance(self.code, int) or isinstance(self.code, bool):
            raise SpatialReferenceException(f"Invalid spatial reference code {self.code!r}")
        object.__setattr__(self, "authority", self.authority.upper())
        # Fail early on unknown reference systems
        _resolve_crs(self.authority, self.code)

    @classmethod
    def parse(cls, value: Union[str, int, "SpatialReference"]) -> "SpatialReference":
        """
        Parse a spatial reference from an identifier like "EPSG:4326", "EPSG::4326",
        an OGC URN or URL, or a plain EPSG code.
        """
        if isinstance(value, SpatialReference):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(authority="EPSG", code=value)
        if isinstance(value, str):
            value = value.strip()
            for regex in [_SRS_REGEX, _SRS_URN_REGEX, _SRS_URL_REGEX]:
                match = regex.match(value)
                if match:
                    return cls(authority=match.group("authority"), code=int(match.group("code")))
        raise SpatialReferenceException(f"Invalid spatial reference {value!r}")

    @classmethod
    def epsg_4326(cls) -> "SpatialReference":
        return cls(authority="EPSG", code=4326)

    def __str__(self):
        return f"{self.authority}:{self.code}"

    def to_crs(self) -> pyproj.CRS:
        return _resolve_crs(self.authority, self.code)


@functools.lru_cache(maxsize=64)
def _transformer(from_srs: SpatialReference, to_srs: SpatialReference) -> pyproj.Transformer:
    return pyproj.Transformer.from_crs(crs_from=from_srs.to_crs(), crs_to=to_srs.to_crs(), always_xy=True)


def reproject_geometry(geometry: BaseGeometry, from_srs: SpatialReference, to_srs: SpatialReference) -> BaseGeometry:
    """Reproject a shapely geometry between spatial reference systems."""
    if from_srs == to_srs:
        return geometry
    return shapely.ops.transform(_transformer(from_srs, to_srs).transform, geometry)


@dataclasses.dataclass(frozen=True)
class Coordinate2D:
    x: float
    y: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclasses.dataclass(frozen=True)
class BoundingBox:
    """
    Axis aligned bounding box, defined by its lower left and upper right corner.

    Degenerate (zero-area) boxes are legal, but considered empty:
    nothing intersects them.
    """

    lower_left: Coordinate2D
    upper_right: Coordinate2D

    def __post_init__(self):
        for corner in [self.lower_left, self.upper_right]:
            for v in corner.as_tuple():
                if not isinstance(v, (int, float)) or isinstance(v, bool) or v != v:
                    raise BoundingBoxException(f"Invalid bounding box coordinate {v!r}")
        if self.lower_left.x > self.upper_right.x:
            raise BoundingBoxException(
                f"Lower left x ({self.lower_left.x}) is larger than upper right x ({self.upper_right.x})"
            )
        if self.lower_left.y > self.upper_right.y:
            raise BoundingBoxException(
                f"Lower left y ({self.lower_left.y}) is larger than upper right y ({self.upper_right.y})"
            )

    @classmethod
    def from_wsen_tuple(cls, wsen: Sequence[float]) -> "BoundingBox":
        """Build bounding box from tuple of west, south, east and north bounds"""
        if len(wsen) != 4:
            raise BoundingBoxException(f"Expected 4 bounds, but got {len(wsen)}")
        west, south, east, north = wsen
        return cls(lower_left=Coordinate2D(west, south), upper_right=Coordinate2D(east, north))

    @classmethod
    def from_string(cls, value: str) -> "BoundingBox":
        """Parse bounding box from comma separated "minx,miny,maxx,maxy" string."""
        try:
            bounds = [float(v) for v in value.split(",")]
        except ValueError:
            raise BoundingBoxException(f"Invalid bounding box {value!r}") from None
        return cls.from_wsen_tuple(bounds)

    @classmethod
    def from_dict(cls, d: dict) -> "BoundingBox":
        """Load from `{"lowerLeftCoordinate": {"x":..,"y":..}, "upperRightCoordinate": {...}}`."""
        try:
            ll = d["lowerLeftCoordinate"]
            ur = d["upperRightCoordinate"]
            return cls(lower_left=Coordinate2D(ll["x"], ll["y"]), upper_right=Coordinate2D(ur["x"], ur["y"]))
        except (KeyError, TypeError) as e:
            raise BoundingBoxException(f"Invalid bounding box {d!r}") from e

    def to_dict(self) -> dict:
        return {
            "lowerLeftCoordinate": {"x": self.lower_left.x, "y": self.lower_left.y},
            "upperRightCoordinate": {"x": self.upper_right.x, "y": self.upper_right.y},
        }

    @property
    def west(self) -> float:
        return self.lower_left.x

    @property
    def south(self) -> float:
        return self.lower_left.y

    @property
    def east(self) -> float:
        return self.upper_right.x

    @property
    def north(self) -> float:
        return self.upper_right.y

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    def is_empty(self) -> bool:
        """Zero-area boxes cover nothing."""
        return self.width == 0 or self.height == 0

    def as_wsen_tuple(self) -> Tuple[float, float, float, float]:
        return (self.west, self.south, self.east, self.north)

    def as_polygon(self) -> shapely.geometry.Polygon:
        """Get bounding box as a shapely Polygon"""
        return shapely.geometry.box(minx=self.west, miny=self.south, maxx=self.east, maxy=self.north)

    def contains(self, x: float, y: float) -> bool:
        """Check if given point is inside the (closed) bounding box"""
        if self.is_empty():
            return False
        return (self.west <= x <= self.east) and (self.south <= y <= self.north)

    def intersects_bbox(self, other: "BoundingBox") -> bool:
        if self.is_empty() or other.is_empty():
            return False
        return not (
            other.east < self.west or other.west > self.east or other.north < self.south or other.south > self.north
        )

    def intersection(self, other: "BoundingBox") -> Optional["BoundingBox"]:
        if not self.intersects_bbox(other):
            return None
        return BoundingBox.from_wsen_tuple(
            (
                max(self.west, other.west),
                max(self.south, other.south),
                min(self.east, other.east),
                min(self.north, other.north),
            )
        )

    def intersects_geometry(self, geometry: BaseGeometry) -> bool:
        if self.is_empty() or geometry.is_empty:
            return False
        if isinstance(geometry, shapely.geometry.Point):
            return self.contains(geometry.x, geometry.y)
        return self.as_polygon().intersects(geometry)

    def reproject(self, from_srs: SpatialReference, to_srs: SpatialReference) -> "BoundingBox":
        """Reproject bounding box to given spatial reference to a new (enclosing) bounding box."""
        if from_srs == to_srs:
            return self
        west, south, east, north = _transformer(from_srs, to_srs).transform_bounds(*self.as_wsen_tuple())
        return BoundingBox.from_wsen_tuple((west, south, east, north))


def geometry_from_json(value: Any) -> BaseGeometry:
    """
    Build shapely geometry from a GeoJSON geometry dict,
    a WKT string or a simple `{"x": .., "y": ..}` point mapping.
    """
    if isinstance(value, dict) and "type" in value and "coordinates" in value:
        return shapely.geometry.shape(value)
    if isinstance(value, dict) and set(value.keys()) == {"x", "y"}:
        return shapely.geometry.Point(value["x"], value["y"])
    if isinstance(value, str):
        return shapely.wkt.loads(value)
    raise ValueError(f"Unsupported geometry representation {value!r}")
