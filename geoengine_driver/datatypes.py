"""
Chunk data types streamed by the execution engine:
feature collections (vector), raster tiles and plots.

All chunks report an (estimated) `byte_size()`, used to keep every
emitted chunk within the byte budget of the query.
"""
import json
import logging
import math
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy
import shapely
import shapely.geometry
from shapely.geometry.base import BaseGeometry

from geoengine_driver.errors import InternalException
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.util.geometry import BoundingBox, SpatialReference, reproject_geometry

_log = logging.getLogger(__name__)

# Byte size estimates
COORDINATE_BYTES = 16
GEOMETRY_OVERHEAD_BYTES = 8
TIME_INTERVAL_BYTES = 16
NUMBER_BYTES = 8
NULL_BYTES = 1


def _value_byte_size(value: Any) -> int:
    if value is None:
        return NULL_BYTES
    if isinstance(value, str):
        return len(value.encode("utf-8")) + NUMBER_BYTES
    return NUMBER_BYTES


class ChunkTooLargeException(InternalException):
    def __init__(self, size: int, budget: int):
        super().__init__(
            message=f"Smallest unit of data ({size} bytes) exceeds chunk byte budget ({budget} bytes)"
        )


class FeatureCollection:
    """
    Column oriented collection of features: geometries, validity time intervals
    and property columns (all of equal length).
    """

    def __init__(
        self,
        geometries: Sequence[BaseGeometry],
        time_intervals: Optional[Sequence[TimeInterval]] = None,
        columns: Optional[Dict[str, Sequence[Any]]] = None,
    ):
        self.geometries: List[BaseGeometry] = list(geometries)
        n = len(self.geometries)
        if time_intervals is None:
            time_intervals = [TimeInterval.unbounded()] * n
        self.time_intervals: List[TimeInterval] = list(time_intervals)
        self.columns: Dict[str, List[Any]] = {k: list(v) for k, v in (columns or {}).items()}
        if len(self.time_intervals) != n or any(len(v) != n for v in self.columns.values()):
            raise ValueError("Feature collection columns must have equal length")

    @classmethod
    def empty(cls, column_names: Iterable[str] = ()) -> "FeatureCollection":
        return cls(geometries=[], time_intervals=[], columns={c: [] for c in column_names})

    @classmethod
    def concat(cls, collections: Sequence["FeatureCollection"]) -> "FeatureCollection":
        """Merge collections (with the same columns) into a single one."""
        if not collections:
            return cls.empty()
        column_names = list(collections[0].columns.keys())
        for c in collections[1:]:
            if list(c.columns.keys()) != column_names:
                raise ValueError(f"Can not merge collections with columns {column_names} and {list(c.columns)}")
        return cls(
            geometries=[g for c in collections for g in c.geometries],
            time_intervals=[t for c in collections for t in c.time_intervals],
            columns={name: [v for c in collections for v in c.columns[name]] for name in column_names},
        )

    def __len__(self):
        return len(self.geometries)

    def __repr__(self):
        return f"<FeatureCollection {len(self)} features, columns {list(self.columns)}>"

    def is_empty(self) -> bool:
        return len(self.geometries) == 0

    def feature_byte_size(self, index: int) -> int:
        geometry = self.geometries[index]
        size = GEOMETRY_OVERHEAD_BYTES + COORDINATE_BYTES * int(shapely.get_num_coordinates(geometry))
        size += TIME_INTERVAL_BYTES
        size += sum(_value_byte_size(values[index]) for values in self.columns.values())
        return size

    def byte_size(self) -> int:
        return sum(self.feature_byte_size(i) for i in range(len(self)))

    def select(self, indices: Iterable[int]) -> "FeatureCollection":
        indices = list(indices)
        return FeatureCollection(
            geometries=[self.geometries[i] for i in indices],
            time_intervals=[self.time_intervals[i] for i in indices],
            columns={k: [v[i] for i in indices] for k, v in self.columns.items()},
        )

    def slice(self, start: int, stop: int) -> "FeatureCollection":
        return self.select(range(start, min(stop, len(self))))

    def filter(self, mask: Sequence[bool]) -> "FeatureCollection":
        if len(mask) != len(self):
            raise ValueError("Mask length does not match collection length")
        return self.select(i for i, keep in enumerate(mask) if keep)

    def with_column(self, name: str, values: Sequence[Any]) -> "FeatureCollection":
        if len(values) != len(self):
            raise ValueError(f"Column {name!r} has wrong length")
        return FeatureCollection(
            geometries=self.geometries, time_intervals=self.time_intervals, columns={**self.columns, name: values}
        )

    def clip(self, bounds: BoundingBox, time: TimeInterval) -> "FeatureCollection":
        """Keep features intersecting given bounding box and time interval."""
        return self.filter(
            [bounds.intersects_geometry(g) and t.intersects(time) for g, t in zip(self.geometries, self.time_intervals)]
        )

    def reproject(self, from_srs: SpatialReference, to_srs: SpatialReference) -> "FeatureCollection":
        if from_srs == to_srs:
            return self
        return FeatureCollection(
            geometries=[reproject_geometry(g, from_srs=from_srs, to_srs=to_srs) for g in self.geometries],
            time_intervals=self.time_intervals,
            columns=self.columns,
        )

    def split_to_budget(self, budget: int) -> Iterator["FeatureCollection"]:
        """
        Split collection in consecutive batches of at most `budget` bytes.
        Features are never dropped: a single feature that does not fit is an error.
        """
        start = 0
        size = 0
        for i in range(len(self)):
            feature_size = self.feature_byte_size(i)
            if feature_size > budget:
                raise ChunkTooLargeException(size=feature_size, budget=budget)
            if size + feature_size > budget:
                yield self.slice(start, i)
                start, size = i, 0
            size += feature_size
        if start < len(self):
            yield self.slice(start, len(self))

    def to_geojson_features(self) -> List[dict]:
        features = []
        for i, geometry in enumerate(self.geometries):
            start, end = self.time_intervals[i].to_iso_tuple()
            properties = {k: _json_value(v[i]) for k, v in self.columns.items()}
            properties.update({"start": start, "end": end})
            features.append(
                {"type": "Feature", "geometry": shapely.geometry.mapping(geometry), "properties": properties}
            )
        return features

    def to_dict(self) -> dict:
        return {"type": "FeatureCollection", "features": self.to_geojson_features()}


def _json_value(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, numpy.generic):
        return value.item()
    return value


class RasterTile:
    """
    2D raster data (numpy array, north-up) with its world bounds and time validity.
    `column`/`row` refer to the tile grid position (where applicable),
    `offset` to the pixel position of a sub-tile within its tile.
    """

    def __init__(
        self,
        data: numpy.ndarray,
        bounds: BoundingBox,
        time: TimeInterval,
        no_data_value: Optional[float] = None,
        column: Optional[int] = None,
        row: Optional[int] = None,
        offset: Sequence[int] = (0, 0),
    ):
        data = numpy.asarray(data)
        if data.ndim != 2:
            raise ValueError(f"Raster data must be 2-dimensional, but got shape {data.shape}")
        self.data = data
        self.bounds = bounds
        self.time = time
        self.no_data_value = no_data_value
        self.column = column
        self.row = row
        self.offset = tuple(offset)

    def __repr__(self):
        return f"<RasterTile {self.column},{self.row} shape={self.data.shape} offset={self.offset}>"

    @property
    def shape(self):
        return self.data.shape

    @property
    def resolution(self):
        height, width = self.data.shape
        return (self.bounds.width / width, self.bounds.height / height)

    def byte_size(self) -> int:
        return int(self.data.nbytes)

    def valid_mask(self) -> numpy.ndarray:
        mask = numpy.ones(self.data.shape, dtype=bool)
        if numpy.issubdtype(self.data.dtype, numpy.floating):
            mask &= ~numpy.isnan(self.data)
        if self.no_data_value is not None:
            mask &= self.data != self.no_data_value
        return mask

    def with_data(self, data: numpy.ndarray) -> "RasterTile":
        return RasterTile(
            data=data,
            bounds=self.bounds,
            time=self.time,
            no_data_value=self.no_data_value,
            column=self.column,
            row=self.row,
            offset=self.offset,
        )

    def sub_tile(self, y0: int, y1: int, x0: int, x1: int) -> "RasterTile":
        res_x, res_y = self.resolution
        west = self.bounds.west + x0 * res_x
        north = self.bounds.north - y0 * res_y
        return RasterTile(
            data=self.data[y0:y1, x0:x1],
            bounds=BoundingBox.from_wsen_tuple((west, north - (y1 - y0) * res_y, west + (x1 - x0) * res_x, north)),
            time=self.time,
            no_data_value=self.no_data_value,
            column=self.column,
            row=self.row,
            offset=(self.offset[0] + x0, self.offset[1] + y0),
        )

    def value_at(self, x: float, y: float) -> Optional[float]:
        """Pixel value at world coordinate (or None when outside or no-data)."""
        if not self.bounds.contains(x, y):
            return None
        res_x, res_y = self.resolution
        height, width = self.data.shape
        col = min(int((x - self.bounds.west) / res_x), width - 1)
        row = min(int((self.bounds.north - y) / res_y), height - 1)
        if not self.valid_mask()[row, col]:
            return None
        return self.data[row, col].item()

    def split_to_budget(self, budget: int) -> Iterator["RasterTile"]:
        """
        Split tile in sub-tiles (row bands, or row segments when a single row is too large)
        of at most `budget` bytes.
        """
        if self.byte_size() <= budget:
            yield self
            return
        height, width = self.data.shape
        pixel_size = self.data.itemsize
        if pixel_size > budget:
            raise ChunkTooLargeException(size=pixel_size, budget=budget)
        row_size = width * pixel_size
        if row_size <= budget:
            rows_per_chunk = budget // row_size
            for y in range(0, height, rows_per_chunk):
                yield self.sub_tile(y, min(y + rows_per_chunk, height), 0, width)
        else:
            pixels_per_chunk = budget // pixel_size
            for y in range(height):
                for x in range(0, width, pixels_per_chunk):
                    yield self.sub_tile(y, y + 1, x, min(x + pixels_per_chunk, width))

    def to_dict(self) -> dict:
        data = self.data.astype(float)
        values = numpy.where(self.valid_mask(), data, numpy.nan).tolist()
        return {
            "type": "RasterTile",
            "column": self.column,
            "row": self.row,
            "offset": list(self.offset),
            "bounds": self.bounds.to_dict(),
            "time": dict(zip(["start", "end"], self.time.to_iso_tuple())),
            "shape": list(self.data.shape),
            "noDataValue": self.no_data_value,
            "data": [[None if math.isnan(v) else v for v in row] for row in values],
        }


class PlotData:
    """Plot result: small JSON-able payload of a given plot type."""

    def __init__(self, plot_type: str, data: dict):
        self.plot_type = plot_type
        self.data = data

    def __repr__(self):
        return f"<PlotData {self.plot_type}>"

    def to_dict(self) -> dict:
        return {"type": "Plot", "plotType": self.plot_type, "data": self.data}

    def byte_size(self) -> int:
        return len(json.dumps(self.data, separators=(",", ":")).encode("utf-8"))

    def split_to_budget(self, budget: int) -> Iterator["PlotData"]:
        # A plot is an atomic unit
        size = self.byte_size()
        if size > budget:
            raise ChunkTooLargeException(size=size, budget=budget)
        yield self
