"""
Source operators: mock data sources (data inlined in the parameters)
and dataset backed vector/raster sources.
"""
import contextlib
import logging
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import numpy
import shapely.geometry

from geoengine_driver.datasets import DatasetReference, RasterGrid
from geoengine_driver.datatypes import FeatureCollection, RasterTile
from geoengine_driver.errors import InvalidQueryParameterException
from geoengine_driver.operators import (
    PARAM_ARRAY,
    PARAM_DATASET,
    PARAM_NUMBER,
    PARAM_STRING,
    OperatorArgs,
    OperatorSpec,
    OutputKind,
)
from geoengine_driver.processing import operator
from geoengine_driver.processing.vector import filter_by_column, validate_ranges
from geoengine_driver.query import QueryContext
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.util.geometry import BoundingBox, SpatialReference, geometry_from_json

_log = logging.getLogger(__name__)

# Coordinates of mock data are WGS84 unless specified otherwise
MOCK_SPATIAL_REFERENCE = "EPSG:4326"


def _is_numeric(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_points(points: list) -> bool:
    for p in points:
        if not (isinstance(p, dict) and _is_numeric(p.get("x")) and _is_numeric(p.get("y"))):
            raise ValueError(f"Expected a coordinate {{'x': .., 'y': ..}}, but got {p!r}.")
    return True


def _validate_features(features: list) -> bool:
    for f in features:
        if not isinstance(f, dict) or "geometry" not in f:
            raise ValueError(f"Expected a feature object with a 'geometry', but got {f!r}.")
        geometry_from_json(f["geometry"])
        if f.get("time") is not None:
            TimeInterval.parse(f["time"])
        if not isinstance(f.get("properties") or {}, dict):
            raise ValueError(f"Feature properties must be an object, but got {f['properties']!r}.")
    return True


def _validate_pair(value: list) -> bool:
    return len(value) == 2 and all(_is_numeric(v) for v in value)


def _validate_raster_data(data: list) -> bool:
    if not data or not all(isinstance(row, list) and row for row in data):
        raise ValueError("Expected a non-empty 2-dimensional array.")
    if len(set(len(row) for row in data)) != 1:
        raise ValueError("All rows must have the same length.")
    if not all(v is None or _is_numeric(v) for row in data for v in row):
        raise ValueError("Raster values must be numbers (or null).")
    return True


def _validate_attribute_filters(filters: list) -> bool:
    for f in filters:
        if not isinstance(f, dict) or not isinstance(f.get("attribute"), str):
            raise ValueError(f"Expected an attribute filter with 'attribute', but got {f!r}.")
        if not isinstance(f.get("ranges"), list):
            raise ValueError(f"Attribute filter on {f['attribute']!r} requires a list of 'ranges'.")
        validate_ranges(f["ranges"])
    return True


def _to_query(collection: FeatureCollection, spatial_reference: SpatialReference, query: QueryContext):
    """Reproject features to the query's spatial reference and clip them to its bounds and time."""
    collection = collection.reproject(from_srs=spatial_reference, to_srs=query.spatial_reference)
    return collection.clip(bounds=query.bounds, time=query.time)


def _check_raster_query(spatial_reference: SpatialReference, query: QueryContext):
    """Raster tiles are not reprojected: the query must use the spatial reference of the data."""
    if spatial_reference != query.spatial_reference:
        raise InvalidQueryParameterException(
            parameter="srs",
            reason=f"Raster data in {spatial_reference} can not be queried in {query.spatial_reference}.",
        )


def _check_mock_raster_query(args: OperatorArgs, query: QueryContext, env):
    spatial_reference = SpatialReference.parse(args.get_optional("spatialReference", default=MOCK_SPATIAL_REFERENCE))
    _check_raster_query(spatial_reference, query)


def _check_raster_dataset_query(args: OperatorArgs, query: QueryContext, env):
    reference = DatasetReference.from_dict(args.get_required("dataset"))
    meta = env.dataset_meta(reference, cancellation=query.cancellation)
    if meta.grid is None:
        raise InvalidQueryParameterException(parameter="dataset", reason=f"Raster dataset {reference} has no grid.")
    _check_raster_query(meta.spatial_reference, query)


@operator(
    OperatorSpec("MockPointSource", output=OutputKind.VECTOR, description="Point features from a list of coordinates.")
    .param("points", PARAM_ARRAY, description="List of {x, y} coordinates (EPSG:4326).", validator=_validate_points)
)
def mock_point_source(args, sources, query, env):
    points = args.get_required("points")
    collection = FeatureCollection(geometries=[shapely.geometry.Point(p["x"], p["y"]) for p in points])
    yield _to_query(collection, SpatialReference.parse(MOCK_SPATIAL_REFERENCE), query)


@operator(
    OperatorSpec(
        "MockFeatureCollectionSource",
        output=OutputKind.VECTOR,
        description="Features (geometry, optional time and properties) inlined in the parameters.",
    )
    .param(
        "features",
        PARAM_ARRAY,
        description="List of {geometry, time?, properties?} objects (EPSG:4326).",
        validator=_validate_features,
    )
)
def mock_feature_collection_source(args, sources, query, env):
    features = args.get_required("features")
    columns: List[str] = []
    for f in features:
        columns.extend(k for k in (f.get("properties") or {}) if k not in columns)
    collection = FeatureCollection(
        geometries=[geometry_from_json(f["geometry"]) for f in features],
        time_intervals=[
            TimeInterval.parse(f["time"]) if f.get("time") is not None else TimeInterval.unbounded() for f in features
        ],
        columns={c: [(f.get("properties") or {}).get(c) for f in features] for c in columns},
    )
    yield _to_query(collection, SpatialReference.parse(MOCK_SPATIAL_REFERENCE), query)


@operator(
    OperatorSpec("MockRasterSource", output=OutputKind.RASTER, description="Raster data inlined in the parameters.")
    .param(
        "data", PARAM_ARRAY, description="2-dimensional array of pixel values (rows).", validator=_validate_raster_data
    )
    .param("origin", PARAM_ARRAY, description="Upper left corner [x, y].", required=False, validator=_validate_pair)
    .param("resolution", PARAM_ARRAY, description="Pixel size [x, y].", required=False, validator=_validate_pair)
    .param("noDataValue", PARAM_NUMBER, description="Pixel value to ignore.", required=False)
    .param("time", PARAM_STRING, description="Validity as 'start/end'.", required=False, validator=TimeInterval.parse)
    .param(
        "spatialReference",
        PARAM_STRING,
        description="Spatial reference of the data.",
        required=False,
        validator=SpatialReference.parse,
    )
    .query_check(_check_mock_raster_query)
)
def mock_raster_source(args, sources, query, env):
    no_data_value = args.get_optional("noDataValue", param_type=PARAM_NUMBER)
    fill = numpy.nan if no_data_value is None else no_data_value
    data = numpy.array(
        [[fill if v is None else v for v in row] for row in args.get_required("data")], dtype=float
    )
    grid = RasterGrid(
        origin=tuple(args.get_optional("origin", default=[0.0, float(data.shape[0])])),
        resolution=tuple(args.get_optional("resolution", default=[1.0, 1.0])),
        shape=data.shape,
    )
    time = TimeInterval.parse(args.get_optional("time", default=lambda: TimeInterval.unbounded()))
    tile = RasterTile(data=data, bounds=grid.bounds, time=time, no_data_value=no_data_value)

    def fetch(tile_query: QueryContext) -> Iterator[RasterTile]:
        if tile.bounds.intersects_bbox(tile_query.bounds) and tile.time.intersects(tile_query.time):
            yield tile

    yield from tiled_raster(
        query=query,
        env=env,
        spatial_reference=SpatialReference.parse(args.get_optional("spatialReference", default=MOCK_SPATIAL_REFERENCE)),
        grid=grid,
        no_data_value=no_data_value,
        time_slices=[time] if time.intersects(query.time) else [],
        fetch=fetch,
    )


@operator(
    OperatorSpec("VectorSource", output=OutputKind.VECTOR, description="Loads features of a vector dataset.")
    .param("dataset", PARAM_DATASET, description="Dataset reference.", validator=DatasetReference.from_dict)
    .param(
        "attributeFilters",
        PARAM_ARRAY,
        description="List of {attribute, ranges, keepNulls?} filters applied while loading.",
        required=False,
        validator=_validate_attribute_filters,
    )
)
def vector_source(args: OperatorArgs, sources, query, env):
    reference = DatasetReference.from_dict(args.get_required("dataset"))
    attribute_filters = args.get_optional("attributeFilters", default=[])
    meta = env.dataset_meta(reference, cancellation=query.cancellation)
    with contextlib.closing(env.load_dataset(reference, query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            collection = _to_query(collection, meta.spatial_reference, query)
            for f in attribute_filters:
                collection = filter_by_column(
                    collection,
                    column=f["attribute"],
                    ranges=f["ranges"],
                    keep_nulls=f.get("keepNulls", False),
                    operator="VectorSource",
                )
            yield collection


@operator(
    OperatorSpec("RasterSource", output=OutputKind.RASTER, description="Loads a raster dataset as grid aligned tiles.")
    .param("dataset", PARAM_DATASET, description="Dataset reference.", validator=DatasetReference.from_dict)
    .query_check(_check_raster_dataset_query)
)
def raster_source(args: OperatorArgs, sources, query, env):
    reference = DatasetReference.from_dict(args.get_required("dataset"))
    meta = env.dataset_meta(reference, cancellation=query.cancellation)
    data_time = meta.time or TimeInterval.unbounded()
    window = data_time.intersection(query.time)
    if window is None:
        time_slices = []
    elif meta.time_step and meta.time_step.step > 0:
        time_slices = list(meta.time_step.slices(reference=data_time.start, interval=window))
    else:
        time_slices = [data_time]

    yield from tiled_raster(
        query=query,
        env=env,
        spatial_reference=meta.spatial_reference,
        grid=meta.grid,
        no_data_value=meta.no_data_value,
        time_slices=time_slices,
        fetch=lambda tile_query: env.load_dataset(reference, tile_query),
    )


def tiled_raster(
    query: QueryContext,
    env,
    spatial_reference: SpatialReference,
    grid: RasterGrid,
    no_data_value: Optional[float],
    time_slices: Iterable[TimeInterval],
    fetch: Callable[[QueryContext], Iterator[RasterTile]],
) -> Iterator[RasterTile]:
    """
    Produce the tiles (of the tiling specification) covering the query bounds,
    per time slice, filled from the raw tiles that `fetch` returns for each tile query.
    The query's spatial reference is expected to match the data (see `_check_raster_query`).
    """
    resolution = query.resolution or grid.resolution
    area = query.bounds.intersection(grid.bounds)
    if area is None or area.is_empty():
        return
    tiles = env.tiling.tiles_covering(area, spatial_reference=spatial_reference, resolution=resolution)
    fill = numpy.nan if no_data_value is None else no_data_value
    for time in time_slices:
        for tile in tiles:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            data = numpy.full((tile.pixel_bounds.height, tile.pixel_bounds.width), fill, dtype=float)
            with contextlib.closing(fetch(query.with_bounds(tile.world_bounds).with_time(time))) as raw_tiles:
                for raw in raw_tiles:
                    blit(data, bounds=tile.world_bounds, resolution=resolution, source=raw)
            yield RasterTile(
                data=data,
                bounds=tile.world_bounds,
                time=time,
                no_data_value=no_data_value,
                column=tile.column,
                row=tile.row,
            )


def blit(target: numpy.ndarray, bounds: BoundingBox, resolution: Tuple[float, float], source: RasterTile):
    """
    Copy the valid pixels of `source` into the overlapping part of `target`
    (with given world bounds and resolution), sampling at target pixel centers.
    """
    height, width = target.shape
    res_x, res_y = resolution
    src_res_x, src_res_y = source.resolution
    xs = bounds.west + (numpy.arange(width) + 0.5) * res_x
    ys = bounds.north - (numpy.arange(height) + 0.5) * res_y
    cols = numpy.floor((xs - source.bounds.west) / src_res_x).astype(int)
    rows = numpy.floor((source.bounds.north - ys) / src_res_y).astype(int)
    src_height, src_width = source.shape
    col_ok = (cols >= 0) & (cols < src_width)
    row_ok = (rows >= 0) & (rows < src_height)
    if not col_ok.any() or not row_ok.any():
        return
    src_index = numpy.ix_(rows[row_ok], cols[col_ok])
    target_index = numpy.ix_(numpy.nonzero(row_ok)[0], numpy.nonzero(col_ok)[0])
    valid = source.valid_mask()[src_index]
    target[target_index] = numpy.where(valid, source.data[src_index], target[target_index])
