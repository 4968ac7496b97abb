"""
Raster operators: pixel-wise transformations and raster/vector joins.
"""
import contextlib
import logging
from typing import List, Optional

import numpy
import shapely

from geoengine_driver.datatypes import FeatureCollection, RasterTile
from geoengine_driver.errors import ParameterSchemaMismatchException
from geoengine_driver.operators import PARAM_ARRAY, PARAM_NUMBER, PARAM_STRING, OperatorArgs, OperatorSpec, OutputKind
from geoengine_driver.processing import operator
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.util.geometry import BoundingBox

_log = logging.getLogger(__name__)

RASTER_VECTOR_JOIN_MAX_RASTERS = 8

FEATURE_AGGREGATION_FIRST = "first"
FEATURE_AGGREGATION_MEAN = "mean"


@operator(
    OperatorSpec("LinearScale", output=OutputKind.RASTER, description="Scales pixel values: `value * scale + offset`.")
    .param("scale", PARAM_NUMBER, description="Multiplication factor.")
    .param("offset", PARAM_NUMBER, description="Value to add after scaling.", required=False)
    .source("raster", kinds=[OutputKind.RASTER])
)
def linear_scale(args: OperatorArgs, sources, query, env):
    scale = args.get_required("scale", param_type=PARAM_NUMBER)
    offset = args.get_optional("offset", default=0, param_type=PARAM_NUMBER)
    with contextlib.closing(sources["raster"].query(query)) as tiles:
        for tile in tiles:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            fill = numpy.nan if tile.no_data_value is None else tile.no_data_value
            scaled = numpy.where(tile.valid_mask(), tile.data.astype(float) * scale + offset, fill)
            yield tile.with_data(scaled)


def _check_names(args: OperatorArgs, source_kinds: dict):
    names = args.get("names") or []
    rasters = source_kinds.get("rasters") or []
    if len(names) != len(rasters):
        raise ParameterSchemaMismatchException(
            operator=args.operator,
            parameter="names",
            reason=f"Expected one name per raster ({len(rasters)}), but got {len(names)}.",
        )
    if len(set(names)) != len(names):
        raise ParameterSchemaMismatchException(operator=args.operator, parameter="names", reason="Duplicate names.")


@operator(
    OperatorSpec(
        "RasterVectorJoin",
        output=OutputKind.VECTOR,
        description="Adds a column per raster with the raster values at the features"
        " (pixel at points, pixels with center inside polygons).",
    )
    .param(
        "names",
        PARAM_ARRAY,
        description="New column name per raster.",
        validator=lambda names: all(isinstance(n, str) and n for n in names),
    )
    .param(
        "featureAggregation",
        PARAM_STRING,
        description="How to aggregate multiple values per feature: 'first' or 'mean'.",
        required=False,
        validator=lambda v: v in {FEATURE_AGGREGATION_FIRST, FEATURE_AGGREGATION_MEAN},
    )
    .source("vector", kinds=[OutputKind.VECTOR])
    .source("rasters", kinds=[OutputKind.RASTER], min_count=1, max_count=RASTER_VECTOR_JOIN_MAX_RASTERS)
    .check(_check_names)
)
def raster_vector_join(args: OperatorArgs, sources, query, env):
    names = args.get_required("names", param_type=PARAM_ARRAY)
    aggregation = args.get_enum(
        "featureAggregation",
        options=[FEATURE_AGGREGATION_FIRST, FEATURE_AGGREGATION_MEAN],
        default=FEATURE_AGGREGATION_FIRST,
    )
    with contextlib.closing(sources["vector"].query(query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            if collection.is_empty():
                continue
            # Rasters are queried again for the extent of each feature chunk
            raster_query = query.with_bounds(_enclosing_bounds(collection))
            for name, raster in zip(names, sources["rasters"]):
                with contextlib.closing(raster.query(raster_query)) as tile_stream:
                    tiles = list(tile_stream)
                values = [
                    _aggregate(_sample(tiles, geometry=g, time=t), aggregation=aggregation)
                    for g, t in zip(collection.geometries, collection.time_intervals)
                ]
                collection = collection.with_column(name, values)
            yield collection


def _enclosing_bounds(collection: FeatureCollection) -> BoundingBox:
    """Bounds of all features, slightly padded so that a single point still covers an area."""
    west, south, east, north = (float(v) for v in shapely.total_bounds(collection.geometries))
    pad = max(abs(west), abs(south), abs(east), abs(north), 1.0) * 1e-9
    return BoundingBox.from_wsen_tuple((west - pad, south - pad, east + pad, north + pad))


def _sample(tiles: List[RasterTile], geometry, time: TimeInterval) -> List[float]:
    values = []
    for tile in tiles:
        if not tile.time.intersects(time) or not tile.bounds.intersects_geometry(geometry):
            continue
        if geometry.geom_type in ("Polygon", "MultiPolygon"):
            height, width = tile.shape
            res_x, res_y = tile.resolution
            xs = tile.bounds.west + (numpy.arange(width) + 0.5) * res_x
            ys = tile.bounds.north - (numpy.arange(height) + 0.5) * res_y
            grid_x, grid_y = numpy.meshgrid(xs, ys)
            inside = shapely.contains_xy(geometry, grid_x, grid_y) & tile.valid_mask()
            values.extend(tile.data[inside].astype(float).tolist())
        else:
            for x, y in shapely.get_coordinates(geometry):
                value = tile.value_at(float(x), float(y))
                if value is not None:
                    values.append(value)
    return values


def _aggregate(values: List[float], aggregation: str) -> Optional[float]:
    if not values:
        return None
    if aggregation == FEATURE_AGGREGATION_MEAN:
        return float(numpy.mean(values))
    return values[0]
