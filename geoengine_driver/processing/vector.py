"""
Vector operators: attribute and spatial filters on feature collections.
"""
import contextlib
import logging
import math
from typing import Any, List, Sequence

import numpy
import shapely

from geoengine_driver.datatypes import FeatureCollection
from geoengine_driver.errors import ParameterSchemaMismatchException
from geoengine_driver.operators import PARAM_ARRAY, PARAM_BOOLEAN, PARAM_STRING, OperatorSpec, OutputKind
from geoengine_driver.processing import operator

_log = logging.getLogger(__name__)


def _is_null(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_ranges(ranges: list) -> bool:
    """Ranges are inclusive `[min, max]` pairs of numbers or of strings."""
    for r in ranges:
        if not isinstance(r, list) or len(r) != 2:
            raise ValueError(f"Expected a [min, max] pair, but got {r!r}.")
        low, high = r
        if not (all(_is_numeric(v) for v in r) or all(isinstance(v, str) for v in r)):
            raise ValueError(f"Range bounds must both be numbers or both be strings, but got {r!r}.")
        if low > high:
            raise ValueError(f"Range minimum {low!r} is larger than maximum {high!r}.")
    return True


def _in_range(value: Any, low: Any, high: Any) -> bool:
    if isinstance(value, str) != isinstance(low, str):
        return False
    return low <= value <= high


def column_range_mask(values: Sequence[Any], ranges: Sequence[Sequence[Any]], keep_nulls: bool) -> List[bool]:
    return [keep_nulls if _is_null(v) else any(_in_range(v, low, high) for low, high in ranges) for v in values]


def filter_by_column(
    collection: FeatureCollection, column: str, ranges: Sequence[Sequence[Any]], keep_nulls: bool, operator: str
) -> FeatureCollection:
    """Keep features with a value of `column` in one of the (inclusive) ranges."""
    if collection.is_empty():
        return collection
    if column not in collection.columns:
        raise ParameterSchemaMismatchException(
            operator=operator, parameter="column", reason=f"Unknown column {column!r}."
        )
    return collection.filter(column_range_mask(collection.columns[column], ranges=ranges, keep_nulls=keep_nulls))


@operator(
    OperatorSpec(
        "ColumnRangeFilter",
        output=OutputKind.VECTOR,
        description="Keeps the features whose column value lies within one of the given (inclusive) ranges.",
    )
    .param("column", PARAM_STRING, description="Name of the column to filter on.")
    .param("ranges", PARAM_ARRAY, description="List of [min, max] pairs.", validator=validate_ranges)
    .param("keepNulls", PARAM_BOOLEAN, description="Keep features without a value.", required=False)
    .source("vector", kinds=[OutputKind.VECTOR])
)
def column_range_filter(args, sources, query, env):
    column = args.get_required("column", param_type=PARAM_STRING)
    ranges = args.get_required("ranges", validator=validate_ranges)
    keep_nulls = args.get_optional("keepNulls", default=False, param_type=PARAM_BOOLEAN)
    with contextlib.closing(sources["vector"].query(query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            yield filter_by_column(
                collection, column=column, ranges=ranges, keep_nulls=keep_nulls, operator="ColumnRangeFilter"
            )


@operator(
    OperatorSpec(
        "PointInPolygonFilter",
        output=OutputKind.VECTOR,
        description="Keeps the (multi)point features of which a point lies inside (or on the border of) a polygon.",
    )
    .source("points", kinds=[OutputKind.VECTOR])
    .source("polygons", kinds=[OutputKind.VECTOR])
)
def point_in_polygon_filter(args, sources, query, env):
    tree = None
    with contextlib.closing(sources["points"].query(query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            if collection.is_empty():
                continue
            if tree is None:
                # Polygons are only loaded once there are points to test
                tree = shapely.STRtree(_load_geometries(sources["polygons"], query=query, workflow_id=env.workflow_id))
            # Index pairs (point feature, polygon) of intersecting geometries
            hits, _ = tree.query(collection.geometries, predicate="intersects")
            mask = numpy.zeros(len(collection), dtype=bool)
            mask[numpy.asarray(hits, dtype=int)] = True
            yield collection.filter(mask.tolist())


def _load_geometries(source, query, workflow_id: str) -> list:
    geometries = []
    with contextlib.closing(source.query(query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(workflow_id)
            geometries.extend(collection.geometries)
    _log.debug(f"Loaded {len(geometries)} polygons for point in polygon test")
    return geometries
