"""
Plot operators: aggregate a whole (vector or raster) result into a single plot chunk.
"""
import contextlib
import logging
import math
from typing import Iterator, Optional, Tuple

import numpy

from geoengine_driver.datatypes import FeatureCollection, PlotData, RasterTile
from geoengine_driver.errors import ParameterSchemaMismatchException
from geoengine_driver.operators import PARAM_INTEGER, PARAM_OBJECT, PARAM_STRING, OperatorArgs, OperatorSpec, OutputKind
from geoengine_driver.processing import operator

_log = logging.getLogger(__name__)


def _validate_bounds(bounds: dict) -> bool:
    low, high = bounds.get("min"), bounds.get("max")
    for v in (low, high):
        if not isinstance(v, (int, float)) or isinstance(v, bool) or not math.isfinite(v):
            raise ValueError(f"Expected numeric 'min' and 'max', but got {bounds!r}.")
    if low > high:
        raise ValueError(f"Minimum {low} is larger than maximum {high}.")
    return True


def _check_column_name(args: OperatorArgs, source_kinds: dict):
    kind = source_kinds.get("source")
    if kind == OutputKind.VECTOR and args.get("columnName") is None:
        raise ParameterSchemaMismatchException(
            operator=args.operator, parameter="columnName", reason="Required for vector sources."
        )
    if kind == OutputKind.RASTER and args.get("columnName") is not None:
        raise ParameterSchemaMismatchException(
            operator=args.operator, parameter="columnName", reason="Not supported for raster sources."
        )


def _numeric_values(collection: FeatureCollection, column: str):
    """Numeric values of a column (and the number of missing values)."""
    if column not in collection.columns:
        raise ParameterSchemaMismatchException(
            operator="Histogram", parameter="columnName", reason=f"Unknown column {column!r}."
        )
    values = []
    missing = 0
    for v in collection.columns[column]:
        if v is None or (isinstance(v, float) and math.isnan(v)):
            missing += 1
        elif isinstance(v, (int, float)) and not isinstance(v, bool):
            values.append(float(v))
        else:
            raise ParameterSchemaMismatchException(
                operator="Histogram", parameter="columnName", reason=f"Column {column!r} is not numeric."
            )
    return numpy.array(values, dtype=float), missing


@operator(
    OperatorSpec("Histogram", output=OutputKind.PLOT, description="Histogram of raster values or of a vector column.")
    .param("buckets", PARAM_INTEGER, description="Number of buckets.", validator=lambda b: b >= 1)
    .param("columnName", PARAM_STRING, description="Column to use (vector sources only).", required=False)
    .param(
        "bounds",
        PARAM_OBJECT,
        description="Value range {min, max}; derived from the data when omitted.",
        required=False,
        validator=_validate_bounds,
    )
    .source("source", kinds=[OutputKind.RASTER, OutputKind.VECTOR])
    .check(_check_column_name)
)
def histogram(args: OperatorArgs, sources, query, env):
    buckets = args.get_required("buckets", param_type=PARAM_INTEGER)
    column = args.get_optional("columnName")
    bounds = args.get_optional("bounds")

    no_data_count = 0
    total = 0
    if bounds:
        # Fixed range: only the bucket counts are kept while streaming
        low, high = bounds["min"], bounds["max"]
        counts = numpy.zeros(buckets, dtype=int)
        edges = numpy.histogram_bin_edges(numpy.empty(0), bins=buckets, range=(low, high))
        for values, missing in _source_values(sources["source"], query=query, env=env, column=column):
            counts += numpy.histogram(values, bins=buckets, range=(low, high))[0]
            no_data_count += missing
            total += values.size
    else:
        chunks = []
        for values, missing in _source_values(sources["source"], query=query, env=env, column=column):
            chunks.append(values)
            no_data_count += missing
        values = numpy.concatenate(chunks) if chunks else numpy.empty(0)
        if not values.size:
            yield PlotData("Histogram", {"min": None, "max": None, "buckets": [], "noDataCount": no_data_count})
            return
        low, high = float(values.min()), float(values.max())
        counts, edges = numpy.histogram(values, bins=buckets, range=(low, high))
        total = values.size

    _log.debug(f"Histogram of {total} values in [{low}, {high}]")
    yield PlotData(
        "Histogram",
        {
            "min": low,
            "max": high,
            "buckets": [
                {"min": float(edges[i]), "max": float(edges[i + 1]), "count": int(counts[i])} for i in range(buckets)
            ],
            "noDataCount": no_data_count,
        },
    )


def _source_values(source, query, env, column: Optional[str]) -> Iterator[Tuple[numpy.ndarray, int]]:
    """Valid values and no-data count, per chunk of the source."""
    with contextlib.closing(source.query(query)) as stream:
        for chunk in stream:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            if isinstance(chunk, RasterTile):
                valid = chunk.valid_mask()
                yield chunk.data[valid].astype(float), int((~valid).sum())
            elif not chunk.is_empty():
                yield _numeric_values(chunk, column=column)


@operator(
    OperatorSpec("FeatureCount", output=OutputKind.PLOT, description="Number of features.")
    .source("vector", kinds=[OutputKind.VECTOR])
)
def feature_count(args: OperatorArgs, sources, query, env):
    count = 0
    with contextlib.closing(sources["vector"].query(query)) as collections:
        for collection in collections:
            query.cancellation.raise_if_cancelled(env.workflow_id)
            count += len(collection)
    yield PlotData("FeatureCount", {"count": count})
