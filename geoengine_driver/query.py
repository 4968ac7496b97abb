"""
Query context: the spatial-temporal envelope (and resource budget)
under which a workflow is executed.
"""
import logging
import threading
from typing import Optional, Sequence, Tuple, Union

from geoengine_driver.errors import ExecutionCancelledException, InvalidQueryParameterException
from geoengine_driver.util.date_math import TimeInterval, TimeIntervalException
from geoengine_driver.util.geometry import (
    BoundingBox,
    BoundingBoxException,
    SpatialReference,
    SpatialReferenceException,
)

_log = logging.getLogger(__name__)

DEFAULT_CHUNK_BYTE_BUDGET = 1048576


class CancellationToken:
    """Thread safe flag to signal cancellation of an in-flight execution."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Wait (at most `timeout` seconds) for cancellation. Returns whether cancelled."""
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self, workflow_id: str = "n/a"):
        if self._event.is_set():
            raise ExecutionCancelledException(workflow_id=workflow_id)


class QueryContext:
    """
    Ephemeral execution envelope: bounds (in `spatial_reference`), time interval,
    chunk byte budget and optional feature limit.
    """

    def __init__(
        self,
        bounds: BoundingBox,
        spatial_reference: SpatialReference,
        time: TimeInterval,
        chunk_byte_budget: int = DEFAULT_CHUNK_BYTE_BUDGET,
        limit: Optional[int] = None,
        resolution: Optional[Tuple[float, float]] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        if not isinstance(chunk_byte_budget, int) or isinstance(chunk_byte_budget, bool) or chunk_byte_budget <= 0:
            raise InvalidQueryParameterException(parameter="chunkByteBudget", reason="Must be a positive integer.")
        if limit is not None and (not isinstance(limit, int) or limit < 0):
            raise InvalidQueryParameterException(parameter="limit", reason="Must be a non-negative integer.")
        self.bounds = bounds
        self.spatial_reference = spatial_reference
        self.time = time
        self.chunk_byte_budget = chunk_byte_budget
        self.limit = limit
        self.resolution = resolution
        self.cancellation = cancellation or CancellationToken()

    def __repr__(self):
        return (
            f"<QueryContext {self.bounds.as_wsen_tuple()} {self.spatial_reference} {self.time}"
            f" budget={self.chunk_byte_budget} limit={self.limit}>"
        )

    @classmethod
    def from_request(
        cls,
        bbox: Union[str, Sequence[float], BoundingBox, None],
        srs: Union[str, int, SpatialReference, None] = None,
        time: Union[str, Sequence, TimeInterval, None] = None,
        limit: Union[str, int, None] = None,
        chunk_byte_budget: Union[str, int, None] = None,
        *,
        default_time: Optional[TimeInterval] = None,
        default_chunk_byte_budget: int = DEFAULT_CHUNK_BYTE_BUDGET,
        resolution: Union[str, Sequence[float], None] = None,
    ) -> "QueryContext":
        """
        Build query context from (raw) request parameters, validating all of them
        before anything is executed. Invalid values are never swapped or clamped.

        :param bbox: "minx,miny,maxx,maxy" string (optionally followed by a CRS identifier) or 4-sequence
        :param srs: spatial reference identifier (e.g. "EPSG:4326"), defaults to the CRS in `bbox` or EPSG:4326
        :param time: ISO 8601 instant or "start/end" interval
        """
        bounds, bbox_srs = _parse_bbox(bbox)

        srs = srs if srs not in (None, "") else bbox_srs
        if srs in (None, ""):
            spatial_reference = SpatialReference.epsg_4326()
        else:
            try:
                spatial_reference = SpatialReference.parse(srs)
            except SpatialReferenceException as e:
                raise InvalidQueryParameterException(parameter="srs", reason=str(e)) from e

        if time in (None, ""):
            if default_time is None:
                raise InvalidQueryParameterException(parameter="time", reason="Missing time interval.")
            interval = default_time
        else:
            try:
                interval = TimeInterval.parse(time)
            except TimeIntervalException as e:
                raise InvalidQueryParameterException(parameter="time", reason=str(e)) from e

        return cls(
            bounds=bounds,
            spatial_reference=spatial_reference,
            time=interval,
            chunk_byte_budget=_parse_int(
                chunk_byte_budget, name="chunkByteBudget", default=default_chunk_byte_budget, minimum=1
            ),
            limit=_parse_int(limit, name="limit", default=None, minimum=0),
            resolution=_parse_resolution(resolution),
        )

    def with_bounds(self, bounds: BoundingBox) -> "QueryContext":
        """Derived context (sharing cancellation token) with other bounds."""
        return QueryContext(
            bounds=bounds,
            spatial_reference=self.spatial_reference,
            time=self.time,
            chunk_byte_budget=self.chunk_byte_budget,
            limit=self.limit,
            resolution=self.resolution,
            cancellation=self.cancellation,
        )

    def with_time(self, time: TimeInterval) -> "QueryContext":
        """Derived context (sharing cancellation token) with other time interval."""
        return QueryContext(
            bounds=self.bounds,
            spatial_reference=self.spatial_reference,
            time=time,
            chunk_byte_budget=self.chunk_byte_budget,
            limit=self.limit,
            resolution=self.resolution,
            cancellation=self.cancellation,
        )

    def to_dict(self) -> dict:
        return {
            "bbox": self.bounds.to_dict(),
            "srs": str(self.spatial_reference),
            "time": str(self.time),
            "chunkByteBudget": self.chunk_byte_budget,
            "limit": self.limit,
        }


def _parse_bbox(bbox) -> Tuple[BoundingBox, Optional[str]]:
    if isinstance(bbox, BoundingBox):
        return bbox, None
    if bbox is None or bbox == "":
        raise InvalidQueryParameterException(parameter="bbox", reason="Missing bounding box.")
    srs = None
    try:
        if isinstance(bbox, str):
            parts = [p.strip() for p in bbox.split(",")]
            if len(parts) == 5:
                # WFS 2.0 style trailing CRS
                srs = parts.pop()
            values = [float(p) for p in parts]
        elif isinstance(bbox, dict):
            return BoundingBox.from_dict(bbox), None
        else:
            values = [float(v) for v in bbox]
        return BoundingBox.from_wsen_tuple(values), srs
    except (BoundingBoxException, ValueError, TypeError) as e:
        raise InvalidQueryParameterException(parameter="bbox", reason=str(e)) from e


def _parse_int(value, name: str, default: Optional[int], minimum: int) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ValueError(value)
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidQueryParameterException(parameter=name, reason=f"Expected an integer, but got {value!r}.")
    if parsed < minimum:
        raise InvalidQueryParameterException(parameter=name, reason=f"Must be at least {minimum}, but got {parsed}.")
    return parsed


def _parse_resolution(value) -> Optional[Tuple[float, float]]:
    if value is None or value == "":
        return None
    try:
        if isinstance(value, str):
            value = [float(v) for v in value.split(",")]
        if len(value) == 1:
            value = [value[0], value[0]]
        x, y = (float(v) for v in value)
    except (TypeError, ValueError) as e:
        raise InvalidQueryParameterException(parameter="resolution", reason=str(e)) from e
    if not (x > 0 and y > 0):
        raise InvalidQueryParameterException(parameter="resolution", reason="Must be positive.")
    return x, y
