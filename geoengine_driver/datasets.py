"""
Dataset provider boundary: dataset references, dataset metadata
and the providers that resolve references to actual data.
"""
import abc
import dataclasses
import enum
import logging
import threading
import uuid
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

import numpy
import reretry
import requests
import requests.exceptions
import shapely.geometry

from geoengine_driver.datatypes import FeatureCollection, RasterTile
from geoengine_driver.errors import (
    DatasetNotFoundException,
    PermissionDeniedException,
    ProviderNotFoundException,
    ProviderUnavailableException,
)
from geoengine_driver.operators import OutputKind
from geoengine_driver.query import QueryContext
from geoengine_driver.users import User
from geoengine_driver.util.caching import TtlCache
from geoengine_driver.util.date_math import TimeInterval, TimeStep
from geoengine_driver.util.geometry import BoundingBox, SpatialReference

_log = logging.getLogger(__name__)

INTERNAL_PROVIDER_ID = "internal"


@dataclasses.dataclass(frozen=True)
class DatasetReference:
    """
    Reference to a dataset: either internal (`dataset_id` is a UUID)
    or external (dataset id within an external provider).
    """

    dataset_id: str
    provider_id: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        return self.provider_id is None

    @classmethod
    def from_dict(cls, d: dict) -> "DatasetReference":
        """
        Parse `{"type": "internal", "datasetId": <uuid>}`
        or `{"type": "external", "providerId": ..., "datasetId": ...}`.
        """
        if not isinstance(d, dict):
            raise ValueError(f"Invalid dataset reference {d!r}")
        ref_type = d.get("type", "external" if "providerId" in d else "internal")
        dataset_id = d.get("datasetId")
        if not isinstance(dataset_id, str) or not dataset_id:
            raise ValueError("Dataset reference requires a 'datasetId' string")
        if ref_type == "internal":
            try:
                uuid.UUID(dataset_id)
            except ValueError:
                raise ValueError(f"Internal dataset id must be a UUID, but got {dataset_id!r}") from None
            return cls(dataset_id=dataset_id)
        elif ref_type == "external":
            provider_id = d.get("providerId")
            if not isinstance(provider_id, str) or not provider_id:
                raise ValueError("External dataset reference requires a 'providerId' string")
            return cls(dataset_id=dataset_id, provider_id=provider_id)
        raise ValueError(f"Invalid dataset reference type {ref_type!r}")

    def to_dict(self) -> dict:
        if self.is_internal:
            return {"type": "internal", "datasetId": self.dataset_id}
        return {"type": "external", "providerId": self.provider_id, "datasetId": self.dataset_id}

    def __str__(self):
        return self.dataset_id if self.is_internal else f"{self.provider_id}:{self.dataset_id}"


@dataclasses.dataclass(frozen=True)
class RasterGrid:
    """Geo transform of a raster dataset: upper left origin, pixel size and shape (rows, columns)."""

    origin: Tuple[float, float]
    resolution: Tuple[float, float]
    shape: Tuple[int, int]

    @property
    def bounds(self) -> BoundingBox:
        west, north = self.origin
        return BoundingBox.from_wsen_tuple(
            (west, north - self.shape[0] * self.resolution[1], west + self.shape[1] * self.resolution[0], north)
        )

    def to_dict(self) -> dict:
        return {"origin": list(self.origin), "resolution": list(self.resolution), "shape": list(self.shape)}

    @classmethod
    def from_dict(cls, d: dict) -> "RasterGrid":
        return cls(origin=tuple(d["origin"]), resolution=tuple(d["resolution"]), shape=tuple(d["shape"]))


@dataclasses.dataclass(frozen=True)
class DatasetMetadata:
    output: OutputKind
    spatial_reference: SpatialReference
    # Vector: column name -> "number" | "text"
    columns: Dict[str, str] = dataclasses.field(default_factory=dict)
    # Raster
    grid: Optional[RasterGrid] = None
    no_data_value: Optional[float] = None
    time: Optional[TimeInterval] = None
    time_step: Optional[TimeStep] = None

    def to_dict(self) -> dict:
        d = {"type": self.output.value, "spatialReference": str(self.spatial_reference), "columns": self.columns}
        if self.grid:
            d["grid"] = self.grid.to_dict()
            d["noDataValue"] = self.no_data_value
        if self.time:
            d["time"] = self.time.to_dict()
        if self.time_step:
            d["timeStep"] = self.time_step.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "DatasetMetadata":
        return cls(
            output=OutputKind.parse(d["type"]),
            spatial_reference=SpatialReference.parse(d["spatialReference"]),
            columns=d.get("columns") or {},
            grid=RasterGrid.from_dict(d["grid"]) if d.get("grid") else None,
            no_data_value=d.get("noDataValue"),
            time=TimeInterval.parse(d["time"]) if d.get("time") else None,
            time_step=TimeStep.from_dict(d["timeStep"]) if d.get("timeStep") else None,
        )


class DatasetProvider(metaclass=abc.ABCMeta):
    """
    Resolves dataset references to dataset metadata and (lazily loaded) raw data chunks.

    `load` returns raw chunks in the dataset's own spatial reference:
    `FeatureCollection`s for vector datasets, `RasterTile`s for raster datasets.
    """

    @abc.abstractmethod
    def meta_data(self, reference: DatasetReference, user: Optional[User] = None) -> DatasetMetadata:
        ...

    @abc.abstractmethod
    def load(
        self, reference: DatasetReference, query: QueryContext, user: Optional[User] = None
    ) -> Iterator[Union[FeatureCollection, RasterTile]]:
        ...


class Permission(enum.Enum):
    OWNER = "Owner"
    READ = "Read"


class _InMemoryDataset:
    def __init__(
        self,
        meta: DatasetMetadata,
        features: Optional[FeatureCollection] = None,
        tiles: Optional[List[RasterTile]] = None,
    ):
        self.meta = meta
        self.features = features
        self.tiles = tiles or []
        # user id -> permission; no permissions at all: public dataset
        self.permissions: Dict[str, Permission] = {}


class InMemoryDatasetProvider(DatasetProvider):
    """
    Dataset provider with datasets kept in memory, with simple per-user permissions.
    Datasets without owner are public.
    """

    def __init__(self, batch_size: int = 1000):
        self._datasets: Dict[str, _InMemoryDataset] = {}
        self._batch_size = batch_size
        self._lock = threading.Lock()

    def add_vector_dataset(
        self,
        dataset_id: str,
        features: FeatureCollection,
        spatial_reference: SpatialReference,
        owner: Optional[str] = None,
    ) -> str:
        columns = {
            name: ("text" if any(isinstance(v, str) for v in values) else "number")
            for name, values in features.columns.items()
        }
        meta = DatasetMetadata(output=OutputKind.VECTOR, spatial_reference=spatial_reference, columns=columns)
        return self._add(dataset_id, _InMemoryDataset(meta=meta, features=features), owner=owner)

    def add_raster_dataset(
        self,
        dataset_id: str,
        data: numpy.ndarray,
        grid: RasterGrid,
        spatial_reference: SpatialReference,
        time: Optional[TimeInterval] = None,
        no_data_value: Optional[float] = None,
        time_step: Optional[TimeStep] = None,
        owner: Optional[str] = None,
    ) -> str:
        time = time or TimeInterval.unbounded()
        meta = DatasetMetadata(
            output=OutputKind.RASTER,
            spatial_reference=spatial_reference,
            grid=grid,
            no_data_value=no_data_value,
            time=time,
            time_step=time_step,
        )
        tile = RasterTile(data=numpy.asarray(data), bounds=grid.bounds, time=time, no_data_value=no_data_value)
        return self._add(dataset_id, _InMemoryDataset(meta=meta, tiles=[tile]), owner=owner)

    def _add(self, dataset_id: str, dataset: _InMemoryDataset, owner: Optional[str]) -> str:
        if owner:
            dataset.permissions[owner] = Permission.OWNER
        with self._lock:
            self._datasets[dataset_id] = dataset
        _log.info(f"Added {dataset.meta.output.value} dataset {dataset_id!r}")
        return dataset_id

    def add_permission(self, dataset_id: str, user_id: str, permission: Permission = Permission.READ, *, by: str):
        """Grant permission on a dataset (only allowed for its owner)."""
        dataset = self._get(dataset_id)
        if dataset.permissions.get(by) != Permission.OWNER:
            raise PermissionDeniedException(resource=dataset_id)
        with self._lock:
            dataset.permissions[user_id] = permission

    def list_permissions(self, dataset_id: str) -> Dict[str, Permission]:
        return dict(self._get(dataset_id).permissions)

    def _get(self, dataset_id: str) -> _InMemoryDataset:
        try:
            return self._datasets[dataset_id]
        except KeyError:
            raise DatasetNotFoundException(dataset=dataset_id) from None

    def _get_readable(self, reference: DatasetReference, user: Optional[User]) -> _InMemoryDataset:
        dataset = self._get(reference.dataset_id)
        if dataset.permissions and (user is None or user.user_id not in dataset.permissions):
            raise PermissionDeniedException(resource=str(reference))
        return dataset

    def meta_data(self, reference: DatasetReference, user: Optional[User] = None) -> DatasetMetadata:
        return self._get_readable(reference, user).meta

    def load(
        self, reference: DatasetReference, query: QueryContext, user: Optional[User] = None
    ) -> Iterator[Union[FeatureCollection, RasterTile]]:
        dataset = self._get_readable(reference, user)
        bounds = query.bounds.reproject(from_srs=query.spatial_reference, to_srs=dataset.meta.spatial_reference)
        if dataset.features is not None:
            features = dataset.features.clip(bounds=bounds, time=query.time)
            for start in range(0, len(features), self._batch_size):
                yield features.slice(start, start + self._batch_size)
        else:
            for tile in dataset.tiles:
                if tile.bounds.intersects_bbox(bounds) and tile.time.intersects(query.time):
                    yield tile


class HttpDatasetProvider(DatasetProvider):
    """
    Dataset provider backed by a remote HTTP (JSON) API:

    - `GET {url}/datasets/{id}`: dataset metadata
    - `GET {url}/datasets/{id}/features?bbox=&srs=&time=`: GeoJSON FeatureCollection pages (following "next" links)
    - `GET {url}/datasets/{id}/tiles?bbox=&srs=&time=`: raster tiles `{"tiles": [...], "next": ...}`

    Connection problems are retried (with `reretry`), server errors map to `ProviderUnavailable`.
    The id of the requesting user is sent along (`USER_HEADER`) so the provider can check access,
    and dataset metadata is cached per user for `metadata_ttl` seconds.
    """

    _REQUEST_TIMEOUT = 30

    USER_HEADER = "X-Geo-Engine-User"

    def __init__(
        self,
        provider_id: str,
        url: str,
        session: Optional[requests.Session] = None,
        retry_settings: Optional[dict] = None,
        metadata_ttl: float = 5 * 60,
    ):
        self.provider_id = provider_id
        self._url = url.rstrip("/")
        self._session = session or requests.Session()
        self._retry_settings = retry_settings or {"tries": 3, "delay": 1, "backoff": 2}
        self._metadata_cache = TtlCache(default_ttl=metadata_ttl)

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.provider_id!r} {self._url}>"

    def _get_json(
        self, url: str, params: Optional[dict] = None, *, reference: DatasetReference, user: Optional[User] = None
    ) -> dict:
        headers = {self.USER_HEADER: user.user_id} if user else {}
        try:
            response = reretry.retry_call(
                self._session.get,
                fkwargs=dict(url=url, params=params, headers=headers, timeout=self._REQUEST_TIMEOUT),
                exceptions=(requests.exceptions.ConnectionError, requests.exceptions.Timeout),
                logger=_log,
                **self._retry_settings,
            )
        except requests.exceptions.RequestException as e:
            _log.error(f"Dataset provider {self.provider_id!r} unavailable for {url!r}: {e!r}")
            raise ProviderUnavailableException(provider=self.provider_id, reason=str(e)) from e

        if response.status_code == 404:
            raise DatasetNotFoundException(dataset=str(reference))
        if response.status_code in (401, 403):
            raise PermissionDeniedException(resource=str(reference))
        if response.status_code >= 400:
            _log.error(f"Dataset provider {self.provider_id!r} error on {url!r}: {response.status_code}")
            raise ProviderUnavailableException(
                provider=self.provider_id, reason=f"Response status {response.status_code}"
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableException(provider=self.provider_id, reason="Invalid JSON response") from e

    def meta_data(self, reference: DatasetReference, user: Optional[User] = None) -> DatasetMetadata:
        # Access can differ per user: no sharing of cached metadata between users
        key = ("metadata", reference.dataset_id, user.user_id if user else None)
        return self._metadata_cache.get_or_call(key=key, callback=lambda: self._fetch_meta_data(reference, user=user))

    def _fetch_meta_data(self, reference: DatasetReference, user: Optional[User] = None) -> DatasetMetadata:
        data = self._get_json(f"{self._url}/datasets/{reference.dataset_id}", reference=reference, user=user)
        try:
            return DatasetMetadata.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailableException(provider=self.provider_id, reason=f"Invalid metadata: {e}") from e

    def load(
        self, reference: DatasetReference, query: QueryContext, user: Optional[User] = None
    ) -> Iterator[Union[FeatureCollection, RasterTile]]:
        meta = self.meta_data(reference, user=user)
        bounds = query.bounds.reproject(from_srs=query.spatial_reference, to_srs=meta.spatial_reference)
        params = {
            "bbox": ",".join(str(v) for v in bounds.as_wsen_tuple()),
            "srs": str(meta.spatial_reference),
            "time": str(query.time),
        }
        endpoint = "features" if meta.output == OutputKind.VECTOR else "tiles"
        url = f"{self._url}/datasets/{reference.dataset_id}/{endpoint}"
        while url:
            page = self._get_json(url, params=params, reference=reference, user=user)
            try:
                if meta.output == OutputKind.VECTOR:
                    yield self._parse_features(page, columns=meta.columns)
                else:
                    yield from (self._parse_tile(t, meta=meta) for t in page.get("tiles", []))
            except (KeyError, TypeError, ValueError) as e:
                raise ProviderUnavailableException(provider=self.provider_id, reason=f"Invalid data: {e}") from e
            # Follow pagination links (which already contain the query parameters)
            url, params = page.get("next"), None

    @staticmethod
    def _parse_features(page: dict, columns: Dict[str, str]) -> FeatureCollection:
        features = page.get("features", [])
        geometries = [shapely.geometry.shape(f["geometry"]) for f in features]
        times = []
        for f in features:
            properties = f.get("properties") or {}
            if properties.get("start") is not None:
                times.append(TimeInterval.from_values(properties["start"], properties.get("end")))
            else:
                times.append(TimeInterval.unbounded())
        column_values = {c: [(f.get("properties") or {}).get(c) for f in features] for c in columns}
        return FeatureCollection(geometries=geometries, time_intervals=times, columns=column_values)

    @staticmethod
    def _parse_tile(tile: dict, meta: DatasetMetadata) -> RasterTile:
        return RasterTile(
            data=numpy.array(tile["data"], dtype=float),
            bounds=BoundingBox.from_dict(tile["bounds"]),
            time=TimeInterval.parse(tile["time"]) if tile.get("time") else (meta.time or TimeInterval.unbounded()),
            no_data_value=tile.get("noDataValue", meta.no_data_value),
        )


class DatasetProviderRegistry:
    """Routes dataset references to the provider responsible for them."""

    def __init__(self, internal: Optional[DatasetProvider] = None):
        self._providers: Dict[str, DatasetProvider] = {}
        if internal is not None:
            self.register(INTERNAL_PROVIDER_ID, internal)

    def register(self, provider_id: str, provider: DatasetProvider):
        self._providers[provider_id] = provider

    def provider_ids(self) -> Set[str]:
        return set(self._providers.keys())

    def get(self, reference: DatasetReference) -> DatasetProvider:
        provider_id = INTERNAL_PROVIDER_ID if reference.is_internal else reference.provider_id
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFoundException(provider=provider_id) from None
