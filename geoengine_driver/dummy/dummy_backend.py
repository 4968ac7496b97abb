"""
Dummy backend implementation with a couple of small in-memory datasets,
for testing and local development.
"""
import logging
from typing import Optional

import numpy
import shapely.geometry

from geoengine_driver.backend import GeoEngineBackendImplementation, build_dataset_providers
from geoengine_driver.config import GeoEngineBackendConfig, get_backend_config
from geoengine_driver.datasets import InMemoryDatasetProvider, RasterGrid
from geoengine_driver.datatypes import FeatureCollection
from geoengine_driver.util.date_math import TimeGranularity, TimeInterval, TimeStep
from geoengine_driver.util.geometry import SpatialReference

_log = logging.getLogger(__name__)

PORTS_DATASET_ID = "5a6b9a7e-2d6c-4a8f-9d0e-0c8a4b0d7f01"
REGIONS_DATASET_ID = "9c1f5c2e-7e3b-4b9a-8a55-3f1e6d2c4b02"
NDVI_DATASET_ID = "e1a4d3c2-6b5f-4e8d-a9c7-1b2d3e4f5a03"
PRIVATE_DATASET_ID = "0f9e8d7c-6b5a-4c3d-8e2f-1a0b9c8d7e04"

PRIVATE_DATASET_OWNER = "alice2000"

NDVI_TIME = TimeInterval.from_values("2014-01-01T00:00:00Z", "2015-01-01T00:00:00Z")
NDVI_DATA = [
    [1, 2, 3, 4],
    [5, 6, 7, 8],
    [9, 10, 0, 12],
    [13, 14, 15, 16],
]


def build_dummy_datasets() -> InMemoryDatasetProvider:
    wgs84 = SpatialReference.epsg_4326()
    datasets = InMemoryDatasetProvider()
    datasets.add_vector_dataset(
        PORTS_DATASET_ID,
        features=FeatureCollection(
            geometries=[
                shapely.geometry.Point(10.0, 53.5),
                shapely.geometry.Point(4.5, 51.9),
                shapely.geometry.Point(4.4, 51.2),
                shapely.geometry.Point(5.4, 43.3),
            ],
            columns={
                "name": ["Hamburg", "Rotterdam", "Antwerp", "Marseille"],
                "population": [1800000, 650000, 530000, None],
            },
        ),
        spatial_reference=wgs84,
    )
    datasets.add_vector_dataset(
        REGIONS_DATASET_ID,
        features=FeatureCollection(
            geometries=[shapely.geometry.box(3.0, 50.0, 6.0, 53.0)],
            columns={"name": ["Benelux"]},
        ),
        spatial_reference=wgs84,
    )
    datasets.add_raster_dataset(
        NDVI_DATASET_ID,
        data=numpy.array(NDVI_DATA, dtype=float),
        grid=RasterGrid(origin=(0.0, 4.0), resolution=(1.0, 1.0), shape=(4, 4)),
        spatial_reference=wgs84,
        time=NDVI_TIME,
        no_data_value=0,
        time_step=TimeStep(granularity=TimeGranularity.MONTHS, step=6),
    )
    datasets.add_vector_dataset(
        PRIVATE_DATASET_ID,
        features=FeatureCollection(geometries=[shapely.geometry.Point(1.0, 1.0)], columns={"secret": [42]}),
        spatial_reference=wgs84,
        owner=PRIVATE_DATASET_OWNER,
    )
    return datasets


class DummyBackendImplementation(GeoEngineBackendImplementation):
    def __init__(self, config: Optional[GeoEngineBackendConfig] = None):
        config = config or get_backend_config()
        super().__init__(
            datasets=build_dataset_providers(config, internal=build_dummy_datasets()),
            config=config,
        )

    def health_check(self, options: Optional[dict] = None) -> dict:
        mode = (options or {}).get("mode", "basic")
        return {"mode": mode, "status": "OK", "datasets": sorted(self.datasets.provider_ids())}
