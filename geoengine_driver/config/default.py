from geoengine_driver.config import GeoEngineBackendConfig

config = GeoEngineBackendConfig(
    id="geoengine-default",
)
