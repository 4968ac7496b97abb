from geoengine_driver.config.config import ConfigException, GeoEngineBackendConfig
from geoengine_driver.config.env import from_env, from_env_as_bool, from_env_as_float
from geoengine_driver.config.load import get_backend_config
