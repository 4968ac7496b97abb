"""
Lazy loading of the backend config from a Python file:
the one pointed to by the `GEOENGINE_BACKEND_CONFIG` env var, or `default.py` next to this module.
"""
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from geoengine_driver.config.config import ConfigException, GeoEngineBackendConfig

_log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).with_name("default.py")


def load_from_py_file(
    path: Union[str, Path],
    variable: str = "config",
    expected_class: Optional[type] = GeoEngineBackendConfig,
) -> Any:
    """Execute a Python file and return the value of given (module level) variable."""
    path = Path(path)
    namespace = {"__file__": str(path)}
    exec(compile(path.read_bytes(), str(path), "exec"), namespace)

    if variable not in namespace:
        raise ConfigException(f"No variable {variable!r} found in config file {str(path)!r}")
    config = namespace[variable]
    if expected_class and not isinstance(config, expected_class):
        raise ConfigException(f"Expected {expected_class.__name__} but got {type(config).__name__}")
    return config


class ConfigGetter:
    """Loads the config on first use, and again after `flush()` or with `force_reload`."""

    GEOENGINE_BACKEND_CONFIG = "GEOENGINE_BACKEND_CONFIG"

    expected_class = GeoEngineBackendConfig

    def __init__(self):
        self._config: Optional[GeoEngineBackendConfig] = None

    def get(self, force_reload: bool = False) -> GeoEngineBackendConfig:
        if self._config is None or force_reload:
            path = os.environ.get(self.GEOENGINE_BACKEND_CONFIG) or DEFAULT_CONFIG_PATH
            self._config = load_from_py_file(path, variable="config", expected_class=self.expected_class)
            _log.info(f"Loaded config {getattr(self._config, 'id', None)!r} from {str(path)!r}")
        return self._config

    def flush(self):
        self._config = None


_backend_config_getter = ConfigGetter()

get_backend_config = _backend_config_getter.get
