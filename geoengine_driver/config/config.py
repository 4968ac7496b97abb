import logging
import os
from typing import Callable, Optional, Tuple

import attrs

import geoengine_driver
from geoengine_driver.config.env import from_env, from_env_as_bool, from_env_as_float
from geoengine_driver.tiling import TilingSpecification
from geoengine_driver.utils import build_deploy_metadata

_log = logging.getLogger(__name__)

# Handling of unknown config arguments: "strict" (fail), "ignore" or log a warning (default)
CONFIG_STRICTNESS_MODE = "GEOENGINE_CONFIG_STRICTNESS_MODE"


class ConfigException(ValueError):
    pass


_positive = attrs.validators.gt(0)


# `kw_only`: keyword based construction only.
# `init=False`: custom `__init__` below, which filters unknown arguments before `__attrs_init__`.
@attrs.frozen(kw_only=True, init=False)
class GeoEngineBackendConfig:
    """
    Configuration for the Geo Engine backend.
    """

    # identifier for this config
    id: Optional[str] = None

    # Generic indicator describing the environment the code is deployed in
    # (e.g. "prod", "dev", "staging", "test", ...)
    deploy_env: str = attrs.field(factory=from_env("GEOENGINE_DEPLOY_ENV", default="dev"))

    title: str = "Geo Engine"
    backend_version: str = geoengine_driver.__version__
    # Deploy info (build date and package versions), listed in the capabilities
    deploy_metadata: Optional[dict] = attrs.Factory(build_deploy_metadata)

    # Raster tile grid (origin and tile shape in pixels)
    tiling_specification: TilingSpecification = attrs.Factory(TilingSpecification)

    # Default byte budget of a single streamed chunk
    query_chunk_byte_size: int = attrs.field(default=1048576, validator=_positive)

    # Maximum nesting depth of submitted operator trees
    workflow_max_depth: int = attrs.field(default=64, validator=_positive)

    # Bound on concurrent (in-flight) dataset provider requests
    provider_max_concurrent_requests: int = attrs.field(default=8, validator=_positive)
    # Seconds to wait for a free provider slot before failing with `ProviderUnavailable`
    provider_request_timeout: float = attrs.field(
        factory=from_env_as_float("GEOENGINE_PROVIDER_REQUEST_TIMEOUT", default=30.0)
    )
    # External HTTP dataset providers: provider id -> base URL
    http_dataset_providers: dict = attrs.Factory(dict)
    # Retry settings for HTTP dataset providers (`reretry.retry_call` kwargs)
    provider_retry_settings: dict = attrs.Factory(lambda: dict(tries=3, delay=1, backoff=2))

    # Time interval used for OGC requests without explicit time
    ogc_default_time: Tuple[str, str] = ("2014-01-01T00:00:00Z", "2014-01-01T00:00:00Z")
    # Default feature limit of WFS requests (`None`: unlimited)
    wfs_default_limit: Optional[int] = None
    # Maximum number of tiles in a single WCS response
    wcs_tile_limit: int = attrs.field(default=4, validator=_positive)

    # Sessions
    anonymous_access: bool = True
    fixed_session_token: Optional[str] = None
    session_ttl: float = 60 * 60

    enable_basic_auth: bool = False
    # `valid_basic_auth`: function that takes a username and password and returns a boolean indicating if password is correct.
    valid_basic_auth: Optional[Callable[[str, str], bool]] = None

    # Logging
    log_to_file: bool = attrs.field(factory=from_env_as_bool("GEOENGINE_LOG_TO_FILE", default=False))
    log_file_prefix: str = "geo_engine"
    log_dir: Optional[str] = attrs.field(factory=from_env("GEOENGINE_LOG_DIR"))

    # General Flask related settings
    # (e.g. see https://flask.palletsprojects.com/en/2.3.x/config/#builtin-configuration-values)
    flask_settings: dict = attrs.Factory(
        lambda: {
            "MAX_CONTENT_LENGTH": 1024 * 1024,  # bytes
        }
    )

    def __init__(self, **kwargs):
        supported = {a.alias for a in attrs.fields(type(self))}
        unknown = sorted(k for k in kwargs if k not in supported)
        if unknown:
            strictness_mode = os.environ.get(CONFIG_STRICTNESS_MODE)
            if strictness_mode == "strict":
                raise ConfigException(f"Invalid config arguments: {unknown}")
            elif strictness_mode != "ignore":
                _log.warning(f"Ignoring invalid config arguments: {unknown}")
        self.__attrs_init__(**{k: v for k, v in kwargs.items() if k in supported})
