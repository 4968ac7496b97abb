from geoengine_driver.config import GeoEngineBackendConfig
from geoengine_driver.tiling import TilingSpecification


def _valid_basic_auth(username: str, password: str) -> bool:
    # Next generation password scheme!!1!
    if username[:1].lower() in "aeiou":
        return password == f"{username.lower()}123"
    else:
        return password == f"{username.upper()}!!!"


config = GeoEngineBackendConfig(
    id="geoengine-driver-dummy",
    title="Dummy Geo Engine",
    backend_version="1.2.3-foo",
    # Small tiles, to get multiple tiles from small test rasters
    tiling_specification=TilingSpecification(origin_x=0.0, origin_y=0.0, tile_width_pixels=4, tile_height_pixels=4),
    enable_basic_auth=True,
    valid_basic_auth=_valid_basic_auth,
)
