"""
Fixed raster tile grid, anchored at an origin, used to decompose raster queries into tiles.
"""
import dataclasses
import math
from typing import Iterator, Optional, Tuple

from geoengine_driver.util.geometry import BoundingBox, SpatialReference


@dataclasses.dataclass(frozen=True)
class GridBounds:
    """Pixel bounds in the (global) pixel grid: `[x_min, x_max) x [y_min, y_max)`, y growing southwards."""

    x_min: int
    y_min: int
    x_max: int
    y_max: int

    @property
    def width(self) -> int:
        return self.x_max - self.x_min

    @property
    def height(self) -> int:
        return self.y_max - self.y_min

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclasses.dataclass(frozen=True)
class Tile:
    column: int
    row: int
    pixel_bounds: GridBounds
    world_bounds: BoundingBox

    def to_dict(self) -> dict:
        return {
            "column": self.column,
            "row": self.row,
            "pixelBounds": self.pixel_bounds.to_dict(),
            "worldBounds": self.world_bounds.to_dict(),
        }


@dataclasses.dataclass(frozen=True)
class TilingSpecification:
    """
    Raster tile grid definition: world origin of the grid
    and tile shape in pixels.
    Tile columns grow towards positive x, tile rows towards negative y (north-up).
    """

    origin_x: float = 0.0
    origin_y: float = 0.0
    tile_width_pixels: int = 512
    tile_height_pixels: int = 512

    def __post_init__(self):
        if self.tile_width_pixels <= 0 or self.tile_height_pixels <= 0:
            raise ValueError(f"Invalid tile shape {self.tile_width_pixels}x{self.tile_height_pixels}")

    @classmethod
    def from_dict(cls, d: dict) -> "TilingSpecification":
        return cls(
            origin_x=float(d.get("originX", d.get("origin_x", 0.0))),
            origin_y=float(d.get("originY", d.get("origin_y", 0.0))),
            tile_width_pixels=int(d.get("tileWidthPixels", d.get("tile_width_pixels", 512))),
            tile_height_pixels=int(d.get("tileHeightPixels", d.get("tile_height_pixels", 512))),
        )

    def to_dict(self) -> dict:
        return {
            "originX": self.origin_x,
            "originY": self.origin_y,
            "tileWidthPixels": self.tile_width_pixels,
            "tileHeightPixels": self.tile_height_pixels,
        }

    def tile_world_size(self, resolution: Tuple[float, float] = (1.0, 1.0)) -> Tuple[float, float]:
        return self.tile_width_pixels * resolution[0], self.tile_height_pixels * resolution[1]

    def tile(self, column: int, row: int, resolution: Tuple[float, float] = (1.0, 1.0)) -> Tile:
        tile_w, tile_h = self.tile_world_size(resolution)
        west = self.origin_x + column * tile_w
        north = self.origin_y - row * tile_h
        return Tile(
            column=column,
            row=row,
            pixel_bounds=GridBounds(
                x_min=column * self.tile_width_pixels,
                y_min=row * self.tile_height_pixels,
                x_max=(column + 1) * self.tile_width_pixels,
                y_max=(row + 1) * self.tile_height_pixels,
            ),
            world_bounds=BoundingBox.from_wsen_tuple((west, north - tile_h, west + tile_w, north)),
        )

    def tiles_covering(
        self,
        bbox: BoundingBox,
        spatial_reference: Optional[SpatialReference] = None,
        resolution: Tuple[float, float] = (1.0, 1.0),
    ) -> "TileSequence":
        """
        Tiles of the grid that intersect given bounding box (expressed in `spatial_reference`).

        :param resolution: world units per pixel (x, y)
        """
        return TileSequence(spec=self, bbox=bbox, spatial_reference=spatial_reference, resolution=resolution)


class TileSequence:
    """Finite, re-iterable sequence of the tiles covering a bounding box."""

    def __init__(
        self,
        spec: TilingSpecification,
        bbox: BoundingBox,
        spatial_reference: Optional[SpatialReference],
        resolution: Tuple[float, float],
    ):
        if resolution[0] <= 0 or resolution[1] <= 0:
            raise ValueError(f"Invalid resolution {resolution}")
        self.spec = spec
        self.bbox = bbox
        self.spatial_reference = spatial_reference
        self.resolution = resolution
        self._columns, self._rows = self._ranges()

    def _ranges(self) -> Tuple[range, range]:
        if self.bbox.is_empty():
            return range(0), range(0)
        tile_w, tile_h = self.spec.tile_world_size(self.resolution)
        col_min = math.floor((self.bbox.west - self.spec.origin_x) / tile_w)
        col_max = math.ceil((self.bbox.east - self.spec.origin_x) / tile_w)
        row_min = math.floor((self.spec.origin_y - self.bbox.north) / tile_h)
        row_max = math.ceil((self.spec.origin_y - self.bbox.south) / tile_h)
        return range(col_min, col_max), range(row_min, row_max)

    def __iter__(self) -> Iterator[Tile]:
        for row in self._rows:
            for column in self._columns:
                yield self.spec.tile(column=column, row=row, resolution=self.resolution)

    def __len__(self) -> int:
        return len(self._columns) * len(self._rows)

    def __repr__(self):
        return f"<TileSequence {len(self._columns)}x{len(self._rows)} tiles>"
