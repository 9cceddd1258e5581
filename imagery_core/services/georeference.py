from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Tuple, Union

from PIL import Image, TiffImagePlugin, TiffTags

from .tiles import TILE_SIZE, QuadtreeTile, XYZTile, quadtree_to_mercator, xyz_to_mercator

logger = logging.getLogger(__name__)

SCHEME_XYZ = "xyz"
SCHEME_QUADTREE = "quadtree"

TAG_IMAGE_DESCRIPTION = 270
TAG_DATETIME = 306
TAG_MODEL_PIXEL_SCALE = 33550
TAG_MODEL_TIEPOINT = 33922
TAG_GEO_KEY_DIRECTORY = 34735

# GeoKey directory: version 1.1.0 with three keys; projected model, pixel-is-area
# raster and EPSG:3857 as the projected CRS.
GEO_KEY_DIRECTORY: Tuple[int, ...] = (
    1, 1, 0, 3,
    1024, 0, 1, 1,
    1025, 0, 1, 1,
    3072, 0, 1, 3857,
)


@dataclass(frozen=True)
class TileGrid:
    """Inclusive row/column extent of a tile set in one addressing scheme."""

    scheme: str
    zoom: int
    min_column: int
    max_column: int
    min_row: int
    max_row: int

    @classmethod
    def covering(cls, scheme: str, zoom: int, coordinates: Iterable[Tuple[int, int]]) -> "TileGrid":
        """Build the grid for ``(column, row)`` pairs."""

        columns, rows = zip(*coordinates)
        if scheme not in {SCHEME_XYZ, SCHEME_QUADTREE}:
            raise ValueError(f"Unsupported tile scheme: {scheme}")
        return cls(
            scheme=scheme,
            zoom=zoom,
            min_column=min(columns),
            max_column=max(columns),
            min_row=min(rows),
            max_row=max(rows),
        )

    @property
    def columns(self) -> int:
        return self.max_column - self.min_column + 1

    @property
    def rows(self) -> int:
        return self.max_row - self.min_row + 1

    @property
    def pixel_size(self) -> Tuple[int, int]:
        return self.columns * TILE_SIZE, self.rows * TILE_SIZE

    def offset(self, column: int, row: int) -> Tuple[int, int]:
        x = (column - self.min_column) * TILE_SIZE
        if self.scheme == SCHEME_XYZ:
            y = (row - self.min_row) * TILE_SIZE
        else:
            # Quadtree rows count from the south, so the highest row is painted first.
            y = (self.max_row - row) * TILE_SIZE
        return x, y

    def mercator_extent(self) -> Tuple[float, float, float, float]:
        """Return ``(origin_x, origin_y, end_x, end_y)``; the origin is the north-west corner."""

        if self.scheme == SCHEME_XYZ:
            origin_x, origin_y = xyz_to_mercator(self.min_column, self.min_row, self.zoom)
            end_x, end_y = xyz_to_mercator(self.max_column + 1, self.max_row + 1, self.zoom)
        else:
            origin_x, origin_y = quadtree_to_mercator(self.max_row + 1, self.min_column, self.zoom)
            end_x, end_y = quadtree_to_mercator(self.min_row, self.max_column + 1, self.zoom)
        return origin_x, origin_y, end_x, end_y

    def geotransform(self) -> Tuple[float, float, float, float]:
        """Return ``(origin_x, origin_y, scale_x, scale_y)`` for the full canvas."""

        width, height = self.pixel_size
        origin_x, origin_y, end_x, end_y = self.mercator_extent()
        return origin_x, origin_y, (end_x - origin_x) / width, (origin_y - end_y) / height


class Mosaic:
    """RGBA canvas that tiles are pasted into as they arrive; gaps stay transparent."""

    def __init__(self, grid: TileGrid) -> None:
        self.grid = grid
        self.image = Image.new("RGBA", grid.pixel_size, (0, 0, 0, 0))
        self.pasted = 0

    def paste(self, tile: Union[XYZTile, QuadtreeTile], payload: bytes) -> bool:
        try:
            with Image.open(io.BytesIO(payload)) as tile_image:
                rgba = tile_image.convert("RGBA")
        except OSError as exc:
            logger.warning("Skipping undecodable tile %s/%s: %s", tile.column, tile.row, exc)
            return False
        if rgba.size != (TILE_SIZE, TILE_SIZE):
            rgba = rgba.resize((TILE_SIZE, TILE_SIZE), Image.LANCZOS)
        self.image.paste(rgba, self.grid.offset(tile.column, tile.row))
        self.pasted += 1
        return True


def write_geotiff(
    image: Image.Image,
    output_path: Path,
    transform: Tuple[float, float, float, float],
    *,
    description: str = "",
    date: datetime | None = None,
) -> Path:
    """Save ``image`` as an uncompressed GeoTIFF in EPSG:3857.

    ``transform`` is ``(origin_x, origin_y, scale_x, scale_y)`` as returned by
    :meth:`TileGrid.geotransform`.
    """

    origin_x, origin_y, scale_x, scale_y = transform

    ifd = TiffImagePlugin.ImageFileDirectory_v2()
    ifd[TAG_MODEL_TIEPOINT] = (0.0, 0.0, 0.0, origin_x, origin_y, 0.0)
    ifd.tagtype[TAG_MODEL_TIEPOINT] = TiffTags.DOUBLE
    ifd[TAG_MODEL_PIXEL_SCALE] = (scale_x, scale_y, 0.0)
    ifd.tagtype[TAG_MODEL_PIXEL_SCALE] = TiffTags.DOUBLE
    ifd[TAG_GEO_KEY_DIRECTORY] = GEO_KEY_DIRECTORY
    ifd.tagtype[TAG_GEO_KEY_DIRECTORY] = TiffTags.SHORT
    if description:
        ifd[TAG_IMAGE_DESCRIPTION] = description
    ifd[TAG_DATETIME] = (date or datetime.now()).strftime("%Y:%m:%d %H:%M:%S")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    image.save(output_path, format="TIFF", tiffinfo=ifd, compression=None)
    logger.info(
        "Wrote GeoTIFF %s (%dx%d, origin %.2f, %.2f)",
        output_path,
        image.width,
        image.height,
        origin_x,
        origin_y,
    )
    return output_path


def write_png_copy(image: Image.Image, geotiff_path: Path) -> Path:
    png_path = geotiff_path.with_suffix(".png")
    image.save(png_path, format="PNG")
    return png_path
