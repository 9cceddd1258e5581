from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Tuple

TILE_SIZE = 256
MIN_ZOOM = 0
MAX_ZOOM = 23
QUADTREE_MAX_LEVEL = 30

# Each tile family keeps the circumference constant its provider uses.
MERCATOR_EQUATOR = 40075016.685578
PLATE_CARREE_EQUATOR = 40075016.686
MERCATOR_LATITUDE_LIMIT = 85.051129

SUBINDEX_MAX_SIZE = 4


@dataclass(frozen=True)
class BoundingBox:
    """Geographic extent in WGS84 degrees."""

    south: float
    west: float
    north: float
    east: float

    def validate(self) -> None:
        if self.north <= self.south:
            raise ValueError("North latitude must be greater than south latitude.")
        if self.east <= self.west:
            raise ValueError("East longitude must be greater than west longitude.")
        if self.north > 90.0 or self.south < -90.0:
            raise ValueError("Latitudes must be within -90 and 90 degrees.")
        if self.east > 180.0 or self.west < -180.0:
            raise ValueError("Longitudes must be within -180 and 180 degrees.")

    @property
    def center(self) -> Tuple[float, float]:
        return (self.south + self.north) / 2, (self.west + self.east) / 2

    def sample_points(self) -> List[Tuple[float, float]]:
        """Return the centre followed by the NW, NE, SW and SE quadrant centres."""

        lat_quarter = (self.north - self.south) * 0.25
        lon_quarter = (self.east - self.west) * 0.25
        return [
            self.center,
            (self.north - lat_quarter, self.west + lon_quarter),
            (self.north - lat_quarter, self.east - lon_quarter),
            (self.south + lat_quarter, self.west + lon_quarter),
            (self.south + lat_quarter, self.east - lon_quarter),
        ]


@dataclass(frozen=True)
class XYZTile:
    """Standard Web-Mercator tile; row 0 is the northern edge."""

    column: int
    row: int
    zoom: int


@dataclass(frozen=True)
class QuadtreeTile:
    """Plate-Carrée quadtree tile; row 0 is the southern edge."""

    column: int
    row: int
    zoom: int

    def __post_init__(self) -> None:
        if not 0 <= self.zoom <= QUADTREE_MAX_LEVEL:
            raise ValueError(f"Quadtree level must be between 0 and {QUADTREE_MAX_LEVEL}.")
        count = 1 << self.zoom
        if not (0 <= self.row < count and 0 <= self.column < count):
            raise ValueError(f"Row/column out of range for level {self.zoom}.")

    @property
    def path(self) -> str:
        chars: List[str] = []
        row, column = self.row, self.column
        for _ in range(self.zoom + 1):
            row_bit = row & 1
            column_bit = column & 1
            row >>= 1
            column >>= 1
            chars.append(str((row_bit << 1) | (row_bit ^ column_bit)))
        return "".join(reversed(chars))

    @classmethod
    def from_path(cls, path: str) -> "QuadtreeTile":
        if not path or path[0] != "0":
            raise ValueError("Quadtree path must start with '0'.")
        row = column = 0
        for char in path:
            if char not in "0123":
                raise ValueError(f"Invalid quadtree path character: {char!r}")
            cell = int(char)
            row_bit = cell >> 1
            column_bit = row_bit ^ (cell & 1)
            row = (row << 1) | row_bit
            column = (column << 1) | column_bit
        return cls(column=column, row=row, zoom=len(path) - 1)

    def bounds(self) -> Tuple[float, float, float, float]:
        """Return ``(south, west, north, east)`` in degrees."""

        return (
            _quadtree_degrees(self.row, self.zoom),
            _quadtree_degrees(self.column, self.zoom),
            _quadtree_degrees(self.row + 1, self.zoom),
            _quadtree_degrees(self.column + 1, self.zoom),
        )

    def center(self) -> Tuple[float, float]:
        return (
            _quadtree_degrees(self.row + 0.5, self.zoom),
            _quadtree_degrees(self.column + 0.5, self.zoom),
        )


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(value, maximum))


def _quadtree_degrees(index: float, zoom: int) -> float:
    return index / float(1 << zoom) * 360.0 - 180.0


def validate_zoom(zoom: int, *, maximum: int = MAX_ZOOM) -> None:
    if not MIN_ZOOM <= zoom <= maximum:
        raise ValueError(f"Zoom level must be between {MIN_ZOOM} and {maximum}.")


# WGS84 <-> Web Mercator


def latlon_to_mercator(lat: float, lon: float) -> Tuple[float, float]:
    lat = max(-MERCATOR_LATITUDE_LIMIT, min(lat, MERCATOR_LATITUDE_LIMIT))
    x = lon / 360.0 * MERCATOR_EQUATOR
    y = math.log(math.tan(math.pi / 4 + math.radians(lat) / 2)) / (2 * math.pi) * MERCATOR_EQUATOR
    return x, y


def mercator_to_latlon(x: float, y: float) -> Tuple[float, float]:
    lon = x / MERCATOR_EQUATOR * 360.0
    lat = math.degrees(math.atan(math.sinh(y / MERCATOR_EQUATOR * 2 * math.pi)))
    return lat, lon


# Web-Mercator XYZ grid


def latlon_to_xyz_fraction(lat: float, lon: float, zoom: int) -> Tuple[float, float]:
    """Return fractional ``(column, row)`` of a coordinate on the XYZ grid."""

    x, y = latlon_to_mercator(lat, lon)
    count = float(1 << zoom)
    return (0.5 + x / MERCATOR_EQUATOR) * count, (0.5 - y / MERCATOR_EQUATOR) * count


def xyz_fraction_to_latlon(column: float, row: float, zoom: int) -> Tuple[float, float]:
    return mercator_to_latlon(*xyz_to_mercator(column, row, zoom))


def xyz_tile_for_coordinate(lat: float, lon: float, zoom: int) -> XYZTile:
    column_f, row_f = latlon_to_xyz_fraction(lat, lon, zoom)
    limit = (1 << zoom) - 1
    return XYZTile(
        column=_clamp(int(column_f), 0, limit),
        row=_clamp(int(row_f), 0, limit),
        zoom=zoom,
    )


def xyz_to_mercator(column: float, row: float, zoom: int) -> Tuple[float, float]:
    """Web-Mercator metres of a (possibly fractional) XYZ grid position."""

    count = float(1 << zoom)
    return (column / count - 0.5) * MERCATOR_EQUATOR, (0.5 - row / count) * MERCATOR_EQUATOR


def xyz_tile_center_mercator(tile: XYZTile) -> Tuple[float, float]:
    return xyz_to_mercator(tile.column + 0.5, tile.row + 0.5, tile.zoom)


def xyz_tiles_in_bounds(bbox: BoundingBox, zoom: int) -> List[XYZTile]:
    top_left = xyz_tile_for_coordinate(bbox.north, bbox.west, zoom)
    bottom_right = xyz_tile_for_coordinate(bbox.south, bbox.east, zoom)
    return [
        XYZTile(column=column, row=row, zoom=zoom)
        for row in range(top_left.row, bottom_right.row + 1)
        for column in range(top_left.column, bottom_right.column + 1)
    ]


# Plate-Carrée quadtree grid


def latlon_to_quadtree_fraction(lat: float, lon: float, zoom: int) -> Tuple[float, float]:
    """Return fractional ``(column, row)`` on the quadtree grid."""

    count = float(1 << zoom)
    return (lon + 180.0) / 360.0 * count, (lat + 180.0) / 360.0 * count


def quadtree_fraction_to_latlon(column: float, row: float, zoom: int) -> Tuple[float, float]:
    return _quadtree_degrees(row, zoom), _quadtree_degrees(column, zoom)


def quadtree_tile_for_coordinate(lat: float, lon: float, zoom: int) -> QuadtreeTile:
    column_f, row_f = latlon_to_quadtree_fraction(lat, lon, zoom)
    limit = (1 << zoom) - 1
    return QuadtreeTile(
        column=_clamp(int(column_f), 0, limit),
        row=_clamp(int(row_f), 0, limit),
        zoom=zoom,
    )


def quadtree_tiles_in_bounds(bbox: BoundingBox, zoom: int) -> List[QuadtreeTile]:
    south_west = quadtree_tile_for_coordinate(bbox.south, bbox.west, zoom)
    north_east = quadtree_tile_for_coordinate(bbox.north, bbox.east, zoom)
    return [
        QuadtreeTile(column=column, row=row, zoom=zoom)
        for row in range(south_west.row, north_east.row + 1)
        for column in range(south_west.column, north_east.column + 1)
    ]


def quadtree_to_mercator(row: int, column: int, zoom: int) -> Tuple[float, float]:
    """Web-Mercator metres of a quadtree grid corner, clamping latitude at the poles."""

    lat, lon = quadtree_fraction_to_latlon(column, row, zoom)
    lat = max(-MERCATOR_LATITUDE_LIMIT, min(lat, MERCATOR_LATITUDE_LIMIT))
    x = lon * PLATE_CARREE_EQUATOR / 360.0
    y = PLATE_CARREE_EQUATOR * math.log(math.tan(math.pi / 4 + math.radians(lat) / 2)) / (2 * math.pi)
    return x, y


def quadtree_to_xyz(tile: QuadtreeTile) -> XYZTile:
    """Flip the row axis so quadtree tiles can be written to a z/x/y directory layout."""

    return XYZTile(column=tile.column, row=(1 << tile.zoom) - 1 - tile.row, zoom=tile.zoom)


# Packet addressing


def root_subindex(path: str) -> int:
    subindex = 0
    for char in path[1:]:
        subindex = subindex * SUBINDEX_MAX_SIZE + int(char) + 1
    return subindex


def tree_subindex(path: str) -> int:
    return root_subindex(path) + int(path[0]) * 85 + 1


def subindex(path: str) -> int:
    """Index of the node for ``path`` inside the packet that stores it."""

    if len(path) <= SUBINDEX_MAX_SIZE:
        return root_subindex(path)
    start = (len(path) - 1) // SUBINDEX_MAX_SIZE * SUBINDEX_MAX_SIZE
    return tree_subindex(path[start:])


def traversal_paths(path: str) -> List[str]:
    return [path[:end] for end in range(SUBINDEX_MAX_SIZE, len(path), SUBINDEX_MAX_SIZE)]


# Reprojection of quadtree imagery onto XYZ tiles


def mercator_tile_bounds(tile: XYZTile) -> Tuple[float, float, float, float]:
    """Return ``(south, west, north, east)`` of an XYZ tile in degrees."""

    north, west = xyz_fraction_to_latlon(tile.column, tile.row, tile.zoom)
    south, east = xyz_fraction_to_latlon(tile.column + 1, tile.row + 1, tile.zoom)
    return south, west, north, east


def pixel_to_latlon(tile: XYZTile, px: int, py: int, tile_size: int = TILE_SIZE) -> Tuple[float, float]:
    return xyz_fraction_to_latlon(
        tile.column + (px + 0.5) / tile_size,
        tile.row + (py + 0.5) / tile_size,
        tile.zoom,
    )


def latlon_to_quadtree_pixel(
    lat: float, lon: float, zoom: int, tile_size: int = TILE_SIZE
) -> Tuple[int, int, int, int]:
    """Locate ``(row, column, px, py)`` of a coordinate inside a quadtree tile image."""

    column_f, row_f = latlon_to_quadtree_fraction(lat, lon, zoom)
    limit = (1 << zoom) - 1
    row = _clamp(int(row_f), 0, limit)
    column = _clamp(int(column_f), 0, limit)
    px = _clamp(int((column_f - column) * tile_size), 0, tile_size - 1)
    # Image rows grow downward while quadtree rows grow northward.
    py = _clamp(int((1 - (row_f - row)) * tile_size), 0, tile_size - 1)
    return row, column, px, py


def quadtree_tiles_for_xyz(tile: XYZTile) -> List[QuadtreeTile]:
    south, west, north, east = mercator_tile_bounds(tile)
    return quadtree_tiles_in_bounds(BoundingBox(south=south, west=west, north=north, east=east), tile.zoom)


# Output naming


def quadkey_for_bbox(bbox: BoundingBox, zoom: int) -> str:
    lat, lon = bbox.center
    count = 1 << zoom
    x = int((lon + 180.0) / 360.0 * count)
    lat_rad = math.radians(lat)
    y = int((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * count)
    digits: List[str] = []
    for level in range(zoom, 0, -1):
        mask = 1 << (level - 1)
        digit = 0
        if x & mask:
            digit += 1
        if y & mask:
            digit += 2
        digits.append(str(digit))
    return "".join(digits)


def _sanitize_coordinate(value: float, *, is_lat: bool) -> str:
    if is_lat:
        suffix = "S" if value < 0 else "N"
    else:
        suffix = "W" if value < 0 else "E"
    return f"{abs(value):.4f}".replace(".", "p", 1) + suffix


def geotiff_filename(source: str, date: str, bbox: BoundingBox, zoom: int) -> str:
    quadkey = quadkey_for_bbox(bbox, zoom)
    extent = "{}-{}_{}-{}".format(
        _sanitize_coordinate(bbox.south, is_lat=True),
        _sanitize_coordinate(bbox.north, is_lat=True),
        _sanitize_coordinate(bbox.west, is_lat=False),
        _sanitize_coordinate(bbox.east, is_lat=False),
    )
    return f"{source}_{date}_{quadkey}_z{zoom}_{extent}.tif"


def tiles_dirname(source: str, date: str, zoom: int) -> str:
    return f"{source}_{date}_z{zoom}_tiles"
