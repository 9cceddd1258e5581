import math

import pytest

from imagery_core.services.tiles import (
    MERCATOR_EQUATOR,
    BoundingBox,
    QuadtreeTile,
    XYZTile,
    geotiff_filename,
    latlon_to_mercator,
    latlon_to_quadtree_fraction,
    latlon_to_quadtree_pixel,
    mercator_to_latlon,
    quadtree_fraction_to_latlon,
    quadtree_tile_for_coordinate,
    quadtree_tiles_for_xyz,
    quadtree_tiles_in_bounds,
    quadtree_to_xyz,
    root_subindex,
    subindex,
    tiles_dirname,
    traversal_paths,
    tree_subindex,
    validate_zoom,
    xyz_tile_center_mercator,
    xyz_tile_for_coordinate,
    xyz_tiles_in_bounds,
    xyz_to_mercator,
)


def test_quadtree_path_roundtrip_across_levels():
    for zoom in (0, 1, 5, 12, 20):
        count = 1 << zoom
        for column, row in ((0, 0), (count - 1, 0), (0, count - 1), (count // 3, count // 2)):
            tile = QuadtreeTile(column=column, row=row, zoom=zoom)
            path = tile.path
            assert len(path) == zoom + 1
            assert path[0] == "0"
            assert QuadtreeTile.from_path(path) == tile


def test_quadtree_path_matches_known_cells():
    assert QuadtreeTile(column=0, row=0, zoom=1).path == "00"
    assert QuadtreeTile(column=1, row=0, zoom=1).path == "01"
    assert QuadtreeTile(column=1, row=1, zoom=1).path == "02"
    assert QuadtreeTile(column=0, row=1, zoom=1).path == "03"


def test_quadtree_tile_rejects_out_of_range_coordinates():
    with pytest.raises(ValueError):
        QuadtreeTile(column=2, row=0, zoom=1)
    with pytest.raises(ValueError):
        QuadtreeTile.from_path("1")
    with pytest.raises(ValueError):
        QuadtreeTile.from_path("0a")


def test_quadtree_and_xyz_row_axes_are_flipped():
    tile = QuadtreeTile(column=5, row=3, zoom=4)
    xyz = quadtree_to_xyz(tile)
    assert xyz == XYZTile(column=5, row=12, zoom=4)


def test_mercator_roundtrip():
    for lat, lon in ((0.0, 0.0), (48.2, 16.37), (-33.9, 151.2), (84.9, -179.9)):
        x, y = latlon_to_mercator(lat, lon)
        back_lat, back_lon = mercator_to_latlon(x, y)
        assert back_lat == pytest.approx(lat, abs=1e-9)
        assert back_lon == pytest.approx(lon, abs=1e-9)


def test_quadtree_fraction_roundtrip_through_tile_and_offset():
    for lat, lon in ((0.0, 0.0), (48.2, 16.37), (-33.9, 151.2), (89.9, -179.9)):
        for zoom in (1, 10, 18):
            column_f, row_f = latlon_to_quadtree_fraction(lat, lon, zoom)
            tile = quadtree_tile_for_coordinate(lat, lon, zoom)
            assert 0.0 <= column_f - tile.column < 1.0
            assert 0.0 <= row_f - tile.row < 1.0

            back_lat, back_lon = quadtree_fraction_to_latlon(column_f, row_f, zoom)
            assert back_lat == pytest.approx(lat, abs=1e-9)
            assert back_lon == pytest.approx(lon, abs=1e-9)


def test_xyz_corner_and_center_in_mercator():
    origin_x, origin_y = xyz_to_mercator(0, 0, 1)
    assert origin_x == pytest.approx(-MERCATOR_EQUATOR / 2)
    assert origin_y == pytest.approx(MERCATOR_EQUATOR / 2)

    center_x, center_y = xyz_tile_center_mercator(XYZTile(column=1, row=1, zoom=1))
    assert center_x == pytest.approx(MERCATOR_EQUATOR / 4)
    assert center_y == pytest.approx(-MERCATOR_EQUATOR / 4)


def test_xyz_tile_for_coordinate_clamps_to_grid():
    assert xyz_tile_for_coordinate(89.9, 180.0, 3) == XYZTile(column=7, row=0, zoom=3)
    assert xyz_tile_for_coordinate(-89.9, -180.0, 3) == XYZTile(column=0, row=7, zoom=3)


def test_tiles_in_bounds_cover_box_in_row_major_order():
    bbox = BoundingBox(south=-10.0, west=-179.9, north=10.0, east=-67.6)
    tiles = xyz_tiles_in_bounds(bbox, 4)
    assert len(tiles) == 10
    assert tiles[0] == XYZTile(column=0, row=7, zoom=4)
    assert tiles[-1] == XYZTile(column=4, row=8, zoom=4)

    quadtree = quadtree_tiles_in_bounds(bbox, 4)
    rows = {tile.row for tile in quadtree}
    assert min(rows) <= max(rows)
    assert all(isinstance(tile, QuadtreeTile) for tile in quadtree)


def test_subindex_inside_root_and_nested_packets():
    assert root_subindex("0") == 0
    assert root_subindex("01") == 2
    assert root_subindex("0123") == ((2 * 4) + 3) * 4 + 4
    assert tree_subindex("1") == 86
    assert subindex("0123") == root_subindex("0123")
    assert subindex("01230") == tree_subindex("0")
    assert subindex("012301") == tree_subindex("01")


def test_traversal_paths_step_four_levels_at_a_time():
    assert traversal_paths("0123") == []
    assert traversal_paths("012301") == ["0123"]
    assert traversal_paths("012301230123") == ["0123", "01230123"]


def test_quadtree_pixel_lookup_inverts_image_rows():
    tile = quadtree_tile_for_coordinate(10.0, 10.0, 8)
    south, west, north, east = tile.bounds()
    row, column, px, py = latlon_to_quadtree_pixel(north - 1e-9, west + 1e-9, 8)
    assert (row, column) == (tile.row, tile.column)
    assert py == 0
    assert px == 0

    row, column, px, py = latlon_to_quadtree_pixel(south + 1e-9, east - 1e-9, 8)
    assert py == 255
    assert px == 255


def test_quadtree_tiles_for_xyz_cover_the_mercator_tile():
    tiles = quadtree_tiles_for_xyz(XYZTile(column=8, row=8, zoom=4))
    assert tiles
    assert all(tile.zoom == 4 for tile in tiles)


def test_validate_zoom_range():
    validate_zoom(0)
    validate_zoom(23)
    with pytest.raises(ValueError):
        validate_zoom(24)
    with pytest.raises(ValueError):
        validate_zoom(22, maximum=21)


def test_bounding_box_validation_messages():
    with pytest.raises(ValueError, match="North latitude"):
        BoundingBox(south=10.0, west=0.0, north=5.0, east=1.0).validate()
    with pytest.raises(ValueError, match="East longitude"):
        BoundingBox(south=0.0, west=5.0, north=1.0, east=1.0).validate()


def test_output_names_are_stable():
    bbox = BoundingBox(south=48.1938, west=16.3588, north=48.2238, east=16.3888)
    name = geotiff_filename("google_earth", "2024-05-01", bbox, 3)
    assert name.startswith("google_earth_2024-05-01_")
    assert name.endswith("_z3_48p1938N-48p2238N_16p3588E-16p3888E.tif")
    assert tiles_dirname("esri_wayback", "2024-05-01", 17) == "esri_wayback_2024-05-01_z17_tiles"


def test_sample_points_start_at_center():
    bbox = BoundingBox(south=0.0, west=0.0, north=4.0, east=4.0)
    points = bbox.sample_points()
    assert points[0] == (2.0, 2.0)
    assert (3.0, 1.0) in points
    assert len(points) == 5
    assert math.isclose(sum(lat for lat, _ in points) / 5, 2.0)
