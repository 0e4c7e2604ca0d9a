import pytest
from shapely.geometry import Point, box

from kartogrid.exceptions import ProjectionError
from kartogrid.services.grid_builder import (
    DIAMOND_SHAPE,
    HEX_SHAPE,
    SQUARE_SHAPE,
    CellCollector,
    GridBuilder,
    cell_hash,
    cell_multiplier,
    cell_reach,
    cell_polygon,
    normalize_level,
    parse_shape,
    resolve_projection,
    shifted_bbox,
)


@pytest.mark.parametrize(
    "value, srid",
    [
        ("google", 3857),
        ("Behrmann", 54017),
        ("mercator", 3395),
        ("EPSG:4326", 4326),
        ("epsg:3395", 3395),
        ("3857", 3857),
        (32761, 32761),
    ],
)
def test_resolve_projection(value, srid):
    assert resolve_projection(value) == srid


@pytest.mark.parametrize("value", ["mercator-ish", "XYZ:12", ""])
def test_resolve_projection_rejects_unknown(value):
    with pytest.raises(ProjectionError):
        resolve_projection(value)


def test_unknown_srid_rejected():
    with pytest.raises(ProjectionError):
        GridBuilder(999999)


@pytest.mark.parametrize(
    "name, code",
    [
        (None, SQUARE_SHAPE),
        ("square", SQUARE_SHAPE),
        ("hex", HEX_SHAPE),
        ("Hexagon", HEX_SHAPE),
        ("diamond", DIAMOND_SHAPE),
        ("3", DIAMOND_SHAPE),
        ("triangle", SQUARE_SHAPE),
    ],
)
def test_parse_shape(name, code):
    assert parse_shape(name) == code


@pytest.mark.parametrize("code", ["7", "0", "-1"])
def test_parse_shape_rejects_unknown_codes(code):
    with pytest.raises(ValueError):
        parse_shape(code)


def test_cell_multiplier():
    assert cell_multiplier(1) == 1
    assert cell_multiplier(2) == 4
    assert cell_multiplier(9) == 256 * 256
    assert cell_multiplier(0) == 1
    assert cell_multiplier(12) == 1


def test_normalize_level():
    assert normalize_level(1) == 1
    assert normalize_level(9) == 9
    assert normalize_level(0) == 1
    assert normalize_level(10) == 1
    assert normalize_level(-3) == 1


def test_cell_hash_is_signed_64_bit():
    h = cell_hash(3, 9, 54017, -179.99, 84.12345)
    assert -(2 ** 63) <= h < 2 ** 63
    assert h == cell_hash(3, 9, 54017, -179.99, 84.12345)
    assert h != cell_hash(3, 9, 54017, -179.99, 84.12346)


def test_cell_hash_ignores_float_noise():
    assert cell_hash(1, 1, 4326, 6.0, 6.0) == cell_hash(1, 1, 4326, 6.0 + 1e-12, 6.0)
    assert cell_hash(1, 1, 4326, 0.0, 0.0) == cell_hash(1, 1, 4326, -0.0, -0.0)


@pytest.mark.parametrize("x, y", [(6.0, 6.0), (6.0, -6.0), (174.0, 78.0), (0.5, 0.25)])
def test_mirrored_centroids_hash_differently(x, y):
    assert cell_hash(1, 1, 4326, x, y) != cell_hash(1, 1, 4326, -x, -y)


@pytest.mark.parametrize("shape", [SQUARE_SHAPE, HEX_SHAPE, DIAMOND_SHAPE])
def test_global_grid_hashes_are_unique(shape):
    cells = list(GridBuilder(4326).iter_cells(shape, 1))
    assert len(cells) > 100
    assert len({c.hash for c in cells}) == len(cells)


def test_cell_polygons():
    bbox = (0.0, 0.0, 4.0, 4.0)
    square = cell_polygon(SQUARE_SHAPE, bbox)
    diamond = cell_polygon(DIAMOND_SHAPE, bbox)
    hexagon = cell_polygon(HEX_SHAPE, bbox)

    assert square.area == 16.0
    assert diamond.area == 8.0
    assert len(diamond.exterior.coords) == 5
    assert hexagon.area == 12.0
    assert len(hexagon.exterior.coords) == 7

    with pytest.raises(ValueError):
        cell_polygon(7, bbox)


def test_shifted_bbox():
    assert shifted_bbox(DIAMOND_SHAPE, (0.0, 0.0, 4.0, 4.0)) == (2.0, -2.0, 6.0, 2.0)
    assert shifted_bbox(HEX_SHAPE, (0.0, 0.0, 4.0, 4.0)) == (2.0, -3.0, 6.0, 1.0)


def test_geographic_layout():
    builder = GridBuilder(4326)
    assert builder.x_range() == (-180.0, 180.0)
    assert builder.grid_size(1) == 12.0
    assert builder.grid_size(2) == 3.0
    assert builder.bounds(1) == (-180.0, -90.0, 180.0, 90.0)


def test_web_mercator_is_cut_at_its_area_of_use():
    builder = GridBuilder("google")
    grid = builder.grid_size(1)
    left, bottom, right, top = builder.bounds(1)
    assert right == pytest.approx(20037508.34, rel=1e-6)
    assert left == pytest.approx(-right)

    # first whole row past the north bound
    assert top / grid == pytest.approx(round(top / grid))
    assert 20037508.34 <= top <= 20037508.34 + 2 * grid
    assert bottom == -top


def test_mercator_is_cut_at_its_area_of_use():
    builder = GridBuilder("mercator")
    grid = builder.grid_size(1)
    _, bottom, _, top = builder.bounds(1)

    assert builder.srid == 3395
    assert top / grid == pytest.approx(round(top / grid))
    assert bottom == -top
    assert builder._project(0.0, 84.0)[1] <= top


def test_behrmann_uses_esri_definition():
    builder = GridBuilder("behrmann")
    assert builder.srid == 54017
    assert "Behrmann" in builder.crs.name


def test_square_cells_in_area_of_interest():
    aoi = box(0.0, 0.0, 10.0, 10.0)
    cells = list(GridBuilder(4326).iter_cells(SQUARE_SHAPE, 1, spatial_filter=aoi))

    # the four 12 degree cells meeting at (0, 0)
    assert len(cells) == 4
    assert all(c.geom.intersects(aoi) for c in cells)
    assert any(c.geom.contains(Point(5, 5)) for c in cells)
    assert {(c.shape, c.level, c.proj) for c in cells} == {(SQUARE_SHAPE, 1, 4326)}
    assert len({c.hash for c in cells}) == 4


def test_hex_cells_include_shifted_companions():
    aoi = box(0.0, 0.0, 10.0, 10.0)
    cells = list(GridBuilder(4326).iter_cells(HEX_SHAPE, 1, spatial_filter=aoi))

    assert cells
    assert all(len(c.geom.exterior.coords) == 7 for c in cells)
    assert all(c.geom.intersects(aoi) for c in cells)
    assert len({c.hash for c in cells}) == len(cells)


def test_projected_cells_come_back_in_wgs84():
    aoi = box(-10.0, -10.0, 10.0, 10.0)
    cells = list(GridBuilder("google").iter_cells(DIAMOND_SHAPE, 2, spatial_filter=aoi))

    assert cells
    for c in cells:
        minx, miny, maxx, maxy = c.geom.bounds
        assert -180.0 <= minx <= maxx <= 180.0
        assert -90.0 <= miny <= maxy <= 90.0
        assert c.geom.intersects(aoi)
        assert c.proj == 3857


def test_density_adds_vertices():
    aoi = box(1.0, 1.0, 2.0, 2.0)
    cells = list(GridBuilder(4326).iter_cells(SQUARE_SHAPE, 1, density=8, spatial_filter=aoi))
    assert len(cells) == 1
    assert len(cells[0].geom.exterior.coords) == 9


def test_out_of_range_level_falls_back_to_level_one():
    aoi = box(1.0, 1.0, 2.0, 2.0)
    cells = list(GridBuilder(4326).iter_cells(SQUARE_SHAPE, 42, spatial_filter=aoi))
    assert [c.level for c in cells] == [1]
    assert cells[0].geom.area == 144.0


def test_unknown_shape_rejected():
    with pytest.raises(ValueError):
        list(GridBuilder(4326).iter_cells(9, 1))


def test_create_grid_matches_iter_cells():
    builder = GridBuilder(4326)
    aoi = box(-30.0, -30.0, 30.0, 30.0)
    expected = {c.hash for c in builder.iter_cells(DIAMOND_SHAPE, 2, spatial_filter=aoi)}

    collector = CellCollector()
    total = builder.create_grid(DIAMOND_SHAPE, 2, spatial_filter=aoi, num_threads=3, callback=collector)

    assert collector.finished
    assert total == len(collector.cells)
    assert {c.hash for c in collector.cells} == expected


def test_cell_reach_covers_shifted_companions():
    bbox = (0.0, 0.0, 4.0, 4.0)
    for shape in (SQUARE_SHAPE, HEX_SHAPE, DIAMOND_SHAPE):
        right, down = cell_reach(shape, 4.0)
        boxes = [bbox]
        if shape != SQUARE_SHAPE:
            boxes.append(shifted_bbox(shape, bbox))
        for b in boxes:
            minx, miny, maxx, maxy = cell_polygon(shape, b).bounds
            assert maxx <= right
            assert miny >= -down


@pytest.mark.parametrize(
    "shape, aoi",
    [
        (DIAMOND_SHAPE, (0.0, 0.0, 10.0, 10.0)),
        (HEX_SHAPE, (0.0, 0.0, 10.0, 10.0)),
        (HEX_SHAPE, (-7.0, -5.0, -6.0, -4.0)),
        (SQUARE_SHAPE, (-7.0, -5.0, -6.0, -4.0)),
        (DIAMOND_SHAPE, (170.0, -89.0, 180.0, -80.0)),
    ],
)
def test_filtered_grid_matches_global_grid(shape, aoi):
    builder = GridBuilder(4326)
    area = box(*aoi)

    expected = {c.hash for c in builder.iter_cells(shape, 1) if c.geom.intersects(area)}
    filtered = {c.hash for c in builder.iter_cells(shape, 1, spatial_filter=area)}

    assert expected
    assert filtered == expected
