# kartogrid/services/grid_builder.py
"""
Generates global grids of square, hexagonal or diamond cells laid out in a
cylindrical projection (Web Mercator, Behrmann equal area, ...) and returned
as WGS84 polygons.

Cells are laid out row by row in projected space, then reprojected to
longitude/latitude. Each cell gets a hash derived from its shape, level,
projection and WGS84 centroid, which is its identity in the grid_cell table.
"""

import hashlib
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, List, Optional, Tuple, Union

import numpy as np
import shapely
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError, ProjError
from shapely.geometry import LineString, Polygon, box
from shapely.geometry.base import BaseGeometry

from ..exceptions import ProjectionError
from ..models.grid import GridCell

log = logging.getLogger(__name__)

SQUARE_SHAPE = 1
HEX_SHAPE = 2
DIAMOND_SHAPE = 3

SHAPES = (SQUARE_SHAPE, HEX_SHAPE, DIAMOND_SHAPE)
SHAPE_NAMES = {
    SQUARE_SHAPE: "square",
    HEX_SHAPE: "hex",
    DIAMOND_SHAPE: "diamond",
}

PROJECTION_ALIASES = {
    "google": 3857,
    "behrmann": 54017,
    "mercator": 3395,
}

# Non-EPSG codes people still pass around as "EPSG:n"
ESRI_CODES = {54017}

MIN_LEVEL = 1
MAX_LEVEL = 9

# Number of level-1 cells across the projected world width
BASE_COLUMNS = 30

# Cells crossing this line wrap around the antimeridian
LEFT_BORDER = LineString([(-180.005, 90), (-180.005, -90)])

WGS84 = CRS.from_epsg(4326)

BBox = Tuple[float, float, float, float]


class GridCallback:
    """
    Receives cells as they are generated. add() calls are serialized by the
    builder, so implementations don't need their own locking.
    """

    def add(self, cell: GridCell) -> None:
        raise NotImplementedError

    def done(self) -> None:
        pass


class CellCollector(GridCallback):
    def __init__(self):
        self.cells: List[GridCell] = []
        self.finished = False

    def add(self, cell: GridCell) -> None:
        self.cells.append(cell)

    def done(self) -> None:
        self.finished = True


def parse_shape(name: Optional[str]) -> int:
    """
    'square' | 'hex...' | 'diamond' | shape code -> shape code. Unknown names
    default to square; unknown numeric codes are rejected.
    """
    if not name:
        return SQUARE_SHAPE
    s = str(name).strip().lower()
    if s.lstrip("-").isdigit():
        if int(s) not in SHAPES:
            raise ValueError(f"Unknown shape code: {s}")
        return int(s)
    if s.startswith("hex"):
        return HEX_SHAPE
    if s == "diamond":
        return DIAMOND_SHAPE
    return SQUARE_SHAPE


def resolve_projection(proj: Union[str, int]) -> int:
    """
    Accepts an SRID, "EPSG:n", or one of the keywords in PROJECTION_ALIASES.
    """
    if isinstance(proj, int):
        return proj

    p = str(proj).strip()
    alias = PROJECTION_ALIASES.get(p.lower())
    if alias is not None:
        return alias

    if ":" in p:
        authority, _, code = p.partition(":")
        if authority.upper() not in ("EPSG", "ESRI"):
            raise ProjectionError(f"Unsupported projection authority: {proj!r}")
        p = code

    try:
        return int(p)
    except ValueError:
        raise ProjectionError(f"Unknown projection: {proj!r}") from None


def load_crs(srid: int) -> CRS:
    authorities = ("ESRI", "EPSG") if srid in ESRI_CODES else ("EPSG", "ESRI")
    for authority in authorities:
        try:
            return CRS.from_authority(authority, srid)
        except CRSError:
            continue
    raise ProjectionError(f"Unknown projection: EPSG:{srid}")


def normalize_level(level: int) -> int:
    """Levels outside 1-9 fall back to level 1."""
    if level is None or level < MIN_LEVEL or level > MAX_LEVEL:
        return MIN_LEVEL
    return int(level)


def cell_multiplier(level: int) -> int:
    """Each level subdivides a cell by a factor of 2 in both directions."""
    n = 2 ** (normalize_level(level) - 1)
    return n * n


# --- Hashing --- #

# Centroids are rounded to ~1cm before hashing
HASH_PRECISION = 7


def cell_hash(shape: int, level: int, proj: int, x: float, y: float) -> int:
    """
    Signed 64-bit hash of a cell's identity and WGS84 centroid.
    """
    key = "%d:%d:%d:%.*f:%.*f" % (
        int(shape), int(level), int(proj),
        HASH_PRECISION, round(x, HASH_PRECISION) + 0.0,
        HASH_PRECISION, round(y, HASH_PRECISION) + 0.0,
    )
    digest = hashlib.blake2b(key.encode("ascii"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


# --- Cell geometry --- #

def cell_reach(shape: int, grid: float) -> Tuple[float, float]:
    """
    How far the cells built from one grid slot extend right of its left edge
    and below its bottom edge. Diamond and hex companions overhang the slot.
    """
    if shape == HEX_SHAPE:
        return grid * 1.5, grid * 0.75
    if shape == DIAMOND_SHAPE:
        return grid * 1.5, grid * 0.5
    return grid, 0.0


def cell_polygon(shape: int, bbox: BBox) -> Polygon:
    """
    Square cells are the bbox; diamonds and hexes are inscribed in it.
    """
    left, bottom, right, top = bbox
    if shape == SQUARE_SHAPE:
        return box(left, bottom, right, top)

    cx = (left + right) / 2.0
    cy = (bottom + top) / 2.0

    if shape == DIAMOND_SHAPE:
        return Polygon([
            (cx, top),
            (left, cy),
            (cx, bottom),
            (right, cy),
            (cx, top),
        ])

    if shape == HEX_SHAPE:
        dy = (top - bottom) / 4.0
        y1 = top - dy
        y2 = bottom + dy
        return Polygon([
            (cx, top),
            (left, y1),
            (left, y2),
            (cx, bottom),
            (right, y2),
            (right, y1),
            (cx, top),
        ])

    raise ValueError(f"Unknown shape code: {shape}")


def shifted_bbox(shape: int, bbox: BBox) -> BBox:
    """
    Bbox of the companion cell right of and below the given one. Hexes are
    pulled up by a quarter cell so the rows interlock.
    """
    left, bottom, right, top = bbox
    width = right - left
    height = top - bottom
    cx = (left + right) / 2.0
    cy = (bottom + top) / 2.0

    if shape == HEX_SHAPE:
        a = height / 4.0
        return (cx, cy - height - a, cx + width, cy - a)
    return (cx, cy - height, cx + width, cy)


class GridBuilder:
    """
    Used to generate global grids for one projection.

    proj: an SRID, "EPSG:n", or "google" / "behrmann".
    """

    def __init__(self, proj: Union[str, int]):
        self.srid = resolve_projection(proj)
        self.crs = load_crs(self.srid)
        self.to_proj = Transformer.from_crs(WGS84, self.crs, always_xy=True)
        self.to_wgs84 = Transformer.from_crs(self.crs, WGS84, always_xy=True)

    def __repr__(self):
        return f"GridBuilder(srid={self.srid}, crs={self.crs.name!r})"

    # ------------------ layout ------------------

    def _project(self, lon: float, lat: float) -> Tuple[float, float]:
        x, y = self.to_proj.transform(lon, lat)
        return float(x), float(y)

    def x_range(self) -> Tuple[float, float]:
        left, _ = self._project(-180.0, 0.0)
        right, _ = self._project(180.0, 0.0)
        if not (math.isfinite(left) and math.isfinite(right)) or right <= left:
            raise ProjectionError(f"EPSG:{self.srid} is not a global cylindrical projection")
        return left, right

    def grid_size(self, level: int) -> float:
        left, right = self.x_range()
        return (right - left) / float(BASE_COLUMNS * cell_multiplier(level))

    def y_range(self, grid_size: float) -> Tuple[float, float]:
        """
        Projected (bottom, top). Projections that don't reach the poles are
        cut at the first row past the north bound of their area of use.
        """
        _, top = self._project(0.0, 90.0)
        _, bottom = self._project(0.0, -90.0)
        area = self.crs.area_of_use
        reaches_poles = area is None or area.north >= 90.0
        if reaches_poles and math.isfinite(top) and math.isfinite(bottom):
            return bottom, top

        if area is None:
            raise ProjectionError(f"EPSG:{self.srid} has no usable latitude extent")

        _, y_north = self._project(0.0, area.north)
        if not math.isfinite(y_north):
            raise ProjectionError(f"EPSG:{self.srid} has no usable latitude extent")

        top = math.ceil(y_north / grid_size - 1e-9) * grid_size
        return -top, top

    def bounds(self, level: int) -> BBox:
        left, right = self.x_range()
        bottom, top = self.y_range(self.grid_size(level))
        return left, bottom, right, top

    def _columns(self, shape: int, level: int, grid: float) -> List[float]:
        left, right = self.x_range()
        x = left
        if shape == DIAMOND_SHAPE and level > 1:
            x -= grid / 2.0
        xs = []
        while x < right:
            xs.append(x)
            x += grid
        return xs

    def _rows(self, shape: int, grid: float) -> List[float]:
        """
        Row origins, northward from the equator and then southward. Hex rows
        are 1.5 cells apart; the first southern hex row is skipped so both
        hemispheres share the same phase.
        """
        bottom, top = self.y_range(grid)
        step = grid * 1.5 if shape == HEX_SHAPE else grid

        ys = []
        y = 0.0
        while y <= top:
            ys.append(y)
            y += step

        y = -step
        while y > bottom - grid:
            ys.append(y)
            y -= step
        return ys

    def _projected_filter_bbox(self, spatial_filter: BaseGeometry) -> BBox:
        west, south, east, north = spatial_filter.bounds
        x0, y0 = self._project(west, south)
        x1, y1 = self._project(east, north)
        return x0, y0, x1, y1

    # ------------------ cells ------------------

    def _to_wgs84_xy(self, xy: np.ndarray) -> np.ndarray:
        lon, lat = self.to_wgs84.transform(xy[:, 0], xy[:, 1])
        return np.column_stack([lon, lat])

    def _reproject(self, polygon: Polygon, density: float) -> Optional[Polygon]:
        if density > 1:
            polygon = polygon.segmentize(polygon.length / density)
        try:
            g = shapely.transform(polygon, self._to_wgs84_xy)
        except ProjError:
            return None
        if not np.isfinite(shapely.get_coordinates(g)).all():
            return None
        return g

    def _make_cells(
        self,
        shape: int,
        level: int,
        bbox: BBox,
        density: float,
        spatial_filter: Optional[BaseGeometry],
    ) -> List[GridCell]:
        bboxes = [bbox]
        if shape in (DIAMOND_SHAPE, HEX_SHAPE):
            bboxes.append(shifted_bbox(shape, bbox))

        cells = []
        for b in bboxes:
            polygon = self._reproject(cell_polygon(shape, b), density)
            if polygon is None:
                continue
            if spatial_filter is not None and not polygon.intersects(spatial_filter):
                continue

            minx, _, maxx, _ = polygon.bounds
            if polygon.crosses(LEFT_BORDER) or maxx - minx > 180.0:
                log.debug("[GridBuilder] Skipping border cell %s", polygon.wkt)
                continue

            centroid = polygon.centroid
            cells.append(
                GridCell(
                    shape=shape,
                    level=level,
                    proj=self.srid,
                    geom=polygon,
                    hash=cell_hash(shape, level, self.srid, centroid.x, centroid.y),
                )
            )
        return cells

    def _column_cells(
        self,
        x: float,
        shape: int,
        level: int,
        grid: float,
        rows: List[float],
        density: float,
        spatial_filter: Optional[BaseGeometry],
        filter_bbox: Optional[BBox],
    ) -> List[GridCell]:
        cells = []
        _, reach_down = cell_reach(shape, grid)
        for y in rows:
            if filter_bbox is not None and (
                y + grid < filter_bbox[1] or y - reach_down > filter_bbox[3]
            ):
                continue
            cells.extend(
                self._make_cells(shape, level, (x, y, x + grid, y + grid), density, spatial_filter)
            )
        return cells

    def _plan(self, shape: int, level: int, spatial_filter: Optional[BaseGeometry]):
        if shape not in SHAPES:
            raise ValueError(f"Unknown shape code: {shape}")
        if normalize_level(level) != level:
            log.warning("[GridBuilder] Level %s out of range, using level %s", level, MIN_LEVEL)
            level = normalize_level(level)

        grid = self.grid_size(level)
        rows = self._rows(shape, grid)
        filter_bbox = None
        if spatial_filter is not None:
            filter_bbox = self._projected_filter_bbox(spatial_filter)

        reach_right, _ = cell_reach(shape, grid)
        columns = []
        for x in self._columns(shape, level, grid):
            if filter_bbox is not None and (x + reach_right < filter_bbox[0] or x > filter_bbox[2]):
                continue
            columns.append(x)

        return level, grid, rows, columns, filter_bbox

    def iter_cells(
        self,
        shape: int,
        level: int,
        density: float = 1.0,
        spatial_filter: Optional[BaseGeometry] = None,
    ) -> Iterator[GridCell]:
        """
        Yield unsaved GridCells column by column (west to east).

        density: > 1 densifies cell edges before reprojection.
        spatial_filter: WGS84 geometry; only intersecting cells are kept.
        """
        level, grid, rows, columns, filter_bbox = self._plan(shape, level, spatial_filter)
        for x in columns:
            yield from self._column_cells(
                x, shape, level, grid, rows, density, spatial_filter, filter_bbox
            )

    def create_grid(
        self,
        shape: int,
        level: int,
        density: float = 1.0,
        spatial_filter: Optional[BaseGeometry] = None,
        num_threads: int = 4,
        callback: Optional[GridCallback] = None,
    ) -> int:
        """
        Generate cells across a pool of worker threads. callback.add() is
        called once per cell (never concurrently), then callback.done().

        Returns the number of cells generated.
        """
        callback = callback or CellCollector()
        num_threads = max(1, int(num_threads or 1))

        level, grid, rows, columns, filter_bbox = self._plan(shape, level, spatial_filter)
        log.info(
            "[GridBuilder] Generating %s grid: level=%s, proj=EPSG:%s, grid_size=%.4f, "
            "columns=%d, rows=%d, threads=%d",
            SHAPE_NAMES[shape], level, self.srid, grid, len(columns), len(rows), num_threads,
        )

        total = 0

        def work(x):
            return self._column_cells(
                x, shape, level, grid, rows, density, spatial_filter, filter_bbox
            )

        # bounded window of columns in flight; results are consumed on this
        # thread so callback.add never runs concurrently
        chunk = num_threads * 4
        with ThreadPoolExecutor(max_workers=num_threads) as pool:
            for i in range(0, len(columns), chunk):
                for cells in pool.map(work, columns[i:i + chunk]):
                    for cell in cells:
                        callback.add(cell)
                    total += len(cells)

        callback.done()
        log.info("[GridBuilder] Generated %d cells", total)
        return total


def describe_projection(proj: Union[str, int]) -> str:
    """Human readable description of a projection (name, area of use, WKT)."""
    srid = resolve_projection(proj)
    crs = load_crs(srid)
    lines = [f"{crs.name} ({srid})"]
    if crs.area_of_use is not None:
        a = crs.area_of_use
        lines.append(
            f"Area of use: {a.name} [{a.west}, {a.south}, {a.east}, {a.north}]"
        )
    lines.append(crs.to_wkt(pretty=True))
    return "\n".join(lines)
