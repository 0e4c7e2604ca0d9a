# kartogrid/services/grid_job.py

import logging
from typing import List, Optional, Union

from shapely import wkb, wkt
from shapely.errors import ShapelyError
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry
from sqlalchemy import text
from sqlalchemy.orm import Session

from ..exceptions import GridError
from ..models.grid import GridCell
from .cell_store import clear_cells, save_cells
from .grid_builder import GridBuilder, GridCallback, normalize_level

log = logging.getLogger(__name__)


def _geometry_from_value(value) -> BaseGeometry:
    """WKT text, hex (E)WKB text, or raw WKB bytes."""
    if isinstance(value, memoryview):
        value = value.tobytes()
    if isinstance(value, (bytes, bytearray)):
        return wkb.loads(bytes(value))

    text_value = str(value).strip()
    if text_value and all(c in "0123456789abcdefABCDEF" for c in text_value):
        return wkb.loads(text_value, hex=True)
    return wkt.loads(text_value)


def query_aoi(db: Session, query: str) -> BaseGeometry:
    """
    Run a SELECT whose first column is a geometry (WKT, WKB or a PostGIS
    geometry) and return the geometry from the last row.
    """
    if ".shp" in query.lower():
        raise GridError("Shapefile areas of interest are not supported")

    rows = db.execute(text(query)).fetchall()
    if not rows or rows[-1][0] is None:
        raise GridError(f"Area of interest query returned no geometry: {query!r}")

    try:
        return _geometry_from_value(rows[-1][0])
    except (ShapelyError, ValueError, TypeError) as e:
        raise GridError(f"Could not read geometry from area of interest query: {e}") from e


def parse_aoi(aoi: Optional[str], db: Optional[Session] = None) -> Optional[BaseGeometry]:
    """
    Area of interest in WGS84, given as WKT, "west,south,east,north", or
    (when a session is given) a SELECT returning one geometry.
    """
    if aoi is None or not str(aoi).strip():
        return None

    value = str(aoi).strip()
    if value.lower().endswith(".shp"):
        raise GridError("Shapefile areas of interest are not supported")

    if value.lower().startswith("select"):
        if db is None:
            raise GridError("SQL areas of interest are only accepted from the command line")
        return query_aoi(db, value)

    parts = value.split(",")
    if len(parts) == 4:
        try:
            west, south, east, north = (float(p) for p in parts)
        except ValueError:
            pass
        else:
            if west >= east or south >= north:
                raise GridError(f"Invalid bbox: {value}")
            return box(west, south, east, north)

    try:
        return wkt.loads(value)
    except (ShapelyError, ValueError) as e:
        raise GridError(f"Could not parse area of interest: {value!r}") from e


class CellWriter(GridCallback):
    """Buffers generated cells and writes them in batches."""

    def __init__(self, db: Session, batch_size: int = 5000):
        self.db = db
        self.batch_size = batch_size
        self.buffer: List[GridCell] = []
        self.inserted = 0
        self.skipped = 0

    def add(self, cell: GridCell) -> None:
        self.buffer.append(cell)
        if len(self.buffer) >= self.batch_size:
            self._flush()

    def done(self) -> None:
        self._flush()

    def _flush(self):
        if not self.buffer:
            return
        inserted, skipped = save_cells(self.db, self.buffer, batch_size=self.batch_size)
        self.inserted += inserted
        self.skipped += skipped
        self.buffer = []


def generate_grid(
    db: Session,
    shape: int,
    level: int,
    proj: Union[str, int],
    density: float = 1.0,
    aoi: Optional[str] = None,
    num_threads: int = 4,
    clear: bool = False,
    allow_sql: bool = False,
) -> dict:
    """
    Build a grid and persist it. Cells whose hash is already stored are
    skipped, so re-running over an overlapping area is safe.

    A level outside 1-9 is treated as level 1 everywhere, including the
    clear step and the returned summary. SELECT areas of interest run
    through `db` only when `allow_sql` is set.
    """
    level = normalize_level(level)
    builder = GridBuilder(proj)
    spatial_filter = parse_aoi(aoi, db if allow_sql else None)

    deleted = 0
    if clear:
        deleted = clear_cells(db, shape, level, builder.srid)

    writer = CellWriter(db)
    generated = builder.create_grid(
        shape,
        level,
        density=density,
        spatial_filter=spatial_filter,
        num_threads=num_threads,
        callback=writer,
    )

    return {
        "shape": shape,
        "level": level,
        "proj": builder.srid,
        "generated": generated,
        "inserted": writer.inserted,
        "skipped": writer.skipped,
        "deleted": deleted,
    }
