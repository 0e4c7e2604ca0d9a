# kartogrid/routers/cells.py

from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import DEFAULT_PROJ, DEFAULT_THREADS
from ..db import get_db
from ..exceptions import (
    GridError,
    MissingFieldError,
    ProjectionError,
    UniqueConstraintViolationError,
)
from ..models.grid import GridCell
from ..services import cell_store
from ..services.grid_builder import parse_shape, resolve_projection
from ..services.grid_job import generate_grid

router = APIRouter()


class CellIn(BaseModel):
    shape: Optional[int] = None
    level: Optional[int] = None
    geom: Union[str, Dict[str, Any], None] = None
    proj: Optional[int] = None
    hash: Optional[int] = None
    info: Optional[Dict[str, Any]] = None


class GenerateRequest(BaseModel):
    shape: Union[str, int] = "square"
    level: int = 1
    proj: Union[str, int] = DEFAULT_PROJ
    density: float = 1.0
    # WKT or "west,south,east,north" in WGS84; SQL is only accepted by the CLI
    aoi: Optional[str] = None
    threads: int = DEFAULT_THREADS
    clear: bool = False


def _resolve_proj(proj):
    if proj is None:
        return None
    try:
        return resolve_projection(proj)
    except ProjectionError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("")
def list_cells(
    shape: Optional[int] = None,
    level: Optional[int] = None,
    proj: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """
    Stored cells, optionally filtered by shape / level / projection.
    `count` is the total matching the filters, ignoring limit/offset.
    """
    srid = _resolve_proj(proj)
    cells = cell_store.find_cells(db, shape=shape, level=level, proj=srid, limit=limit, offset=offset)
    return {
        "items": [c.to_json() for c in cells],
        "count": cell_store.count_cells(db, shape=shape, level=level, proj=srid),
    }


@router.get("/{cell_hash}")
def get_cell(cell_hash: int, db: Session = Depends(get_db)):
    cell = cell_store.get_cell(db, hash=cell_hash)
    if cell is None:
        raise HTTPException(status_code=404, detail=f"No grid cell with hash {cell_hash}")
    return cell.to_json()


@router.post("", status_code=201)
def create_cell(req: CellIn, db: Session = Depends(get_db)):
    cell = GridCell.from_json(req.dict())
    try:
        cell = cell_store.save_cell(db, cell)
    except MissingFieldError as e:
        raise HTTPException(status_code=422, detail={"error": str(e), "field": e.field})
    except UniqueConstraintViolationError as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "field": e.field})
    return cell.to_json()


@router.post("/generate")
def generate(req: GenerateRequest, db: Session = Depends(get_db)):
    """
    Generate one grid (shape + level + projection) and store its cells.
    Meant for small areas; use the CLI for global grids at high levels.
    """
    try:
        shape = parse_shape(str(req.shape))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        result = generate_grid(
            db,
            shape=shape,
            level=req.level,
            proj=req.proj,
            density=req.density,
            aoi=req.aoi,
            num_threads=req.threads,
            clear=req.clear,
        )
    except GridError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"status": "ok", **result}


@router.delete("")
def delete_cells(
    shape: int,
    level: int,
    proj: str,
    db: Session = Depends(get_db),
):
    srid = _resolve_proj(proj)
    deleted = cell_store.clear_cells(db, shape, level, srid)
    return {"status": "ok", "deleted": deleted}
