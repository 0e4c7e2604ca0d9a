# kartogrid/services/cell_store.py

import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import UniqueConstraintViolationError
from ..models.grid import GridCell
from ..schema import GRID_CELL_SCHEMA, validate_record

log = logging.getLogger(__name__)


def _filtered(db: Session, shape=None, level=None, proj=None):
    q = db.query(GridCell)
    if shape is not None:
        q = q.filter(GridCell.shape == shape)
    if level is not None:
        q = q.filter(GridCell.level == level)
    if proj is not None:
        q = q.filter(GridCell.proj == proj)
    return q


def save_cell(db: Session, cell: GridCell) -> GridCell:
    """
    Validate and insert a single cell.

    Raises MissingFieldError if a required field is unset and
    UniqueConstraintViolationError if the hash is already stored.
    """
    validate_record(cell.to_record(), GRID_CELL_SCHEMA)

    exists = db.query(GridCell.id).filter(GridCell.hash == cell.hash).first()
    if exists is not None:
        raise UniqueConstraintViolationError("hash", cell.hash)

    db.add(cell)
    try:
        db.commit()
    except IntegrityError as e:
        # lost a race with another writer
        db.rollback()
        raise UniqueConstraintViolationError("hash", cell.hash) from e

    db.refresh(cell)
    return cell


def save_cells(db: Session, cells: Iterable[GridCell], batch_size: int = 5000) -> Tuple[int, int]:
    """
    Bulk insert. Cells whose hash is already stored, or repeated within the
    batch, are skipped rather than raised.

    Returns (inserted, skipped).
    """
    inserted = 0
    skipped = 0
    pending: List[GridCell] = []
    seen = set()

    def flush():
        nonlocal inserted, skipped
        if not pending:
            return
        hashes = [c.hash for c in pending]
        existing = {
            row[0]
            for row in db.query(GridCell.hash).filter(GridCell.hash.in_(hashes)).all()
        }
        for c in pending:
            if c.hash in existing:
                skipped += 1
                continue
            db.add(c)
            inserted += 1
        db.commit()
        pending.clear()

    for cell in cells:
        validate_record(cell.to_record(), GRID_CELL_SCHEMA)
        if cell.hash in seen:
            skipped += 1
            continue
        seen.add(cell.hash)
        pending.append(cell)
        if len(pending) >= batch_size:
            flush()

    flush()

    log.info("[CellStore] Inserted %d cells, skipped %d duplicates", inserted, skipped)
    return inserted, skipped


def get_cell(db: Session, hash: Optional[int] = None, id: Optional[int] = None) -> Optional[GridCell]:
    if hash is None and id is None:
        raise ValueError("get_cell needs a hash or an id")

    q = db.query(GridCell)
    if hash is not None:
        q = q.filter(GridCell.hash == hash)
    if id is not None:
        q = q.filter(GridCell.id == id)
    return q.one_or_none()


def find_cells(
    db: Session,
    shape: Optional[int] = None,
    level: Optional[int] = None,
    proj: Optional[int] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[GridCell]:
    q = _filtered(db, shape, level, proj).order_by(GridCell.id)
    if offset:
        q = q.offset(offset)
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def count_cells(db: Session, shape=None, level=None, proj=None) -> int:
    return _filtered(db, shape, level, proj).count()


def clear_cells(db: Session, shape: int, level: int, proj: int) -> int:
    """
    Delete every cell of one grid (shape + level + projection).
    """
    deleted = (
        _filtered(db, shape, level, proj)
        .delete(synchronize_session=False)
    )
    db.commit()
    log.info(
        "[CellStore] Cleared %d cells (shape=%s, level=%s, proj=%s)",
        deleted, shape, level, proj,
    )
    return deleted
