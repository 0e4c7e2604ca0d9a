from fastapi import APIRouter, HTTPException

from ..schema import GRID_CELL_SCHEMA, MODELS

router = APIRouter()


@router.get("")
def get_default_schema():
    """Descriptor of the GridCell entity."""
    return GRID_CELL_SCHEMA.to_dict()


@router.get("/{entity}")
def get_schema(entity: str):
    schema = MODELS.get(entity)
    if schema is None:
        raise HTTPException(status_code=404, detail=f"Unknown entity: {entity}")
    return schema.to_dict()
