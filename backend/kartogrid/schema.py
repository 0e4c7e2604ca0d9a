# kartogrid/schema.py
"""
Static entity descriptors.

Each entity is described by its ordered fields (name + type tag) and its
constraints (required / unique). The descriptors are built once at import
and never mutated; the ORM model and the HTTP layer both read from here.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .exceptions import MissingFieldError, UniqueConstraintViolationError


class FieldType(str, Enum):
    INTEGER = "int"
    GEOMETRY = "geo"
    DOCUMENT = "json"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType


@dataclass(frozen=True)
class ConstraintSpec:
    name: str
    required: bool = False
    unique: bool = False


@dataclass(frozen=True)
class EntitySchema:
    name: str
    fields: Tuple[FieldSpec, ...]
    constraints: Tuple[ConstraintSpec, ...]

    def __post_init__(self):
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"{self.name}: duplicate field names in {names}")
        for c in self.constraints:
            if c.name not in names:
                raise ValueError(f"{self.name}: constraint on unknown field '{c.name}'")

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> FieldSpec:
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def constraint(self, name: str) -> Optional[ConstraintSpec]:
        for c in self.constraints:
            if c.name == name:
                return c
        return None

    def required_fields(self) -> List[str]:
        return [c.name for c in self.constraints if c.required]

    def unique_fields(self) -> List[str]:
        return [c.name for c in self.constraints if c.unique]

    def to_dict(self) -> Dict[str, Any]:
        """
        Descriptor in its external shape:
            {"name": ..., "fields": [{name, type}], "constraints": [{name, required, unique?}]}
        """
        constraints = []
        for c in self.constraints:
            item: Dict[str, Any] = {"name": c.name, "required": c.required}
            if c.unique:
                item["unique"] = True
            constraints.append(item)

        return {
            "name": self.name,
            "fields": [{"name": f.name, "type": f.type.value} for f in self.fields],
            "constraints": constraints,
        }


GRID_CELL_SCHEMA = EntitySchema(
    name="GridCell",
    fields=(
        FieldSpec("shape", FieldType.INTEGER),
        FieldSpec("level", FieldType.INTEGER),
        FieldSpec("geom", FieldType.GEOMETRY),
        FieldSpec("proj", FieldType.INTEGER),
        FieldSpec("hash", FieldType.INTEGER),
        FieldSpec("info", FieldType.DOCUMENT),
    ),
    constraints=(
        ConstraintSpec("shape", required=True),
        ConstraintSpec("level", required=True),
        ConstraintSpec("proj", required=True),
        ConstraintSpec("geom", required=True),
        ConstraintSpec("hash", required=True, unique=True),
    ),
)

MODELS: Mapping[str, EntitySchema] = {
    GRID_CELL_SCHEMA.name: GRID_CELL_SCHEMA,
}


def get_schema(name: str) -> EntitySchema:
    return MODELS[name]


def validate_record(record: Mapping[str, Any], schema: EntitySchema = GRID_CELL_SCHEMA) -> None:
    """
    Raise MissingFieldError for the first required field (in constraint
    order) that is absent or None.
    """
    for name in schema.required_fields():
        if record.get(name) is None:
            raise MissingFieldError(name, entity=schema.name)


def check_unique(
    records: Iterable[Mapping[str, Any]],
    schema: EntitySchema = GRID_CELL_SCHEMA,
) -> None:
    """
    Raise UniqueConstraintViolationError if two records share a value
    for any unique field. None values are skipped.
    """
    unique = schema.unique_fields()
    seen: Dict[str, set] = {name: set() for name in unique}

    for record in records:
        for name in unique:
            value = record.get(name)
            if value is None:
                continue
            if value in seen[name]:
                raise UniqueConstraintViolationError(name, value, entity=schema.name)
            seen[name].add(value)
