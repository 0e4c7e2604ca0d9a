import logging
from typing import Any, Dict, Optional

from shapely import wkt
from shapely.errors import ShapelyError
from shapely.geometry import shape as geojson_shape
from shapely.geometry.base import BaseGeometry
from sqlalchemy import Column, BigInteger, Integer, JSON, Text
from sqlalchemy.types import TypeDecorator

from ..db import Base
from ..schema import GRID_CELL_SCHEMA

log = logging.getLogger(__name__)


class WKTGeometry(TypeDecorator):
    """Stores a shapely geometry as WKT text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, BaseGeometry):
            return value.wkt
        # already WKT; round-trip through shapely so bad input fails on write
        return wkt.loads(str(value)).wkt

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return wkt.loads(value)


def parse_geometry(value) -> Optional[BaseGeometry]:
    """
    Accepts a shapely geometry, a WKT string or a GeoJSON mapping.
    Returns None when the value can't be read as a geometry.
    """
    if value is None or isinstance(value, BaseGeometry):
        return value
    try:
        if isinstance(value, dict):
            return geojson_shape(value)
        return wkt.loads(str(value))
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError) as e:
        log.debug("[GridCell] Ignoring unreadable geometry %r: %s", value, e)
        return None


def _to_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


class GridCell(Base):
    __tablename__ = "grid_cell"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)

    # 1 = square, 2 = hexagon, 3 = diamond
    shape = Column(Integer, nullable=False, index=True)
    level = Column(Integer, nullable=False, index=True)
    geom = Column(WKTGeometry, nullable=False)

    # EPSG code of the grid projection (geom itself is always WGS84)
    proj = Column(Integer, nullable=False, index=True)

    # Identity key for lookup / dedup
    hash = Column(BigInteger, unique=True, index=True, nullable=False)

    info = Column(JSON)

    @classmethod
    def from_json(cls, json: Dict[str, Any]) -> "GridCell":
        cell = cls()
        cell.update(json)
        return cell

    def update(self, json: Dict[str, Any]) -> None:
        """
        Overwrite attributes from a JSON mapping. `id` is only applied when
        positive; an unreadable `geom` leaves the geometry unset.
        """
        id_ = _to_int(json.get("id"))
        if id_ is not None and id_ > 0:
            self.id = id_
        self.shape = _to_int(json.get("shape"))
        self.level = _to_int(json.get("level"))
        self.geom = parse_geometry(json.get("geom"))
        self.proj = _to_int(json.get("proj"))
        self.hash = _to_int(json.get("hash"))
        self.info = json.get("info")

    def to_record(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in GRID_CELL_SCHEMA.field_names()}

    def to_json(self) -> Dict[str, Any]:
        geom = self.geom
        if isinstance(geom, BaseGeometry):
            geom = geom.wkt
        return {
            "id": self.id,
            "shape": self.shape,
            "level": self.level,
            "geom": geom,
            "proj": self.proj,
            "hash": self.hash,
            "info": self.info,
        }

    def __repr__(self):
        return (
            f"GridCell(id={self.id}, shape={self.shape}, level={self.level}, "
            f"proj={self.proj}, hash={self.hash})"
        )
