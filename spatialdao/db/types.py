"""Custom SQLAlchemy types used by the persistence layer."""
from __future__ import annotations

import logging
import re
from typing import Optional

import shapely
from geoalchemy2 import Geometry as PGGeometry
from shapely.geometry.base import BaseGeometry
from sqlalchemy.sql.functions import Function
from sqlalchemy.types import Text, TypeDecorator

from spatialdao.exceptions import GeometryError
from spatialdao.geometry import builder

logger = logging.getLogger(__name__)

_HEX_WKB = re.compile(r"^(?:[0-9A-Fa-f]{2})+$")


class _EwktPGGeometry(PGGeometry):
    """PostGIS column type whose values are exchanged as EWKT text.

    Conversion to and from shapely happens in :class:`GeometryType`, so the
    GeoAlchemy2 element wrapping is disabled here.
    """

    cache_ok = True

    def bind_processor(self, dialect):  # type: ignore[override]
        return None

    def result_processor(self, dialect, coltype):  # type: ignore[override]
        return None


def to_ewkt(geometry: BaseGeometry) -> str:
    """Render ``geometry`` as EWKT (plain WKT when it carries no SRID)."""
    text = shapely.to_wkt(geometry, rounding_precision=-1)
    srid = builder.get_srid(geometry)
    return f"SRID={srid};{text}" if srid else text


def split_ewkt(text: str) -> tuple[Optional[int], str]:
    """Split ``SRID=n;WKT`` into ``(n, WKT)``; the SRID is None when absent."""
    text = text.strip()
    if text.upper().startswith("SRID="):
        prefix, _, wkt = text.partition(";")
        try:
            return int(prefix[5:]), wkt
        except ValueError as exc:
            logger.error("Invalid SRID prefix in %r", text)
            raise GeometryError(f"Invalid SRID prefix in {text!r}", text) from exc
    return None, text


def from_ewkt(text: str, default_srid: int = 0) -> BaseGeometry:
    """Parse EWKT into a validated geometry."""
    srid, wkt = split_ewkt(text)
    return builder.create_geometry(wkt, default_srid if srid is None else srid)


class GeometryType(TypeDecorator[BaseGeometry]):
    """Store shapely geometries, as PostGIS ``geometry`` when available.

    Falls back to EWKT text on dialects without PostGIS (e.g. SQLite during
    unit tests, where ``ST_GeomFromEWKT``/``ST_AsEWKT`` are provided by
    :mod:`spatialdao.db.sqlite_spatial_shims`).
    """

    cache_ok = True
    impl = Text

    def __init__(self, geometry_type: str = "GEOMETRY", srid: int = 0) -> None:
        super().__init__()
        self.geometry_type = (geometry_type or "GEOMETRY").upper()
        self.srid = int(srid or 0)

    def load_dialect_impl(self, dialect):  # type: ignore[override]
        if dialect.name == "postgresql":
            return dialect.type_descriptor(
                _EwktPGGeometry(geometry_type=self.geometry_type, srid=self.srid or -1)
            )
        return dialect.type_descriptor(Text())

    # plain Function: GeoAlchemy2 renames its registered ST_* functions per dialect
    def bind_expression(self, bindvalue):  # type: ignore[override]
        return Function("ST_GeomFromEWKT", bindvalue, type_=self)

    def column_expression(self, col):  # type: ignore[override]
        return Function("ST_AsEWKT", col, type_=self)

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, str):
            value = from_ewkt(value, self.srid)
        if not isinstance(value, BaseGeometry):
            logger.error("GeometryType expects a shapely geometry, got %r", type(value))
            raise GeometryError(
                f"GeometryType expects a shapely geometry, got {type(value)!r}", value
            )
        builder.check_geometry(value)
        srid = builder.get_srid(value)
        if self.srid:
            if srid == 0:
                value = shapely.set_srid(value, self.srid)
            elif srid != self.srid:
                logger.error("SRID mismatch: column expects %s, got %s", self.srid, srid)
                raise GeometryError(
                    f"SRID mismatch: column expects {self.srid}, got {srid}", value
                )
        return to_ewkt(value)

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, memoryview):
            value = bytes(value)
        if isinstance(value, str) and _HEX_WKB.match(value):
            # raw PostGIS columns selected through text SQL arrive as hex EWKB
            value = bytes.fromhex(value)
        if isinstance(value, bytes):
            geometry = shapely.from_wkb(value)
            srid = builder.get_srid(geometry) or self.srid
            return builder.create_geometry(geometry.wkt, srid)
        return from_ewkt(str(value), self.srid)

    def copy(self, **kwargs):  # type: ignore[override]
        return GeometryType(self.geometry_type, self.srid)
