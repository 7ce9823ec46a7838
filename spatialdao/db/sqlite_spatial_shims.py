"""SQLite shims for the PostGIS functions used by the persistence layer.

Geometry columns are stored as EWKT text on SQLite. This module registers
shapely-backed ``ST_*`` functions on each new DBAPI connection so spatial
criteria can be evaluated in test runs without SpatiaLite, and installs a
compiler so GeoAlchemy2 ``Geometry`` columns render as ``TEXT``. Only the
functions needed by :mod:`spatialdao.db.restrictions` are provided; no
attempt is made to emulate PostGIS beyond them.

Usage: :func:`install_spatial_functions` is attached to every SQLite engine
by :mod:`spatialdao.db.database`.
"""
from __future__ import annotations

from typing import Optional

import shapely
from geoalchemy2 import Geometry
from shapely.geometry.base import BaseGeometry
from sqlalchemy.ext.compiler import compiles


@compiles(Geometry, "sqlite")
def _compile_geometry_sqlite(element, compiler, **kw):  # pragma: no cover - trivial
    return "TEXT"


def _load(value) -> Optional[BaseGeometry]:
    if value is None:
        return None
    text = str(value).strip()
    srid = 0
    if text.upper().startswith("SRID="):
        prefix, _, text = text.partition(";")
        srid = int(prefix[5:])
    geometry = shapely.from_wkt(text)
    return shapely.set_srid(geometry, srid) if srid else geometry


def _predicate(name):
    def evaluate(left, right):
        a, b = _load(left), _load(right)
        if a is None or b is None:
            return None
        return 1 if getattr(a, name)(b) else 0

    return evaluate


def _distance(left, right):
    a, b = _load(left), _load(right)
    if a is None or b is None:
        return None
    return a.distance(b)


def _dwithin(left, right, distance):
    measured = _distance(left, right)
    if measured is None or distance is None:
        return None
    return 1 if measured <= float(distance) else 0


def _area(value):
    geometry = _load(value)
    return None if geometry is None else geometry.area


def _srid(value):
    geometry = _load(value)
    return None if geometry is None else int(shapely.get_srid(geometry))


def _passthrough(value):
    return value


SPATIAL_FUNCTIONS = {
    "ST_Within": (2, _predicate("within")),
    "ST_Contains": (2, _predicate("contains")),
    "ST_Intersects": (2, _predicate("intersects")),
    "ST_Disjoint": (2, _predicate("disjoint")),
    "ST_Equals": (2, _predicate("equals")),
    "ST_Touches": (2, _predicate("touches")),
    "ST_Distance": (2, _distance),
    "ST_DWithin": (3, _dwithin),
    "ST_Area": (1, _area),
    "ST_SRID": (1, _srid),
    "ST_GeomFromEWKT": (1, _passthrough),
    "ST_AsEWKT": (1, _passthrough),
    # names GeoAlchemy2 emits for its own functions on SQLite
    "GeomFromEWKT": (1, _passthrough),
    "AsEWKT": (1, _passthrough),
}


def install_spatial_functions(dbapi_connection, connection_record=None) -> None:
    """Register :data:`SPATIAL_FUNCTIONS` on a ``sqlite3`` connection.

    Signature matches SQLAlchemy's ``connect`` pool event.
    """
    for name, (arity, function) in SPATIAL_FUNCTIONS.items():
        dbapi_connection.create_function(name, arity, function, deterministic=True)
