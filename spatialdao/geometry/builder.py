"""
Geometry construction, validation and transformation.

Every geometry handed to or read from the store goes through this module.
Constructors stamp the requested SRID and then call :func:`check_geometry`
exactly once, so a geometry returned from here is always non-empty and
valid. Aggregates (multi-geometries and collections) additionally require
all members to share one non-zero SRID.

Geometries are shapely 2.x objects; the SRID travels on the GEOS geometry
(``shapely.get_srid`` / ``shapely.set_srid``).
"""
from __future__ import annotations

import logging
import random
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable, List, NamedTuple, Sequence, Type, TypeVar

import numpy as np
import shapely
from shapely import wkt as shapely_wkt
from shapely.errors import ShapelyError
from shapely.geometry import (
    GeometryCollection,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Point,
    Polygon,
)
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from spatialdao.exceptions import GeometryError

logger = logging.getLogger(__name__)

MIN_LONGITUDE = -180.0
MAX_LONGITUDE = 180.0
MIN_LATITUDE = -90.0
MAX_LATITUDE = 90.0

G = TypeVar("G", bound=BaseGeometry)


class Coordinate(NamedTuple):
    x: float
    y: float


def _fail(message: str, value=None, cause: Exception | None = None) -> GeometryError:
    logger.error(message)
    error = GeometryError(message, value)
    if cause is not None:
        error.__cause__ = cause
    return error


# --------------------------------------------------------------------------- #
#  Validation
# --------------------------------------------------------------------------- #

def get_srid(geometry: BaseGeometry) -> int:
    """Return the SRID stamped on ``geometry`` (0 when missing)."""
    return int(shapely.get_srid(geometry))


def check_geometry(geometry: BaseGeometry | None) -> None:
    """Fail with :class:`GeometryError` for a null, empty or invalid geometry."""
    if geometry is None:
        raise _fail("Invalid geometry: None")
    if not isinstance(geometry, BaseGeometry):
        raise _fail(f"Invalid geometry: {geometry!r} is not a geometry", geometry)
    if geometry.is_empty:
        raise _fail(f"Invalid geometry: {geometry.wkt} is empty", geometry)
    if not geometry.is_valid:
        raise _fail(
            f"Invalid geometry: {geometry.wkt} ({explain_validity(geometry)})",
            geometry,
        )


def check_srids(geometries: Sequence[BaseGeometry]) -> int:
    """Return the SRID shared by all ``geometries``.

    Fails when the sequence is empty, when the first geometry has no SRID,
    or when any geometry carries a different one.
    """
    if not geometries:
        raise _fail("No geometries passed", geometries)
    srid = get_srid(geometries[0])
    if srid == 0:
        raise _fail(f"Missing SRID in geometry: {geometries[0].wkt}", geometries[0])
    for geometry in geometries[1:]:
        other = get_srid(geometry)
        if other != srid:
            raise _fail(
                f"Different SRID found in geometry: {other} (expected {srid})",
                geometry,
            )
    return srid


def _stamp(geometry: G, srid: int) -> G:
    return shapely.set_srid(geometry, int(srid))


def _expect(geometry: BaseGeometry, expected: Type[G], value) -> G:
    if not isinstance(geometry, expected):
        raise _fail(
            f"Expected {expected.__name__} but got {geometry.geom_type}: {value}",
            value,
        )
    return geometry


# --------------------------------------------------------------------------- #
#  Generic construction
# --------------------------------------------------------------------------- #

def create_geometry(wkt: str, srid: int) -> BaseGeometry:
    """Parse well-known text, stamp ``srid`` and validate."""
    logger.debug("Creating geometry from wkt %s and SRID %s", wkt, srid)
    try:
        geometry = shapely_wkt.loads(wkt)
    except (ShapelyError, TypeError, ValueError, AttributeError) as exc:
        raise _fail(f"Error parsing wkt {wkt!r}: {exc}", wkt, exc) from exc
    geometry = _stamp(geometry, srid)
    check_geometry(geometry)
    logger.debug("Result: %s", geometry)
    return geometry


def _create_typed(wkt: str, srid: int, expected: Type[G]) -> G:
    logger.debug("Creating %s from wkt %s and SRID %s", expected.__name__, wkt, srid)
    try:
        geometry = shapely_wkt.loads(wkt)
    except (ShapelyError, TypeError, ValueError, AttributeError) as exc:
        raise _fail(f"Error parsing wkt {wkt!r}: {exc}", wkt, exc) from exc
    geometry = _expect(geometry, expected, wkt)
    geometry = _stamp(geometry, srid)
    check_geometry(geometry)
    logger.debug("Result: %s", geometry)
    return geometry


def create_coordinate(x: float, y: float) -> Coordinate:
    return Coordinate(float(x), float(y))


# --------------------------------------------------------------------------- #
#  Points
# --------------------------------------------------------------------------- #

def create_point(wkt: str, srid: int) -> Point:
    return _create_typed(wkt, srid, Point)


def create_point_from_coordinate(coordinate: Coordinate, srid: int) -> Point:
    logger.debug("Creating point from coordinate %s and SRID %s", coordinate, srid)
    try:
        point = Point(coordinate[0], coordinate[1])
    except (ShapelyError, TypeError, ValueError, IndexError) as exc:
        raise _fail(f"Error creating point from {coordinate!r}: {exc}", coordinate, exc) from exc
    point = _stamp(point, srid)
    check_geometry(point)
    logger.debug("Result: %s", point)
    return point


def create_point_xy(x: float, y: float, srid: int) -> Point:
    return create_point_from_coordinate(create_coordinate(x, y), srid)


def generate_point(min_x: float, max_x: float, min_y: float, max_y: float, srid: int) -> Point:
    """Random point uniformly drawn from the given bounding box."""
    return create_point_xy(random.uniform(min_x, max_x), random.uniform(min_y, max_y), srid)


def generate_long_lat_point(srid: int) -> Point:
    logger.debug("Generating long/lat point with SRID %s", srid)
    return generate_point(MIN_LONGITUDE, MAX_LONGITUDE, MIN_LATITUDE, MAX_LATITUDE, srid)


def generate_long_lat_points(number: int, srid: int) -> List[Point]:
    logger.debug("Generating %s long/lat points with SRID %s", number, srid)
    return [generate_long_lat_point(srid) for _ in range(number)]


# --------------------------------------------------------------------------- #
#  Lines and polygons
# --------------------------------------------------------------------------- #

def create_line_string(wkt: str, srid: int) -> LineString:
    return _create_typed(wkt, srid, LineString)


def create_line_string_from_coordinates(coordinates: Iterable[Coordinate], srid: int) -> LineString:
    coordinates = [tuple(c) for c in coordinates]
    logger.debug("Creating line from coordinates %s and SRID %s", coordinates, srid)
    try:
        line = LineString(coordinates)
    except (ShapelyError, TypeError, ValueError) as exc:
        raise _fail(f"Error creating line from {coordinates!r}: {exc}", coordinates, exc) from exc
    line = _stamp(line, srid)
    check_geometry(line)
    logger.debug("Result: %s", line)
    return line


def create_polygon(wkt: str, srid: int) -> Polygon:
    return _create_typed(wkt, srid, Polygon)


# --------------------------------------------------------------------------- #
#  Aggregates
# --------------------------------------------------------------------------- #

def _create_aggregate(members: Iterable[BaseGeometry], member_type, factory, label: str):
    members = list(members)
    logger.debug("Creating %s from %s", label, [m.wkt if m is not None else None for m in members])
    if any(member is None for member in members):
        raise _fail(f"Null member passed to {label}", members)
    srid = check_srids(members)
    if member_type is not None:
        for member in members:
            _expect(member, member_type, member.wkt)
    try:
        aggregate = factory(members)
    except (ShapelyError, TypeError, ValueError) as exc:
        raise _fail(f"Error creating {label}: {exc}", members, exc) from exc
    aggregate = _stamp(aggregate, srid)
    check_geometry(aggregate)
    logger.debug("Result: %s", aggregate)
    return aggregate


def create_multi_point(wkt: str, srid: int) -> MultiPoint:
    return _create_typed(wkt, srid, MultiPoint)


def create_multi_point_from(points: Iterable[Point]) -> MultiPoint:
    return _create_aggregate(points, Point, MultiPoint, "multi-point")


def create_multi_line_string(wkt: str, srid: int) -> MultiLineString:
    return _create_typed(wkt, srid, MultiLineString)


def create_multi_line_string_from(lines: Iterable[LineString]) -> MultiLineString:
    return _create_aggregate(lines, LineString, MultiLineString, "multi-line")


def create_multi_polygon(wkt: str, srid: int) -> MultiPolygon:
    return _create_typed(wkt, srid, MultiPolygon)


def create_multi_polygon_from(polygons: Iterable[Polygon]) -> MultiPolygon:
    return _create_aggregate(polygons, Polygon, MultiPolygon, "multi-polygon")


def create_geometry_collection(geometries: Iterable[BaseGeometry]) -> GeometryCollection:
    return _create_aggregate(geometries, BaseGeometry, GeometryCollection, "geometry collection")


def create_geometry_collection_wkt(wkt: str, srid: int) -> GeometryCollection:
    return _create_typed(wkt, srid, GeometryCollection)


# --------------------------------------------------------------------------- #
#  Transformations
# --------------------------------------------------------------------------- #

def _transformed(geometry: G, transformation) -> G:
    check_geometry(geometry)
    srid = get_srid(geometry)
    result = shapely.transform(geometry, transformation)
    result = _stamp(result, srid)
    check_geometry(result)
    logger.debug("Result: %s", result)
    return result


def change_scale(geometry: G, factor: float) -> G:
    """Scale every coordinate about the origin."""
    logger.info("Changing scale using factor %s", factor)
    return _transformed(geometry, lambda coords: coords * factor)


def change_scale_centroid_based(geometry: G, factor: float) -> G:
    """Scale every coordinate about the geometry's centroid."""
    logger.info("Changing scale centroid based using factor %s", factor)
    check_geometry(geometry)
    centroid = geometry.centroid
    origin = np.array([centroid.x, centroid.y])
    return _transformed(geometry, lambda coords: (coords - origin) * factor + origin)


def _round_half_even(value: float, digits: int) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(float(value)).quantize(quantum, rounding=ROUND_HALF_EVEN))


def round_geometry(geometry: G, max_fraction_digits: int) -> G:
    """Round each coordinate to ``max_fraction_digits`` fractional digits.

    Rounding can collapse vertices and produce an invalid geometry (for
    instance a polygon shrinking to a line); that case fails with
    :class:`GeometryError` like any other invalid result.
    """
    logger.info("Rounding geometry %s to %s fraction digits", geometry, max_fraction_digits)
    if max_fraction_digits < 1:
        logger.warning("It is recommended to use max_fraction_digits >= 1")
    digits = max(int(max_fraction_digits), 0)
    rounder = np.vectorize(lambda v: _round_half_even(v, digits), otypes=[float])
    return _transformed(geometry, rounder)
