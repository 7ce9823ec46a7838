"""
Name-based predicates for criteria queries.

Predicates reference entity attributes by name and are resolved against
the queried entity class only when the query is built, so one predicate can
be reused across entity types. Resolving an attribute the entity does not
map fails with :class:`~spatialdao.exceptions.QueryError`.

Spatial predicates take an already validated geometry (see
:mod:`spatialdao.geometry`) and pass it to the store's ``ST_*`` function as a
bound parameter; no geometric computation happens here.
"""
from __future__ import annotations

import logging
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Tuple

from shapely.geometry.base import BaseGeometry
from sqlalchemy import Boolean, and_ as sql_and, literal, not_ as sql_not, or_ as sql_or
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.sql.functions import Function

from spatialdao.db.types import GeometryType
from spatialdao.exceptions import QueryError
from spatialdao.geometry.builder import get_srid

logger = logging.getLogger(__name__)


def resolve_attribute(entity_class, name: str):
    """Return the mapped attribute ``name`` of ``entity_class``."""
    mapper = sa_inspect(entity_class)
    if name not in mapper.attrs:
        message = f"Could not resolve property: {name} of: {entity_class.__name__}"
        logger.error(message)
        raise QueryError(message, operation="resolve_attribute")
    return getattr(entity_class, name)


class Criterion:
    """A predicate resolved against an entity class at build time."""

    def resolve(self, entity_class) -> ColumnElement:
        raise NotImplementedError


def resolve_condition(condition, entity_class) -> ColumnElement:
    """Turn a :class:`Criterion` or a SQLAlchemy expression into a clause."""
    if isinstance(condition, Criterion):
        return condition.resolve(entity_class)
    if isinstance(condition, ColumnElement) or hasattr(condition, "__clause_element__"):
        return condition
    message = f"Unsupported criteria condition: {condition!r}"
    logger.error(message)
    raise QueryError(message, operation="resolve_condition")


_OPERATORS: Dict[str, Callable[..., ColumnElement]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
    "like": lambda column, pattern: column.like(pattern),
    "ilike": lambda column, pattern: column.ilike(pattern),
    "in": lambda column, values: column.in_(list(values)),
    "is_null": lambda column: column.is_(None),
    "is_not_null": lambda column: column.is_not(None),
    "between": lambda column, low, high: column.between(low, high),
}


@dataclass(frozen=True)
class PropertyCriterion(Criterion):
    name: str
    op: str
    args: Tuple[Any, ...] = ()

    def resolve(self, entity_class) -> ColumnElement:
        column = resolve_attribute(entity_class, self.name)
        return _OPERATORS[self.op](column, *self.args)


@dataclass(frozen=True)
class Junction(Criterion):
    kind: str
    parts: Tuple[Any, ...]

    def resolve(self, entity_class) -> ColumnElement:
        clauses = [resolve_condition(part, entity_class) for part in self.parts]
        return sql_and(*clauses) if self.kind == "and" else sql_or(*clauses)


@dataclass(frozen=True)
class Negation(Criterion):
    part: Any

    def resolve(self, entity_class) -> ColumnElement:
        return sql_not(resolve_condition(self.part, entity_class))


def eq(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "eq", (value,))


def ne(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "ne", (value,))


def lt(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "lt", (value,))


def le(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "le", (value,))


def gt(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "gt", (value,))


def ge(name: str, value) -> PropertyCriterion:
    return PropertyCriterion(name, "ge", (value,))


def like(name: str, pattern: str) -> PropertyCriterion:
    return PropertyCriterion(name, "like", (pattern,))


def ilike(name: str, pattern: str) -> PropertyCriterion:
    return PropertyCriterion(name, "ilike", (pattern,))


def in_(name: str, values) -> PropertyCriterion:
    return PropertyCriterion(name, "in", (tuple(values),))


def is_null(name: str) -> PropertyCriterion:
    return PropertyCriterion(name, "is_null")


def is_not_null(name: str) -> PropertyCriterion:
    return PropertyCriterion(name, "is_not_null")


def between(name: str, low, high) -> PropertyCriterion:
    return PropertyCriterion(name, "between", (low, high))


def all_eq(properties: Mapping[str, Any]) -> Junction:
    """Equality on every ``name: value`` pair, in mapping order."""
    return Junction("and", tuple(eq(name, value) for name, value in properties.items()))


def and_(*parts) -> Junction:
    return Junction("and", parts)


def or_(*parts) -> Junction:
    return Junction("or", parts)


def not_(part) -> Negation:
    return Negation(part)


# Spatial


@dataclass(frozen=True)
class SpatialCriterion(Criterion):
    name: str
    function: str
    geometry: BaseGeometry
    args: Tuple[Any, ...] = ()

    def resolve(self, entity_class) -> ColumnElement:
        column = resolve_attribute(entity_class, self.name)
        column_type = getattr(column, "type", None)
        if not isinstance(column_type, GeometryType):
            column_type = GeometryType(srid=get_srid(self.geometry))
        operand = literal(self.geometry, type_=column_type)
        return Function(self.function, column, operand, *self.args, type_=Boolean)


def within(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Within", geometry)


def contains(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Contains", geometry)


def intersects(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Intersects", geometry)


def disjoint(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Disjoint", geometry)


def equals(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Equals", geometry)


def touches(name: str, geometry: BaseGeometry) -> SpatialCriterion:
    return SpatialCriterion(name, "ST_Touches", geometry)


def dwithin(name: str, geometry: BaseGeometry, distance: float) -> SpatialCriterion:
    """Attribute lies within ``distance`` (in SRID units) of ``geometry``."""
    return SpatialCriterion(name, "ST_DWithin", geometry, (float(distance),))
