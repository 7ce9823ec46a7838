"""
Criteria query composition and execution.

A :class:`CriteriaQuery` collects conditions, an optional projection and
pagination/ordering options for one entity type, builds a single SQLAlchemy
``Select`` and executes it on the caller's session.

Rules:
- conditions are AND-ed in the order they were added; nothing is reordered
  or deduplicated;
- caller orderings are applied first, then the identity ascending as a
  tie-breaker (skipped for DISTINCT projections that do not select it);
- ``offset`` is zero-indexed and ``limit`` is an upper bound (None means
  unbounded).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Iterable, List, Literal, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError, StatementError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import DetachedInstanceError, ObjectDeletedError, StaleDataError

from spatialdao.db.restrictions import resolve_attribute, resolve_condition
from spatialdao.exceptions import DaoError, GeometryError, NonUniqueResultError, QueryError, StaleStateError

logger = logging.getLogger(__name__)

E = TypeVar("E")


class OrderBy(BaseModel):
    attribute: str
    direction: Literal["asc", "desc"] = "asc"
    model_config = ConfigDict(frozen=True)

    @field_validator("direction", mode="before")
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value


def asc(attribute: str) -> OrderBy:
    return OrderBy(attribute=attribute, direction="asc")


def desc(attribute: str) -> OrderBy:
    return OrderBy(attribute=attribute, direction="desc")


class CriteriaOptions(BaseModel):
    """Pagination and ordering for a criteria query.

    ``offset`` is the zero-indexed position of the first row returned.
    ``orderings`` accepts :class:`OrderBy` values, attribute names (ascending)
    or ``(attribute, direction)`` pairs.
    """

    offset: int = Field(0, ge=0)
    limit: Optional[int] = Field(None, gt=0)
    orderings: List[OrderBy] = Field(default_factory=list)

    @field_validator("orderings", mode="before")
    @classmethod
    def _coerce_orderings(cls, value):
        if value is None:
            return []
        coerced = []
        for item in value:
            if isinstance(item, str):
                coerced.append(OrderBy(attribute=item))
            elif isinstance(item, (tuple, list)):
                coerced.append(OrderBy(attribute=item[0], direction=item[1] if len(item) > 1 else "asc"))
            else:
                coerced.append(item)
        return coerced

    @classmethod
    def of(cls, offset: int = 0, limit: Optional[int] = None, *orderings) -> "CriteriaOptions":
        return cls(offset=offset, limit=limit, orderings=list(orderings))


@dataclass(frozen=True)
class Projection:
    attributes: Tuple[str, ...]
    distinct: bool = False


def projection(*attributes: str) -> Projection:
    return Projection(tuple(attributes))


def distinct(*attributes: str) -> Projection:
    return Projection(tuple(attributes), distinct=True)


def engine_error(exc: Exception, message: str, error_cls=DaoError, operation: Optional[str] = None) -> Exception:
    """Log ``exc`` and return the package exception to raise for it.

    Geometry errors raised while binding parameters surface unwrapped;
    failures caused by unmanaged or vanished rows become
    :class:`StaleStateError`.
    """
    if isinstance(exc, StatementError) and isinstance(exc.orig, GeometryError):
        return exc.orig
    if isinstance(exc, (DetachedInstanceError, ObjectDeletedError, StaleDataError)):
        error_cls = StaleStateError
    full = f"{message}: {exc}"
    logger.error(full)
    error = error_cls(full, operation=operation)
    error.__cause__ = exc
    return error


class CriteriaQuery(Generic[E]):
    def __init__(self, session: Session, entity_class: type, identity_attribute: str):
        self.session = session
        self.entity_class = entity_class
        self.identity_attribute = identity_attribute
        self.conditions: List[Any] = []
        self.projection: Optional[Projection] = None
        self.options = CriteriaOptions()

    def add(self, *conditions) -> "CriteriaQuery[E]":
        for condition in conditions:
            if isinstance(condition, (list, tuple)):
                self.conditions.extend(condition)
            else:
                self.conditions.append(condition)
        return self

    def set_projection(self, value: Optional[Projection]) -> "CriteriaQuery[E]":
        self.projection = value
        return self

    def set_options(self, value: Optional[CriteriaOptions]) -> "CriteriaQuery[E]":
        self.options = value or CriteriaOptions()
        return self

    def _projected_columns(self):
        return [resolve_attribute(self.entity_class, name) for name in self.projection.attributes]

    def _orderings(self):
        clauses = []
        ordered = set()
        for order in self.options.orderings:
            column = resolve_attribute(self.entity_class, order.attribute)
            clauses.append(column.desc() if order.direction == "desc" else column.asc())
            ordered.add(order.attribute)
        needs_identity = self.identity_attribute not in ordered
        if self.projection is not None and self.projection.distinct:
            needs_identity = needs_identity and self.identity_attribute in self.projection.attributes
        if needs_identity:
            clauses.append(resolve_attribute(self.entity_class, self.identity_attribute).asc())
        return clauses

    def build(self, paginate: bool = True, order: bool = True) -> Select:
        if self.projection is not None and self.projection.attributes:
            statement = select(*self._projected_columns())
            if self.projection.distinct:
                statement = statement.distinct()
        else:
            statement = select(self.entity_class)
        for condition in self.conditions:
            statement = statement.where(resolve_condition(condition, self.entity_class))
        if order:
            statement = statement.order_by(*self._orderings())
        if paginate:
            if self.options.offset:
                statement = statement.offset(self.options.offset)
            if self.options.limit is not None:
                statement = statement.limit(self.options.limit)
        return statement

    def _fetch(self, statement: Select) -> List[Any]:
        logger.debug("Executing criteria query on %s: %s", self.entity_class.__name__, statement)
        try:
            if self.projection is None or not self.projection.attributes:
                return list(self.session.scalars(statement).all())
            if len(self.projection.attributes) == 1:
                return list(self.session.scalars(statement).all())
            return [tuple(row) for row in self.session.execute(statement).all()]
        except SQLAlchemyError as exc:
            raise engine_error(exc, "Criteria query failed", QueryError, "find_by_criteria") from exc

    def list(self) -> List[Any]:
        return self._fetch(self.build())

    def unique(self) -> Optional[Any]:
        """Single result, None when nothing matches.

        Raises :class:`NonUniqueResultError` when more than one row matches.
        """
        statement = self.build(paginate=False, order=False).limit(2)
        rows = self._fetch(statement)
        if len(rows) > 1:
            message = f"Query for {self.entity_class.__name__} did not return a unique result"
            logger.error(message)
            raise NonUniqueResultError(message, operation="find_unique_by_criteria")
        return rows[0] if rows else None

    def count(self) -> int:
        inner = self.build(paginate=False, order=False).subquery()
        statement = select(func.count()).select_from(inner)
        try:
            return int(self.session.scalar(statement) or 0)
        except SQLAlchemyError as exc:
            raise engine_error(exc, "Criteria count failed", QueryError, "count_by_criteria") from exc


def build_query(
    session: Session,
    entity_class: type,
    identity_attribute: str,
    conditions: Union[Sequence[Any], Iterable[Any], None] = None,
    projection_: Optional[Projection] = None,
    options: Optional[CriteriaOptions] = None,
) -> CriteriaQuery:
    query: CriteriaQuery = CriteriaQuery(session, entity_class, identity_attribute)
    query.add(*(conditions or ()))
    return query.set_projection(projection_).set_options(options)
