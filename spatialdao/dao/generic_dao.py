"""
Generic data-access object for mapped entity classes.

``GenericDao`` offers CRUD, criteria and raw-query operations for a single
SQLAlchemy-mapped entity class bound to one persistence unit. Sessions come
from :mod:`spatialdao.db.session_manager`, so a DAO instance can be shared
between threads: every thread works on its own session.

Transaction policy: mutating operations (``persist``, ``merge``,
``remove``, ``remove_all``, ``execute_sql_update``) begin a transaction when
none is active and flush, but never commit. Committing is the caller's job
(:meth:`GenericDao.commit`); :meth:`GenericDao.close` discards anything
uncommitted. A failed mutating call rolls back the thread's transaction for
the unit and raises :class:`~spatialdao.exceptions.DaoError`, so no call
ever succeeds partially. The rollback covers the whole transaction: work
from earlier successful calls that was not yet committed is discarded as
well, and the caller has to redo it after a failure.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generic, Iterable, Iterator, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from sqlalchemy import delete, func, inspect as sa_inspect, select, text
from sqlalchemy.exc import NoInspectionAvailable, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.sql import Executable
from sqlalchemy.sql.elements import ClauseElement

from spatialdao.db import session_manager
from spatialdao.db.criteria import CriteriaOptions, Projection, build_query, engine_error
from spatialdao.db.restrictions import Criterion, all_eq, resolve_condition
from spatialdao.exceptions import DaoError, GeometryError, QueryError, StaleStateError
from spatialdao.utils import settings

logger = logging.getLogger(__name__)

E = TypeVar("E")
K = TypeVar("K")

def _is_collection(value: Any) -> bool:
    """Any iterable other than a string, a mapping or a mapped entity."""
    if isinstance(value, (str, bytes, Mapping)):
        return False
    if sa_inspect(value, raiseerr=False) is not None:
        return False
    return isinstance(value, Iterable)


def _flatten(values: Tuple[Any, ...]) -> Tuple[List[Any], bool]:
    """Accept ``f(a, b)`` as well as ``f([a, b])``; report single-object calls."""
    if len(values) == 1 and _is_collection(values[0]):
        return list(values[0]), False
    return list(values), len(values) == 1


def _conditions(conditions: Any) -> Tuple[Any, ...]:
    if conditions is None:
        return ()
    if isinstance(conditions, (Criterion, ClauseElement)) or hasattr(conditions, "__clause_element__"):
        return (conditions,)
    return tuple(conditions) if _is_collection(conditions) else (conditions,)


def bind_positional(query: str, params: Iterable[Any]) -> Tuple[str, dict]:
    """Rewrite ``?`` placeholders outside quoted literals as named binds."""
    params = list(params)
    parts: List[str] = []
    quoted = False
    index = 0
    for char in query:
        if char == "'":
            quoted = not quoted
        if char == "?" and not quoted:
            parts.append(f":p{index}")
            index += 1
        else:
            parts.append(char)
    if index != len(params):
        message = f"Query expects {index} positional parameters, got {len(params)}: {query}"
        logger.error(message)
        raise QueryError(message, operation="bind_positional")
    return "".join(parts), {f"p{i}": value for i, value in enumerate(params)}


class GenericDao(Generic[E, K]):
    """CRUD and query facade for ``entity_class`` on ``persistence_unit``.

    The identity attribute defaults to the mapper's single-column primary
    key; composite keys are not supported.
    """

    def __init__(
        self,
        entity_class: Type[E],
        persistence_unit: Optional[str] = None,
        identity_attribute: Optional[str] = None,
    ):
        self.entity_class = entity_class
        self.persistence_unit = persistence_unit or settings.default_unit_name()
        try:
            mapper = sa_inspect(entity_class)
        except NoInspectionAvailable as exc:
            message = f"{entity_class!r} is not a mapped entity class"
            logger.error(message)
            raise DaoError(message, operation="__init__") from exc
        primary_key = mapper.primary_key
        if identity_attribute is None:
            if len(primary_key) != 1:
                message = f"{entity_class.__name__} must have a single-column primary key"
                logger.error(message)
                raise DaoError(message, operation="__init__")
            identity_attribute = mapper.get_property_by_column(primary_key[0]).key
        self.identity_attribute = identity_attribute
        self._identity_generated = self._is_generated(primary_key)

    @staticmethod
    def _is_generated(primary_key) -> bool:
        if len(primary_key) != 1:
            return False
        column = primary_key[0]
        table = column.table
        auto_column = getattr(table, "autoincrement_column", None)
        if auto_column is None:
            auto_column = getattr(table, "_autoincrement_column", None)
        return column is auto_column or column.default is not None or column.server_default is not None

    def __repr__(self) -> str:
        return f"GenericDao(entity={self.entity_class.__name__}, persistence_unit={self.persistence_unit!r})"

    # ------------------------------------------------------------------ #
    #  Session plumbing
    # ------------------------------------------------------------------ #

    def get_session(self) -> Session:
        return session_manager.get_session(self.persistence_unit)

    def begin_transaction(self) -> None:
        session_manager.begin_transaction(self.persistence_unit)

    def commit(self) -> None:
        session_manager.commit(self.persistence_unit)

    def rollback(self) -> None:
        session_manager.rollback(self.persistence_unit)

    def close(self) -> None:
        """Release this thread's session for the persistence unit."""
        session_manager.close(self.persistence_unit)

    def identity_of(self, entity: E) -> Optional[K]:
        return getattr(entity, self.identity_attribute)

    @property
    def _identity_column(self):
        return getattr(self.entity_class, self.identity_attribute)

    @contextmanager
    def _mutating(self, operation: str) -> Iterator[Session]:
        session = session_manager.begin_transaction(self.persistence_unit)
        try:
            yield session
        except GeometryError:
            self._rollback_failed(operation)
            raise
        except SQLAlchemyError as exc:
            self._rollback_failed(operation)
            raise engine_error(
                exc, f"Failed to {operation} {self.entity_class.__name__}", DaoError, operation
            ) from exc

    def _rollback_failed(self, operation: str) -> None:
        logger.error("%s on %s failed; rolling back", operation, self.entity_class.__name__)
        try:
            session_manager.rollback(self.persistence_unit)
        except DaoError:
            # already logged; the original failure is the one raised
            pass

    @contextmanager
    def _reading(self, operation: str) -> Iterator[Session]:
        session = self.get_session()
        try:
            yield session
        except SQLAlchemyError as exc:
            raise engine_error(
                exc, f"Failed to {operation} {self.entity_class.__name__}", QueryError, operation
            ) from exc

    def _managed_state(self, entity: E, operation: str):
        try:
            state = sa_inspect(entity)
        except NoInspectionAvailable as exc:
            message = f"{operation}: {entity!r} is not a mapped entity"
            logger.error(message)
            raise DaoError(message, operation=operation) from exc
        if state.transient:
            message = f"{operation}: entity {entity!r} was never persisted"
            logger.error(message)
            raise DaoError(message, operation=operation)
        if state.detached or state.session is not self.get_session():
            message = f"{operation}: entity {entity!r} is not managed by the current session"
            logger.error(message)
            raise StaleStateError(message, operation=operation)
        return state

    # ------------------------------------------------------------------ #
    #  Mutations
    # ------------------------------------------------------------------ #

    def persist(self, *entities: Union[E, Iterable[E]]) -> Union[E, List[E]]:
        """Insert new entities; they become managed by the session."""
        items, single = _flatten(entities)
        if not items:
            return []
        logger.debug("Persisting %s %s", len(items), self.entity_class.__name__)
        for entity in items:
            state = sa_inspect(entity, raiseerr=False)
            if state is None:
                message = f"persist: {entity!r} is not a mapped entity"
                logger.error(message)
                raise DaoError(message, operation="persist")
            if state.detached:
                message = f"Detached entity passed to persist: {entity!r}"
                logger.error(message)
                raise DaoError(message, operation="persist")
            if state.transient and self._identity_generated and self.identity_of(entity) is not None:
                message = (
                    f"Cannot persist {self.entity_class.__name__} with pre-assigned "
                    f"generated identity {self.identity_of(entity)!r}"
                )
                logger.error(message)
                raise DaoError(message, operation="persist")
        with self._mutating("persist") as session:
            session.add_all(items)
            session.flush()
        return items[0] if single else items

    def merge(self, *entities: Union[E, Iterable[E]]) -> Union[E, List[E]]:
        """Copy the state of (possibly detached) entities into the session.

        Returns the managed instance(s); the arguments stay untouched.
        """
        items, single = _flatten(entities)
        if not items:
            return []
        logger.debug("Merging %s %s", len(items), self.entity_class.__name__)
        with self._mutating("merge") as session:
            merged = [session.merge(entity) for entity in items]
            session.flush()
        return merged[0] if single else merged

    def remove(self, *entities: Union[E, Iterable[E]]) -> None:
        """Delete managed entities by identity."""
        items, _ = _flatten(entities)
        if not items:
            return None
        logger.debug("Removing %s %s", len(items), self.entity_class.__name__)
        states = [self._managed_state(entity, "remove") for entity in items]
        with self._mutating("remove") as session:
            for entity, state in zip(items, states):
                if state.pending:
                    session.expunge(entity)
                else:
                    session.delete(entity)
            session.flush()
        return None

    def remove_all(self) -> int:
        """Delete every row of the entity's table; returns the row count."""
        logger.info("Removing all %s rows", self.entity_class.__name__)
        with self._mutating("remove_all") as session:
            result = session.execute(delete(self.entity_class))
        return result.rowcount

    def refresh(self, entity: E) -> E:
        """Discard in-memory changes of a managed entity and reload it."""
        self._managed_state(entity, "refresh")
        with self._reading("refresh") as session:
            session.refresh(entity)
        return entity

    def flush(self) -> None:
        with self._mutating("flush") as session:
            session.flush()

    def clear(self) -> None:
        """Detach every managed entity from this thread's session."""
        logger.debug("Clearing session for %s", self.persistence_unit)
        self.get_session().expunge_all()

    # ------------------------------------------------------------------ #
    #  Reads
    # ------------------------------------------------------------------ #

    def find(self, *identities: Any, properties: Optional[Mapping[str, Any]] = None):
        """Look entities up by identity.

        - ``find()`` returns None;
        - ``find(id)`` returns the entity or None;
        - ``find(id1, id2, ...)`` (or one list) returns a list parallel to
          the identities, with None where nothing was found.

        ``properties`` adds equality conditions on named attributes.
        """
        if not identities:
            return None
        batch = len(identities) > 1 or _is_collection(identities[0])
        wanted = list(identities[0]) if len(identities) == 1 and batch else list(identities)
        if not batch:
            return self._find_one(wanted[0], properties)
        if not wanted:
            return []
        statement = select(self.entity_class).where(self._identity_column.in_(wanted))
        if properties:
            statement = statement.where(resolve_condition(all_eq(properties), self.entity_class))
        with self._reading("find") as session:
            rows = session.scalars(statement).all()
        by_identity = {self.identity_of(row): row for row in rows}
        return [by_identity.get(identity) for identity in wanted]

    def _find_one(self, identity: K, properties: Optional[Mapping[str, Any]]) -> Optional[E]:
        logger.debug("Finding %s %r", self.entity_class.__name__, identity)
        with self._reading("find") as session:
            if not properties:
                return session.get(self.entity_class, identity)
            statement = select(self.entity_class).where(
                self._identity_column == identity,
                resolve_condition(all_eq(properties), self.entity_class),
            )
            return session.scalars(statement).first()

    def find_all(self, options: Optional[CriteriaOptions] = None) -> List[E]:
        """All rows, ordered and paginated per ``options``."""
        return self.find_by_criteria((), None, options)

    def find_by_criteria(
        self,
        conditions: Any = (),
        projection: Optional[Projection] = None,
        options: Optional[CriteriaOptions] = None,
    ) -> List[Any]:
        query = build_query(
            self.get_session(),
            self.entity_class,
            self.identity_attribute,
            _conditions(conditions),
            projection,
            options,
        )
        return query.list()

    def find_unique_by_criteria(self, conditions: Any) -> Optional[E]:
        query = build_query(self.get_session(), self.entity_class, self.identity_attribute, _conditions(conditions))
        return query.unique()

    def count(self) -> int:
        """Total number of rows; pagination never applies."""
        with self._reading("count") as session:
            return int(session.scalar(select(func.count()).select_from(self.entity_class)) or 0)

    def count_by_criteria(self, conditions: Any) -> int:
        query = build_query(self.get_session(), self.entity_class, self.identity_attribute, _conditions(conditions))
        return query.count()

    # ------------------------------------------------------------------ #
    #  Raw queries
    # ------------------------------------------------------------------ #

    def _text_for_entity(self, query: str):
        table = sa_inspect(self.entity_class).local_table
        return text(query).columns(**{column.name: column.type for column in table.columns})

    def execute_query(self, query: Union[str, Executable], *params: Any) -> List[E]:
        """Run a query returning entity instances.

        ``query`` is either a SQLAlchemy ``Select`` or a SQL string whose
        columns are matched to the entity's columns by name; ``?``
        placeholders are bound to ``params`` in order.
        """
        logger.debug("Executing entity query %s with %s", query, params)
        with self._reading("execute_query") as session:
            if not isinstance(query, str):
                return list(session.scalars(query).all())
            sql, bound = bind_positional(query, params)
            statement = select(self.entity_class).from_statement(self._text_for_entity(sql))
            return list(session.scalars(statement, bound).all())

    def execute_sql(self, query: str, *params: Any) -> List[tuple]:
        """Run raw SQL and return its rows as tuples of driver values."""
        logger.debug("Executing SQL %s with %s", query, params)
        sql, bound = bind_positional(query, params)
        with self._reading("execute_sql") as session:
            return [tuple(row) for row in session.execute(text(sql), bound).all()]

    def execute_sql_update(self, query: str, *params: Any) -> int:
        """Run a raw DML statement; returns the affected row count."""
        logger.debug("Executing SQL update %s with %s", query, params)
        sql, bound = bind_positional(query, params)
        with self._mutating("execute_sql_update") as session:
            result = session.execute(text(sql), bound)
        return result.rowcount
