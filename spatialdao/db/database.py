"""
Engine and session-factory management per persistence unit.

A persistence unit is a named database configuration (see
:mod:`spatialdao.utils.settings`). Its engine and ``sessionmaker`` are created
once per process on first use and cached; the create-if-absent step is the
only place guarded by a lock.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from spatialdao.db.sqlite_spatial_shims import install_spatial_functions
from spatialdao.exceptions import DaoError
from spatialdao.utils import settings

logger = logging.getLogger(__name__)

FAILED_TO_LOAD_PERSISTENCE_UNIT = "Failed to load persistence unit"


@dataclass
class SessionFactory:
    unit: str
    engine: Engine
    sessionmaker: sessionmaker


_factories: Dict[str, SessionFactory] = {}
_factories_lock = threading.Lock()


def _engine_kwargs(config: settings.PersistenceUnitConfig) -> dict:
    kwargs: dict = {"echo": config.echo}
    if config.url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in config.url or config.url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            # In-memory SQLite with StaticPool so the schema persists across connections
            kwargs["poolclass"] = StaticPool
    elif config.pool_pre_ping:
        kwargs["pool_pre_ping"] = True
    return kwargs


def _create_factory(unit: str) -> SessionFactory:
    config = settings.get_persistence_unit(unit)
    logger.info("Creating a new session factory for persistence unit %s", unit)
    try:
        engine = create_engine(config.url, **_engine_kwargs(config))
    except (SQLAlchemyError, ImportError, ValueError) as exc:
        message = f"{FAILED_TO_LOAD_PERSISTENCE_UNIT}: {unit}: {exc}"
        logger.error(message)
        raise DaoError(message, operation="get_session_factory") from exc
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", install_spatial_functions)
    factory = sessionmaker(
        bind=engine,
        autoflush=config.autoflush,
        expire_on_commit=config.expire_on_commit,
    )
    return SessionFactory(unit=unit, engine=engine, sessionmaker=factory)


def get_session_factory(unit: str) -> SessionFactory:
    """Return the cached factory for ``unit``, creating it on first use."""
    factory = _factories.get(unit)
    if factory is not None:
        return factory
    with _factories_lock:
        factory = _factories.get(unit)
        if factory is None:
            factory = _create_factory(unit)
            _factories[unit] = factory
        return factory


def get_engine(unit: str) -> Engine:
    return get_session_factory(unit).engine


def cached_units() -> List[str]:
    return sorted(_factories)


def close_factories() -> None:
    """Dispose every cached engine and clear the cache.

    Not safe while other threads still hold sessions created from these
    factories; callers must close those sessions first.
    """
    logger.info("Closing session factories")
    with _factories_lock:
        factories = list(_factories.values())
        _factories.clear()
    for factory in factories:
        factory.engine.dispose()
