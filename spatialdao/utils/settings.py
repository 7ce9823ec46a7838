"""Persistence-unit configuration sourced from code or the environment."""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Dict

from spatialdao.exceptions import DaoError

logger = logging.getLogger(__name__)

DEFAULT_UNIT_ENV = "SPATIALDAO_DEFAULT_UNIT"
UNIT_URL_ENV_TEMPLATE = "SPATIALDAO_UNIT_{name}_URL"


@dataclass(frozen=True)
class PersistenceUnitConfig:
    name: str
    url: str
    echo: bool = False
    autoflush: bool = True
    expire_on_commit: bool = False
    pool_pre_ping: bool = False


_registry: Dict[str, PersistenceUnitConfig] = {}
_registry_lock = threading.Lock()


def _normalize_bool(value: str | None, default: bool = True) -> bool:
    """Return normalized boolean from environment-style value."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"", "0", "false", "no", "off"}:
        return False
    if normalized in {"1", "true", "yes", "on"}:
        return True
    return default


def unit_env_var(name: str) -> str:
    """Environment variable holding the URL of persistence unit ``name``."""
    return UNIT_URL_ENV_TEMPLATE.format(name=re.sub(r"[^A-Za-z0-9]", "_", name).upper())


@lru_cache(maxsize=None)
def get_engine_defaults() -> Dict[str, bool]:
    """Return the cached engine/session switches sourced from the environment."""
    return {
        "echo": _normalize_bool(os.getenv("SPATIALDAO_SQL_ECHO"), default=False),
        "autoflush": _normalize_bool(os.getenv("SPATIALDAO_AUTOFLUSH"), default=True),
        "expire_on_commit": _normalize_bool(os.getenv("SPATIALDAO_EXPIRE_ON_COMMIT"), default=False),
        "pool_pre_ping": _normalize_bool(os.getenv("SPATIALDAO_POOL_PRE_PING"), default=False),
    }


def default_unit_name() -> str:
    return os.getenv(DEFAULT_UNIT_ENV, "default")


def register_persistence_unit(name: str, url: str, **options) -> PersistenceUnitConfig:
    """Register (or replace) a persistence unit programmatically.

    ``options`` override the environment defaults: ``echo``, ``autoflush``,
    ``expire_on_commit``, ``pool_pre_ping``.
    """
    config = replace(PersistenceUnitConfig(name=name, url=url, **get_engine_defaults()), **options)
    with _registry_lock:
        _registry[name] = config
    logger.info("Registered persistence unit %s", name)
    return config


def unregister_persistence_unit(name: str) -> None:
    with _registry_lock:
        _registry.pop(name, None)


def clear_persistence_units() -> None:
    with _registry_lock:
        _registry.clear()


def get_persistence_unit(name: str) -> PersistenceUnitConfig:
    """Resolve the configuration of persistence unit ``name``.

    Lookup order: programmatic registry, ``SPATIALDAO_UNIT_<NAME>_URL``, then
    ``DATABASE_URL`` for the default unit.
    """
    with _registry_lock:
        config = _registry.get(name)
    if config is not None:
        return config

    url = os.getenv(unit_env_var(name))
    if not url and name == default_unit_name():
        url = os.getenv("DATABASE_URL")
    if not url:
        message = (
            f"Failed to load persistence unit: {name}. "
            f"Register it or set {unit_env_var(name)}"
        )
        logger.error(message)
        raise DaoError(message, operation="get_persistence_unit")
    return PersistenceUnitConfig(name=name, url=url, **get_engine_defaults())


def refresh_settings_cache() -> None:
    """Invalidate cached environment values (useful for tests)."""
    get_engine_defaults.cache_clear()
