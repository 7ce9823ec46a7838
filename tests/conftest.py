import uuid

import pytest

from spatialdao.dao import GenericDao
from spatialdao.db import database, session_manager
from spatialdao.utils import settings
from tests.fixtures.entities import Account, Base, Place, Tag


def _register(url: str) -> str:
    name = f"test_{uuid.uuid4().hex[:8]}"
    settings.register_persistence_unit(name, url)
    Base.metadata.create_all(bind=database.get_engine(name))
    return name


@pytest.fixture(autouse=True)
def _teardown_sessions():
    """Close sessions and factories left over by a test."""
    yield
    session_manager.close_all_for_thread()
    database.close_factories()
    settings.clear_persistence_units()
    settings.refresh_settings_cache()


@pytest.fixture
def unit():
    """Fresh in-memory SQLite persistence unit with the test schema."""
    return _register("sqlite+pysqlite:///:memory:")


@pytest.fixture
def file_unit(tmp_path):
    """File-backed SQLite unit; needed when several threads open connections."""
    return _register(f"sqlite+pysqlite:///{tmp_path / 'spatialdao.db'}")


@pytest.fixture
def account_dao(unit):
    dao = GenericDao(Account, unit)
    yield dao
    dao.close()


@pytest.fixture
def place_dao(unit):
    dao = GenericDao(Place, unit)
    yield dao
    dao.close()


@pytest.fixture
def tag_dao(unit):
    dao = GenericDao(Tag, unit)
    yield dao
    dao.close()
