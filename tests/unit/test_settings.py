import logging

import pytest

from spatialdao.exceptions import DaoError
from spatialdao.utils import log, settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "DATABASE_URL",
        "SPATIALDAO_DEFAULT_UNIT",
        "SPATIALDAO_SQL_ECHO",
        "SPATIALDAO_AUTOFLUSH",
        "SPATIALDAO_EXPIRE_ON_COMMIT",
        "SPATIALDAO_POOL_PRE_PING",
    ):
        monkeypatch.delenv(name, raising=False)
    settings.refresh_settings_cache()
    yield
    settings.refresh_settings_cache()


def test_unit_env_var_is_normalized():
    assert settings.unit_env_var("reporting-db") == "SPATIALDAO_UNIT_REPORTING_DB_URL"


def test_registered_unit_wins_over_environment(monkeypatch):
    monkeypatch.setenv("SPATIALDAO_UNIT_MAIN_URL", "sqlite:///from-env.db")
    settings.register_persistence_unit("main", "sqlite:///registered.db", echo=True)

    config = settings.get_persistence_unit("main")
    assert config.url == "sqlite:///registered.db"
    assert config.echo is True


def test_unit_url_from_environment(monkeypatch):
    monkeypatch.setenv("SPATIALDAO_UNIT_MAIN_URL", "sqlite:///from-env.db")
    assert settings.get_persistence_unit("main").url == "sqlite:///from-env.db"


def test_default_unit_falls_back_to_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///default.db")
    assert settings.default_unit_name() == "default"
    assert settings.get_persistence_unit("default").url == "sqlite:///default.db"

    monkeypatch.setenv("SPATIALDAO_DEFAULT_UNIT", "primary")
    assert settings.get_persistence_unit("primary").url == "sqlite:///default.db"
    with pytest.raises(DaoError):
        settings.get_persistence_unit("default")


def test_missing_unit_raises():
    with pytest.raises(DaoError) as exc_info:
        settings.get_persistence_unit("nowhere")
    assert "Failed to load persistence unit" in str(exc_info.value)
    assert "SPATIALDAO_UNIT_NOWHERE_URL" in str(exc_info.value)


def test_engine_defaults_follow_environment(monkeypatch):
    assert settings.get_engine_defaults() == {
        "echo": False,
        "autoflush": True,
        "expire_on_commit": False,
        "pool_pre_ping": False,
    }

    monkeypatch.setenv("SPATIALDAO_SQL_ECHO", "yes")
    monkeypatch.setenv("SPATIALDAO_AUTOFLUSH", "off")
    # cached until refreshed
    assert settings.get_engine_defaults()["echo"] is False
    settings.refresh_settings_cache()

    config = settings.register_persistence_unit("tuned", "sqlite://")
    assert config.echo is True
    assert config.autoflush is False


@pytest.mark.parametrize(
    "value,expected",
    [(None, True), ("", False), ("0", False), ("off", False), ("TRUE", True), ("on", True), ("maybe", True)],
)
def test_normalize_bool(value, expected):
    assert settings._normalize_bool(value) is expected


def test_unregister_and_clear():
    settings.register_persistence_unit("a", "sqlite://")
    settings.register_persistence_unit("b", "sqlite://")
    settings.unregister_persistence_unit("a")
    with pytest.raises(DaoError):
        settings.get_persistence_unit("a")
    settings.clear_persistence_units()
    with pytest.raises(DaoError):
        settings.get_persistence_unit("b")


def test_configure_logging_uses_env_level(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert log.configure_logging() == logging.DEBUG
    assert logging.getLogger("spatialdao").level == logging.DEBUG
    assert log.configure_logging("nonsense") == logging.INFO
