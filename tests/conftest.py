"""
Configuration partagée pour les tests.

Les tests unitaires travaillent sur les fakes en mémoire (fakes.py) ;
les tests d'intégration et e2e sur une base SQLite en mémoire, créée
à neuf pour chaque test.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from inventory.adapters import orm

from fakes import FakeDatabase, FixedClock, bootstrap_test_bus, make_settings


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def bus(db, clock, settings):
    return bootstrap_test_bus(db, settings=settings, clock=clock)


@pytest.fixture
def sqlite_engine():
    # Une seule connexion partagée : la base en mémoire survit entre les sessions.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()
