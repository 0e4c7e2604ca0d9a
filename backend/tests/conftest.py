"""Shared fixtures: in-memory SQLite database and an API client bound to it."""

import os

# must be set before kartogrid.config is imported
os.environ.setdefault("KARTOGRID_DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from shapely.geometry import box

from kartogrid import models  # noqa: F401
from kartogrid.db import Base, get_db


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    from fastapi.testclient import TestClient
    from kartogrid.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def polygon():
    return box(10.0, 20.0, 11.0, 21.0)


@pytest.fixture
def record(polygon):
    return {
        "shape": 1,
        "level": 2,
        "geom": polygon,
        "proj": 4326,
        "hash": 123456,
    }
