"""
Pytest configuration and fixtures for all tests.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rls_guard.model import Base
from rls_guard.permissions.engine import AccessControlEngine
from rls_guard.tests.fixtures import DictResolver, make_index, seed


@pytest.fixture
def db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def Session(db_engine):
    """Create session factory over the seeded database."""
    factory = sessionmaker(bind=db_engine, autoflush=False)
    with factory() as session:
        seed(session)
    return factory


@pytest.fixture
def session(Session):
    """Create a new database session for a test."""
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def access_engine(Session):
    """AccessControlEngine over the seeded database with its index loaded."""
    engine = AccessControlEngine(session_factory=Session)
    engine.start()
    return engine


@pytest.fixture
def index():
    return make_index()


@pytest.fixture
def resolver():
    return DictResolver()
