"""
Shared fixtures for the API tests.

Tables are created in an in-memory SQLite database with the PostgreSQL
schema translated away.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from recruitment_api.db import SCHEMA_NAME, Base
from recruitment_api.services.recruitment_list_db import RecruitmentListDBService


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    ).execution_options(schema_translate_map={SCHEMA_NAME: None})
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db_session) -> RecruitmentListDBService:
    return RecruitmentListDBService(db_session)
