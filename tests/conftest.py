"""Shared fixtures: an isolated in-memory database per test."""

import itertools

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from fhir_server.config import Settings
from fhir_server.main import build_store, create_app
from fhir_server.models.database import Base, build_engine, build_session_factory


@pytest.fixture
def settings():
    s = Settings()
    s.DATABASE_URL = "sqlite://"
    s.PHI_ENCRYPTION_KEY = Fernet.generate_key().decode()
    s.ENVIRONMENT = "test"
    s.FHIR_PROFILES = ""
    s.FHIR_REQUIRE_IF_MATCH = True
    s.PAGE_SIZE = 20
    s.MAX_PAGE_SIZE = 100
    s.BASE_URL = "http://fhir.test"
    return s


@pytest.fixture
def sequential_ids():
    """Server ids p1, p2, ... in creation order."""
    counter = itertools.count(1)
    return lambda: f"p{next(counter)}"


@pytest.fixture
def session_factory(settings):
    engine = build_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(settings, session_factory, sequential_ids):
    return build_store(settings, session_factory, id_factory=sequential_ids)


@pytest.fixture
def client(settings, sequential_ids):
    app = create_app(settings, id_factory=sequential_ids)
    with TestClient(app) as test_client:
        yield test_client
