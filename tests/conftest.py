"""Shared fixtures: an in-memory Motor database and a fresh app per test."""
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from realtime_chat.database.connection import mongo_db_dependency
from realtime_chat.main import create_app


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["realtime_chat_test"]


@pytest.fixture
def app(mongo_db):
    application = create_app()
    application.dependency_overrides[mongo_db_dependency] = lambda: mongo_db
    return application


@pytest.fixture
def hub(app):
    return app.state.hub


@pytest.fixture
def client(app):
    return TestClient(app)
