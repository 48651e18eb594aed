from __future__ import annotations

import os

os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ALLOWED_HOSTS"] = "testserver,localhost"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_webhook_secret"
os.environ["JOB_DISPATCH_MODE"] = "inline"
os.environ["LOG_JSON"] = "false"

import pytest
from fastapi.testclient import TestClient

import app.models  # noqa: F401
from app.db.base import Base
from app.db.session import SessionLocal, engine, get_db
from app.main import app as api_app
from tests.testkit import FakeGateway, RecordingNotifier


@pytest.fixture()
def db():
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture()
def client(db) -> TestClient:
    def _get_db():
        yield db

    api_app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(api_app)
    finally:
        api_app.dependency_overrides.clear()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()
