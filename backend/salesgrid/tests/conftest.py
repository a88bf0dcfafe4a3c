import os
os.environ["TESTING"] = "1"
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from salesgrid.main import app
from salesgrid.database import Base, get_db
from salesgrid import models, pubsub

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def fresh_redis():
    # each TestClient runs its own event loop; never reuse a client bound to an old one
    pubsub.reset_redis()
    yield
    pubsub.reset_redis()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


def create_user(*, full_name: str | None = None, is_admin: bool = False) -> models.User:
    """
    purpose: provision an actor directly in the store; identity is external to the API
    outputs: committed User readable after its session closes
    status: active
    """

    suffix = uuid.uuid4().hex[:8]
    with TestingSessionLocal() as session:
        user = models.User(
            email=f"user-{suffix}@example.com",
            full_name=full_name or f"Seller {suffix}",
            is_admin=is_admin,
        )
        session.add(user)
        session.commit()
        return user


def auth_headers(user: models.User) -> dict:
    return {"X-User-Id": str(user.id)}


def unique(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def row_payload(**overrides) -> dict:
    payload = {
        "date": "2024-03-05T10:00:00",
        "platform": "Upwork",
        "technology": "Python",
    }
    payload.update(overrides)
    return payload
