"""Shared test fixtures and configuration for backend tests.

Every test runs against a fresh in-memory DuckDB seeded with one small
school:

    P1 (owned by T1): attempted by S1 and S2
    P2 (owned by T2): attempted by S1
    S3 has attempted nothing
"""
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from paperchat import config as config_module
from paperchat.chat.database import ChatDatabase
from paperchat.chat.gateway import gateway
from paperchat.config import AppSettings, JWTSecrets, Secrets
from paperchat.main import app

TEST_SECRET = "test-secret"

USERS = [
    ("T1", "Tina", "Teach", "t1@school.test", "TEACHER"),
    ("T2", "Tom", "Tutor", "t2@school.test", "TEACHER"),
    ("S1", "Sam", "Stone", "s1@school.test", "STUDENT"),
    ("S2", "Sue", "Smith", "s2@school.test", "STUDENT"),
    ("S3", "Sid", "Shaw", "s3@school.test", "STUDENT"),
]
PAPERS = [
    ("P1", "Algebra Midterm", "Chapters 1-4", "T1"),
    ("P2", "Geometry Quiz", None, "T2"),
]
ATTEMPTS = [("P1", "S1"), ("P1", "S2"), ("P2", "S1")]


def make_token(user_id: str, role: str, secret: str = TEST_SECRET, expires_in: int = 3600, **claims) -> str:
    """Issue a token the way the platform's identity provider does."""
    payload = {
        "userId": user_id,
        "role": role,
        "exp": datetime.utcnow() + timedelta(seconds=expires_in),
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def seed(db: ChatDatabase) -> None:
    with db.writer() as cur:
        cur.executemany("INSERT INTO users VALUES (?, ?, ?, ?, ?)", USERS)
        cur.executemany("INSERT INTO papers VALUES (?, ?, ?, ?)", PAPERS)
        cur.executemany("INSERT INTO exam_attempts VALUES (?, ?)", ATTEMPTS)


@pytest.fixture(autouse=True)
def test_config():
    """Known JWT secret and default chat limits for every test."""
    config_module._config = AppSettings(secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)))
    yield config_module._config
    config_module.reset_config()


@pytest.fixture(autouse=True)
def db(test_config):
    """Fresh in-memory chat database, seeded with the fixture school."""
    ChatDatabase.reset_instance()
    database = ChatDatabase.get_instance(db_path=":memory:")
    seed(database)
    yield database
    ChatDatabase.reset_instance()


@pytest.fixture(autouse=True)
def reset_gateway():
    """Drop room memberships left over by earlier tests."""
    gateway.reset()
    yield
    gateway.reset()


@pytest.fixture
def api_client(db):
    """TestClient sharing one event loop across requests and WebSockets.

    Push fan-out sends to other sockets, so all sessions must live on the
    same loop.
    """
    with TestClient(app) as client:
        yield client
