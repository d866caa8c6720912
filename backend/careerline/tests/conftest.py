import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from careerline.main import app
from careerline.database import Base, get_db
from careerline import models
from careerline.auth import get_password_hash

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


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


def make_user(db, *, email: str | None = None, full_name: str | None = None) -> models.User:
    """Insert a user straight into the session for service-level tests."""

    user = models.User(
        email=email or f"user-{uuid.uuid4()}@example.com",
        hashed_password=get_password_hash("secret"),
        full_name=full_name,
    )
    db.add(user)
    db.flush()
    return user


def ensure_access_token(client, *, email: str | None = None, password: str = "secret"):
    """
    purpose: register (or log back in) a user and hand back a bearer token
    outputs: tuple(access_token str, normalized email str)
    """

    normalized_email = email or f"user-{uuid.uuid4()}@example.com"
    payload = {"email": normalized_email, "password": password}
    resp = client.post("/api/auth/register", json=payload)
    if resp.status_code == 200:
        data = resp.json()
    else:
        body = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        if resp.status_code == 400 and body.get("detail") == "Email already registered":
            login_resp = client.post("/api/auth/login", json=payload)
            assert login_resp.status_code == 200, f"Login failed for existing user {normalized_email}: {login_resp.text}"
            data = login_resp.json()
        else:
            raise AssertionError(f"Unexpected auth bootstrap failure for {normalized_email}: {resp.status_code} {resp.text}")
    token = data.get("access_token")
    if not token:
        raise AssertionError(f"Authentication response missing token for {normalized_email}: {data}")
    return token, normalized_email


def ensure_auth_headers(client, *, email: str | None = None, password: str = "secret"):
    token, normalized_email = ensure_access_token(client, email=email, password=password)
    return {"Authorization": f"Bearer {token}"}, normalized_email


def current_user_id(client, headers) -> str:
    resp = client.get("/api/users/me", headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]


DEFAULT_META = {
    models.NodeType.JOB: {"role": "Engineer", "company": "Acme"},
    models.NodeType.EDUCATION: {"degree": "BSc", "institution": "State University"},
}


def make_node(db, owner, node_type=models.NodeType.JOB, *, label: str = "Node", parent=None, meta=None):
    """Create a node through the hierarchy service so every rule applies."""

    from careerline import schemas
    from careerline.services import hierarchy

    if meta is None:
        meta = DEFAULT_META.get(node_type, {"title": label})
    payload = schemas.NodeCreate(
        type=node_type,
        label=label,
        parent_id=parent.id if parent is not None else None,
        meta=meta,
    )
    return hierarchy.create_node(db, payload, owner_id=owner.id)
