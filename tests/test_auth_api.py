from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealercrm.core.config import get_settings
from dealercrm.core.database import Base, get_db
from dealercrm.core.security import create_access_token, decode_access_token, hash_password
from dealercrm.identity.models import User
from dealercrm.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def owner(db_session: Session) -> User:
    user = User(name="Olga Owner", email="olga@example.com", password_hash=hash_password("secret123"), role="dueño")
    db_session.add(user)
    db_session.commit()
    return user


def test_login_returns_a_token_carrying_identity_claims(client: TestClient, owner: User) -> None:
    response = client.post("/api/auth/login", json={"email": " OLGA@example.com ", "password": "secret123"})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["user"]["id"] == owner.id
    claims = decode_access_token(body["token"])
    assert claims["sub"] == str(owner.id)
    assert claims["name"] == "Olga Owner"


def test_login_rejects_bad_credentials(client: TestClient, owner: User) -> None:
    wrong_password = client.post("/api/auth/login", json={"email": "olga@example.com", "password": "nope"})
    assert wrong_password.status_code == 401
    assert wrong_password.json()["code"] == "unauthorized"

    unknown = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": "secret123"})
    assert unknown.status_code == 401


def test_login_rejects_deactivated_users(client: TestClient, db_session: Session, owner: User) -> None:
    owner.active = False
    db_session.commit()

    response = client.post("/api/auth/login", json={"email": "olga@example.com", "password": "secret123"})

    assert response.status_code == 403


def test_verify_and_me_resolve_the_bearer_token(client: TestClient, owner: User) -> None:
    login = client.post("/api/auth/login", json={"email": "olga@example.com", "password": "secret123"})
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    verify = client.get("/api/auth/verify", headers=headers)
    assert verify.status_code == 200
    assert verify.json()["user"]["email"] == "olga@example.com"

    me = client.get("/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["role"] == "owner"
    assert me.json()["unrestricted"] is True


def test_missing_or_invalid_tokens_are_rejected(client: TestClient, owner: User) -> None:
    assert client.get("/api/leads").status_code == 401
    assert client.get("/api/leads", headers={"Authorization": "Bearer not-a-token"}).status_code == 401

    expired = create_access_token(
        user_id=owner.id,
        name=owner.name,
        email=owner.email,
        role=owner.role,
        expires_minutes=-5,
    )
    assert client.get("/api/leads", headers={"Authorization": f"Bearer {expired}"}).status_code == 401
