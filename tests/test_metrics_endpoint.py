from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.config import get_settings
from dealercrm.core.database import Base, get_db
from dealercrm.core.roles import Role
from dealercrm.crm.models import Lead
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    owner = User(name="Olga Owner", email="olga@example.com", password_hash="x", role="owner")
    db_session.add(owner)
    db_session.flush()
    seller = User(name="Victor", email="victor@example.com", password_hash="x", role="vendedor", reports_to_id=owner.id)
    db_session.add(seller)
    db_session.commit()

    actors = {
        "owner": ActorUser(user_id=owner.id, name=owner.name, role=Role.OWNER, correlation_id="metrics-corr-1"),
        "seller": ActorUser(user_id=seller.id, name=seller.name, role=Role.VENDEDOR),
    }
    state = {"current": "owner"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor

    with TestClient(app) as test_client:
        yield test_client, set_actor

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_assignment_and_access_metrics(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    health = test_client.get("/health")
    assert health.status_code == 200

    created = test_client.post("/api/leads", json={"name": "Metrics Lead", "phone": "1", "vehicle_model": "208"})
    assert created.status_code == 201
    assert test_client.get(f"/api/leads/{created.json()['id']}").status_code == 200

    hidden = Lead(name="Hidden", phone="2", vehicle_model="308", assigned_to_id=None)
    db_session.add(hidden)
    db_session.commit()
    set_actor("seller")
    assert test_client.delete(f"/api/leads/{hidden.id}").status_code == 403

    set_actor("owner")
    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_lead_assignments_total" in body
    assert "crm_scope_resolutions_total" in body
    assert "crm_access_denied_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/leads/{id}"' in body
    assert 'strategy="round_robin"' in body
    assert 'resource="lead"' in body


def test_metrics_endpoint_is_owner_only(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("seller")

    assert test_client.get("/metrics").status_code == 403


def test_metrics_endpoint_hidden_when_disabled(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert test_client.get("/metrics").status_code == 404
