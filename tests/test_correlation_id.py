from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealercrm import events
from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.config import get_settings
from dealercrm.core.database import Base, get_db
from dealercrm.core.roles import Role
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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    owner = User(name="Olga Owner", email="olga@example.com", password_hash="x", role="owner")
    db_session.add(owner)
    db_session.commit()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id=owner.id,
            name=owner.name,
            role=Role.OWNER,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/leads/999")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "not_found"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/leads/999", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/leads",
        json={"name": "Corr Lead", "phone": "1", "vehicle_model": "208"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [item for item in events.published_events if item.get("event_type") == "lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_unsafe_correlation_ids_are_replaced(client: TestClient) -> None:
    oversized = client.get("/api/leads/999", headers={"X-Correlation-Id": "a" * 500})
    assert oversized.status_code == 404
    generated = oversized.headers.get("x-correlation-id")
    assert generated and generated != "a" * 500
    assert len(generated) <= 128
    assert oversized.json()["correlation_id"] == generated

    injected = client.get("/api/leads/999", headers={"X-Correlation-Id": "abc def\"}"})
    assert injected.headers.get("x-correlation-id") != "abc def\"}"


def test_relay_request_id_is_used_when_no_correlation_id_is_sent(client: TestClient) -> None:
    response = client.get("/api/leads/999", headers={"X-Request-Id": "zap-123:456"})
    assert response.headers.get("x-correlation-id") == "zap-123:456"

    both = client.get("/api/leads/999", headers={"X-Correlation-Id": "corr-1", "X-Request-Id": "zap-1"})
    assert both.headers.get("x-correlation-id") == "corr-1"
