from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealercrm import events
from dealercrm.core.auth import ActorUser, get_current_actor
from dealercrm.core.config import get_settings
from dealercrm.core.database import Base, get_db
from dealercrm.core.roles import Role
from dealercrm.crm import service as crm_service
from dealercrm.crm.models import Lead, LeadHistory
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
def clear_state() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    """owner -> gerente -> supervisor -> vendedor V; vendedor W reports straight to the owner."""

    owner = User(name="Olga Owner", email="olga@example.com", password_hash="x", role="owner")
    db_session.add(owner)
    db_session.flush()
    gerente = User(name="Gustavo Gerente", email="gustavo@example.com", password_hash="x", role="gerente", reports_to_id=owner.id)
    db_session.add(gerente)
    db_session.flush()
    supervisor = User(
        name="Sara Supervisor", email="sara@example.com", password_hash="x", role="supervisor", reports_to_id=gerente.id
    )
    db_session.add(supervisor)
    db_session.flush()
    v = User(name="Victor", email="victor@example.com", password_hash="x", role="vendedor", reports_to_id=supervisor.id)
    w = User(name="Walter", email="walter@example.com", password_hash="x", role="vendedor", reports_to_id=owner.id)
    db_session.add_all([v, w])
    db_session.commit()
    return {"owner": owner, "gerente": gerente, "supervisor": supervisor, "v": v, "w": w}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, User],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        key: ActorUser(user_id=user.id, name=user.name, role=Role(user.role), correlation_id="corr-lead")
        for key, user in users.items()
    }
    state = {"current": "supervisor"}

    def override_get_current_actor() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_actor] = override_get_current_actor
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _lead_payload(**overrides) -> dict:
    payload = {"name": "Juan Perez", "phone": "1155550000", "vehicle_model": "Peugeot 208", "source": "web"}
    payload.update(overrides)
    return payload


def _seed_lead(session: Session, assigned_to_id: int | None, name: str = "Seeded") -> Lead:
    lead = Lead(name=name, phone="1", vehicle_model="2008", assigned_to_id=assigned_to_id)
    session.add(lead)
    session.commit()
    return lead


def test_list_is_limited_to_subtree_plus_unassigned(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    mine = _seed_lead(db_session, users["supervisor"].id, "mine")
    report = _seed_lead(db_session, users["v"].id, "report")
    other = _seed_lead(db_session, users["w"].id, "other")
    open_lead = _seed_lead(db_session, None, "open")

    response = test_client.get("/api/leads")
    assert response.status_code == 200
    assert {item["id"] for item in response.json()} == {mine.id, report.id, open_lead.id}

    set_actor("owner")
    response = test_client.get("/api/leads")
    assert {item["id"] for item in response.json()} == {mine.id, report.id, other.id, open_lead.id}

    set_actor("v")
    response = test_client.get(f"/api/leads/{other.id}")
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_list_includes_assignee_name_and_filters(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    _seed_lead(db_session, users["v"].id, "Maria Gomez")
    _seed_lead(db_session, users["v"].id, "Pedro Ruiz")

    response = test_client.get("/api/leads", params={"q": "maria"})

    assert response.status_code == 200
    body = response.json()
    assert [item["name"] for item in body] == ["Maria Gomez"]
    assert body[0]["assigned_to_name"] == "Victor"


def test_create_with_explicit_assignee_must_stay_in_scope(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, _ = client

    forbidden = test_client.post("/api/leads", json=_lead_payload(assigned_to_id=users["w"].id))
    assert forbidden.status_code == 403

    allowed = test_client.post("/api/leads", json=_lead_payload(assigned_to_id=users["v"].id))
    assert allowed.status_code == 201
    body = allowed.json()
    assert body["assigned_to_id"] == users["v"].id
    assert body["assigned_to_name"] == "Victor"
    assert body["status"] == "nuevo"
    assert body["created_by_id"] == users["supervisor"].id


def test_create_accepts_legacy_field_names(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/leads",
        json={"nombre": "Ana Lopez", "telefono": 1144443333, "modelo": "2008", "vendedor": users["v"].id, "fuente": "meta"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["assigned_to_id"] == users["v"].id
    assert body["phone"] == "1144443333"
    assert body["source"] == "meta"


def test_create_requires_name_phone_and_model(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/leads", json={"name": "No Phone", "vehicle_model": "208"})

    assert response.status_code == 422


def test_create_writes_initial_history_and_event(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    response = test_client.post("/api/leads", json=_lead_payload())
    assert response.status_code == 201
    lead_id = response.json()["id"]

    history = db_session.scalars(select(LeadHistory).where(LeadHistory.lead_id == lead_id)).all()
    assert [(row.status, row.actor_name) for row in history] == [("nuevo", "Sara Supervisor")]

    created = [item for item in events.published_events if item["event_type"] == "lead.created"]
    assert created[-1]["payload"]["lead_id"] == lead_id


def test_auto_assignment_rotates_through_active_salespeople(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("owner")

    assignees = []
    for index in range(3):
        response = test_client.post("/api/leads", json=_lead_payload(name=f"Auto {index}"))
        assert response.status_code == 201
        assignees.append(response.json()["assigned_to_id"])

    assert assignees == [users["v"].id, users["w"].id, users["v"].id]


def test_create_with_empty_roster_leaves_lead_unassigned(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    users["v"].active = False
    users["w"].active = False
    db_session.commit()
    set_actor("owner")

    response = test_client.post("/api/leads", json=_lead_payload())

    assert response.status_code == 201
    assert response.json()["assigned_to_id"] is None


def test_failed_history_insert_rolls_back_the_lead(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client

    def broken_history(*args, **kwargs):
        raise OperationalError("INSERT INTO crm_lead_history", {}, Exception("disk full"))

    monkeypatch.setattr(crm_service, "append_history", broken_history)

    response = test_client.post("/api/leads", json=_lead_payload())

    assert response.status_code == 503
    assert response.json()["code"] == "storage"
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 0


def test_reassignment_is_scope_checked(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, users["supervisor"].id)

    forbidden = test_client.put(f"/api/leads/{lead.id}", json={"assigned_to_id": users["w"].id})
    assert forbidden.status_code == 403
    db_session.refresh(lead)
    assert lead.assigned_to_id == users["supervisor"].id

    allowed = test_client.put(f"/api/leads/{lead.id}", json={"vendedor": users["v"].id})
    assert allowed.status_code == 200
    assert allowed.json()["assigned_to_id"] == users["v"].id


def test_update_out_of_scope_lead_is_forbidden(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, users["w"].id)

    response = test_client.patch(f"/api/leads/{lead.id}", json={"status": "contactado"})

    assert response.status_code == 403


def test_status_change_appends_exactly_one_history_row(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    created = test_client.post("/api/leads", json=_lead_payload())
    lead_id = created.json()["id"]

    changed = test_client.patch(f"/api/leads/{lead_id}", json={"estado": "contactado"})
    assert changed.status_code == 200
    assert changed.json()["status"] == "contactado"
    assert changed.json()["status_changed_at"] is not None

    unchanged = test_client.patch(f"/api/leads/{lead_id}", json={"status": "contactado", "notes": "called twice"})
    assert unchanged.status_code == 200
    assert unchanged.json()["notes"] == "called twice"

    history = test_client.get(f"/api/leads/{lead_id}/history")
    assert history.status_code == 200
    assert [(row["status"], row["actor_name"]) for row in history.json()] == [
        ("contactado", "Sara Supervisor"),
        ("nuevo", "Sara Supervisor"),
    ]
    status_events = [item for item in events.published_events if item["event_type"] == "lead.status_changed"]
    assert len(status_events) == 1
    assert status_events[0]["payload"] == {"lead_id": lead_id, "from": "nuevo", "to": "contactado"}


def test_delete_is_owner_only_and_cascades_history(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    created = test_client.post("/api/leads", json=_lead_payload(assigned_to_id=users["v"].id))
    lead_id = created.json()["id"]

    set_actor("gerente")
    denied = test_client.delete(f"/api/leads/{lead_id}")
    assert denied.status_code == 403

    set_actor("owner")
    deleted = test_client.delete(f"/api/leads/{lead_id}")
    assert deleted.status_code == 204
    assert db_session.get(Lead, lead_id) is None
    assert db_session.scalar(select(func.count()).select_from(LeadHistory)) == 0


def test_bulk_delete_is_all_or_nothing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    first = _seed_lead(db_session, users["v"].id)
    second = _seed_lead(db_session, users["w"].id)
    set_actor("owner")

    partial = test_client.post("/api/leads/bulk-delete", json={"ids": [first.id, 9999]})
    assert partial.status_code == 404
    assert partial.json()["details"] == {"missing_ids": [9999]}
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 2

    full = test_client.post("/api/leads/bulk-delete", json={"ids": [first.id, second.id]})
    assert full.status_code == 200
    assert full.json() == {"deleted": 2}
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 0


def test_masked_reads_answer_not_found(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("MASK_FORBIDDEN_AS_NOT_FOUND", "true")
    get_settings.cache_clear()
    other = _seed_lead(db_session, users["w"].id)

    response = test_client.get(f"/api/leads/{other.id}")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_team_mode_tags_and_partitions_leads(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    monkeypatch.setenv("ACCESS_SCOPE_MODE", "team")
    monkeypatch.setenv("TEAM_MANAGERS", '{"norte": "Gustavo Gerente"}')
    get_settings.cache_clear()
    sur_lead = Lead(name="Sur", phone="9", vehicle_model="208", assigned_to_id=users["w"].id, team="sur")
    db_session.add(sur_lead)
    db_session.commit()

    set_actor("v")
    created = test_client.post("/api/leads", json=_lead_payload(assigned_to_id=users["v"].id))
    assert created.status_code == 201
    assert created.json()["team"] == "norte"

    listed = test_client.get("/api/leads")
    assert {item["id"] for item in listed.json()} == {created.json()["id"]}

    set_actor("owner")
    listed = test_client.get("/api/leads")
    assert {item["id"] for item in listed.json()} == {created.json()["id"], sur_lead.id}


def test_blank_assignee_falls_back_to_rotation(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("owner")

    created = test_client.post("/api/leads", json={**_lead_payload(), "vendedor": ""})
    assert created.status_code == 201
    assert created.json()["assigned_to_id"] == users["v"].id

    cleared = test_client.patch(f"/api/leads/{created.json()['id']}", json={"vendedor": "  "})
    assert cleared.status_code == 200
    assert cleared.json()["assigned_to_id"] is None


def test_failed_delete_keeps_the_lead_and_reports_storage_error(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    first = _seed_lead(db_session, users["v"].id)
    second = _seed_lead(db_session, users["w"].id)
    first_id, second_id = first.id, second.id
    set_actor("owner")

    def broken_flush(*args, **kwargs):
        raise OperationalError("DELETE FROM crm_lead", {}, Exception("database is locked"))

    with monkeypatch.context() as patch:
        patch.setattr(db_session, "flush", broken_flush)
        single = test_client.delete(f"/api/leads/{first_id}")
        bulk = test_client.post("/api/leads/bulk-delete", json={"ids": [first_id, second_id]})

    assert single.status_code == 503
    assert single.json()["code"] == "storage"
    assert bulk.status_code == 503
    assert bulk.json()["code"] == "storage"
    assert db_session.scalar(select(func.count()).select_from(Lead)) == 2
    assert not [item for item in events.published_events if item["event_type"] == "lead.deleted"]


def test_team_retag_requires_a_manager(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, set_actor = client
    monkeypatch.setenv("ACCESS_SCOPE_MODE", "team")
    monkeypatch.setenv("TEAM_MANAGERS", '{"norte": "Gustavo Gerente"}')
    get_settings.cache_clear()
    lead = Lead(name="Norte", phone="7", vehicle_model="208", assigned_to_id=users["v"].id, team="norte")
    db_session.add(lead)
    db_session.commit()

    set_actor("v")
    retag = test_client.put(f"/api/leads/{lead.id}", json={"team": "sur"})
    assert retag.status_code == 403
    foreign_create = test_client.post("/api/leads", json=_lead_payload(assigned_to_id=users["v"].id, team="sur"))
    assert foreign_create.status_code == 403
    same_team = test_client.put(f"/api/leads/{lead.id}", json={"team": "norte", "notes": "follow up"})
    assert same_team.status_code == 200
    db_session.refresh(lead)
    assert lead.team == "norte"

    set_actor("gerente")
    moved = test_client.put(f"/api/leads/{lead.id}", json={"equipo": "sur"})
    assert moved.status_code == 200
    assert moved.json()["team"] == "sur"
