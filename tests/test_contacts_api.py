from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.api import get_current_user
from erasmus_crm.crm.models import Activity, Contact, Deal, User
from erasmus_crm.crm.service import ActorUser
from erasmus_crm.main import app


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


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    user1 = User(open_id="user-1", name="Ana", email="ana@example.com")
    user2 = User(open_id="user-2", name="Bo", email="bo@example.com")
    admin = User(open_id="admin-1", name="Root", email="root@example.com", role="admin")
    db_session.add_all([user1, user2, admin])
    db_session.commit()
    return {"user1": user1.id, "user2": user2.id, "admin": admin.id}


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, int],
) -> Generator[tuple[TestClient, Callable[[str | None], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "user1": ActorUser(id=users["user1"], name="Ana", email="ana@example.com"),
        "user2": ActorUser(id=users["user2"], name="Bo", email="bo@example.com"),
        "admin": ActorUser(id=users["admin"], name="Root", email="root@example.com", role="admin"),
    }
    state: dict[str, str | None] = {"current": "user1"}

    def override_get_current_user() -> ActorUser | None:
        current = state["current"]
        return actors[current] if current else None

    def set_actor(name: str | None) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create(test_client: TestClient, first_name: str, **extra) -> dict:
    response = test_client.post(
        "/api/crm/contacts",
        json={"first_name": first_name, "last_name": "Doe", **extra},
    )
    assert response.status_code == 201
    return response.json()


def test_create_contact_success(client: tuple[TestClient, Callable[[str | None], None]], users: dict[str, int]) -> None:
    test_client, _set_actor = client

    body = _create(test_client, "Jane", email="jane@example.com")

    assert body["first_name"] == "Jane"
    assert body["status"] == "lead"
    assert body["owner_id"] == users["user1"]
    assert body["email"] == "jane@example.com"


def test_create_contact_rejects_invalid_email(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, _set_actor = client

    response = test_client.post(
        "/api/crm/contacts",
        json={"first_name": "Jane", "last_name": "Doe", "email": "not-an-email"},
    )

    assert response.status_code == 422


def test_list_contacts_is_scoped_to_owner_unless_admin(
    client: tuple[TestClient, Callable[[str | None], None]],
) -> None:
    test_client, set_actor = client
    _create(test_client, "Mine")
    set_actor("user2")
    _create(test_client, "Theirs")

    set_actor("user1")
    mine = test_client.get("/api/crm/contacts")
    assert mine.status_code == 200
    assert [row["first_name"] for row in mine.json()] == ["Mine"]

    set_actor("admin")
    everything = test_client.get("/api/crm/contacts")
    assert [row["first_name"] for row in everything.json()] == ["Theirs", "Mine"]


def test_list_contacts_accepts_repeated_status_params(
    client: tuple[TestClient, Callable[[str | None], None]],
) -> None:
    test_client, _set_actor = client
    _create(test_client, "Lead", status="lead")
    _create(test_client, "Customer", status="customer")
    _create(test_client, "Inactive", status="inactive")

    response = test_client.get("/api/crm/contacts", params=[("statuses", "lead"), ("statuses", "customer")])

    assert response.status_code == 200
    assert sorted(row["first_name"] for row in response.json()) == ["Customer", "Lead"]


def test_patch_contact_keeps_unset_fields(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, _set_actor = client
    created = _create(test_client, "Jane", phone="+3531234")

    response = test_client.patch(f"/api/crm/contacts/{created['id']}", json={"status": "customer"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "customer"
    assert body["phone"] == "+3531234"
    assert body["first_name"] == "Jane"


def test_get_missing_contact_returns_error_envelope(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, _set_actor = client

    response = test_client.get("/api/crm/contacts/9999", headers={"X-Correlation-Id": "corr-missing"})

    assert response.status_code == 404
    assert response.json() == {
        "code": "crm_contact_get_failed",
        "message": "contact not found",
        "details": "contact not found",
        "correlation_id": "corr-missing",
    }


def test_anonymous_caller_is_rejected(client: tuple[TestClient, Callable[[str | None], None]]) -> None:
    test_client, set_actor = client
    set_actor(None)

    response = test_client.get("/api/crm/contacts")

    assert response.status_code == 401
    assert response.json()["code"] == "crm_contact_list_failed"


def test_delete_contact_detaches_deals_and_activities(
    client: tuple[TestClient, Callable[[str | None], None]],
    db_session: Session,
) -> None:
    test_client, _set_actor = client
    created = _create(test_client, "Jane")
    deal = Deal(title="Linked deal", contact_id=created["id"])
    activity = Activity(type="call", subject="Linked call", contact_id=created["id"])
    db_session.add_all([deal, activity])
    db_session.commit()

    response = test_client.delete(f"/api/crm/contacts/{created['id']}")
    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}

    db_session.expire_all()
    assert db_session.get(Contact, created["id"]) is None
    assert db_session.scalar(select(Deal.contact_id).where(Deal.id == deal.id)) is None
    assert db_session.scalar(select(Activity.contact_id).where(Activity.id == activity.id)) is None

    again = test_client.delete(f"/api/crm/contacts/{created['id']}")
    assert again.status_code == 404
    assert again.json()["code"] == "crm_contact_delete_failed"
