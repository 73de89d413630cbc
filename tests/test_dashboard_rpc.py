from __future__ import annotations

import json
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasmus_crm.core.auth import issue_token
from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.models import Activity, Company, Contact, Deal, User
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
def user_id(db_session: Session) -> int:
    user = User(open_id="dash-user", name="Dash", email="dash@example.com")
    db_session.add(user)
    db_session.commit()
    return user.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _query(client: TestClient, name: str, user_id: int):  # type: ignore[no-untyped-def]
    response = client.get(f"/api/rpc/{name}", headers={"Authorization": f"Bearer {issue_token(user_id)}"})
    assert response.status_code == 200, response.text
    return response.json()["result"]["data"]


def test_empty_dashboard_reports_zero_sums(client: TestClient, user_id: int) -> None:
    assert _query(client, "dashboard.stats", user_id) == {
        "total_contacts": 0,
        "total_companies": 0,
        "total_deals": 0,
        "open_activities": 0,
        "pipeline_value": "0",
        "won_deals_value": "0",
    }
    assert _query(client, "deals.pipelineStats", user_id) == []
    assert _query(client, "contacts.byStatus", user_id) == []
    assert _query(client, "activities.byType", user_id) == []


def test_dashboard_counts_are_team_wide(client: TestClient, db_session: Session, user_id: int) -> None:
    db_session.add_all(
        [
            Contact(first_name="A", last_name="One", status="lead", owner_id=user_id),
            Contact(first_name="B", last_name="Two", status="lead"),
            Contact(first_name="C", last_name="Three", status="customer"),
            Company(name="Acme"),
            Deal(title="Open 1", stage="proposal", value=Decimal("1000")),
            Deal(title="Open 2", stage="lead", value=Decimal("2500.50")),
            Deal(title="Won", stage="closed_won", value=Decimal("4000")),
            Deal(title="Lost", stage="closed_lost", value=Decimal("9999")),
            Activity(type="call", subject="Open call"),
            Activity(type="call", subject="Done call", is_completed=True),
            Activity(type="email", subject="Open email"),
        ]
    )
    db_session.commit()

    stats = _query(client, "dashboard.stats", user_id)
    assert stats["total_contacts"] == 3
    assert stats["total_companies"] == 1
    assert stats["total_deals"] == 4
    assert stats["open_activities"] == 2
    assert Decimal(stats["pipeline_value"]) == Decimal("3500.50")
    assert Decimal(stats["won_deals_value"]) == Decimal("4000")

    by_status = {row["status"]: row["count"] for row in _query(client, "contacts.byStatus", user_id)}
    assert by_status == {"lead": 2, "customer": 1}

    by_type = {row["type"]: row["count"] for row in _query(client, "activities.byType", user_id)}
    assert by_type == {"call": 2, "email": 1}

    pipeline = {row["stage"]: row for row in _query(client, "deals.pipelineStats", user_id)}
    assert pipeline["closed_lost"]["count"] == 1
    assert Decimal(pipeline["lead"]["total_value"]) == Decimal("2500.50")

    # Counts, unlike aggregates, only see the caller's own rows.
    assert _query(client, "contacts.count", user_id) == 1


def test_recent_activities_limit(client: TestClient, db_session: Session, user_id: int) -> None:
    db_session.add_all([Activity(type="note", subject=f"Note {index}") for index in range(12)])
    db_session.commit()

    recent = _query(client, "activities.recent", user_id)

    assert len(recent) == 10
    assert recent[0]["subject"] == "Note 11"


def test_contact_count_cannot_be_widened_to_another_owner(
    client: TestClient, db_session: Session, user_id: int
) -> None:
    other = User(open_id="dash-other", name="Other", email="other@example.com")
    db_session.add(other)
    db_session.flush()
    db_session.add_all(
        [
            Contact(first_name="Mine", last_name="Lead", status="lead", owner_id=user_id),
            Contact(first_name="Theirs", last_name="Lead", status="lead", owner_id=other.id),
            Contact(first_name="Theirs", last_name="Customer", status="customer", owner_id=other.id),
        ]
    )
    db_session.commit()

    response = client.get(
        "/api/rpc/contacts.count",
        params={"input": json.dumps({"status": "lead", "owner_id": other.id})},
        headers={"Authorization": f"Bearer {issue_token(user_id)}"},
    )

    assert response.status_code == 200
    assert response.json()["result"]["data"] == 1
