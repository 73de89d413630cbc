from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erasmus_crm.core.auth import issue_token
from erasmus_crm.core.config import get_settings
from erasmus_crm.core.database import Base, get_db
from erasmus_crm.crm.models import Activity, Deal, Notification, User
from erasmus_crm.crm.outbound import dead_letters
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


@pytest.fixture(autouse=True)
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("NOTIFY_OWNER_URL", raising=False)
    get_settings.cache_clear()
    dead_letters.clear()
    yield
    dead_letters.clear()
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, int]:
    alice = User(open_id="u-alice", name="Alice", email="alice@example.com")
    bob = User(open_id="u-bob", name="Bob", email="bob@example.com")
    carol = User(open_id="u-carol", name="Carol", email=None)
    db_session.add_all([alice, bob, carol])
    db_session.commit()
    return {"alice": alice.id, "bob": bob.id, "carol": carol.id}


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _call(client: TestClient, name: str, payload: Any = None, *, user_id: int) -> Any:
    response = client.post(
        f"/api/rpc/{name}",
        json=payload,
        headers={"Authorization": f"Bearer {issue_token(user_id)}"},
    )
    assert response.status_code == 200, response.text
    return response.json()["result"]["data"]


def _notifications(session: Session, notification_type: str) -> list[Notification]:
    session.expire_all()
    return list(session.scalars(select(Notification).where(Notification.type == notification_type)).all())


def test_create_deal_notifies_everyone_but_the_creator(
    client: TestClient, db_session: Session, users: dict[str, int]
) -> None:
    created = _call(client, "deals.create", {"title": "Acme renewal", "value": "15000"}, user_id=users["alice"])

    rows = _notifications(db_session, "new_deal")
    assert sorted(row.user_id for row in rows) == [users["bob"], users["carol"]]
    assert all(row.related_deal_id == created["id"] for row in rows)
    assert rows[0].title == "New Deal Created"
    assert rows[0].message == "Alice created a new deal: Acme renewal"
    assert rows[0].link == "/deals"

    deal = db_session.get(Deal, created["id"])
    assert deal is not None
    assert deal.owner_id == users["alice"]
    assert deal.currency == "EUR"


def test_closing_deal_won_fans_out_once(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    created = _call(client, "deals.create", {"title": "Big one", "stage": "negotiation"}, user_id=users["alice"])

    _call(
        client,
        "deals.update",
        {"id": created["id"], "data": {"stage": "closed_won", "title": "Big one (signed)"}},
        user_id=users["bob"],
    )

    won = _notifications(db_session, "deal_won")
    assert sorted(row.user_id for row in won) == [users["alice"], users["carol"]]
    assert won[0].message == "Big one has been marked as won"
    assert won[0].title == "Deal Won! 🎉"

    deal = db_session.get(Deal, created["id"])
    assert deal is not None
    assert deal.title == "Big one (signed)"
    assert deal.actual_close_date is not None

    _call(client, "deals.update", {"id": created["id"], "data": {"stage": "closed_won"}}, user_id=users["bob"])
    assert len(_notifications(db_session, "deal_won")) == 2


def test_losing_deal_uses_lost_notification(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    created = _call(client, "deals.create", {"title": "Shaky", "stage": "negotiation"}, user_id=users["alice"])

    _call(
        client,
        "deals.update",
        {"id": created["id"], "data": {"stage": "closed_lost", "lost_reason": "Budget"}},
        user_id=users["alice"],
    )

    lost = _notifications(db_session, "deal_lost")
    assert sorted(row.user_id for row in lost) == [users["bob"], users["carol"]]
    assert lost[0].message == "Shaky has been marked as lost"
    assert _notifications(db_session, "deal_won") == []


def test_update_without_stage_change_sends_nothing(
    client: TestClient, db_session: Session, users: dict[str, int]
) -> None:
    created = _call(client, "deals.create", {"title": "Quiet", "stage": "proposal"}, user_id=users["alice"])

    _call(
        client,
        "deals.update",
        {"id": created["id"], "data": {"stage": "proposal", "probability": 60}},
        user_id=users["alice"],
    )

    assert _notifications(db_session, "deal_won") == []
    assert _notifications(db_session, "deal_lost") == []
    deal = db_session.get(Deal, created["id"])
    assert deal is not None
    assert deal.probability == 60
    assert deal.actual_close_date is None


def test_email_failure_does_not_fail_the_mutation(
    client: TestClient, db_session: Session, users: dict[str, int]
) -> None:
    created = _call(client, "deals.create", {"title": "Offline mailer"}, user_id=users["alice"])

    assert created["id"] > 0
    letters = dead_letters.items()
    assert [letter.notification_type for letter in letters] == ["new_deal"]
    assert "Recipients: Bob" in letters[0].content


def test_delete_deal_detaches_activities(client: TestClient, db_session: Session, users: dict[str, int]) -> None:
    created = _call(client, "deals.create", {"title": "Doomed"}, user_id=users["alice"])
    activity = Activity(type="call", subject="Follow up", deal_id=created["id"], owner_id=users["alice"])
    db_session.add(activity)
    db_session.commit()

    assert _call(client, "deals.delete", {"id": created["id"]}, user_id=users["alice"]) == {"success": True}

    db_session.expire_all()
    assert db_session.get(Deal, created["id"]) is None
    assert db_session.scalar(select(Activity.deal_id).where(Activity.id == activity.id)) is None
    assert all(row.related_deal_id is None for row in _notifications(db_session, "new_deal"))


def test_update_missing_deal_is_not_found(client: TestClient, users: dict[str, int]) -> None:
    response = client.post(
        "/api/rpc/deals.update",
        json={"id": 4040, "data": {"stage": "closed_won"}},
        headers={"Authorization": f"Bearer {issue_token(users['alice'])}"},
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_currency_longer_than_three_letters_is_rejected(
    client: TestClient, db_session: Session, users: dict[str, int]
) -> None:
    response = client.post(
        "/api/rpc/deals.create",
        json={"title": "Too wide", "currency": "EURO"},
        headers={"Authorization": f"Bearer {issue_token(users['alice'])}"},
    )

    assert response.status_code == 400
    body = response.json()["error"]
    assert body["code"] == "BAD_REQUEST"
    assert any(item["loc"][-1] == "currency" for item in body["details"])
    assert db_session.query(Deal).count() == 0


def test_deal_list_scoping_and_value_serialization(
    client: TestClient, db_session: Session, users: dict[str, int]
) -> None:
    _call(client, "deals.create", {"title": "Alice deal", "value": "1200.50"}, user_id=users["alice"])
    _call(client, "deals.create", {"title": "Bob deal", "value": "99"}, user_id=users["bob"])

    listed = _call(client, "deals.list", {"value_min": "100"}, user_id=users["alice"])
    assert [row["title"] for row in listed] == ["Alice deal"]
    assert Decimal(listed[0]["value"]) == Decimal("1200.50")

    assert _call(client, "deals.count", {}, user_id=users["bob"]) == 1
